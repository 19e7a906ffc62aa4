from fastapi import Request

from clinic_records.backend import SupabaseClient
from clinic_records.config import Settings
from clinic_records.gateway import RecordGateway


def create_gateway(settings: Settings, transport=None) -> RecordGateway:
    """
    Build a gateway over a fresh backend client. The caller owns the client
    and closes it with ``await gateway.client.aclose()``.
    """
    client = SupabaseClient.from_settings(settings, transport=transport)
    return RecordGateway(
        client,
        bucket=settings.storage_bucket,
        signed_url_expires_in=settings.signed_url_expires_in,
    )


def get_gateway(request: Request) -> RecordGateway:
    """
    Return the gateway created at application startup.
    """
    return request.app.state.gateway
