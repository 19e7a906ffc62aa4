"""
Async client for the hosted backend (a Supabase project).

Talks to the PostgREST database API under ``/rest/v1`` and to the Storage
API under ``/storage/v1`` over a single shared ``httpx.AsyncClient``.
Every failed call raises :class:`BackendError`.
"""
import logging
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import quote

import httpx

from clinic_records.config import Settings

logger = logging.getLogger(__name__)

SINGLE_OBJECT = "application/vnd.pgrst.object+json"
NO_ROWS_CODE = "PGRST116"


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    TRANSPORT = "transport"
    BACKEND = "backend"


class BackendError(Exception):
    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code
        self.code = code

    def __str__(self):
        parts = [self.kind.value]
        if self.status_code is not None:
            parts.append(str(self.status_code))
        if self.code:
            parts.append(self.code)
        return f"[{' '.join(parts)}] {self.message}"

    @classmethod
    def from_response(cls, response: httpx.Response) -> "BackendError":
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        message = body.get("message") or body.get("error") or response.reason_phrase
        code = body.get("code")
        if code is None and body.get("statusCode") is not None:
            code = str(body["statusCode"])

        if response.status_code == 404 or (
            response.status_code == 406 and code == NO_ROWS_CODE
        ):
            kind = ErrorKind.NOT_FOUND
        else:
            kind = ErrorKind.BACKEND
        return cls(kind, message, status_code=response.status_code, code=code)


def _eq_filters(filters: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    return {column: f"eq.{value}" for column, value in (filters or {}).items()}


class SupabaseClient:
    """
    Thin wrapper over the database and storage HTTP APIs.

    The underlying ``httpx.AsyncClient`` is safe to share between
    concurrent calls; each method is one independent request.
    """

    def __init__(
        self,
        url: str,
        key: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url.rstrip("/")
        self._http = httpx.AsyncClient(
            base_url=self.url,
            headers={"apikey": key, "Authorization": f"Bearer {key}"},
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> "SupabaseClient":
        return cls(
            settings.supabase_url,
            settings.supabase_anon_key,
            timeout=settings.request_timeout,
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self._http.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise BackendError(ErrorKind.TRANSPORT, f"{method} {path}: {e!r}") from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise BackendError(ErrorKind.BACKEND, f"{method} {path}: {e!r}") from e
        logger.debug("%s %s -> %s", method, path, response.status_code)
        if response.is_error:
            raise BackendError.from_response(response)
        return response

    @staticmethod
    def _payload(response: httpx.Response) -> Any:
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise BackendError(
                ErrorKind.BACKEND,
                f"response from {response.request.url.path} is not JSON",
                status_code=response.status_code,
            ) from e

    @classmethod
    def _object_payload(cls, response: httpx.Response) -> Dict[str, Any]:
        payload = cls._payload(response)
        if payload is None:
            return {}
        if not isinstance(payload, dict):
            raise BackendError(
                ErrorKind.BACKEND,
                f"unexpected storage response from {response.request.url.path}",
                status_code=response.status_code,
            )
        return payload

    # Database (PostgREST)

    async def select(
        self,
        table: str,
        columns: str = "*",
        filters: Optional[Mapping[str, Any]] = None,
        order: Optional[str] = None,
        ascending: bool = True,
        single: bool = False,
    ) -> Any:
        """
        Fetch rows from `table`.

        `filters` are equality filters. With `single=True` exactly one row
        must match and it is returned as a dict; otherwise a list is returned.
        """
        params = {"select": columns, **_eq_filters(filters)}
        if order:
            params["order"] = f"{order}.{'asc' if ascending else 'desc'}"
        headers = {"Accept": SINGLE_OBJECT} if single else {}
        response = await self._request(
            "GET", f"/rest/v1/{table}", params=params, headers=headers
        )
        return self._payload(response)

    async def insert(self, table: str, row: Mapping[str, Any]) -> Dict[str, Any]:
        response = await self._request(
            "POST",
            f"/rest/v1/{table}",
            params={"select": "*"},
            json=[dict(row)],
            headers={"Accept": SINGLE_OBJECT, "Prefer": "return=representation"},
        )
        return self._payload(response)

    async def update(
        self, table: str, values: Mapping[str, Any], filters: Mapping[str, Any]
    ) -> Dict[str, Any]:
        response = await self._request(
            "PATCH",
            f"/rest/v1/{table}",
            params={"select": "*", **_eq_filters(filters)},
            json=dict(values),
            headers={"Accept": SINGLE_OBJECT, "Prefer": "return=representation"},
        )
        return self._payload(response)

    async def delete(self, table: str, filters: Mapping[str, Any]) -> None:
        await self._request("DELETE", f"/rest/v1/{table}", params=_eq_filters(filters))

    async def rpc(self, function: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        response = await self._request(
            "POST", f"/rest/v1/rpc/{function}", json=dict(params or {})
        )
        return self._payload(response)

    # Storage

    async def upload(
        self, bucket: str, path: str, content: bytes, content_type: str
    ) -> str:
        """Store `content` under `path`; returns the path within the bucket."""
        response = await self._request(
            "POST",
            f"/storage/v1/object/{bucket}/{quote(path, safe='/')}",
            content=content,
            headers={"Content-Type": content_type, "x-upsert": "false"},
        )
        key = self._object_payload(response).get("Key")
        if key and key.startswith(f"{bucket}/"):
            return key[len(bucket) + 1:]
        return path

    async def remove(self, bucket: str, paths: List[str]) -> List[Dict[str, Any]]:
        response = await self._request(
            "DELETE", f"/storage/v1/object/{bucket}", json={"prefixes": list(paths)}
        )
        removed = self._payload(response)
        return removed if isinstance(removed, list) else []

    async def create_signed_url(self, bucket: str, path: str, expires_in: int) -> str:
        response = await self._request(
            "POST",
            f"/storage/v1/object/sign/{bucket}/{quote(path, safe='/')}",
            json={"expiresIn": expires_in},
        )
        signed = self._object_payload(response).get("signedURL")
        if not signed:
            raise BackendError(
                ErrorKind.BACKEND, f"no signed URL returned for {path}",
                status_code=response.status_code,
            )
        return f"{self.url}/storage/v1{signed}"
