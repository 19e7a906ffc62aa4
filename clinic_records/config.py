import logging
import os
from typing import Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel


class ConfigurationError(RuntimeError):
    """Raised when required settings are missing or malformed."""


class Settings(BaseModel):
    supabase_url: str
    supabase_anon_key: str
    storage_bucket: str = "patient-files"
    request_timeout: float = 10.0
    signed_url_expires_in: int = 3600  # 1 hour
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Build settings from the environment (a `.env` file is loaded first).
        Every missing or malformed variable is reported in one error.
        """
        if environ is None:
            load_dotenv()
            environ = os.environ

        errors = []
        url = environ.get("SUPABASE_URL", "").strip()
        key = environ.get("SUPABASE_ANON_KEY", "").strip()
        if not url:
            errors.append("SUPABASE_URL is not set")
        elif not url.startswith(("http://", "https://")):
            errors.append(f"SUPABASE_URL must be an http(s) URL, got {url!r}")
        if not key:
            errors.append("SUPABASE_ANON_KEY is not set")

        timeout = _parse_number(environ, "SUPABASE_TIMEOUT", float, 10.0, errors)
        expires_in = _parse_number(environ, "SIGNED_URL_EXPIRES_IN", int, 3600, errors)

        if errors:
            raise ConfigurationError("Invalid configuration: " + "; ".join(errors))

        return cls(
            supabase_url=url.rstrip("/"),
            supabase_anon_key=key,
            storage_bucket=environ.get("SUPABASE_STORAGE_BUCKET") or "patient-files",
            request_timeout=timeout,
            signed_url_expires_in=expires_in,
            log_level=(environ.get("LOG_LEVEL") or "INFO").upper(),
        )


def _parse_number(environ, name, kind, default, errors):
    raw = environ.get(name)
    if not raw:
        return default
    try:
        value = kind(raw)
    except ValueError:
        errors.append(f"{name} must be a number, got {raw!r}")
        return default
    if value <= 0:
        errors.append(f"{name} must be positive, got {raw!r}")
    return value


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
