import os
import logging
from dataclasses import dataclass
from typing import Mapping, Optional

SCOPES = [
    "https://www.googleapis.com/auth/webmasters",
    "https://www.googleapis.com/auth/indexing",
]

DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"


def _get_int_env(environ: Mapping[str, str], name: str, default_value: int) -> int:
    try:
        return int(environ.get(name, str(default_value)))
    except Exception:
        return default_value


def _get_float_env(environ: Mapping[str, str], name: str, default_value: float) -> float:
    try:
        return float(environ.get(name, str(default_value)))
    except Exception:
        return default_value


def _first_env(environ: Mapping[str, str], *names: str) -> Optional[str]:
    for name in names:
        value = environ.get(name)
        if value:
            return value
    return None


@dataclass(frozen=True)
class Settings:
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    token_uri: str = DEFAULT_TOKEN_URI

    # Account provisioning sources
    accounts_json: Optional[str] = None
    accounts_file: Optional[str] = None
    refresh_token: Optional[str] = None
    email: str = "default"
    access_token: Optional[str] = None

    # HTTP timeout and retry/backoff for Google API calls
    http_timeout_seconds: int = 180
    request_retries: int = 5
    retry_backoff_seconds: float = 2.0
    retry_jitter_ms: int = 300

    debug: bool = False


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build Settings from environment variables.

    GOOGLE_* and GSC_OAUTH_* names are both accepted for the OAuth client.
    """
    if environ is None:
        environ = os.environ
    return Settings(
        client_id=_first_env(environ, "GOOGLE_CLIENT_ID", "GSC_OAUTH_CLIENT_ID", "GOOGLE_OAUTH_CLIENT_ID"),
        client_secret=_first_env(environ, "GOOGLE_CLIENT_SECRET", "GSC_OAUTH_CLIENT_SECRET", "GOOGLE_OAUTH_CLIENT_SECRET"),
        token_uri=environ.get("GSC_TOKEN_URI") or DEFAULT_TOKEN_URI,
        accounts_json=environ.get("GSC_ACCOUNTS_JSON") or None,
        accounts_file=environ.get("GSC_ACCOUNTS_FILE") or None,
        refresh_token=environ.get("GSC_REFRESH_TOKEN") or None,
        email=environ.get("GSC_EMAIL") or "default",
        access_token=environ.get("GSC_ACCESS_TOKEN") or None,
        http_timeout_seconds=_get_int_env(environ, "GSC_HTTP_TIMEOUT_SECONDS", 180),
        request_retries=_get_int_env(environ, "GSC_REQUEST_RETRIES", 5),
        retry_backoff_seconds=_get_float_env(environ, "GSC_RETRY_BACKOFF_SECONDS", 2.0),
        retry_jitter_ms=_get_int_env(environ, "GSC_RETRY_JITTER_MS", 300),
        debug=environ.get("DEBUG_MODE", "false").lower() in ("true", "1", "yes"),
    )


def configure_logging(settings: Settings) -> None:
    # stdout carries the stdio transport, so logs go to stderr (basicConfig default)
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
