import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

import httplib2
import google_auth_httplib2
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build

from gsc_accounts import Account, AccountStore
from gsc_config import SCOPES, Settings
from gsc_errors import TokenRefreshFailed

logger = logging.getLogger(__name__)

# A token expiring sooner than this is treated as already expired
REFRESH_MARGIN_MS = 60_000


def _millis_to_expiry(expires_at: Optional[int]) -> Optional[datetime]:
    # google-auth compares expiry against a naive UTC datetime
    if not expires_at:
        return None
    return datetime.fromtimestamp(expires_at / 1000, tz=timezone.utc).replace(tzinfo=None)


def _expiry_to_millis(expiry: Optional[datetime]) -> Optional[int]:
    if expiry is None:
        return None
    return int(expiry.replace(tzinfo=timezone.utc).timestamp() * 1000)


def _now_millis() -> int:
    return int(time.time() * 1000)


def build_credentials(account: Account, settings: Settings) -> Credentials:
    return Credentials(
        account.access_token,
        refresh_token=account.refresh_token,
        token_uri=settings.token_uri,
        client_id=settings.client_id,
        client_secret=settings.client_secret,
        scopes=SCOPES,
        expiry=_millis_to_expiry(account.expires_at),
    )


def refresh_credentials(credentials: Credentials) -> None:
    """Exchange the refresh token for a new access token (blocking network call)."""
    credentials.refresh(Request())


# Build a discovery client using an authorized HTTP with timeout
def _build_service(api: str, version: str, creds: Credentials, timeout_seconds: int):
    http = httplib2.Http(timeout=timeout_seconds)
    authed_http = google_auth_httplib2.AuthorizedHttp(creds, http=http)
    return build(api, version, http=authed_http, cache_discovery=False)


class ClientHandle:
    """Authenticated client for one account: OAuth credentials plus lazily built API services."""

    def __init__(self, account_id: str, credentials: Credentials, timeout_seconds: int = 180, email: Optional[str] = None):
        self.account_id = account_id
        self.email = email or account_id
        self.credentials = credentials
        self.timeout_seconds = timeout_seconds
        self._services: Dict[tuple, object] = {}

    @classmethod
    def from_account(cls, account: Account, settings: Settings) -> "ClientHandle":
        return cls(account.id, build_credentials(account, settings), settings.http_timeout_seconds, email=account.email)

    @property
    def access_token(self) -> Optional[str]:
        return self.credentials.token

    @property
    def expires_at(self) -> Optional[int]:
        return _expiry_to_millis(self.credentials.expiry)

    def service(self, api: str, version: str):
        key = (api, version)
        if key not in self._services:
            self._services[key] = _build_service(api, version, self.credentials, self.timeout_seconds)
        return self._services[key]

    def search_console(self):
        return self.service("searchconsole", "v1")

    def indexing(self):
        return self.service("indexing", "v3")


class ClientCache:
    """
    Maps account id -> live ClientHandle.

    Handles are created on first use, refreshed when the access token is
    missing or about to expire, and dropped when the account is re-registered.
    At most one refresh runs per account; concurrent callers share it.
    """

    def __init__(
        self,
        store: AccountStore,
        settings: Settings,
        refresher: Callable[[Credentials], None] = refresh_credentials,
        handle_factory: Optional[Callable[[Account], ClientHandle]] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self._store = store
        self._settings = settings
        self._refresher = refresher
        self._handle_factory = handle_factory or (lambda account: ClientHandle.from_account(account, settings))
        self._clock = clock or _now_millis
        self._handles: Dict[str, ClientHandle] = {}
        self._inflight: Dict[str, asyncio.Task] = {}
        store.add_invalidation_listener(self.invalidate)

    def __contains__(self, account_id: str) -> bool:
        return account_id in self._handles

    @property
    def size(self) -> int:
        return len(self._handles)

    def invalidate(self, account_id: str) -> None:
        if self._handles.pop(account_id, None) is not None:
            logger.debug(f"Dropped cached client for {account_id}")
        self._inflight.pop(account_id, None)

    def _needs_refresh(self, handle: ClientHandle, account: Account) -> bool:
        expires_at = max(handle.expires_at or 0, account.expires_at or 0)
        return not handle.access_token or expires_at < self._clock() + REFRESH_MARGIN_MS

    async def get_live_client(self, account: Account) -> ClientHandle:
        handle = self._handles.get(account.id)
        if handle is None:
            handle = self._handle_factory(account)
            self._handles[account.id] = handle

        if not self._needs_refresh(handle, account):
            return handle

        task = self._inflight.get(account.id)
        if task is None:
            task = asyncio.ensure_future(self._refresh(account, handle))
            self._inflight[account.id] = task
        return await asyncio.shield(task)

    async def _refresh(self, account: Account, handle: ClientHandle) -> ClientHandle:
        logger.info(f"Refreshing access token for {account.email}")
        try:
            await asyncio.to_thread(self._refresher, handle.credentials)
        except Exception as e:
            logger.warning(f"Token refresh failed for {account.email}: {e}")
            raise TokenRefreshFailed(account.email, e) from e
        finally:
            if self._inflight.get(account.id) is asyncio.current_task():
                del self._inflight[account.id]
        self._write_through(account, handle)
        return handle

    def _write_through(self, account: Account, handle: ClientHandle) -> None:
        self._store.update_tokens(account, handle.access_token, handle.expires_at)

    def sync_tokens(self, account: Account, handle: ClientHandle) -> None:
        """Copy a token refreshed as a side effect of an API call back into the account record."""
        if not handle.access_token:
            return
        if handle.access_token != account.access_token or handle.expires_at != account.expires_at:
            logger.debug(f"Syncing out-of-band token update for {account.email}")
            self._write_through(account, handle)
