"""
Shared fixtures for the GSC server tests.

- Settings with retries disabled
- An AccountStore and a ClientCache wired with a fake refresher and clock
- Client handles whose Google API services are MagicMocks
- A fake FastMCP Context exposing a GSCContext as lifespan context
"""

import json
import threading
import time
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock

import httplib2
import pytest
from googleapiclient.errors import HttpError

from gsc_accounts import AccountStore
from gsc_auth import ClientCache, ClientHandle, build_credentials
from gsc_config import Settings
from gsc_server import GSCContext

NOW_MS = 1_700_000_000_000
HOUR_MS = 3_600_000


def expiry_datetime(millis):
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc).replace(tzinfo=None)


def make_http_error(status, message="error"):
    content = json.dumps({"error": {"code": status, "message": message}}).encode("utf-8")
    return HttpError(resp=httplib2.Response({"status": status}), content=content)


def api_request(result=None, error=None):
    """A googleapiclient request stub whose execute() returns `result` or raises `error`."""
    request = MagicMock()
    if error is not None:
        request.execute.side_effect = error
    else:
        request.execute.return_value = result
    return request


class FakeRefresher:
    """Stands in for credentials.refresh(Request()); counts calls and mints sequential tokens."""

    def __init__(self, expires_in_ms=HOUR_MS, error=None, delay=0.0):
        self.expires_in_ms = expires_in_ms
        self.error = error
        self.delay = delay
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self, credentials):
        with self._lock:
            self.calls += 1
            n = self.calls
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        credentials.token = f"fresh-token-{n}"
        credentials.expiry = expiry_datetime(NOW_MS + self.expires_in_ms)


class FakeHandle(ClientHandle):
    """ClientHandle whose discovery services are MagicMocks."""

    def __init__(self, account, settings):
        super().__init__(account.id, build_credentials(account, settings), settings.http_timeout_seconds, email=account.email)
        self.search_console_api = MagicMock(name=f"searchconsole:{account.id}")
        self.indexing_api = MagicMock(name=f"indexing:{account.id}")

    def service(self, api, version):
        if api == "indexing":
            return self.indexing_api
        return self.search_console_api


@pytest.fixture
def settings():
    return Settings(
        client_id="client-id",
        client_secret="client-secret",
        request_retries=0,
        retry_backoff_seconds=0,
        retry_jitter_ms=0,
    )


@pytest.fixture
def store():
    return AccountStore()


@pytest.fixture
def refresher():
    return FakeRefresher()


@pytest.fixture
def clock():
    return SimpleNamespace(now=NOW_MS)


@pytest.fixture
def cache(store, settings, refresher, clock):
    return ClientCache(
        store,
        settings,
        refresher=refresher,
        handle_factory=lambda account: FakeHandle(account, settings),
        clock=lambda: clock.now,
    )


@pytest.fixture
def gsc_context(settings, store, cache):
    return GSCContext(settings, store=store, cache=cache)


@pytest.fixture
def ctx(gsc_context):
    return SimpleNamespace(request_context=SimpleNamespace(lifespan_context=gsc_context))
