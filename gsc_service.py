import asyncio
import logging
import random
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

import httplib2
from google.auth.exceptions import RefreshError
from googleapiclient.errors import HttpError

from gsc_auth import ClientHandle
from gsc_config import Settings
from gsc_errors import TokenRefreshFailed

logger = logging.getLogger(__name__)

MAX_ROW_LIMIT = 25000
TRANSIENT_STATUSES = {408, 429, 500, 502, 503, 504}


def to_domain_property(site_url: str) -> str:
    """
    Convert a URL-prefix property to its domain-property form.

    https://www.example.com/ -> sc-domain:www.example.com. Anything that is not
    an http(s) URL (including sc-domain: values) is returned unchanged.
    """
    try:
        parsed = urlparse(site_url)
    except ValueError:
        return site_url
    if parsed.scheme in ("http", "https") and parsed.hostname:
        return f"sc-domain:{parsed.hostname}"
    return site_url


def is_permission_error(exc: BaseException) -> bool:
    return "permission" in str(exc).lower()


def http_status(exc: BaseException) -> Optional[int]:
    return getattr(getattr(exc, "resp", None), "status", None)


# Retry helper for synchronous googleapiclient .execute()
async def execute_with_retries(
    execute_callable: Callable[[], Any],
    retries: int = 5,
    backoff_seconds: float = 2.0,
    jitter_ms: int = 300,
):
    last_exc = None
    for attempt in range(max(0, retries) + 1):
        try:
            # Run blocking execute() off the event loop
            return await asyncio.to_thread(execute_callable)
        except HttpError as e:
            if http_status(e) not in TRANSIENT_STATUSES:
                raise
            last_exc = e
        except (OSError, httplib2.HttpLib2Error) as e:
            last_exc = e
        if attempt < retries:
            backoff = backoff_seconds ** (attempt + 1)
            jitter = random.uniform(0, max(0, jitter_ms) / 1000.0)
            logger.debug(f"Transient Google API error ({last_exc}); retrying in {backoff + jitter:.1f}s")
            await asyncio.sleep(backoff + jitter)
    raise last_exc


def build_search_analytics_body(
    start_date: str,
    end_date: str,
    dimensions: Optional[List[str]] = None,
    search_type: Optional[str] = None,
    aggregation_type: Optional[str] = None,
    row_limit: int = 1000,
    start_row: Optional[int] = None,
    data_state: Optional[str] = "all",
    page_filter: Optional[str] = None,
    query_filter: Optional[str] = None,
    country_filter: Optional[str] = None,
    device_filter: Optional[str] = None,
    filter_operator: Optional[str] = None,
) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "startDate": start_date,
        "endDate": end_date,
        "rowLimit": min(int(row_limit), MAX_ROW_LIMIT),
    }
    if dimensions:
        body["dimensions"] = list(dimensions)
    if search_type:
        body["type"] = search_type
    if aggregation_type:
        body["aggregationType"] = aggregation_type
    if start_row is not None:
        body["startRow"] = int(start_row)
    if data_state:
        body["dataState"] = data_state

    operator = filter_operator or "contains"
    filters = []
    if page_filter:
        filters.append({"dimension": "page", "operator": operator, "expression": page_filter})
    if query_filter:
        filters.append({"dimension": "query", "operator": operator, "expression": query_filter})
    if country_filter:
        filters.append({"dimension": "country", "operator": "equals", "expression": country_filter})
    if device_filter:
        filters.append({"dimension": "device", "operator": "equals", "expression": device_filter})
    if filters:
        body["dimensionFilterGroups"] = [{"groupType": "and", "filters": filters}]
    return body


class SearchConsoleService:
    """
    Search Console and Indexing API calls for one authenticated client.

    Calls keyed by a site property retry once with the sc-domain: form of the
    property when Google answers with a permission error.
    """

    def __init__(self, handle: ClientHandle, settings: Settings, on_call: Optional[Callable[[], None]] = None):
        self._handle = handle
        self._settings = settings
        self._on_call = on_call

    async def _execute(self, execute_callable: Callable[[], Any]):
        try:
            return await execute_with_retries(
                execute_callable,
                retries=self._settings.request_retries,
                backoff_seconds=self._settings.retry_backoff_seconds,
                jitter_ms=self._settings.retry_jitter_ms,
            )
        except RefreshError as e:
            logger.warning(f"Token refresh failed mid-call for {self._handle.email}: {e}")
            raise TokenRefreshFailed(self._handle.email, e) from e
        finally:
            # the authorized http may have refreshed the token mid-call
            if self._on_call is not None:
                self._on_call()

    async def _with_permission_fallback(self, site_url: str, call):
        try:
            return await call(site_url)
        except Exception as e:
            if isinstance(e, TokenRefreshFailed) or not is_permission_error(e):
                raise
            fallback_url = to_domain_property(site_url)
            logger.info(f"Permission error for {site_url}; retrying as {fallback_url}")
            return await call(fallback_url)

    async def list_sites(self) -> List[Dict[str, Any]]:
        service = self._handle.search_console()
        response = await self._execute(lambda: service.sites().list().execute())
        return response.get("siteEntry", [])

    async def search_analytics(self, site_url: str, body: Dict[str, Any]) -> Dict[str, Any]:
        service = self._handle.search_console()

        def call(url):
            return self._execute(lambda: service.searchanalytics().query(siteUrl=url, body=body).execute())

        return await self._with_permission_fallback(site_url, call)

    async def inspect_url(self, site_url: str, inspection_url: str, language_code: str = "en-US") -> Dict[str, Any]:
        service = self._handle.search_console()
        request = {
            "inspectionUrl": inspection_url,
            "siteUrl": site_url,
            "languageCode": language_code,
        }
        return await self._execute(lambda: service.urlInspection().index().inspect(body=request).execute())

    async def submit_url_for_indexing(self, url: str, type: str = "URL_UPDATED") -> Dict[str, Any]:
        service = self._handle.indexing()
        body = {"url": url, "type": type}
        return await self._execute(lambda: service.urlNotifications().publish(body=body).execute())

    async def list_sitemaps(self, site_url: str) -> List[Dict[str, Any]]:
        service = self._handle.search_console()

        def call(url):
            return self._execute(lambda: service.sitemaps().list(siteUrl=url).execute())

        response = await self._with_permission_fallback(site_url, call)
        return response.get("sitemap", [])

    async def submit_sitemap(self, site_url: str, feedpath: str) -> None:
        service = self._handle.search_console()

        def call(url):
            return self._execute(lambda: service.sitemaps().submit(siteUrl=url, feedpath=feedpath).execute())

        await self._with_permission_fallback(site_url, call)
