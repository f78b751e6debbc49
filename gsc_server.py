from typing import Annotated, Any, Callable, Dict, List, Literal, Optional, Tuple
import json
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from googleapiclient.errors import HttpError
from pydantic import Field

# MCP
from mcp.server.fastmcp import Context, FastMCP
from mcp.shared.exceptions import McpError
from mcp.types import ErrorData

from gsc_accounts import Account, AccountStore, load_accounts
from gsc_analytics import QuickWinThresholds, compare_periods as compare_period_rows, detect_quick_wins as rank_quick_wins, summarize_quick_wins
from gsc_auth import ClientCache
from gsc_config import Settings, configure_logging, load_settings
from gsc_errors import GSCError, InvalidParameter
from gsc_service import MAX_ROW_LIMIT, SearchConsoleService, build_search_analytics_body, http_status

logger = logging.getLogger(__name__)

VALID_DIMENSIONS = ("query", "page", "country", "device", "searchAppearance", "date")

SearchType = Literal["web", "image", "video", "news", "discover", "googleNews"]
AggregationType = Literal["auto", "byNewsShowcasePanel", "byProperty", "byPage"]
DataState = Literal["all", "final"]
Device = Literal["DESKTOP", "MOBILE", "TABLET"]
FilterOperator = Literal["equals", "contains", "notEquals", "notContains", "includingRegex", "excludingRegex"]
NotificationType = Literal["URL_UPDATED", "URL_DELETED"]

AccountParam = Annotated[
    Optional[str],
    Field(description="Account id or Google account email. Defaults to the first registered account."),
]
SiteUrlParam = Annotated[
    str,
    Field(description="The site URL as defined in Search Console, e.g. sc-domain:example.com or https://www.example.com/"),
]


class GSCContext:
    """Process-wide state shared by every tool call: settings, accounts and cached clients."""

    def __init__(
        self,
        settings: Settings,
        store: Optional[AccountStore] = None,
        cache: Optional[ClientCache] = None,
        account_source: Optional[Callable[[str], Optional[Dict[str, Any]]]] = None,
        token_sink: Optional[Callable[[Account], None]] = None,
    ):
        self.settings = settings
        if store is None:
            store = AccountStore(account_source=account_source, token_sink=token_sink)
        self.store = store
        self.cache = cache if cache is not None else ClientCache(self.store, settings)

    @classmethod
    def from_environment(cls, environ=None, account_source=None, token_sink=None) -> "GSCContext":
        settings = load_settings(environ)
        context = cls(settings, account_source=account_source, token_sink=token_sink)
        load_accounts(context.store, settings)
        return context

    async def service_for(self, selector: Optional[str] = None) -> Tuple[SearchConsoleService, Account]:
        account = self.store.resolve(selector)
        handle = await self.cache.get_live_client(account)
        service = SearchConsoleService(
            handle,
            self.settings,
            on_call=lambda: self.cache.sync_tokens(account, handle),
        )
        return service, account


@asynccontextmanager
async def gsc_lifespan(server: FastMCP):
    # One context per server instance, shared by every session
    context = getattr(server, "gsc_context", None)
    if context is None:
        context = GSCContext.from_environment()
        server.gsc_context = context
    yield context


mcp = FastMCP("gsc-server", lifespan=gsc_lifespan)


def _context(ctx: Context) -> GSCContext:
    return ctx.request_context.lifespan_context


def _tool_error(e: GSCError) -> McpError:
    return McpError(ErrorData(code=e.code, message=str(e)))


def _to_json(payload: Any) -> str:
    return json.dumps(payload, indent=2, default=str)


def _parse_dimensions(value: Optional[str], field: str = "dimensions") -> Optional[List[str]]:
    if value is None or not value.strip():
        return None
    dimensions = [d.strip() for d in value.split(",") if d.strip()]
    invalid = [d for d in dimensions if d not in VALID_DIMENSIONS]
    if invalid:
        raise InvalidParameter(field, f"unsupported dimension(s) {', '.join(invalid)}; use {', '.join(VALID_DIMENSIONS)}")
    return dimensions


@mcp.tool()
async def register_account(
    ctx: Context,
    id: str,
    email: str,
    refreshToken: str,
    accessToken: Optional[str] = None,
) -> str:
    """
    Register (or replace) a Google account's OAuth credentials for this server session.

    Args:
        id: Stable identifier for the account (e.g. "main", "client-a")
        email: Google account email
        refreshToken: OAuth refresh token with the webmasters scope
        accessToken: Optional current access token; refreshed automatically when missing or expired
    """
    app = _context(ctx)
    try:
        account = app.store.register(id, email, refreshToken, accessToken)
    except GSCError as e:
        raise _tool_error(e) from e
    return _to_json({
        "success": True,
        "account": account.to_public(),
        "totalAccounts": app.store.count,
    })


@mcp.tool()
async def list_accounts(ctx: Context) -> str:
    """
    List the Google accounts registered with this server.
    """
    app = _context(ctx)
    accounts = app.store.list()
    return _to_json({
        "accounts": [a.to_public() for a in accounts],
        "totalAccounts": len(accounts),
    })


@mcp.tool()
async def list_sites(ctx: Context, account: AccountParam = None) -> str:
    """
    List all Search Console properties the account has access to.

    Args:
        account: Account id or email (optional, uses the first account if not specified)
    """
    try:
        service, used = await _context(ctx).service_for(account)
        sites = await service.list_sites()
    except GSCError as e:
        raise _tool_error(e) from e
    return _to_json({
        "account": used.email,
        "sites": sites,
        "totalSites": len(sites),
    })


@mcp.tool()
async def search_analytics(
    ctx: Context,
    siteUrl: SiteUrlParam,
    startDate: Annotated[str, Field(description="Start date in YYYY-MM-DD format")],
    endDate: Annotated[str, Field(description="End date in YYYY-MM-DD format")],
    account: AccountParam = None,
    dimensions: Annotated[Optional[str], Field(description="Comma-separated dimensions: query, page, country, device, searchAppearance, date")] = None,
    type: Optional[SearchType] = None,
    aggregationType: Optional[AggregationType] = None,
    rowLimit: Annotated[int, Field(ge=1, le=MAX_ROW_LIMIT, description="Maximum rows to return (up to 25,000)")] = 1000,
    startRow: Annotated[Optional[int], Field(ge=0, description="Starting row for pagination")] = None,
    dataState: DataState = "all",
    pageFilter: Optional[str] = None,
    queryFilter: Optional[str] = None,
    countryFilter: Annotated[Optional[str], Field(description="Country filter (ISO 3166-1 alpha-3)")] = None,
    deviceFilter: Optional[Device] = None,
    filterOperator: Optional[FilterOperator] = "contains",
) -> str:
    """
    Get search performance data with up to 25,000 rows, filters and flexible date ranges.

    Page and query filters use filterOperator; country and device filters always match exactly.
    """
    try:
        body = build_search_analytics_body(
            startDate,
            endDate,
            dimensions=_parse_dimensions(dimensions),
            search_type=type,
            aggregation_type=aggregationType,
            row_limit=rowLimit,
            start_row=startRow,
            data_state=dataState,
            page_filter=pageFilter,
            query_filter=queryFilter,
            country_filter=countryFilter,
            device_filter=deviceFilter,
            filter_operator=filterOperator,
        )
        service, used = await _context(ctx).service_for(account)
        result = await service.search_analytics(siteUrl, body)
    except GSCError as e:
        raise _tool_error(e) from e
    return _to_json({
        "account": used.email,
        "siteUrl": siteUrl,
        "dateRange": {"start": startDate, "end": endDate},
        "request": body,
        "rowCount": len(result.get("rows", [])),
        "data": result,
    })


@mcp.tool()
async def detect_quick_wins(
    ctx: Context,
    siteUrl: SiteUrlParam,
    startDate: Annotated[str, Field(description="Start date in YYYY-MM-DD format")],
    endDate: Annotated[str, Field(description="End date in YYYY-MM-DD format")],
    account: AccountParam = None,
    minImpressions: Annotated[float, Field(description="Minimum impressions threshold")] = 100,
    maxCtr: Annotated[float, Field(description="Maximum CTR percentage")] = 3.0,
    positionRangeMin: Annotated[float, Field(description="Minimum position")] = 4,
    positionRangeMax: Annotated[float, Field(description="Maximum position")] = 20,
    limit: Annotated[int, Field(ge=0, description="Maximum quick wins to return")] = 50,
) -> str:
    """
    Detect SEO quick wins: query/page pairs with high impressions but low CTR in positions 4-20.
    """
    thresholds = QuickWinThresholds(
        min_impressions=minImpressions,
        max_ctr=maxCtr,
        position_min=positionRangeMin,
        position_max=positionRangeMax,
        limit=limit,
    )
    try:
        service, used = await _context(ctx).service_for(account)
        body = build_search_analytics_body(
            startDate, endDate, dimensions=["query", "page"], row_limit=MAX_ROW_LIMIT, data_state="all"
        )
        result = await service.search_analytics(siteUrl, body)
    except GSCError as e:
        raise _tool_error(e) from e

    quick_wins = rank_quick_wins(result.get("rows", []), thresholds)
    return _to_json({
        "account": used.email,
        "siteUrl": siteUrl,
        "dateRange": {"start": startDate, "end": endDate},
        "thresholds": {
            "minImpressions": minImpressions,
            "maxCtr": maxCtr,
            "positionRange": f"{positionRangeMin}-{positionRangeMax}",
        },
        "summary": summarize_quick_wins(quick_wins),
        "quickWins": quick_wins,
    })


@mcp.tool()
async def compare_periods(
    ctx: Context,
    siteUrl: SiteUrlParam,
    currentStartDate: Annotated[str, Field(description="Current period start date (YYYY-MM-DD)")],
    currentEndDate: Annotated[str, Field(description="Current period end date (YYYY-MM-DD)")],
    previousStartDate: Annotated[str, Field(description="Previous period start date (YYYY-MM-DD)")],
    previousEndDate: Annotated[str, Field(description="Previous period end date (YYYY-MM-DD)")],
    account: AccountParam = None,
    dimensions: Annotated[Optional[str], Field(description="Comma-separated dimensions to compare by (default: query)")] = None,
    rowLimit: Annotated[int, Field(ge=1, le=MAX_ROW_LIMIT, description="Maximum rows fetched per period")] = 100,
) -> str:
    """
    Compare search performance between two time periods, biggest click gains first.
    """
    try:
        dimension_list = _parse_dimensions(dimensions) or ["query"]
        service, used = await _context(ctx).service_for(account)
        current, previous = await asyncio.gather(
            service.search_analytics(siteUrl, build_search_analytics_body(
                currentStartDate, currentEndDate, dimensions=dimension_list, row_limit=rowLimit, data_state="all"
            )),
            service.search_analytics(siteUrl, build_search_analytics_body(
                previousStartDate, previousEndDate, dimensions=dimension_list, row_limit=rowLimit, data_state="all"
            )),
        )
    except GSCError as e:
        raise _tool_error(e) from e

    result = compare_period_rows(current.get("rows", []), previous.get("rows", []))
    summary = result["summary"]
    summary["currentPeriod"] = {"start": currentStartDate, "end": currentEndDate, **summary["currentPeriod"]}
    summary["previousPeriod"] = {"start": previousStartDate, "end": previousEndDate, **summary["previousPeriod"]}
    return _to_json({
        "account": used.email,
        "siteUrl": siteUrl,
        "dimensions": dimension_list,
        **result,
    })


@mcp.tool()
async def inspect_url(
    ctx: Context,
    siteUrl: SiteUrlParam,
    inspectionUrl: Annotated[str, Field(description="The URL to inspect")],
    account: AccountParam = None,
    languageCode: Annotated[str, Field(description="Language code for messages")] = "en-US",
) -> str:
    """
    Inspect a URL's indexing status in Google Search Console.
    """
    try:
        service, used = await _context(ctx).service_for(account)
        result = await service.inspect_url(siteUrl, inspectionUrl, languageCode)
    except GSCError as e:
        raise _tool_error(e) from e
    return _to_json({
        "account": used.email,
        "inspectedUrl": inspectionUrl,
        "result": result,
    })


@mcp.tool()
async def submit_url_for_indexing(
    ctx: Context,
    url: Annotated[str, Field(description="The full URL to submit for indexing")],
    account: AccountParam = None,
    type: Annotated[NotificationType, Field(description="URL_UPDATED to request indexing, URL_DELETED to request removal")] = "URL_UPDATED",
) -> str:
    """
    Submit a URL to Google for indexing or request its removal (Indexing API).
    """
    try:
        service, used = await _context(ctx).service_for(account)
        result = await service.submit_url_for_indexing(url, type)
    except GSCError as e:
        raise _tool_error(e) from e
    except HttpError as e:
        if http_status(e) != 403:
            raise
        logger.warning(f"Indexing API refused {url}: {e}")
        return _to_json({
            "success": False,
            "error": "Indexing API not enabled or insufficient permissions",
            "suggestion": "Enable the Indexing API in Google Cloud Console and ensure your OAuth has the indexing scope.",
            "url": url,
        })

    if type == "URL_UPDATED":
        message = "Successfully submitted URL for indexing. Google will crawl this URL soon."
    else:
        message = "Successfully requested URL removal from index."
    return _to_json({
        "success": True,
        "account": used.email,
        "url": url,
        "type": type,
        "notifyTime": datetime.now(timezone.utc).isoformat(),
        "message": message,
        "response": result,
    })


@mcp.tool()
async def list_sitemaps(ctx: Context, siteUrl: SiteUrlParam, account: AccountParam = None) -> str:
    """
    List all sitemaps submitted for a Search Console property.
    """
    try:
        service, used = await _context(ctx).service_for(account)
        sitemaps = await service.list_sitemaps(siteUrl)
    except GSCError as e:
        raise _tool_error(e) from e
    return _to_json({
        "account": used.email,
        "siteUrl": siteUrl,
        "sitemaps": sitemaps,
    })


@mcp.tool()
async def submit_sitemap(
    ctx: Context,
    siteUrl: SiteUrlParam,
    feedpath: Annotated[str, Field(description="The full URL of the sitemap to submit")],
    account: AccountParam = None,
) -> str:
    """
    Submit a new sitemap or resubmit an existing one to Google.
    """
    try:
        service, used = await _context(ctx).service_for(account)
        await service.submit_sitemap(siteUrl, feedpath)
    except GSCError as e:
        raise _tool_error(e) from e
    return _to_json({
        "success": True,
        "account": used.email,
        "siteUrl": siteUrl,
        "sitemap": feedpath,
        "message": "Sitemap submitted successfully",
    })


def main():
    configure_logging(load_settings())
    # Start the MCP server on stdio transport
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
