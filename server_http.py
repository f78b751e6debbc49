# server_http.py
import os, contextlib
from starlette.applications import Starlette
from starlette.routing import Mount, Route
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse

import gsc_server
from gsc_config import configure_logging, load_settings

PUBLIC_PATHS = ("/healthz",)


# ---- Bearer auth middleware ----
class BearerAuthMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        if request.url.path in PUBLIC_PATHS:
            return await call_next(request)
        required = os.getenv("MCP_BEARER_TOKEN")
        if required:
            auth = request.headers.get("Authorization", "")
            if not auth.startswith("Bearer ") or auth.split(" ", 1)[1] != required:
                return JSONResponse({"error": "Unauthorized"}, status_code=401)
        return await call_next(request)


async def healthz(request: Request):
    return JSONResponse({"status": "ok"})


configure_logging(load_settings())
mcp = gsc_server.mcp


@contextlib.asynccontextmanager
async def lifespan(app):
    # Start MCP session manager on startup
    async with mcp.session_manager.run():
        yield


routes = [
    Route("/healthz", healthz),
    # MCP Streamable HTTP app at '/' (its endpoints are under /mcp by default)
    Mount("/", app=mcp.streamable_http_app()),
]

app = Starlette(
    routes=routes,
    middleware=[Middleware(BearerAuthMiddleware)],
    lifespan=lifespan,
)
