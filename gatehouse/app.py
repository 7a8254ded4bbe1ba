from __future__ import annotations

from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from gatehouse.api.error_handling import register_exception_handlers
from gatehouse.api.routes import apply_context_cookies, router
from gatehouse.config import Settings
from gatehouse.logging import get_logger, set_correlation_id
from gatehouse.service.runtime import get_runtime

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime eagerly so store or config problems fail at startup."""
    runtime = get_runtime()
    logger.info(
        "app_started",
        store_type=type(runtime.store).__name__,
        mailer=type(runtime.mailer).__name__,
    )
    yield
    pool = getattr(runtime.store, "pool", None)
    if pool is not None:
        pool.close()
    logger.info("app_stopped")


app = FastAPI(title="Gatehouse", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Never a wildcard: credentials (cookies) are allowed
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def persist_auth_cookies(request: Request, call_next):
    """Apply cookie changes recorded on the request's auth context.

    Runs for error responses too, so a 401 still stores the return-to path
    and a revoked session still clears its cookies.
    """
    request.state.auth_ctx = None
    response = await call_next(request)
    ctx = getattr(request.state, "auth_ctx", None)
    if ctx is not None:
        apply_context_cookies(response, ctx, get_runtime())
    return response


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Tag logs with X-Request-ID (or a fresh UUID) and echo it back."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


@app.get("/healthz", tags=["health"])
async def healthz():
    return {"status": "ok", "version": __version__}


register_exception_handlers(app)
app.include_router(router)
