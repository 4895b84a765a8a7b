from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from farmauth.api.error_handling import register_exception_handlers
from farmauth.api.routes import router
from farmauth.config import Settings
from farmauth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

# Fails fast on missing or weak signing secrets
_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    from farmauth.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", app_name=runtime.settings.app_name)

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="FarmConnect Auth", version=__version__, lifespan=lifespan)


# Used when CORS_ALLOW_ORIGINS is unset; credentials rule out a wildcard
_DEV_ORIGINS: List[str] = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]

_SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "no-referrer",
    "API-Version": __version__,
}


app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_allow_origins or _DEV_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation id for log tracing.

    Taken from the X-Request-ID header when the client sends one, otherwise
    generated, and echoed back in the response header.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    for name, value in _SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    # Token responses must never be cached by proxies
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault(
            "Cache-Control", "no-store, no-cache, must-revalidate, private"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from farmauth.service.runtime import get_runtime

    runtime = get_runtime()
    return {
        "status": "healthy",
        "version": __version__,
        "store": "memory" if runtime.settings.use_memory_store else "postgres",
        "challenge_store": type(runtime.challenges).__name__,
    }
