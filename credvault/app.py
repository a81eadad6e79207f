from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from credvault.api.error_handling import register_exception_handlers
from credvault.api.routes import router
from credvault.config import get_settings
from credvault.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    from credvault.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info(
        "app_started",
        version=__version__,
        store_type=type(runtime.store).__name__,
    )
    yield
    logger.info("app_stopped")


app = FastAPI(title="Credvault", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of the request with the client's X-Request-ID, or a fresh one."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # token-bearing responses must never be cached by proxies
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> JSONResponse:
    """Report whether the credential store answers within a bounded time."""
    from credvault.service.runtime import get_runtime

    runtime = get_runtime()
    store_ok = False
    try:
        store_ok = await asyncio.wait_for(
            asyncio.to_thread(runtime.store.ping), HEALTH_CHECK_TIMEOUT_SECONDS
        )
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
    except Exception as exc:
        logger.error("health_check_failed", error_type=type(exc).__name__, error=str(exc))

    body: Dict[str, Any] = {
        "status": "healthy" if store_ok else "unhealthy",
        "checks": {
            "store": {
                "status": "healthy" if store_ok else "unhealthy",
                "type": type(runtime.store).__name__,
            }
        },
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return JSONResponse(status_code=200 if store_ok else 503, content=body)
