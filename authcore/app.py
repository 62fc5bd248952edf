from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI

from authcore.api.error_handling import register_exception_handlers
from authcore.api.routes import router
from authcore.config import Settings
from authcore.logging import get_logger, set_correlation_id
from authcore.service.errors import ServiceError
from authcore.storage.errors import TRANSIENT_STORE_ERRORS

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"
__build__ = _settings.build_sha

HEALTH_CHECK_TIMEOUT_SECONDS = 3

_sweep_task: asyncio.Task | None = None


async def _run_session_sweep(interval_seconds: int) -> None:
    from authcore.service.runtime import get_runtime

    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await get_runtime().sessions.sweep_expired()
        except ServiceError as exc:
            logger.warning("session_sweep_failed", error=exc.message)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup; drain background work and close stores on shutdown."""
    global _sweep_task
    from authcore.service.runtime import get_runtime

    runtime = get_runtime()
    interval = runtime.settings.session_sweep_interval_seconds
    if interval > 0:
        _sweep_task = asyncio.create_task(_run_session_sweep(interval))

    yield

    if _sweep_task:
        _sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _sweep_task
        _sweep_task = None
    await runtime.close()
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="Authcore", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation id taken from X-Request-ID or generated."""
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https":
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report durable store and fast store reachability, each bounded by a timeout."""
    from authcore.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, awaitable) -> bool:
        try:
            return bool(await asyncio.wait_for(awaitable, HEALTH_CHECK_TIMEOUT_SECONDS))
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except TRANSIENT_STORE_ERRORS as exc:
            logger.error(f"health_check_{label}_failed", error=str(exc))
        return False

    store_type = "memory" if runtime.settings.use_memory_store else "postgres"
    db_ok = await _run_bounded("database", asyncio.to_thread(runtime.store.ping))
    checks["database"] = {"status": "healthy" if db_ok else "unhealthy", "type": store_type}

    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.ping())
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy", "degraded": not redis_ok}
    else:
        redis_ok = True
        checks["redis"] = {"status": "not_configured"}

    return {
        "status": "healthy" if db_ok and redis_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "build": __build__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
