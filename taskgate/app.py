from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from fastapi import Depends, FastAPI, Request

from taskgate.api.deps import rate_limit
from taskgate.api.error_handling import register_exception_handlers
from taskgate.api.routes import router
from taskgate.config import Settings, get_settings
from taskgate.logging import get_logger, set_correlation_id
from taskgate.service.rate_limit import RateLimiter
from taskgate.service.runtime import build_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


async def _run_rate_limit_sweep(limiter: RateLimiter, interval_seconds: int) -> None:
    """Background loop dropping expired rate limit windows."""
    interval = max(interval_seconds, 1)
    try:
        while True:
            await asyncio.sleep(interval)
            try:
                await limiter.sweep()
            except Exception as exc:
                logger.warning("rate_limit_sweep_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("rate_limit_sweep_cancelled")


def create_app(
    settings: Optional[Settings] = None,
    *,
    clock: Optional[Callable[[], datetime]] = None,
) -> FastAPI:
    """Build the API application.

    Settings are resolved when the app starts rather than at import, so
    ``taskgate.app:app`` can be imported without a configured environment.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        runtime = build_runtime(settings or get_settings(), clock=clock)
        app.state.runtime = runtime
        sweep_task: asyncio.Task | None = None
        if runtime.cache is None:
            sweep_task = asyncio.create_task(
                _run_rate_limit_sweep(
                    runtime.rate_limiter, runtime.settings.rate_limit_sweep_interval_seconds
                )
            )
        logger.info("app_started", version=__version__)

        yield

        if sweep_task:
            sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweep_task
        try:
            await runtime.close()
            logger.info("runtime_cleanup_complete")
        except Exception as exc:
            logger.error("shutdown_failed", error=str(exc))

    app = FastAPI(title="Task Manager Auth", version=__version__, lifespan=lifespan)

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Tag each request with ``X-Request-ID`` (client supplied or generated) for log tracing."""
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
        if request.url.path.startswith("/api/") or request.url.path == "/healthz":
            response.headers.setdefault(
                "Cache-Control", "no-store, no-cache, must-revalidate, private"
            )
        runtime = getattr(request.app.state, "runtime", None)
        if request.url.scheme == "https" and runtime and runtime.settings.enable_hsts:
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
            )
        return response

    register_exception_handlers(app)
    app.include_router(
        router,
        dependencies=[
            Depends(rate_limit("api", "rate_limit_max_requests", "rate_limit_window_seconds"))
        ],
    )

    @app.get("/healthz")
    async def health(request: Request) -> Dict[str, Any]:
        """Store and Redis probes, each bounded by ``HEALTH_CHECK_TIMEOUT_SECONDS``."""
        runtime = request.app.state.runtime
        checks: Dict[str, Dict[str, Any]] = {}

        async def _run_bounded(label: str, probe) -> bool:
            try:
                await asyncio.wait_for(probe(), HEALTH_CHECK_TIMEOUT_SECONDS)
                return True
            except asyncio.TimeoutError:
                logger.error(
                    "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
                )
            except Exception as exc:
                logger.error("health_check_failed", component=label, error=str(exc))
            return False

        db_ok = await _run_bounded(
            "database", lambda: asyncio.to_thread(runtime.store.verify_connection)
        )
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}

        if runtime.cache is not None:
            redis_ok = await _run_bounded("redis", runtime.cache.ping)
            checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
        else:
            redis_ok = True
            checks["redis"] = {"status": "not_configured"}

        return {
            "status": "healthy" if db_ok and redis_ok else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app


app = create_app()
