from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from otplogin.api.error_handling import register_exception_handlers
from otplogin.api.routes import router
from otplogin.config import Settings, get_settings
from otplogin.logging import get_logger, set_correlation_id
from otplogin.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3
_MIN_SWEEP_INTERVAL_SECONDS = 1.0


async def _run_revocation_sweep(runtime: Runtime, interval_seconds: float) -> None:
    """Background loop deleting dead revocations and idle fallback entries.

    Each pass is an idempotent delete-by-predicate, so overlapping with a
    sweep from another process is harmless.
    """
    interval = max(float(interval_seconds), _MIN_SWEEP_INTERVAL_SECONDS)
    try:
        while True:
            await asyncio.sleep(interval)
            try:
                await asyncio.to_thread(runtime.sweep)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                # the next tick retries; requests never depend on the sweep
                logger.error(
                    "revocation_sweep_failed",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
    except asyncio.CancelledError:
        logger.info("revocation_sweep_task_cancelled")


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


def create_app(runtime: Optional[Runtime] = None, settings: Optional[Settings] = None) -> FastAPI:
    """Build the FastAPI app.

    Without an injected ``runtime`` one is constructed from ``settings`` at
    startup, so importing this module never touches Redis or the database.
    """
    settings = settings or (runtime.settings if runtime is not None else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.runtime is None:
            app.state.runtime = Runtime(settings)
        active: Runtime = app.state.runtime
        sweep_task = asyncio.create_task(
            _run_revocation_sweep(active, active.settings.revocation_sweep_interval_seconds)
        )
        logger.info(
            "app_started",
            cache_backend=active.cache.backend_name,
            sweep_interval_seconds=active.settings.revocation_sweep_interval_seconds,
        )

        yield

        sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweep_task
        try:
            await active.close()
            logger.info("runtime_cleanup_complete")
        except Exception as exc:
            logger.error("shutdown_failed", error=str(exc))

    app = FastAPI(title="OTP Login", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=False,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=[
            "X-Request-ID",
            "Retry-After",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
        ],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Bind X-Request-ID (or a fresh uuid4) for logging and echo it back."""
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
        # tokens travel in bodies; keep them out of shared caches
        response.headers.setdefault("Cache-Control", "no-store")
        response.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health(request: Request) -> Dict[str, Any]:
        """Store and cache reachability, each probe bounded by a timeout."""
        active: Runtime = request.app.state.runtime

        async def _run_bounded(label: str, func) -> bool:
            try:
                await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
                return True
            except asyncio.TimeoutError:
                logger.error(
                    "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
                )
            except Exception as exc:
                logger.error("health_check_failed", component=label, error=str(exc))
            return False

        checks: Dict[str, Dict[str, Any]] = {}
        db_ok = await _run_bounded("database", active.store.verify_connection)
        checks["database"] = {
            "status": "healthy" if db_ok else "unhealthy",
            "type": "memory" if active.settings.use_memory_store else "postgres",
        }

        cache = active.cache
        if cache.primary is None:
            checks["redis"] = {"status": "not_configured", "backend": cache.backend_name}
        else:
            redis_ok = await _run_bounded("redis", cache.primary.verify_connection)
            checks["redis"] = {
                "status": "healthy" if redis_ok else "unhealthy",
                "degraded": not redis_ok or cache.using_fallback,
                "backend": cache.backend_name,
            }

        # a Redis outage degrades to the fallback, it does not fail the service
        return {
            "status": "healthy" if db_ok else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app


app = create_app()
