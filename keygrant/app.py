from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from keygrant.api.error_handling import register_exception_handlers
from keygrant.api.routes import router
from keygrant.api.schemas import HealthResponse
from keygrant.config import Settings, get_settings
from keygrant.logging import get_logger, set_correlation_id
from keygrant.service.auth import SessionStore
from keygrant.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


async def _run_session_purge(store: SessionStore, interval_seconds: int) -> None:
    """Background loop deleting expired session rows."""
    try:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                purged = await asyncio.to_thread(store.purge_expired_sessions)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("session_purge_failed", error=str(exc))
            else:
                if purged:
                    logger.info("sessions_purged", count=purged)
    except asyncio.CancelledError:
        logger.info("session_purge_task_cancelled")
        raise


def create_app(
    settings: Optional[Settings] = None, runtime: Optional[Runtime] = None
) -> FastAPI:
    """Build the HTTP app.

    A ``runtime`` passed in is used as is and left open on shutdown; without
    one, the lifespan builds it from ``settings`` (or the environment) and
    closes it on exit.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_runtime = getattr(app.state, "runtime", None) is None
        if owns_runtime:
            app.state.runtime = Runtime(settings or get_settings())
        active: Runtime = app.state.runtime

        purge_task: asyncio.Task | None = None
        interval = active.settings.session_purge_interval_seconds
        if interval > 0:
            purge_task = asyncio.create_task(_run_session_purge(active.store, interval))

        yield

        if purge_task:
            purge_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await purge_task
        if owns_runtime:
            try:
                await active.close()
                logger.info("runtime_cleanup_complete")
            except Exception as exc:
                logger.error("shutdown_failed", error=str(exc))
            app.state.runtime = None

    app = FastAPI(title="keygrant", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Echo or mint an ``X-Request-ID`` and bind it to the request's logs."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        # session ids and grants must never sit in a shared cache
        response.headers.setdefault("Cache-Control", "no-store")
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz", response_model=HealthResponse, tags=["health"])
    async def health():
        active: Runtime = app.state.runtime
        store_ok = False
        try:
            store_ok = bool(
                await asyncio.wait_for(
                    asyncio.to_thread(active.store.ping), HEALTH_CHECK_TIMEOUT_SECONDS
                )
            )
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component="store")
        except Exception as exc:
            logger.error("health_check_store_failed", error=str(exc))
        body = HealthResponse(status="ok" if store_ok else "degraded", store=store_ok)
        return JSONResponse(status_code=200 if store_ok else 503, content=body.model_dump())

    return app


app = create_app()
