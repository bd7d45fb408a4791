from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from gatehide.api.error_handling import register_exception_handlers
from gatehide.api.routes import router
from gatehide.config import Settings, get_settings
from gatehide.logging import get_logger, set_correlation_id
from gatehide.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"


async def _run_sweeps(runtime: Runtime, interval_seconds: int) -> None:
    """Background loop purging expired sessions, reset tokens and codes."""

    try:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                removed = await asyncio.to_thread(runtime.auth.sweep)
                logger.debug("auth_sweep_completed", **removed)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - best-effort cleanup
                logger.warning("auth_sweep_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("auth_sweep_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime if one was not injected and run the sweep loop."""
    owns_runtime = getattr(app.state, "runtime", None) is None
    if owns_runtime:
        app.state.runtime = Runtime(app.state.settings)
    runtime: Runtime = app.state.runtime
    sweep_task: Optional[asyncio.Task] = None
    interval = runtime.settings.session_sweep_interval_seconds
    if interval > 0:
        sweep_task = asyncio.create_task(_run_sweeps(runtime, interval))

    yield

    if sweep_task:
        sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweep_task
    if owns_runtime:
        try:
            runtime.close()
            logger.info("runtime_cleanup_complete")
        except Exception as exc:
            logger.error("shutdown_failed", error=str(exc))


def create_app(
    runtime: Optional[Runtime] = None, settings: Optional[Settings] = None
) -> FastAPI:
    """Application factory.

    Pass a prebuilt ``runtime`` to share one service graph (tests do this);
    otherwise the lifespan builds one from ``settings`` on startup.
    Serve with ``uvicorn --factory gatehide.app:create_app``.
    """
    settings = runtime.settings if runtime else (settings or get_settings())
    app = FastAPI(title="GateHide Auth", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
    )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Tag every log line of a request with its X-Request-ID."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        if request.url.path.startswith("/v1/"):
            response.headers.setdefault("Cache-Control", "no-store")
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health() -> Dict[str, Any]:
        return {"status": "ok", "version": __version__}

    return app
