"""Control-plane application entry point.

Run with: uvicorn cloudbay.app.main:app
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable

from fastapi import FastAPI, Request, WebSocket
from fastapi.responses import JSONResponse
from sqlalchemy import text

from cloudbay import __version__
from cloudbay.app.config import get_settings
from cloudbay.app.logging import setup_logging
from cloudbay.app.metrics import get_metrics_response, setup_metrics
from cloudbay.app.middleware import LoggingMiddleware
from cloudbay.app.terminal import TerminalRelay
from cloudbay.core.errors import CloudbayError
from cloudbay.core.logging_schema import LogEvent
from cloudbay.infra.postgresql import close_db, create_schema, init_db
from cloudbay.services.platform import Platform, build_platform

setup_logging()
logger = logging.getLogger(__name__)


async def _check_service(check_fn: Callable[[], Awaitable[object]]) -> str:
    """Check service health and return status string."""
    try:
        result = await check_fn()
    except RuntimeError:
        return "not initialized"
    except Exception as e:
        return f"error: {e}"
    return "disconnected" if result is False else "connected"


def create_app(platform: Platform | None = None) -> FastAPI:
    """Build the control-plane app.

    With ``platform`` given the lifespan skips database and driver setup
    (tests). The platform is then owned by the caller.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        settings = get_settings()
        owns_platform = platform is None

        if owns_platform:
            if settings.metrics.enabled:
                setup_metrics(settings.metrics.multiproc_dir)
            session_factory = await init_db()
            if settings.database.create_schema:
                await create_schema()
            app.state.platform = build_platform(session_factory, settings)
        else:
            app.state.platform = platform

        current: Platform = app.state.platform
        app.state.terminal = TerminalRelay(current.engine)

        # Unreachable substrates are reported, not fatal; /health shows them
        await current.engine.check_driver()
        logger.info(
            "Starting application",
            extra={"event": LogEvent.APP_STARTED, "mode": current.driver.mode},
        )

        yield

        logger.info("Shutting down application", extra={"event": LogEvent.APP_STOPPED})
        if owns_platform:
            await current.close()
            await close_db()

    app = FastAPI(title="cloudbay", version=__version__, lifespan=lifespan)
    app.add_middleware(LoggingMiddleware)

    @app.exception_handler(CloudbayError)
    async def cloudbay_error_handler(request: Request, exc: CloudbayError) -> JSONResponse:
        """Handle CloudbayError exceptions."""
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_response().model_dump(),
        )

    @app.get("/health")
    async def health(request: Request):
        current: Platform = request.app.state.platform

        async def check_database() -> None:
            async with current.engine.session_factory() as db:
                await db.execute(text("SELECT 1"))

        database, driver = await asyncio.gather(
            _check_service(check_database),
            _check_service(current.engine.check_driver),
        )
        services = {"database": database, current.driver.mode: driver}
        is_degraded = any(s != "connected" for s in services.values())

        return {
            "status": "degraded" if is_degraded else "ok",
            "version": __version__,
            "services": services,
        }

    @app.get("/metrics", include_in_schema=False)
    async def metrics():
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    @app.websocket("/ws/terminal")
    async def terminal(websocket: WebSocket) -> None:
        await websocket.app.state.terminal.handle(websocket)

    return app


app = create_app()
