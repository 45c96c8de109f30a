"""Edge proxy application entry point.

Run with: uvicorn cloudbay.app.proxy.main:app
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from cloudbay import __version__
from cloudbay.app.config import get_settings
from cloudbay.app.logging import setup_logging
from cloudbay.app.middleware import LoggingMiddleware
from cloudbay.core.errors import CloudbayError
from cloudbay.core.logging_schema import LogEvent
from cloudbay.infra.postgresql import close_db, init_db
from cloudbay.infra.tls import TLSRegistrar

from .client import close_http_client
from .router import EdgeRouter
from .routes import router

setup_logging()
logger = logging.getLogger(__name__)


def create_app(edge_router: EdgeRouter | None = None) -> FastAPI:
    """Build the proxy app.

    With ``edge_router`` given the app uses it as-is and never touches the
    database (tests).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        settings = get_settings()
        owns_db = edge_router is None
        if owns_db:
            session_factory = await init_db()
            app.state.edge_router = EdgeRouter(session_factory, settings)
        else:
            app.state.edge_router = edge_router

        # Fire-and-forget; routing never waits on certificates
        base_domain = settings.network.base_domain
        TLSRegistrar(settings.tls).schedule(base_domain, [base_domain, f"www.{base_domain}"])

        logger.info(
            "Starting edge proxy",
            extra={"event": LogEvent.APP_STARTED, "base_domain": base_domain},
        )

        yield

        logger.info("Shutting down edge proxy", extra={"event": LogEvent.APP_STOPPED})
        await close_http_client()
        if owns_db:
            await close_db()

    app = FastAPI(title="cloudbay edge", version=__version__, lifespan=lifespan)
    app.add_middleware(LoggingMiddleware)

    @app.exception_handler(CloudbayError)
    async def cloudbay_error_handler(request: Request, exc: CloudbayError) -> JSONResponse:
        """Handle CloudbayError exceptions."""
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_response().model_dump(),
        )

    app.include_router(router)
    return app


app = create_app()
