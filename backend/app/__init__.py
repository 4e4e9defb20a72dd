"""
Application factory for the FastAPI backend.

This module centralizes app creation so tests and scripts can
instantiate an application with custom settings and collaborators.
"""

import asyncio
from contextlib import asynccontextmanager, suppress
from typing import Any, Dict, Iterable, Optional

from fastapi import APIRouter, FastAPI, Request, status
from fastapi.responses import PlainTextResponse

from api.v1.router import api_router
from core.config import Settings, settings as default_settings
from core.cors import CorsOptions
from core.docs import load_document, mount_api_docs
from core.errors import AppError, ErrorHandler, register_exception_handlers
from core.middleware import configure_middleware
from db.pool import DatabasePool
from utils.logging import get_logger


def original_url(request: Request) -> str:
    """Request path as the client sent it (still percent-encoded) plus the query string."""
    raw_path = request.scope.get("raw_path")
    if raw_path:
        path = raw_path.decode("latin-1").split("?", 1)[0]
    else:
        path = request.url.path
    query = request.scope.get("query_string", b"").decode("latin-1")
    return f"{path}?{query}" if query else path


async def not_found(request: Request):
    raise AppError(
        f"Can't find {original_url(request)} on the server! Are you sure you wanted to make a {request.method} request?",
        status.HTTP_404_NOT_FOUND,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the database connection in the background and close it on shutdown."""
    logger = get_logger("app", component="application")
    database = app.state.database

    # Fire-and-forget: the connector retries and reports its own failures
    connect_task = asyncio.create_task(database.connect(), name="database-connect")
    app.state.database_connect_task = connect_task
    logger.info("App starting", env=app.state.settings.app_env, api_prefix=app.state.settings.api_prefix)

    yield

    if not connect_task.done():
        connect_task.cancel()
        with suppress(asyncio.CancelledError):
            await connect_task
    await database.close()
    logger.info("App shutdown complete")


def create_app(
    settings: Optional[Settings] = None,
    *,
    router: Optional[APIRouter] = None,
    database: Optional[DatabasePool] = None,
    cors_options: Optional[CorsOptions] = None,
    credential_origins: Optional[Iterable[str]] = None,
    docs_document: Optional[Dict[str, Any]] = None,
    error_handler: Optional[ErrorHandler] = None,
) -> FastAPI:
    """Create and configure the FastAPI application instance."""
    settings = settings or default_settings

    app = FastAPI(
        title=settings.api_title,
        description=settings.api_description,
        version=settings.api_version,
        lifespan=lifespan,
        # /api-docs is the only documentation surface
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.settings = settings
    app.state.database = database if database is not None else DatabasePool(settings)

    configure_middleware(app, settings=settings, cors_options=cors_options, credential_origins=credential_origins)

    # Liveness check
    @app.get("/", response_class=PlainTextResponse, include_in_schema=False)
    async def root():
        return "Hello World!"

    app.include_router(router if router is not None else api_router, prefix=settings.api_prefix)

    if docs_document is None:
        docs_document = load_document(settings.docs_document_path, settings)
    mount_api_docs(app, docs_document, settings.docs_path)

    # methods=None matches every method, including ones the router has never heard of
    app.add_route("/{full_path:path}", not_found, methods=None, include_in_schema=False)

    register_exception_handlers(app, error_handler)

    return app
