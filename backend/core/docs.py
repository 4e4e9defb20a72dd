"""
Interactive API documentation served from a static API document.
"""

import json
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import FastAPI
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.responses import HTMLResponse, JSONResponse

from core.config import Settings, settings as default_settings
from utils.logging import get_logger

logger = get_logger(__name__)


def default_document(settings: Optional[Settings] = None) -> Dict[str, Any]:
    """The bundled API document."""
    settings = settings or default_settings
    return {
        "openapi": "3.0.3",
        "info": {
            "title": settings.api_title,
            "description": settings.api_description,
            "version": settings.api_version,
        },
        "servers": [{"url": settings.api_prefix, "description": "Versioned API"}],
        "paths": {
            "/health": {
                "get": {
                    "tags": ["health"],
                    "summary": "Service health",
                    "responses": {
                        "200": {
                            "description": "Service status, API version and database connectivity",
                            "content": {"application/json": {"schema": {"$ref": "#/components/schemas/Health"}}},
                        }
                    },
                }
            }
        },
        "components": {
            "schemas": {
                "Health": {
                    "type": "object",
                    "properties": {
                        "status": {"type": "string", "example": "healthy"},
                        "version": {"type": "string"},
                        "database": {"type": "string", "enum": ["connected", "disconnected"]},
                    },
                },
                "Error": {
                    "type": "object",
                    "properties": {
                        "status": {"type": "string", "enum": ["fail", "error"]},
                        "error": {"type": "string", "example": "not_found"},
                        "message": {"type": "string"},
                        "detail": {"type": "string", "nullable": True},
                        "status_code": {"type": "integer", "example": 404},
                    },
                },
            }
        },
    }


def load_document(path: Optional[Path] = None, settings: Optional[Settings] = None) -> Dict[str, Any]:
    """Load the API document from a JSON file, or return the bundled one when no path is given."""
    if path is None:
        return default_document(settings)
    with open(path, encoding="utf-8") as fh:
        document = json.load(fh)
    logger.info(f"Loaded API document from {path}")
    return document


def mount_api_docs(app: FastAPI, document: Dict[str, Any], path: str = "/api-docs") -> None:
    """Serve Swagger UI at ``path`` and the document at ``{path}/swagger.json``."""
    path = "/" + path.strip("/")
    document_url = f"{path}/swagger.json"
    title = document.get("info", {}).get("title", "API") + " - Docs"

    async def swagger_ui() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url=document_url, title=title)

    async def swagger_document() -> JSONResponse:
        return JSONResponse(document)

    app.add_api_route(path, swagger_ui, methods=["GET"], include_in_schema=False)
    app.add_api_route(f"{path}/", swagger_ui, methods=["GET"], include_in_schema=False)
    app.add_api_route(document_url, swagger_document, methods=["GET"], include_in_schema=False)
