"""
Common API response schemas.
"""

from typing import Any, List, Optional

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response format."""

    status: str = Field(..., description="'fail' for client errors, 'error' for server errors")
    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Human-readable error message")
    detail: Optional[str] = Field(None, description="Additional error details")
    status_code: int = Field(..., description="HTTP status code")


class ValidationErrorResponse(BaseModel):
    """Validation error response format."""

    status: str = "fail"
    error: str = "validation_error"
    message: str = "Request validation failed"
    errors: List[Any] = Field(..., description="List of validation errors")
    status_code: int = 422


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(..., description="Service status")
    version: str = Field(..., description="API version")
    database: str = Field(..., description="'connected' or 'disconnected'")
