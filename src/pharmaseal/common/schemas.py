"""Shared Pydantic schemas for PharmaSeal."""

from datetime import datetime, timezone
from typing import Any, Optional

from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str = "0.1.0"
    service: str = "pharmaseal"


class ErrorBody(BaseModel):
    code: str
    message: str


class Envelope(BaseModel):
    """Uniform response wrapper for every route."""

    success: bool
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class PaginatedResponse(BaseModel):
    items: list
    total: int
    page: int
    page_size: int
    pages: int


def ok(data: Any = None) -> Envelope:
    return Envelope(success=True, data=jsonable_encoder(data))


def fail(code: str, message: str) -> Envelope:
    return Envelope(success=False, error=ErrorBody(code=code, message=message))
