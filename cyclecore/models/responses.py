"""API envelope and request models.

All API responses are wrapped in this envelope for consistency:
{ success: bool, data: T | None, error: str | None, meta: dict | None }
"""

from __future__ import annotations

from typing import Generic, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """JSON envelope for all API responses."""

    success: bool
    data: T | None = None
    error: str | None = None
    meta: dict | None = None


class CleanupRequest(BaseModel):
    """Body of ``POST /cleanup``."""

    cycle_id: str = Field(default="manual", min_length=1, max_length=128)
