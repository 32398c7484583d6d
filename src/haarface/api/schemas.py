"""Pydantic request/response schemas for the haarface API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class DetectedFace(BaseModel):
    """A detected face box in original image pixels."""

    x: int = Field(description="Left edge in pixels")
    y: int = Field(description="Top edge in pixels")
    width: int = Field(description="Box width in pixels")
    height: int = Field(description="Box height in pixels")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    cascade: str
    cascades_loaded: list[str]
    concurrent_requests: int
    queue_depth: int


class CascadeInfo(BaseModel):
    """Information about a known cascade."""

    name: str
    status: str = Field(description="Cascade status: 'active', 'downloaded', or 'available'")
    license: str


class CascadesResponse(BaseModel):
    """Response for the cascades listing endpoint."""

    cascades: list[CascadeInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
