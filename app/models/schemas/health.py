"""
Health Check Schemas
Models for system health endpoints
"""
from pydantic import BaseModel


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    scheduler: str
