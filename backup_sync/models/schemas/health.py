"""
Health Check Schemas
Models for service health and circuit diagnostics
"""
from typing import Any, Dict, List
from pydantic import BaseModel


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    scheduler_running: bool
    running_cadences: List[str]
    open_circuits: List[str]


class CircuitListResponse(BaseModel):
    """Circuit state for every tenant the breaker has seen."""
    circuits: List[Dict[str, Any]]
    total: int
