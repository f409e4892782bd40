"""Shared FastAPI dependency providers for controller layer."""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from backend.services.allotment_service import AllotmentService
from backend.services.conflict_resolver import ConflictResolver
from backend.services.release_scheduler import ReleaseScheduler


def _from_state(request: Request, attribute: str, label: str):
    service = getattr(request.app.state, attribute, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} is not initialized",
        )
    return service


def get_allotment_service(request: Request) -> AllotmentService:
    return _from_state(request, "allotment_service", "Allotment service")


def get_conflict_resolver(request: Request) -> ConflictResolver:
    service = getattr(request.app.state, "conflict_resolver", None)
    if service is None:
        allotment_service = getattr(request.app.state, "allotment_service", None)
        if allotment_service is not None:
            service = allotment_service.resolver
            request.app.state.conflict_resolver = service
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Conflict resolver is not initialized",
        )
    return service


def get_release_scheduler(request: Request) -> ReleaseScheduler:
    return _from_state(request, "release_scheduler", "Release scheduler")
