"""FastAPI routes for the Environment Provisioner."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, Response, status

from ..errors import (
    ConflictError,
    ExecutionError,
    NotFoundError,
    PersistenceError,
    ProvisionerError,
    ValidationError,
)
from ..models.environment import EnvironmentStatus
from ..orchestration.lifecycle import EnvironmentLifecycleManager

router = APIRouter()

ERROR_STATUS_CODES = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ConflictError: status.HTTP_409_CONFLICT,
    ExecutionError: status.HTTP_502_BAD_GATEWAY,
    PersistenceError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def get_lifecycle_manager(request: Request) -> EnvironmentLifecycleManager:
    manager = getattr(request.app.state, "lifecycle_manager", None)
    if manager is None:
        raise RuntimeError("EnvironmentLifecycleManager dependency not configured")
    return manager


@contextmanager
def translate_errors() -> Iterator[None]:
    """Map provisioner errors onto HTTP responses."""

    try:
        yield
    except ProvisionerError as exc:
        code = next(
            (code for error_type, code in ERROR_STATUS_CODES.items() if isinstance(exc, error_type)),
            status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
        raise HTTPException(status_code=code, detail=str(exc)) from exc


def _dump(model: Any) -> Dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True)


@router.get("/environments")
def list_environments(
    owner_id: Optional[str] = Query(None, alias="ownerId"),
    status_filter: Optional[str] = Query(None, alias="status"),
    manager: EnvironmentLifecycleManager = Depends(get_lifecycle_manager),
) -> List[Dict[str, Any]]:
    wanted = None
    if status_filter:
        try:
            wanted = EnvironmentStatus(status_filter.upper())
        except ValueError as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown status {status_filter}"
            ) from exc
    with translate_errors():
        return [_dump(environment) for environment in manager.list(owner_id=owner_id, status=wanted)]


@router.post("/environments", status_code=status.HTTP_201_CREATED)
def create_environment(
    payload: Dict[str, Any] = Body(...),
    manager: EnvironmentLifecycleManager = Depends(get_lifecycle_manager),
) -> Dict[str, Any]:
    with translate_errors():
        return _dump(manager.create(payload))


@router.get("/environments/{environment_id}")
def get_environment(
    environment_id: str,
    manager: EnvironmentLifecycleManager = Depends(get_lifecycle_manager),
) -> Dict[str, Any]:
    with translate_errors():
        return _dump(manager.get(environment_id))


@router.patch("/environments/{environment_id}")
def update_environment(
    environment_id: str,
    payload: Dict[str, Any] = Body(...),
    manager: EnvironmentLifecycleManager = Depends(get_lifecycle_manager),
) -> Dict[str, Any]:
    with translate_errors():
        return _dump(manager.update(environment_id, payload))


@router.delete("/environments/{environment_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_environment(
    environment_id: str,
    manager: EnvironmentLifecycleManager = Depends(get_lifecycle_manager),
) -> Response:
    with translate_errors():
        manager.delete(environment_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/environments/{environment_id}/status")
def get_environment_status(
    environment_id: str,
    manager: EnvironmentLifecycleManager = Depends(get_lifecycle_manager),
) -> Dict[str, Any]:
    with translate_errors():
        return _dump(manager.get_status(environment_id))


@router.get("/environments/{environment_id}/history")
def get_environment_history(
    environment_id: str,
    manager: EnvironmentLifecycleManager = Depends(get_lifecycle_manager),
) -> List[Dict[str, Any]]:
    with translate_errors():
        return [_dump(entry) for entry in manager.history(environment_id)]


__all__ = ["router", "translate_errors"]
