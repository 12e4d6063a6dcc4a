"""Role-binding endpoints: bind, unbind, and the read-only views."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Response

from opshub_access.api.dependencies import (
    current_user_id,
    require_platform_admin,
    require_self_or_admin,
)
from opshub_access.api.schemas import BindRequest
from opshub_access.models import BoundUser, RoleBindingRecord, UserBinding
from opshub_access.service import AccessService

router = APIRouter(prefix="/api/clusters/{cluster_id}", tags=["bindings"])

_service: AccessService | None = None


def init_router(service: AccessService) -> None:
    global _service  # noqa: PLW0603
    _service = service


def _svc() -> AccessService:
    assert _service is not None, "AccessService not initialized"
    return _service


@router.post("/bindings", response_model=RoleBindingRecord, status_code=201)
def bind(
    cluster_id: int,
    body: BindRequest,
    user_id: Annotated[int, Depends(require_platform_admin)],
) -> RoleBindingRecord:
    return _svc().bind(
        cluster_id,
        body.user_id,
        body.role_name,
        body.role_namespace,
        body.role_kind,
        bound_by=user_id,
    )


@router.delete("/bindings/{target_user_id}/{role_name}", status_code=204)
def unbind(
    cluster_id: int,
    target_user_id: int,
    role_name: str,
    _: Annotated[int, Depends(require_platform_admin)],
    role_namespace: str = "",
) -> Response:
    _svc().unbind(cluster_id, target_user_id, role_name, role_namespace)
    return Response(status_code=204)


@router.get("/bindings", response_model=list[UserBinding])
def list_user_bindings(
    cluster_id: int,
    _: Annotated[int, Depends(current_user_id)],
    user_id: int | None = None,
) -> list[UserBinding]:
    return _svc().list_user_bindings(cluster_id, user_id)


@router.get("/roles/{role_name}/users", response_model=list[BoundUser])
def list_bound_users(
    cluster_id: int,
    role_name: str,
    _: Annotated[int, Depends(current_user_id)],
    role_namespace: str = "",
) -> list[BoundUser]:
    return _svc().list_bound_users(cluster_id, role_name, role_namespace)


@router.get("/users/{target_user_id}/bindings", response_model=list[UserBinding])
def user_cluster_roles(
    cluster_id: int,
    target_user_id: int,
    user_id: Annotated[int, Depends(current_user_id)],
) -> list[UserBinding]:
    require_self_or_admin(user_id, target_user_id)
    return _svc().list_user_bindings(cluster_id, target_user_id)
