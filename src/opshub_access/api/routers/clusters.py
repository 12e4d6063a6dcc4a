"""Cluster registry callbacks: invalidate on change, clean up on delete."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Response

from opshub_access.api.dependencies import require_platform_admin
from opshub_access.api.schemas import ClusterCleanupResponse
from opshub_access.service import AccessService

router = APIRouter(prefix="/api/clusters/{cluster_id}", tags=["clusters"])

_service: AccessService | None = None


def init_router(service: AccessService) -> None:
    global _service  # noqa: PLW0603
    _service = service


def _svc() -> AccessService:
    assert _service is not None, "AccessService not initialized"
    return _service


@router.post("/invalidate", status_code=204)
def cluster_changed(
    cluster_id: int,
    _: Annotated[int, Depends(require_platform_admin)],
) -> Response:
    _svc().cluster_changed(cluster_id)
    return Response(status_code=204)


@router.delete("/access", response_model=ClusterCleanupResponse)
def cluster_deleted(
    cluster_id: int,
    _: Annotated[int, Depends(require_platform_admin)],
) -> ClusterCleanupResponse:
    cleaned = _svc().cluster_deleted(cluster_id)
    return ClusterCleanupResponse(cluster_id=cluster_id, identities_cleaned=cleaned)
