"""Platform user search for the bind picker."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query

from opshub_access.api.dependencies import require_platform_admin
from opshub_access.models import UserPage
from opshub_access.service import MAX_PAGE_SIZE, AccessService

router = APIRouter(prefix="/api/users", tags=["users"])

_service: AccessService | None = None


def init_router(service: AccessService) -> None:
    global _service  # noqa: PLW0603
    _service = service


def _svc() -> AccessService:
    assert _service is not None, "AccessService not initialized"
    return _service


@router.get("", response_model=UserPage)
def search_users(
    _: Annotated[int, Depends(require_platform_admin)],
    keyword: str = "",
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=MAX_PAGE_SIZE),
) -> UserPage:
    return _svc().search_users(keyword, page, page_size)
