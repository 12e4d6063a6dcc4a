"""FastAPI dependencies for the acting platform user and authorization."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from opshub_access.service import AccessService

USER_ID_HEADER = "X-User-ID"

# Module-level service reference, set by app factory.
_service: AccessService | None = None


def init_auth(service: AccessService) -> None:
    """Called by the app factory to inject the service used for role checks."""
    global _service  # noqa: PLW0603
    _service = service


def _get_service() -> AccessService:
    assert _service is not None, "AccessService not initialized"
    return _service


def current_user_id(request: Request) -> int:
    """Return the acting platform user id.

    The default reads ``X-User-ID``, as set by the platform's
    authentication middleware. Deployments with their own session handling
    override this dependency via ``app.dependency_overrides``.
    """
    raw = request.headers.get(USER_ID_HEADER, "")
    if not raw:
        raise HTTPException(status_code=401, detail="Authentication required")
    try:
        return int(raw)
    except ValueError:
        raise HTTPException(
            status_code=401, detail=f"Invalid {USER_ID_HEADER} header",
        ) from None


def require_platform_admin(
    user_id: Annotated[int, Depends(current_user_id)],
) -> int:
    """Require the reserved admin role code. Returns 403 otherwise."""
    if not _get_service().is_platform_admin(user_id):
        raise HTTPException(status_code=403, detail="Platform admin access required")
    return user_id


def require_self_or_admin(caller_id: int, target_user_id: int) -> None:
    """Allow a caller to act on their own access, or an admin on anyone's."""
    if caller_id == target_user_id:
        return
    if not _get_service().is_platform_admin(caller_id):
        raise HTTPException(
            status_code=403, detail="Cannot act on another user's access",
        )
