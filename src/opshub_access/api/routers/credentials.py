"""Credential issuance, re-minting, listing and revocation endpoints."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends

from opshub_access.api.dependencies import (
    current_user_id,
    require_platform_admin,
    require_self_or_admin,
)
from opshub_access.api.schemas import (
    CredentialRequest,
    CredentialResponse,
    FullRevokeRequest,
    ServiceAccountCredentialRequest,
)
from opshub_access.models import CredentialIdentity, RevocationSummary, ServiceIdentityRecord
from opshub_access.service import AccessService

router = APIRouter(prefix="/api/clusters/{cluster_id}", tags=["credentials"])

_service: AccessService | None = None


def init_router(service: AccessService) -> None:
    global _service  # noqa: PLW0603
    _service = service


def _svc() -> AccessService:
    assert _service is not None, "AccessService not initialized"
    return _service


@router.post("/credentials", response_model=CredentialResponse, status_code=201)
def request_credential(
    cluster_id: int,
    body: CredentialRequest,
    user_id: Annotated[int, Depends(current_user_id)],
) -> CredentialResponse:
    target = body.user_id if body.user_id is not None else user_id
    require_self_or_admin(user_id, target)
    issued = _svc().request_credential(cluster_id, target, requested_by=user_id)
    return CredentialResponse(**issued.model_dump())


@router.get("/credentials/me", response_model=CredentialResponse)
def existing_credential(
    cluster_id: int,
    user_id: Annotated[int, Depends(current_user_id)],
) -> CredentialResponse:
    issued = _svc().existing_credential(cluster_id, user_id)
    return CredentialResponse(**issued.model_dump())


@router.post("/credentials/service-account", response_model=CredentialResponse)
def service_account_credential(
    cluster_id: int,
    body: ServiceAccountCredentialRequest,
    _: Annotated[int, Depends(require_platform_admin)],
) -> CredentialResponse:
    issued = _svc().mint_for_service_account(cluster_id, body.service_account)
    return CredentialResponse(**issued.model_dump())


@router.delete("/credentials/{target_user_id}", response_model=RevocationSummary)
def revoke_credential(
    cluster_id: int,
    target_user_id: int,
    user_id: Annotated[int, Depends(current_user_id)],
) -> RevocationSummary:
    require_self_or_admin(user_id, target_user_id)
    return _svc().revoke_credential(cluster_id, target_user_id)


@router.post("/credentials/revoke-full", response_model=RevocationSummary)
def revoke_fully(
    cluster_id: int,
    body: FullRevokeRequest,
    _: Annotated[int, Depends(require_platform_admin)],
) -> RevocationSummary:
    return _svc().revoke_fully(cluster_id, body.service_account, body.username)


@router.get("/identities", response_model=list[ServiceIdentityRecord])
def list_identities(
    cluster_id: int,
    _: Annotated[int, Depends(current_user_id)],
    active_only: bool = False,
) -> list[ServiceIdentityRecord]:
    return _svc().list_identities(cluster_id, active_only=active_only)


@router.get("/credential-users", response_model=list[CredentialIdentity])
def list_credential_identities(
    cluster_id: int,
    _: Annotated[int, Depends(current_user_id)],
) -> list[CredentialIdentity]:
    return _svc().list_credential_identities(cluster_id)
