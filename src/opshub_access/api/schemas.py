"""Pydantic request/response schemas for the access API."""

from __future__ import annotations

from pydantic import BaseModel, Field

from opshub_access.models import RoleKind


class CredentialRequest(BaseModel):
    """Issue a credential. ``user_id`` defaults to the acting user.

    Issuing for anyone else needs the platform admin role.
    """

    user_id: int | None = None


class CredentialResponse(BaseModel):
    service_account: str
    namespace: str
    kubeconfig: str


class BindRequest(BaseModel):
    user_id: int
    role_name: str = Field(min_length=1)
    role_namespace: str = ""
    role_kind: RoleKind | None = None


class FullRevokeRequest(BaseModel):
    service_account: str = Field(min_length=1)
    username: str = ""


class ClusterCleanupResponse(BaseModel):
    cluster_id: int
    identities_cleaned: int


class ServiceAccountCredentialRequest(BaseModel):
    service_account: str = Field(min_length=1)
