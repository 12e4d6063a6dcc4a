"""Core data models for opshub-access.

Defines the schemas for:
- Cluster access material read from the cluster registry
- Platform users read from the identity store
- Ledger rows (service identities and role bindings)
- Issued credentials and read-only listing views
"""

from __future__ import annotations

import enum
from datetime import datetime

from pydantic import BaseModel, Field

ADMIN_SELECTOR = "admin"


class RoleKind(enum.StrEnum):
    CLUSTER_ROLE = "ClusterRole"
    ROLE = "Role"


# --- Collaborator views ---


class ClusterAccess(BaseModel):
    """What the core needs to know about a registered cluster.

    ``admin_kubeconfig`` is the decrypted administrative credential. It is
    read on demand and never persisted by this package.
    """

    cluster_id: int
    name: str
    api_endpoint: str = ""
    admin_kubeconfig: str = Field(default="", repr=False)


class PlatformUser(BaseModel):
    """A platform user as seen by the identity store."""

    user_id: int
    username: str
    real_name: str = ""
    email: str = ""
    roles: list[str] = Field(default_factory=list)


# --- Ledger rows ---


class ServiceIdentityRecord(BaseModel):
    """One ServiceAccount issued to a platform user on one cluster."""

    id: int | None = None
    cluster_id: int
    user_id: int
    service_account: str
    namespace: str
    is_active: bool = True
    created_by: int
    created_at: datetime
    revoked_at: datetime | None = None


class RoleBindingRecord(BaseModel):
    """A platform user bound to a ClusterRole or Role on one cluster.

    An empty ``role_namespace`` means the binding is cluster-scoped.
    """

    id: int | None = None
    cluster_id: int
    user_id: int
    role_name: str
    role_namespace: str = ""
    role_kind: RoleKind
    bound_by: int
    created_at: datetime


# --- Results and listing views ---


class IssuedCredential(BaseModel):
    """Result of issuing a credential: the identity plus its kubeconfig."""

    service_account: str
    namespace: str
    kubeconfig: str = Field(repr=False)


class BoundUser(BaseModel):
    user_id: int
    username: str
    real_name: str = ""
    bound_at: datetime


class UserBinding(BaseModel):
    id: int | None = None
    cluster_id: int
    user_id: int
    username: str
    real_name: str = ""
    role_name: str
    role_namespace: str = ""
    role_kind: RoleKind
    created_at: datetime


class RevocationSummary(BaseModel):
    """What a revocation removed from the cluster and the ledger."""

    cluster_id: int
    user_id: int | None = None
    service_account: str
    bindings_deleted: list[str] = Field(default_factory=list)
    service_accounts_deleted: list[str] = Field(default_factory=list)
    ledger_rows_deleted: int = 0


class CredentialIdentity(BaseModel):
    """A live ServiceAccount backed by an active ledger row."""

    user_id: int
    username: str
    real_name: str = ""
    service_account: str
    namespace: str
    created_at: datetime


class AvailableUser(BaseModel):
    """A platform user offered by the bind picker."""

    user_id: int
    username: str
    real_name: str = ""
    email: str = ""


class UserPage(BaseModel):
    items: list[AvailableUser] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 20
