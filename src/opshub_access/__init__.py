"""OpsHub Access: per-user Kubernetes credentials, role bindings and revocation."""

__version__ = "0.1.0"

from opshub_access.access.bindings import RoleBindingManager
from opshub_access.access.resolver import ConnectionCache, ConnectionKey, ConnectionResolver
from opshub_access.access.revocation import RevocationEngine
from opshub_access.collaborators.protocols import ClusterRegistry, IdentityStore
from opshub_access.collaborators.static import StaticClusterRegistry, StaticIdentityStore
from opshub_access.config import AccessConfig, find_config, load_config
from opshub_access.credentials.issuer import CredentialIssuer
from opshub_access.deadline import Deadline
from opshub_access.errors import (
    AccessError,
    AlreadyBoundError,
    CredentialMaterialMissingError,
    DeadlineExceededError,
    InvalidBindingError,
    LedgerError,
    LedgerInconsistencyError,
    NotBoundError,
    NotGrantedError,
    ResponseKind,
    ServiceAccountNotFoundError,
    UnknownClusterError,
    UnknownUserError,
    UpstreamUnavailableError,
)
from opshub_access.models import (
    AvailableUser,
    BoundUser,
    ClusterAccess,
    CredentialIdentity,
    IssuedCredential,
    PlatformUser,
    RevocationSummary,
    RoleBindingRecord,
    RoleKind,
    ServiceIdentityRecord,
    UserBinding,
    UserPage,
)
from opshub_access.service import AccessService

__all__ = [
    "AccessConfig",
    "AccessError",
    "AccessService",
    "AlreadyBoundError",
    "AvailableUser",
    "BoundUser",
    "ClusterAccess",
    "ClusterRegistry",
    "ConnectionCache",
    "ConnectionKey",
    "ConnectionResolver",
    "CredentialIdentity",
    "CredentialIssuer",
    "CredentialMaterialMissingError",
    "Deadline",
    "DeadlineExceededError",
    "find_config",
    "IdentityStore",
    "InvalidBindingError",
    "IssuedCredential",
    "LedgerError",
    "LedgerInconsistencyError",
    "load_config",
    "NotBoundError",
    "NotGrantedError",
    "PlatformUser",
    "ResponseKind",
    "RevocationEngine",
    "RevocationSummary",
    "RoleBindingManager",
    "RoleBindingRecord",
    "RoleKind",
    "ServiceAccountNotFoundError",
    "ServiceIdentityRecord",
    "StaticClusterRegistry",
    "StaticIdentityStore",
    "UnknownClusterError",
    "UnknownUserError",
    "UpstreamUnavailableError",
    "UserBinding",
    "UserPage",
    "__version__",
]
