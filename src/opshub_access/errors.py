"""Error taxonomy for the access subsystem.

Every failure surfaced by the issuer, resolver, binding manager and
revocation engine derives from :class:`AccessError`. Managed-cluster
failures are classified once, at the gateway, into a :class:`ResponseKind`;
callers compare kinds instead of inspecting message text.
"""

from __future__ import annotations

import enum


class ResponseKind(enum.StrEnum):
    """Classification of a managed-cluster API response."""

    ALREADY_EXISTS = "already_exists"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    UNAUTHENTICATED = "unauthenticated"
    OTHER = "other"


class AccessError(Exception):
    """Base class for all access subsystem errors."""


class UnknownClusterError(AccessError):
    """Raised when the cluster registry has no such cluster."""

    def __init__(self, cluster_id: int) -> None:
        super().__init__(f"Cluster {cluster_id} is not registered")
        self.cluster_id = cluster_id


class UnknownUserError(AccessError):
    """Raised when the identity store has no such platform user."""

    def __init__(self, user: int | str) -> None:
        super().__init__(f"Platform user {user!r} does not exist")
        self.user = user


class NotGrantedError(AccessError):
    """The user has no active service identity on the cluster.

    Surfaced to callers as "request access first". Never upgraded to the
    admin path.
    """

    def __init__(self, cluster_id: int, user_id: int) -> None:
        super().__init__(
            f"User {user_id} has no active credential for cluster "
            f"{cluster_id}; request access first"
        )
        self.cluster_id = cluster_id
        self.user_id = user_id


class AlreadyBoundError(AccessError):
    """The exact (cluster, user, role, namespace) binding already exists."""


class NotBoundError(AccessError):
    """No ledger row exists for the binding being removed."""


class UpstreamUnavailableError(AccessError):
    """A managed-cluster call failed.

    ``kind`` is the classified response; the original exception is
    chained as ``__cause__``.
    """

    def __init__(
        self,
        message: str,
        kind: ResponseKind = ResponseKind.OTHER,
        status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status = status


class CredentialMaterialMissingError(AccessError):
    """Every acquisition strategy for a token or CA bundle failed."""

    def __init__(self, material: str, attempts: list[str]) -> None:
        detail = "; ".join(attempts) if attempts else "no strategies configured"
        super().__init__(f"Unable to acquire {material}: {detail}")
        self.material = material
        self.attempts = attempts


class LedgerError(AccessError):
    """A ledger read or write failed."""


class LedgerInconsistencyError(LedgerError):
    """A native object was created but the ledger write that follows failed."""


class DeadlineExceededError(AccessError):
    """The caller's deadline expired or the operation was cancelled."""


class InvalidBindingError(AccessError, ValueError):
    """The role kind and role namespace of a bind request disagree."""


class ServiceAccountNotFoundError(AccessError):
    """The named ServiceAccount exists in neither managed namespace."""

    def __init__(self, cluster_id: int, service_account: str) -> None:
        super().__init__(
            f"ServiceAccount {service_account!r} not found on cluster {cluster_id}"
        )
        self.cluster_id = cluster_id
        self.service_account = service_account
