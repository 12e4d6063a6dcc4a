"""Collaborator protocols: the cluster registry and the identity store.

Both live outside this package. The cluster registry owns cluster CRUD and
the at-rest encryption of each cluster's admin kubeconfig; the identity
store owns platform users and their role codes. Built-in backends:
StaticClusterRegistry and StaticIdentityStore (development/testing).
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from opshub_access.models import ClusterAccess, PlatformUser


@runtime_checkable
class ClusterRegistry(Protocol):
    """Read side of the cluster registry.

    Implementations must call ``AccessService.cluster_changed()`` whenever a
    cluster's admin credential or endpoint changes, and
    ``AccessService.cluster_deleted()`` before a cluster is removed.
    """

    def get_cluster(self, cluster_id: int) -> ClusterAccess:
        """Return the cluster with its decrypted admin kubeconfig.

        Raises:
            UnknownClusterError: If the cluster is not registered.
        """
        ...

    def get_admin_credential(self, cluster_id: int) -> str:
        """Return the decrypted admin kubeconfig text."""
        ...

    def get_api_endpoint(self, cluster_id: int) -> str:
        """Return the registered API endpoint (may be empty)."""
        ...


@runtime_checkable
class IdentityStore(Protocol):
    """Read side of the platform identity store."""

    def get_username(self, user_id: int) -> str:
        """Return the username for *user_id*.

        Raises:
            UnknownUserError: If the user does not exist.
        """
        ...

    def get_roles(self, user_id: int) -> list[str]:
        """Return the platform role codes held by *user_id*."""
        ...

    def find_user_id(self, username: str) -> int | None:
        """Return the id for *username*, or ``None``."""
        ...

    def get_real_name(self, user_id: int) -> str:
        """Return the display name for *user_id* (may be empty)."""
        ...

    def search_users(
        self, keyword: str = "", offset: int = 0, limit: int = 20,
    ) -> tuple[list[PlatformUser], int]:
        """Page through users whose username, real name or email contains *keyword*.

        Returns the page and the total number of matches.
        """
        ...


def build_cluster_registry(config: list[dict[str, Any]]) -> ClusterRegistry:
    """Build the static cluster registry from config ``clusters`` entries."""
    from opshub_access.collaborators.static import StaticClusterRegistry

    return StaticClusterRegistry.from_config(config)


def build_identity_store(config: list[dict[str, Any]]) -> IdentityStore:
    """Build the static identity store from config ``users`` entries."""
    from opshub_access.collaborators.static import StaticIdentityStore

    return StaticIdentityStore.from_config(config)
