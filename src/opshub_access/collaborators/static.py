"""Static collaborators for development and testing.

Both backends are loaded from the ``clusters`` and ``users`` blocks of
``opshub-access.yaml``. They do not encrypt anything: the admin kubeconfig
is held as given. Use for local development, CI, and tests.
"""

from __future__ import annotations

import threading
from typing import Any

from opshub_access.errors import UnknownClusterError, UnknownUserError
from opshub_access.models import ClusterAccess, PlatformUser


class StaticClusterRegistry:
    """Cluster registry backed by an in-memory mapping.

    ``put()`` and ``remove()`` let tests and tooling simulate registry
    mutations; the caller remains responsible for notifying the access
    service.
    """

    def __init__(self, clusters: list[ClusterAccess] | None = None) -> None:
        self._lock = threading.Lock()
        self._clusters: dict[int, ClusterAccess] = {
            c.cluster_id: c for c in clusters or []
        }

    @classmethod
    def from_config(cls, entries: list[dict[str, Any]]) -> StaticClusterRegistry:
        clusters = [
            ClusterAccess(
                cluster_id=int(e["id"]),
                name=e["name"],
                api_endpoint=e.get("api_endpoint", ""),
                admin_kubeconfig=e.get("kubeconfig", ""),
            )
            for e in entries
        ]
        return cls(clusters)

    def put(self, cluster: ClusterAccess) -> None:
        with self._lock:
            self._clusters[cluster.cluster_id] = cluster

    def remove(self, cluster_id: int) -> None:
        with self._lock:
            self._clusters.pop(cluster_id, None)

    def get_cluster(self, cluster_id: int) -> ClusterAccess:
        with self._lock:
            cluster = self._clusters.get(cluster_id)
        if cluster is None:
            raise UnknownClusterError(cluster_id)
        return cluster

    def get_admin_credential(self, cluster_id: int) -> str:
        return self.get_cluster(cluster_id).admin_kubeconfig

    def get_api_endpoint(self, cluster_id: int) -> str:
        return self.get_cluster(cluster_id).api_endpoint


class StaticIdentityStore:
    """Identity store backed by an in-memory list of platform users."""

    def __init__(self, users: list[PlatformUser] | None = None) -> None:
        self._by_id: dict[int, PlatformUser] = {u.user_id: u for u in users or []}
        self._by_name: dict[str, int] = {u.username: u.user_id for u in users or []}

    @classmethod
    def from_config(cls, entries: list[dict[str, Any]]) -> StaticIdentityStore:
        users = [
            PlatformUser(
                user_id=int(e["id"]),
                username=e["username"],
                real_name=e.get("real_name", ""),
                email=e.get("email", ""),
                roles=list(e.get("roles") or []),
            )
            for e in entries
        ]
        return cls(users)

    def _get(self, user_id: int) -> PlatformUser:
        user = self._by_id.get(user_id)
        if user is None:
            raise UnknownUserError(user_id)
        return user

    def get_username(self, user_id: int) -> str:
        return self._get(user_id).username

    def get_roles(self, user_id: int) -> list[str]:
        return list(self._get(user_id).roles)

    def find_user_id(self, username: str) -> int | None:
        return self._by_name.get(username)

    def get_real_name(self, user_id: int) -> str:
        return self._get(user_id).real_name

    def search_users(
        self, keyword: str = "", offset: int = 0, limit: int = 20,
    ) -> tuple[list[PlatformUser], int]:
        needle = keyword.casefold()
        matches = [
            u for _, u in sorted(self._by_id.items())
            if not needle
            or needle in u.username.casefold()
            or needle in u.real_name.casefold()
            or needle in u.email.casefold()
        ]
        return matches[offset:offset + limit], len(matches)
