"""Connection resolver: which identity a request runs as, and its client.

The resolver:
1. Reads the user's platform role codes from the identity store
2. Picks the admin path (reserved admin code) or the user path
3. Returns a cached ``ApiClient`` for ``(cluster, selector)`` if present
4. On a miss, builds a client from the admin kubeconfig (admin path) or
   from a freshly minted kubeconfig for the user's existing
   ServiceAccount (user path), caches it, and returns it

A user without an active service identity gets ``NotGrantedError``. The
resolver never falls back to the admin path for such a user.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from opshub_access.collaborators.protocols import ClusterRegistry, IdentityStore
from opshub_access.config import DEFAULT_ADMIN_ROLE_CODE
from opshub_access.credentials.issuer import CredentialIssuer
from opshub_access.deadline import Deadline, check
from opshub_access.errors import NotGrantedError, UnknownUserError, UpstreamUnavailableError
from opshub_access.kube.kubeconfig import client_from_kubeconfig
from opshub_access.ledger.store import Ledger
from opshub_access.models import ADMIN_SELECTOR

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str], Any]


class ReadWriteLock:
    """Many concurrent readers or one writer.

    Writers are preferred: once a writer is waiting, new readers queue
    behind it so invalidation is never starved by a steady read load.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


@dataclass(frozen=True)
class ConnectionKey:
    """Cache key: a cluster plus ``"admin"`` or a platform user id."""

    cluster_id: int
    selector: str

    @classmethod
    def admin(cls, cluster_id: int) -> ConnectionKey:
        return cls(cluster_id, ADMIN_SELECTOR)

    @classmethod
    def user(cls, cluster_id: int, user_id: int) -> ConnectionKey:
        return cls(cluster_id, str(user_id))

    def __str__(self) -> str:
        return f"{self.cluster_id}-{self.selector}"


class ConnectionCache:
    """Process-local map of live API clients.

    Entries have no TTL; they are removed only by explicit invalidation.
    Each cluster carries a generation that every removal bumps; a client
    built under an older generation is never published.
    """

    def __init__(self) -> None:
        self._lock = ReadWriteLock()
        self._clients: dict[ConnectionKey, Any] = {}
        self._generations: dict[int, int] = {}

    def get(self, key: ConnectionKey) -> Any | None:
        with self._lock.read():
            return self._clients.get(key)

    def generation(self, cluster_id: int) -> int:
        with self._lock.read():
            return self._generations.get(cluster_id, 0)

    def put(self, key: ConnectionKey, api_client: Any, generation: int | None = None) -> bool:
        """Publish *api_client* under *key*.

        With a *generation*, the put is dropped (and ``False`` returned) if
        the cluster was invalidated after that generation was read.
        """
        with self._lock.write():
            if generation is not None and generation != self._generations.get(key.cluster_id, 0):
                return False
            self._clients[key] = api_client
            return True

    def remove(self, key: ConnectionKey) -> bool:
        with self._lock.write():
            self._bump(key.cluster_id)
            return self._clients.pop(key, None) is not None

    def remove_cluster(self, cluster_id: int) -> int:
        """Drop every entry for *cluster_id*. Returns the number removed."""
        with self._lock.write():
            self._bump(cluster_id)
            stale = [k for k in self._clients if k.cluster_id == cluster_id]
            for key in stale:
                del self._clients[key]
        return len(stale)

    def keys(self) -> list[ConnectionKey]:
        with self._lock.read():
            return list(self._clients)

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._clients)

    def _bump(self, cluster_id: int) -> None:
        # Caller holds the write lock
        self._generations[cluster_id] = self._generations.get(cluster_id, 0) + 1


class ConnectionResolver:
    """Resolves (cluster, user) to a live, cached Kubernetes client."""

    def __init__(
        self,
        registry: ClusterRegistry,
        identity_store: IdentityStore,
        ledger: Ledger,
        issuer: CredentialIssuer,
        *,
        client_factory: ClientFactory = client_from_kubeconfig,
        admin_role_code: str = DEFAULT_ADMIN_ROLE_CODE,
        cache: ConnectionCache | None = None,
    ) -> None:
        self._registry = registry
        self._identity_store = identity_store
        self._ledger = ledger
        self._issuer = issuer
        self._client_factory = client_factory
        self._admin_role_code = admin_role_code
        self.cache = cache if cache is not None else ConnectionCache()

    def is_admin(self, user_id: int) -> bool:
        """True if the user holds the reserved admin role code.

        A failed role lookup is logged and treated as non-admin.
        """
        try:
            roles = self._identity_store.get_roles(user_id)
        except UnknownUserError:
            raise
        except Exception:
            logger.warning(
                "Role lookup for user %s failed; using the user path",
                user_id, exc_info=True,
            )
            return False
        return self._admin_role_code in roles

    def resolve(
        self,
        cluster_id: int,
        user_id: int,
        deadline: Deadline | None = None,
    ) -> Any:
        """Return an ``ApiClient`` acting for *user_id* on *cluster_id*.

        Raises:
            NotGrantedError: If a non-admin user has no active identity.
            UnknownClusterError: If the cluster is not registered.
            UpstreamUnavailableError: If the credential could not be built.
            CredentialMaterialMissingError: If minting ran out of strategies.
            DeadlineExceededError: If *deadline* expired.
        """
        check(deadline)
        admin = self.is_admin(user_id)
        key = ConnectionKey.admin(cluster_id) if admin else ConnectionKey.user(cluster_id, user_id)

        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("Connection cache hit for %s", key)
            return cached
        logger.debug("Connection cache miss for %s", key)

        # Read before any credential material so an invalidation during the build wins
        generation = self.cache.generation(cluster_id)
        if admin:
            kubeconfig = self._registry.get_admin_credential(cluster_id)
        else:
            kubeconfig = self._user_kubeconfig(cluster_id, user_id, deadline)

        check(deadline)
        # Built outside the lock; concurrent builds for one key race and the last put wins
        api_client = self._build(kubeconfig, key)
        if not self.cache.put(key, api_client, generation):
            logger.debug("Cluster %s invalidated during build; %s not cached", cluster_id, key)
        return api_client

    def invalidate(self, cluster_id: int) -> None:
        """Drop every cached client for *cluster_id* (admin and users)."""
        removed = self.cache.remove_cluster(cluster_id)
        logger.info("Invalidated %d cached connection(s) for cluster %s", removed, cluster_id)

    def invalidate_user(self, cluster_id: int, user_id: int) -> None:
        """Drop the cached client for one user on one cluster."""
        if self.cache.remove(ConnectionKey.user(cluster_id, user_id)):
            logger.info("Invalidated cached connection for cluster %s user %s",
                        cluster_id, user_id)

    # --- Private ---

    def _user_kubeconfig(
        self, cluster_id: int, user_id: int, deadline: Deadline | None,
    ) -> str:
        record = self._ledger.get_active_identity(cluster_id, user_id)
        if record is None:
            raise NotGrantedError(cluster_id, user_id)
        cluster = self._registry.get_cluster(cluster_id)
        return self._issuer.mint(cluster, record.service_account, deadline)

    def _build(self, kubeconfig: str, key: ConnectionKey) -> Any:
        try:
            return self._client_factory(kubeconfig)
        except UpstreamUnavailableError:
            raise
        except Exception as exc:
            raise UpstreamUnavailableError(
                f"Failed to build client for {key}: {exc}",
            ) from exc
