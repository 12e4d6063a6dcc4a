"""AccessService: the single public entry point.

Wires together every internal component (ledger, issuer, resolver,
role-binding manager, revocation engine) behind one class, and adds the
flows that span several of them: requesting a credential, re-minting an
existing one, and reacting to cluster registry changes.

Usage::

    from opshub_access import AccessService

    service = AccessService.from_config("./opshub-access.yaml")
    service.bind(cluster_id=1, user_id=7, role_name="cluster-viewer", bound_by=1)
    api_client = service.resolve(cluster_id=1, user_id=7)
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from opshub_access.access.bindings import RoleBindingManager
from opshub_access.access.resolver import ClientFactory, ConnectionResolver
from opshub_access.access.revocation import RevocationEngine
from opshub_access.collaborators.protocols import (
    ClusterRegistry,
    IdentityStore,
    build_cluster_registry,
    build_identity_store,
)
from opshub_access.config import AccessConfig, load_config
from opshub_access.credentials.issuer import CredentialIssuer
from opshub_access.db.connection import Database
from opshub_access.db.migrations import run_migrations
from opshub_access.deadline import Deadline
from opshub_access.errors import (
    AccessError,
    NotGrantedError,
    ServiceAccountNotFoundError,
    UnknownUserError,
)
from opshub_access.kube.gateway import GatewayFactory, gateway_from_kubeconfig
from opshub_access.kube.kubeconfig import client_from_kubeconfig
from opshub_access.ledger.store import Ledger
from opshub_access.models import (
    AvailableUser,
    BoundUser,
    CredentialIdentity,
    IssuedCredential,
    RevocationSummary,
    RoleBindingRecord,
    RoleKind,
    ServiceIdentityRecord,
    UserBinding,
    UserPage,
)

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


class AccessService:
    """Public API for per-user cluster access."""

    def __init__(
        self,
        registry: ClusterRegistry,
        identity_store: IdentityStore,
        database: Database,
        config: AccessConfig | None = None,
        *,
        gateway_factory: GatewayFactory = gateway_from_kubeconfig,
        client_factory: ClientFactory = client_from_kubeconfig,
    ) -> None:
        """Initialize AccessService.

        Args:
            registry: Cluster registry supplying admin kubeconfigs.
            identity_store: Platform identity store (usernames, role codes).
            database: Ledger database. Pending migrations are applied.
            config: Naming and timeout settings (defaults if omitted).
            gateway_factory: Builds a ClusterGateway from admin kubeconfig
                text. Override in tests.
            client_factory: Builds an ``ApiClient`` from kubeconfig text for
                the connection cache. Override in tests.
        """
        self.config = config or AccessConfig()
        self._registry = registry
        self._identity_store = identity_store
        self._db = database
        run_migrations(database)

        self.ledger = Ledger(database)
        self.issuer = CredentialIssuer(
            gateway_factory,
            dedicated_namespace=self.config.dedicated_namespace,
            legacy_namespace=self.config.legacy_namespace,
            name_prefix=self.config.name_prefix,
            token_ttl_seconds=self.config.token_ttl_seconds,
        )
        self.resolver = ConnectionResolver(
            registry, identity_store, self.ledger, self.issuer,
            client_factory=client_factory,
            admin_role_code=self.config.admin_role_code,
        )
        self.bindings = RoleBindingManager(registry, identity_store, self.ledger, self.issuer)
        self.revocation = RevocationEngine(
            registry, identity_store, self.ledger, self.issuer, self.resolver,
        )

    @classmethod
    def from_config(
        cls,
        path: str | Path | None = None,
        **kwargs: Any,
    ) -> AccessService:
        """Build a service from ``opshub-access.yaml``.

        The static collaborators are built from the config's ``clusters``
        and ``users`` blocks.
        """
        config = load_config(path)
        return cls(
            build_cluster_registry(config.clusters),
            build_identity_store(config.users),
            Database(config.db_path),
            config,
            **kwargs,
        )

    def close(self) -> None:
        self._db.close()

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def request_credential(
        self,
        cluster_id: int,
        user_id: int,
        requested_by: int | None = None,
        deadline: Deadline | None = None,
    ) -> IssuedCredential:
        """Issue (or re-issue) the user's credential and record it active."""
        deadline = self._deadline(deadline)
        username = self._identity_store.get_username(user_id)
        cluster = self._registry.get_cluster(cluster_id)

        issued = self.issuer.issue(cluster, username, deadline)
        self.ledger.upsert_identity(
            cluster_id, user_id, issued.service_account, issued.namespace,
            requested_by if requested_by is not None else user_id,
        )
        self.resolver.invalidate_user(cluster_id, user_id)
        return issued

    def existing_credential(
        self,
        cluster_id: int,
        user_id: int,
        deadline: Deadline | None = None,
    ) -> IssuedCredential:
        """Mint a fresh kubeconfig for the user's active identity.

        Raises:
            NotGrantedError: If the user has no active identity.
        """
        deadline = self._deadline(deadline)
        record = self.ledger.get_active_identity(cluster_id, user_id)
        if record is None:
            raise NotGrantedError(cluster_id, user_id)
        cluster = self._registry.get_cluster(cluster_id)
        kubeconfig = self.issuer.mint(cluster, record.service_account, deadline)
        return IssuedCredential(
            service_account=record.service_account,
            namespace=record.namespace,
            kubeconfig=kubeconfig,
        )

    def mint_for_service_account(
        self,
        cluster_id: int,
        service_account: str,
        deadline: Deadline | None = None,
    ) -> IssuedCredential:
        """Mint a kubeconfig for a named ServiceAccount in either managed namespace.

        The ledger is neither consulted nor written.

        Raises:
            ServiceAccountNotFoundError: If the account exists in neither
                the dedicated nor the legacy namespace.
        """
        deadline = self._deadline(deadline)
        cluster = self._registry.get_cluster(cluster_id).model_copy(
            update={"api_endpoint": self._registry.get_api_endpoint(cluster_id)},
        )
        gateway = self.issuer.open_gateway(cluster, deadline)
        namespace = self.issuer.locate_service_account(gateway, service_account)
        if namespace is None:
            raise ServiceAccountNotFoundError(cluster_id, service_account)
        kubeconfig = self.issuer.mint(cluster, service_account, deadline, gateway=gateway)
        logger.info(
            "Minted kubeconfig for %s/%s on cluster %s", namespace, service_account, cluster_id,
        )
        return IssuedCredential(
            service_account=service_account,
            namespace=namespace,
            kubeconfig=kubeconfig,
        )

    def resolve(
        self,
        cluster_id: int,
        user_id: int,
        deadline: Deadline | None = None,
    ) -> Any:
        """Return a cached or fresh ``ApiClient`` for the user."""
        return self.resolver.resolve(cluster_id, user_id, self._deadline(deadline))

    def list_identities(
        self, cluster_id: int, active_only: bool = False,
    ) -> list[ServiceIdentityRecord]:
        return self.ledger.list_identities(cluster_id, active_only=active_only)

    # ------------------------------------------------------------------
    # Role bindings
    # ------------------------------------------------------------------

    def bind(
        self,
        cluster_id: int,
        user_id: int,
        role_name: str,
        role_namespace: str = "",
        role_kind: RoleKind | str | None = None,
        bound_by: int = 0,
        deadline: Deadline | None = None,
    ) -> RoleBindingRecord:
        return self.bindings.bind(
            cluster_id, user_id, role_name, role_namespace, role_kind, bound_by,
            self._deadline(deadline),
        )

    def unbind(
        self,
        cluster_id: int,
        user_id: int,
        role_name: str,
        role_namespace: str = "",
        deadline: Deadline | None = None,
    ) -> None:
        self.bindings.unbind(
            cluster_id, user_id, role_name, role_namespace, self._deadline(deadline),
        )

    def list_bound_users(
        self, cluster_id: int, role_name: str, role_namespace: str = "",
    ) -> list[BoundUser]:
        return self.bindings.list_bound_users(cluster_id, role_name, role_namespace)

    def list_user_bindings(
        self, cluster_id: int, user_id: int | None = None,
    ) -> list[UserBinding]:
        return self.bindings.list_user_bindings(cluster_id, user_id)

    def list_credential_identities(
        self, cluster_id: int, deadline: Deadline | None = None,
    ) -> list[CredentialIdentity]:
        return self.bindings.list_credential_identities(cluster_id, self._deadline(deadline))

    def search_users(self, keyword: str = "", page: int = 1, page_size: int = 20) -> UserPage:
        """One page of platform users for the bind picker.

        Raises:
            ValueError: If *page* is below 1 or *page_size* is outside 1..100.
        """
        if page < 1:
            raise ValueError(f"page must be at least 1, got {page}")
        if not 1 <= page_size <= MAX_PAGE_SIZE:
            raise ValueError(f"page_size must be between 1 and {MAX_PAGE_SIZE}, got {page_size}")
        users, total = self._identity_store.search_users(
            keyword, offset=(page - 1) * page_size, limit=page_size,
        )
        return UserPage(
            items=[
                AvailableUser(
                    user_id=u.user_id, username=u.username,
                    real_name=u.real_name, email=u.email,
                )
                for u in users
            ],
            total=total,
            page=page,
            page_size=page_size,
        )

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    def is_platform_admin(self, user_id: int) -> bool:
        """True if *user_id* holds the reserved admin role code.

        Unknown users are not admins.
        """
        try:
            return self.resolver.is_admin(user_id)
        except UnknownUserError:
            return False

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def revoke_credential(
        self, cluster_id: int, user_id: int, deadline: Deadline | None = None,
    ) -> RevocationSummary:
        return self.revocation.revoke_credential(cluster_id, user_id, self._deadline(deadline))

    def revoke_fully(
        self,
        cluster_id: int,
        service_account: str,
        username: str,
        deadline: Deadline | None = None,
    ) -> RevocationSummary:
        return self.revocation.revoke_fully(
            cluster_id, service_account, username, self._deadline(deadline),
        )

    def revoke_user_fully(
        self, cluster_id: int, user_id: int, deadline: Deadline | None = None,
    ) -> RevocationSummary:
        """Full revoke addressed by platform user instead of ServiceAccount."""
        username = self._identity_store.get_username(user_id)
        record = self.ledger.get_identity(cluster_id, user_id)
        service_account = (
            record.service_account if record is not None
            else self.issuer.service_account_name(username)
        )
        return self.revoke_fully(cluster_id, service_account, username, deadline)

    # ------------------------------------------------------------------
    # Cluster registry callbacks
    # ------------------------------------------------------------------

    def cluster_changed(self, cluster_id: int) -> None:
        """The registry changed a cluster's credential or endpoint."""
        self.resolver.invalidate(cluster_id)

    def cluster_deleted(self, cluster_id: int, deadline: Deadline | None = None) -> int:
        """Clean up every identity before the registry drops the cluster.

        Cleanup of one identity failing does not stop the others. The
        cluster's ledger rows are purged regardless. Returns the number of
        identities whose cluster objects were removed.
        """
        deadline = self._deadline(deadline)
        cleaned = 0
        for record in self.ledger.list_identities(cluster_id):
            username = self.issuer.username_from_service_account(record.service_account) or ""
            try:
                self.revocation.revoke_fully(
                    cluster_id, record.service_account, username, deadline,
                )
            except AccessError as exc:
                logger.warning(
                    "Cleanup of %s on cluster %s failed: %s",
                    record.service_account, cluster_id, exc,
                )
                continue
            cleaned += 1

        identities, bindings = self.ledger.purge_cluster(cluster_id)
        self.resolver.invalidate(cluster_id)
        logger.info(
            "Cluster %s deleted: %d identities cleaned, %d identity and %d binding rows purged",
            cluster_id, cleaned, identities, bindings,
        )
        return cleaned

    # --- Private ---

    def _deadline(self, deadline: Deadline | None) -> Deadline | None:
        if deadline is not None or self.config.default_timeout is None:
            return deadline
        return Deadline.after(self.config.default_timeout)
