"""Revocation engine: tears down issued identities at two granularities.

``revoke_credential`` is the scoped tier. It removes what this package
knows it created for one user (ledger-named bindings plus the legacy
``<serviceaccount>-binding`` ClusterRoleBinding and the ServiceAccount),
then soft-revokes the ledger row.

``revoke_fully`` is the exhaustive tier. It scans every binding on the
cluster for subjects naming the ServiceAccount, deletes the account from
both namespaces, and hard-deletes every ledger row for the user.
"""

from __future__ import annotations

import logging

from opshub_access.access.bindings import delete_binding
from opshub_access.access.resolver import ConnectionResolver
from opshub_access.collaborators.protocols import ClusterRegistry, IdentityStore
from opshub_access.credentials.issuer import CredentialIssuer
from opshub_access.deadline import Deadline, check
from opshub_access.errors import NotGrantedError, ResponseKind, UpstreamUnavailableError
from opshub_access.kube.gateway import ClusterGateway
from opshub_access.ledger.store import Ledger
from opshub_access.models import RevocationSummary, RoleKind

logger = logging.getLogger(__name__)


class RevocationEngine:
    """Revokes service identities and the bindings attached to them."""

    def __init__(
        self,
        registry: ClusterRegistry,
        identity_store: IdentityStore,
        ledger: Ledger,
        issuer: CredentialIssuer,
        resolver: ConnectionResolver,
    ) -> None:
        self._registry = registry
        self._identity_store = identity_store
        self._ledger = ledger
        self._issuer = issuer
        self._resolver = resolver

    def revoke_credential(
        self,
        cluster_id: int,
        user_id: int,
        deadline: Deadline | None = None,
    ) -> RevocationSummary:
        """Scoped revoke of one user's identity on one cluster.

        Raises:
            NotGrantedError: If the user has no active identity.
        """
        check(deadline)
        record = self._ledger.get_active_identity(cluster_id, user_id)
        if record is None:
            raise NotGrantedError(cluster_id, user_id)

        cluster = self._registry.get_cluster(cluster_id)
        gateway = self._issuer.open_gateway(cluster, deadline)
        service_account = record.service_account
        summary = RevocationSummary(
            cluster_id=cluster_id, user_id=user_id, service_account=service_account,
        )

        for binding in self._ledger.list_bindings(cluster_id, user_id):
            name = self._issuer.binding_name(binding.role_name, service_account)
            if delete_binding(gateway, binding.role_kind, name, binding.role_namespace):
                summary.bindings_deleted.append(name)

        legacy_binding = f"{service_account}-binding"
        if delete_binding(gateway, RoleKind.CLUSTER_ROLE, legacy_binding, ""):
            summary.bindings_deleted.append(legacy_binding)

        namespaces = [self._issuer.dedicated_namespace]
        if record.namespace not in namespaces:
            namespaces.append(record.namespace)
        for namespace in namespaces:
            if _delete_service_account(gateway, namespace, service_account):
                summary.service_accounts_deleted.append(f"{namespace}/{service_account}")

        summary.ledger_rows_deleted = self._ledger.revoke_identity(cluster_id, user_id)
        self._resolver.invalidate_user(cluster_id, user_id)
        logger.info(
            "Revoked credential %s for user %s on cluster %s",
            service_account, user_id, cluster_id,
        )
        return summary

    def revoke_fully(
        self,
        cluster_id: int,
        service_account: str,
        username: str,
        deadline: Deadline | None = None,
    ) -> RevocationSummary:
        """Remove every trace of *service_account* from the cluster and ledger.

        The platform user is found from the ledger row naming the
        ServiceAccount, else through the identity store by *username*. If
        neither knows the user, only the cluster objects are removed.
        """
        check(deadline)
        user_id = self._find_user(cluster_id, service_account, username)
        cluster = self._registry.get_cluster(cluster_id)
        gateway = self._issuer.open_gateway(cluster, deadline)
        summary = RevocationSummary(
            cluster_id=cluster_id, user_id=user_id, service_account=service_account,
        )

        for binding in gateway.list_cluster_role_bindings():
            if binding.references(service_account) and delete_binding(
                gateway, RoleKind.CLUSTER_ROLE, binding.name, "",
            ):
                summary.bindings_deleted.append(binding.name)

        for namespace in gateway.list_namespaces():
            for binding in gateway.list_role_bindings(namespace):
                if binding.references(service_account) and delete_binding(
                    gateway, RoleKind.ROLE, binding.name, namespace,
                ):
                    summary.bindings_deleted.append(f"{namespace}/{binding.name}")

        for namespace in (self._issuer.dedicated_namespace, self._issuer.legacy_namespace):
            if _delete_service_account(gateway, namespace, service_account):
                summary.service_accounts_deleted.append(f"{namespace}/{service_account}")

        if user_id is None:
            logger.warning(
                "No platform user found for %s on cluster %s; ledger left untouched",
                service_account, cluster_id,
            )
            return summary

        identities, bindings = self._ledger.purge_user(cluster_id, user_id)
        summary.ledger_rows_deleted = identities + bindings
        self._resolver.invalidate_user(cluster_id, user_id)
        logger.info(
            "Fully revoked %s for user %s on cluster %s (%d bindings deleted)",
            service_account, user_id, cluster_id, len(summary.bindings_deleted),
        )
        return summary

    def _find_user(self, cluster_id: int, service_account: str, username: str) -> int | None:
        record = self._ledger.find_identity_by_account(cluster_id, service_account)
        if record is not None:
            return record.user_id
        return self._identity_store.find_user_id(username) if username else None


def _delete_service_account(gateway: ClusterGateway, namespace: str, name: str) -> bool:
    try:
        gateway.delete_service_account(namespace, name)
    except UpstreamUnavailableError as exc:
        if exc.kind is not ResponseKind.NOT_FOUND:
            raise
        return False
    logger.info("Deleted serviceaccount %s/%s", namespace, name)
    return True
