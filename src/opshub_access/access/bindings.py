"""Role-binding manager: platform users bound to cluster roles.

Each ledger row in ``role_bindings`` corresponds to exactly one
ClusterRoleBinding or RoleBinding named ``opshub-<role>-<serviceaccount>``
on the managed cluster. Binding objects are never cached; they are
created and deleted directly through the cluster gateway.
"""

from __future__ import annotations

import logging

from opshub_access.collaborators.protocols import ClusterRegistry, IdentityStore
from opshub_access.credentials.issuer import MANAGED_BY_LABEL, CredentialIssuer
from opshub_access.deadline import Deadline, check
from opshub_access.errors import (
    AlreadyBoundError,
    InvalidBindingError,
    LedgerError,
    LedgerInconsistencyError,
    NotBoundError,
    ResponseKind,
    UnknownUserError,
    UpstreamUnavailableError,
)
from opshub_access.kube.gateway import ClusterGateway, SubjectView
from opshub_access.ledger.store import Ledger
from opshub_access.models import (
    BoundUser,
    CredentialIdentity,
    RoleBindingRecord,
    RoleKind,
    UserBinding,
)

logger = logging.getLogger(__name__)

BINDING_ANNOTATIONS = {"description": "Created by OpsHub"}


class RoleBindingManager:
    """Binds and unbinds platform users to ClusterRoles and Roles."""

    def __init__(
        self,
        registry: ClusterRegistry,
        identity_store: IdentityStore,
        ledger: Ledger,
        issuer: CredentialIssuer,
    ) -> None:
        self._registry = registry
        self._identity_store = identity_store
        self._ledger = ledger
        self._issuer = issuer

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
        """Bind *user_id* to a role on *cluster_id*.

        ``role_kind`` defaults to ClusterRole for an empty namespace and
        Role otherwise. The user's ServiceAccount is bootstrapped and its
        identity row activated before the binding object is created; the
        binding ledger row is written last.

        Raises:
            AlreadyBoundError: If the ledger already holds this binding, or a
                concurrent bind recorded it first.
            InvalidBindingError: If kind and namespace disagree.
            LedgerInconsistencyError: If the binding object exists but
                recording it failed. If this call created the object, one
                compensating delete is attempted.
        """
        kind = _resolve_kind(role_kind, role_namespace)
        check(deadline)

        if self._ledger.get_binding(cluster_id, user_id, role_name, role_namespace):
            raise AlreadyBoundError(
                f"User {user_id} is already bound to {_describe(role_name, role_namespace)} "
                f"on cluster {cluster_id}"
            )

        username = self._identity_store.get_username(user_id)
        cluster = self._registry.get_cluster(cluster_id)
        gateway = self._issuer.open_gateway(cluster, deadline)

        service_account = self._issuer.bootstrap(cluster, username, deadline, gateway=gateway)
        self._ledger.upsert_identity(
            cluster_id, user_id, service_account,
            self._issuer.dedicated_namespace, bound_by,
        )

        binding_name = self._issuer.binding_name(role_name, service_account)
        created = self._create_binding(
            gateway, kind, binding_name, role_name, role_namespace, service_account,
        )

        try:
            record = self._ledger.insert_binding(
                cluster_id, user_id, role_name, role_namespace, kind, bound_by,
            )
        except AlreadyBoundError:
            # A concurrent bind recorded the row first and owns the object
            raise
        except LedgerError as exc:
            if created:
                self._compensate(gateway, kind, binding_name, role_namespace)
            raise LedgerInconsistencyError(
                f"{kind} binding {binding_name} exists on cluster {cluster_id} "
                f"but could not be recorded: {exc}"
            ) from exc

        logger.info(
            "Bound user %s to %s %s on cluster %s",
            user_id, kind, _describe(role_name, role_namespace), cluster_id,
        )
        return record

    def unbind(
        self,
        cluster_id: int,
        user_id: int,
        role_name: str,
        role_namespace: str = "",
        deadline: Deadline | None = None,
    ) -> None:
        """Remove one binding object and its ledger row.

        Raises:
            NotBoundError: If the ledger holds no such binding.
        """
        check(deadline)
        record = self._ledger.get_binding(cluster_id, user_id, role_name, role_namespace)
        if record is None:
            raise NotBoundError(
                f"User {user_id} is not bound to {_describe(role_name, role_namespace)} "
                f"on cluster {cluster_id}"
            )

        cluster = self._registry.get_cluster(cluster_id)
        gateway = self._issuer.open_gateway(cluster, deadline)
        service_account = self._service_account_for(cluster_id, user_id)
        binding_name = self._issuer.binding_name(role_name, service_account)

        delete_binding(gateway, record.role_kind, binding_name, role_namespace)
        self._ledger.delete_binding(cluster_id, user_id, role_name, role_namespace)
        logger.info(
            "Unbound user %s from %s on cluster %s",
            user_id, _describe(role_name, role_namespace), cluster_id,
        )

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    def list_bound_users(
        self, cluster_id: int, role_name: str, role_namespace: str = "",
    ) -> list[BoundUser]:
        users = []
        for record in self._ledger.list_bindings_for_role(cluster_id, role_name, role_namespace):
            username, real_name = self._describe_user(record.user_id)
            users.append(BoundUser(
                user_id=record.user_id,
                username=username,
                real_name=real_name,
                bound_at=record.created_at,
            ))
        return users

    def list_user_bindings(
        self, cluster_id: int, user_id: int | None = None,
    ) -> list[UserBinding]:
        """Bindings on a cluster, newest first, optionally for one user."""
        bindings = []
        for record in self._ledger.list_bindings(cluster_id, user_id):
            username, real_name = self._describe_user(record.user_id)
            bindings.append(UserBinding(
                id=record.id,
                cluster_id=record.cluster_id,
                user_id=record.user_id,
                username=username,
                real_name=real_name,
                role_name=record.role_name,
                role_namespace=record.role_namespace,
                role_kind=record.role_kind,
                created_at=record.created_at,
            ))
        return bindings

    def list_credential_identities(
        self, cluster_id: int, deadline: Deadline | None = None,
    ) -> list[CredentialIdentity]:
        """Live ``opshub-`` ServiceAccounts backed by an active ledger row.

        ServiceAccounts are collected from the dedicated namespace first and
        then the legacy one; a name present in both is reported from the
        dedicated namespace. Accounts without an active ledger row are
        omitted even though they exist on the cluster.
        """
        cluster = self._registry.get_cluster(cluster_id)
        gateway = self._issuer.open_gateway(cluster, deadline)

        accounts: dict[str, str] = {}
        for namespace in (self._issuer.dedicated_namespace, self._issuer.legacy_namespace):
            for name in gateway.list_service_accounts(namespace):
                accounts.setdefault(name, namespace)

        identities = []
        for service_account, namespace in sorted(accounts.items()):
            username = self._issuer.username_from_service_account(service_account)
            if username is None:
                continue
            user_id = self._identity_store.find_user_id(username)
            if user_id is None:
                continue
            record = self._ledger.get_active_identity(cluster_id, user_id)
            if record is None or record.service_account != service_account:
                continue
            _, real_name = self._describe_user(user_id)
            identities.append(CredentialIdentity(
                user_id=user_id,
                username=username,
                real_name=real_name,
                service_account=service_account,
                namespace=namespace,
                created_at=record.created_at,
            ))
        return identities

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    def _create_binding(
        self,
        gateway: ClusterGateway,
        kind: RoleKind,
        binding_name: str,
        role_name: str,
        role_namespace: str,
        service_account: str,
    ) -> bool:
        """Create the binding object. Returns ``False`` if it already existed."""
        subject = SubjectView(
            kind="ServiceAccount",
            name=service_account,
            namespace=self._issuer.dedicated_namespace,
        )
        labels = {MANAGED_BY_LABEL: "opshub"}
        try:
            if kind is RoleKind.CLUSTER_ROLE:
                gateway.create_cluster_role_binding(
                    binding_name, role_name, subject,
                    labels=labels, annotations=BINDING_ANNOTATIONS,
                )
            else:
                gateway.create_role_binding(
                    role_namespace, binding_name, role_name, subject,
                    labels=labels, annotations=BINDING_ANNOTATIONS,
                )
        except UpstreamUnavailableError as exc:
            if exc.kind is not ResponseKind.ALREADY_EXISTS:
                raise
            logger.debug("Binding %s already exists", binding_name)
            return False
        logger.info("Created %s binding %s", kind, binding_name)
        return True

    def _compensate(
        self,
        gateway: ClusterGateway,
        kind: RoleKind,
        binding_name: str,
        role_namespace: str,
    ) -> None:
        try:
            delete_binding(gateway, kind, binding_name, role_namespace)
        except Exception:
            logger.warning(
                "Compensating delete of binding %s failed", binding_name, exc_info=True,
            )

    def _service_account_for(self, cluster_id: int, user_id: int) -> str:
        # The ledger row outlives the platform user; derive only without one
        record = self._ledger.get_identity(cluster_id, user_id)
        if record is not None:
            return record.service_account
        return self._issuer.service_account_name(self._identity_store.get_username(user_id))

    def _describe_user(self, user_id: int) -> tuple[str, str]:
        try:
            return (
                self._identity_store.get_username(user_id),
                self._identity_store.get_real_name(user_id),
            )
        except UnknownUserError:
            return "", ""


def delete_binding(
    gateway: ClusterGateway,
    kind: RoleKind,
    binding_name: str,
    role_namespace: str,
) -> bool:
    """Delete a ClusterRoleBinding or RoleBinding, tolerating NotFound.

    Returns ``True`` if the object existed.
    """
    try:
        if kind is RoleKind.CLUSTER_ROLE:
            gateway.delete_cluster_role_binding(binding_name)
        else:
            gateway.delete_role_binding(role_namespace, binding_name)
    except UpstreamUnavailableError as exc:
        if exc.kind is not ResponseKind.NOT_FOUND:
            raise
        return False
    logger.info("Deleted %s binding %s", kind, binding_name)
    return True


def _resolve_kind(role_kind: RoleKind | str | None, role_namespace: str) -> RoleKind:
    if role_kind is None:
        return RoleKind.ROLE if role_namespace else RoleKind.CLUSTER_ROLE
    try:
        kind = RoleKind(role_kind)
    except ValueError as exc:
        raise InvalidBindingError(f"Unknown role kind: {role_kind!r}") from exc
    if kind is RoleKind.ROLE and not role_namespace:
        raise InvalidBindingError("A Role binding needs a namespace")
    if kind is RoleKind.CLUSTER_ROLE and role_namespace:
        raise InvalidBindingError("A ClusterRole binding is cluster-scoped; omit the namespace")
    return kind


def _describe(role_name: str, role_namespace: str) -> str:
    return f"{role_namespace}/{role_name}" if role_namespace else role_name
