"""Shared fixtures: an in-memory cluster gateway, collaborators, and a ledger.

The fake gateway stands in for ClusterGateway at the GatewayFactory seam,
so component tests exercise real issuer/binding/revocation logic against
an in-memory model of the managed cluster.
"""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from opshub_access.collaborators.static import StaticClusterRegistry, StaticIdentityStore
from opshub_access.credentials.issuer import CredentialIssuer
from opshub_access.db.connection import Database
from opshub_access.db.migrations import run_migrations
from opshub_access.errors import ResponseKind, UpstreamUnavailableError
from opshub_access.kube.gateway import BindingView, SecretView, SubjectView
from opshub_access.ledger.store import Ledger
from opshub_access.models import ClusterAccess, PlatformUser
from opshub_access.service import AccessService

ADMIN_CA = "QURNSU4tQ0E="
SYSTEM_CA = "U1lTVEVNLUNB"

ADMIN_KUBECONFIG = f"""\
apiVersion: v1
kind: Config
clusters:
- name: prod
  cluster:
    certificate-authority-data: {ADMIN_CA}
    server: https://10.0.0.1:6443
contexts:
- name: admin@prod
  context:
    cluster: prod
    user: admin
current-context: admin@prod
users:
- name: admin
  user:
    token: admin-token
"""


def _not_found(what: str) -> UpstreamUnavailableError:
    return UpstreamUnavailableError(f"{what}: 404 Not Found", kind=ResponseKind.NOT_FOUND, status=404)


def _exists(what: str) -> UpstreamUnavailableError:
    return UpstreamUnavailableError(
        f"{what}: 409 Conflict", kind=ResponseKind.ALREADY_EXISTS, status=409,
    )


class FakeGateway:
    """In-memory model of one managed cluster with the ClusterGateway API.

    ``fail`` maps a method name to an exception raised on every call to it.
    ``calls`` records ``(method, args)`` for each call made.
    """

    def __init__(self) -> None:
        self.namespaces: dict[str, dict[str, str]] = {
            "default": {}, "kube-system": {}, "kube-public": {},
        }
        self.service_accounts: dict[tuple[str, str], dict[str, str]] = {}
        self.secrets: list[SecretView] = [
            SecretView(
                name="default-token-x7k2p", namespace="kube-system",
                data={"ca.crt": SYSTEM_CA, "token": "c3lzdGVt"},
            ),
        ]
        self.config_maps: dict[tuple[str, str], dict[str, str]] = {}
        self.cluster_role_bindings: dict[str, BindingView] = {}
        self.role_bindings: dict[tuple[str, str], BindingView] = {}
        self.binding_labels: dict[str, dict[str, str]] = {}
        self.fail: dict[str, Exception] = {}
        self.calls: list[tuple[str, tuple[Any, ...]]] = []

    def _record(self, method: str, *args: Any) -> None:
        self.calls.append((method, args))
        if method in self.fail:
            raise self.fail[method]

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    # --- Namespaces ---

    def read_namespace(self, name: str) -> None:
        self._record("read_namespace", name)
        if name not in self.namespaces:
            raise _not_found(f"namespace {name}")

    def create_namespace(self, name, labels=None, annotations=None) -> None:
        self._record("create_namespace", name)
        if name in self.namespaces:
            raise _exists(f"namespace {name}")
        self.namespaces[name] = dict(labels or {})

    def list_namespaces(self) -> list[str]:
        self._record("list_namespaces")
        return list(self.namespaces)

    # --- ServiceAccounts ---

    def read_service_account(self, namespace: str, name: str) -> None:
        self._record("read_service_account", namespace, name)
        if (namespace, name) not in self.service_accounts:
            raise _not_found(f"serviceaccount {namespace}/{name}")

    def create_service_account(self, namespace, name, labels=None) -> None:
        self._record("create_service_account", namespace, name)
        if (namespace, name) in self.service_accounts:
            raise _exists(f"serviceaccount {namespace}/{name}")
        self.service_accounts[(namespace, name)] = dict(labels or {})

    def delete_service_account(self, namespace: str, name: str) -> None:
        self._record("delete_service_account", namespace, name)
        if self.service_accounts.pop((namespace, name), None) is None:
            raise _not_found(f"serviceaccount {namespace}/{name}")

    def list_service_accounts(self, namespace: str) -> list[str]:
        self._record("list_service_accounts", namespace)
        return [n for (ns, n) in self.service_accounts if ns == namespace]

    def create_token(self, namespace: str, name: str, expiration_seconds: int) -> str:
        self._record("create_token", namespace, name, expiration_seconds)
        if (namespace, name) not in self.service_accounts:
            raise _not_found(f"serviceaccount {namespace}/{name}")
        return f"token-{namespace}-{name}"

    # --- Secrets and ConfigMaps ---

    def list_secrets(self, namespace: str | None = None) -> list[SecretView]:
        self._record("list_secrets", namespace)
        return [s for s in self.secrets if namespace is None or s.namespace == namespace]

    def read_config_map(self, namespace: str, name: str) -> dict[str, str]:
        self._record("read_config_map", namespace, name)
        data = self.config_maps.get((namespace, name))
        if data is None:
            raise _not_found(f"configmap {namespace}/{name}")
        return dict(data)

    # --- RBAC bindings ---

    def create_cluster_role_binding(self, name, role_name, subject, labels=None, annotations=None):
        self._record("create_cluster_role_binding", name, role_name, subject)
        if name in self.cluster_role_bindings:
            raise _exists(f"clusterrolebinding {name}")
        self.cluster_role_bindings[name] = BindingView(
            name=name, namespace="", role_kind="ClusterRole", role_name=role_name,
            subjects=(subject,),
        )
        self.binding_labels[name] = dict(labels or {})

    def create_role_binding(self, namespace, name, role_name, subject, labels=None,
                            annotations=None):
        self._record("create_role_binding", namespace, name, role_name, subject)
        if (namespace, name) in self.role_bindings:
            raise _exists(f"rolebinding {namespace}/{name}")
        self.role_bindings[(namespace, name)] = BindingView(
            name=name, namespace=namespace, role_kind="Role", role_name=role_name,
            subjects=(subject,),
        )
        self.binding_labels[f"{namespace}/{name}"] = dict(labels or {})

    def delete_cluster_role_binding(self, name: str) -> None:
        self._record("delete_cluster_role_binding", name)
        if self.cluster_role_bindings.pop(name, None) is None:
            raise _not_found(f"clusterrolebinding {name}")

    def delete_role_binding(self, namespace: str, name: str) -> None:
        self._record("delete_role_binding", namespace, name)
        if self.role_bindings.pop((namespace, name), None) is None:
            raise _not_found(f"rolebinding {namespace}/{name}")

    def list_cluster_role_bindings(self) -> list[BindingView]:
        self._record("list_cluster_role_bindings")
        return list(self.cluster_role_bindings.values())

    def list_role_bindings(self, namespace: str) -> list[BindingView]:
        self._record("list_role_bindings", namespace)
        return [b for (ns, _), b in self.role_bindings.items() if ns == namespace]

    # --- Test helpers ---

    def add_foreign_binding(
        self, name: str, service_account: str, namespace: str = "",
        subject_namespace: str = "default",
    ) -> None:
        """A binding created outside this package that names the account."""
        subject = SubjectView("ServiceAccount", service_account, subject_namespace)
        if namespace:
            self.role_bindings[(namespace, name)] = BindingView(
                name=name, namespace=namespace, role_kind="Role", role_name="edit",
                subjects=(subject,),
            )
        else:
            self.cluster_role_bindings[name] = BindingView(
                name=name, namespace="", role_kind="ClusterRole", role_name="view",
                subjects=(subject,),
            )

    def bindings_referencing(self, service_account: str) -> list[BindingView]:
        return [
            b for b in [*self.cluster_role_bindings.values(), *self.role_bindings.values()]
            if b.references(service_account)
        ]


# --- Fixtures ---


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture()
def gateway_factory(gateway: FakeGateway) -> MagicMock:
    """GatewayFactory returning the shared fake; records each call."""
    return MagicMock(side_effect=lambda kubeconfig, deadline=None: gateway)


@pytest.fixture()
def client_factory() -> MagicMock:
    """ClientFactory returning a distinct sentinel per build."""
    return MagicMock(side_effect=lambda kubeconfig: MagicMock(name="ApiClient"))


@pytest.fixture()
def cluster() -> ClusterAccess:
    return ClusterAccess(
        cluster_id=1,
        name="prod",
        api_endpoint="https://k8s.example.com:6443",
        admin_kubeconfig=ADMIN_KUBECONFIG,
    )


@pytest.fixture()
def registry(cluster: ClusterAccess) -> StaticClusterRegistry:
    return StaticClusterRegistry([cluster])


@pytest.fixture()
def identity_store() -> StaticIdentityStore:
    return StaticIdentityStore([
        PlatformUser(user_id=1, username="root", real_name="Root", roles=["admin"]),
        PlatformUser(user_id=7, username="alice", real_name="Alice Liddell", roles=["dev"]),
        PlatformUser(user_id=8, username="bob", real_name="Bob", roles=[]),
    ])


@pytest.fixture()
def db(tmp_path: Path) -> Iterator[Database]:
    database = Database(tmp_path / "ledger.db")
    run_migrations(database)
    yield database
    database.close()


@pytest.fixture()
def ledger(db: Database) -> Ledger:
    return Ledger(db)


@pytest.fixture()
def issuer(gateway_factory: MagicMock) -> CredentialIssuer:
    return CredentialIssuer(gateway_factory)


@pytest.fixture()
def service(
    registry: StaticClusterRegistry,
    identity_store: StaticIdentityStore,
    db: Database,
    gateway_factory: MagicMock,
    client_factory: MagicMock,
) -> AccessService:
    return AccessService(
        registry, identity_store, db,
        gateway_factory=gateway_factory,
        client_factory=client_factory,
    )
