"""Tests for the credential issuer: bootstrap, token chain, CA chain."""

from __future__ import annotations

import base64

import pytest
import yaml
from conftest import ADMIN_CA, ADMIN_KUBECONFIG, SYSTEM_CA, FakeGateway

from opshub_access.credentials.issuer import CredentialIssuer
from opshub_access.errors import (
    CredentialMaterialMissingError,
    DeadlineExceededError,
    ResponseKind,
    UpstreamUnavailableError,
)
from opshub_access.kube.gateway import SecretView
from opshub_access.models import ClusterAccess


def _forbidden(what: str = "call") -> UpstreamUnavailableError:
    return UpstreamUnavailableError(f"{what}: 403", kind=ResponseKind.FORBIDDEN, status=403)


def _no_ca_material(gateway: FakeGateway) -> None:
    gateway.secrets = []


# --- Naming ---


class TestNaming:
    def test_service_account_name(self, issuer: CredentialIssuer) -> None:
        assert issuer.service_account_name("alice") == "opshub-alice"

    def test_binding_name(self, issuer: CredentialIssuer) -> None:
        assert (
            issuer.binding_name("cluster-viewer", "opshub-alice")
            == "opshub-cluster-viewer-opshub-alice"
        )

    def test_username_from_service_account(self, issuer: CredentialIssuer) -> None:
        assert issuer.username_from_service_account("opshub-alice") == "alice"
        assert issuer.username_from_service_account("opshub-") is None
        assert issuer.username_from_service_account("builder") is None

    def test_custom_prefix(self, gateway_factory) -> None:
        issuer = CredentialIssuer(gateway_factory, name_prefix="ops-")
        assert issuer.service_account_name("bob") == "ops-bob"


# --- Bootstrap ---


class TestBootstrap:
    def test_creates_namespace_and_service_account(
        self, issuer: CredentialIssuer, cluster: ClusterAccess, gateway: FakeGateway,
    ) -> None:
        sa = issuer.bootstrap(cluster, "alice")
        assert sa == "opshub-alice"
        labels = gateway.namespaces["opshub-auth"]
        assert labels["name"] == "opshub-auth"
        assert labels["opshub.io/purpose"] == "authentication"
        assert labels["opshub.io/managed-by"] == "opshub"
        assert labels["opshub.io/namespace-type"] == "system"
        sa_labels = gateway.service_accounts[("opshub-auth", "opshub-alice")]
        assert sa_labels == {
            "opshub.io/created-by": "opshub",
            "opshub.io/username": "alice",
        }

    def test_idempotent(
        self, issuer: CredentialIssuer, cluster: ClusterAccess, gateway: FakeGateway,
    ) -> None:
        issuer.bootstrap(cluster, "alice")
        issuer.bootstrap(cluster, "alice")
        assert gateway.count("create_namespace") == 1
        assert gateway.count("create_service_account") == 1

    def test_never_creates_bindings(
        self, issuer: CredentialIssuer, cluster: ClusterAccess, gateway: FakeGateway,
    ) -> None:
        issuer.bootstrap(cluster, "alice")
        assert gateway.cluster_role_bindings == {}
        assert gateway.role_bindings == {}

    def test_lost_service_account_race_tolerated(
        self, issuer: CredentialIssuer, cluster: ClusterAccess, gateway: FakeGateway,
    ) -> None:
        # Another request created the account between our read and create
        gateway.service_accounts[("opshub-auth", "opshub-alice")] = {}
        gateway.fail["read_service_account"] = UpstreamUnavailableError(
            "gone", kind=ResponseKind.NOT_FOUND, status=404,
        )
        assert issuer.bootstrap(cluster, "alice") == "opshub-alice"

    def test_namespace_read_forbidden_propagates(
        self, issuer: CredentialIssuer, cluster: ClusterAccess, gateway: FakeGateway,
    ) -> None:
        gateway.fail["read_namespace"] = _forbidden("read namespace")
        with pytest.raises(UpstreamUnavailableError) as exc_info:
            issuer.bootstrap(cluster, "alice")
        assert exc_info.value.kind is ResponseKind.FORBIDDEN
        assert gateway.count("create_namespace") == 0

    def test_opens_gateway_from_admin_kubeconfig(
        self, issuer: CredentialIssuer, cluster: ClusterAccess, gateway_factory,
    ) -> None:
        issuer.bootstrap(cluster, "alice")
        gateway_factory.assert_called_once_with(ADMIN_KUBECONFIG, None)


# --- Issue ---


class TestIssue:
    def test_kubeconfig_document(
        self, issuer: CredentialIssuer, cluster: ClusterAccess,
    ) -> None:
        issued = issuer.issue(cluster, "alice")
        assert issued.service_account == "opshub-alice"
        assert issued.namespace == "opshub-auth"

        doc = yaml.safe_load(issued.kubeconfig)
        assert doc["apiVersion"] == "v1"
        assert doc["kind"] == "Config"
        assert doc["current-context"] == "prod-context"
        assert doc["clusters"][0]["name"] == "prod"
        assert doc["clusters"][0]["cluster"]["server"] == "https://k8s.example.com:6443"
        assert doc["clusters"][0]["cluster"]["certificate-authority-data"] == SYSTEM_CA
        assert doc["contexts"][0]["context"] == {"cluster": "prod", "user": "opshub-alice"}
        assert doc["users"][0]["name"] == "opshub-alice"
        assert doc["users"][0]["user"]["token"] == "token-opshub-auth-opshub-alice"

    def test_issue_twice_same_identity(
        self, issuer: CredentialIssuer, cluster: ClusterAccess, gateway: FakeGateway,
    ) -> None:
        first = issuer.issue(cluster, "alice")
        second = issuer.issue(cluster, "alice")
        assert first.service_account == second.service_account
        assert gateway.count("create_service_account") == 1
        assert [k for k in gateway.service_accounts if k[1] == "opshub-alice"] == [
            ("opshub-auth", "opshub-alice"),
        ]

    def test_token_ttl_is_one_year(
        self, issuer: CredentialIssuer, cluster: ClusterAccess, gateway: FakeGateway,
    ) -> None:
        issuer.issue(cluster, "alice")
        calls = [args for name, args in gateway.calls if name == "create_token"]
        assert calls[0] == ("opshub-auth", "opshub-alice", 86400 * 365)

    def test_server_falls_back_to_admin_kubeconfig(
        self, issuer: CredentialIssuer, cluster: ClusterAccess,
    ) -> None:
        no_endpoint = cluster.model_copy(update={"api_endpoint": ""})
        doc = yaml.safe_load(issuer.issue(no_endpoint, "alice").kubeconfig)
        assert doc["clusters"][0]["cluster"]["server"] == "https://10.0.0.1:6443"

    def test_no_server_anywhere(
        self, issuer: CredentialIssuer,
    ) -> None:
        bare = ClusterAccess(cluster_id=2, name="bare", admin_kubeconfig="kind: Config\n")
        with pytest.raises(CredentialMaterialMissingError) as exc_info:
            issuer.issue(bare, "alice")
        assert exc_info.value.material == "API server address"


# --- Token chain ---


class TestTokenChain:
    def test_legacy_namespace_token_request(
        self, issuer: CredentialIssuer, cluster: ClusterAccess, gateway: FakeGateway,
    ) -> None:
        gateway.service_accounts[("default", "opshub-legacy")] = {}
        doc = yaml.safe_load(issuer.mint(cluster, "opshub-legacy"))
        assert doc["users"][0]["user"]["token"] == "token-default-opshub-legacy"

    def test_token_secret_fallback(
        self, issuer: CredentialIssuer, cluster: ClusterAccess, gateway: FakeGateway,
    ) -> None:
        gateway.service_accounts[("default", "opshub-legacy")] = {}
        gateway.fail["create_token"] = _forbidden("TokenRequest")
        gateway.secrets.append(SecretView(
            name="opshub-legacy-token-9qz4m",
            namespace="default",
            data={"token": base64.b64encode(b"legacy-secret-token").decode()},
        ))
        doc = yaml.safe_load(issuer.mint(cluster, "opshub-legacy"))
        assert doc["users"][0]["user"]["token"] == "legacy-secret-token"

    def test_token_chain_exhausted(
        self, issuer: CredentialIssuer, cluster: ClusterAccess, gateway: FakeGateway,
    ) -> None:
        gateway.service_accounts[("opshub-auth", "opshub-alice")] = {}
        gateway.fail["create_token"] = _forbidden("TokenRequest")
        with pytest.raises(CredentialMaterialMissingError) as exc_info:
            issuer.mint(cluster, "opshub-alice")
        err = exc_info.value
        assert err.material == "token"
        assert len(err.attempts) == 3
        assert err.attempts[0].startswith("token-request:opshub-auth")
        assert err.attempts[2].startswith("token-secret")

    def test_deadline_is_not_absorbed_by_chain(
        self, issuer: CredentialIssuer, cluster: ClusterAccess, gateway: FakeGateway,
    ) -> None:
        gateway.service_accounts[("opshub-auth", "opshub-alice")] = {}
        gateway.fail["create_token"] = DeadlineExceededError("Deadline exceeded")
        with pytest.raises(DeadlineExceededError):
            issuer.mint(cluster, "opshub-alice")
        assert gateway.count("create_token") == 1


# --- CA chain ---


class TestCaChain:
    def test_system_secret_preferred(
        self, issuer: CredentialIssuer, cluster: ClusterAccess, gateway: FakeGateway,
    ) -> None:
        gateway.secrets.append(SecretView(
            name="other", namespace="monitoring", data={"ca.crt": "T1RIRVI="},
        ))
        doc = yaml.safe_load(issuer.issue(cluster, "alice").kubeconfig)
        assert doc["clusters"][0]["cluster"]["certificate-authority-data"] == SYSTEM_CA

    def test_any_secret_with_ca(
        self, issuer: CredentialIssuer, cluster: ClusterAccess, gateway: FakeGateway,
    ) -> None:
        gateway.secrets = [
            SecretView(name="tls", namespace="monitoring", data={"ca.crt": ""}),
            SecretView(name="sa-token", namespace="monitoring", data={"ca.crt": "T1RIRVI="}),
        ]
        doc = yaml.safe_load(issuer.issue(cluster, "alice").kubeconfig)
        assert doc["clusters"][0]["cluster"]["certificate-authority-data"] == "T1RIRVI="

    def test_cluster_info_configmap(
        self, issuer: CredentialIssuer, cluster: ClusterAccess, gateway: FakeGateway,
    ) -> None:
        _no_ca_material(gateway)
        gateway.config_maps[("kube-public", "cluster-info")] = {
            "kubeconfig": (
                "apiVersion: v1\nclusters:\n- name: ''\n  cluster:\n"
                "    certificate-authority-data: SU5GTy1DQQ==\n"
                "    server: https://10.0.0.1:6443\n"
            ),
        }
        doc = yaml.safe_load(issuer.issue(cluster, "alice").kubeconfig)
        assert doc["clusters"][0]["cluster"]["certificate-authority-data"] == "SU5GTy1DQQ=="

    def test_admin_kubeconfig_last_resort(
        self, issuer: CredentialIssuer, cluster: ClusterAccess, gateway: FakeGateway,
    ) -> None:
        _no_ca_material(gateway)
        issued = issuer.issue(cluster, "alice")
        doc = yaml.safe_load(issued.kubeconfig)
        assert doc["clusters"][0]["cluster"]["certificate-authority-data"] == ADMIN_CA

    def test_list_failure_moves_to_next_strategy(
        self, issuer: CredentialIssuer, cluster: ClusterAccess, gateway: FakeGateway,
    ) -> None:
        gateway.fail["list_secrets"] = _forbidden("list secrets")
        doc = yaml.safe_load(issuer.issue(cluster, "alice").kubeconfig)
        assert doc["clusters"][0]["cluster"]["certificate-authority-data"] == ADMIN_CA

    def test_ca_chain_exhausted(
        self, issuer: CredentialIssuer, gateway: FakeGateway,
    ) -> None:
        _no_ca_material(gateway)
        no_ca = ClusterAccess(
            cluster_id=3, name="no-ca", api_endpoint="https://x:6443",
            admin_kubeconfig="apiVersion: v1\nclusters:\n- name: x\n  cluster:\n    server: https://x:6443\n",
        )
        with pytest.raises(CredentialMaterialMissingError) as exc_info:
            issuer.issue(no_ca, "alice")
        assert exc_info.value.material == "ca"
        assert [a.split(":")[0] for a in exc_info.value.attempts] == [
            "system-secrets", "all-secrets", "cluster-info", "admin-kubeconfig",
        ]
