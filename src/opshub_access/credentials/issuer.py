"""Credential issuer: ServiceAccounts and kubeconfigs for platform users.

The issuer:
1. Ensures the dedicated authentication namespace exists
2. Derives the ServiceAccount name from the platform username
3. Creates the ServiceAccount if it does not exist yet
4. Acquires a token and the cluster CA through fallback chains
5. Renders a portable kubeconfig for the ServiceAccount

The issuer never attaches permissions. A freshly issued identity can
authenticate but is authorized for nothing until the role-binding
manager binds it to a ClusterRole or Role.
"""

from __future__ import annotations

import base64
import binascii
import logging

from opshub_access.config import (
    DEFAULT_DEDICATED_NAMESPACE,
    DEFAULT_LEGACY_NAMESPACE,
    DEFAULT_NAME_PREFIX,
    DEFAULT_TOKEN_TTL_SECONDS,
)
from opshub_access.credentials.strategies import Strategy, StrategyOutcome, run_chain
from opshub_access.deadline import Deadline
from opshub_access.errors import (
    CredentialMaterialMissingError,
    ResponseKind,
    UpstreamUnavailableError,
)
from opshub_access.kube.gateway import ClusterGateway, GatewayFactory, gateway_from_kubeconfig
from opshub_access.kube.kubeconfig import extract_ca_data, extract_server, render_kubeconfig
from opshub_access.models import ClusterAccess, IssuedCredential

logger = logging.getLogger(__name__)

SYSTEM_NAMESPACE = "kube-system"
PUBLIC_NAMESPACE = "kube-public"
CLUSTER_INFO_CONFIGMAP = "cluster-info"
SYSTEM_CA_SECRET_PREFIXES = ("default-token-", "coredns-token-")
CA_KEY = "ca.crt"

LABEL_PREFIX = "opshub.io"
MANAGED_BY_LABEL = f"{LABEL_PREFIX}/managed-by"


class CredentialIssuer:
    """Issues and re-mints ServiceAccount credentials on managed clusters.

    Stateless apart from naming configuration; every call opens a gateway
    from the cluster's admin kubeconfig unless one is passed in.
    """

    def __init__(
        self,
        gateway_factory: GatewayFactory = gateway_from_kubeconfig,
        *,
        dedicated_namespace: str = DEFAULT_DEDICATED_NAMESPACE,
        legacy_namespace: str = DEFAULT_LEGACY_NAMESPACE,
        name_prefix: str = DEFAULT_NAME_PREFIX,
        token_ttl_seconds: int = DEFAULT_TOKEN_TTL_SECONDS,
    ) -> None:
        self._gateway_factory = gateway_factory
        self.dedicated_namespace = dedicated_namespace
        self.legacy_namespace = legacy_namespace
        self.name_prefix = name_prefix
        self._token_ttl = token_ttl_seconds

    # ------------------------------------------------------------------
    # Naming
    # ------------------------------------------------------------------

    def service_account_name(self, username: str) -> str:
        """Deterministic ServiceAccount name for a platform username."""
        return f"{self.name_prefix}{username}"

    def binding_name(self, role_name: str, service_account: str) -> str:
        """Deterministic (Cluster)RoleBinding name."""
        return f"{self.name_prefix}{role_name}-{service_account}"

    def username_from_service_account(self, service_account: str) -> str | None:
        if not service_account.startswith(self.name_prefix):
            return None
        return service_account[len(self.name_prefix):] or None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def open_gateway(
        self, cluster: ClusterAccess, deadline: Deadline | None = None,
    ) -> ClusterGateway:
        """Open an admin gateway for *cluster*."""
        return self._gateway_factory(cluster.admin_kubeconfig, deadline)

    def bootstrap(
        self,
        cluster: ClusterAccess,
        username: str,
        deadline: Deadline | None = None,
        *,
        gateway: ClusterGateway | None = None,
    ) -> str:
        """Ensure the namespace and the user's ServiceAccount exist.

        Idempotent: repeated calls target the same objects. Returns the
        ServiceAccount name.
        """
        gw = gateway or self.open_gateway(cluster, deadline)
        self.ensure_namespace(gw)
        service_account = self.service_account_name(username)
        self._ensure_service_account(gw, service_account, username)
        return service_account

    def issue(
        self,
        cluster: ClusterAccess,
        username: str,
        deadline: Deadline | None = None,
    ) -> IssuedCredential:
        """Bootstrap the user's ServiceAccount and mint a kubeconfig for it."""
        gw = self.open_gateway(cluster, deadline)
        service_account = self.bootstrap(cluster, username, deadline, gateway=gw)
        kubeconfig = self.mint(cluster, service_account, deadline, gateway=gw)
        logger.info(
            "Issued credential %s on cluster %s", service_account, cluster.name,
        )
        return IssuedCredential(
            service_account=service_account,
            namespace=self.dedicated_namespace,
            kubeconfig=kubeconfig,
        )

    def mint(
        self,
        cluster: ClusterAccess,
        service_account: str,
        deadline: Deadline | None = None,
        *,
        gateway: ClusterGateway | None = None,
    ) -> str:
        """Produce a fresh kubeconfig for an existing ServiceAccount.

        Raises:
            CredentialMaterialMissingError: If no token, CA bundle, or API
                server address could be obtained.
        """
        gw = gateway or self.open_gateway(cluster, deadline)
        token = self._acquire_token(gw, service_account)
        ca_data = self._acquire_ca(gw, cluster)
        server = self._api_server(cluster)
        return render_kubeconfig(
            cluster_name=cluster.name,
            ca_data=ca_data,
            server=server,
            username=service_account,
            token=token,
        )

    def locate_service_account(
        self, gateway: ClusterGateway, service_account: str,
    ) -> str | None:
        """Return the namespace holding *service_account*, dedicated first."""
        for namespace in (self.dedicated_namespace, self.legacy_namespace):
            try:
                gateway.read_service_account(namespace, service_account)
            except UpstreamUnavailableError as exc:
                if exc.kind is ResponseKind.NOT_FOUND:
                    continue
                raise
            return namespace
        return None

    def ensure_namespace(self, gateway: ClusterGateway) -> None:
        """Create the dedicated namespace unless it already exists."""
        name = self.dedicated_namespace
        try:
            gateway.read_namespace(name)
            return
        except UpstreamUnavailableError as exc:
            if exc.kind is not ResponseKind.NOT_FOUND:
                raise

        labels = {
            "name": name,
            f"{LABEL_PREFIX}/purpose": "authentication",
            MANAGED_BY_LABEL: "opshub",
            f"{LABEL_PREFIX}/namespace-type": "system",
        }
        annotations = {
            "description": (
                "OpsHub user authentication namespace - managed by OpsHub, "
                "do not modify manually"
            ),
        }
        try:
            gateway.create_namespace(name, labels=labels, annotations=annotations)
        except UpstreamUnavailableError as exc:
            if exc.kind is not ResponseKind.ALREADY_EXISTS:
                raise
            return
        logger.info("Created namespace %s", name)

    # ------------------------------------------------------------------
    # Private: ServiceAccount
    # ------------------------------------------------------------------

    def _ensure_service_account(
        self, gateway: ClusterGateway, service_account: str, username: str,
    ) -> None:
        namespace = self.dedicated_namespace
        try:
            gateway.read_service_account(namespace, service_account)
            return
        except UpstreamUnavailableError as exc:
            if exc.kind is not ResponseKind.NOT_FOUND:
                raise

        labels = {
            f"{LABEL_PREFIX}/created-by": "opshub",
            f"{LABEL_PREFIX}/username": username,
        }
        try:
            gateway.create_service_account(namespace, service_account, labels=labels)
        except UpstreamUnavailableError as exc:
            # Lost a creation race with a concurrent issue for the same user
            if exc.kind is not ResponseKind.ALREADY_EXISTS:
                raise
            return
        logger.info("Created serviceaccount %s/%s", namespace, service_account)

    # ------------------------------------------------------------------
    # Private: token chain
    # ------------------------------------------------------------------

    def _acquire_token(self, gateway: ClusterGateway, service_account: str) -> str:
        strategies = [
            Strategy(
                f"token-request:{self.dedicated_namespace}",
                lambda: self._token_request(gateway, self.dedicated_namespace, service_account),
            ),
            Strategy(
                f"token-request:{self.legacy_namespace}",
                lambda: self._token_request(gateway, self.legacy_namespace, service_account),
            ),
            Strategy(
                "token-secret",
                lambda: self._token_from_secret(gateway, service_account),
            ),
        ]
        return run_chain("token", strategies)

    def _token_request(
        self, gateway: ClusterGateway, namespace: str, service_account: str,
    ) -> StrategyOutcome:
        token = gateway.create_token(namespace, service_account, self._token_ttl)
        if not token:
            return StrategyOutcome.failure("TokenRequest returned no token")
        return StrategyOutcome.success(token)

    def _token_from_secret(
        self, gateway: ClusterGateway, service_account: str,
    ) -> StrategyOutcome:
        namespace = self.locate_service_account(gateway, service_account)
        if namespace is None:
            return StrategyOutcome.failure(
                f"serviceaccount {service_account} not found in "
                f"{self.dedicated_namespace} or {self.legacy_namespace}"
            )

        prefix = f"{service_account}-token"
        for secret in gateway.list_secrets(namespace):
            if not secret.name.startswith(prefix):
                continue
            encoded = secret.data.get("token", "")
            if not encoded:
                return StrategyOutcome.failure(f"secret {secret.name} has no token")
            try:
                return StrategyOutcome.success(base64.b64decode(encoded).decode("utf-8"))
            except (binascii.Error, UnicodeDecodeError) as exc:
                return StrategyOutcome.failure(f"secret {secret.name}: {exc}")
        return StrategyOutcome.failure(f"no secret prefixed {prefix} in {namespace}")

    # ------------------------------------------------------------------
    # Private: CA chain
    # ------------------------------------------------------------------

    def _acquire_ca(self, gateway: ClusterGateway, cluster: ClusterAccess) -> str:
        strategies = [
            Strategy("system-secrets", lambda: self._ca_from_system_secrets(gateway)),
            Strategy("all-secrets", lambda: self._ca_from_any_secret(gateway)),
            Strategy("cluster-info", lambda: self._ca_from_cluster_info(gateway)),
            Strategy("admin-kubeconfig", lambda: self._ca_from_admin(cluster)),
        ]
        return run_chain("ca", strategies)

    def _ca_from_system_secrets(self, gateway: ClusterGateway) -> StrategyOutcome:
        for secret in gateway.list_secrets(SYSTEM_NAMESPACE):
            if secret.name.startswith(SYSTEM_CA_SECRET_PREFIXES) and secret.data.get(CA_KEY):
                return StrategyOutcome.success(secret.data[CA_KEY])
        return StrategyOutcome.failure(f"no token secret with {CA_KEY} in {SYSTEM_NAMESPACE}")

    def _ca_from_any_secret(self, gateway: ClusterGateway) -> StrategyOutcome:
        for secret in gateway.list_secrets(None):
            if secret.data.get(CA_KEY):
                return StrategyOutcome.success(secret.data[CA_KEY])
        return StrategyOutcome.failure(f"no secret carries {CA_KEY}")

    def _ca_from_cluster_info(self, gateway: ClusterGateway) -> StrategyOutcome:
        data = gateway.read_config_map(PUBLIC_NAMESPACE, CLUSTER_INFO_CONFIGMAP)
        ca_data = extract_ca_data(data.get("kubeconfig", ""))
        if not ca_data:
            return StrategyOutcome.failure(
                f"{PUBLIC_NAMESPACE}/{CLUSTER_INFO_CONFIGMAP} has no CA data"
            )
        return StrategyOutcome.success(ca_data)

    def _ca_from_admin(self, cluster: ClusterAccess) -> StrategyOutcome:
        ca_data = extract_ca_data(cluster.admin_kubeconfig)
        if not ca_data:
            return StrategyOutcome.failure("admin kubeconfig has no certificate-authority-data")
        return StrategyOutcome.success(ca_data)

    # ------------------------------------------------------------------
    # Private: server address
    # ------------------------------------------------------------------

    def _api_server(self, cluster: ClusterAccess) -> str:
        if cluster.api_endpoint:
            return cluster.api_endpoint
        server = extract_server(cluster.admin_kubeconfig)
        if not server:
            raise CredentialMaterialMissingError(
                "API server address",
                ["registry endpoint: empty", "admin kubeconfig: no server field"],
            )
        return server
