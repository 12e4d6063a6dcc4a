"""ClusterGateway: the boundary adapter to a managed cluster's API.

Wraps the official ``kubernetes`` client's ``CoreV1Api`` and ``RbacV1Api``
with the handful of calls this package needs. Every call:

- checks the caller's :class:`~opshub_access.deadline.Deadline` and
  forwards the remaining budget as ``_request_timeout``
- converts ``ApiException`` into :class:`UpstreamUnavailableError` tagged
  with a :class:`ResponseKind`, classified here and nowhere else
- returns plain views instead of client model objects
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import urllib3
from kubernetes import client
from kubernetes.client.exceptions import ApiException

from opshub_access.deadline import Deadline
from opshub_access.errors import ResponseKind, UpstreamUnavailableError
from opshub_access.kube.kubeconfig import client_from_kubeconfig

logger = logging.getLogger(__name__)

RBAC_API_GROUP = "rbac.authorization.k8s.io"

_STATUS_KINDS: dict[int, ResponseKind] = {
    401: ResponseKind.UNAUTHENTICATED,
    403: ResponseKind.FORBIDDEN,
    404: ResponseKind.NOT_FOUND,
    409: ResponseKind.ALREADY_EXISTS,
}

_REASON_KINDS: dict[str, ResponseKind] = {
    "AlreadyExists": ResponseKind.ALREADY_EXISTS,
    "NotFound": ResponseKind.NOT_FOUND,
    "Forbidden": ResponseKind.FORBIDDEN,
    "Unauthorized": ResponseKind.UNAUTHENTICATED,
    "Conflict": ResponseKind.OTHER,
}


def classify(exc: ApiException) -> ResponseKind:
    """Map an ``ApiException`` to a ResponseKind.

    The ``reason`` in the Status body wins over the HTTP status, so a 409
    optimistic-concurrency ``Conflict`` is not mistaken for AlreadyExists.
    """
    body = getattr(exc, "body", None)
    if body:
        try:
            reason = json.loads(body).get("reason")
        except (TypeError, ValueError, AttributeError):
            reason = None
        if reason in _REASON_KINDS:
            return _REASON_KINDS[reason]
    return _STATUS_KINDS.get(exc.status or 0, ResponseKind.OTHER)


@dataclass(frozen=True)
class SubjectView:
    kind: str
    name: str
    namespace: str = ""


@dataclass(frozen=True)
class BindingView:
    """A ClusterRoleBinding (``namespace == ""``) or RoleBinding."""

    name: str
    namespace: str
    role_kind: str
    role_name: str
    subjects: tuple[SubjectView, ...] = ()

    def references(self, service_account: str) -> bool:
        """True if any ServiceAccount subject carries this name, in any namespace."""
        return any(
            s.kind == "ServiceAccount" and s.name == service_account
            for s in self.subjects
        )


@dataclass(frozen=True)
class SecretView:
    name: str
    namespace: str
    data: dict[str, str] = field(default_factory=dict)


class ClusterGateway:
    """Typed, deadline-aware access to one managed cluster."""

    def __init__(self, api_client: Any, deadline: Deadline | None = None) -> None:
        self._api_client = api_client
        self._core = client.CoreV1Api(api_client)
        self._rbac = client.RbacAuthorizationV1Api(api_client)
        self._deadline = deadline

    # --- Private: call wrapper ---

    def _call(self, description: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        if self._deadline is not None:
            timeout = self._deadline.remaining()
            if timeout is not None:
                kwargs["_request_timeout"] = timeout
        try:
            return fn(*args, **kwargs)
        except ApiException as exc:
            kind = classify(exc)
            raise UpstreamUnavailableError(
                f"{description}: {exc.status} {exc.reason}",
                kind=kind,
                status=exc.status,
            ) from exc
        except (urllib3.exceptions.HTTPError, OSError) as exc:
            raise UpstreamUnavailableError(f"{description}: {exc}") from exc

    # --- Namespaces ---

    def read_namespace(self, name: str) -> None:
        self._call(f"read namespace {name}", self._core.read_namespace, name)

    def create_namespace(
        self,
        name: str,
        labels: dict[str, str] | None = None,
        annotations: dict[str, str] | None = None,
    ) -> None:
        body = client.V1Namespace(
            metadata=client.V1ObjectMeta(name=name, labels=labels, annotations=annotations),
        )
        self._call(f"create namespace {name}", self._core.create_namespace, body=body)

    def list_namespaces(self) -> list[str]:
        result = self._call("list namespaces", self._core.list_namespace)
        return [ns.metadata.name for ns in result.items]

    # --- ServiceAccounts ---

    def read_service_account(self, namespace: str, name: str) -> None:
        self._call(
            f"read serviceaccount {namespace}/{name}",
            self._core.read_namespaced_service_account, name, namespace,
        )

    def create_service_account(
        self,
        namespace: str,
        name: str,
        labels: dict[str, str] | None = None,
    ) -> None:
        body = client.V1ServiceAccount(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace, labels=labels),
        )
        self._call(
            f"create serviceaccount {namespace}/{name}",
            self._core.create_namespaced_service_account, namespace, body,
        )

    def delete_service_account(self, namespace: str, name: str) -> None:
        self._call(
            f"delete serviceaccount {namespace}/{name}",
            self._core.delete_namespaced_service_account, name, namespace,
        )

    def list_service_accounts(self, namespace: str) -> list[str]:
        result = self._call(
            f"list serviceaccounts in {namespace}",
            self._core.list_namespaced_service_account, namespace,
        )
        return [sa.metadata.name for sa in result.items]

    def create_token(self, namespace: str, name: str, expiration_seconds: int) -> str:
        """Issue a bound token via the TokenRequest API."""
        body = client.AuthenticationV1TokenRequest(
            spec=client.V1TokenRequestSpec(
                audiences=[],
                expiration_seconds=expiration_seconds,
            ),
        )
        result = self._call(
            f"create token for {namespace}/{name}",
            self._core.create_namespaced_service_account_token, name, namespace, body,
        )
        token = result.status.token if result.status is not None else ""
        return token or ""

    # --- Secrets and ConfigMaps ---

    def list_secrets(self, namespace: str | None = None) -> list[SecretView]:
        """List secrets in *namespace*, or across all namespaces if ``None``."""
        if namespace is None:
            result = self._call(
                "list secrets in all namespaces",
                self._core.list_secret_for_all_namespaces,
            )
        else:
            result = self._call(
                f"list secrets in {namespace}",
                self._core.list_namespaced_secret, namespace,
            )
        return [
            SecretView(
                name=s.metadata.name,
                namespace=s.metadata.namespace or "",
                data=dict(s.data or {}),
            )
            for s in result.items
        ]

    def read_config_map(self, namespace: str, name: str) -> dict[str, str]:
        result = self._call(
            f"read configmap {namespace}/{name}",
            self._core.read_namespaced_config_map, name, namespace,
        )
        return dict(result.data or {})

    # --- RBAC bindings ---

    def create_cluster_role_binding(
        self,
        name: str,
        role_name: str,
        subject: SubjectView,
        labels: dict[str, str] | None = None,
        annotations: dict[str, str] | None = None,
    ) -> None:
        body = _binding_body("ClusterRoleBinding", name, "", "ClusterRole", role_name,
                             subject, labels, annotations)
        self._call(
            f"create clusterrolebinding {name}",
            self._rbac.create_cluster_role_binding, body,
        )

    def create_role_binding(
        self,
        namespace: str,
        name: str,
        role_name: str,
        subject: SubjectView,
        labels: dict[str, str] | None = None,
        annotations: dict[str, str] | None = None,
    ) -> None:
        body = _binding_body("RoleBinding", name, namespace, "Role", role_name,
                             subject, labels, annotations)
        self._call(
            f"create rolebinding {namespace}/{name}",
            self._rbac.create_namespaced_role_binding, namespace, body,
        )

    def delete_cluster_role_binding(self, name: str) -> None:
        self._call(
            f"delete clusterrolebinding {name}",
            self._rbac.delete_cluster_role_binding, name,
        )

    def delete_role_binding(self, namespace: str, name: str) -> None:
        self._call(
            f"delete rolebinding {namespace}/{name}",
            self._rbac.delete_namespaced_role_binding, name, namespace,
        )

    def list_cluster_role_bindings(self) -> list[BindingView]:
        result = self._call(
            "list clusterrolebindings", self._rbac.list_cluster_role_binding,
        )
        return [_to_binding_view(b, "") for b in result.items]

    def list_role_bindings(self, namespace: str) -> list[BindingView]:
        result = self._call(
            f"list rolebindings in {namespace}",
            self._rbac.list_namespaced_role_binding, namespace,
        )
        return [_to_binding_view(b, namespace) for b in result.items]


GatewayFactory = Callable[[str, Deadline | None], ClusterGateway]


def gateway_from_kubeconfig(
    kubeconfig: str, deadline: Deadline | None = None,
) -> ClusterGateway:
    """Default GatewayFactory: build a gateway from admin kubeconfig text."""
    return ClusterGateway(client_from_kubeconfig(kubeconfig), deadline)


# --- Private: body builders ---


def _binding_body(
    kind: str,
    name: str,
    namespace: str,
    role_kind: str,
    role_name: str,
    subject: SubjectView,
    labels: dict[str, str] | None,
    annotations: dict[str, str] | None,
) -> dict[str, Any]:
    metadata: dict[str, Any] = {"name": name}
    if namespace:
        metadata["namespace"] = namespace
    if labels:
        metadata["labels"] = dict(labels)
    if annotations:
        metadata["annotations"] = dict(annotations)
    return {
        "apiVersion": f"{RBAC_API_GROUP}/v1",
        "kind": kind,
        "metadata": metadata,
        "subjects": [
            {
                "kind": subject.kind,
                "name": subject.name,
                "namespace": subject.namespace,
            },
        ],
        "roleRef": {
            "apiGroup": RBAC_API_GROUP,
            "kind": role_kind,
            "name": role_name,
        },
    }


def _to_binding_view(binding: Any, namespace: str) -> BindingView:
    role_ref = binding.role_ref
    subjects = tuple(
        SubjectView(kind=s.kind or "", name=s.name or "", namespace=s.namespace or "")
        for s in (binding.subjects or [])
    )
    return BindingView(
        name=binding.metadata.name,
        namespace=namespace,
        role_kind=role_ref.kind if role_ref is not None else "",
        role_name=role_ref.name if role_ref is not None else "",
        subjects=subjects,
    )
