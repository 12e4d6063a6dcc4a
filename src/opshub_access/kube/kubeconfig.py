"""Kubeconfig parsing, rendering and client construction.

The rendered document is the portable credential handed to callers: one
cluster, one user, one context, marked current. Any standard Kubernetes
client can load it.
"""

from __future__ import annotations

from typing import Any

import yaml
from kubernetes import client, config
from kubernetes.config.config_exception import ConfigException

from opshub_access.errors import UpstreamUnavailableError


def parse_kubeconfig(text: str) -> dict[str, Any] | None:
    """Parse a kubeconfig document, returning ``None`` if it isn't one."""
    if not text:
        return None
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError:
        return None
    return data if isinstance(data, dict) else None


def _current_cluster(data: dict[str, Any]) -> dict[str, Any]:
    """The cluster entry of the current context, else the first cluster."""
    clusters = [c for c in data.get("clusters") or [] if isinstance(c, dict)]
    if not clusters:
        return {}

    current = data.get("current-context")
    cluster_name = None
    for ctx in data.get("contexts") or []:
        if isinstance(ctx, dict) and ctx.get("name") == current:
            cluster_name = (ctx.get("context") or {}).get("cluster")
            break

    for entry in clusters:
        if cluster_name is not None and entry.get("name") == cluster_name:
            return entry.get("cluster") or {}
    return clusters[0].get("cluster") or {}


def extract_ca_data(text: str) -> str:
    """Return ``certificate-authority-data`` from a kubeconfig, or ``""``."""
    data = parse_kubeconfig(text)
    if data is None:
        return ""
    value = _current_cluster(data).get("certificate-authority-data") or ""
    return "".join(str(value).split())


def extract_server(text: str) -> str:
    """Return the API server URL from a kubeconfig, or ``""``."""
    data = parse_kubeconfig(text)
    if data is None:
        return ""
    return str(_current_cluster(data).get("server") or "").strip()


def render_kubeconfig(
    cluster_name: str,
    ca_data: str,
    server: str,
    username: str,
    token: str,
) -> str:
    """Render a single-cluster, single-context token kubeconfig."""
    context_name = f"{cluster_name}-context"
    document = {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [
            {
                "name": cluster_name,
                "cluster": {
                    "certificate-authority-data": ca_data,
                    "server": server,
                },
            },
        ],
        "contexts": [
            {
                "name": context_name,
                "context": {"cluster": cluster_name, "user": username},
            },
        ],
        "current-context": context_name,
        "preferences": {},
        "users": [
            {"name": username, "user": {"token": token}},
        ],
    }
    return yaml.safe_dump(document, sort_keys=False, default_flow_style=False)


def client_from_kubeconfig(text: str) -> client.ApiClient:
    """Build a live ``ApiClient`` from kubeconfig text."""
    data = parse_kubeconfig(text)
    if data is None:
        raise UpstreamUnavailableError("Credential is not a valid kubeconfig document")
    try:
        return config.new_client_from_config_dict(data)
    except ConfigException as exc:
        raise UpstreamUnavailableError(f"Unusable kubeconfig: {exc}") from exc
