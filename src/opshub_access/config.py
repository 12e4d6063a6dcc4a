"""Config file loading and auto-discovery for opshub-access.

Searches for ``opshub-access.yaml`` in the current directory and parent
directories, parses it, and resolves relative paths against the config
file's location.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

CONFIG_FILENAME = "opshub-access.yaml"

DEFAULT_DEDICATED_NAMESPACE = "opshub-auth"
DEFAULT_LEGACY_NAMESPACE = "default"
DEFAULT_NAME_PREFIX = "opshub-"
DEFAULT_ADMIN_ROLE_CODE = "admin"
DEFAULT_TOKEN_TTL_SECONDS = 86400 * 365


@dataclass(frozen=True)
class AccessConfig:
    """Parsed opshub-access configuration."""

    config_path: Path | None = None
    db_path: str = "./opshub-access.db"
    dedicated_namespace: str = DEFAULT_DEDICATED_NAMESPACE
    legacy_namespace: str = DEFAULT_LEGACY_NAMESPACE
    name_prefix: str = DEFAULT_NAME_PREFIX
    admin_role_code: str = DEFAULT_ADMIN_ROLE_CODE
    token_ttl_seconds: int = DEFAULT_TOKEN_TTL_SECONDS
    default_timeout: float | None = None
    clusters: list[dict[str, Any]] = field(default_factory=list)
    users: list[dict[str, Any]] = field(default_factory=list)


def find_config(start: Path | None = None) -> Path | None:
    """Walk from *start* (default ``cwd()``) up to the filesystem root.

    Returns the first ``opshub-access.yaml`` found, or ``None``.
    """
    current = (start or Path.cwd()).resolve()
    while True:
        candidate = current / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            return None
        current = parent


def load_config(
    path: str | Path | None = None,
    *,
    auto_discover: bool = True,
) -> AccessConfig:
    """Load an opshub-access config file.

    Resolution order:

    1. Explicit *path* (error if it doesn't exist).
    2. Auto-discover by walking parent directories.
    3. Return an empty ``AccessConfig`` (all defaults).
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path).resolve()
        if not config_path.is_file():
            msg = f"Config file not found: {config_path}"
            raise FileNotFoundError(msg)
    elif auto_discover:
        config_path = find_config()

    if config_path is None:
        return AccessConfig()

    return _parse_config(config_path)


def _parse_config(config_path: Path) -> AccessConfig:
    """Read and parse a YAML config file, resolving relative paths."""
    text = config_path.read_text(encoding="utf-8")
    data = yaml.safe_load(text) or {}

    if not isinstance(data, dict):
        msg = f"Expected a YAML mapping in {config_path}, got {type(data).__name__}"
        raise ValueError(msg)

    base = config_path.parent

    clusters = []
    for entry in data.get("clusters") or []:
        entry = dict(entry)
        # Admin kubeconfigs may be referenced by file instead of inlined
        kubeconfig_file = entry.pop("kubeconfig_file", None)
        if kubeconfig_file is not None:
            entry["kubeconfig"] = (base / kubeconfig_file).read_text(encoding="utf-8")
        clusters.append(entry)

    timeout = data.get("default_timeout")

    return AccessConfig(
        config_path=config_path,
        db_path=str((base / data.get("db_path", "opshub-access.db")).resolve()),
        dedicated_namespace=data.get("dedicated_namespace", DEFAULT_DEDICATED_NAMESPACE),
        legacy_namespace=data.get("legacy_namespace", DEFAULT_LEGACY_NAMESPACE),
        name_prefix=data.get("name_prefix", DEFAULT_NAME_PREFIX),
        admin_role_code=data.get("admin_role_code", DEFAULT_ADMIN_ROLE_CODE),
        token_ttl_seconds=int(data.get("token_ttl_seconds", DEFAULT_TOKEN_TTL_SECONDS)),
        default_timeout=float(timeout) if timeout is not None else None,
        clusters=clusters,
        users=list(data.get("users") or []),
    )
