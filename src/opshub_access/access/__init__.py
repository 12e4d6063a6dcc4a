"""Per-user cluster access: connection resolution, role bindings, revocation."""

from opshub_access.access.bindings import RoleBindingManager
from opshub_access.access.resolver import ConnectionCache, ConnectionKey, ConnectionResolver
from opshub_access.access.revocation import RevocationEngine

__all__ = [
    "ConnectionCache",
    "ConnectionKey",
    "ConnectionResolver",
    "RevocationEngine",
    "RoleBindingManager",
]
