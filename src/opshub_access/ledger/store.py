"""Local ledger of issued service identities and role bindings.

The ledger is this package's record of what it believes exists on each
managed cluster. Only the credential issuer, the role-binding manager and
the revocation engine write to it, and only after the corresponding
managed-cluster call has returned success.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime

from opshub_access.db.connection import Database
from opshub_access.errors import AlreadyBoundError, LedgerError
from opshub_access.models import RoleBindingRecord, RoleKind, ServiceIdentityRecord

logger = logging.getLogger(__name__)


@contextmanager
def _ledger_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as exc:
        raise LedgerError(f"Ledger {operation} failed: {exc}") from exc


def _now() -> str:
    return datetime.now(tz=UTC).isoformat()


class Ledger:
    """Typed access to the ``service_identities`` and ``role_bindings`` tables."""

    def __init__(self, db: Database) -> None:
        self._db = db

    # ------------------------------------------------------------------
    # Service identities
    # ------------------------------------------------------------------

    def get_identity(self, cluster_id: int, user_id: int) -> ServiceIdentityRecord | None:
        with _ledger_errors("identity lookup"):
            row = self._db.fetchone(
                "SELECT * FROM service_identities WHERE cluster_id = ? AND user_id = ?",
                (cluster_id, user_id),
            )
        return self._row_to_identity(row) if row else None

    def get_active_identity(
        self, cluster_id: int, user_id: int,
    ) -> ServiceIdentityRecord | None:
        """Return the user's identity only if it is active and not revoked."""
        record = self.get_identity(cluster_id, user_id)
        if record is None or not record.is_active or record.revoked_at is not None:
            return None
        return record

    def find_identity_by_account(
        self, cluster_id: int, service_account: str,
    ) -> ServiceIdentityRecord | None:
        with _ledger_errors("identity lookup"):
            row = self._db.fetchone(
                """SELECT * FROM service_identities
                   WHERE cluster_id = ? AND service_account = ?
                   ORDER BY created_at DESC, id DESC LIMIT 1""",
                (cluster_id, service_account),
            )
        return self._row_to_identity(row) if row else None

    def list_identities(
        self, cluster_id: int, active_only: bool = False,
    ) -> list[ServiceIdentityRecord]:
        sql = "SELECT * FROM service_identities WHERE cluster_id = ?"
        if active_only:
            sql += " AND is_active = 1 AND revoked_at IS NULL"
        sql += " ORDER BY created_at, id"
        with _ledger_errors("identity listing"):
            rows = self._db.fetchall(sql, (cluster_id,))
        return [self._row_to_identity(r) for r in rows]

    def upsert_identity(
        self,
        cluster_id: int,
        user_id: int,
        service_account: str,
        namespace: str,
        created_by: int,
    ) -> ServiceIdentityRecord:
        """Create or reactivate the single identity row for (cluster, user)."""
        with _ledger_errors("identity upsert"):
            self._db.write(
                """INSERT INTO service_identities
                   (cluster_id, user_id, service_account, namespace,
                    is_active, created_by, created_at, revoked_at)
                   VALUES (?, ?, ?, ?, 1, ?, ?, NULL)
                   ON CONFLICT(cluster_id, user_id) DO UPDATE SET
                       service_account = excluded.service_account,
                       namespace = excluded.namespace,
                       is_active = 1,
                       created_by = excluded.created_by,
                       revoked_at = NULL""",
                (cluster_id, user_id, service_account, namespace, created_by, _now()),
            )
        record = self.get_identity(cluster_id, user_id)
        if record is None:
            raise LedgerError(
                f"Identity row for cluster {cluster_id} user {user_id} vanished after upsert"
            )
        logger.info(
            "Ledger: identity %s active for cluster=%s user=%s",
            service_account, cluster_id, user_id,
        )
        return record

    # ------------------------------------------------------------------
    # Role bindings
    # ------------------------------------------------------------------

    def get_binding(
        self,
        cluster_id: int,
        user_id: int,
        role_name: str,
        role_namespace: str = "",
    ) -> RoleBindingRecord | None:
        with _ledger_errors("binding lookup"):
            row = self._db.fetchone(
                """SELECT * FROM role_bindings
                   WHERE cluster_id = ? AND user_id = ?
                     AND role_name = ? AND role_namespace = ?""",
                (cluster_id, user_id, role_name, role_namespace),
            )
        return self._row_to_binding(row) if row else None

    def insert_binding(
        self,
        cluster_id: int,
        user_id: int,
        role_name: str,
        role_namespace: str,
        role_kind: RoleKind,
        bound_by: int,
    ) -> RoleBindingRecord:
        """Record a binding.

        Raises:
            AlreadyBoundError: If a row for the same (cluster, user, role,
                namespace) already exists.
            LedgerError: On any other write failure.
        """
        now = _now()
        with _ledger_errors("binding insert"):
            try:
                cursor = self._db.write(
                    """INSERT INTO role_bindings
                       (cluster_id, user_id, role_name, role_namespace,
                        role_kind, bound_by, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?)""",
                    (cluster_id, user_id, role_name, role_namespace,
                     str(role_kind), bound_by, now),
                )
            except sqlite3.IntegrityError as exc:
                if exc.sqlite_errorname != "SQLITE_CONSTRAINT_UNIQUE":
                    raise
                raise AlreadyBoundError(
                    f"User {user_id} is already bound to role {role_name!r} "
                    f"(namespace {role_namespace!r}) on cluster {cluster_id}"
                ) from exc
        return RoleBindingRecord(
            id=cursor.lastrowid,
            cluster_id=cluster_id,
            user_id=user_id,
            role_name=role_name,
            role_namespace=role_namespace,
            role_kind=role_kind,
            bound_by=bound_by,
            created_at=datetime.fromisoformat(now),
        )

    def delete_binding(
        self,
        cluster_id: int,
        user_id: int,
        role_name: str,
        role_namespace: str = "",
    ) -> bool:
        with _ledger_errors("binding delete"):
            cursor = self._db.write(
                """DELETE FROM role_bindings
                   WHERE cluster_id = ? AND user_id = ?
                     AND role_name = ? AND role_namespace = ?""",
                (cluster_id, user_id, role_name, role_namespace),
            )
        return cursor.rowcount > 0

    def list_bindings(
        self, cluster_id: int, user_id: int | None = None,
    ) -> list[RoleBindingRecord]:
        sql = "SELECT * FROM role_bindings WHERE cluster_id = ?"
        params: tuple = (cluster_id,)
        if user_id is not None:
            sql += " AND user_id = ?"
            params = (cluster_id, user_id)
        sql += " ORDER BY created_at DESC, id DESC"
        with _ledger_errors("binding listing"):
            rows = self._db.fetchall(sql, params)
        return [self._row_to_binding(r) for r in rows]

    def list_bindings_for_role(
        self, cluster_id: int, role_name: str, role_namespace: str = "",
    ) -> list[RoleBindingRecord]:
        with _ledger_errors("binding listing"):
            rows = self._db.fetchall(
                """SELECT * FROM role_bindings
                   WHERE cluster_id = ? AND role_name = ? AND role_namespace = ?
                   ORDER BY created_at, id""",
                (cluster_id, role_name, role_namespace),
            )
        return [self._row_to_binding(r) for r in rows]

    # ------------------------------------------------------------------
    # Bulk removal
    # ------------------------------------------------------------------

    def purge_user(self, cluster_id: int, user_id: int) -> tuple[int, int]:
        """Hard-delete every row for (cluster, user).

        Returns ``(identities_deleted, bindings_deleted)``.
        """
        with _ledger_errors("user purge"), self._db.transaction() as conn:
            identities = conn.execute(
                "DELETE FROM service_identities WHERE cluster_id = ? AND user_id = ?",
                (cluster_id, user_id),
            ).rowcount
            bindings = conn.execute(
                "DELETE FROM role_bindings WHERE cluster_id = ? AND user_id = ?",
                (cluster_id, user_id),
            ).rowcount
        logger.info(
            "Ledger: purged cluster=%s user=%s (%d identities, %d bindings)",
            cluster_id, user_id, identities, bindings,
        )
        return identities, bindings

    def revoke_identity(self, cluster_id: int, user_id: int) -> int:
        """Soft-revoke the identity and drop its binding rows together.

        Returns the number of binding rows deleted.
        """
        with _ledger_errors("identity revoke"), self._db.transaction() as conn:
            conn.execute(
                """UPDATE service_identities
                   SET is_active = 0, revoked_at = ?
                   WHERE cluster_id = ? AND user_id = ?""",
                (_now(), cluster_id, user_id),
            )
            bindings = conn.execute(
                "DELETE FROM role_bindings WHERE cluster_id = ? AND user_id = ?",
                (cluster_id, user_id),
            ).rowcount
        logger.info(
            "Ledger: revoked identity for cluster=%s user=%s (%d bindings dropped)",
            cluster_id, user_id, bindings,
        )
        return bindings

    def purge_cluster(self, cluster_id: int) -> tuple[int, int]:
        """Hard-delete every row belonging to a cluster."""
        with _ledger_errors("cluster purge"), self._db.transaction() as conn:
            identities = conn.execute(
                "DELETE FROM service_identities WHERE cluster_id = ?", (cluster_id,),
            ).rowcount
            bindings = conn.execute(
                "DELETE FROM role_bindings WHERE cluster_id = ?", (cluster_id,),
            ).rowcount
        return identities, bindings

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _row_to_identity(self, row: sqlite3.Row) -> ServiceIdentityRecord:
        return ServiceIdentityRecord(
            id=row["id"],
            cluster_id=row["cluster_id"],
            user_id=row["user_id"],
            service_account=row["service_account"],
            namespace=row["namespace"],
            is_active=bool(row["is_active"]),
            created_by=row["created_by"],
            created_at=datetime.fromisoformat(row["created_at"]),
            revoked_at=(
                datetime.fromisoformat(row["revoked_at"]) if row["revoked_at"] else None
            ),
        )

    def _row_to_binding(self, row: sqlite3.Row) -> RoleBindingRecord:
        return RoleBindingRecord(
            id=row["id"],
            cluster_id=row["cluster_id"],
            user_id=row["user_id"],
            role_name=row["role_name"],
            role_namespace=row["role_namespace"],
            role_kind=RoleKind(row["role_kind"]),
            bound_by=row["bound_by"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )
