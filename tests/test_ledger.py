"""Tests for the SQLite database layer and the ledger store."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from opshub_access.db.connection import Database
from opshub_access.db.migrations import MIGRATIONS, get_schema_version, run_migrations
from opshub_access.errors import AlreadyBoundError, LedgerError
from opshub_access.ledger.store import Ledger
from opshub_access.models import RoleKind


class TestDatabase:
    def test_migrations_reach_latest(self, tmp_path: Path) -> None:
        db = Database(tmp_path / "fresh.db")
        assert get_schema_version(db) == 0
        assert run_migrations(db) == MIGRATIONS[-1][0] == 2
        db.close()

    def test_migrations_idempotent(self, db: Database) -> None:
        assert run_migrations(db) == 2
        rows = db.fetchall("SELECT version FROM schema_version")
        assert len(rows) == 1

    def test_wal_mode(self, db: Database) -> None:
        row = db.fetchone("PRAGMA journal_mode")
        assert row[0] == "wal"

    def test_transaction_rolls_back(self, db: Database) -> None:
        with pytest.raises(RuntimeError):
            with db.transaction() as conn:
                conn.execute(
                    """INSERT INTO role_bindings
                       (cluster_id, user_id, role_name, role_namespace, role_kind,
                        bound_by, created_at)
                       VALUES (1, 7, 'view', '', 'ClusterRole', 1, '2026-01-01T00:00:00')""",
                )
                raise RuntimeError("boom")
        assert db.fetchall("SELECT * FROM role_bindings") == []

    def test_connection_per_thread(self, db: Database) -> None:
        seen = []

        def worker() -> None:
            seen.append(db.fetchone("SELECT version FROM schema_version")["version"])
            db.close()

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert seen == [2, 2, 2, 2]


class TestIdentities:
    def test_upsert_creates_active_row(self, ledger: Ledger) -> None:
        record = ledger.upsert_identity(1, 7, "opshub-alice", "opshub-auth", created_by=1)
        assert record.id is not None
        assert record.is_active
        assert record.revoked_at is None
        assert ledger.get_active_identity(1, 7) == record

    def test_one_row_per_cluster_user(self, ledger: Ledger) -> None:
        ledger.upsert_identity(1, 7, "opshub-alice", "default", created_by=1)
        ledger.upsert_identity(1, 7, "opshub-alice", "opshub-auth", created_by=7)
        rows = ledger.list_identities(1)
        assert len(rows) == 1
        assert rows[0].namespace == "opshub-auth"
        assert rows[0].created_by == 7

    def test_revoke_then_reactivate(self, ledger: Ledger) -> None:
        first = ledger.upsert_identity(1, 7, "opshub-alice", "opshub-auth", created_by=1)
        assert ledger.revoke_identity(1, 7) == 0
        assert ledger.get_active_identity(1, 7) is None
        revoked = ledger.get_identity(1, 7)
        assert revoked is not None and revoked.revoked_at is not None
        assert ledger.list_identities(1, active_only=True) == []

        again = ledger.upsert_identity(1, 7, "opshub-alice", "opshub-auth", created_by=1)
        assert again.id == first.id
        assert again.is_active and again.revoked_at is None

    def test_revoke_missing(self, ledger: Ledger) -> None:
        assert ledger.revoke_identity(1, 7) == 0
        assert ledger.get_identity(1, 7) is None

    def test_find_by_account(self, ledger: Ledger) -> None:
        ledger.upsert_identity(1, 7, "opshub-alice", "opshub-auth", created_by=1)
        ledger.upsert_identity(2, 7, "opshub-alice", "opshub-auth", created_by=1)
        record = ledger.find_identity_by_account(1, "opshub-alice")
        assert record is not None and record.cluster_id == 1
        assert ledger.find_identity_by_account(1, "opshub-bob") is None

    def test_clusters_isolated(self, ledger: Ledger) -> None:
        ledger.upsert_identity(1, 7, "opshub-alice", "opshub-auth", created_by=1)
        assert ledger.list_identities(2) == []
        assert ledger.get_identity(2, 7) is None


class TestBindings:
    def test_insert_and_get(self, ledger: Ledger) -> None:
        record = ledger.insert_binding(1, 7, "view", "", RoleKind.CLUSTER_ROLE, bound_by=1)
        assert ledger.get_binding(1, 7, "view") == record
        assert ledger.get_binding(1, 7, "view", "team-a") is None

    def test_duplicate_is_already_bound(self, ledger: Ledger) -> None:
        ledger.insert_binding(1, 7, "view", "", RoleKind.CLUSTER_ROLE, bound_by=1)
        with pytest.raises(AlreadyBoundError, match="already bound"):
            ledger.insert_binding(1, 7, "view", "", RoleKind.CLUSTER_ROLE, bound_by=1)

    def test_other_constraint_failure_is_ledger_error(self, ledger: Ledger) -> None:
        with pytest.raises(LedgerError, match="binding insert") as exc_info:
            ledger.insert_binding(1, 7, None, "", RoleKind.CLUSTER_ROLE, bound_by=1)
        assert not isinstance(exc_info.value, AlreadyBoundError)

    def test_namespace_is_part_of_identity(self, ledger: Ledger) -> None:
        ledger.insert_binding(1, 7, "edit", "team-a", RoleKind.ROLE, bound_by=1)
        ledger.insert_binding(1, 7, "edit", "team-b", RoleKind.ROLE, bound_by=1)
        assert len(ledger.list_bindings(1, 7)) == 2
        assert [b.user_id for b in ledger.list_bindings_for_role(1, "edit", "team-a")] == [7]

    def test_delete(self, ledger: Ledger) -> None:
        ledger.insert_binding(1, 7, "view", "", RoleKind.CLUSTER_ROLE, bound_by=1)
        assert ledger.delete_binding(1, 7, "view")
        assert not ledger.delete_binding(1, 7, "view")

    def test_list_newest_first(self, ledger: Ledger) -> None:
        ledger.insert_binding(1, 7, "view", "", RoleKind.CLUSTER_ROLE, bound_by=1)
        ledger.insert_binding(1, 8, "view", "", RoleKind.CLUSTER_ROLE, bound_by=1)
        assert [b.user_id for b in ledger.list_bindings(1)] == [8, 7]
        assert [b.user_id for b in ledger.list_bindings_for_role(1, "view")] == [7, 8]


class TestBulkRemoval:
    def _seed(self, ledger: Ledger) -> None:
        ledger.upsert_identity(1, 7, "opshub-alice", "opshub-auth", created_by=1)
        ledger.upsert_identity(1, 8, "opshub-bob", "opshub-auth", created_by=1)
        ledger.upsert_identity(2, 7, "opshub-alice", "opshub-auth", created_by=1)
        ledger.insert_binding(1, 7, "view", "", RoleKind.CLUSTER_ROLE, bound_by=1)
        ledger.insert_binding(1, 7, "edit", "team-a", RoleKind.ROLE, bound_by=1)
        ledger.insert_binding(1, 8, "view", "", RoleKind.CLUSTER_ROLE, bound_by=1)
        ledger.insert_binding(2, 7, "view", "", RoleKind.CLUSTER_ROLE, bound_by=1)

    def test_revoke_identity(self, ledger: Ledger) -> None:
        self._seed(ledger)
        assert ledger.revoke_identity(1, 7) == 2
        record = ledger.get_identity(1, 7)
        assert record is not None and not record.is_active
        assert ledger.list_bindings(1, 7) == []
        assert len(ledger.list_bindings(1, 8)) == 1
        assert len(ledger.list_bindings(2, 7)) == 1

    def test_purge_user(self, ledger: Ledger) -> None:
        self._seed(ledger)
        assert ledger.purge_user(1, 7) == (1, 2)
        assert ledger.get_identity(1, 7) is None
        assert ledger.get_identity(2, 7) is not None

    def test_purge_cluster(self, ledger: Ledger) -> None:
        self._seed(ledger)
        assert ledger.purge_cluster(1) == (2, 3)
        assert ledger.list_identities(1) == []
        assert len(ledger.list_identities(2)) == 1
