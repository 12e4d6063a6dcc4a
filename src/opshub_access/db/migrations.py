"""Version-tracked SQLite schema migrations for the access ledger."""

from __future__ import annotations

import sqlite3

from opshub_access.db.connection import Database

MIGRATIONS: list[tuple[int, str]] = [
    (
        1,
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER NOT NULL
        );
        INSERT INTO schema_version (version) VALUES (0);

        CREATE TABLE IF NOT EXISTS service_identities (
            id              INTEGER PRIMARY KEY AUTOINCREMENT,
            cluster_id      INTEGER NOT NULL,
            user_id         INTEGER NOT NULL,
            service_account TEXT NOT NULL,
            namespace       TEXT NOT NULL DEFAULT 'default',
            is_active       INTEGER NOT NULL DEFAULT 1,
            created_by      INTEGER NOT NULL,
            created_at      TEXT NOT NULL,
            revoked_at      TEXT,
            UNIQUE(cluster_id, user_id)
        );

        CREATE INDEX IF NOT EXISTS idx_service_identities_account
            ON service_identities(cluster_id, service_account);
        """,
    ),
    (
        2,
        """
        CREATE TABLE IF NOT EXISTS role_bindings (
            id              INTEGER PRIMARY KEY AUTOINCREMENT,
            cluster_id      INTEGER NOT NULL,
            user_id         INTEGER NOT NULL,
            role_name       TEXT NOT NULL,
            role_namespace  TEXT NOT NULL DEFAULT '',
            role_kind       TEXT NOT NULL,
            bound_by        INTEGER NOT NULL,
            created_at      TEXT NOT NULL,
            UNIQUE(cluster_id, user_id, role_name, role_namespace)
        );

        CREATE INDEX IF NOT EXISTS idx_role_bindings_user
            ON role_bindings(cluster_id, user_id);
        CREATE INDEX IF NOT EXISTS idx_role_bindings_role
            ON role_bindings(cluster_id, role_name, role_namespace);
        """,
    ),
]


def get_schema_version(db: Database) -> int:
    """Return the current schema version, or 0 if uninitialized."""
    try:
        row = db.fetchone("SELECT version FROM schema_version")
    except sqlite3.OperationalError:
        return 0
    return int(row["version"]) if row else 0


def run_migrations(db: Database) -> int:
    """Apply pending migrations. Returns the final schema version."""
    current = get_schema_version(db)

    for version, sql in MIGRATIONS:
        if version <= current:
            continue
        db.write_script(sql)
        db.write("UPDATE schema_version SET version = ?", (version,))

    return get_schema_version(db)
