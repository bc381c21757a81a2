from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from sqlalchemy import Connection, Engine, inspect, text


@dataclass(frozen=True)
class MigrationStep:
    version: int
    name: str
    apply: Callable[[Connection], None]


def _ensure_schema_migrations_table(conn: Connection) -> None:
    conn.execute(
        text(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                name VARCHAR(255) NOT NULL,
                applied_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
    )


def _table_exists(conn: Connection, table_name: str) -> bool:
    inspector = inspect(conn)
    return inspector.has_table(table_name)


def _column_exists(conn: Connection, table_name: str, column_name: str) -> bool:
    if not _table_exists(conn, table_name):
        return False

    if conn.engine.dialect.name == "sqlite":
        rows = conn.execute(text(f"PRAGMA table_info('{table_name}')")).mappings().all()
        return any(str(row["name"]) == column_name for row in rows)

    inspector = inspect(conn)
    return any(col["name"] == column_name for col in inspector.get_columns(table_name))


def _index_exists(conn: Connection, table_name: str, index_name: str) -> bool:
    if not _table_exists(conn, table_name):
        return False

    if conn.engine.dialect.name == "sqlite":
        rows = conn.execute(text(f"PRAGMA index_list('{table_name}')")).mappings().all()
        return any(str(row["name"]) == index_name for row in rows)

    inspector = inspect(conn)
    return any(index.get("name") == index_name for index in inspector.get_indexes(table_name))


def _migration_0001_baseline(_conn: Connection) -> None:
    return


def _migration_0002_unify_job_timer_columns(conn: Connection) -> None:
    # Older schemas tracked the total under several names; fold them into accumulated_ms.
    if not _table_exists(conn, "jobs"):
        return

    if not _column_exists(conn, "jobs", "accumulated_ms"):
        conn.execute(text("ALTER TABLE jobs ADD COLUMN accumulated_ms BIGINT NOT NULL DEFAULT 0"))
    for legacy_column in ("total_ms", "total_milliseconds"):
        if _column_exists(conn, "jobs", legacy_column):
            conn.execute(
                text(
                    f"UPDATE jobs SET accumulated_ms = accumulated_ms + COALESCE({legacy_column}, 0) "
                    f"WHERE COALESCE({legacy_column}, 0) > 0"
                )
            )
            conn.execute(text(f"UPDATE jobs SET {legacy_column} = 0"))
    if _column_exists(conn, "jobs", "total_minutes"):
        conn.execute(
            text(
                "UPDATE jobs SET accumulated_ms = accumulated_ms + COALESCE(total_minutes, 0) * 60000 "
                "WHERE COALESCE(total_minutes, 0) > 0"
            )
        )
        conn.execute(text("UPDATE jobs SET total_minutes = 0"))

    if not _column_exists(conn, "jobs", "running_since"):
        conn.execute(text("ALTER TABLE jobs ADD COLUMN running_since DATETIME"))
    if _column_exists(conn, "jobs", "started_at"):
        conn.execute(
            text(
                "UPDATE jobs SET running_since = started_at "
                "WHERE running_since IS NULL AND started_at IS NOT NULL"
            )
        )

    if not _column_exists(conn, "jobs", "stopped_at"):
        conn.execute(text("ALTER TABLE jobs ADD COLUMN stopped_at DATETIME"))
    if not _column_exists(conn, "jobs", "version"):
        conn.execute(text("ALTER TABLE jobs ADD COLUMN version INTEGER NOT NULL DEFAULT 0"))

    conn.execute(text("UPDATE jobs SET status = lower(status) WHERE status != lower(status)"))
    conn.execute(text("UPDATE jobs SET running_since = NULL WHERE status != 'active'"))


def _migration_0003_time_entry_draft_sessions(conn: Connection) -> None:
    if not _table_exists(conn, "time_entries"):
        return

    if not _column_exists(conn, "time_entries", "draft_session_id"):
        conn.execute(text("ALTER TABLE time_entries ADD COLUMN draft_session_id VARCHAR(64)"))
    if not _column_exists(conn, "time_entries", "duration_ms"):
        conn.execute(text("ALTER TABLE time_entries ADD COLUMN duration_ms BIGINT"))
    if not _column_exists(conn, "time_entries", "source"):
        conn.execute(text("ALTER TABLE time_entries ADD COLUMN source VARCHAR(6) NOT NULL DEFAULT 'timer'"))
    if _column_exists(conn, "time_entries", "manual_minutes"):
        conn.execute(
            text(
                "UPDATE time_entries SET duration_ms = manual_minutes * 60000, source = 'manual' "
                "WHERE manual_minutes IS NOT NULL AND duration_ms IS NULL"
            )
        )

    if not _index_exists(conn, "time_entries", "uq_time_entries_job_draft_session"):
        conn.execute(
            text(
                "CREATE UNIQUE INDEX uq_time_entries_job_draft_session "
                "ON time_entries (job_id, draft_session_id)"
            )
        )
    if not _index_exists(conn, "time_entries", "ix_time_entries_job_open"):
        conn.execute(text("CREATE INDEX ix_time_entries_job_open ON time_entries (job_id, ended_at)"))


MIGRATIONS: tuple[MigrationStep, ...] = (
    MigrationStep(version=1, name="baseline", apply=_migration_0001_baseline),
    MigrationStep(version=2, name="unify_job_timer_columns", apply=_migration_0002_unify_job_timer_columns),
    MigrationStep(version=3, name="time_entry_draft_sessions", apply=_migration_0003_time_entry_draft_sessions),
)


def apply_migrations(engine: Engine) -> int:
    applied = 0
    with engine.begin() as conn:
        _ensure_schema_migrations_table(conn)

        existing_versions = {
            int(row[0])
            for row in conn.execute(text("SELECT version FROM schema_migrations ORDER BY version ASC")).all()
        }

        for step in MIGRATIONS:
            if step.version in existing_versions:
                continue

            step.apply(conn)
            conn.execute(
                text("INSERT INTO schema_migrations(version, name) VALUES (:version, :name)"),
                {"version": step.version, "name": step.name},
            )
            applied += 1
    return applied
