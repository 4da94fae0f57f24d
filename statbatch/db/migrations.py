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
    return inspect(conn).has_table(table_name)


def _column_exists(conn: Connection, table_name: str, column_name: str) -> bool:
    if not _table_exists(conn, table_name):
        return False
    return any(col["name"] == column_name for col in inspect(conn).get_columns(table_name))


def _migration_0001_baseline(_conn: Connection) -> None:
    return


def _collapse_duplicate_active_batches(conn: Connection) -> None:
    # Older rows may hold several active batches for one natural key; keep the newest.
    conn.execute(
        text(
            """
            UPDATE computation_batches
            SET status = 'FAILED',
                error_code = 'SUPERSEDED',
                error_message = 'Superseded while enforcing single active batch per scope'
            WHERE status IN ('QUEUED', 'RUNNING')
              AND id NOT IN (
                SELECT id FROM (
                    SELECT id,
                           ROW_NUMBER() OVER (
                               PARTITION BY tenant_id, kind, scope_key, period
                               ORDER BY created_at DESC, id DESC
                           ) AS row_num
                    FROM computation_batches
                    WHERE status IN ('QUEUED', 'RUNNING')
                ) ranked
                WHERE row_num = 1
              )
            """
        )
    )


def _migration_0002_single_active_batch_per_scope(conn: Connection) -> None:
    if not _table_exists(conn, "computation_batches"):
        return
    _collapse_duplicate_active_batches(conn)
    conn.execute(
        text(
            "CREATE UNIQUE INDEX IF NOT EXISTS ux_batches_single_active_scope "
            "ON computation_batches (tenant_id, kind, scope_key, period) "
            "WHERE status IN ('QUEUED', 'RUNNING')"
        )
    )


def _migration_0003_batch_trigger_tracking(conn: Connection) -> None:
    if not _table_exists(conn, "computation_batches"):
        return
    if not _column_exists(conn, "computation_batches", "trigger_attempts"):
        conn.execute(text("ALTER TABLE computation_batches ADD COLUMN trigger_attempts INTEGER NOT NULL DEFAULT 0"))
    if not _column_exists(conn, "computation_batches", "last_trigger_error"):
        conn.execute(text("ALTER TABLE computation_batches ADD COLUMN last_trigger_error TEXT"))
    if not _column_exists(conn, "computation_batches", "worker_id"):
        conn.execute(text("ALTER TABLE computation_batches ADD COLUMN worker_id VARCHAR(128)"))


def _migration_0004_payroll_input_provenance(conn: Connection) -> None:
    if not _table_exists(conn, "payroll_inputs"):
        return
    if not _column_exists(conn, "payroll_inputs", "source_batch_id"):
        conn.execute(text("ALTER TABLE payroll_inputs ADD COLUMN source_batch_id VARCHAR(36)"))
    if not _column_exists(conn, "payroll_inputs", "data_source"):
        conn.execute(
            text("ALTER TABLE payroll_inputs ADD COLUMN data_source VARCHAR(15) NOT NULL DEFAULT 'MANUAL'")
        )
    conn.execute(
        text("CREATE INDEX IF NOT EXISTS ix_payroll_inputs_source_batch ON payroll_inputs (source_batch_id)")
    )


MIGRATIONS: tuple[MigrationStep, ...] = (
    MigrationStep(version=1, name="baseline", apply=_migration_0001_baseline),
    MigrationStep(
        version=2,
        name="single_active_batch_per_scope",
        apply=_migration_0002_single_active_batch_per_scope,
    ),
    MigrationStep(version=3, name="batch_trigger_tracking", apply=_migration_0003_batch_trigger_tracking),
    MigrationStep(version=4, name="payroll_input_provenance", apply=_migration_0004_payroll_input_provenance),
)


def apply_migrations(engine: Engine) -> None:
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
