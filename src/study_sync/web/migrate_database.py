import logging
from typing import Optional

from .db import _connect

logger = logging.getLogger("study_sync.migrations")

# Optional study columns introduced after the base schema (regulatory redesign).
STUDY_REGULATORY_COLUMNS = {
    "therapeutic_area": "TEXT",
    "indication": "TEXT",
    "nct_number": "TEXT",
    "irb_number": "TEXT",
    "protocol_version": "TEXT",
}


def _add_missing_columns(cur, table: str, wanted: dict) -> list:
    cur.execute(f"PRAGMA table_info({table})")
    existing = {r[1] for r in cur.fetchall()}
    applied = []
    for column, decl in wanted.items():
        if column in existing:
            continue
        stmt = f"ALTER TABLE {table} ADD COLUMN {column} {decl}"
        try:
            cur.execute(stmt)
            applied.append(stmt)
        except Exception as e:  # pragma: no cover
            logger.warning("Failed executing migration statement '%s': %s", stmt, e)
    return applied


# Migration: regulatory fields on study
def _migrate_add_study_regulatory_fields(conn=None):
    """Ensure the optional regulatory columns exist on the study table.
    Safe to run repeatedly; ADD COLUMN is guarded by schema inspection.
    """
    own = conn is None
    try:
        if own:
            conn = _connect()
        cur = conn.cursor()
        applied = _add_missing_columns(cur, "study", STUDY_REGULATORY_COLUMNS)
        if applied:
            logger.info("Applied study field migrations: %s", ", ".join(applied))
    except Exception as e:  # pragma: no cover
        logger.warning("Study regulatory field migration failed: %s", e)
    finally:
        if own and conn is not None:
            conn.close()


# Migration: estimated visit duration
def _migrate_add_visit_estimated_duration(conn=None):
    own = conn is None
    try:
        if own:
            conn = _connect()
        cur = conn.cursor()
        applied = _add_missing_columns(
            cur, "visit_definition", {"estimated_duration_hours": "REAL"}
        )
        if applied:
            logger.info("Added estimated_duration_hours to visit_definition")
    except Exception as e:  # pragma: no cover
        logger.warning("visit_definition duration migration failed: %s", e)
    finally:
        if own and conn is not None:
            conn.close()


# Migration: lookup indexes for the reconciliation queries
def _migrate_snapshot_indexes(conn=None):
    own = conn is None
    try:
        if own:
            conn = _connect()
        cur = conn.cursor()
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_form_snapshot_subject ON form_snapshot(subject_id)"
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_visit_instance_subject ON visit_instance(subject_id)"
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_form_instance_visit ON form_instance(visit_instance_id)"
        )
    except Exception as e:  # pragma: no cover
        logger.warning("Snapshot index migration failed: %s", e)
    finally:
        if own and conn is not None:
            conn.close()


def run_migrations(conn=None, db_path: Optional[str] = None):
    own = conn is None
    if own:
        conn = _connect(db_path)
    try:
        _migrate_add_study_regulatory_fields(conn)
        _migrate_add_visit_estimated_duration(conn)
        _migrate_snapshot_indexes(conn)
    finally:
        if own:
            conn.close()
