"""Insert-or-update of child rows beneath a parent (study, visit, group class)."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .web.db import SchemaCapabilities, _now, _row_as_dict

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NestedTable:
    """Where a kind of child record lives and which of its columns callers may set."""

    table: str
    parent_column: str
    columns: Tuple[str, ...]
    id_column: str = "id"
    label: str = ""

    @property
    def display(self) -> str:
        return self.label or self.table.replace("_", " ")


VISIT_DEFINITIONS = NestedTable(
    "visit_definition",
    "study_id",
    (
        "name",
        "description",
        "category",
        "type",
        "ordinal",
        "repeating",
        "schedule_day",
        "min_day",
        "max_day",
        "estimated_duration_hours",
        "status",
        "oc_oid",
    ),
    label="visit definition",
)
FORM_ASSIGNMENTS = NestedTable(
    "form_assignment",
    "visit_definition_id",
    (
        "form_template_id",
        "required",
        "double_entry",
        "electronic_signature",
        "hidden",
        "ordinal",
        "default_version_id",
        "status",
    ),
    label="form assignment",
)
GROUP_CLASSES = NestedTable(
    "group_class",
    "study_id",
    ("name", "type_name", "custom_type_name", "subject_assignment", "status"),
    label="group class",
)
STUDY_GROUPS = NestedTable(
    "study_group", "group_class_id", ("name", "description"), label="group"
)
SITES = NestedTable(
    "site",
    "study_id",
    (
        "unique_identifier",
        "name",
        "principal_investigator",
        "expected_total_enrollment",
        "facility_name",
        "facility_city",
        "facility_country",
        "status",
    ),
    label="site",
)


@dataclass
class UpsertOutcome:
    id: int
    action: str  # create|update
    before: Optional[dict]
    after: Optional[dict]


def _fetch(conn: sqlite3.Connection, table: NestedTable, row_id: int) -> Optional[dict]:
    cur = conn.cursor()
    cur.execute(
        f"SELECT * FROM {table.table} WHERE {table.id_column}=?",
        (row_id,),
    )
    return _row_as_dict(cur)


def upsert_entity(
    conn: sqlite3.Connection,
    table: NestedTable,
    parent_id: int,
    record: Mapping[str, Any],
    actor: Optional[int],
    caps: SchemaCapabilities,
    extra: Optional[Dict[str, Any]] = None,
) -> UpsertOutcome:
    """Update the row named by ``record['id']`` when it exists under ``parent_id``,
    otherwise insert a new one.

    An id that matches no row of this parent is ignored (logged) and a fresh
    row is inserted. Only columns present in ``record`` are written on update;
    optional columns absent from the live schema are skipped.
    """
    values = {k: record[k] for k in table.columns if k in record}
    if extra:
        values.update(extra)
    record_id = record.get(table.id_column)
    existing = None
    if record_id is not None:
        existing = _fetch(conn, table, record_id)
        if existing is not None and existing.get(table.parent_column) != parent_id:
            existing = None
        if existing is None:
            logger.warning(
                "%s id %s not found under %s=%s; inserting as new",
                table.display,
                record_id,
                table.parent_column,
                parent_id,
            )
    now = _now()
    cur = conn.cursor()
    if existing is not None:
        values.update({"update_id": actor, "updated_at": now})
        values = caps.writable(table.table, values)
        if values:
            assignments = ", ".join(f"{k}=?" for k in values)
            cur.execute(
                f"UPDATE {table.table} SET {assignments} WHERE {table.id_column}=?",
                (*values.values(), existing[table.id_column]),
            )
        row_id = existing[table.id_column]
        return UpsertOutcome(row_id, "update", existing, _fetch(conn, table, row_id))
    values[table.parent_column] = parent_id
    values.update({"owner_id": actor, "created_at": now})
    values = caps.writable(table.table, values)
    cols = ", ".join(values)
    marks = ",".join("?" for _ in values)
    cur.execute(
        f"INSERT INTO {table.table} ({cols}) VALUES ({marks})",
        tuple(values.values()),
    )
    row_id = cur.lastrowid
    return UpsertOutcome(row_id, "create", None, _fetch(conn, table, row_id))


def upsert_record(
    conn: sqlite3.Connection,
    table: NestedTable,
    parent_id: int,
    record: Mapping[str, Any],
    actor: Optional[int],
    caps: SchemaCapabilities,
) -> int:
    return upsert_entity(conn, table, parent_id, record, actor, caps).id


def upsert_records(
    conn: sqlite3.Connection,
    table: NestedTable,
    parent_id: int,
    records: Iterable[Mapping[str, Any]],
    actor: Optional[int],
    caps: SchemaCapabilities,
) -> List[int]:
    """Upsert each record in input order; returns the persisted ids in that order."""
    return [upsert_record(conn, table, parent_id, r, actor, caps) for r in records]
