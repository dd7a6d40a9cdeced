"""Frozen form structure per patient-visit form.

A snapshot is the ordered, visible field list of one form template version at
the moment a form instance is materialized. Building is a pure read: no
timestamps or ids of the build itself end up in the field list, so rebuilding
an unchanged version yields byte-identical JSON.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import asdict, dataclass, field
from typing import List, Optional

from .errors import EntityNotFoundError, SnapshotBuildError
from .web.db import _now, _row_as_dict, _rows_as_dicts

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SnapshotField:
    field_id: int
    name: str
    label: Optional[str]
    data_type: str
    required: bool
    options: List[dict] = field(default_factory=list)
    units: Optional[str] = None
    section: Optional[str] = None
    ordinal: int = 0


def parse_options(options_text: Optional[str], options_values: Optional[str]) -> List[dict]:
    """Pair option labels with their coded values.

    Lists are newline-delimited when the text contains a newline, otherwise
    comma-delimited. A label without a matching value uses the label as value.
    """
    if not options_text:
        return []
    delim = "\n" if "\n" in options_text else ","
    texts = [t.strip() for t in options_text.split(delim)]
    values = []
    if options_values:
        values = [v.strip() for v in options_values.split(delim)]
    options = []
    for i, text in enumerate(texts):
        if not text:
            continue
        value = values[i] if i < len(values) and values[i] else text
        options.append({"text": text, "value": value})
    return options


def resolve_default_version(conn: sqlite3.Connection, template_id: int) -> Optional[int]:
    """Highest-numbered available version of a form template, or None."""
    cur = conn.cursor()
    cur.execute(
        "SELECT MAX(id) FROM form_template_version WHERE form_template_id=? AND status='available'",
        (template_id,),
    )
    row = cur.fetchone()
    return row[0] if row else None


def _load_version(conn: sqlite3.Connection, version_id: int) -> dict:
    cur = conn.cursor()
    cur.execute(
        """SELECT v.id AS version_id, v.name AS version_name, v.form_template_id AS template_id,
                  t.name AS template_name
           FROM form_template_version v
           LEFT JOIN form_template t ON t.id = v.form_template_id
           WHERE v.id=?""",
        (version_id,),
    )
    row = _row_as_dict(cur)
    if row is None:
        raise SnapshotBuildError(f"Form template version {version_id} not found")
    if row["template_name"] is None:
        raise SnapshotBuildError(
            f"Form template {row['template_id']} for version {version_id} not found"
        )
    return row


def build_snapshot(conn: sqlite3.Connection, version_id: int) -> List[SnapshotField]:
    _load_version(conn, version_id)
    cur = conn.cursor()
    cur.execute(
        """SELECT id, name, label, data_type, required, options_text, options_values, units, section, ordinal
           FROM template_field
           WHERE form_template_version_id=? AND show_field=1
           ORDER BY section_ordinal, ordinal, id""",
        (version_id,),
    )
    fields = [
        SnapshotField(
            field_id=r[0],
            name=r[1],
            label=r[2],
            data_type=r[3],
            required=bool(r[4]),
            options=parse_options(r[5], r[6]),
            units=r[7],
            section=r[8],
            ordinal=r[9],
        )
        for r in cur.fetchall()
    ]
    if not fields:
        logger.warning("Form template version %s has no visible fields", version_id)
    return fields


def fields_to_json(fields: List[SnapshotField]) -> str:
    return json.dumps([asdict(f) for f in fields], sort_keys=True)


def snapshot_structure(conn: sqlite3.Connection, version_id: int) -> dict:
    meta = _load_version(conn, version_id)
    fields = build_snapshot(conn, version_id)
    return {
        "template_id": meta["template_id"],
        "version_id": version_id,
        "name": meta["template_name"],
        "field_count": len(fields),
        "fields": [asdict(f) for f in fields],
    }


def _form_instance_context(conn: sqlite3.Connection, form_instance_id: int) -> dict:
    cur = conn.cursor()
    cur.execute(
        """SELECT fi.id, fi.visit_instance_id, fi.subject_id, fi.form_template_version_id,
                  fi.completion_status, fa.form_template_id, fa.default_version_id, fa.ordinal
           FROM form_instance fi
           JOIN form_assignment fa ON fa.id = fi.form_assignment_id
           WHERE fi.id=?""",
        (form_instance_id,),
    )
    ctx = _row_as_dict(cur)
    if ctx is None:
        raise EntityNotFoundError("form_instance", form_instance_id)
    return ctx


def create_form_snapshot(
    conn: sqlite3.Connection, form_instance_id: int, actor: Optional[int]
) -> int:
    """Persist the snapshot of a form instance's template version.

    Returns the existing snapshot id when the instance already has one.
    """
    ctx = _form_instance_context(conn, form_instance_id)
    cur = conn.cursor()
    cur.execute(
        "SELECT id FROM form_snapshot WHERE form_instance_id=?", (form_instance_id,)
    )
    existing = cur.fetchone()
    if existing:
        logger.debug("Form instance %s already has snapshot %s", form_instance_id, existing[0])
        return existing[0]
    version_id = (
        ctx["form_template_version_id"]
        or ctx["default_version_id"]
        or resolve_default_version(conn, ctx["form_template_id"])
    )
    if version_id is None:
        raise SnapshotBuildError(
            f"No available version for form template {ctx['form_template_id']}"
        )
    structure = snapshot_structure(conn, version_id)
    now = _now()
    cur.execute(
        """INSERT INTO form_snapshot (form_instance_id, visit_instance_id, subject_id, form_template_id,
            form_template_version_id, form_name, field_count, structure_json, data_json,
            completion_status, ordinal, created_by, updated_by, created_at, updated_at)
            VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)""",
        (
            form_instance_id,
            ctx["visit_instance_id"],
            ctx["subject_id"],
            structure["template_id"],
            version_id,
            structure["name"],
            structure["field_count"],
            json.dumps(structure, sort_keys=True),
            "{}",
            ctx["completion_status"],
            ctx["ordinal"],
            actor,
            actor,
            now,
            now,
        ),
    )
    return cur.lastrowid


def list_snapshots(conn: sqlite3.Connection, subject_id: int) -> List[dict]:
    cur = conn.cursor()
    cur.execute(
        """SELECT id, form_instance_id, visit_instance_id, form_template_id, form_template_version_id,
                  form_name, field_count, structure_json, data_json, completion_status, ordinal
           FROM form_snapshot WHERE subject_id=? ORDER BY visit_instance_id, ordinal, id""",
        (subject_id,),
    )
    rows = _rows_as_dicts(cur)
    for r in rows:
        r["structure"] = json.loads(r.pop("structure_json"))
        r["data"] = json.loads(r.pop("data_json") or "{}")
    return rows
