"""Create / update a study definition and its nested graph as one unit.

Flow of ``synchronize_study``::

    identity check -> primary study row -> parameters -> visit definitions
    (+ form assignments) -> group classes (+ groups) -> sites -> study audit -> COMMIT

Every nested step runs in its own savepoint and every record inside a step in a
further savepoint, so one bad record costs only itself. A step with failures
contributes a single ``StepWarning`` to the result. Only the identity check,
the primary write and the primary audit entry can fail the whole operation.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from .errors import (
    AuditWriteError,
    EntityNotFoundError,
    IdentityConflictError,
    StudyNotFoundError,
)
from .parameters import DEFAULT_PARAMETERS, normalize_parameters
from .snapshot import resolve_default_version
from .upsert import (
    FORM_ASSIGNMENTS,
    GROUP_CLASSES,
    SITES,
    STUDY_GROUPS,
    VISIT_DEFINITIONS,
    NestedTable,
    upsert_entity,
)
from .web.audit import _record_audit_isolated, record_audit
from .web.db import (
    SchemaCapabilities,
    _now,
    _row_as_dict,
    _rows_as_dicts,
    savepoint,
    transaction,
)
from .web.migrate_database import STUDY_REGULATORY_COLUMNS

logger = logging.getLogger(__name__)

STUDY_COLUMNS = (
    "unique_identifier",
    "name",
    "official_title",
    "secondary_identifier",
    "summary",
    "principal_investigator",
    "sponsor",
    "phase",
    "protocol_type",
    "expected_total_enrollment",
    "date_planned_start",
    "date_planned_end",
) + tuple(STUDY_REGULATORY_COLUMNS)


@dataclass
class StepWarning:
    step: str
    message: str
    failed: int = 0
    attempted: int = 0


@dataclass
class SyncResult:
    success: bool
    study_id: Optional[int]
    message: str
    warnings: List[StepWarning] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def run_step(
    conn: sqlite3.Connection,
    step: str,
    noun: str,
    records: Iterable[Any],
    apply: Callable[[Any], Any],
) -> Optional[StepWarning]:
    """Apply ``apply`` to each record inside the step's savepoint.

    Each record gets a nested savepoint; a failing record is rolled back on its
    own and counted. Returns one warning when anything failed, else None.
    """
    records = list(records)
    attempted = len(records)
    failed = 0
    try:
        with savepoint(conn, f"step_{step}"):
            for record in records:
                try:
                    with savepoint(conn, step):
                        apply(record)
                except Exception as e:
                    failed += 1
                    logger.warning("%s step: record %r failed: %s", step, record, e)
    except Exception as e:
        logger.warning("%s step failed: %s", step, e)
        failed = attempted or 1
    if not failed:
        return None
    return StepWarning(
        step=step,
        message=f"{failed} of {attempted} {noun} could not be saved",
        failed=failed,
        attempted=attempted,
    )


class _Sync:
    """State of one synchronize_study call."""

    def __init__(self, conn, study_id: int, actor: Optional[int], caps: SchemaCapabilities):
        self.conn = conn
        self.study_id = study_id
        self.actor = actor
        self.caps = caps
        self.audit_attempts = 0
        self.audit_failures: List[str] = []

    def audit(self, entity_type: str, entity_id, action: str, before=None, after=None):
        self.audit_attempts += 1
        _record_audit_isolated(
            self.conn,
            self.audit_failures,
            actor_id=self.actor,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            before=before,
            after=after,
            study_id=self.study_id,
        )

    def upsert(self, table: NestedTable, parent_id: int, record: Mapping, extra=None) -> int:
        outcome = upsert_entity(
            self.conn, table, parent_id, record, self.actor, self.caps, extra=extra
        )
        self.audit(table.table, outcome.id, outcome.action, outcome.before, outcome.after)
        return outcome.id

    def write_parameter(self, item) -> None:
        parameter, value = item
        cur = self.conn.cursor()
        cur.execute(
            "SELECT value FROM study_parameter_value WHERE study_id=? AND parameter=?",
            (self.study_id, parameter),
        )
        row = cur.fetchone()
        cur.execute(
            """INSERT INTO study_parameter_value (study_id, parameter, value) VALUES (?,?,?)
               ON CONFLICT(study_id, parameter) DO UPDATE SET value=excluded.value""",
            (self.study_id, parameter, value),
        )
        if row is None or row[0] != value:
            self.audit(
                "study_parameter_value",
                None,
                "update" if row else "create",
                before={parameter: row[0]} if row else None,
                after={parameter: value},
            )

    def write_visit(self, visit: Mapping) -> None:
        visit_id = self.upsert(VISIT_DEFINITIONS, self.study_id, visit)
        for assignment in visit.get("form_assignments") or []:
            self.write_assignment(visit_id, assignment)

    def _existing_assignment(self, visit_id: int, assignment_id) -> Optional[dict]:
        if assignment_id is None:
            return None
        cur = self.conn.cursor()
        cur.execute(
            "SELECT * FROM form_assignment WHERE id=? AND visit_definition_id=?",
            (assignment_id, visit_id),
        )
        return _row_as_dict(cur)

    def write_assignment(self, visit_id: int, assignment: Mapping) -> None:
        record = dict(assignment)
        if record.get("default_version_id") is None:
            record.pop("default_version_id", None)
        existing = self._existing_assignment(visit_id, record.get("id"))
        if existing is not None and record.get("form_template_id") is None:
            record.pop("form_template_id", None)
        template_id = record.get("form_template_id")
        if existing is not None and template_id is None:
            template_id = existing["form_template_id"]
        if template_id is None:
            raise ValueError("form_template_id required for a new form assignment")
        template_changed = existing is None or template_id != existing["form_template_id"]
        if "default_version_id" in record:
            cur = self.conn.cursor()
            cur.execute(
                "SELECT form_template_id FROM form_template_version WHERE id=?",
                (record["default_version_id"],),
            )
            row = cur.fetchone()
            if row is None or row[0] != template_id:
                raise ValueError(
                    f"Version {record['default_version_id']} does not belong to form template {template_id}"
                )
        elif template_changed:
            # an existing default stays pinned until its template changes
            resolved = resolve_default_version(self.conn, template_id)
            if resolved is None:
                raise ValueError(f"Form template {template_id} has no available version")
            record["default_version_id"] = resolved
        self.upsert(FORM_ASSIGNMENTS, visit_id, record, extra={"study_id": self.study_id})

    def write_group_class(self, group_class: Mapping) -> None:
        class_id = self.upsert(GROUP_CLASSES, self.study_id, group_class)
        for group in group_class.get("groups") or []:
            self.upsert(STUDY_GROUPS, class_id, group)

    def write_site(self, site: Mapping) -> None:
        self.upsert(SITES, self.study_id, site)


def _study_row(conn, study_id: int) -> Optional[dict]:
    cur = conn.cursor()
    cur.execute("SELECT * FROM study WHERE id=?", (study_id,))
    return _row_as_dict(cur)


def _check_identity(conn, definition: Mapping, study_id: Optional[int]) -> Optional[dict]:
    """Returns the current study row on update. Raises before anything is written."""
    identifier = (definition.get("unique_identifier") or "").strip()
    before = None
    if study_id is not None:
        before = _study_row(conn, study_id)
        if before is None:
            raise StudyNotFoundError(study_id)
    if not identifier:
        if before is None:
            raise ValueError("unique_identifier required")
        return before
    cur = conn.cursor()
    cur.execute("SELECT id FROM study WHERE unique_identifier=?", (identifier,))
    row = cur.fetchone()
    if row is not None and row[0] != study_id:
        raise IdentityConflictError(
            f"Study identifier '{identifier}' is already used by study {row[0]}"
        )
    if before is not None and before["unique_identifier"] != identifier:
        cur.execute("SELECT COUNT(*) FROM subject WHERE study_id=?", (study_id,))
        if cur.fetchone()[0]:
            raise IdentityConflictError(
                f"Study {study_id} has enrolled subjects; unique identifier cannot change"
            )
    return before


def _oc_oid(identifier: str) -> str:
    return "S_" + re.sub(r"[^A-Z0-9]", "", identifier.upper())[:8]


def _write_primary(
    conn, definition: Mapping, before: Optional[dict], actor, caps: SchemaCapabilities
) -> int:
    values = {k: definition[k] for k in STUDY_COLUMNS if k in definition}
    if "unique_identifier" in values:
        values["unique_identifier"] = (values["unique_identifier"] or "").strip()
        if before is not None and not values["unique_identifier"]:
            values.pop("unique_identifier")
    now = _now()
    cur = conn.cursor()
    if before is not None:
        # a blank name keeps the stored one
        if "name" in values and not (values["name"] or "").strip():
            values.pop("name")
        values.update({"update_id": actor, "updated_at": now})
        values = caps.writable("study", values)
        assignments = ", ".join(f"{k}=?" for k in values)
        cur.execute(
            f"UPDATE study SET {assignments} WHERE id=?",
            (*values.values(), before["id"]),
        )
        return before["id"]
    if not (values.get("name") or "").strip():
        raise ValueError("Study name required")
    values.update(
        {
            "oc_oid": _oc_oid(values["unique_identifier"]),
            "owner_id": actor,
            "created_at": now,
            "status": "available",
        }
    )
    values = caps.writable("study", values)
    cur.execute(
        f"INSERT INTO study ({', '.join(values)}) VALUES ({','.join('?' for _ in values)})",
        tuple(values.values()),
    )
    study_id = cur.lastrowid
    cur.executemany(
        "INSERT OR IGNORE INTO study_parameter_value (study_id, parameter, value) VALUES (?,?,?)",
        [(study_id, k, v) for k, v in DEFAULT_PARAMETERS.items()],
    )
    return study_id


def synchronize_study(conn, definition: Mapping[str, Any], actor: Optional[int]) -> SyncResult:
    """Create (no ``id``) or update (``id`` given) a study and its nested records.

    Nested collections that are absent (``None``) are left untouched; records
    not mentioned in a collection are kept.
    """
    study_id = definition.get("id")
    caps = SchemaCapabilities.load(conn)
    parameters = normalize_parameters(definition.get("parameters"))
    warnings: List[StepWarning] = []
    with transaction(conn):
        before = _check_identity(conn, definition, study_id)
        study_id = _write_primary(conn, definition, before, actor, caps)
        sync = _Sync(conn, study_id, actor, caps)
        steps = [
            ("parameters", "parameters", parameters.items() if parameters else None, sync.write_parameter),
            ("visit_definitions", "visit definitions", definition.get("visit_definitions"), sync.write_visit),
            ("group_classes", "group classes", definition.get("group_classes"), sync.write_group_class),
            ("sites", "sites", definition.get("sites"), sync.write_site),
        ]
        for step, noun, records, apply in steps:
            if records is None:
                continue
            warning = run_step(conn, step, noun, records, apply)
            if warning is not None:
                warnings.append(warning)
        if sync.audit_failures:
            warnings.append(
                StepWarning(
                    step="audit",
                    message=f"{len(sync.audit_failures)} of {sync.audit_attempts} audit entries could not be written",
                    failed=len(sync.audit_failures),
                    attempted=sync.audit_attempts,
                )
            )
        after = _study_row(conn, study_id)
        try:
            record_audit(
                conn,
                actor,
                "study",
                study_id,
                "update" if before else "create",
                before=before,
                after=after,
                study_id=study_id,
            )
        except sqlite3.Error as e:
            logger.error("Study %s audit entry failed, rolling back: %s", study_id, e)
            raise AuditWriteError(f"Audit entry for study {study_id} could not be written") from e
    verb = "updated" if before else "created"
    message = f"Study {verb}"
    if warnings:
        message += f" with {len(warnings)} warning(s)"
        logger.warning("Study %s %s with warnings: %s", study_id, verb, [w.message for w in warnings])
    else:
        logger.info("Study %s %s", study_id, verb)
    return SyncResult(success=True, study_id=study_id, message=message, warnings=warnings)


def get_study(conn, study_id: int) -> Optional[dict]:
    """Nested read of a study definition; None when the study does not exist."""
    study = _study_row(conn, study_id)
    if study is None:
        return None
    cur = conn.cursor()
    cur.execute(
        "SELECT parameter, value FROM study_parameter_value WHERE study_id=? ORDER BY parameter",
        (study_id,),
    )
    study["parameters"] = {r[0]: r[1] for r in cur.fetchall()}
    cur.execute(
        "SELECT * FROM visit_definition WHERE study_id=? ORDER BY ordinal, id", (study_id,)
    )
    visits = _rows_as_dicts(cur)
    for v in visits:
        cur.execute(
            "SELECT * FROM form_assignment WHERE visit_definition_id=? ORDER BY ordinal, id",
            (v["id"],),
        )
        v["form_assignments"] = _rows_as_dicts(cur)
    study["visit_definitions"] = visits
    cur.execute("SELECT * FROM group_class WHERE study_id=? ORDER BY id", (study_id,))
    classes = _rows_as_dicts(cur)
    for gc in classes:
        cur.execute(
            "SELECT * FROM study_group WHERE group_class_id=? ORDER BY id", (gc["id"],)
        )
        gc["groups"] = _rows_as_dicts(cur)
    study["group_classes"] = classes
    cur.execute("SELECT * FROM site WHERE study_id=? ORDER BY id", (study_id,))
    study["sites"] = _rows_as_dicts(cur)
    return study


def archive_study(conn, study_id: int, actor: Optional[int]) -> SyncResult:
    with transaction(conn):
        before = _study_row(conn, study_id)
        if before is None:
            raise StudyNotFoundError(study_id)
        if before["status"] == "removed":
            return SyncResult(True, study_id, "Study already archived")
        cur = conn.cursor()
        cur.execute(
            "UPDATE study SET status='removed', update_id=?, updated_at=? WHERE id=?",
            (actor, _now(), study_id),
        )
        after = _study_row(conn, study_id)
        try:
            record_audit(
                conn, actor, "study", study_id, "archive", before=before, after=after, study_id=study_id
            )
        except sqlite3.Error as e:
            raise AuditWriteError(f"Audit entry for study {study_id} could not be written") from e
    logger.info("Study %s archived", study_id)
    return SyncResult(True, study_id, "Study archived")


def remove_visit_definition(conn, visit_id: int, actor: Optional[int]) -> str:
    """Delete a visit definition that was never instantiated, else flag it removed.

    Returns ``"deleted"`` or ``"removed"``.
    """
    with transaction(conn):
        cur = conn.cursor()
        cur.execute("SELECT * FROM visit_definition WHERE id=?", (visit_id,))
        before = _row_as_dict(cur)
        if before is None:
            raise EntityNotFoundError("visit_definition", visit_id)
        cur.execute("SELECT COUNT(*) FROM visit_instance WHERE visit_definition_id=?", (visit_id,))
        in_use = cur.fetchone()[0]
        if in_use:
            cur.execute(
                "UPDATE visit_definition SET status='removed', update_id=?, updated_at=? WHERE id=?",
                (actor, _now(), visit_id),
            )
            cur.execute(
                "UPDATE form_assignment SET status='removed', update_id=?, updated_at=? WHERE visit_definition_id=?",
                (actor, _now(), visit_id),
            )
            outcome = "removed"
            after: Optional[Dict[str, Any]] = {**before, "status": "removed"}
        else:
            cur.execute("DELETE FROM form_assignment WHERE visit_definition_id=?", (visit_id,))
            cur.execute("DELETE FROM visit_definition WHERE id=?", (visit_id,))
            outcome = "deleted"
            after = None
        record_audit(
            conn,
            actor,
            "visit_definition",
            visit_id,
            "remove" if in_use else "delete",
            before=before,
            after=after,
            study_id=before["study_id"],
        )
    logger.info("Visit definition %s %s", visit_id, outcome)
    return outcome
