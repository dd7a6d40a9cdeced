"""Subject enrollment, visit scheduling and form materialization."""

import json
import logging
from typing import Optional

from .errors import EntityNotFoundError, StudyNotFoundError
from .parameters import format_subject_label, parse_parameter_config
from .snapshot import create_form_snapshot, list_snapshots, resolve_default_version
from .web.audit import record_audit
from .web.db import _now, _row_as_dict, transaction

logger = logging.getLogger(__name__)


def _study_parameters(conn, study_id: int) -> dict:
    cur = conn.cursor()
    cur.execute(
        "SELECT parameter, value FROM study_parameter_value WHERE study_id=?", (study_id,)
    )
    return {r[0]: r[1] for r in cur.fetchall()}


def _get(conn, table: str, row_id: int) -> dict:
    cur = conn.cursor()
    cur.execute(f"SELECT * FROM {table} WHERE id=?", (row_id,))
    row = _row_as_dict(cur)
    if row is None:
        raise EntityNotFoundError(table, row_id)
    return row


def enroll_subject(
    conn,
    study_id: int,
    label: Optional[str] = None,
    site_id: Optional[int] = None,
    actor: Optional[int] = None,
) -> int:
    """Enroll a subject; the label is generated when the study uses automatic ids."""
    cur = conn.cursor()
    cur.execute("SELECT status FROM study WHERE id=?", (study_id,))
    row = cur.fetchone()
    if row is None:
        raise StudyNotFoundError(study_id)
    if row[0] == "removed":
        raise ValueError(f"Study {study_id} is archived")
    config = parse_parameter_config(_study_parameters(conn, study_id))
    with transaction(conn):
        label = (label or "").strip()
        if not label or config.subject_id_generation == "auto_non_editable":
            if config.subject_id_generation == "manual":
                raise ValueError("Subject label required")
            cur.execute("SELECT COUNT(*) FROM subject WHERE study_id=?", (study_id,))
            n = cur.fetchone()[0] + 1
            prefix_suffix = f"{config.subject_id_prefix}|{config.subject_id_suffix}"
            label = format_subject_label(prefix_suffix, n)
            cur.execute("SELECT 1 FROM subject WHERE study_id=? AND label=?", (study_id, label))
            while cur.fetchone() is not None:
                n += 1
                label = format_subject_label(prefix_suffix, n)
                cur.execute(
                    "SELECT 1 FROM subject WHERE study_id=? AND label=?", (study_id, label)
                )
        if site_id is not None:
            site = _get(conn, "site", site_id)
            if site["study_id"] != study_id:
                raise ValueError(f"Site {site_id} does not belong to study {study_id}")
        cur.execute(
            "INSERT INTO subject (study_id, site_id, label, enrolled_at, owner_id) VALUES (?,?,?,?,?)",
            (study_id, site_id, label, _now(), actor),
        )
        subject_id = cur.lastrowid
        record_audit(
            conn,
            actor,
            "subject",
            subject_id,
            "create",
            after={"id": subject_id, "label": label, "site_id": site_id},
            study_id=study_id,
        )
    logger.info("Enrolled subject %s (%s) in study %s", subject_id, label, study_id)
    return subject_id


def _insert_visit_instance(
    conn,
    subject_id: int,
    visit_definition_id: int,
    actor,
    scheduled_date,
    location,
    unscheduled: bool,
) -> int:
    subject = _get(conn, "subject", subject_id)
    visit = _get(conn, "visit_definition", visit_definition_id)
    if visit["study_id"] != subject["study_id"]:
        raise ValueError(
            f"Visit definition {visit_definition_id} does not belong to the subject's study"
        )
    if visit["status"] == "removed":
        raise ValueError(f"Visit definition {visit_definition_id} is removed")
    cur = conn.cursor()
    cur.execute(
        "SELECT COALESCE(MAX(sample_ordinal),0), COUNT(*) FROM visit_instance WHERE subject_id=? AND visit_definition_id=? AND status!='removed'",
        (subject_id, visit_definition_id),
    )
    max_ordinal, count = cur.fetchone()
    if count and not (visit["repeating"] or unscheduled):
        raise ValueError(
            f"Visit {visit['name']} is not repeating and is already scheduled for subject {subject_id}"
        )
    with transaction(conn):
        cur.execute(
            """INSERT INTO visit_instance (subject_id, visit_definition_id, sample_ordinal, status,
                scheduled_date, is_unscheduled, location, owner_id, created_at)
                VALUES (?,?,?,?,?,?,?,?,?)""",
            (
                subject_id,
                visit_definition_id,
                max_ordinal + 1,
                "scheduled",
                scheduled_date,
                1 if unscheduled else 0,
                location,
                actor,
                _now(),
            ),
        )
        visit_instance_id = cur.lastrowid
        record_audit(
            conn,
            actor,
            "visit_instance",
            visit_instance_id,
            "create",
            after={
                "id": visit_instance_id,
                "subject_id": subject_id,
                "visit_definition_id": visit_definition_id,
                "sample_ordinal": max_ordinal + 1,
                "is_unscheduled": unscheduled,
            },
            study_id=subject["study_id"],
        )
    return visit_instance_id


def schedule_visit(
    conn,
    subject_id: int,
    visit_definition_id: int,
    actor: Optional[int] = None,
    scheduled_date: Optional[str] = None,
    location: Optional[str] = None,
) -> int:
    """Schedule a visit for a subject. Forms are materialized later by start_form."""
    return _insert_visit_instance(
        conn, subject_id, visit_definition_id, actor, scheduled_date, location, False
    )


def create_unscheduled_visit(
    conn,
    subject_id: int,
    visit_definition_id: int,
    actor: Optional[int] = None,
    scheduled_date: Optional[str] = None,
    location: Optional[str] = None,
) -> int:
    return _insert_visit_instance(
        conn, subject_id, visit_definition_id, actor, scheduled_date, location, True
    )


def materialize_form_instance(
    conn,
    visit_instance_id: int,
    form_assignment_id: int,
    actor: Optional[int] = None,
) -> int:
    """Return the form instance for a visit instance x assignment pair, creating it if absent."""
    cur = conn.cursor()
    cur.execute(
        "SELECT id FROM form_instance WHERE visit_instance_id=? AND form_assignment_id=?",
        (visit_instance_id, form_assignment_id),
    )
    row = cur.fetchone()
    if row is not None:
        return row[0]
    visit_instance = _get(conn, "visit_instance", visit_instance_id)
    assignment = _get(conn, "form_assignment", form_assignment_id)
    if assignment["visit_definition_id"] != visit_instance["visit_definition_id"]:
        raise ValueError(
            f"Form assignment {form_assignment_id} is not part of visit instance {visit_instance_id}"
        )
    if assignment["status"] == "removed":
        raise ValueError(f"Form assignment {form_assignment_id} is removed")
    version_id = assignment["default_version_id"] or resolve_default_version(
        conn, assignment["form_template_id"]
    )
    cur.execute(
        """INSERT INTO form_instance (visit_instance_id, form_assignment_id, form_template_version_id,
            subject_id, owner_id, created_at) VALUES (?,?,?,?,?,?)""",
        (
            visit_instance_id,
            form_assignment_id,
            version_id,
            visit_instance["subject_id"],
            actor,
            _now(),
        ),
    )
    return cur.lastrowid


def start_form(
    conn,
    visit_instance_id: int,
    form_assignment_id: int,
    actor: Optional[int] = None,
    interviewer_name: Optional[str] = None,
    interview_date: Optional[str] = None,
) -> dict:
    """Open a form for data entry: form instance plus its structural snapshot."""
    with transaction(conn):
        form_instance_id = materialize_form_instance(
            conn, visit_instance_id, form_assignment_id, actor
        )
        cur = conn.cursor()
        if interviewer_name is not None or interview_date is not None:
            cur.execute(
                "UPDATE form_instance SET interviewer_name=COALESCE(?, interviewer_name), interview_date=COALESCE(?, interview_date) WHERE id=?",
                (interviewer_name, interview_date, form_instance_id),
            )
        snapshot_id = create_form_snapshot(conn, form_instance_id, actor)
        cur.execute(
            "UPDATE visit_instance SET status='data_entry_started' WHERE id=? AND status IN ('scheduled','not_scheduled')",
            (visit_instance_id,),
        )
        cur.execute(
            "SELECT s.study_id FROM visit_instance vi JOIN subject s ON s.id = vi.subject_id WHERE vi.id=?",
            (visit_instance_id,),
        )
        study_id = cur.fetchone()[0]
        record_audit(
            conn,
            actor,
            "form_instance",
            form_instance_id,
            "create",
            after={
                "form_instance_id": form_instance_id,
                "snapshot_id": snapshot_id,
                "visit_instance_id": visit_instance_id,
                "form_assignment_id": form_assignment_id,
            },
            study_id=study_id,
        )
    return {"form_instance_id": form_instance_id, "snapshot_id": snapshot_id}


def save_form_data(
    conn,
    form_instance_id: int,
    data: dict,
    actor: Optional[int] = None,
    complete: bool = False,
) -> dict:
    """Merge answers into the form's snapshot. Keys must be field names of the snapshot."""
    cur = conn.cursor()
    cur.execute(
        "SELECT id, structure_json, data_json, completion_status FROM form_snapshot WHERE form_instance_id=?",
        (form_instance_id,),
    )
    row = cur.fetchone()
    if row is None:
        raise EntityNotFoundError("form_snapshot", form_instance_id)
    snapshot_id, structure_json, data_json, status_before = row
    known = {f["name"] for f in json.loads(structure_json)["fields"]}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Unknown fields: {', '.join(unknown)}")
    before = json.loads(data_json or "{}")
    after = {**before, **data}
    status = "complete" if complete else "in_progress"
    with transaction(conn):
        cur.execute(
            "UPDATE form_snapshot SET data_json=?, completion_status=?, updated_by=?, updated_at=? WHERE id=?",
            (json.dumps(after, sort_keys=True), status, actor, _now(), snapshot_id),
        )
        cur.execute(
            "UPDATE form_instance SET completion_status=? WHERE id=?",
            (status, form_instance_id),
        )
        cur.execute(
            "SELECT s.study_id FROM form_instance fi JOIN subject s ON s.id = fi.subject_id WHERE fi.id=?",
            (form_instance_id,),
        )
        study_id = cur.fetchone()[0]
        record_audit(
            conn,
            actor,
            "form_data",
            form_instance_id,
            "update",
            before={"data": before, "completion_status": status_before},
            after={"data": after, "completion_status": status},
            study_id=study_id,
        )
    return {"form_instance_id": form_instance_id, "data": after, "completion_status": status}


def get_form_snapshots(conn, subject_id: int) -> list:
    _get(conn, "subject", subject_id)
    return list_snapshots(conn, subject_id)
