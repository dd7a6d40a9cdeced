"""Form library authoring: templates, versions and their fields."""

import logging
from typing import Optional

from .errors import EntityNotFoundError
from .web.audit import record_audit
from .web.db import _now, _row_as_dict, transaction

logger = logging.getLogger(__name__)

VERSION_STATUSES = ("available", "removed")


def create_form_template(
    conn, name: str, description: Optional[str] = None, actor: Optional[int] = None
) -> int:
    name = (name or "").strip()
    if not name:
        raise ValueError("Form template name required")
    with transaction(conn):
        cur = conn.cursor()
        cur.execute(
            "INSERT INTO form_template (name, description, owner_id, created_at) VALUES (?,?,?,?)",
            (name, description, actor, _now()),
        )
        template_id = cur.lastrowid
        cur.execute(
            "UPDATE form_template SET oc_oid=? WHERE id=?",
            (f"F_{template_id}", template_id),
        )
        record_audit(
            conn,
            actor,
            "form_template",
            template_id,
            "create",
            after={"id": template_id, "name": name, "description": description},
        )
    return template_id


def create_template_version(
    conn,
    template_id: int,
    name: str,
    actor: Optional[int] = None,
    description: Optional[str] = None,
    status: str = "available",
) -> int:
    if status not in VERSION_STATUSES:
        raise ValueError(f"Invalid version status: {status}")
    with transaction(conn):
        cur = conn.cursor()
        cur.execute("SELECT 1 FROM form_template WHERE id=?", (template_id,))
        if cur.fetchone() is None:
            raise EntityNotFoundError("form_template", template_id)
        cur.execute(
            "INSERT INTO form_template_version (form_template_id, name, description, status, owner_id, created_at) VALUES (?,?,?,?,?,?)",
            (template_id, name, description, status, actor, _now()),
        )
        version_id = cur.lastrowid
        record_audit(
            conn,
            actor,
            "form_template_version",
            version_id,
            "create",
            after={"id": version_id, "form_template_id": template_id, "name": name},
        )
    return version_id


def add_template_field(
    conn,
    version_id: int,
    name: str,
    label: Optional[str] = None,
    data_type: str = "ST",
    required: bool = False,
    options_text: Optional[str] = None,
    options_values: Optional[str] = None,
    units: Optional[str] = None,
    section: Optional[str] = None,
    section_ordinal: int = 0,
    ordinal: Optional[int] = None,
    show_field: bool = True,
) -> int:
    """Append a field to a template version; ordinal defaults to the next in its section."""
    cur = conn.cursor()
    cur.execute("SELECT 1 FROM form_template_version WHERE id=?", (version_id,))
    if cur.fetchone() is None:
        raise EntityNotFoundError("form_template_version", version_id)
    if ordinal is None:
        cur.execute(
            "SELECT COALESCE(MAX(ordinal),0) FROM template_field WHERE form_template_version_id=? AND section_ordinal=?",
            (version_id, section_ordinal),
        )
        ordinal = cur.fetchone()[0] + 1
    with transaction(conn):
        cur.execute(
            """INSERT INTO template_field (form_template_version_id, name, label, data_type, required,
                options_text, options_values, units, section, section_ordinal, ordinal, show_field)
                VALUES (?,?,?,?,?,?,?,?,?,?,?,?)""",
            (
                version_id,
                name,
                label or name,
                data_type,
                1 if required else 0,
                options_text,
                options_values,
                units,
                section,
                section_ordinal,
                ordinal,
                1 if show_field else 0,
            ),
        )
        field_id = cur.lastrowid
    return field_id


def set_version_status(
    conn, version_id: int, status: str, actor: Optional[int] = None
) -> dict:
    if status not in VERSION_STATUSES:
        raise ValueError(f"Invalid version status: {status}")
    with transaction(conn):
        cur = conn.cursor()
        cur.execute("SELECT * FROM form_template_version WHERE id=?", (version_id,))
        before = _row_as_dict(cur)
        if before is None:
            raise EntityNotFoundError("form_template_version", version_id)
        cur.execute(
            "UPDATE form_template_version SET status=? WHERE id=?", (status, version_id)
        )
        after = {**before, "status": status}
        record_audit(
            conn,
            actor,
            "form_template_version",
            version_id,
            "update",
            before=before,
            after=after,
        )
    logger.info("Form template version %s set to %s", version_id, status)
    return after
