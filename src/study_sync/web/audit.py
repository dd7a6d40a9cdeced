import json
import logging
from typing import Optional

from .db import _now, _rows_as_dicts, savepoint

logger = logging.getLogger("study_sync.audit")


def record_audit(
    conn,
    actor_id: Optional[int],
    entity_type: str,
    entity_id: Optional[int],
    action: str,
    before=None,
    after=None,
    reason: Optional[str] = None,
    study_id: Optional[int] = None,
) -> int:
    """Append one audit row. Never updates or deletes existing rows.

    Raises on failure; the caller decides whether the loss is fatal.
    """
    cur = conn.cursor()
    cur.execute(
        "INSERT INTO audit_log (study_id, actor_id, performed_at, entity_type, entity_id, action, before_json, after_json, reason) VALUES (?,?,?,?,?,?,?,?,?)",
        (
            study_id,
            actor_id,
            _now(),
            entity_type,
            entity_id,
            action,
            json.dumps(before, default=str) if before is not None else None,
            json.dumps(after, default=str) if after is not None else None,
            reason,
        ),
    )
    return cur.lastrowid


def _record_audit_isolated(conn, warnings: Optional[list] = None, **kwargs) -> bool:
    """Write an enrichment audit row inside its own savepoint.

    A failure is logged at error severity and, when a warnings list is given,
    reported there; the enclosing transaction continues.
    """
    try:
        with savepoint(conn, "audit_entry"):
            record_audit(conn, **kwargs)
        return True
    except Exception as e:
        logger.error(
            "Failed recording %s audit for %s %s: %s",
            kwargs.get("action"),
            kwargs.get("entity_type"),
            kwargs.get("entity_id"),
            e,
        )
        if warnings is not None:
            warnings.append(
                f"Audit entry for {kwargs.get('entity_type')} {kwargs.get('entity_id')} could not be written"
            )
        return False


def list_audit(
    conn, study_id: Optional[int] = None, entity_type: Optional[str] = None
) -> list[dict]:
    clauses, params = [], []
    if study_id is not None:
        clauses.append("study_id=?")
        params.append(study_id)
    if entity_type:
        clauses.append("entity_type=?")
        params.append(entity_type)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    cur = conn.cursor()
    cur.execute(
        f"SELECT id, study_id, actor_id, performed_at, entity_type, entity_id, action, before_json, after_json, reason FROM audit_log {where} ORDER BY id",
        params,
    )
    rows = _rows_as_dicts(cur)
    for r in rows:
        before_json = r.pop("before_json")
        after_json = r.pop("after_json")
        r["before"] = json.loads(before_json) if before_json else None
        r["after"] = json.loads(after_json) if after_json else None
    return rows
