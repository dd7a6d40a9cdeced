"""Discard and regenerate every form snapshot.

Maintenance tool for after a template correction or a bad import. Each active
form instance is re-pinned to its assignment's current version and gets a
fresh snapshot. Answers held in the discarded snapshots are not carried over.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from typing import List, Optional

import pandas as pd

from .snapshot import create_form_snapshot, resolve_default_version
from .web.audit import record_audit
from .web.db import _rows_as_dicts, savepoint, transaction

logger = logging.getLogger(__name__)

SUBJECT_COUNT_COLUMNS = ["subject_id", "label", "form_instances", "snapshots"]


@dataclass
class RebuildReport:
    discarded: int = 0
    regenerated: int = 0
    errors: List[str] = field(default_factory=list)
    subjects: List[dict] = field(default_factory=list)

    def subject_frame(self) -> pd.DataFrame:
        if not self.subjects:
            return pd.DataFrame(columns=SUBJECT_COUNT_COLUMNS)
        return pd.DataFrame(self.subjects, columns=SUBJECT_COUNT_COLUMNS)


def _active_form_instances(conn) -> List[dict]:
    cur = conn.cursor()
    cur.execute(
        """SELECT fi.id, fi.form_template_version_id, fa.default_version_id, fa.form_template_id
           FROM form_instance fi
           JOIN form_assignment fa ON fa.id = fi.form_assignment_id
           JOIN visit_instance vi ON vi.id = fi.visit_instance_id
           WHERE fi.status != 'removed' AND vi.status != 'removed' AND fa.status != 'removed'
           ORDER BY fi.id"""
    )
    return _rows_as_dicts(cur)


def subject_counts(conn) -> List[dict]:
    cur = conn.cursor()
    cur.execute(
        """SELECT s.id AS subject_id, s.label,
                  (SELECT COUNT(*) FROM form_instance fi WHERE fi.subject_id = s.id AND fi.status != 'removed') AS form_instances,
                  (SELECT COUNT(*) FROM form_snapshot fs WHERE fs.subject_id = s.id) AS snapshots
           FROM subject s ORDER BY s.id"""
    )
    return _rows_as_dicts(cur)


def rebuild_all_snapshots(conn: sqlite3.Connection, actor: Optional[int]) -> RebuildReport:
    """Delete all form snapshots and build one per active form instance.

    Running it twice in a row leaves the same set of snapshots.
    """
    report = RebuildReport()
    with transaction(conn):
        cur = conn.cursor()
        cur.execute("SELECT COUNT(*) FROM form_snapshot")
        report.discarded = cur.fetchone()[0]
        logger.info("Discarding %s form snapshots", report.discarded)
        cur.execute("DELETE FROM form_snapshot")
        for inst in _active_form_instances(conn):
            try:
                with savepoint(conn, "rebuild"):
                    current = inst["default_version_id"] or resolve_default_version(
                        conn, inst["form_template_id"]
                    )
                    if current is not None and current != inst["form_template_version_id"]:
                        cur.execute(
                            "UPDATE form_instance SET form_template_version_id=? WHERE id=?",
                            (current, inst["id"]),
                        )
                    create_form_snapshot(conn, inst["id"], actor)
                report.regenerated += 1
            except Exception as e:
                logger.warning("Snapshot rebuild failed for form instance %s: %s", inst["id"], e)
                report.errors.append(f"Form instance {inst['id']}: {e}")
        record_audit(
            conn,
            actor,
            "form_snapshot",
            None,
            "rebuild",
            after={
                "discarded": report.discarded,
                "regenerated": report.regenerated,
                "errors": len(report.errors),
            },
        )
    report.subjects = subject_counts(conn)
    logger.info(
        "Snapshot rebuild: %s discarded, %s regenerated, %s errors",
        report.discarded,
        report.regenerated,
        len(report.errors),
    )
    return report
