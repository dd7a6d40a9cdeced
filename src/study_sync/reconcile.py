"""Compare a subject's form instances and snapshots against the study definition.

Every non-removed visit instance is expected to carry one form instance and
one snapshot per active form assignment of its visit definition. Each such
pair is classified:

 - ``consistent``: instance and snapshot exist and the snapshot matches the
   assignment's current version and field count
 - ``missing``: no form instance, or an instance without a snapshot
 - ``stale``: a snapshot exists but the version or field count has drifted

Only missing pairs are repaired. Stale snapshots may already hold answers
entered against the old structure and are left for a person to resolve.

A form instance that exists without a snapshot is repaired from the version it
is pinned to. When the assignment default has moved on since the instance was
created, the repaired pair is reported ``stale`` on the next verification.
"""

from __future__ import annotations

import logging
import sqlite3
from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional

from .errors import SnapshotBuildError
from .snapshot import build_snapshot, create_form_snapshot, resolve_default_version
from .subjects import materialize_form_instance
from .web.audit import record_audit
from .web.db import _rows_as_dicts, savepoint, transaction

logger = logging.getLogger(__name__)

CONSISTENT = "consistent"
MISSING = "missing"
STALE = "stale"
CLASSIFICATIONS = (CONSISTENT, MISSING, STALE)


@dataclass
class ReconciliationEntry:
    visit_instance_id: int
    form_assignment_id: int
    classification: str
    form_instance_id: Optional[int] = None
    snapshot_id: Optional[int] = None
    expected_version_id: Optional[int] = None
    snapshot_version_id: Optional[int] = None
    expected_field_count: Optional[int] = None
    snapshot_field_count: Optional[int] = None
    detail: Optional[str] = None


@dataclass
class ReconciliationReport:
    subject_id: int
    entries: List[ReconciliationEntry] = field(default_factory=list)
    orphans: List[dict] = field(default_factory=list)

    @property
    def summary(self) -> dict:
        counts = Counter(e.classification for e in self.entries)
        out = {c: counts.get(c, 0) for c in CLASSIFICATIONS}
        out["total"] = len(self.entries)
        out["orphans"] = len(self.orphans)
        out["healthy"] = out[MISSING] == 0 and out[STALE] == 0
        return out

    def to_dict(self) -> dict:
        return {
            "subject_id": self.subject_id,
            "entries": [asdict(e) for e in self.entries],
            "orphans": self.orphans,
            "summary": self.summary,
        }


@dataclass
class RepairResult:
    repaired: int = 0
    errors: List[str] = field(default_factory=list)


class _ExpectedStructure:
    """Per-call cache of the version each template resolves to and its field count."""

    def __init__(self, conn):
        self.conn = conn
        self._counts: Dict[int, int] = {}
        self._failures: Dict[int, str] = {}

    def field_count(self, version_id: int) -> int:
        if version_id in self._failures:
            raise SnapshotBuildError(self._failures[version_id])
        if version_id not in self._counts:
            try:
                self._counts[version_id] = len(build_snapshot(self.conn, version_id))
            except SnapshotBuildError as e:
                self._failures[version_id] = str(e)
                raise
        return self._counts[version_id]


def _subject_pairs(conn, subject_id: int) -> List[dict]:
    cur = conn.cursor()
    cur.execute(
        """SELECT vi.id AS visit_instance_id, fa.id AS form_assignment_id,
                  fa.form_template_id, fa.default_version_id,
                  fi.id AS form_instance_id,
                  fs.id AS snapshot_id, fs.form_template_version_id AS snapshot_version_id,
                  fs.field_count AS snapshot_field_count
           FROM visit_instance vi
           JOIN form_assignment fa
             ON fa.visit_definition_id = vi.visit_definition_id AND fa.status != 'removed'
           LEFT JOIN form_instance fi
             ON fi.visit_instance_id = vi.id AND fi.form_assignment_id = fa.id
           LEFT JOIN form_snapshot fs ON fs.form_instance_id = fi.id
           WHERE vi.subject_id=? AND vi.status != 'removed'
           ORDER BY vi.id, fa.ordinal, fa.id""",
        (subject_id,),
    )
    return _rows_as_dicts(cur)


def _orphans(conn, subject_id: int) -> List[dict]:
    cur = conn.cursor()
    cur.execute(
        """SELECT fi.id AS form_instance_id, fi.visit_instance_id, fi.form_assignment_id
           FROM form_instance fi
           JOIN form_assignment fa ON fa.id = fi.form_assignment_id
           WHERE fi.subject_id=? AND fa.status = 'removed'
           ORDER BY fi.id""",
        (subject_id,),
    )
    return _rows_as_dicts(cur)


def _classify(pair: dict, expected: _ExpectedStructure, conn) -> ReconciliationEntry:
    entry = ReconciliationEntry(
        visit_instance_id=pair["visit_instance_id"],
        form_assignment_id=pair["form_assignment_id"],
        classification=MISSING,
        form_instance_id=pair["form_instance_id"],
        snapshot_id=pair["snapshot_id"],
        snapshot_version_id=pair["snapshot_version_id"],
        snapshot_field_count=pair["snapshot_field_count"],
    )
    version_id = pair["default_version_id"] or resolve_default_version(
        conn, pair["form_template_id"]
    )
    entry.expected_version_id = version_id
    if version_id is None:
        entry.detail = f"No available version for form template {pair['form_template_id']}"
    else:
        try:
            entry.expected_field_count = expected.field_count(version_id)
        except SnapshotBuildError as e:
            entry.detail = str(e)
    if pair["form_instance_id"] is None or pair["snapshot_id"] is None:
        return entry
    if (
        entry.expected_field_count is not None
        and pair["snapshot_version_id"] == version_id
        and pair["snapshot_field_count"] == entry.expected_field_count
    ):
        entry.classification = CONSISTENT
    else:
        entry.classification = STALE
    return entry


def verify_form_integrity(
    conn: sqlite3.Connection, subject_id: int
) -> Optional[ReconciliationReport]:
    """Classify every expected (visit instance, form assignment) pair of a subject.

    Returns None when the subject does not exist. Read only.
    """
    cur = conn.cursor()
    cur.execute("SELECT 1 FROM subject WHERE id=?", (subject_id,))
    if cur.fetchone() is None:
        return None
    expected = _ExpectedStructure(conn)
    report = ReconciliationReport(subject_id=subject_id)
    for pair in _subject_pairs(conn, subject_id):
        entry = _classify(pair, expected, conn)
        if entry.detail:
            logger.warning(
                "Subject %s visit instance %s assignment %s: %s",
                subject_id,
                entry.visit_instance_id,
                entry.form_assignment_id,
                entry.detail,
            )
        report.entries.append(entry)
    report.orphans = _orphans(conn, subject_id)
    return report


def repair_missing_snapshots(
    conn: sqlite3.Connection, subject_id: int, actor: Optional[int]
) -> RepairResult:
    """Create the form instances and snapshots of every ``missing`` pair.

    Each pair is repaired in its own savepoint so one failure does not block
    the others. Running it again on a repaired subject changes nothing.
    """
    report = verify_form_integrity(conn, subject_id)
    if report is None:
        return RepairResult(0, [f"Subject {subject_id} not found"])
    result = RepairResult()
    missing = [e for e in report.entries if e.classification == MISSING]
    if not missing:
        return result
    cur = conn.cursor()
    cur.execute("SELECT study_id FROM subject WHERE id=?", (subject_id,))
    study_id = cur.fetchone()[0]
    with transaction(conn):
        for entry in missing:
            try:
                with savepoint(conn, "repair"):
                    form_instance_id = materialize_form_instance(
                        conn, entry.visit_instance_id, entry.form_assignment_id, actor
                    )
                    snapshot_id = create_form_snapshot(conn, form_instance_id, actor)
                    record_audit(
                        conn,
                        actor,
                        "form_snapshot",
                        snapshot_id,
                        "repair",
                        after={
                            "form_instance_id": form_instance_id,
                            "visit_instance_id": entry.visit_instance_id,
                            "form_assignment_id": entry.form_assignment_id,
                        },
                        reason="missing snapshot",
                        study_id=study_id,
                    )
                result.repaired += 1
            except Exception as e:
                msg = (
                    f"Visit instance {entry.visit_instance_id}, form assignment "
                    f"{entry.form_assignment_id}: {e}"
                )
                logger.warning("Repair failed for subject %s: %s", subject_id, msg)
                result.errors.append(msg)
    logger.info(
        "Subject %s: repaired %s of %s missing snapshots",
        subject_id,
        result.repaired,
        len(missing),
    )
    return result


def repair_all_subjects(conn: sqlite3.Connection, actor: Optional[int]) -> Dict[int, RepairResult]:
    cur = conn.cursor()
    cur.execute("SELECT id FROM subject ORDER BY id")
    return {
        subject_id: repair_missing_snapshots(conn, subject_id, actor)
        for (subject_id,) in cur.fetchall()
    }
