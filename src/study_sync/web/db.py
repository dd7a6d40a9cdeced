import logging
import os
import re
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, FrozenSet, Iterator, List, Optional

from dotenv import load_dotenv

load_dotenv()
DB_PATH = os.environ.get("STUDY_SYNC_DB", "study_sync.db")

logger = logging.getLogger("study_sync")
if not logger.handlers:
    _h = logging.StreamHandler()
    _h.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)s %(message)s"))
    logger.addHandler(_h)
logger.setLevel(logging.INFO)

_SAVEPOINT_NAME_RE = re.compile(r"[^A-Za-z0-9_]")


def _connect(db_path: Optional[str] = None) -> sqlite3.Connection:
    # Autocommit mode: BEGIN/COMMIT/SAVEPOINT are issued explicitly by transaction()/savepoint().
    conn = sqlite3.connect(db_path or DB_PATH, isolation_level=None)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _rows_as_dicts(cur: sqlite3.Cursor) -> List[dict]:
    cols = [d[0] for d in cur.description]
    return [dict(zip(cols, r)) for r in cur.fetchall()]


def _row_as_dict(cur: sqlite3.Cursor) -> Optional[dict]:
    row = cur.fetchone()
    if row is None:
        return None
    return dict(zip([d[0] for d in cur.description], row))


@contextmanager
def savepoint(conn: sqlite3.Connection, name: str) -> Iterator[str]:
    """Run the block inside a named savepoint.

    On exception the savepoint is rolled back and released before the exception
    propagates, leaving the enclosing transaction usable.
    """
    sp = f"{_SAVEPOINT_NAME_RE.sub('_', name)}_{uuid.uuid4().hex[:8]}"
    conn.execute(f"SAVEPOINT {sp}")
    try:
        yield sp
    except BaseException:
        conn.execute(f"ROLLBACK TO SAVEPOINT {sp}")
        conn.execute(f"RELEASE SAVEPOINT {sp}")
        raise
    conn.execute(f"RELEASE SAVEPOINT {sp}")


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Top-level transaction, or a savepoint when the caller already opened one."""
    if conn.in_transaction:
        with savepoint(conn, "txn"):
            yield conn
        return
    conn.execute("BEGIN")
    try:
        yield conn
    except BaseException:
        # Cancellation included: savepoints never outlive the top-level rollback.
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


@dataclass(frozen=True)
class SchemaCapabilities:
    """Column sets of the live schema, queried once per operation."""

    columns: Dict[str, FrozenSet[str]] = field(default_factory=dict)

    @classmethod
    def load(cls, conn: sqlite3.Connection) -> "SchemaCapabilities":
        cur = conn.cursor()
        cur.execute("SELECT name FROM sqlite_master WHERE type='table'")
        tables = [r[0] for r in cur.fetchall()]
        columns = {}
        for table in tables:
            cur.execute(f"PRAGMA table_info({table})")
            columns[table] = frozenset(r[1] for r in cur.fetchall())
        return cls(columns)

    def has(self, table: str, column: str) -> bool:
        return column in self.columns.get(table, frozenset())

    def writable(self, table: str, values: dict) -> dict:
        known = self.columns.get(table, frozenset())
        return {k: v for k, v in values.items() if k in known}
