from fastapi import APIRouter, Header, HTTPException
from fastapi.responses import JSONResponse

from ...reconcile import repair_missing_snapshots, verify_form_integrity
from ...snapshot import list_snapshots
from ..db import _connect
from ..schemas import RepairResultOut

router = APIRouter(prefix="/subjects/{subject_id}")


def _subject_exists(subject_id: int) -> bool:
    conn = _connect()
    cur = conn.cursor()
    cur.execute("SELECT 1 FROM subject WHERE id=?", (subject_id,))
    ok = cur.fetchone() is not None
    conn.close()
    return ok


@router.get("/integrity", response_class=JSONResponse)
def subject_integrity(subject_id: int):
    conn = _connect()
    try:
        report = verify_form_integrity(conn, subject_id)
    finally:
        conn.close()
    if report is None:
        raise HTTPException(404, "Subject not found")
    return report.to_dict()


@router.post("/repair", response_model=RepairResultOut)
def repair_subject(subject_id: int, x_user_id: int = Header(...)):
    if not _subject_exists(subject_id):
        raise HTTPException(404, "Subject not found")
    conn = _connect()
    try:
        result = repair_missing_snapshots(conn, subject_id, x_user_id)
    finally:
        conn.close()
    return {"repaired": result.repaired, "errors": result.errors}


@router.get("/snapshots", response_class=JSONResponse)
def subject_snapshots(subject_id: int):
    if not _subject_exists(subject_id):
        raise HTTPException(404, "Subject not found")
    conn = _connect()
    try:
        return list_snapshots(conn, subject_id)
    finally:
        conn.close()
