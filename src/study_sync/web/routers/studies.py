import io
import logging
import sqlite3
from typing import Optional

import pandas as pd
from fastapi import APIRouter, Header, HTTPException
from fastapi.responses import JSONResponse, StreamingResponse

from ...errors import (
    AuditWriteError,
    EntityNotFoundError,
    IdentityConflictError,
    StudyNotFoundError,
)
from ...synchronizer import (
    archive_study,
    get_study,
    remove_visit_definition,
    synchronize_study,
)
from ..audit import list_audit
from ..db import _connect
from ..schemas import StudyDefinitionInput, SyncResultOut

router = APIRouter()
logger = logging.getLogger("study_sync.web")

AUDIT_COLUMNS = [
    "id",
    "performed_at",
    "actor_id",
    "entity_type",
    "entity_id",
    "action",
    "reason",
    "before",
    "after",
]


def _study_exists(study_id: int) -> bool:
    conn = _connect()
    cur = conn.cursor()
    cur.execute("SELECT 1 FROM study WHERE id=?", (study_id,))
    ok = cur.fetchone() is not None
    conn.close()
    return ok


@router.post("/studies", response_model=SyncResultOut)
def save_study(payload: StudyDefinitionInput, x_user_id: int = Header(...)):
    conn = _connect()
    try:
        result = synchronize_study(conn, payload.to_definition(), x_user_id)
    except IdentityConflictError as e:
        raise HTTPException(409, str(e))
    except StudyNotFoundError as e:
        raise HTTPException(404, str(e))
    except AuditWriteError as e:
        logger.error("Study save rolled back: %s", e)
        raise HTTPException(500, str(e))
    except ValueError as e:
        raise HTTPException(400, str(e))
    except sqlite3.IntegrityError as e:
        raise HTTPException(400, f"Study could not be saved: {e}")
    finally:
        conn.close()
    return result.to_dict()


@router.get("/studies/{study_id}", response_class=JSONResponse)
def read_study(study_id: int):
    conn = _connect()
    try:
        study = get_study(conn, study_id)
    finally:
        conn.close()
    if study is None:
        raise HTTPException(404, "Study not found")
    return study


@router.post("/studies/{study_id}/archive", response_model=SyncResultOut)
def archive(study_id: int, x_user_id: int = Header(...)):
    conn = _connect()
    try:
        result = archive_study(conn, study_id, x_user_id)
    except StudyNotFoundError as e:
        raise HTTPException(404, str(e))
    except AuditWriteError as e:
        raise HTTPException(500, str(e))
    finally:
        conn.close()
    return result.to_dict()


@router.delete("/visit-definitions/{visit_id}", response_class=JSONResponse)
def delete_visit_definition(visit_id: int, x_user_id: int = Header(...)):
    conn = _connect()
    try:
        outcome = remove_visit_definition(conn, visit_id, x_user_id)
    except EntityNotFoundError as e:
        raise HTTPException(404, str(e))
    finally:
        conn.close()
    return {"visit_definition_id": visit_id, "result": outcome}


@router.get("/studies/{study_id}/audit", response_class=JSONResponse)
def study_audit(study_id: int, entity_type: Optional[str] = None):
    if not _study_exists(study_id):
        raise HTTPException(404, "Study not found")
    conn = _connect()
    try:
        return list_audit(conn, study_id=study_id, entity_type=entity_type)
    finally:
        conn.close()


@router.get("/studies/{study_id}/audit/export/xlsx")
def export_study_audit_xlsx(study_id: int):
    if not _study_exists(study_id):
        raise HTTPException(404, "Study not found")
    conn = _connect()
    try:
        rows = list_audit(conn, study_id=study_id)
    finally:
        conn.close()
    df = pd.DataFrame(rows, columns=AUDIT_COLUMNS)
    df["before"] = df["before"].map(lambda v: "" if v is None else str(v))
    df["after"] = df["after"].map(lambda v: "" if v is None else str(v))
    bio = io.BytesIO()
    with pd.ExcelWriter(bio, engine="openpyxl") as writer:
        df.to_excel(writer, index=False, sheet_name="AuditLog")
    bio.seek(0)
    filename = f"study_{study_id}_audit.xlsx"
    return StreamingResponse(
        bio,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
