"""FastAPI surface over the study_sync core.

Endpoints:
  POST /studies {definition} -> create (no id) or update (id) a study definition
  GET /studies/{id} -> nested study definition
  POST /studies/{id}/archive -> flag study removed
  DELETE /visit-definitions/{id} -> delete or flag a visit definition removed
  GET /studies/{id}/audit -> audit rows (JSON); /audit/export/xlsx -> workbook
  GET /subjects/{id}/integrity -> snapshot reconciliation report
  POST /subjects/{id}/repair -> create missing form instances / snapshots
  GET /subjects/{id}/snapshots -> stored snapshots with answers

The acting user is taken from the X-User-Id header. Data persisted in SQLite
(file: study_sync.db by default, override with STUDY_SYNC_DB).
"""

from __future__ import annotations

from fastapi import FastAPI

from .db import DB_PATH, logger
from .initialize_database import _init_db
from .migrate_database import run_migrations
from .routers import studies as studies_router
from .routers import subjects as subjects_router

app = FastAPI(title="Study Sync API", version="0.1.0")

_init_db()
run_migrations()
logger.info("Using database %s", DB_PATH)

app.include_router(studies_router.router)
app.include_router(subjects_router.router)


def main():  # pragma: no cover
    import uvicorn

    uvicorn.run("study_sync.web.app:app", host="0.0.0.0", port=8000, reload=True)


if __name__ == "__main__":  # pragma: no cover
    main()
