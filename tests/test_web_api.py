import uuid

from fastapi.testclient import TestClient

from study_sync.forms import add_template_field, create_form_template, create_template_version
from study_sync.subjects import enroll_subject, schedule_visit
from study_sync.web.app import app
from study_sync.web.db import _connect

client = TestClient(app)
ACTOR = {"X-User-Id": "4"}


def _template(name="Vitals"):
    conn = _connect()
    try:
        template_id = create_form_template(conn, name, actor=1)
        version_id = create_template_version(conn, template_id, "v1", actor=1)
        add_template_field(conn, version_id, "weight")
        add_template_field(conn, version_id, "height")
    finally:
        conn.close()
    return template_id


def _identifier():
    return f"WEB-{uuid.uuid4().hex[:8]}"


def _create_study(template_id, identifier=None):
    payload = {
        "unique_identifier": identifier or _identifier(),
        "name": "Web study",
        "parameters": {"subjectIdPrefix": "W-"},
        "visit_definitions": [
            {"name": "Baseline", "form_assignments": [{"form_template_id": template_id}]}
        ],
        "sites": [{"unique_identifier": _identifier(), "name": "Site A"}],
    }
    r = client.post("/studies", json=payload, headers=ACTOR)
    assert r.status_code == 200, r.text
    return r.json()


def test_create_read_and_audit_study():
    body = _create_study(_template())
    assert body["success"] is True
    assert body["warnings"] == []
    study_id = body["study_id"]

    r = client.get(f"/studies/{study_id}")
    assert r.status_code == 200
    study = r.json()
    assert study["parameters"]["subjectIdPrefixSuffix"] == "W-|"
    assert study["visit_definitions"][0]["form_assignments"][0]["default_version_id"]

    audit = client.get(f"/studies/{study_id}/audit", params={"entity_type": "study"}).json()
    assert [a["action"] for a in audit] == ["create"]
    assert audit[0]["actor_id"] == 4


def test_duplicate_identifier_conflict():
    identifier = _identifier()
    template_id = _template()
    _create_study(template_id, identifier)
    r = client.post("/studies", json={"unique_identifier": identifier, "name": "Again"}, headers=ACTOR)
    assert r.status_code == 409


def test_unknown_study():
    assert client.get("/studies/987654").status_code == 404
    r = client.post("/studies", json={"id": 987654, "name": "Nope"}, headers=ACTOR)
    assert r.status_code == 404
    assert client.post("/studies/987654/archive", headers=ACTOR).status_code == 404
    assert client.get("/studies/987654/audit").status_code == 404


def test_missing_identifier_on_create():
    r = client.post("/studies", json={"name": "No identifier"}, headers=ACTOR)
    assert r.status_code == 400


def test_group_class_failure_reported_as_warning():
    r = client.post(
        "/studies",
        json={
            "unique_identifier": _identifier(),
            "name": "Warn",
            "group_classes": [{"name": "Arm"}, {"name": "Arm"}],
        },
        headers=ACTOR,
    )
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert [w["step"] for w in body["warnings"]] == ["group_classes"]


def test_archive_and_remove_visit():
    body = _create_study(_template())
    study_id = body["study_id"]
    visit_id = client.get(f"/studies/{study_id}").json()["visit_definitions"][0]["id"]
    r = client.delete(f"/visit-definitions/{visit_id}", headers=ACTOR)
    assert r.status_code == 200
    assert r.json()["result"] == "deleted"
    assert client.delete(f"/visit-definitions/{visit_id}", headers=ACTOR).status_code == 404
    r = client.post(f"/studies/{study_id}/archive", headers=ACTOR)
    assert r.status_code == 200
    assert client.get(f"/studies/{study_id}").json()["status"] == "removed"


def test_audit_export_xlsx():
    study_id = _create_study(_template())["study_id"]
    r = client.get(f"/studies/{study_id}/audit/export/xlsx")
    assert r.status_code == 200
    assert r.headers["content-type"].startswith(
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
    )
    assert r.content[:2] == b"PK"


def test_integrity_and_repair_flow():
    study_id = _create_study(_template())["study_id"]
    study = client.get(f"/studies/{study_id}").json()
    visit_id = study["visit_definitions"][0]["id"]
    conn = _connect()
    try:
        subject_id = enroll_subject(conn, study_id, label="001", actor=1)
        schedule_visit(conn, subject_id, visit_id, actor=1)
    finally:
        conn.close()

    report = client.get(f"/subjects/{subject_id}/integrity").json()
    assert [e["classification"] for e in report["entries"]] == ["missing"]
    assert report["summary"]["healthy"] is False

    r = client.post(f"/subjects/{subject_id}/repair", headers={"X-User-Id": "2"})
    assert r.status_code == 200
    assert r.json() == {"repaired": 1, "errors": []}

    report = client.get(f"/subjects/{subject_id}/integrity").json()
    assert [e["classification"] for e in report["entries"]] == ["consistent"]
    snapshots = client.get(f"/subjects/{subject_id}/snapshots").json()
    assert snapshots[0]["field_count"] == 2


def test_unknown_subject():
    assert client.get("/subjects/987654/integrity").status_code == 404
    assert client.post("/subjects/987654/repair", headers=ACTOR).status_code == 404
    assert client.get("/subjects/987654/snapshots").status_code == 404


def test_writes_require_actor_header():
    study_id = _create_study(_template())["study_id"]
    assert client.post(f"/studies/{study_id}/archive").status_code == 422
    assert client.post("/studies", json={"unique_identifier": _identifier(), "name": "Anon"}).status_code == 422
    assert client.get(f"/studies/{study_id}").json()["status"] == "available"
    audit = client.get(f"/studies/{study_id}/audit", params={"entity_type": "study"}).json()
    assert [(a["action"], a["actor_id"]) for a in audit] == [("create", 4)]


def test_null_name_on_update_keeps_stored_name():
    study_id = _create_study(_template())["study_id"]
    r = client.post("/studies", json={"id": study_id, "name": None, "sponsor": "Acme"}, headers=ACTOR)
    assert r.status_code == 200, r.text
    study = client.get(f"/studies/{study_id}").json()
    assert study["name"] == "Web study"
    assert study["sponsor"] == "Acme"


def test_assignment_flag_update_keeps_default_version():
    template_id = _template()
    study_id = _create_study(template_id)["study_id"]
    visit = client.get(f"/studies/{study_id}").json()["visit_definitions"][0]
    assignment = visit["form_assignments"][0]
    conn = _connect()
    try:
        create_template_version(conn, template_id, "v2", actor=1)
    finally:
        conn.close()
    payload = {
        "id": study_id,
        "visit_definitions": [
            {
                "id": visit["id"],
                "form_assignments": [
                    {"id": assignment["id"], "form_template_id": template_id, "required": True}
                ],
            }
        ],
    }
    r = client.post("/studies", json=payload, headers=ACTOR)
    assert r.json()["warnings"] == []
    updated = client.get(f"/studies/{study_id}").json()["visit_definitions"][0]["form_assignments"][0]
    assert updated["required"] == 1
    assert updated["default_version_id"] == assignment["default_version_id"]
