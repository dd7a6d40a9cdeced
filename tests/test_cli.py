import json

from click.testing import CliRunner

from study_sync.cli import cli
from study_sync.subjects import enroll_subject, schedule_visit
from study_sync.synchronizer import get_study
from study_sync.web.db import _connect


def _run(db_path, *args, **kwargs):
    return CliRunner().invoke(cli, ["--db", db_path, *args], **kwargs)


def _sync_file(tmp_path, template_id):
    path = tmp_path / "study.json"
    path.write_text(
        json.dumps(
            {
                "unique_identifier": "CLI-1",
                "name": "CLI study",
                "visit_definitions": [
                    {"name": "Baseline", "form_assignments": [{"form_template_id": template_id}]}
                ],
                "group_classes": [{"name": "Arm"}, {"name": "Arm"}],
            }
        ),
        encoding="utf-8",
    )
    return str(path)


def test_init_db_creates_schema(tmp_path):
    db_path = str(tmp_path / "cli.db")
    result = _run(db_path, "init-db")
    assert result.exit_code == 0, result.output
    conn = _connect(db_path)
    cur = conn.cursor()
    cur.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='form_snapshot'")
    assert cur.fetchone() is not None
    conn.close()


def test_sync_verify_repair_rebuild(tmp_path, conn, db_path, make_template):
    template_id, _ = make_template()
    result = _run(db_path, "sync", "--input", _sync_file(tmp_path, template_id), "--actor", "1")
    assert result.exit_code == 0, result.output
    assert "Study created" in result.output
    assert "1 of 2 group classes could not be saved" in result.output

    cur = conn.cursor()
    cur.execute("SELECT id FROM study WHERE unique_identifier='CLI-1'")
    study_id = cur.fetchone()[0]
    visit_id = get_study(conn, study_id)["visit_definitions"][0]["id"]
    subject_id = enroll_subject(conn, study_id, label="001", actor=1)
    schedule_visit(conn, subject_id, visit_id, actor=1)

    result = _run(db_path, "verify", "--subject", str(subject_id))
    assert result.exit_code == 2
    assert "missing" in result.output

    result = _run(db_path, "repair", "--subject", str(subject_id), "--actor", "1")
    assert result.exit_code == 0, result.output
    assert f"Subject {subject_id}: repaired 1" in result.output

    result = _run(db_path, "verify", "--subject", str(subject_id))
    assert result.exit_code == 0
    assert "consistent=1" in result.output

    result = _run(db_path, "rebuild-snapshots", "--actor", "1", "--yes")
    assert result.exit_code == 0, result.output
    assert "Discarded 1 snapshots, regenerated 1." in result.output


def test_rebuild_requires_confirmation(conn, db_path):
    result = _run(db_path, "rebuild-snapshots", "--actor", "1", input="n\n")
    assert result.exit_code == 1
    assert "Aborted" in result.output


def test_verify_unknown_subject(conn, db_path):
    result = _run(db_path, "verify", "--subject", "77")
    assert result.exit_code == 1


def test_repair_requires_one_target(conn, db_path):
    assert _run(db_path, "repair", "--actor", "1").exit_code == 2
    assert _run(db_path, "repair", "--all", "--subject", "1", "--actor", "1").exit_code == 2
    assert _run(db_path, "repair", "--all", "--actor", "1").exit_code == 0


def test_sync_identity_conflict_exits_nonzero(tmp_path, conn, db_path, make_template):
    template_id, _ = make_template()
    path = _sync_file(tmp_path, template_id)
    assert _run(db_path, "sync", "--input", path, "--actor", "1").exit_code == 0
    result = _run(db_path, "sync", "--input", path, "--actor", "1")
    assert result.exit_code == 1
