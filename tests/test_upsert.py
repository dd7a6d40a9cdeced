import logging

from study_sync.upsert import SITES, VISIT_DEFINITIONS, upsert_entity, upsert_record, upsert_records
from study_sync.web.db import SchemaCapabilities, _connect
from study_sync.web.initialize_database import _init_db


def _study(conn, identifier="S-UP"):
    cur = conn.cursor()
    cur.execute(
        "INSERT INTO study (unique_identifier, name) VALUES (?,?)", (identifier, identifier)
    )
    return cur.lastrowid


def _visit(conn, visit_id):
    cur = conn.cursor()
    cur.execute(
        "SELECT study_id, name, ordinal, owner_id, update_id, created_at, updated_at FROM visit_definition WHERE id=?",
        (visit_id,),
    )
    return cur.fetchone()


def test_insert_then_update_in_place(conn):
    study_id = _study(conn)
    caps = SchemaCapabilities.load(conn)
    vid = upsert_record(conn, VISIT_DEFINITIONS, study_id, {"name": "Screening", "ordinal": 1}, 7, caps)
    row = _visit(conn, vid)
    assert row[0] == study_id and row[1] == "Screening"
    assert row[3] == 7 and row[5] is not None
    assert row[4] is None and row[6] is None

    same = upsert_record(conn, VISIT_DEFINITIONS, study_id, {"id": vid, "ordinal": 4}, 8, caps)
    assert same == vid
    row = _visit(conn, vid)
    # only supplied columns change
    assert row[1] == "Screening" and row[2] == 4
    assert row[4] == 8 and row[6] is not None


def test_unknown_id_is_inserted_as_new_with_warning(conn, caplog):
    study_id = _study(conn)
    caps = SchemaCapabilities.load(conn)
    caplog.set_level(logging.WARNING)
    new_id = upsert_record(conn, VISIT_DEFINITIONS, study_id, {"id": 9999, "name": "Ghost"}, 1, caps)
    assert new_id != 9999
    assert _visit(conn, new_id)[1] == "Ghost"
    assert any("9999" in r.getMessage() for r in caplog.records)


def test_id_of_another_parent_is_not_updated(conn):
    s1 = _study(conn, "S-A")
    s2 = _study(conn, "S-B")
    caps = SchemaCapabilities.load(conn)
    vid = upsert_record(conn, VISIT_DEFINITIONS, s1, {"name": "V1"}, 1, caps)
    other = upsert_record(conn, VISIT_DEFINITIONS, s2, {"id": vid, "name": "Hijack"}, 1, caps)
    assert other != vid
    assert _visit(conn, vid)[1] == "V1"
    assert _visit(conn, other)[0] == s2


def test_upsert_records_preserves_input_order(conn):
    study_id = _study(conn)
    caps = SchemaCapabilities.load(conn)
    existing = upsert_record(conn, SITES, study_id, {"unique_identifier": "SITE-1", "name": "One"}, 1, caps)
    ids = upsert_records(
        conn,
        SITES,
        study_id,
        [
            {"unique_identifier": "SITE-0", "name": "Zero"},
            {"id": existing, "name": "One (renamed)"},
            {"unique_identifier": "SITE-2", "name": "Two"},
        ],
        1,
        caps,
    )
    assert ids[1] == existing
    assert len(set(ids)) == 3
    cur = conn.cursor()
    cur.execute("SELECT name FROM site WHERE id=?", (existing,))
    assert cur.fetchone()[0] == "One (renamed)"


def test_outcome_carries_before_and_after(conn):
    study_id = _study(conn)
    caps = SchemaCapabilities.load(conn)
    created = upsert_entity(conn, VISIT_DEFINITIONS, study_id, {"name": "V"}, 1, caps)
    assert created.action == "create" and created.before is None
    assert created.after["name"] == "V"
    updated = upsert_entity(conn, VISIT_DEFINITIONS, study_id, {"id": created.id, "name": "W"}, 1, caps)
    assert updated.action == "update"
    assert updated.before["name"] == "V" and updated.after["name"] == "W"


def test_columns_missing_from_schema_are_skipped(tmp_path):
    # base schema only: estimated_duration_hours is added by a migration
    c = _connect(str(tmp_path / "bare.db"))
    _init_db(c)
    try:
        study_id = _study(c)
        caps = SchemaCapabilities.load(c)
        assert not caps.has("visit_definition", "estimated_duration_hours")
        vid = upsert_record(
            c,
            VISIT_DEFINITIONS,
            study_id,
            {"name": "Baseline", "estimated_duration_hours": 2.5},
            1,
            caps,
        )
        assert _visit(c, vid)[1] == "Baseline"
    finally:
        c.close()
