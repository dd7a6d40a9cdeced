import json
import logging

import pytest

from study_sync.errors import SnapshotBuildError
from study_sync.forms import (
    add_template_field,
    create_form_template,
    create_template_version,
    set_version_status,
)
from study_sync.snapshot import (
    build_snapshot,
    fields_to_json,
    parse_options,
    resolve_default_version,
)


def test_fields_ordered_by_section_then_ordinal_and_hidden_excluded(conn):
    template_id = create_form_template(conn, "Labs")
    version_id = create_template_version(conn, template_id, "v1")
    add_template_field(conn, version_id, "alt", section="Chemistry", section_ordinal=2, ordinal=1)
    add_template_field(conn, version_id, "wbc", section="Hematology", section_ordinal=1, ordinal=2)
    add_template_field(conn, version_id, "hgb", section="Hematology", section_ordinal=1, ordinal=1)
    add_template_field(conn, version_id, "internal_flag", show_field=False)
    fields = build_snapshot(conn, version_id)
    assert [f.name for f in fields] == ["hgb", "wbc", "alt"]
    assert fields[0].section == "Hematology"


def test_equal_ordinals_fall_back_to_field_id(conn):
    template_id = create_form_template(conn, "Tie")
    version_id = create_template_version(conn, template_id, "v1")
    first = add_template_field(conn, version_id, "b", ordinal=1)
    second = add_template_field(conn, version_id, "a", ordinal=1)
    assert [f.field_id for f in build_snapshot(conn, version_id)] == [first, second]


def test_options_parsing():
    assert parse_options("Yes,No", "1,0") == [
        {"text": "Yes", "value": "1"},
        {"text": "No", "value": "0"},
    ]
    assert parse_options("Mild, moderate\nSevere", None) == [
        {"text": "Mild, moderate", "value": "Mild, moderate"},
        {"text": "Severe", "value": "Severe"},
    ]
    # fewer values than labels: remaining labels are their own values
    assert parse_options("A,B,C", "1") == [
        {"text": "A", "value": "1"},
        {"text": "B", "value": "B"},
        {"text": "C", "value": "C"},
    ]
    assert parse_options(None, "1,2") == []


def test_build_is_deterministic(conn, make_template):
    _, version_id = make_template(fields=("weight", "height", "bmi"))
    add_template_field(conn, version_id, "smoker", data_type="BL", options_text="Yes,No", options_values="Y,N")
    first = fields_to_json(build_snapshot(conn, version_id))
    second = fields_to_json(build_snapshot(conn, version_id))
    assert first == second
    assert len(json.loads(first)) == 4


def test_missing_version_raises(conn):
    with pytest.raises(SnapshotBuildError):
        build_snapshot(conn, 9876)


def test_empty_version_warns(conn, caplog):
    template_id = create_form_template(conn, "Empty")
    version_id = create_template_version(conn, template_id, "v1")
    caplog.set_level(logging.WARNING)
    assert build_snapshot(conn, version_id) == []
    assert any("no visible fields" in r.getMessage() for r in caplog.records)


def test_resolve_default_version(conn):
    template_id = create_form_template(conn, "AE")
    assert resolve_default_version(conn, template_id) is None
    v1 = create_template_version(conn, template_id, "v1")
    v2 = create_template_version(conn, template_id, "v2")
    assert resolve_default_version(conn, template_id) == v2
    set_version_status(conn, v2, "removed")
    assert resolve_default_version(conn, template_id) == v1
