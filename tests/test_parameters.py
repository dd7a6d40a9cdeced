from study_sync.parameters import (
    DEFAULT_PARAMETERS,
    format_subject_label,
    normalize_parameters,
    parse_parameter_config,
)


def test_alias_spelling_collapses_to_canonical_key():
    out = normalize_parameters({"personIdShownOnCrf": True})
    assert out == {"personIdShownOnCRF": "true"}


def test_canonical_spelling_wins_over_alias_in_either_order():
    a = normalize_parameters({"personIdShownOnCrf": False, "personIdShownOnCRF": True})
    b = normalize_parameters({"personIdShownOnCRF": True, "personIdShownOnCrf": False})
    assert a == b == {"personIdShownOnCRF": "true"}


def test_key_case_variants_are_recognized():
    assert normalize_parameters({"PERSONIDSHOWNONCRF": "false"}) == {
        "personIdShownOnCRF": "false"
    }


def test_split_prefix_suffix_is_combined():
    out = normalize_parameters({"subjectIdPrefix": "ABC-", "subjectIdSuffix": "-XYZ"})
    assert out == {"subjectIdPrefixSuffix": "ABC-|-XYZ"}
    assert "subjectIdPrefix" not in out and "subjectIdSuffix" not in out


def test_prefix_only_gets_empty_suffix():
    assert normalize_parameters({"subjectIdPrefix": "ABC-"}) == {
        "subjectIdPrefixSuffix": "ABC-|"
    }


def test_combined_key_wins_over_split_components():
    out = normalize_parameters(
        {"subjectIdPrefix": "X", "subjectIdPrefixSuffix": "P|S", "subjectIdSuffix": "Y"}
    )
    assert out == {"subjectIdPrefixSuffix": "P|S"}


def test_tri_state_values():
    assert normalize_parameters({"eventLocationRequired": True}) == {
        "eventLocationRequired": "required"
    }
    assert normalize_parameters({"eventLocationRequired": False}) == {
        "eventLocationRequired": "not_used"
    }
    assert normalize_parameters({"eventLocationRequired": None}) == {
        "eventLocationRequired": "not_used"
    }
    assert normalize_parameters({"eventLocationRequired": "not_used"}) == {
        "eventLocationRequired": "not_used"
    }
    assert normalize_parameters({"interviewerNameRequired": "optional"}) == {
        "interviewerNameRequired": "optional"
    }


def test_boolean_and_enumerated_values():
    out = normalize_parameters(
        {
            "discrepancyManagement": False,
            "allowAdministrativeEditing": "TRUE",
            "participantPortal": True,
            "randomization": "false",
            "collectDob": "year_only",
            "subjectIdGeneration": "auto non-editable",
        }
    )
    assert out == {
        "discrepancyManagement": "false",
        "allowAdministrativeEditing": "true",
        "participantPortal": "enabled",
        "randomization": "disabled",
        "collectDob": "2",
        "subjectIdGeneration": "auto_non_editable",
    }


def test_unknown_keys_pass_through():
    out = normalize_parameters({"contactEmail": "pi@example.org", "secondaryLabelViewable": True})
    assert out == {"contactEmail": "pi@example.org", "secondaryLabelViewable": "true"}


def test_normalized_output_is_stable_when_normalized_again():
    raw = {
        "personIdShownOnCrf": True,
        "subjectIdPrefix": "ABC-",
        "subjectIdSuffix": "-XYZ",
        "eventLocationRequired": True,
        "collectDob": 1,
        "contactEmail": "x@y.z",
    }
    once = normalize_parameters(raw)
    assert normalize_parameters(once) == once


def test_empty_input():
    assert normalize_parameters(None) == {}
    assert normalize_parameters({}) == {}


def test_defaults_and_typed_config():
    assert len(DEFAULT_PARAMETERS) == 19
    cfg = parse_parameter_config({})
    assert cfg.collect_dob == "required"
    assert cfg.subject_id_generation == "manual"
    assert cfg.interviewer_name_required == "required"
    assert cfg.event_location_required == "not_used"
    assert cfg.participant_portal is False
    cfg = parse_parameter_config(
        {
            "collectDob": "2",
            "subjectIdPrefixSuffix": "ABC-|-XYZ",
            "subjectIdGeneration": "auto_editable",
            "participantPortal": "enabled",
            "discrepancyManagement": "false",
        }
    )
    assert cfg.collect_dob == "year_only"
    assert (cfg.subject_id_prefix, cfg.subject_id_suffix) == ("ABC-", "-XYZ")
    assert cfg.subject_id_generation == "auto_editable"
    assert cfg.participant_portal is True
    assert cfg.discrepancy_management is False


def test_format_subject_label():
    assert format_subject_label("ABC-|-XYZ", 7) == "ABC-0007-XYZ"
    assert format_subject_label("S|", 3) == "S0003"
    assert format_subject_label("", 12) == "12"
