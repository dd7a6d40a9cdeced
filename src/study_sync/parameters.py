"""Study parameter normalization.

Callers (UI forms, API clients, older integrations) spell the same study
configuration keys in several ways. Everything is rewritten to one canonical
key/value form before it reaches ``study_parameter_value``:

 - combined keys win over their split components
   (``subjectIdPrefixSuffix`` over ``subjectIdPrefix`` + ``subjectIdSuffix``)
 - split components alone are joined with ``|``
 - alias spellings and case variants collapse to the canonical key
 - boolean / tri-state / enumerated values are mapped to a fixed vocabulary

Adding a new spelling is a change to the tables below, not to the code.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

COMBINED_DELIMITER = "|"

# canonical key -> alternate spellings accepted from callers
PARAMETER_ALIASES: Dict[str, Tuple[str, ...]] = {
    "personIdShownOnCRF": ("personIdShownOnCrf", "personIDShownOnCRF"),
    "collectDob": ("collectDOB", "dobCollection"),
    "subjectIdGeneration": ("subjectIDGeneration",),
    "subjectPersonIdRequired": ("personIdRequired",),
    "adminForcedReasonForChange": ("forcedReasonForChange",),
}

# canonical combined key -> split component keys, in join order
COMBINED_PARAMETERS: Dict[str, Tuple[str, ...]] = {
    "subjectIdPrefixSuffix": ("subjectIdPrefix", "subjectIdSuffix"),
}

TRI_STATE_PARAMETERS = frozenset(
    {
        "subjectPersonIdRequired",
        "interviewerNameRequired",
        "interviewDateRequired",
        "eventLocationRequired",
    }
)
TRI_STATE_VALUES = {
    "required": "required",
    "true": "required",
    "optional": "optional",
    "not_used": "not_used",
    "not used": "not_used",
    "false": "not_used",
    "": "not_used",
}

BOOLEAN_PARAMETERS = frozenset(
    {
        "genderRequired",
        "discrepancyManagement",
        "interviewerNameEditable",
        "interviewDateEditable",
        "personIdShownOnCRF",
        "secondaryLabelViewable",
        "adminForcedReasonForChange",
        "allowAdministrativeEditing",
    }
)

ENABLED_PARAMETERS = frozenset({"participantPortal", "randomization"})

COLLECT_DOB_VALUES = {
    "1": "1",
    "required": "1",
    "full": "1",
    "2": "2",
    "year_only": "2",
    "3": "3",
    "not_used": "3",
}

ID_GENERATION_VALUES = {
    "manual": "manual",
    "auto_editable": "auto_editable",
    "auto editable": "auto_editable",
    "auto_non_editable": "auto_non_editable",
    "auto non-editable": "auto_non_editable",
}

# Written for every new study; callers' values are applied on top.
DEFAULT_PARAMETERS: Dict[str, str] = {
    "collectDob": "1",
    "genderRequired": "true",
    "subjectPersonIdRequired": "optional",
    "subjectIdGeneration": "manual",
    "subjectIdPrefixSuffix": "",
    "discrepancyManagement": "true",
    "interviewerNameRequired": "required",
    "interviewerNameDefault": "blank",
    "interviewerNameEditable": "true",
    "interviewDateRequired": "required",
    "interviewDateDefault": "eventDate",
    "interviewDateEditable": "true",
    "personIdShownOnCRF": "false",
    "secondaryLabelViewable": "false",
    "adminForcedReasonForChange": "true",
    "eventLocationRequired": "not_used",
    "participantPortal": "disabled",
    "randomization": "disabled",
    "allowAdministrativeEditing": "true",
}

CANONICAL_PARAMETERS = frozenset(DEFAULT_PARAMETERS) | frozenset(PARAMETER_ALIASES)


def _build_key_lookup() -> Dict[str, str]:
    lookup = {}
    for canonical in CANONICAL_PARAMETERS:
        lookup[canonical.lower()] = canonical
    for canonical, aliases in PARAMETER_ALIASES.items():
        for alias in aliases:
            lookup[alias.lower()] = canonical
    return lookup


_KEY_LOOKUP = _build_key_lookup()
_SPLIT_KEYS = {
    k.lower(): combined
    for combined, parts in COMBINED_PARAMETERS.items()
    for k in parts
}


def canonical_key(key: str) -> Optional[str]:
    """Canonical name for a caller-supplied key, or None if it is not a known parameter."""
    return _KEY_LOOKUP.get(key.lower())


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def normalize_value(key: str, value: Any) -> str:
    """Map a value for a canonical key onto its fixed vocabulary.

    Unrecognized literals pass through unchanged.
    """
    if key in TRI_STATE_PARAMETERS:
        if value is None:
            return "not_used"
        text = _as_text(value)
        return TRI_STATE_VALUES.get(text.strip().lower(), text)
    if key in BOOLEAN_PARAMETERS:
        text = _as_text(value)
        lowered = text.strip().lower()
        if lowered in ("true", "false"):
            return lowered
        return text
    if key in ENABLED_PARAMETERS:
        if isinstance(value, bool):
            return "enabled" if value else "disabled"
        text = _as_text(value)
        lowered = text.strip().lower()
        if lowered in ("true", "false"):
            return "enabled" if lowered == "true" else "disabled"
        return text
    if key == "collectDob":
        if isinstance(value, bool):
            return "1" if value else "3"
        text = _as_text(value)
        return COLLECT_DOB_VALUES.get(text.strip().lower(), text)
    if key == "subjectIdGeneration":
        text = _as_text(value)
        return ID_GENERATION_VALUES.get(text.strip().lower(), text)
    return _as_text(value)


def normalize_parameters(raw: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    """Rewrite a caller-supplied parameter map into canonical key/value form."""
    if not raw:
        return {}
    result: Dict[str, str] = {}
    # canonical -> (exact spelling used?, value)
    chosen: Dict[str, Tuple[bool, Any]] = {}
    split_parts: Dict[str, Dict[str, Any]] = {}
    for key, value in raw.items():
        combined = _SPLIT_KEYS.get(key.lower())
        if combined is not None:
            split_parts.setdefault(combined, {})[key.lower()] = value
            continue
        canonical = canonical_key(key)
        if canonical is None:
            result[key] = _as_text(value)
            continue
        exact = key == canonical
        if canonical in chosen:
            previous_exact = chosen[canonical][0]
            if previous_exact or not exact:
                logger.debug("Ignoring duplicate spelling %s for %s", key, canonical)
                continue
        chosen[canonical] = (exact, value)
    for canonical, (_exact, value) in chosen.items():
        result[canonical] = normalize_value(canonical, value)
    for combined, parts in COMBINED_PARAMETERS.items():
        if combined in chosen or combined not in split_parts:
            continue
        supplied = split_parts[combined]
        result[combined] = COMBINED_DELIMITER.join(
            _as_text(supplied.get(p.lower())) for p in parts
        )
    return result


@dataclass
class StudyParameterConfig:
    collect_dob: str = "required"  # required|year_only|not_used
    discrepancy_management: bool = True
    subject_person_id_required: str = "optional"
    gender_required: bool = True
    subject_id_generation: str = "manual"
    subject_id_prefix: str = ""
    subject_id_suffix: str = ""
    interviewer_name_required: str = "required"
    interviewer_name_default: str = "blank"
    interviewer_name_editable: bool = True
    interview_date_required: str = "required"
    interview_date_default: str = "eventDate"
    interview_date_editable: bool = True
    person_id_shown_on_crf: bool = False
    secondary_label_viewable: bool = False
    admin_forced_reason_for_change: bool = True
    event_location_required: str = "not_used"
    participant_portal: bool = False
    randomization: bool = False


def _tri_state(value: Optional[str]) -> str:
    return TRI_STATE_VALUES.get((value or "").strip().lower(), "not_used")


def split_prefix_suffix(value: Optional[str]) -> Tuple[str, str]:
    prefix, _, suffix = (value or "").partition(COMBINED_DELIMITER)
    return prefix, suffix


def parse_parameter_config(values: Mapping[str, str]) -> StudyParameterConfig:
    """Typed view over stored parameter values; missing keys fall back to defaults."""
    v = {**DEFAULT_PARAMETERS, **values}
    dob = {"1": "required", "2": "year_only"}.get(v["collectDob"], "not_used")
    prefix, suffix = split_prefix_suffix(v["subjectIdPrefixSuffix"])
    return StudyParameterConfig(
        collect_dob=dob,
        discrepancy_management=v["discrepancyManagement"] == "true",
        subject_person_id_required=_tri_state(v["subjectPersonIdRequired"]),
        gender_required=v["genderRequired"] in ("true", "required"),
        subject_id_generation=ID_GENERATION_VALUES.get(
            v["subjectIdGeneration"], "manual"
        ),
        subject_id_prefix=prefix,
        subject_id_suffix=suffix,
        interviewer_name_required=_tri_state(v["interviewerNameRequired"]),
        interviewer_name_default="blank"
        if v["interviewerNameDefault"] == "blank"
        else "user_name",
        interviewer_name_editable=v["interviewerNameEditable"] in ("true", "editable"),
        interview_date_required=_tri_state(v["interviewDateRequired"]),
        interview_date_default="blank"
        if v["interviewDateDefault"] == "blank"
        else "eventDate",
        interview_date_editable=v["interviewDateEditable"] in ("true", "editable"),
        person_id_shown_on_crf=v["personIdShownOnCRF"] == "true",
        secondary_label_viewable=v["secondaryLabelViewable"] == "true",
        admin_forced_reason_for_change=v["adminForcedReasonForChange"] == "true",
        event_location_required=_tri_state(v["eventLocationRequired"]),
        participant_portal=v["participantPortal"] == "enabled",
        randomization=v["randomization"] == "enabled",
    )


def format_subject_label(prefix_suffix: Optional[str], number: int) -> str:
    """Auto-generated subject label: ``<prefix><number:04d><suffix>``."""
    prefix, suffix = split_prefix_suffix(prefix_suffix)
    if not prefix and not suffix:
        return str(number)
    return f"{prefix}{number:04d}{suffix}"
