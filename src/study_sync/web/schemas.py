from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class FormAssignmentInput(BaseModel):
    id: Optional[int] = None
    form_template_id: Optional[int] = None
    default_version_id: Optional[int] = None
    required: bool = False
    double_entry: bool = False
    electronic_signature: bool = False
    hidden: bool = False
    ordinal: int = 1
    status: Optional[str] = None


class VisitDefinitionInput(BaseModel):
    id: Optional[int] = None
    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    type: str = "scheduled"
    ordinal: int = 1
    repeating: bool = False
    schedule_day: Optional[int] = None
    min_day: Optional[int] = None
    max_day: Optional[int] = None
    estimated_duration_hours: Optional[float] = None
    status: Optional[str] = None
    form_assignments: List[FormAssignmentInput] = []


class GroupInput(BaseModel):
    id: Optional[int] = None
    name: str
    description: Optional[str] = None


class GroupClassInput(BaseModel):
    id: Optional[int] = None
    name: str
    type_name: str = "Arm"
    custom_type_name: Optional[str] = None
    subject_assignment: str = "optional"
    status: Optional[str] = None
    groups: List[GroupInput] = []


class SiteInput(BaseModel):
    id: Optional[int] = None
    unique_identifier: str
    name: str
    principal_investigator: Optional[str] = None
    expected_total_enrollment: Optional[int] = None
    facility_name: Optional[str] = None
    facility_city: Optional[str] = None
    facility_country: Optional[str] = None
    status: Optional[str] = None


class StudyDefinitionInput(BaseModel):
    id: Optional[int] = None
    unique_identifier: Optional[str] = None
    name: Optional[str] = None
    official_title: Optional[str] = None
    secondary_identifier: Optional[str] = None
    summary: Optional[str] = None
    principal_investigator: Optional[str] = None
    sponsor: Optional[str] = None
    phase: Optional[str] = None
    protocol_type: Optional[str] = None
    expected_total_enrollment: Optional[int] = None
    date_planned_start: Optional[str] = None
    date_planned_end: Optional[str] = None
    therapeutic_area: Optional[str] = None
    indication: Optional[str] = None
    nct_number: Optional[str] = None
    irb_number: Optional[str] = None
    protocol_version: Optional[str] = None
    parameters: Optional[Dict[str, Any]] = None
    visit_definitions: Optional[List[VisitDefinitionInput]] = None
    group_classes: Optional[List[GroupClassInput]] = None
    sites: Optional[List[SiteInput]] = None

    def to_definition(self) -> dict:
        # Only fields the caller actually sent; absent collections stay untouched.
        return self.model_dump(exclude_unset=True)


class StepWarningOut(BaseModel):
    step: str
    message: str
    failed: int
    attempted: int


class SyncResultOut(BaseModel):
    success: bool
    study_id: Optional[int] = None
    message: str
    warnings: List[StepWarningOut] = []


class RepairResultOut(BaseModel):
    repaired: int
    errors: List[str] = []
