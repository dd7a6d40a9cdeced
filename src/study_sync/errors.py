"""Exception types raised by the study_sync core.

The web layer translates these into HTTP responses; the CLI prints them.
"""


class StudySyncError(Exception):
    """Base class for all core errors."""


class IdentityConflictError(StudySyncError):
    """Duplicate or immutable study unique identifier."""


class StudyNotFoundError(StudySyncError):
    def __init__(self, study_id: int):
        super().__init__(f"Study {study_id} not found")
        self.study_id = study_id


class EntityNotFoundError(StudySyncError):
    def __init__(self, entity_type: str, entity_id):
        super().__init__(f"{entity_type} {entity_id} not found")
        self.entity_type = entity_type
        self.entity_id = entity_id


class AuditWriteError(StudySyncError):
    """The primary record's own audit entry could not be written."""


class SnapshotBuildError(StudySyncError):
    """Referenced template or version is missing or unusable."""
