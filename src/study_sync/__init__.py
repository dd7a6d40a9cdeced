"""study_sync package initialization.

Public API surface:
 - synchronize_study: create/update a study definition and its nested records
 - resolve_default_version: newest available version of a form template
 - build_snapshot: ordered visible field list of a template version
 - verify_form_integrity / repair_missing_snapshots: snapshot reconciliation
 - rebuild_all_snapshots: bulk discard-and-regenerate maintenance tool
"""
from .parameters import normalize_parameters
from .rebuild import rebuild_all_snapshots
from .reconcile import repair_missing_snapshots, verify_form_integrity
from .snapshot import build_snapshot, resolve_default_version
from .synchronizer import synchronize_study

__all__ = [
    "normalize_parameters",
    "synchronize_study",
    "resolve_default_version",
    "build_snapshot",
    "verify_form_integrity",
    "repair_missing_snapshots",
    "rebuild_all_snapshots",
]
