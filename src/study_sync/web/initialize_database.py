from typing import Optional

from .db import _connect


def _init_db(conn=None, db_path: Optional[str] = None):
    own = conn is None
    if own:
        conn = _connect(db_path)
    cur = conn.cursor()
    # Study definition root. Optional regulatory columns are added by migrate_database.
    cur.execute(
        """CREATE TABLE IF NOT EXISTS study (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            unique_identifier TEXT NOT NULL UNIQUE,
            name TEXT NOT NULL,
            official_title TEXT,
            secondary_identifier TEXT,
            summary TEXT,
            principal_investigator TEXT,
            sponsor TEXT,
            phase TEXT,
            protocol_type TEXT,
            expected_total_enrollment INTEGER,
            date_planned_start TEXT,
            date_planned_end TEXT,
            status TEXT NOT NULL DEFAULT 'available', -- available|removed
            oc_oid TEXT,
            owner_id INTEGER,
            update_id INTEGER,
            created_at TEXT,
            updated_at TEXT
        )"""
    )
    # Visit (event) templates. Ordinals need not be unique or contiguous.
    cur.execute(
        """CREATE TABLE IF NOT EXISTS visit_definition (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            study_id INTEGER NOT NULL REFERENCES study(id),
            name TEXT NOT NULL,
            description TEXT,
            category TEXT,
            type TEXT NOT NULL DEFAULT 'scheduled', -- scheduled|unscheduled|common
            ordinal INTEGER NOT NULL DEFAULT 1,
            repeating INTEGER NOT NULL DEFAULT 0,
            schedule_day INTEGER,
            min_day INTEGER,
            max_day INTEGER,
            status TEXT NOT NULL DEFAULT 'available',
            oc_oid TEXT,
            owner_id INTEGER,
            update_id INTEGER,
            created_at TEXT,
            updated_at TEXT
        )"""
    )
    # Form library: template -> versions -> fields
    cur.execute(
        """CREATE TABLE IF NOT EXISTS form_template (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            description TEXT,
            status TEXT NOT NULL DEFAULT 'available',
            oc_oid TEXT,
            owner_id INTEGER,
            created_at TEXT
        )"""
    )
    cur.execute(
        """CREATE TABLE IF NOT EXISTS form_template_version (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            form_template_id INTEGER NOT NULL REFERENCES form_template(id),
            name TEXT NOT NULL,
            description TEXT,
            status TEXT NOT NULL DEFAULT 'available', -- available|removed
            owner_id INTEGER,
            created_at TEXT
        )"""
    )
    cur.execute(
        """CREATE TABLE IF NOT EXISTS template_field (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            form_template_version_id INTEGER NOT NULL REFERENCES form_template_version(id),
            name TEXT NOT NULL,
            label TEXT,
            data_type TEXT NOT NULL DEFAULT 'ST',
            required INTEGER NOT NULL DEFAULT 0,
            options_text TEXT,
            options_values TEXT,
            units TEXT,
            section TEXT,
            section_ordinal INTEGER NOT NULL DEFAULT 0,
            ordinal INTEGER NOT NULL DEFAULT 1,
            show_field INTEGER NOT NULL DEFAULT 1
        )"""
    )
    # Binding of a form template to a visit definition
    cur.execute(
        """CREATE TABLE IF NOT EXISTS form_assignment (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            visit_definition_id INTEGER NOT NULL REFERENCES visit_definition(id),
            study_id INTEGER NOT NULL REFERENCES study(id),
            form_template_id INTEGER NOT NULL REFERENCES form_template(id),
            required INTEGER NOT NULL DEFAULT 0,
            double_entry INTEGER NOT NULL DEFAULT 0,
            electronic_signature INTEGER NOT NULL DEFAULT 0,
            hidden INTEGER NOT NULL DEFAULT 0,
            ordinal INTEGER NOT NULL DEFAULT 1,
            default_version_id INTEGER REFERENCES form_template_version(id),
            status TEXT NOT NULL DEFAULT 'available',
            owner_id INTEGER,
            update_id INTEGER,
            created_at TEXT,
            updated_at TEXT
        )"""
    )
    # Randomization / stratification categories and their values
    cur.execute(
        """CREATE TABLE IF NOT EXISTS group_class (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            study_id INTEGER NOT NULL REFERENCES study(id),
            name TEXT NOT NULL,
            type_name TEXT NOT NULL DEFAULT 'Arm',
            custom_type_name TEXT,
            subject_assignment TEXT NOT NULL DEFAULT 'optional', -- required|optional
            status TEXT NOT NULL DEFAULT 'available',
            owner_id INTEGER,
            update_id INTEGER,
            created_at TEXT,
            updated_at TEXT,
            UNIQUE (study_id, name)
        )"""
    )
    cur.execute(
        """CREATE TABLE IF NOT EXISTS study_group (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            group_class_id INTEGER NOT NULL REFERENCES group_class(id),
            name TEXT NOT NULL,
            description TEXT,
            owner_id INTEGER,
            update_id INTEGER,
            created_at TEXT,
            updated_at TEXT
        )"""
    )
    cur.execute(
        """CREATE TABLE IF NOT EXISTS site (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            study_id INTEGER NOT NULL REFERENCES study(id),
            unique_identifier TEXT NOT NULL UNIQUE,
            name TEXT NOT NULL,
            principal_investigator TEXT,
            expected_total_enrollment INTEGER,
            facility_name TEXT,
            facility_city TEXT,
            facility_country TEXT,
            status TEXT NOT NULL DEFAULT 'available',
            owner_id INTEGER,
            update_id INTEGER,
            created_at TEXT,
            updated_at TEXT
        )"""
    )
    # One row per canonical parameter key per study
    cur.execute(
        """CREATE TABLE IF NOT EXISTS study_parameter_value (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            study_id INTEGER NOT NULL REFERENCES study(id),
            parameter TEXT NOT NULL,
            value TEXT,
            UNIQUE (study_id, parameter)
        )"""
    )
    # Subject-facing instances
    cur.execute(
        """CREATE TABLE IF NOT EXISTS subject (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            study_id INTEGER NOT NULL REFERENCES study(id),
            site_id INTEGER REFERENCES site(id),
            label TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'available',
            enrolled_at TEXT,
            owner_id INTEGER,
            UNIQUE (study_id, label)
        )"""
    )
    cur.execute(
        """CREATE TABLE IF NOT EXISTS visit_instance (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            subject_id INTEGER NOT NULL REFERENCES subject(id),
            visit_definition_id INTEGER NOT NULL REFERENCES visit_definition(id),
            sample_ordinal INTEGER NOT NULL DEFAULT 1,
            status TEXT NOT NULL DEFAULT 'scheduled', -- scheduled|not_scheduled|data_entry_started|completed|removed
            scheduled_date TEXT,
            is_unscheduled INTEGER NOT NULL DEFAULT 0,
            location TEXT,
            owner_id INTEGER,
            created_at TEXT
        )"""
    )
    # Maintained pairs: one form instance per visit instance x form assignment
    cur.execute(
        """CREATE TABLE IF NOT EXISTS form_instance (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            visit_instance_id INTEGER NOT NULL REFERENCES visit_instance(id),
            form_assignment_id INTEGER NOT NULL REFERENCES form_assignment(id),
            form_template_version_id INTEGER REFERENCES form_template_version(id),
            subject_id INTEGER NOT NULL REFERENCES subject(id),
            completion_status TEXT NOT NULL DEFAULT 'not_started',
            status TEXT NOT NULL DEFAULT 'available',
            interviewer_name TEXT,
            interview_date TEXT,
            owner_id INTEGER,
            created_at TEXT,
            UNIQUE (visit_instance_id, form_assignment_id)
        )"""
    )
    cur.execute(
        """CREATE TABLE IF NOT EXISTS form_snapshot (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            form_instance_id INTEGER NOT NULL UNIQUE REFERENCES form_instance(id),
            visit_instance_id INTEGER NOT NULL REFERENCES visit_instance(id),
            subject_id INTEGER NOT NULL REFERENCES subject(id),
            form_template_id INTEGER NOT NULL,
            form_template_version_id INTEGER NOT NULL,
            form_name TEXT,
            field_count INTEGER NOT NULL DEFAULT 0,
            structure_json TEXT NOT NULL,
            data_json TEXT NOT NULL DEFAULT '{}',
            completion_status TEXT NOT NULL DEFAULT 'not_started',
            ordinal INTEGER,
            created_by INTEGER,
            updated_by INTEGER,
            created_at TEXT,
            updated_at TEXT
        )"""
    )
    # Append-only audit trail
    cur.execute(
        """CREATE TABLE IF NOT EXISTS audit_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            study_id INTEGER,
            actor_id INTEGER,
            performed_at TEXT NOT NULL,
            entity_type TEXT NOT NULL,
            entity_id INTEGER,
            action TEXT NOT NULL, -- create|update|archive|remove|delete|repair|rebuild
            before_json TEXT,
            after_json TEXT,
            reason TEXT
        )"""
    )
    cur.execute(
        """CREATE INDEX IF NOT EXISTS idx_audit_log_study ON audit_log(study_id, entity_type)"""
    )
    if own:
        conn.close()
