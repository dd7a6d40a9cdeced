"""Pytest configuration to isolate tests from the production study database.

Sets STUDY_SYNC_DB environment variable BEFORE importing the application module so
all HTTP test connections use a separate SQLite file. Core tests get a fresh
database per test through the ``conn`` fixture.
"""

import os
from pathlib import Path

import pytest

# Use a test-specific database file in the workspace root
TEST_DB_PATH = Path("study_sync_tests.db").absolute()
# Only set if not already overridden externally
os.environ.setdefault("STUDY_SYNC_DB", str(TEST_DB_PATH))

# Ensure directory exists (for absolute paths inside nested structures)
TEST_DB_PATH.parent.mkdir(parents=True, exist_ok=True)

from study_sync.forms import (  # noqa: E402
    add_template_field,
    create_form_template,
    create_template_version,
)
from study_sync.web.db import _connect  # noqa: E402
from study_sync.web.initialize_database import _init_db  # noqa: E402
from study_sync.web.migrate_database import run_migrations  # noqa: E402


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "study_sync.db")


@pytest.fixture
def conn(db_path):
    c = _connect(db_path)
    _init_db(c)
    run_migrations(c)
    yield c
    c.close()


@pytest.fixture
def make_template(conn):
    """Create a form template with one version; returns (template_id, version_id)."""

    def _make(name="Vitals", fields=("weight", "height"), c=None):
        c = c or conn
        template_id = create_form_template(c, name, actor=1)
        version_id = create_template_version(c, template_id, "v1", actor=1)
        for f in fields:
            add_template_field(c, version_id, f, label=f.title())
        return template_id, version_id

    return _make
