"""Command-line interface for study_sync using Click.

Commands:
  init-db            -> Create / migrate the SQLite schema
  sync               -> Create or update a study definition from a JSON file
  verify             -> Print a subject's snapshot reconciliation report
  repair             -> Create missing form instances and snapshots
  rebuild-snapshots  -> Discard and regenerate every form snapshot

Usage examples:
  study-sync --db study_sync.db init-db
  study-sync sync --input files/study.json --actor 1
  study-sync verify --subject 12
  study-sync repair --all --actor 1
  study-sync rebuild-snapshots --actor 1 --yes
"""

from __future__ import annotations

import json
import logging
import sys
from typing import Optional

import click
import pandas as pd

from .errors import StudySyncError
from .rebuild import rebuild_all_snapshots
from .reconcile import repair_all_subjects, repair_missing_snapshots, verify_form_integrity
from .synchronizer import synchronize_study
from .web.db import _connect
from .web.initialize_database import _init_db
from .web.migrate_database import run_migrations

ENTRY_COLUMNS = [
    "visit_instance_id",
    "form_assignment_id",
    "classification",
    "form_instance_id",
    "snapshot_id",
    "expected_field_count",
    "snapshot_field_count",
    "detail",
]

# --------------------- CLI group ---------------------


@click.group()
@click.option("--verbose", is_flag=True, help="Enable verbose logging (DEBUG).")
@click.option(
    "--db",
    "db_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="SQLite database path (defaults to STUDY_SYNC_DB).",
)
@click.version_option("0.1.0")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, db_path: Optional[str]):
    """study_sync CLI."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="[%(levelname)s] %(message)s")
    logging.getLogger("study_sync").setLevel(level)
    logging.debug("Verbose logging enabled." if verbose else "Logging level INFO.")
    ctx.obj = {"db_path": db_path}


def _open(ctx: click.Context):
    return _connect(ctx.obj["db_path"])


# --------------------- init-db ---------------------


@cli.command("init-db")
@click.pass_context
def cmd_init_db(ctx: click.Context):
    """Create tables and apply column migrations."""
    conn = _open(ctx)
    try:
        _init_db(conn)
        run_migrations(conn)
    finally:
        conn.close()
    click.echo("Database initialized.")


# --------------------- sync ---------------------


@cli.command("sync")
@click.option(
    "--input",
    "input_json",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="Study definition JSON path.",
)
@click.option("--actor", required=True, type=int, help="Acting user id.")
@click.pass_context
def cmd_sync(ctx: click.Context, input_json: str, actor: int):
    """Create (no id) or update (id present) a study definition."""
    with open(input_json, "r", encoding="utf-8") as f:
        definition = json.load(f)
    conn = _open(ctx)
    try:
        result = synchronize_study(conn, definition, actor)
    except (StudySyncError, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        conn.close()
    click.echo(f"{result.message} (study id {result.study_id})")
    for w in result.warnings:
        click.echo(f" - [{w.step}] {w.message}")


# --------------------- verify ---------------------


@cli.command("verify")
@click.option("--subject", "subject_id", required=True, type=int, help="Subject id.")
@click.pass_context
def cmd_verify(ctx: click.Context, subject_id: int):
    """Classify a subject's forms as consistent, missing or stale."""
    conn = _open(ctx)
    try:
        report = verify_form_integrity(conn, subject_id)
    finally:
        conn.close()
    if report is None:
        click.echo(f"Subject {subject_id} not found", err=True)
        sys.exit(1)
    data = report.to_dict()
    df = pd.DataFrame(data["entries"], columns=ENTRY_COLUMNS)
    if df.empty:
        click.echo("No expected forms for this subject.")
    else:
        click.echo(df.to_string(index=False))
    summary = data["summary"]
    click.echo(
        f"consistent={summary['consistent']} missing={summary['missing']} "
        f"stale={summary['stale']} orphans={summary['orphans']}"
    )
    if not summary["healthy"]:
        sys.exit(2)


# --------------------- repair ---------------------


@cli.command("repair")
@click.option("--subject", "subject_id", type=int, default=None, help="Subject id.")
@click.option("--all", "all_subjects", is_flag=True, help="Repair every subject.")
@click.option("--actor", required=True, type=int, help="Acting user id.")
@click.pass_context
def cmd_repair(
    ctx: click.Context, subject_id: Optional[int], all_subjects: bool, actor: int
):
    """Create missing form instances and snapshots. Stale snapshots are reported only."""
    if (subject_id is None) == (not all_subjects):
        raise click.UsageError("Pass exactly one of --subject or --all")
    conn = _open(ctx)
    try:
        if all_subjects:
            results = repair_all_subjects(conn, actor)
        else:
            results = {subject_id: repair_missing_snapshots(conn, subject_id, actor)}
    finally:
        conn.close()
    failed = False
    for sid, result in results.items():
        click.echo(f"Subject {sid}: repaired {result.repaired}")
        for err in result.errors:
            failed = True
            click.echo(f" - {err}", err=True)
    if failed:
        sys.exit(1)


# --------------------- rebuild-snapshots ---------------------


@cli.command("rebuild-snapshots")
@click.option("--actor", required=True, type=int, help="Acting user id.")
@click.option("--yes", is_flag=True, help="Do not prompt for confirmation.")
@click.pass_context
def cmd_rebuild(ctx: click.Context, actor: int, yes: bool):
    """Discard every form snapshot and regenerate one per active form instance."""
    if not yes:
        click.confirm(
            "This deletes all form snapshots, including entered answers. Continue?",
            abort=True,
        )
    conn = _open(ctx)
    try:
        report = rebuild_all_snapshots(conn, actor)
    finally:
        conn.close()
    click.echo(f"Discarded {report.discarded} snapshots, regenerated {report.regenerated}.")
    df = report.subject_frame()
    if not df.empty:
        click.echo(df.to_string(index=False))
    for err in report.errors:
        click.echo(f" - {err}", err=True)
    if report.errors:
        sys.exit(1)


# --------------------- entry ---------------------


def main():  # pragma: no cover
    cli()


if __name__ == "__main__":  # pragma: no cover
    main()
