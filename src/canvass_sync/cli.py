"""canvass_sync.cli

Unified CLI entrypoint for canvass sync operations.

Modes (--mode):
  import      import a voter roster CSV/TSV into the member table (default)
  submit      reconcile one visit submission (JSON file) into visit_event
  rollups     print one page of household rollups as JSON
  household   print the members of one household as JSON
  export      write visit events joined with member snapshots as CSV

Usage (import):
    python -m canvass_sync.cli \\
        --mode import \\
        --db-dsn "$CANVASS_DB_DSN" \\
        --config config/canvass.yml \\
        --csv-path "rawEvidence/precinct_12_roster.csv" \\
        --rejects-path "artifacts/rejects/precinct_12_rejects.csv"

Usage (rollups):
    python -m canvass_sync.cli --mode rollups --status pending --sort street --limit 50
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import click
import psycopg

from canvass_sync.normalize import parse_rfc3339, trim
from canvass_sync.settings import Settings, SettingsValidationError, load_settings
from canvass_sync.shared import (
    ImportParseError,
    NotFoundError,
    RejectWriter,
    ValidationError,
    utc_now_iso,
    write_run_report,
)


def _fatal(run_id: str, message: str) -> None:
    click.echo(f"[{run_id}] FATAL: {message}", err=True)
    sys.exit(1)


def _parse_bound(value: str | None, name: str) -> datetime | None:
    """Accept an RFC 3339 timestamp or a bare YYYY-MM-DD (UTC midnight)."""
    v = trim(value)
    if v is None:
        return None
    ts = parse_rfc3339(v)
    if ts is not None:
        return ts
    try:
        return datetime.strptime(v, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    except ValueError:
        raise ValidationError(f"--{name} must be RFC 3339 or YYYY-MM-DD, got {v!r}")


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


# ---------------------------------------------------------------------------
# Mode runners
# ---------------------------------------------------------------------------

def _run_import_mode(
    conn: psycopg.Connection,
    run_id: str,
    started_at: str,
    settings: Settings,
    csv_path: str | None,
    rejects_path: str,
    reports_dir: str,
    dry_run: bool,
) -> None:
    from canvass_sync.import_members import run_import

    if not csv_path:
        _fatal(run_id, "--csv-path is required for --mode import")
    payload = Path(csv_path).read_bytes()
    rejects = RejectWriter(Path(rejects_path))
    try:
        counters = run_import(conn, payload, settings, rejects=rejects, dry_run=dry_run)
    finally:
        rejects.close()

    report_path = write_run_report(
        run_id, started_at, "import", dry_run,
        {"csv_path": csv_path, "rejects_path": rejects_path},
        counters,
        reports_dir=Path(reports_dir),
    )
    if dry_run:
        click.echo(f"[{run_id}] [dry-run] All changes rolled back.")
    click.echo(
        f"[{run_id}] Done: {counters.total} rows read, "
        f"{counters.inserted} inserted, {counters.updated} updated, "
        f"{counters.rejected} rejected"
    )
    click.echo(f"[{run_id}] Run report: {report_path}")


def _run_submit_mode(
    conn: psycopg.Connection,
    run_id: str,
    settings: Settings,
    submission_path: str | None,
) -> None:
    from canvass_sync.reconcile_events import parse_submission, submit_visit

    if not submission_path:
        _fatal(run_id, "--submission-path is required for --mode submit")
    try:
        body = json.loads(Path(submission_path).read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValidationError(f"submission is not valid JSON: {exc}") from exc
    result = submit_visit(conn, parse_submission(body), settings)
    _echo_json(result.to_dict())


def _run_rollups_mode(
    conn: psycopg.Connection,
    settings: Settings,
    params: dict[str, Any],
) -> None:
    from canvass_sync.rollup import parse_query, query_rollups

    page = query_rollups(conn, parse_query(params, settings), settings)
    _echo_json(page.to_dict())


def _run_household_mode(
    conn: psycopg.Connection,
    run_id: str,
    household_id: str | None,
) -> None:
    from canvass_sync.rollup import household_members

    if not household_id:
        _fatal(run_id, "--household-id is required for --mode household")
    _echo_json({"ok": True, "members": household_members(conn, household_id)})


def _run_export_mode(
    conn: psycopg.Connection,
    run_id: str,
    out_path: str,
    received_from: str | None,
    received_to: str | None,
) -> None:
    from canvass_sync.export_events import write_export

    lo = _parse_bound(received_from, "received-from")
    hi = _parse_bound(received_to, "received-to")
    if out_path == "-":
        count = write_export(conn, sys.stdout, lo, hi)
    else:
        path = Path(out_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", newline="", encoding="utf-8") as fh:
            count = write_export(conn, fh, lo, hi)
        click.echo(f"[{run_id}] Exported {count} events to {path}")


# ---------------------------------------------------------------------------
# Unified CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option(
    "--mode",
    default="import",
    type=click.Choice(["import", "submit", "rollups", "household", "export"]),
    show_default=True,
    help="Operation to run",
)
@click.option("--db-dsn", required=True, envvar="CANVASS_DB_DSN", help="PostgreSQL DSN")
@click.option("--config", "config_path", default=None, type=click.Path(dir_okay=False), help="YAML settings file")
@click.option(
    "--suspect-distance-m",
    default=None,
    type=float,
    envvar="SUSPECT_DISTANCE_M",
    help="Override geofence threshold in meters",
)
# import flags
@click.option("--csv-path", default=None, type=click.Path(), help="[import] Roster CSV/TSV")
@click.option(
    "--rejects-path",
    default="artifacts/rejects/import_rejects.csv",
    show_default=True,
    type=click.Path(),
    help="[import] Rejected-row CSV",
)
@click.option("--reports-dir", default="artifacts/reports", show_default=True, type=click.Path(), help="[import] Run report directory")
# submit flags
@click.option("--submission-path", default=None, type=click.Path(exists=True, dir_okay=False), help="[submit] JSON visit submission")
# rollups flags
@click.option("--search", default=None, help="[rollups] Case-insensitive search text")
@click.option("--status", "status_filter", default="all", show_default=True, help="[rollups] pending|done|all")
@click.option("--sort", "sort_key", default="status", show_default=True, help="[rollups] status|street|name")
@click.option("--limit", default=None, type=int, help="[rollups] Page size (capped)")
@click.option("--cursor", default=None, help="[rollups] Cursor from a previous page")
# household flags
@click.option("--household-id", default=None, help="[household] Household id")
# export flags
@click.option("--out-path", default="-", show_default=True, help="[export] Output CSV path, '-' for stdout")
@click.option("--received-from", default=None, help="[export] Inclusive lower receipt-time bound")
@click.option("--received-to", default=None, help="[export] Inclusive upper receipt-time bound")
# shared
@click.option("--dry-run", is_flag=True, default=False, help="[import] Roll back instead of commit")
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("--log-level", default="WARNING", show_default=True, type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]))
def main(
    mode: str,
    db_dsn: str,
    config_path: str | None,
    suspect_distance_m: float | None,
    csv_path: str | None,
    rejects_path: str,
    reports_dir: str,
    submission_path: str | None,
    search: str | None,
    status_filter: str,
    sort_key: str,
    limit: int | None,
    cursor: str | None,
    household_id: str | None,
    out_path: str,
    received_from: str | None,
    received_to: str | None,
    dry_run: bool,
    run_id: str | None,
    log_level: str,
) -> None:
    """Unified canvass sync CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = utc_now_iso()

    try:
        settings = load_settings(Path(config_path) if config_path else None)
        if suspect_distance_m is not None:
            settings = settings.with_overrides(suspect_distance_m=suspect_distance_m)
    except (FileNotFoundError, SettingsValidationError) as exc:
        _fatal(run_id, f"settings: {exc}")

    if mode == "import":
        click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    conn = psycopg.connect(db_dsn, autocommit=False)
    try:
        if mode == "import":
            _run_import_mode(
                conn, run_id, started_at, settings,
                csv_path, rejects_path, reports_dir, dry_run,
            )
        elif mode == "submit":
            _run_submit_mode(conn, run_id, settings, submission_path)
        elif mode == "rollups":
            _run_rollups_mode(conn, settings, {
                "search": search,
                "status": status_filter,
                "sort": sort_key,
                "limit": limit,
                "cursor": cursor,
            })
        elif mode == "household":
            _run_household_mode(conn, run_id, household_id)
        elif mode == "export":
            _run_export_mode(conn, run_id, out_path, received_from, received_to)
    except ImportParseError as exc:
        _fatal(run_id, f"import aborted, nothing written: {exc}")
    except (ValidationError, NotFoundError) as exc:
        _fatal(run_id, str(exc))
    except psycopg.Error as exc:
        conn.rollback()
        _fatal(run_id, f"storage error {type(exc).__name__}: {exc}")
    finally:
        conn.close()


if __name__ == "__main__":
    main()
