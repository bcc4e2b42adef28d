"""CLI-level tests for canvass_sync.cli, one class per --mode."""

from __future__ import annotations

import csv
import json

import pytest
from click.testing import CliRunner

from canvass_sync.cli import main

ROSTER = (
    "vuid,firstname,lastname,address1,city,state,zip5,lat,lng\n"
    "TX1,Maria,Lopez,12 Oak St,Austin,TX,78701,30.2672,-97.7431\n"
    "TX2,Ann,Smith,4 Birch Rd,Austin,TX,78701,30.2700,-97.7400\n"
    "TX3,Lee,Park,88 Elm St,Austin,TX,78701,30.2600,-97.7500,EXTRA\n"
)


def _invoke(dsn, *args, env=None):
    runner = CliRunner()
    return runner.invoke(main, ["--db-dsn", dsn, *args], env=env)


@pytest.fixture
def imported(db_conn, tmp_path):
    """Run the roster import through the CLI and return (conn, dsn)."""
    conn, dsn = db_conn
    csv_path = tmp_path / "roster.csv"
    csv_path.write_text(ROSTER, encoding="utf-8")
    result = _invoke(
        dsn,
        "--mode", "import",
        "--csv-path", str(csv_path),
        "--rejects-path", str(tmp_path / "rejects.csv"),
        "--reports-dir", str(tmp_path / "reports"),
        "--run-id", "cli-import",
    )
    assert result.exit_code == 0, f"CLI failed:\n{result.output}"
    return conn, dsn


def _household_id(conn, member_id):
    return conn.execute(
        "SELECT household_id FROM member WHERE id = %s", (member_id,)
    ).fetchone()[0]


# ---------------------------------------------------------------------------
# import
# ---------------------------------------------------------------------------

class TestImportMode:
    def test_counts_and_report(self, imported, tmp_path):
        conn, _ = imported
        assert conn.execute("SELECT count(*) FROM member").fetchone()[0] == 2

        report = json.loads((tmp_path / "reports" / "cli-import.json").read_text())
        assert report["mode"] == "import"
        assert report["counters"]["inserted"] == 2
        assert report["counters"]["rejected"] == 1

        with (tmp_path / "rejects.csv").open(newline="", encoding="utf-8") as fh:
            rejects = list(csv.DictReader(fh))
        assert [r["vuid"] for r in rejects] == ["TX3"]

    def test_done_line(self, db_conn, tmp_path):
        _, dsn = db_conn
        csv_path = tmp_path / "roster.csv"
        csv_path.write_text(ROSTER, encoding="utf-8")
        result = _invoke(
            dsn, "--csv-path", str(csv_path),
            "--rejects-path", str(tmp_path / "rejects.csv"),
            "--reports-dir", str(tmp_path / "reports"),
            "--run-id", "r1",
        )
        assert result.exit_code == 0
        assert "[r1] Done: 3 rows read, 2 inserted, 0 updated, 1 rejected" in result.output

    def test_dry_run(self, db_conn, tmp_path):
        conn, dsn = db_conn
        csv_path = tmp_path / "roster.csv"
        csv_path.write_text(ROSTER, encoding="utf-8")
        result = _invoke(
            dsn, "--csv-path", str(csv_path), "--dry-run",
            "--rejects-path", str(tmp_path / "rejects.csv"),
            "--reports-dir", str(tmp_path / "reports"),
        )
        assert result.exit_code == 0
        assert "[dry-run]" in result.output
        assert conn.execute("SELECT count(*) FROM member").fetchone()[0] == 0

    def test_bad_payload_is_fatal(self, db_conn, tmp_path):
        _, dsn = db_conn
        csv_path = tmp_path / "roster.csv"
        csv_path.write_bytes(b"id,lastname\nA1,\xff\n")
        result = _invoke(
            dsn, "--csv-path", str(csv_path),
            "--rejects-path", str(tmp_path / "rejects.csv"),
            "--reports-dir", str(tmp_path / "reports"),
        )
        assert result.exit_code == 1
        assert "FATAL: import aborted" in result.output

    def test_missing_csv_path(self, db_conn):
        _, dsn = db_conn
        result = _invoke(dsn, "--mode", "import")
        assert result.exit_code == 1
        assert "--csv-path is required" in result.output

    def test_bad_config_is_fatal(self, db_conn, tmp_path):
        _, dsn = db_conn
        cfg = tmp_path / "bad.yml"
        cfg.write_text("suspect_distance_m: -3\n", encoding="utf-8")
        result = _invoke(dsn, "--config", str(cfg), "--mode", "rollups")
        assert result.exit_code == 1
        assert "FATAL: settings" in result.output


# ---------------------------------------------------------------------------
# submit
# ---------------------------------------------------------------------------

def _write_submission(path, conn, member_id="TX1", **overrides):
    body = {
        "memberId": member_id,
        "householdId": _household_id(conn, member_id),
        "status": "Surveyed",
        "timestamp": "2025-10-01T15:00:00Z",
        "deviceId": "dev-1",
        "geo": {"lat": 30.2682, "lng": -97.7431},
    }
    body.update(overrides)
    path.write_text(json.dumps(body), encoding="utf-8")
    return path


class TestSubmitMode:
    def test_submit_prints_result(self, imported, tmp_path):
        conn, dsn = imported
        sub = _write_submission(tmp_path / "sub.json", conn)
        result = _invoke(dsn, "--mode", "submit", "--submission-path", str(sub))
        assert result.exit_code == 0, result.output
        assert json.loads(result.output) == {
            "ok": True, "upserted": True, "suspect": True, "distanceMeters": 111,
        }

    def test_threshold_from_env(self, imported, tmp_path):
        conn, dsn = imported
        sub = _write_submission(tmp_path / "sub.json", conn)
        result = _invoke(
            dsn, "--mode", "submit", "--submission-path", str(sub),
            env={"SUSPECT_DISTANCE_M": "500"},
        )
        assert result.exit_code == 0, result.output
        assert json.loads(result.output)["suspect"] is False

    def test_unknown_member_is_fatal(self, imported, tmp_path):
        conn, dsn = imported
        sub = tmp_path / "sub.json"
        sub.write_text(json.dumps({
            "memberId": "NOPE", "householdId": "x", "status": "Surveyed",
            "timestamp": "2025-10-01T15:00:00Z", "deviceId": "d",
            "geo": {"lat": 30.0, "lng": -97.0},
        }), encoding="utf-8")
        result = _invoke(dsn, "--mode", "submit", "--submission-path", str(sub))
        assert result.exit_code == 1
        assert "member not found" in result.output
        assert conn.execute("SELECT count(*) FROM visit_event").fetchone()[0] == 0

    def test_invalid_json_is_fatal(self, imported, tmp_path):
        _, dsn = imported
        sub = tmp_path / "sub.json"
        sub.write_text("{not json", encoding="utf-8")
        result = _invoke(dsn, "--mode", "submit", "--submission-path", str(sub))
        assert result.exit_code == 1
        assert "not valid JSON" in result.output

    def test_missing_submission_file_is_usage_error(self, db_conn, tmp_path):
        conn, dsn = db_conn
        missing = tmp_path / "nowhere.json"
        result = _invoke(dsn, "--mode", "submit", "--submission-path", str(missing))
        assert result.exit_code == 2
        assert "does not exist" in result.output
        assert not isinstance(result.exception, FileNotFoundError)
        assert conn.execute("SELECT count(*) FROM visit_event").fetchone()[0] == 0

    def test_directory_submission_path_is_usage_error(self, db_conn, tmp_path):
        _, dsn = db_conn
        result = _invoke(dsn, "--mode", "submit", "--submission-path", str(tmp_path))
        assert result.exit_code == 2
        assert "is a directory" in result.output

    def test_out_of_range_geo_is_fatal(self, imported, tmp_path):
        conn, dsn = imported
        sub = _write_submission(tmp_path / "sub.json", conn, geo={"lat": 91, "lng": 180})
        result = _invoke(dsn, "--mode", "submit", "--submission-path", str(sub))
        assert result.exit_code == 1
        assert "geo.lat" in result.output
        assert conn.execute("SELECT count(*) FROM visit_event").fetchone()[0] == 0


# ---------------------------------------------------------------------------
# rollups / household
# ---------------------------------------------------------------------------

class TestRollupsMode:
    def test_rollups_json(self, imported):
        _, dsn = imported
        result = _invoke(dsn, "--mode", "rollups", "--status", "pending", "--sort", "street")
        assert result.exit_code == 0, result.output
        payload = json.loads(result.output)
        assert payload["ok"] is True
        assert payload["cursor"] is None
        assert [r["streetName"] for r in payload["rows"]] == ["Birch Rd", "Oak St"]

    def test_paged(self, imported):
        _, dsn = imported
        first = json.loads(_invoke(dsn, "--mode", "rollups", "--limit", "1").output)
        assert len(first["rows"]) == 1
        second = json.loads(
            _invoke(dsn, "--mode", "rollups", "--limit", "1", "--cursor", first["cursor"]).output
        )
        assert len(second["rows"]) == 1
        assert second["rows"][0]["householdId"] != first["rows"][0]["householdId"]
        assert second["cursor"] is None

    def test_bad_sort_is_fatal(self, imported):
        _, dsn = imported
        result = _invoke(dsn, "--mode", "rollups", "--sort", "zip")
        assert result.exit_code == 1
        assert "'sort' must be one of" in result.output


class TestHouseholdMode:
    def test_members_json(self, imported):
        conn, dsn = imported
        hh = _household_id(conn, "TX1")
        result = _invoke(dsn, "--mode", "household", "--household-id", hh)
        assert result.exit_code == 0, result.output
        members = json.loads(result.output)["members"]
        assert [m["id"] for m in members] == ["TX1"]

    def test_unknown_household_is_fatal(self, imported):
        _, dsn = imported
        result = _invoke(dsn, "--mode", "household", "--household-id", "nowhere")
        assert result.exit_code == 1
        assert "household not found" in result.output


# ---------------------------------------------------------------------------
# export
# ---------------------------------------------------------------------------

class TestExportMode:
    def test_export_to_file(self, imported, tmp_path):
        conn, dsn = imported
        sub = _write_submission(tmp_path / "sub.json", conn)
        assert _invoke(dsn, "--mode", "submit", "--submission-path", str(sub)).exit_code == 0

        out = tmp_path / "exports" / "events.csv"
        result = _invoke(dsn, "--mode", "export", "--out-path", str(out), "--run-id", "x1")
        assert result.exit_code == 0, result.output
        assert "[x1] Exported 1 events" in result.output
        with out.open(newline="", encoding="utf-8") as fh:
            rows = list(csv.DictReader(fh))
        assert rows[0]["member_id"] == "TX1"
        assert rows[0]["suspect"] == "1"
        assert rows[0]["last_name"] == "Lopez"

    def test_bad_bound_is_fatal(self, imported):
        _, dsn = imported
        result = _invoke(dsn, "--mode", "export", "--received-from", "yesterday")
        assert result.exit_code == 1
        assert "--received-from" in result.output

    def test_date_bound_in_future_exports_nothing(self, imported, tmp_path):
        _, dsn = imported
        out = tmp_path / "events.csv"
        result = _invoke(
            dsn, "--mode", "export", "--out-path", str(out), "--received-from", "2999-01-01",
        )
        assert result.exit_code == 0, result.output
        assert "Exported 0 events" in result.output
