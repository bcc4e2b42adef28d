"""canvass_sync.shared

Shared pieces used by the import, reconcile, rollup, and export modes.
Includes the error taxonomy, RejectWriter, header normalization, and
report-writing support.
"""

from __future__ import annotations

import csv
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ValidationError(ValueError):
    """Raised when a submission or query has the wrong shape.  No state change."""


class NotFoundError(LookupError):
    """Raised when a referenced member or household is absent (or unusable)."""


class ImportParseError(ValueError):
    """Raised when an import payload cannot be parsed at all.

    The whole import is rolled back; partial counts are discarded.
    """


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected rows."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None

    def write(self, row: dict[str, str], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = list(row.keys()) + ["_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = dict(row)
        out["_reject_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()

    def close(self) -> None:
        if self._fh:
            self._fh.close()
            self._fh = None


# ---------------------------------------------------------------------------
# Header normalization
# ---------------------------------------------------------------------------

def normalize_headers(raw: dict[str | None, Any]) -> dict[str, Any]:
    """Return a new dict with header keys stripped and lower-cased.

    The None key (overflow cells from csv.DictReader) and blank headers
    are dropped.  On duplicate headers the first non-blank
    value wins.
    """
    out: dict[str, Any] = {}
    for k, v in raw.items():
        if k is None:
            continue
        key = k.strip().lower()
        if not key:
            continue
        if key in out and (out[key] or "").strip():
            continue
        out[key] = v
    return out


def pick(row: dict[str, Any], aliases: tuple[str, ...] | list[str]) -> str | None:
    """Return the first non-blank value across aliases, stripped, else None."""
    for key in aliases:
        v = row.get(key)
        if isinstance(v, str) and v.strip():
            return v.strip()
    return None


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, str],
    counters: Any,
    reports_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": utc_now_iso(),
        "dry_run": dry_run,
        **source_paths,
        "counters": counters.to_dict(),
    }
    report_path = reports_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
