"""canvass_sync.import_members

Bulk roster import into the member table.

Consumes one raw payload of delimited text (comma, tab, or semicolon;
detected from the first bytes) whose headers vary in case and naming
between voter-file vendors.

Processing order:
  1. Decode payload (utf-8, BOM tolerated)       → ImportParseError on failure
  2. Detect delimiter from the sniff prefix
  3. Read header row, lower-case every column     → ImportParseError if absent
  4. For each row, inside SAVEPOINT row_{n}:
       a. structural checks (cell count, identity fields) → skip-and-count
       b. build MemberRow (explicit id/household id, else derived)
       c. upsert by id: insert sets last_status='Unvisited'; update rewrites
          demographics/address only and never touches last_status or
          last_updated_at
  5. Commit (or roll back on dry-run / payload-level failure)
"""

from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass, field
from typing import Any, Iterator

import psycopg

from canvass_sync.identity import resolve_household_id, resolve_member_id
from canvass_sync.normalize import normalize_space, parse_float, parse_int, trim
from canvass_sync.settings import DEFAULT_SETTINGS, Settings
from canvass_sync.shared import (
    ImportParseError,
    RejectWriter,
    normalize_headers,
    pick,
)

log = logging.getLogger(__name__)

# Columns written by the import.  last_status and last_updated_at belong to
# the visit reconciler and must never appear here.
MEMBER_COLUMNS = (
    "id", "household_id",
    "first_name", "middle_name", "last_name",
    "address_line1", "address_line2", "city", "state", "zip",
    "latitude", "longitude",
    "precinct", "county", "party", "age", "sex",
)


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------

@dataclass
class ImportCounters:
    total: int = 0
    inserted: int = 0
    updated: int = 0
    rejected: int = 0
    db_phase_errors: int = 0
    delimiter: str | None = None
    row_errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "inserted": self.inserted,
            "updated": self.updated,
            "rejected": self.rejected,
            "db_phase_errors": self.db_phase_errors,
            "delimiter": self.delimiter,
            "row_errors": self.row_errors[:50],
        }


# ---------------------------------------------------------------------------
# Member row
# ---------------------------------------------------------------------------

@dataclass
class MemberRow:
    id: str
    household_id: str
    first_name: str | None = None
    middle_name: str | None = None
    last_name: str | None = None
    address_line1: str | None = None
    address_line2: str | None = None
    city: str | None = None
    state: str | None = None
    zip: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    precinct: str | None = None
    county: str | None = None
    party: str | None = None
    age: int | None = None
    sex: str | None = None

    def as_params(self) -> tuple[Any, ...]:
        return tuple(getattr(self, col) for col in MEMBER_COLUMNS)


class MalformedRowError(ValueError):
    """A single row is structurally unusable; the row is skipped, not the batch."""


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------

def detect_delimiter(sample: str, candidates: tuple[str, ...] | list[str] = (",", "\t", ";")) -> str:
    """Return the most frequent candidate in sample; ties go to the earlier one."""
    best = candidates[0]
    best_count = -1
    for cand in candidates:
        count = sample.count(cand)
        if count > best_count:
            best, best_count = cand, count
    return best


def sniff_sample(payload: bytes, size: int) -> str:
    # A multibyte char may be cut at the boundary; drop the partial bytes.
    return payload[:size].decode("utf-8", errors="ignore")


def decode_payload(payload: bytes) -> str:
    if not payload or not payload.strip():
        raise ImportParseError("empty payload")
    try:
        return payload.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ImportParseError(f"payload is not valid UTF-8: {exc}") from exc


def _iter_raw_rows(
    text: str,
    delimiter: str,
) -> Iterator[tuple[int, dict[str | None, Any]]]:
    """Yield (line_number, raw_row) pairs; csv.Error aborts the payload."""
    reader = csv.DictReader(io.StringIO(text, newline=""), delimiter=delimiter)
    try:
        fieldnames = reader.fieldnames
        if not fieldnames or not any((f or "").strip() for f in fieldnames):
            raise ImportParseError("payload has no header row")
        for raw_row in reader:
            yield reader.line_num, raw_row
    except csv.Error as exc:
        raise ImportParseError(f"line {reader.line_num}: {exc}") from exc


# ---------------------------------------------------------------------------
# Row assembly
# ---------------------------------------------------------------------------

def check_row_structure(raw_row: dict[str | None, Any]) -> None:
    """Raise MalformedRowError when a row's cell count does not match the header."""
    extra = raw_row.get(None)
    if extra:
        raise MalformedRowError(f"row has {len(extra)} more cell(s) than the header")
    missing = [k for k, v in raw_row.items() if k is not None and v is None]
    if missing:
        raise MalformedRowError(f"row has {len(missing)} fewer cell(s) than the header")


def build_member(row: dict[str, Any], settings: Settings = DEFAULT_SETTINGS) -> MemberRow:
    """Assemble a MemberRow from a header-normalized row.

    Text fields are trimmed (blank → None); latitude, longitude and age
    parse leniently (unparseable → None).  Raises MalformedRowError when
    there is neither an explicit id nor any identity field to derive one.
    """
    def get(logical: str) -> str | None:
        return pick(row, settings.aliases_for(logical))

    first = trim(get("first_name"))
    last = trim(get("last_name"))
    line1 = trim(get("address_line1"))
    city = trim(get("city"))
    state = trim(get("state"))
    zip_code = trim(get("zip"))

    explicit_id = get("id")
    if explicit_id is None and not any((first, last, line1, city, state, zip_code)):
        raise MalformedRowError("row has no id and no name/address fields to derive one")

    return MemberRow(
        id=resolve_member_id(explicit_id, first, last, line1, city, state, zip_code),
        household_id=resolve_household_id(get("household_id"), line1, city, state, zip_code),
        first_name=first,
        middle_name=normalize_space(get("middle_name")),
        last_name=last,
        address_line1=line1,
        address_line2=normalize_space(get("address_line2")),
        city=city,
        state=state,
        zip=zip_code,
        latitude=parse_float(get("latitude")),
        longitude=parse_float(get("longitude")),
        precinct=trim(get("precinct")),
        county=trim(get("county")),
        party=trim(get("party")),
        age=parse_int(get("age")),
        sex=trim(get("sex")),
    )


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------

_UPSERT_SQL = f"""
    INSERT INTO member ({", ".join(MEMBER_COLUMNS)}, last_status)
    VALUES ({", ".join(["%s"] * len(MEMBER_COLUMNS))}, 'Unvisited')
    ON CONFLICT (id) DO UPDATE SET
      {", ".join(f"{c} = EXCLUDED.{c}" for c in MEMBER_COLUMNS if c != "id")},
      updated_at = now()
    RETURNING (xmax = 0) AS inserted
"""


def upsert_member(conn: psycopg.Connection, member: MemberRow) -> bool:
    """Upsert one member by id.  Returns True if the row was inserted."""
    row = conn.execute(_UPSERT_SQL, member.as_params()).fetchone()
    return bool(row[0])


# ---------------------------------------------------------------------------
# Per-row processing
# ---------------------------------------------------------------------------

def _reject(
    counters: ImportCounters,
    rejects: RejectWriter | None,
    line_no: int,
    raw_row: dict[str | None, Any],
    reason: str,
) -> None:
    counters.rejected += 1
    counters.row_errors.append(f"row {line_no}: {reason}")
    log.warning("Import row %s rejected: %s", line_no, reason)
    if rejects is not None:
        flat = {str(k): v for k, v in raw_row.items() if k is not None}
        rejects.write({"_line": str(line_no), **flat}, reason)


def _process_row(
    conn: psycopg.Connection,
    line_no: int,
    raw_row: dict[str | None, Any],
    settings: Settings,
    counters: ImportCounters,
    rejects: RejectWriter | None,
) -> None:
    """Process one row.  Caller manages savepoint."""
    counters.total += 1
    try:
        check_row_structure(raw_row)
        member = build_member(normalize_headers(raw_row), settings)
    except MalformedRowError as exc:
        _reject(counters, rejects, line_no, raw_row, str(exc))
        return

    if upsert_member(conn, member):
        counters.inserted += 1
    else:
        counters.updated += 1


# ---------------------------------------------------------------------------
# Main run entry point
# ---------------------------------------------------------------------------

def run_import(
    conn: psycopg.Connection,
    payload: bytes,
    settings: Settings = DEFAULT_SETTINGS,
    rejects: RejectWriter | None = None,
    dry_run: bool = False,
) -> ImportCounters:
    """Import a roster payload and commit.

    Malformed rows are skipped and counted (counters.rejected, row_errors).
    A payload-level failure raises ImportParseError after rolling back;
    nothing from the payload is kept.  Other storage errors propagate.
    """
    text = decode_payload(payload)
    delimiter = detect_delimiter(
        sniff_sample(payload, settings.import_sniff_bytes),
        settings.import_delimiters,
    )
    counters = ImportCounters(delimiter=delimiter)

    try:
        for idx, (line_no, raw_row) in enumerate(_iter_raw_rows(text, delimiter)):
            sp_name = f"row_{idx}"
            conn.execute(f"SAVEPOINT {sp_name}")
            try:
                _process_row(conn, line_no, raw_row, settings, counters, rejects)
                conn.execute(f"RELEASE SAVEPOINT {sp_name}")
            except (psycopg.DataError, psycopg.IntegrityError) as exc:
                # Value rejected by the schema (e.g. age out of range): row-level.
                conn.execute(f"ROLLBACK TO SAVEPOINT {sp_name}")
                counters.db_phase_errors += 1
                _reject(
                    counters, rejects, line_no, raw_row,
                    f"db_constraint_error {type(exc).__name__}: {exc}",
                )
    except Exception:
        conn.rollback()
        raise

    if dry_run:
        conn.rollback()
    else:
        conn.commit()

    log.info(
        "Import done: total=%s inserted=%s updated=%s rejected=%s delimiter=%r dry_run=%s",
        counters.total, counters.inserted, counters.updated,
        counters.rejected, delimiter, dry_run,
    )
    return counters
