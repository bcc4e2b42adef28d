"""canvass_sync.reconcile_events

Visit-event reconciliation for offline-first canvassing devices.

Each member has at most one visit_event row: the most recent report by
client-reported time.  Devices may sync hours late, so ordering uses the
submission's own timestamp, not arrival order.

Processing order for one submission:
  1. parse_submission        → ValidationError on bad shape
  2. load member coordinates → NotFoundError if absent; nothing written
  3. haversine distance, suspect = distance > suspect_distance_m
  4. single-statement upsert on visit_event.member_id, guarded by
     client_ts <= incoming client_ts; a guarded-out row means stale
  5. propagate last_status / last_updated_at onto member, commit
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

import psycopg

from canvass_sync.normalize import parse_rfc3339, trim
from canvass_sync.settings import DEFAULT_SETTINGS, Settings
from canvass_sync.shared import NotFoundError, ValidationError

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

VISIT_STATUSES = ("Surveyed", "NotHome", "Refused", "WrongAddress", "Moved")

# Spellings used by older device builds.
LEGACY_STATUS_ALIASES = {
    "Not Home": "NotHome",
    "Wrong Address": "WrongAddress",
}

MAX_NOTES_LEN = 2000
EARTH_RADIUS_M = 6_371_000.0

EVENT_COLUMNS = (
    "member_id", "household_id", "status", "survey_answers", "notes",
    "client_ts", "received_at", "device_id", "geo_lat", "geo_lng",
    "distance_meters", "suspect",
)


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class VisitSubmission:
    member_id: str
    household_id: str
    status: str
    timestamp: datetime
    device_id: str
    lat: float
    lng: float
    survey_answers: dict[str, Any] = field(default_factory=dict)
    notes: str | None = None


@dataclass
class SubmitResult:
    ignored: bool = False
    suspect: bool | None = None
    distance_meters: int | None = None
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        if self.ignored:
            return {"ok": True, "ignored": True, "message": self.message}
        return {
            "ok": True,
            "upserted": True,
            "suspect": self.suspect,
            "distanceMeters": self.distance_meters,
        }


# ---------------------------------------------------------------------------
# Geofence
# ---------------------------------------------------------------------------

def haversine_meters(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    p1 = math.radians(lat1)
    p2 = math.radians(lat2)
    d1 = math.radians(lat2 - lat1)
    d2 = math.radians(lng2 - lng1)
    a = math.sin(d1 / 2) ** 2 + math.cos(p1) * math.cos(p2) * math.sin(d2 / 2) ** 2
    # Rounding can push a just outside [0, 1] near antipodes.
    a = min(1.0, max(0.0, a))
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def is_suspect(distance_m: float, threshold_m: float) -> bool:
    """Flag only; a suspect visit is still accepted."""
    return distance_m > threshold_m


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _require_str(body: Mapping[str, Any], key: str) -> str:
    v = body.get(key)
    if not isinstance(v, str) or trim(v) is None:
        raise ValidationError(f"'{key}' must be a non-empty string")
    return v.strip()


def _require_number(geo: Mapping[str, Any], key: str, bound: float) -> float:
    v = geo.get(key)
    if isinstance(v, bool) or not isinstance(v, (int, float)) or not math.isfinite(v):
        raise ValidationError(f"'geo.{key}' must be a number")
    if not -bound <= v <= bound:
        raise ValidationError(f"'geo.{key}' must be within [-{bound:g}, {bound:g}], got {v}")
    return float(v)


def canonical_status(raw: Any) -> str:
    if isinstance(raw, str):
        status = LEGACY_STATUS_ALIASES.get(raw, raw)
        if status in VISIT_STATUSES:
            return status
    raise ValidationError(
        f"'status' must be one of {list(VISIT_STATUSES)}, got {raw!r}"
    )


def parse_submission(body: Mapping[str, Any]) -> VisitSubmission:
    """Validate a raw submission mapping.  Raises ValidationError."""
    if not isinstance(body, Mapping):
        raise ValidationError("submission must be an object")

    member_id = _require_str(body, "memberId")
    household_id = _require_str(body, "householdId")
    device_id = _require_str(body, "deviceId")
    status = canonical_status(body.get("status"))

    answers = body.get("surveyAnswers")
    if answers is None:
        answers = {}
    if not isinstance(answers, Mapping):
        raise ValidationError("'surveyAnswers' must be an object")

    notes = body.get("notes")
    if notes is not None:
        if not isinstance(notes, str):
            raise ValidationError("'notes' must be a string")
        if len(notes) > MAX_NOTES_LEN:
            raise ValidationError(f"'notes' exceeds {MAX_NOTES_LEN} characters")

    raw_ts = body.get("timestamp")
    ts = parse_rfc3339(raw_ts) if isinstance(raw_ts, str) else None
    if ts is None:
        raise ValidationError(f"'timestamp' must be an RFC 3339 datetime, got {raw_ts!r}")

    geo = body.get("geo")
    if not isinstance(geo, Mapping):
        raise ValidationError("'geo' must be an object with lat and lng")

    return VisitSubmission(
        member_id=member_id,
        household_id=household_id,
        status=status,
        timestamp=ts,
        device_id=device_id,
        lat=_require_number(geo, "lat", 90.0),
        lng=_require_number(geo, "lng", 180.0),
        survey_answers=dict(answers),
        notes=notes,
    )


# ---------------------------------------------------------------------------
# DB helpers
# ---------------------------------------------------------------------------

def _member_coords(conn: psycopg.Connection, member_id: str) -> tuple[float, float]:
    row = conn.execute(
        "SELECT latitude, longitude FROM member WHERE id = %s",
        (member_id,),
    ).fetchone()
    if row is None:
        raise NotFoundError(f"member not found: {member_id!r}")
    if row[0] is None or row[1] is None:
        raise NotFoundError(f"member has no coordinates: {member_id!r}")
    return float(row[0]), float(row[1])


def _upsert_event(
    conn: psycopg.Connection,
    sub: VisitSubmission,
    distance_m: int,
    suspect: bool,
) -> datetime | None:
    """Write the event unless a newer one is stored.  Returns received_at, or None if stale."""
    row = conn.execute(
        """
        INSERT INTO visit_event
          (member_id, household_id, status, survey_answers, notes,
           client_ts, received_at, device_id, geo_lat, geo_lng,
           distance_meters, suspect)
        VALUES (%s, %s, %s, %s::jsonb, %s, %s, now(), %s, %s, %s, %s, %s)
        ON CONFLICT (member_id) DO UPDATE SET
          household_id = EXCLUDED.household_id,
          status = EXCLUDED.status,
          survey_answers = EXCLUDED.survey_answers,
          notes = EXCLUDED.notes,
          client_ts = EXCLUDED.client_ts,
          received_at = EXCLUDED.received_at,
          device_id = EXCLUDED.device_id,
          geo_lat = EXCLUDED.geo_lat,
          geo_lng = EXCLUDED.geo_lng,
          distance_meters = EXCLUDED.distance_meters,
          suspect = EXCLUDED.suspect
        WHERE visit_event.client_ts <= EXCLUDED.client_ts
        RETURNING received_at
        """,
        (
            sub.member_id, sub.household_id, sub.status,
            json.dumps(sub.survey_answers, ensure_ascii=False, default=str),
            sub.notes, sub.timestamp, sub.device_id, sub.lat, sub.lng,
            distance_m, suspect,
        ),
    ).fetchone()
    return row[0] if row else None


def get_current_event(conn: psycopg.Connection, member_id: str) -> dict[str, Any] | None:
    """Return the stored visit event for member_id as a dict, or None."""
    row = conn.execute(
        f"SELECT {', '.join(EVENT_COLUMNS)} FROM visit_event WHERE member_id = %s",
        (member_id,),
    ).fetchone()
    if row is None:
        return None
    return dict(zip(EVENT_COLUMNS, row))


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------

def submit_visit(
    conn: psycopg.Connection,
    sub: VisitSubmission,
    settings: Settings = DEFAULT_SETTINGS,
) -> SubmitResult:
    """Reconcile one visit submission and commit.

    Returns SubmitResult(ignored=True) when a newer event is already
    stored; that is a success, not an error.  NotFoundError leaves the
    store untouched.  Storage errors propagate after rollback.
    """
    try:
        reg_lat, reg_lng = _member_coords(conn, sub.member_id)
        distance = haversine_meters(reg_lat, reg_lng, sub.lat, sub.lng)
        suspect = is_suspect(distance, settings.suspect_distance_m)
        distance_m = int(round(distance))

        received_at = _upsert_event(conn, sub, distance_m, suspect)
        if received_at is None:
            conn.rollback()
            log.warning(
                "Ignored stale event for %s (stored event is newer than %s)",
                sub.member_id, sub.timestamp.isoformat(),
            )
            return SubmitResult(ignored=True, message="Older event ignored")

        conn.execute(
            "UPDATE member SET last_status = %s, last_updated_at = %s WHERE id = %s",
            (sub.status, received_at, sub.member_id),
        )
        conn.commit()
    except Exception:
        conn.rollback()
        raise

    if suspect:
        log.warning(
            "Suspect visit for %s from device %s: %sm from registered address",
            sub.member_id, sub.device_id, distance_m,
        )
    return SubmitResult(suspect=suspect, distance_meters=distance_m)
