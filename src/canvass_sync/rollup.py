"""canvass_sync.rollup

Household rollups for the dispatch dashboard.

Members matching the search are read in seq order and reduced in Python
to one Household per household_id:

  - representative address/coords: first member in seq order
  - statuses: distinct last_status values
  - bucket (Pending/Done), color (Red/Green/Blue/Gray), street_name
  - cursor: highest member seq in the group

Households are then filtered by bucket, sorted, and paginated.  The page
cursor is an opaque keyset token over the sorted household sequence, so
following cursors visits every household exactly once for a quiet store.
Pages are not isolated from concurrent writes.
The cursor does not bound the SQL scan: every page re-reads and re-groups
all matching members, so one page costs O(N) in the matched member count.
"""

from __future__ import annotations

import base64
import binascii
import json
import re
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Iterator, Mapping

import psycopg

from canvass_sync.normalize import trim
from canvass_sync.settings import DEFAULT_SETTINGS, Settings
from canvass_sync.shared import NotFoundError, ValidationError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

UNVISITED = "Unvisited"
BUCKET_PENDING = "Pending"
BUCKET_DONE = "Done"

COLOR_RED = "Red"
COLOR_GREEN = "Green"
COLOR_BLUE = "Blue"
COLOR_GRAY = "Gray"

RED_STATUSES = frozenset({"Refused", "WrongAddress", "Moved"})

STATUS_FILTERS = ("pending", "done", "all")
SORT_KEYS = ("status", "street", "name")

_STREET_RE = re.compile(r"^\s*\d+\s*(.*)$", re.DOTALL)

# Element types of sort_key() per sort mode; used to vet decoded cursors.
_CURSOR_KEY_TYPES = {
    "status": (int, str, str),
    "street": (str, str),
    "name": (str, str),
}

SEARCH_COLUMNS = ("last_name", "first_name", "address_line1", "city", "household_id")


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

@dataclass
class RollupQuery:
    search: str | None = None
    status: str = "all"
    sort: str = "status"
    limit: int = 200
    cursor: str | None = None


@dataclass
class MemberSlice:
    """The member columns the rollup needs."""

    seq: int
    household_id: str
    address_line1: str | None
    address_line2: str | None
    city: str | None
    state: str | None
    zip: str | None
    latitude: float | None
    longitude: float | None
    last_status: str | None


@dataclass
class Household:
    household_id: str
    address_line1: str | None
    address_line2: str | None
    city: str | None
    state: str | None
    zip: str | None
    lat: float | None
    lng: float | None
    members_count: int = 0
    statuses: set[str | None] = field(default_factory=set)
    cursor: int = 0

    @property
    def bucket(self) -> str:
        return household_bucket(self.statuses)

    @property
    def color(self) -> str:
        return household_color(self.statuses)

    @property
    def street_name(self) -> str:
        return extract_street_name(self.address_line1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "householdId": self.household_id,
            "address": {
                "line1": self.address_line1,
                "line2": self.address_line2,
                "city": self.city,
                "state": self.state,
                "zip": self.zip,
            },
            "coords": {"lat": self.lat, "lng": self.lng},
            "membersCount": self.members_count,
            "statuses": sorted(s for s in self.statuses if s),
            "statusLabel": self.bucket,
            "statusColor": self.color,
            "streetName": self.street_name,
            "cursor": self.cursor,
        }


@dataclass
class RollupPage:
    rows: list[Household]
    cursor: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": True,
            "rows": [h.to_dict() for h in self.rows],
            "cursor": self.cursor,
        }


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------

def household_bucket(statuses: Iterable[str | None]) -> str:
    """Done once any member has a status other than Unvisited; else Pending.

    NotHome counts as Done under this rule.
    """
    if any(s and s != UNVISITED for s in statuses):
        return BUCKET_DONE
    return BUCKET_PENDING


def household_color(statuses: Iterable[str | None]) -> str:
    present = set(statuses)
    if present & RED_STATUSES:
        return COLOR_RED
    if "Surveyed" in present:
        return COLOR_GREEN
    if "NotHome" in present:
        return COLOR_BLUE
    return COLOR_GRAY


def extract_street_name(address_line1: str | None) -> str:
    """'123 Main St' → 'Main St'; lines without a leading number are unchanged."""
    if address_line1 is None:
        return ""
    m = _STREET_RE.match(address_line1)
    return m.group(1) if m else address_line1


# ---------------------------------------------------------------------------
# Query parsing
# ---------------------------------------------------------------------------

def parse_query(params: Mapping[str, Any], settings: Settings = DEFAULT_SETTINGS) -> RollupQuery:
    """Build a RollupQuery from raw request parameters.  Raises ValidationError."""
    status = trim(str(params.get("status") or "")) or "all"
    if status not in STATUS_FILTERS:
        raise ValidationError(f"'status' must be one of {list(STATUS_FILTERS)}, got {status!r}")

    sort = trim(str(params.get("sort") or "")) or "status"
    if sort not in SORT_KEYS:
        raise ValidationError(f"'sort' must be one of {list(SORT_KEYS)}, got {sort!r}")

    raw_limit = params.get("limit")
    if raw_limit is None or str(raw_limit).strip() == "":
        limit = settings.rollup_default_limit
    else:
        try:
            limit = int(str(raw_limit).strip())
        except ValueError:
            raise ValidationError(f"'limit' must be an integer, got {raw_limit!r}")
        if limit < 1:
            raise ValidationError(f"'limit' must be >= 1, got {limit}")
    limit = min(limit, settings.rollup_max_limit)

    search = params.get("search")
    cursor = params.get("cursor")
    return RollupQuery(
        search=trim(str(search)) if search is not None else None,
        status=status,
        sort=sort,
        limit=limit,
        cursor=trim(str(cursor)) if cursor is not None else None,
    )


# ---------------------------------------------------------------------------
# Cursor codec
# ---------------------------------------------------------------------------

def encode_cursor(sort: str, key: tuple[Any, ...]) -> str:
    raw = json.dumps([sort, *key], separators=(",", ":"), ensure_ascii=False)
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii").rstrip("=")


def decode_cursor(token: str, sort: str) -> tuple[Any, ...]:
    """Return the sort key stored in token.  Raises ValidationError."""
    padded = token + "=" * (-len(token) % 4)
    try:
        data = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError):
        raise ValidationError("malformed cursor")
    if not isinstance(data, list) or len(data) < 2:
        raise ValidationError("malformed cursor")
    if data[0] != sort:
        raise ValidationError(f"cursor was issued for sort={data[0]!r}, not {sort!r}")
    key = tuple(data[1:])
    expected = _CURSOR_KEY_TYPES[sort]
    if len(key) != len(expected) or not all(
        type(v) is t for v, t in zip(key, expected)
    ):
        raise ValidationError("malformed cursor")
    return key


# ---------------------------------------------------------------------------
# Grouping, sorting, paging
# ---------------------------------------------------------------------------

def group_households(members: Iterable[MemberSlice]) -> list[Household]:
    """Reduce members (in seq order) to households in first-seen order."""
    groups: dict[str, Household] = {}
    for m in members:
        hh = groups.get(m.household_id)
        if hh is None:
            hh = Household(
                household_id=m.household_id,
                address_line1=m.address_line1,
                address_line2=m.address_line2,
                city=m.city,
                state=m.state,
                zip=m.zip,
                lat=m.latitude,
                lng=m.longitude,
            )
            groups[m.household_id] = hh
        hh.members_count += 1
        hh.statuses.add(m.last_status)
        hh.cursor = max(hh.cursor, m.seq)
    return list(groups.values())


def sort_key(hh: Household, sort: str) -> tuple[Any, ...]:
    if sort == "street":
        return (hh.street_name, hh.household_id)
    if sort == "name":
        return (hh.address_line1 or "", hh.household_id)
    pending_first = 0 if hh.bucket == BUCKET_PENDING else 1
    return (pending_first, hh.street_name, hh.household_id)


def paginate(households: Iterable[Household], query: RollupQuery) -> RollupPage:
    """Filter by bucket, sort, and cut one page after query.cursor."""
    if query.status == "pending":
        households = [h for h in households if h.bucket == BUCKET_PENDING]
    elif query.status == "done":
        households = [h for h in households if h.bucket == BUCKET_DONE]

    keyed = sorted(
        ((sort_key(h, query.sort), h) for h in households),
        key=lambda pair: pair[0],
    )
    if query.cursor:
        after = decode_cursor(query.cursor, query.sort)
        keyed = [pair for pair in keyed if pair[0] > after]

    page = keyed[: query.limit]
    next_cursor = None
    if len(keyed) > query.limit:
        next_cursor = encode_cursor(query.sort, page[-1][0])
    return RollupPage(rows=[h for _, h in page], cursor=next_cursor)


# ---------------------------------------------------------------------------
# DB access
# ---------------------------------------------------------------------------

def _like_pattern(search: str) -> str:
    escaped = search.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def fetch_members(conn: psycopg.Connection, search: str | None = None) -> Iterator[MemberSlice]:
    """Yield members matching search (case-insensitive substring) in seq order."""
    sql = """
        SELECT seq, household_id, address_line1, address_line2, city, state, zip,
               latitude, longitude, last_status
        FROM member
    """
    params: list[str] = []
    if search:
        pattern = _like_pattern(search)
        sql += " WHERE " + " OR ".join(f"{c} ILIKE %s" for c in SEARCH_COLUMNS)
        params = [pattern] * len(SEARCH_COLUMNS)
    sql += " ORDER BY seq ASC"

    with conn.cursor() as cur:
        cur.execute(sql, params)
        for row in cur:
            yield MemberSlice(*row)


def query_rollups(
    conn: psycopg.Connection,
    query: RollupQuery,
    settings: Settings = DEFAULT_SETTINGS,
) -> RollupPage:
    """Return one page of household rollups.  Read-only; caller manages transaction."""
    if query.limit < 1:
        raise ValidationError(f"'limit' must be >= 1, got {query.limit}")
    if query.limit > settings.rollup_max_limit:
        query = replace(query, limit=settings.rollup_max_limit)
    households = group_households(fetch_members(conn, query.search))
    return paginate(households, query)


def household_members(conn: psycopg.Connection, household_id: str) -> list[dict[str, Any]]:
    """List members of one household by last, first name.  Raises NotFoundError."""
    cols = ("id", "first_name", "middle_name", "last_name", "age", "party", "sex", "last_status")
    rows = conn.execute(
        f"""
        SELECT {', '.join(cols)}
        FROM member
        WHERE household_id = %s
        ORDER BY last_name ASC NULLS FIRST, first_name ASC NULLS FIRST, seq ASC
        """,
        (household_id,),
    ).fetchall()
    if not rows:
        raise NotFoundError(f"household not found: {household_id!r}")
    return [dict(zip(cols, row)) for row in rows]
