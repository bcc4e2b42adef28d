"""canvass_sync.export_events

Streamed CSV export of current visit events, each joined with a snapshot
of its member's name/address/precinct fields, ordered by server receipt
time ascending.  Optional inclusive [received_from, received_to] window.
"""

from __future__ import annotations

import csv
from datetime import datetime
from typing import Any, Iterator, TextIO

import psycopg

EXPORT_HEADERS = [
    "member_id", "household_id", "status", "notes",
    "timestamp_client", "timestamp_server", "device_id",
    "lat", "lng", "distance_meters", "suspect",
    "first_name", "last_name", "address1", "city", "state", "zip",
    "precinct", "county",
]


def _iso(value: datetime | None) -> str:
    return value.isoformat() if value is not None else ""


def iter_export_rows(
    conn: psycopg.Connection,
    received_from: datetime | None = None,
    received_to: datetime | None = None,
) -> Iterator[dict[str, Any]]:
    """Yield one flat dict per visit event, oldest receipt first.

    Uses a named (server-side) cursor, so the connection must not be in
    autocommit mode.
    """
    clauses: list[str] = []
    params: list[datetime] = []
    if received_from is not None:
        clauses.append("e.received_at >= %s")
        params.append(received_from)
    if received_to is not None:
        clauses.append("e.received_at <= %s")
        params.append(received_to)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

    with conn.cursor(name="visit_event_export") as cur:
        cur.execute(
            f"""
            SELECT e.member_id, e.household_id, e.status, e.notes,
                   e.client_ts, e.received_at, e.device_id,
                   e.geo_lat, e.geo_lng, e.distance_meters, e.suspect,
                   m.first_name, m.last_name, m.address_line1, m.city,
                   m.state, m.zip, m.precinct, m.county
            FROM visit_event e
            LEFT JOIN member m ON m.id = e.member_id
            {where}
            ORDER BY e.received_at ASC, e.member_id ASC
            """,
            params,
        )
        for row in cur:
            (member_id, household_id, status, notes, client_ts, received_at,
             device_id, lat, lng, distance, suspect,
             first, last, line1, city, state, zip_code, precinct, county) = row
            yield {
                "member_id": member_id,
                "household_id": household_id,
                "status": status,
                "notes": notes or "",
                "timestamp_client": _iso(client_ts),
                "timestamp_server": _iso(received_at),
                "device_id": device_id,
                "lat": lat,
                "lng": lng,
                "distance_meters": distance,
                "suspect": 1 if suspect else 0,
                "first_name": first or "",
                "last_name": last or "",
                "address1": line1 or "",
                "city": city or "",
                "state": state or "",
                "zip": zip_code or "",
                "precinct": precinct or "",
                "county": county or "",
            }


def write_export(
    conn: psycopg.Connection,
    fh: TextIO,
    received_from: datetime | None = None,
    received_to: datetime | None = None,
) -> int:
    """Write the export as CSV to fh.  Returns the number of data rows."""
    writer = csv.DictWriter(fh, fieldnames=EXPORT_HEADERS)
    writer.writeheader()
    count = 0
    for out in iter_export_rows(conn, received_from, received_to):
        writer.writerow(out)
        count += 1
    return count
