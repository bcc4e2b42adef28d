"""Normalization functions for canvass roster ingestion and visit sync.

All functions accept str | None and return the appropriate type or None.
"""

from __future__ import annotations

import math
import re
from datetime import datetime

_RFC3339_RE = re.compile(
    r"^(\d{4}-\d{2}-\d{2})[Tt ](\d{2}:\d{2}:\d{2})(?:\.(\d+))?([Zz]|[+-]\d{2}:\d{2})$"
)


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: key_part  (identity hashing)
# ---------------------------------------------------------------------------

def key_part(value: str | None) -> str:
    """Trim and lowercase for identity keys; missing → empty string."""
    v = trim(value)
    return v.lower() if v else ""


# ---------------------------------------------------------------------------
# Rule 4: lenient numbers
# ---------------------------------------------------------------------------

def parse_float(value: str | None) -> float | None:
    """Parse a float, returning None for blank, non-numeric, or non-finite input."""
    v = trim(value)
    if v is None:
        return None
    try:
        f = float(v)
    except ValueError:
        return None
    return f if math.isfinite(f) else None


def parse_int(value: str | None) -> int | None:
    """Parse an integer; '42.0' is accepted, '42.5' and 'abc' are not."""
    f = parse_float(value)
    if f is None or not f.is_integer():
        return None
    return int(f)


# ---------------------------------------------------------------------------
# Rule 5: parse_rfc3339
# ---------------------------------------------------------------------------

def parse_rfc3339(value: str | None) -> datetime | None:
    """Parse an RFC 3339 timestamp with an explicit offset.

    Naive timestamps (no 'Z' or ±HH:MM) are rejected → None, so every
    stored client time is comparable.
    """
    v = trim(value)
    if v is None:
        return None
    m = _RFC3339_RE.match(v)
    if not m:
        return None
    day, clock, frac, offset = m.groups()
    # fromisoformat wants exactly 6 fractional digits on older interpreters
    micros = (frac or "")[:6].ljust(6, "0")
    if offset in ("Z", "z"):
        offset = "+00:00"
    try:
        return datetime.fromisoformat(f"{day}T{clock}.{micros}{offset}")
    except ValueError:
        return None
