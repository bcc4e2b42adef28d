"""canvass_sync.identity

Deterministic fallback identities for roster rows that lack an
authoritative voter id or household id.

An explicit, non-blank id from the source always wins; derivation is a
fallback only.  Fully blank rows all derive the same member id; callers
are expected to reject such rows before deriving.
"""

from __future__ import annotations

import hashlib

from canvass_sync.normalize import key_part, trim

MEMBER_ID_PREFIX = "fv_"
MEMBER_ID_HEX_LEN = 16
KEY_SEPARATOR = "|"


def derive_member_id(
    first: str | None,
    last: str | None,
    address_line1: str | None,
    city: str | None,
    state: str | None,
    zip_code: str | None,
) -> str:
    """Return 'fv_' + 16 hex chars of SHA-1 over the normalized name/address key."""
    key = KEY_SEPARATOR.join(
        key_part(v) for v in (first, last, address_line1, city, state, zip_code)
    )
    digest = hashlib.sha1(key.encode("utf-8")).hexdigest()
    return MEMBER_ID_PREFIX + digest[:MEMBER_ID_HEX_LEN]


def derive_household_id(
    address_line1: str | None,
    city: str | None,
    state: str | None,
    zip_code: str | None,
) -> str:
    """Return the lower-cased 'line1|city|state|zip' address key."""
    return KEY_SEPARATOR.join(
        key_part(v) for v in (address_line1, city, state, zip_code)
    )


def resolve_member_id(
    explicit: str | None,
    first: str | None,
    last: str | None,
    address_line1: str | None,
    city: str | None,
    state: str | None,
    zip_code: str | None,
) -> str:
    return trim(explicit) or derive_member_id(
        first, last, address_line1, city, state, zip_code
    )


def resolve_household_id(
    explicit: str | None,
    address_line1: str | None,
    city: str | None,
    state: str | None,
    zip_code: str | None,
) -> str:
    return trim(explicit) or derive_household_id(address_line1, city, state, zip_code)
