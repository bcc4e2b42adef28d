"""canvass_sync.settings

YAML-backed process settings for the sync core.

Responsibilities:
  - Load and validate a settings file (see config/canvass.yml)
  - Fill unspecified keys from DEFAULT_SETTINGS
  - Hand out an immutable Settings object that callers pass explicitly
    into the import, reconcile, and rollup entry points

Usage:
    from pathlib import Path
    from canvass_sync.settings import load_settings

    settings = load_settings(Path("config/canvass.yml"))
    settings = settings.with_overrides(suspect_distance_m=50.0)
"""

from __future__ import annotations

import dataclasses
import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Logical member field → header aliases, in priority order.  Headers are
# compared after lower-casing.
DEFAULT_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "id":            ("vuid", "id", "voterid", "voter_id"),
    "household_id":  ("householdid", "hhid", "household_id"),
    "first_name":    ("firstname", "first_name", "first"),
    "middle_name":   ("middlename", "middle_name"),
    "last_name":     ("lastname", "last_name", "last"),
    "address_line1": ("registrationaddress1", "address1", "address"),
    "address_line2": ("registrationaddress2", "address2"),
    "city":          ("registrationaddresscity", "city"),
    "state":         ("registrationaddressstate", "state"),
    "zip":           ("registrationaddresszip5", "zip", "zip5"),
    "latitude":      ("latitude", "lat"),
    "longitude":     ("longitude", "lng", "lon"),
    "precinct":      ("precinct",),
    "county":        ("county",),
    "party":         ("party",),
    "age":           ("age",),
    "sex":           ("sex", "gender"),
}

VALID_SETTINGS_KEYS = frozenset({
    "suspect_distance_m",
    "import_sniff_bytes",
    "import_delimiters",
    "rollup_default_limit",
    "rollup_max_limit",
    "field_aliases",
})


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class SettingsValidationError(ValueError):
    """Raised when a settings file fails schema validation."""


# ---------------------------------------------------------------------------
# Settings dataclass
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Settings:
    """Validated, immutable process settings."""

    suspect_distance_m: float = 75.0
    import_sniff_bytes: int = 1000
    import_delimiters: tuple[str, ...] = (",", "\t", ";")
    rollup_default_limit: int = 200
    rollup_max_limit: int = 500
    field_aliases: Mapping[str, tuple[str, ...]] = field(
        default_factory=lambda: MappingProxyType(dict(DEFAULT_FIELD_ALIASES))
    )
    source_hash: str | None = field(default=None, compare=False)

    def aliases_for(self, logical_field: str) -> tuple[str, ...]:
        return self.field_aliases.get(logical_field, ())

    def with_overrides(self, **changes: Any) -> "Settings":
        """Return a validated copy with the given fields replaced."""
        merged = dataclasses.replace(self, **changes)
        validate_settings(_as_plain_dict(merged))
        if "field_aliases" in changes:
            merged = dataclasses.replace(
                merged,
                field_aliases=MappingProxyType(
                    {k: _clean_aliases(v) for k, v in merged.field_aliases.items()}
                ),
            )
        return merged


DEFAULT_SETTINGS = Settings()


def _clean_aliases(names: Any) -> tuple[str, ...]:
    return tuple(str(n).strip().lower() for n in names)


def _as_plain_dict(settings: Settings) -> dict[str, Any]:
    return {
        "suspect_distance_m": settings.suspect_distance_m,
        "import_sniff_bytes": settings.import_sniff_bytes,
        "import_delimiters": list(settings.import_delimiters),
        "rollup_default_limit": settings.rollup_default_limit,
        "rollup_max_limit": settings.rollup_max_limit,
        "field_aliases": {k: list(v) for k, v in settings.field_aliases.items()},
    }


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_settings(yaml_path: Path | None = None) -> Settings:
    """Load, validate, and return Settings from a YAML file.

    With no path, returns DEFAULT_SETTINGS.  Keys absent from the file keep
    their defaults; field_aliases entries in the file replace the default
    alias list for that field only.

    Raises:
        SettingsValidationError: If any key is unknown or any value invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    if yaml_path is None:
        return DEFAULT_SETTINGS
    raw = yaml_path.read_text(encoding="utf-8")
    data = yaml.safe_load(raw)
    if data is None:
        data = {}
    validate_settings(data)

    aliases = dict(DEFAULT_FIELD_ALIASES)
    for logical, names in (data.get("field_aliases") or {}).items():
        aliases[logical] = _clean_aliases(names)

    defaults = DEFAULT_SETTINGS
    return Settings(
        suspect_distance_m=float(data.get("suspect_distance_m", defaults.suspect_distance_m)),
        import_sniff_bytes=int(data.get("import_sniff_bytes", defaults.import_sniff_bytes)),
        import_delimiters=tuple(data.get("import_delimiters", defaults.import_delimiters)),
        rollup_default_limit=int(data.get("rollup_default_limit", defaults.rollup_default_limit)),
        rollup_max_limit=int(data.get("rollup_max_limit", defaults.rollup_max_limit)),
        field_aliases=MappingProxyType(aliases),
        source_hash=hashlib.sha256(raw.encode("utf-8")).hexdigest(),
    )


def validate_settings(data: dict[str, Any]) -> None:
    """Raise SettingsValidationError if data does not match the settings schema.

    Validates:
      - root is a mapping with only known keys
      - suspect_distance_m is a non-negative number
      - import_sniff_bytes and limits are positive integers,
        rollup_default_limit <= rollup_max_limit
      - import_delimiters is a non-empty list of distinct single characters
      - field_aliases maps known logical fields to non-empty string lists
    """
    if not isinstance(data, dict):
        raise SettingsValidationError("YAML root must be a mapping.")

    unknown = set(data.keys()) - VALID_SETTINGS_KEYS
    if unknown:
        raise SettingsValidationError(f"Unknown settings keys: {sorted(unknown)}")

    if "suspect_distance_m" in data:
        val = data["suspect_distance_m"]
        if isinstance(val, bool) or not isinstance(val, (int, float)):
            raise SettingsValidationError(
                f"suspect_distance_m value '{val}' is not numeric."
            )
        if val < 0:
            raise SettingsValidationError(
                f"suspect_distance_m value {val} must be >= 0."
            )

    for key in ("import_sniff_bytes", "rollup_default_limit", "rollup_max_limit"):
        if key not in data:
            continue
        val = data[key]
        if isinstance(val, bool) or not isinstance(val, int) or val < 1:
            raise SettingsValidationError(f"'{key}' value '{val}' must be a positive integer.")

    default_limit = data.get("rollup_default_limit", DEFAULT_SETTINGS.rollup_default_limit)
    max_limit = data.get("rollup_max_limit", DEFAULT_SETTINGS.rollup_max_limit)
    if default_limit > max_limit:
        raise SettingsValidationError(
            f"'rollup_default_limit' ({default_limit}) must be <= "
            f"'rollup_max_limit' ({max_limit})."
        )

    if "import_delimiters" in data:
        delims = data["import_delimiters"]
        if not isinstance(delims, list) or not delims:
            raise SettingsValidationError("'import_delimiters' must be a non-empty list.")
        for d in delims:
            if not isinstance(d, str) or len(d) != 1:
                raise SettingsValidationError(
                    f"import delimiter {d!r} must be a single character."
                )
        if len(set(delims)) != len(delims):
            raise SettingsValidationError("'import_delimiters' contains duplicates.")

    aliases = data.get("field_aliases")
    if aliases is not None:
        if not isinstance(aliases, dict):
            raise SettingsValidationError("'field_aliases' must be a mapping.")
        for logical, names in aliases.items():
            if logical not in DEFAULT_FIELD_ALIASES:
                raise SettingsValidationError(f"Unknown alias field '{logical}'.")
            if (
                not isinstance(names, list)
                or not names
                or not all(isinstance(n, str) and n.strip() for n in names)
            ):
                raise SettingsValidationError(
                    f"Aliases for '{logical}' must be a non-empty list of strings."
                )
