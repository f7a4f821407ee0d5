"""Engine policy loader (core): cached and version-gated.

Architecture note: the core never needs to touch the file system; a caller that
already holds the JSON payload can pass it to :func:`parse_policy_dict`.
:func:`load_policy` is the convenience path that reads ``config/engine_policy.json``
and caches the parsed result per (path, mtime).

Example::

    >>> policy = parse_policy_dict({"version": "1.2.0"})
    >>> policy.supervisor_ceiling_mode
    <CeilingMode.ENFORCED: 'enforced'>
"""

from __future__ import annotations

import json
import warnings
from dataclasses import dataclass
from enum import StrEnum
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Literal, Mapping, Optional

from tp_posting.core.common.types import SessionPolicy

VersionMismatchMode = Literal["raise", "warn"]

DEFAULT_POLICY_VERSION = "1.2.0"
DEFAULT_POLICY_PATH = Path("config/engine_policy.json")

_VALID_SLOT_ORDERINGS: tuple[str, ...] = (
    "school_group_visit",
    "visit_first",
    "route_based",
    "lga_based",
)

_DEFAULT_SESSION: Mapping[str, object] = {
    "inside_distance_threshold_km": 10.0,
    "dsa_enabled": True,
    "dsa_min_distance_km": 11.0,
    "dsa_max_distance_km": 30.0,
    "dsa_percentage": 50.0,
    "max_supervision_visits": 3,
}

__all__ = [
    "CeilingMode",
    "SessionDefaults",
    "EnginePolicy",
    "DEFAULT_POLICY_VERSION",
    "DEFAULT_POLICY_PATH",
    "parse_policy_dict",
    "load_policy",
]


class CeilingMode(StrEnum):
    """How the per-supervisor posting ceiling is applied by the validator."""

    ENFORCED = "enforced"
    ADVISORY = "advisory"
    OFF = "off"


@dataclass(frozen=True)
class SessionDefaults:
    """Fallback values for session rows that leave a policy column empty."""

    inside_distance_threshold_km: float
    dsa_enabled: bool
    dsa_min_distance_km: float
    dsa_max_distance_km: float
    dsa_percentage: float
    max_supervision_visits: int

    def session_policy(self, session_id: int, **overrides: object) -> SessionPolicy:
        """Build a :class:`SessionPolicy`, ignoring ``None`` overrides."""

        values: Dict[str, Any] = {
            "inside_distance_threshold_km": self.inside_distance_threshold_km,
            "dsa_enabled": self.dsa_enabled,
            "dsa_min_distance_km": self.dsa_min_distance_km,
            "dsa_max_distance_km": self.dsa_max_distance_km,
            "dsa_percentage": self.dsa_percentage,
            "max_supervision_visits": self.max_supervision_visits,
        }
        max_postings = overrides.pop("max_postings_per_supervisor", None)
        for key, value in overrides.items():
            if key not in values:
                raise KeyError(f"Unknown session policy field '{key}'")
            if value is not None:
                values[key] = value
        return SessionPolicy(
            session_id=session_id,
            inside_distance_threshold_km=float(values["inside_distance_threshold_km"]),
            dsa_enabled=bool(values["dsa_enabled"]),
            dsa_min_distance_km=float(values["dsa_min_distance_km"]),
            dsa_max_distance_km=float(values["dsa_max_distance_km"]),
            dsa_percentage=float(values["dsa_percentage"]),
            max_supervision_visits=int(values["max_supervision_visits"]),
            max_postings_per_supervisor=int(max_postings) if max_postings else None,  # type: ignore[call-overload]
        )


@dataclass(frozen=True)
class EnginePolicy:
    """Parsed engine configuration."""

    version: str
    session_defaults: SessionDefaults
    supervisor_ceiling_mode: CeilingMode
    default_slot_ordering: str
    priority_enabled: bool
    default_max_postings_per_supervisor: int | None
    max_batch_size: int


def _ensure_bool(name: str, value: object) -> bool:
    if not isinstance(value, bool):
        raise TypeError(f"{name} must be a boolean")
    return value


def _ensure_number(name: str, value: object) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"{name} must be a number")
    return float(value)


def _normalize_ceiling_mode(value: object) -> CeilingMode:
    text = str(value if value is not None else "enforced").strip().lower()
    try:
        return CeilingMode(text)
    except ValueError as exc:
        raise ValueError(
            "supervisor_ceiling_mode must be one of " + ", ".join(m.value for m in CeilingMode)
        ) from exc


def _normalize_slot_ordering(value: object) -> str:
    text = str(value if value is not None else "school_group_visit").strip().lower()
    if text not in _VALID_SLOT_ORDERINGS:
        raise ValueError("default_slot_ordering must be one of " + ", ".join(_VALID_SLOT_ORDERINGS))
    return text


def _normalize_session_defaults(raw: object) -> SessionDefaults:
    if raw is None:
        raw = {}
    if not isinstance(raw, Mapping):
        raise TypeError("session_defaults must be a mapping")
    merged = {**_DEFAULT_SESSION, **raw}
    unknown = sorted(set(merged) - set(_DEFAULT_SESSION))
    if unknown:
        raise ValueError("Unknown session_defaults keys: " + ", ".join(unknown))
    percentage = _ensure_number("dsa_percentage", merged["dsa_percentage"])
    if not 0.0 <= percentage <= 100.0:
        raise ValueError("dsa_percentage must be between 0 and 100")
    dsa_min = _ensure_number("dsa_min_distance_km", merged["dsa_min_distance_km"])
    dsa_max = _ensure_number("dsa_max_distance_km", merged["dsa_max_distance_km"])
    if dsa_min > dsa_max:
        raise ValueError("dsa_min_distance_km must not exceed dsa_max_distance_km")
    visits = merged["max_supervision_visits"]
    if isinstance(visits, bool) or not isinstance(visits, int) or visits < 1:
        raise ValueError("max_supervision_visits must be a positive integer")
    return SessionDefaults(
        inside_distance_threshold_km=_ensure_number(
            "inside_distance_threshold_km", merged["inside_distance_threshold_km"]
        ),
        dsa_enabled=_ensure_bool("dsa_enabled", merged["dsa_enabled"]),
        dsa_min_distance_km=dsa_min,
        dsa_max_distance_km=dsa_max,
        dsa_percentage=percentage,
        max_supervision_visits=visits,
    )


def _normalize_optional_positive(name: str, value: object) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValueError(f"{name} must be a positive integer or null")
    return value


def _parse_semver(value: str) -> tuple[int, int, int]:
    try:
        major, minor, patch = value.split(".")
        return int(major), int(minor), int(patch)
    except (ValueError, TypeError) as exc:
        raise ValueError(f"Invalid semantic version: '{value}'") from exc


def _prepare_policy_payload(
    data: Mapping[str, object],
    expected_version: Optional[str],
    mode: VersionMismatchMode,
) -> Dict[str, object]:
    """Apply the version gate: same major version, exact match unless ``mode`` is ``warn``."""

    payload: Dict[str, object] = dict(data)
    if expected_version is None:
        return payload

    version = str(payload.get("version", ""))
    if not version:
        raise ValueError("Policy payload missing 'version'")
    if version == expected_version:
        return payload

    loaded_semver = _parse_semver(version)
    expected_semver = _parse_semver(expected_version)
    message = f"Policy version mismatch: loaded='{version}' expected='{expected_version}'"
    if loaded_semver[0] != expected_semver[0]:
        raise ValueError(message + " (major incompatible)")
    if mode == "raise":
        raise ValueError(message)
    if mode != "warn":
        raise ValueError(f"Unsupported version mismatch mode: {mode}")
    warnings.warn(message, RuntimeWarning, stacklevel=3)
    return payload


def _to_policy(data: Mapping[str, object]) -> EnginePolicy:
    max_batch = data.get("max_batch_size", 500)
    if isinstance(max_batch, bool) or not isinstance(max_batch, int) or max_batch < 1:
        raise ValueError("max_batch_size must be a positive integer")
    return EnginePolicy(
        version=str(data["version"]),
        session_defaults=_normalize_session_defaults(data.get("session_defaults")),
        supervisor_ceiling_mode=_normalize_ceiling_mode(data.get("supervisor_ceiling_mode")),
        default_slot_ordering=_normalize_slot_ordering(data.get("default_slot_ordering")),
        priority_enabled=_ensure_bool("priority_enabled", data.get("priority_enabled", False)),
        default_max_postings_per_supervisor=_normalize_optional_positive(
            "default_max_postings_per_supervisor",
            data.get("default_max_postings_per_supervisor", 50),
        ),
        max_batch_size=max_batch,
    )


def parse_policy_dict(
    data: Mapping[str, object],
    expected_version: Optional[str] = DEFAULT_POLICY_VERSION,
    on_version_mismatch: VersionMismatchMode = "raise",
) -> EnginePolicy:
    """Pure path from an already-decoded mapping to :class:`EnginePolicy`."""

    prepared = _prepare_policy_payload(data, expected_version, on_version_mismatch)
    return _to_policy(prepared)


@lru_cache(maxsize=8)
def _load_policy_cached(
    resolved_path: str,
    raw: str,
    mtime_ns: int,
    expected_version: Optional[str],
    on_version_mismatch: VersionMismatchMode,
) -> EnginePolicy:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON in policy file: {resolved_path}") from exc
    if not isinstance(data, Mapping):
        raise ValueError(f"Policy file must contain a JSON object: {resolved_path}")
    return parse_policy_dict(data, expected_version, on_version_mismatch)


def load_policy(
    path: str | Path = DEFAULT_POLICY_PATH,
    *,
    expected_version: Optional[str] = DEFAULT_POLICY_VERSION,
    on_version_mismatch: VersionMismatchMode = "raise",
) -> EnginePolicy:
    """Load the engine policy from JSON; results are cached per path and mtime."""

    policy_path = Path(path)
    try:
        raw = policy_path.read_text(encoding="utf-8")
        mtime_ns = policy_path.stat().st_mtime_ns
    except FileNotFoundError as exc:
        raise FileNotFoundError(f"Policy file not found: {policy_path}") from exc
    return _load_policy_cached(
        str(policy_path.resolve()),
        raw,
        mtime_ns,
        expected_version,
        on_version_mismatch,
    )


load_policy.cache_clear = _load_policy_cached.cache_clear  # type: ignore[attr-defined]
