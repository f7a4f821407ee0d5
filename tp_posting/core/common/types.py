"""Data contracts of the posting engine (core-only, no I/O).

This module holds the records the engine reads and writes. It contains no
decision logic beyond field-level guards: every other module builds on these
frozen dataclasses so storage rows and API payloads are converted exactly once.

Example:
    >>> slot = Slot(school_id=5, group_number=1, visit_number=2)
    >>> slot.key
    (5, 1, 2)
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from numbers import Number
from typing import Any, Mapping, Tuple

from .errors import ValidationError
from .reasons import ReasonCode

__all__ = [
    "SlotKey",
    "natural_key",
    "PostingStatus",
    "LocationCategory",
    "PostingType",
    "Rank",
    "SessionPolicy",
    "Supervisor",
    "School",
    "Group",
    "ClusterMember",
    "Slot",
    "PostingCandidate",
    "AllowanceBreakdown",
    "Posting",
    "DeanAllocation",
    "AuthorContext",
    "coerce_int",
    "coerce_positive_int",
]

SlotKey = Tuple[int, int, int]

_NUM = re.compile(r"(\d+)")


def natural_key(s: object) -> Tuple[object, ...]:
    """Natural sort key so that ``SUP-2`` sorts before ``SUP-10``.

    Example::

        >>> natural_key("SUP-2") < natural_key("SUP-10")
        True
    """

    text = str(s if s is not None else "").strip()
    if not text:
        return ("",)
    parts: list[object] = []
    for token in _NUM.split(text):
        if not token:
            continue
        if token.isdecimal():
            if not parts:
                parts.append("")
            parts.append(int(token))
        else:
            parts.append(token.lower())
    return tuple(parts) if parts else ("",)


def coerce_int(name: str, value: object) -> int:
    """Turn ``value`` into an int or raise :class:`ValidationError`."""

    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer", code=ReasonCode.INVALID_INPUT)
    if isinstance(value, Number):
        numeric = float(value)  # type: ignore[arg-type]
        if not numeric.is_integer():
            raise ValidationError(f"{name} must be an integer", code=ReasonCode.INVALID_INPUT)
        result = int(numeric)
    else:
        text = str(value if value is not None else "").strip()
        if not text.lstrip("-").isdigit():
            raise ValidationError(f"{name} must be an integer", code=ReasonCode.INVALID_INPUT)
        result = int(text)
    return result


def coerce_positive_int(name: str, value: object) -> int:
    """Turn ``value`` into an int >= 1 or raise :class:`ValidationError`."""

    result = coerce_int(name, value)
    if result < 1:
        raise ValidationError(f"{name} must be >= 1", code=ReasonCode.INVALID_INPUT)
    return result


def _non_negative(name: str, value: float) -> float:
    numeric = float(value)
    if numeric < 0:
        raise ValidationError(f"{name} must be >= 0", code=ReasonCode.INVALID_INPUT)
    return numeric


class PostingStatus(StrEnum):
    ACTIVE = "active"
    CANCELLED = "cancelled"


class LocationCategory(StrEnum):
    INSIDE = "INSIDE"
    OUTSIDE = "OUTSIDE"


class PostingType(StrEnum):
    MULTIPOSTING = "multiposting"
    AUTO = "auto"


@dataclass(frozen=True, slots=True)
class Rank:
    """Allowance rate card of a supervisor rank."""

    id: int
    name: str = ""
    local_running_allowance: float = 0.0
    transport_per_km: float = 0.0
    dsa: float = 0.0
    dta: float = 0.0
    tetfund: float = 0.0
    other_allowances: Mapping[str, float] = field(default_factory=dict)
    priority_number: int = 99


@dataclass(frozen=True, slots=True)
class SessionPolicy:
    """Read-only allowance and capacity configuration of one session.

    ``max_postings_per_supervisor`` is optional; when unset the supervisor
    ceiling is ``max_supervision_visits``.
    """

    session_id: int
    inside_distance_threshold_km: float = 10.0
    dsa_enabled: bool = True
    dsa_min_distance_km: float = 11.0
    dsa_max_distance_km: float = 30.0
    dsa_percentage: float = 50.0
    max_supervision_visits: int = 3
    max_postings_per_supervisor: int | None = None

    def __post_init__(self) -> None:
        if not 0.0 <= float(self.dsa_percentage) <= 100.0:
            raise ValidationError(
                "dsa_percentage must be between 0 and 100", code=ReasonCode.INVALID_INPUT
            )
        if self.dsa_min_distance_km > self.dsa_max_distance_km:
            raise ValidationError(
                "dsa_min_distance_km must not exceed dsa_max_distance_km",
                code=ReasonCode.INVALID_INPUT,
            )
        if self.max_supervision_visits < 1:
            raise ValidationError(
                "max_supervision_visits must be >= 1", code=ReasonCode.INVALID_INPUT
            )

    @property
    def supervisor_ceiling(self) -> int:
        return int(self.max_postings_per_supervisor or self.max_supervision_visits)


@dataclass(frozen=True, slots=True)
class Supervisor:
    id: int
    name: str
    rank_id: int | None = None
    faculty_id: int | None = None
    is_dean: bool = False
    is_active: bool = True
    priority_number: int = 99


@dataclass(frozen=True, slots=True)
class School:
    id: int
    name: str
    distance_km: float = 0.0
    route_id: int | None = None
    lga: str | None = None


@dataclass(frozen=True, slots=True)
class Group:
    """Student cohort of one school in one session with its open visits."""

    school_id: int
    session_id: int
    group_number: int
    student_count: int
    available_visits: Tuple[int, ...] = ()
    is_merged_secondary: bool = False


@dataclass(frozen=True, slots=True)
class ClusterMember:
    """A school/group merged under another school's group."""

    school_id: int
    group_number: int


@dataclass(frozen=True, slots=True)
class Slot:
    """One ``(school, group, visit)`` triple that can hold one active posting."""

    school_id: int
    group_number: int
    visit_number: int
    distance_km: float = 0.0
    school_name: str = ""
    route_id: int | None = None
    lga: str | None = None

    @property
    def key(self) -> SlotKey:
        return (self.school_id, self.group_number, self.visit_number)

    def describe(self) -> str:
        name = self.school_name or f"school {self.school_id}"
        return f"{name} Group {self.group_number} Visit {self.visit_number}"


@dataclass(frozen=True, slots=True)
class PostingCandidate:
    """A prospective primary posting submitted by a caller."""

    session_id: int
    supervisor_id: int
    school_id: int
    group_number: int
    visit_number: int

    @property
    def slot_key(self) -> SlotKey:
        return (self.school_id, self.group_number, self.visit_number)

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any], *, session_id: int) -> "PostingCandidate":
        """Build a candidate from a request row, coercing integer fields.

        Raises:
            ValidationError: when a required field is missing or not an integer, or
                when an identifier is below 1. The visit range is left to the validator.
        """

        values: dict[str, int] = {}
        for name in ("supervisor_id", "school_id", "group_number", "visit_number"):
            if name not in payload or payload[name] is None:
                raise ValidationError(f"{name} is required", code=ReasonCode.INVALID_INPUT)
            coerce = coerce_int if name == "visit_number" else coerce_positive_int
            values[name] = coerce(name, payload[name])
        return cls(session_id=coerce_positive_int("session_id", session_id), **values)

    def as_dict(self) -> dict[str, int]:
        return {
            "session_id": self.session_id,
            "supervisor_id": self.supervisor_id,
            "school_id": self.school_id,
            "group_number": self.group_number,
            "visit_number": self.visit_number,
        }


@dataclass(frozen=True, slots=True)
class AllowanceBreakdown:
    """Per-visit monetary breakdown of one posting."""

    local_running: float
    transport: float
    dsa: float
    dta: float
    tetfund: float
    other: float
    per_visit_total: float
    grand_total: float
    visit_count: int
    distance_km: float
    category: LocationCategory
    rationale: str

    @property
    def is_zero(self) -> bool:
        return self.per_visit_total == 0 and self.grand_total == 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "local_running": self.local_running,
            "transport": self.transport,
            "dsa": self.dsa,
            "dta": self.dta,
            "tetfund": self.tetfund,
            "other": self.other,
            "per_visit_total": self.per_visit_total,
            "grand_total": self.grand_total,
            "visit_count": self.visit_count,
            "distance_km": self.distance_km,
            "category": str(self.category),
            "rationale": self.rationale,
        }


@dataclass(frozen=True, slots=True)
class Posting:
    """One supervisor's assignment to one group visit.

    ``id`` and ``created_at`` are ``None`` until the storage collaborator
    persists the record.
    """

    session_id: int
    supervisor_id: int
    school_id: int
    group_number: int
    visit_number: int
    distance_km: float
    is_primary: bool
    allowance: AllowanceBreakdown
    merged_with_posting_id: int | None = None
    status: PostingStatus = PostingStatus.ACTIVE
    rank_id: int | None = None
    posting_type: PostingType = PostingType.MULTIPOSTING
    posted_by: int | None = None
    created_by_dean_id: int | None = None
    auto_posting_batch_id: int | None = None
    id: int | None = None
    created_at: datetime | None = None

    @property
    def slot_key(self) -> SlotKey:
        return (self.school_id, self.group_number, self.visit_number)

    @property
    def is_active(self) -> bool:
        return self.status is PostingStatus.ACTIVE

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "supervisor_id": self.supervisor_id,
            "school_id": self.school_id,
            "group_number": self.group_number,
            "visit_number": self.visit_number,
            "distance_km": self.distance_km,
            "is_primary": self.is_primary,
            "merged_with_posting_id": self.merged_with_posting_id,
            "status": str(self.status),
            "rank_id": self.rank_id,
            "posting_type": str(self.posting_type),
            "posted_by": self.posted_by,
            "created_by_dean_id": self.created_by_dean_id,
            "auto_posting_batch_id": self.auto_posting_batch_id,
            "allowance": self.allowance.as_dict(),
        }


@dataclass(frozen=True, slots=True)
class DeanAllocation:
    """Posting quota delegated to a dean for one session."""

    session_id: int
    dean_user_id: int
    allocated_postings: int
    used_postings: int = 0
    faculty_id: int | None = None
    notes: str | None = None
    allocated_by: int | None = None
    id: int | None = None

    @property
    def remaining(self) -> int:
        return self.allocated_postings - self.used_postings

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "dean_user_id": self.dean_user_id,
            "faculty_id": self.faculty_id,
            "allocated_postings": self.allocated_postings,
            "used_postings": self.used_postings,
            "remaining": self.remaining,
            "notes": self.notes,
            "allocated_by": self.allocated_by,
        }


@dataclass(frozen=True, slots=True)
class AuthorContext:
    """Who submits a batch; deans without admin rights are quota-bound."""

    user_id: int
    is_dean: bool = False
    is_admin: bool = False
    faculty_id: int | None = None

    @property
    def quota_bound(self) -> bool:
        return self.is_dean and not self.is_admin

    @classmethod
    def admin(cls, user_id: int) -> "AuthorContext":
        return cls(user_id=user_id, is_admin=True)
