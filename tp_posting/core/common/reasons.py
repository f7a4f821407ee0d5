"""Single source of truth for reason codes and their messages (core-only).

Every message shown to a caller (validation errors, batch row failures,
unfilled auto-posting slots, allowance rationale) is produced here so that the
same situation always reads the same way.

Example::

    >>> build_reason(ReasonCode.DUPLICATE_IN_BATCH, row=1).message
    'Duplicate of row 1 in this batch (same school, group and visit).'
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Mapping

__all__ = ["ReasonCode", "Reason", "build_reason", "reason_message"]


class ReasonCode(StrEnum):
    """Stable codes for every reportable outcome."""

    OK = "OK"
    INVALID_INPUT = "INVALID_INPUT"
    NOT_FOUND = "NOT_FOUND"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    SUPERVISOR_NOT_FOUND = "SUPERVISOR_NOT_FOUND"
    SUPERVISOR_INACTIVE = "SUPERVISOR_INACTIVE"
    SCHOOL_NOT_FOUND = "SCHOOL_NOT_FOUND"
    RANK_NOT_FOUND = "RANK_NOT_FOUND"
    GROUP_NOT_FOUND = "GROUP_NOT_FOUND"
    VISIT_OUT_OF_RANGE = "VISIT_OUT_OF_RANGE"
    SLOT_TAKEN = "SLOT_TAKEN"
    SLOT_TAKEN_AT_COMMIT = "SLOT_TAKEN_AT_COMMIT"
    DUPLICATE_IN_BATCH = "DUPLICATE_IN_BATCH"
    SUPERVISOR_AT_CEILING = "SUPERVISOR_AT_CEILING"
    SUPERVISOR_NEAR_CEILING = "SUPERVISOR_NEAR_CEILING"
    OUTSIDE_FACULTY = "OUTSIDE_FACULTY"
    QUOTA_MISSING = "QUOTA_MISSING"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    QUOTA_EXISTS = "QUOTA_EXISTS"
    QUOTA_BELOW_USED = "QUOTA_BELOW_USED"
    QUOTA_OVER_ALLOCATABLE = "QUOTA_OVER_ALLOCATABLE"
    QUOTA_IN_USE = "QUOTA_IN_USE"
    NOT_A_DEAN = "NOT_A_DEAN"
    NO_ELIGIBLE_SUPERVISOR = "NO_ELIGIBLE_SUPERVISOR"
    ASSIGNMENT_LIMIT_REACHED = "ASSIGNMENT_LIMIT_REACHED"
    SUPERVISORS_EXHAUSTED = "SUPERVISORS_EXHAUSTED"
    BATCH_NOT_COMPLETED = "BATCH_NOT_COMPLETED"
    BATCH_ALREADY_ROLLED_BACK = "BATCH_ALREADY_ROLLED_BACK"
    POSTING_ALREADY_CANCELLED = "POSTING_ALREADY_CANCELLED"
    STORAGE_UNAVAILABLE = "STORAGE_UNAVAILABLE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


@dataclass(frozen=True, slots=True)
class Reason:
    """A reason code with its rendered message."""

    code: ReasonCode
    message: str


_REASON_MESSAGES: Mapping[ReasonCode, str] = {
    ReasonCode.OK: "OK.",
    ReasonCode.INVALID_INPUT: "Invalid input: {detail}.",
    ReasonCode.NOT_FOUND: "{entity} {ident} not found.",
    ReasonCode.SESSION_NOT_FOUND: "Session {session_id} not found.",
    ReasonCode.SUPERVISOR_NOT_FOUND: "Supervisor {supervisor_id} not found.",
    ReasonCode.SUPERVISOR_INACTIVE: "Supervisor {supervisor_id} is not active.",
    ReasonCode.SCHOOL_NOT_FOUND: "School {school_id} not found.",
    ReasonCode.RANK_NOT_FOUND: "Rank {rank_id} not found for supervisor {supervisor_id}.",
    ReasonCode.GROUP_NOT_FOUND: "Group {group_number} does not exist for school {school_id}.",
    ReasonCode.VISIT_OUT_OF_RANGE: "Visit {visit_number} is outside 1..{max_visits}.",
    ReasonCode.SLOT_TAKEN: "Group {group_number}, Visit {visit_number} is already assigned to {holder}.",
    ReasonCode.SLOT_TAKEN_AT_COMMIT: (
        "Group {group_number}, Visit {visit_number} was assigned by another request before commit."
    ),
    ReasonCode.DUPLICATE_IN_BATCH: "Duplicate of row {row} in this batch (same school, group and visit).",
    ReasonCode.SUPERVISOR_AT_CEILING: "Supervisor has reached the maximum posting limit ({ceiling}).",
    ReasonCode.SUPERVISOR_NEAR_CEILING: (
        "Supervisor already holds {current} posting(s); the session limit is {ceiling}."
    ),
    ReasonCode.OUTSIDE_FACULTY: "Supervisor {supervisor_id} is not in your faculty.",
    ReasonCode.QUOTA_MISSING: "Dean {dean_user_id} has no posting allocation for session {session_id}.",
    ReasonCode.QUOTA_EXCEEDED: "You can only create {remaining} more posting(s). Requested: {requested}.",
    ReasonCode.QUOTA_EXISTS: "Dean {dean_user_id} already has an allocation for session {session_id}.",
    ReasonCode.QUOTA_BELOW_USED: "Cannot reduce allocation below used postings ({used}).",
    ReasonCode.QUOTA_OVER_ALLOCATABLE: (
        "Total allocations ({total}) cannot exceed primary postings ({primary}). Available: {available}."
    ),
    ReasonCode.QUOTA_IN_USE: (
        "Cannot delete allocation with used postings ({used} used). Set allocation to {used} instead."
    ),
    ReasonCode.NOT_A_DEAN: "User {user_id} must be a dean to receive a posting allocation.",
    ReasonCode.NO_ELIGIBLE_SUPERVISOR: "No eligible supervisor could take this slot.",
    ReasonCode.ASSIGNMENT_LIMIT_REACHED: "Assignment limit ({limit}) reached before this slot.",
    ReasonCode.SUPERVISORS_EXHAUSTED: "All supervisors are at capacity.",
    ReasonCode.BATCH_NOT_COMPLETED: "Only completed auto-posting batches can be rolled back.",
    ReasonCode.BATCH_ALREADY_ROLLED_BACK: "This batch has already been rolled back.",
    ReasonCode.POSTING_ALREADY_CANCELLED: "Posting {posting_id} is already cancelled.",
    ReasonCode.STORAGE_UNAVAILABLE: "Storage is unavailable: {detail}.",
    ReasonCode.INTERNAL_ERROR: "Internal error: {detail}.",
}


class _Lenient(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def reason_message(code: ReasonCode, **context: Any) -> str:
    """Render the message template of ``code`` with ``context``.

    Unknown placeholders are left in place rather than raising.
    """

    try:
        template = _REASON_MESSAGES[code]
    except KeyError as exc:  # pragma: no cover - guard for future codes
        raise ValueError(f"Reason code '{code}' has no message") from exc
    return template.format_map(_Lenient(context))


def build_reason(code: ReasonCode, **context: Any) -> Reason:
    return Reason(code=code, message=reason_message(code, **context))
