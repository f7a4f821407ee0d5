"""Domain errors of the posting engine.

Every error carries a :class:`~tp_posting.core.common.reasons.ReasonCode` so the
service and CLI layers can map it to a transport status without parsing text.

Example::

    >>> err = ConflictError("Group 1, Visit 2 is already assigned", code=ReasonCode.SLOT_TAKEN)
    >>> err.kind
    'conflict'
"""
from __future__ import annotations

from typing import Any, Mapping

from .reasons import ReasonCode


class DomainError(Exception):
    """Base of every error raised by the core layer."""


class PostingEngineError(DomainError):
    """Recoverable, caller-facing error with a stable reason code.

    Attributes:
        message: Human readable text, safe to show to the end user.
        code: Stable reason code for programmatic handling.
        details: Optional structured context (row number, slot, ids).
    """

    kind = "error"
    default_code = ReasonCode.INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        *,
        code: ReasonCode | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details: dict[str, Any] = dict(details or {})

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "kind": self.kind,
            "code": str(self.code),
            "message": self.message,
        }
        if self.details:
            payload["details"] = dict(self.details)
        return payload


class ValidationError(PostingEngineError):
    """Malformed or out-of-range input (400-equivalent)."""

    kind = "validation"
    default_code = ReasonCode.INVALID_INPUT


class NotFoundError(PostingEngineError):
    """Unknown session, group, school, supervisor or record (404-equivalent)."""

    kind = "not_found"
    default_code = ReasonCode.NOT_FOUND


class ConflictError(PostingEngineError):
    """Slot taken, duplicate in batch, quota exceeded or blocked deletion (409-equivalent)."""

    kind = "conflict"
    default_code = ReasonCode.SLOT_TAKEN


class StorageFailure(DomainError):
    """Storage collaborator is unavailable; aborts the whole batch.

    Not a :class:`PostingEngineError`: it is never reported per row.
    """

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause

    def __str__(self) -> str:
        return self.message


__all__ = [
    "DomainError",
    "PostingEngineError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "StorageFailure",
]
