"""Posting validator: read-only checks of one candidate against committed state.

Checks run in a fixed order and stop at the first failure:

1. session policy exists, supervisor exists and is active;
2. the group exists for ``(school, session, group_number)``;
3. ``1 <= visit_number <= max_supervision_visits``;
4. the visit is still in the group's ``available_visits``;
5. the supervisor ceiling, applied per :class:`CeilingMode`.

The validator never reserves a slot. Storage enforces uniqueness at write time
and callers must treat a write-time violation as a conflict.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from tp_posting.core.common.errors import (
    ConflictError,
    NotFoundError,
    PostingEngineError,
    ValidationError,
)
from tp_posting.core.common.reasons import ReasonCode, reason_message
from tp_posting.core.common.types import (
    Group,
    Posting,
    PostingCandidate,
    SessionPolicy,
    Supervisor,
)
from tp_posting.core.policy_loader import CeilingMode

__all__ = ["PostingReader", "ValidationResult", "PostingValidator"]


class PostingReader(Protocol):
    """Read side of the storage collaborator used by the validator."""

    def get_session_policy(self, session_id: int) -> SessionPolicy | None: ...

    def get_supervisor(self, supervisor_id: int) -> Supervisor | None: ...

    def get_group(self, school_id: int, session_id: int, group_number: int) -> Group | None: ...

    def find_active_posting(
        self, school_id: int, group_number: int, visit_number: int, session_id: int
    ) -> Posting | None: ...

    def count_active_postings(self, supervisor_id: int, session_id: int) -> int: ...


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    error_kind: str | None = None
    code: ReasonCode | None = None

    def as_dict(self) -> dict[str, object]:
        return {
            "valid": self.valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "error_kind": self.error_kind,
            "code": str(self.code) if self.code else None,
        }


class PostingValidator:
    """Validate posting candidates against a :class:`PostingReader`.

    Args:
        reader: Storage collaborator; only read methods are used.
        ceiling_mode: How the per-supervisor ceiling is applied.
    """

    def __init__(self, reader: PostingReader, *, ceiling_mode: CeilingMode = CeilingMode.ENFORCED) -> None:
        self._reader = reader
        self._ceiling_mode = CeilingMode(ceiling_mode)

    @property
    def ceiling_mode(self) -> CeilingMode:
        return self._ceiling_mode

    def load_policy(self, session_id: int) -> SessionPolicy:
        policy = self._reader.get_session_policy(session_id)
        if policy is None:
            raise NotFoundError(
                reason_message(ReasonCode.SESSION_NOT_FOUND, session_id=session_id),
                code=ReasonCode.SESSION_NOT_FOUND,
            )
        return policy

    def check(self, candidate: PostingCandidate, *, policy: SessionPolicy | None = None) -> list[str]:
        """Raise on the first failed check; return warnings otherwise.

        Raises:
            NotFoundError: unknown session, supervisor or group.
            ValidationError: visit out of range.
            ConflictError: slot taken, or supervisor at an enforced ceiling.
        """

        if policy is None:
            policy = self.load_policy(candidate.session_id)

        supervisor = self._reader.get_supervisor(candidate.supervisor_id)
        if supervisor is None:
            raise NotFoundError(
                reason_message(ReasonCode.SUPERVISOR_NOT_FOUND, supervisor_id=candidate.supervisor_id),
                code=ReasonCode.SUPERVISOR_NOT_FOUND,
            )
        if not supervisor.is_active:
            raise NotFoundError(
                reason_message(ReasonCode.SUPERVISOR_INACTIVE, supervisor_id=candidate.supervisor_id),
                code=ReasonCode.SUPERVISOR_INACTIVE,
            )

        group = self._reader.get_group(candidate.school_id, candidate.session_id, candidate.group_number)
        if group is None:
            raise NotFoundError(
                reason_message(
                    ReasonCode.GROUP_NOT_FOUND,
                    group_number=candidate.group_number,
                    school_id=candidate.school_id,
                ),
                code=ReasonCode.GROUP_NOT_FOUND,
            )

        if not 1 <= candidate.visit_number <= policy.max_supervision_visits:
            raise ValidationError(
                reason_message(
                    ReasonCode.VISIT_OUT_OF_RANGE,
                    visit_number=candidate.visit_number,
                    max_visits=policy.max_supervision_visits,
                ),
                code=ReasonCode.VISIT_OUT_OF_RANGE,
            )

        if candidate.visit_number not in group.available_visits:
            raise ConflictError(
                reason_message(
                    ReasonCode.SLOT_TAKEN,
                    group_number=candidate.group_number,
                    visit_number=candidate.visit_number,
                    holder=self._describe_holder(candidate),
                ),
                code=ReasonCode.SLOT_TAKEN,
                details={"slot": list(candidate.slot_key)},
            )

        return self._check_ceiling(candidate, policy)

    def validate(self, candidate: PostingCandidate, *, policy: SessionPolicy | None = None) -> ValidationResult:
        """Non-raising form of :meth:`check`."""

        try:
            warnings = self.check(candidate, policy=policy)
        except PostingEngineError as exc:
            return ValidationResult(
                valid=False,
                errors=[exc.message],
                error_kind=exc.kind,
                code=exc.code,
            )
        return ValidationResult(valid=True, warnings=warnings, code=ReasonCode.OK)

    def _check_ceiling(self, candidate: PostingCandidate, policy: SessionPolicy) -> list[str]:
        if self._ceiling_mode is CeilingMode.OFF:
            return []
        ceiling = policy.supervisor_ceiling
        current = self._reader.count_active_postings(candidate.supervisor_id, candidate.session_id)
        if current < ceiling:
            return []
        if self._ceiling_mode is CeilingMode.ENFORCED:
            raise ConflictError(
                reason_message(ReasonCode.SUPERVISOR_AT_CEILING, ceiling=ceiling),
                code=ReasonCode.SUPERVISOR_AT_CEILING,
                details={"current": current, "ceiling": ceiling},
            )
        return [reason_message(ReasonCode.SUPERVISOR_NEAR_CEILING, current=current, ceiling=ceiling)]

    def _describe_holder(self, candidate: PostingCandidate) -> str:
        holder = self._reader.find_active_posting(
            candidate.school_id,
            candidate.group_number,
            candidate.visit_number,
            candidate.session_id,
        )
        if holder is None:
            return "another supervisor"
        supervisor = self._reader.get_supervisor(holder.supervisor_id)
        if supervisor is None or not supervisor.name:
            return f"supervisor {holder.supervisor_id}"
        return supervisor.name
