"""Dean quota manager.

Tracks how many primary postings a delegated dean may still create in a
session. ``used_postings`` only moves through :meth:`DeanQuotaManager.consume`
and :meth:`DeanQuotaManager.release`, and never exceeds ``allocated_postings``.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Final, Protocol, Sequence

from tp_posting.core.common.errors import ConflictError, NotFoundError, ValidationError
from tp_posting.core.common.reasons import ReasonCode, reason_message
from tp_posting.core.common.types import DeanAllocation, SessionPolicy, Supervisor

__all__ = ["KEEP_NOTES", "QuotaStore", "PostingStats", "DeanQuotaManager"]

# Passed as ``notes`` to leave an allocation's notes untouched; ``None`` clears them.
KEEP_NOTES: Final = object()


class QuotaStore(Protocol):
    def get_session_policy(self, session_id: int) -> SessionPolicy | None: ...

    def get_supervisor(self, supervisor_id: int) -> Supervisor | None: ...

    def session_group_counts(self, session_id: int) -> tuple[int, int]:
        """Return ``(unique_groups, merged_secondary_groups)`` of a session."""
        ...

    def get_allocation(self, allocation_id: int) -> DeanAllocation | None: ...

    def find_allocation(self, session_id: int, dean_user_id: int) -> DeanAllocation | None: ...

    def list_allocations(self, session_id: int) -> Sequence[DeanAllocation]: ...

    def insert_allocation(self, allocation: DeanAllocation) -> int: ...

    def save_allocation(self, allocation: DeanAllocation) -> None: ...

    def delete_allocation(self, allocation_id: int) -> None: ...


@dataclass(frozen=True)
class PostingStats:
    """Allocatable capacity of a session."""

    session_id: int
    unique_groups: int
    max_supervision_visits: int
    total_postings: int
    merged_postings: int
    primary_postings: int
    total_allocated: int
    total_used: int
    available_to_allocate: int

    def as_dict(self) -> dict[str, int]:
        return {
            "session_id": self.session_id,
            "unique_groups": self.unique_groups,
            "max_supervision_visits": self.max_supervision_visits,
            "total_postings": self.total_postings,
            "merged_postings": self.merged_postings,
            "primary_postings": self.primary_postings,
            "total_allocated": self.total_allocated,
            "total_used": self.total_used,
            "available_to_allocate": self.available_to_allocate,
        }


def _coerce_count(name: str, value: object) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer", code=ReasonCode.INVALID_INPUT)
    if isinstance(value, float) and not value.is_integer():
        raise ValidationError(f"{name} must be an integer", code=ReasonCode.INVALID_INPUT)
    try:
        number = int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{name} must be an integer", code=ReasonCode.INVALID_INPUT) from exc
    if number < 0:
        raise ValidationError(f"{name} must be >= 0", code=ReasonCode.INVALID_INPUT)
    return number


class DeanQuotaManager:
    def __init__(self, store: QuotaStore) -> None:
        self._store = store

    # ------------------------------------------------------------------ stats
    def posting_stats(self, session_id: int) -> PostingStats:
        """Allocatable primary postings of a session.

        ``primary_postings = (unique_groups - merged_secondary_groups) * max_visits``;
        secondary groups are covered by dependent postings and cannot be allocated.
        """

        policy = self._store.get_session_policy(session_id)
        if policy is None:
            raise NotFoundError(
                reason_message(ReasonCode.SESSION_NOT_FOUND, session_id=session_id),
                code=ReasonCode.SESSION_NOT_FOUND,
            )
        unique_groups, merged_groups = self._store.session_group_counts(session_id)
        max_visits = policy.max_supervision_visits
        total = unique_groups * max_visits
        merged = merged_groups * max_visits
        primary = total - merged
        allocations = self._store.list_allocations(session_id)
        allocated = sum(a.allocated_postings for a in allocations)
        used = sum(a.used_postings for a in allocations)
        return PostingStats(
            session_id=session_id,
            unique_groups=unique_groups,
            max_supervision_visits=max_visits,
            total_postings=total,
            merged_postings=merged,
            primary_postings=primary,
            total_allocated=allocated,
            total_used=used,
            available_to_allocate=max(0, primary - allocated),
        )

    def list_allocations(self, session_id: int) -> list[DeanAllocation]:
        return list(self._store.list_allocations(session_id))

    # ------------------------------------------------------------------- CRUD
    def allocate(
        self,
        session_id: int,
        dean_user_id: int,
        allocated_postings: int,
        *,
        faculty_id: int | None = None,
        notes: str | None = None,
        allocated_by: int | None = None,
    ) -> DeanAllocation:
        """Create the allocation of a dean for a session.

        Raises:
            NotFoundError: unknown session or user.
            ValidationError: user is not a dean, or the total would exceed the
                session's allocatable primary postings.
            ConflictError: the dean already has an allocation for the session.
        """

        count = _coerce_count("allocated_postings", allocated_postings)
        dean = self._store.get_supervisor(dean_user_id)
        if dean is None:
            raise NotFoundError(
                reason_message(ReasonCode.NOT_FOUND, entity="User", ident=dean_user_id),
                code=ReasonCode.NOT_FOUND,
            )
        if not dean.is_dean:
            raise ValidationError(
                reason_message(ReasonCode.NOT_A_DEAN, user_id=dean_user_id),
                code=ReasonCode.NOT_A_DEAN,
            )
        if self._store.find_allocation(session_id, dean_user_id) is not None:
            raise ConflictError(
                reason_message(ReasonCode.QUOTA_EXISTS, dean_user_id=dean_user_id, session_id=session_id),
                code=ReasonCode.QUOTA_EXISTS,
            )
        stats = self.posting_stats(session_id)
        self._ensure_allocatable(stats, stats.total_allocated + count)

        allocation = DeanAllocation(
            session_id=session_id,
            dean_user_id=dean_user_id,
            allocated_postings=count,
            used_postings=0,
            faculty_id=faculty_id if faculty_id is not None else dean.faculty_id,
            notes=notes,
            allocated_by=allocated_by,
        )
        new_id = self._store.insert_allocation(allocation)
        return replace(allocation, id=new_id)

    def update_allocation(
        self,
        allocation_id: int,
        allocated_postings: int,
        notes: str | None | object = KEEP_NOTES,
    ) -> DeanAllocation:
        """Change an allocation; it may never drop below what is already used."""

        current = self._require(allocation_id)
        count = _coerce_count("allocated_postings", allocated_postings)
        if count < current.used_postings:
            raise ValidationError(
                reason_message(ReasonCode.QUOTA_BELOW_USED, used=current.used_postings),
                code=ReasonCode.QUOTA_BELOW_USED,
            )
        stats = self.posting_stats(current.session_id)
        self._ensure_allocatable(stats, stats.total_allocated - current.allocated_postings + count)

        updated = replace(
            current,
            allocated_postings=count,
            notes=current.notes if notes is KEEP_NOTES else notes,
        )
        self._store.save_allocation(updated)
        return updated

    def delete(self, allocation_id: int) -> None:
        current = self._require(allocation_id)
        if current.used_postings > 0:
            raise ConflictError(
                reason_message(ReasonCode.QUOTA_IN_USE, used=current.used_postings),
                code=ReasonCode.QUOTA_IN_USE,
            )
        self._store.delete_allocation(allocation_id)

    def own_allocation(self, session_id: int, dean_user_id: int) -> DeanAllocation | None:
        """Allocation a dean sees for themselves; ``None`` for non-deans and unallocated deans."""

        user = self._store.get_supervisor(dean_user_id)
        if user is None or not user.is_dean:
            return None
        return self._store.find_allocation(session_id, dean_user_id)

    # ----------------------------------------------------------------- gating
    def require_allocation(self, session_id: int, dean_user_id: int) -> DeanAllocation:
        allocation = self._store.find_allocation(session_id, dean_user_id)
        if allocation is None:
            raise ValidationError(
                reason_message(ReasonCode.QUOTA_MISSING, dean_user_id=dean_user_id, session_id=session_id),
                code=ReasonCode.QUOTA_MISSING,
            )
        return allocation

    def remaining_for(self, session_id: int, dean_user_id: int) -> int:
        return self.require_allocation(session_id, dean_user_id).remaining

    def gate_batch(self, session_id: int, dean_user_id: int, requested: int) -> int:
        """Reject the whole batch when it asks for more than the dean has left.

        Returns:
            The remaining quota before the batch.
        """

        remaining = self.remaining_for(session_id, dean_user_id)
        if requested > remaining:
            raise ConflictError(
                reason_message(ReasonCode.QUOTA_EXCEEDED, remaining=remaining, requested=requested),
                code=ReasonCode.QUOTA_EXCEEDED,
                details={"remaining": remaining, "requested": requested},
            )
        return remaining

    def consume(self, session_id: int, dean_user_id: int, count: int) -> DeanAllocation:
        allocation = self.require_allocation(session_id, dean_user_id)
        if count <= 0:
            return allocation
        if allocation.used_postings + count > allocation.allocated_postings:
            raise ConflictError(
                reason_message(ReasonCode.QUOTA_EXCEEDED, remaining=allocation.remaining, requested=count),
                code=ReasonCode.QUOTA_EXCEEDED,
            )
        updated = replace(allocation, used_postings=allocation.used_postings + count)
        self._store.save_allocation(updated)
        return updated

    def release(self, session_id: int, dean_user_id: int, count: int = 1) -> DeanAllocation | None:
        """Give back quota after a cancellation; silently a no-op without an allocation."""

        allocation = self._store.find_allocation(session_id, dean_user_id)
        if allocation is None or count <= 0:
            return allocation
        updated = replace(allocation, used_postings=max(0, allocation.used_postings - count))
        self._store.save_allocation(updated)
        return updated

    # ---------------------------------------------------------------- helpers
    def _require(self, allocation_id: int) -> DeanAllocation:
        allocation = self._store.get_allocation(allocation_id)
        if allocation is None:
            raise NotFoundError(
                reason_message(ReasonCode.NOT_FOUND, entity="Allocation", ident=allocation_id),
                code=ReasonCode.NOT_FOUND,
            )
        return allocation

    @staticmethod
    def _ensure_allocatable(stats: PostingStats, new_total: int) -> None:
        if new_total > stats.primary_postings:
            available = max(0, stats.primary_postings - stats.total_allocated)
            raise ValidationError(
                reason_message(
                    ReasonCode.QUOTA_OVER_ALLOCATABLE,
                    total=new_total,
                    primary=stats.primary_postings,
                    available=available,
                ),
                code=ReasonCode.QUOTA_OVER_ALLOCATABLE,
            )
