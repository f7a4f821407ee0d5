"""Greedy auto-posting allocator.

Open slots are sorted deterministically and filled one by one from a
load-balanced supervisor rotation. Every attempt goes through the same
validator and single-item commit path as a manual batch. The result is a
heuristic, not an optimal matching: ties are resolved by the configured
orderings so that repeated runs on the same state give the same plan.

Example::

    >>> options = AutoPostingOptions(max_assignments=10, dry_run=True)
    >>> options.slot_ordering
    'school_group_visit'
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Protocol, Sequence, Tuple

from tp_posting.core.batch import BatchPostingProcessor, PostingStore
from tp_posting.core.common.errors import NotFoundError, PostingEngineError, ValidationError
from tp_posting.core.common.reasons import ReasonCode, build_reason, reason_message
from tp_posting.core.common.types import (
    AuthorContext,
    Group,
    Posting,
    PostingCandidate,
    PostingType,
    SessionPolicy,
    Slot,
    Supervisor,
    natural_key,
)
from tp_posting.core.quota import DeanQuotaManager
from tp_posting.core.reporting import auto_posting_statistics

__all__ = [
    "BATCH_PROCESSING",
    "BATCH_COMPLETED",
    "BATCH_FAILED",
    "BATCH_ROLLED_BACK",
    "SLOT_ORDERINGS",
    "slot_sort_key",
    "default_supervisor_key",
    "AutoPostingOptions",
    "AssignedSlot",
    "UnfilledSlot",
    "AutoPostingResult",
    "AutoPostingBatchRecord",
    "AutoPostingStore",
    "AutoPostingAllocator",
]

SlotKeyFn = Callable[[Slot], Tuple[Any, ...]]
SupervisorKeyFn = Callable[[Supervisor, int], Tuple[Any, ...]]

BATCH_PROCESSING = "processing"
BATCH_COMPLETED = "completed"
BATCH_FAILED = "failed"
BATCH_ROLLED_BACK = "rolled_back"


def _prefix_school_group_visit(slot: Slot) -> Tuple[Any, ...]:
    return ()


def _prefix_visit_first(slot: Slot) -> Tuple[Any, ...]:
    return (slot.visit_number,)


def _prefix_route(slot: Slot) -> Tuple[Any, ...]:
    return (slot.route_id is None, slot.route_id or 0)


def _prefix_lga(slot: Slot) -> Tuple[Any, ...]:
    return (not slot.lga, natural_key(slot.lga))


SLOT_ORDERINGS: Mapping[str, Callable[[Slot], Tuple[Any, ...]]] = {
    "school_group_visit": _prefix_school_group_visit,
    "visit_first": _prefix_visit_first,
    "route_based": _prefix_route,
    "lga_based": _prefix_lga,
}


def slot_sort_key(ordering: str, *, priority_enabled: bool = False) -> SlotKeyFn:
    """Build the sort key of a named slot ordering.

    With ``priority_enabled`` farther schools come first inside each group of
    slots that share the ordering prefix.
    """

    try:
        prefix = SLOT_ORDERINGS[ordering]
    except KeyError as exc:
        raise ValidationError(
            f"Unknown slot ordering '{ordering}'; expected one of {', '.join(SLOT_ORDERINGS)}",
            code=ReasonCode.INVALID_INPUT,
        ) from exc

    def key(slot: Slot) -> Tuple[Any, ...]:
        distance = (-float(slot.distance_km),) if priority_enabled else ()
        return prefix(slot) + distance + (slot.school_id, slot.group_number, slot.visit_number)

    return key


def default_supervisor_key(priority_enabled: bool = False) -> SupervisorKeyFn:
    """Least-loaded first, then rank priority (optional), then natural id order."""

    def key(supervisor: Supervisor, current: int) -> Tuple[Any, ...]:
        priority = (supervisor.priority_number,) if priority_enabled else ()
        return (current,) + priority + (natural_key(supervisor.id),)

    return key


class AutoPostingStore(PostingStore, Protocol):
    def list_groups(self, session_id: int) -> Sequence[Group]: ...

    def list_supervisors(self, *, faculty_id: int | None = None) -> Sequence[Supervisor]: ...

    def create_auto_posting_batch(
        self, session_id: int, initiated_by: int, criteria: Mapping[str, Any]
    ) -> int: ...

    def complete_auto_posting_batch(
        self, batch_id: int, *, total_postings: int, total_supervisors: int
    ) -> None: ...

    def get_auto_posting_batch(self, batch_id: int) -> "AutoPostingBatchRecord | None": ...

    def mark_auto_posting_batch_rolled_back(self, batch_id: int) -> None: ...

    def list_batch_primary_postings(self, batch_id: int) -> Sequence[Posting]: ...


@dataclass(frozen=True)
class AutoPostingBatchRecord:
    id: int
    session_id: int
    initiated_by: int | None
    status: str
    criteria: Mapping[str, Any] = field(default_factory=dict)
    total_postings_created: int = 0
    total_supervisors_posted: int = 0
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "initiated_by": self.initiated_by,
            "status": self.status,
            "criteria": dict(self.criteria),
            "total_postings_created": self.total_postings_created,
            "total_supervisors_posted": self.total_supervisors_posted,
            "error_message": self.error_message,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass(frozen=True)
class AutoPostingOptions:
    """Knobs of one auto-posting run.

    ``slot_ordering`` is either a name from :data:`SLOT_ORDERINGS` or a
    callable sort key. ``supervisor_ordering`` receives the supervisor and
    its current primary count.
    """

    faculty_id: int | None = None
    max_visits: int | None = None
    max_assignments: int | None = None
    priority_enabled: bool = False
    slot_ordering: str | SlotKeyFn = "school_group_visit"
    supervisor_ordering: SupervisorKeyFn | None = None
    dry_run: bool = False

    def criteria(self) -> dict[str, Any]:
        ordering = self.slot_ordering if isinstance(self.slot_ordering, str) else "custom"
        return {
            "faculty_id": self.faculty_id,
            "max_visits": self.max_visits,
            "max_assignments": self.max_assignments,
            "priority_enabled": self.priority_enabled,
            "slot_ordering": ordering,
        }


@dataclass(frozen=True)
class AssignedSlot:
    slot: Slot
    supervisor_id: int
    posting: Posting | None = None
    dependents: int = 0
    warnings: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "school_id": self.slot.school_id,
            "group_number": self.slot.group_number,
            "visit_number": self.slot.visit_number,
            "supervisor_id": self.supervisor_id,
            "posting_id": self.posting.id if self.posting else None,
            "dependents": self.dependents,
        }
        if self.posting is not None:
            payload["grand_total"] = self.posting.allowance.grand_total
        if self.warnings:
            payload["warnings"] = list(self.warnings)
        return payload


@dataclass(frozen=True)
class UnfilledSlot:
    slot: Slot
    code: ReasonCode
    reason: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "school_id": self.slot.school_id,
            "group_number": self.slot.group_number,
            "visit_number": self.slot.visit_number,
            "code": str(self.code),
            "reason": self.reason,
        }


@dataclass(frozen=True)
class AutoPostingResult:
    assigned: list[AssignedSlot]
    unfilled: list[UnfilledSlot]
    summary: Dict[str, Any]
    warnings: list[str] = field(default_factory=list)
    batch_id: int | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "assigned": [a.as_dict() for a in self.assigned],
            "unfilled": [u.as_dict() for u in self.unfilled],
            "summary": dict(self.summary),
            "warnings": list(self.warnings),
        }


class AutoPostingAllocator:
    """Drive :class:`BatchPostingProcessor` over every open slot of a session."""

    def __init__(
        self,
        store: AutoPostingStore,
        processor: BatchPostingProcessor,
        quota: DeanQuotaManager | None = None,
    ) -> None:
        self._store = store
        self._processor = processor
        self._quota = quota

    # ------------------------------------------------------------ open slots
    def open_slots(self, session_id: int, max_visits: int) -> list[Slot]:
        """Non-secondary groups x visits ``1..max_visits`` minus occupied visits."""

        slots: list[Slot] = []
        schools: dict[int, Any] = {}
        for group in self._store.list_groups(session_id):
            if group.is_merged_secondary:
                continue
            if group.school_id not in schools:
                schools[group.school_id] = self._store.get_school(group.school_id)
            school = schools[group.school_id]
            available = set(group.available_visits)
            for visit in range(1, max_visits + 1):
                if visit not in available:
                    continue
                slots.append(
                    Slot(
                        school_id=group.school_id,
                        group_number=group.group_number,
                        visit_number=visit,
                        distance_km=float(school.distance_km) if school else 0.0,
                        school_name=school.name if school else "",
                        route_id=school.route_id if school else None,
                        lga=school.lga if school else None,
                    )
                )
        return slots

    # ------------------------------------------------------------------- run
    def run(self, session_id: int, options: AutoPostingOptions, author: AuthorContext) -> AutoPostingResult:
        """Assign supervisors to open slots.

        Raises:
            NotFoundError: unknown session.
            ValidationError: ``max_visits`` out of range, unknown ordering or
                a quota-bound dean without allocation.
        """

        validator = self._processor.validator
        policy = validator.load_policy(session_id)
        max_visits = options.max_visits or policy.max_supervision_visits
        if max_visits < 1 or max_visits > policy.max_supervision_visits:
            raise ValidationError(
                reason_message(
                    ReasonCode.VISIT_OUT_OF_RANGE,
                    visit_number=max_visits,
                    max_visits=policy.max_supervision_visits,
                ),
                code=ReasonCode.VISIT_OUT_OF_RANGE,
            )
        if options.max_assignments is not None and options.max_assignments < 0:
            raise ValidationError("max_assignments must be >= 0", code=ReasonCode.INVALID_INPUT)

        if callable(options.slot_ordering):
            slot_key = options.slot_ordering
        else:
            slot_key = slot_sort_key(options.slot_ordering, priority_enabled=options.priority_enabled)
        slots = sorted(self.open_slots(session_id, max_visits), key=slot_key)

        faculty_id = options.faculty_id
        if author.quota_bound and author.faculty_id is not None:
            faculty_id = author.faculty_id
        limit = options.max_assignments
        warnings: list[str] = []
        if author.quota_bound:
            if self._quota is None:
                raise ValidationError(
                    reason_message(ReasonCode.QUOTA_MISSING, dean_user_id=author.user_id, session_id=session_id),
                    code=ReasonCode.QUOTA_MISSING,
                )
            remaining = self._quota.remaining_for(session_id, author.user_id)
            if limit is None or remaining < limit:
                limit = remaining
                warnings.append(f"Run capped by remaining dean quota ({remaining}).")

        ceiling = policy.supervisor_ceiling
        counts: dict[int, int] = {}
        pool: list[Supervisor] = []
        for supervisor in self._store.list_supervisors(faculty_id=faculty_id):
            if not supervisor.is_active:
                continue
            current = self._store.count_active_postings(supervisor.id, session_id)
            counts[supervisor.id] = current
            if current < ceiling:
                pool.append(supervisor)
        sup_key = options.supervisor_ordering or default_supervisor_key(options.priority_enabled)
        pool.sort(key=lambda s: sup_key(s, counts[s.id]))
        if not pool and slots:
            warnings.append("No eligible supervisors for this run.")

        batch_id = None
        if not options.dry_run:
            batch_id = self._store.create_auto_posting_batch(session_id, author.user_id, options.criteria())

        assigned: list[AssignedSlot] = []
        unfilled: list[UnfilledSlot] = []
        index = 0
        for slot in slots:
            if limit is not None and len(assigned) >= limit:
                reason = build_reason(ReasonCode.ASSIGNMENT_LIMIT_REACHED, limit=limit)
                unfilled.append(UnfilledSlot(slot, reason.code, reason.message))
                continue
            if not pool:
                reason = build_reason(ReasonCode.SUPERVISORS_EXHAUSTED)
                unfilled.append(UnfilledSlot(slot, reason.code, reason.message))
                continue

            placed: AssignedSlot | None = None
            last_error: str | None = None
            for _ in range(len(pool)):
                position = index % len(pool)
                supervisor = pool[position]
                candidate = PostingCandidate(
                    session_id=session_id,
                    supervisor_id=supervisor.id,
                    school_id=slot.school_id,
                    group_number=slot.group_number,
                    visit_number=slot.visit_number,
                )
                try:
                    placed = self._attempt(candidate, slot, author, policy, options.dry_run, batch_id)
                except PostingEngineError as exc:
                    last_error = exc.message
                    index = position + 1
                    continue
                counts[supervisor.id] += 1
                if counts[supervisor.id] >= ceiling:
                    pool.pop(position)
                    index = position
                else:
                    index = position + 1
                break

            if placed is None:
                reason = build_reason(ReasonCode.NO_ELIGIBLE_SUPERVISOR)
                message = reason.message if last_error is None else f"{reason.message} Last error: {last_error}"
                unfilled.append(UnfilledSlot(slot, reason.code, message))
            else:
                assigned.append(placed)

        supervisors_used = len({a.supervisor_id for a in assigned})
        dependents = sum(a.dependents for a in assigned)
        if not options.dry_run:
            if author.quota_bound and assigned and self._quota is not None:
                self._quota.consume(session_id, author.user_id, len(assigned))
            if batch_id is not None:
                self._store.complete_auto_posting_batch(
                    batch_id,
                    total_postings=len(assigned),
                    total_supervisors=supervisors_used,
                )

        summary = {
            "session_id": session_id,
            "dry_run": options.dry_run,
            "total_slots": len(slots),
            "assigned": len(assigned),
            "unfilled": len(unfilled),
            "supervisors_used": supervisors_used,
            "supervisors_in_pool": len(counts),
            "dependent_postings": dependents,
            "max_visits": max_visits,
            "assignment_limit": limit,
            "load": auto_posting_statistics(a.as_dict() for a in assigned),
        }
        return AutoPostingResult(assigned, unfilled, summary, warnings, batch_id)

    def _attempt(
        self,
        candidate: PostingCandidate,
        slot: Slot,
        author: AuthorContext,
        policy: SessionPolicy,
        dry_run: bool,
        batch_id: int | None,
    ) -> AssignedSlot:
        if dry_run:
            warnings = self._processor.validator.check(candidate, policy=policy)
            return AssignedSlot(slot, candidate.supervisor_id, None, 0, warnings)
        with self._store.savepoint(f"auto_slot_{slot.school_id}_{slot.group_number}_{slot.visit_number}"):
            outcome = self._processor.commit_one(
                candidate,
                author=author,
                policy=policy,
                posting_type=PostingType.AUTO,
                batch_id=batch_id,
            )
        return AssignedSlot(
            slot,
            candidate.supervisor_id,
            outcome.posting,
            len(outcome.dependents),
            outcome.warnings,
        )

    # -------------------------------------------------------------- rollback
    def rollback(self, batch_id: int) -> dict[str, Any]:
        """Cancel every active primary posting of a completed run.

        Raises:
            NotFoundError: unknown batch.
            ValidationError: the batch is not completed or was already rolled back.
        """

        batch = self._store.get_auto_posting_batch(batch_id)
        if batch is None:
            raise NotFoundError(
                reason_message(ReasonCode.NOT_FOUND, entity="Auto-posting batch", ident=batch_id),
                code=ReasonCode.NOT_FOUND,
            )
        if batch.status == BATCH_ROLLED_BACK:
            raise ValidationError(
                reason_message(ReasonCode.BATCH_ALREADY_ROLLED_BACK),
                code=ReasonCode.BATCH_ALREADY_ROLLED_BACK,
            )
        if batch.status != BATCH_COMPLETED:
            raise ValidationError(
                reason_message(ReasonCode.BATCH_NOT_COMPLETED),
                code=ReasonCode.BATCH_NOT_COMPLETED,
            )

        cancelled: List[int] = []
        dependents = 0
        for posting in self._store.list_batch_primary_postings(batch_id):
            if posting.id is None or not posting.is_active:
                continue
            outcome = self._processor.cancel_posting(posting.id)
            cancelled.append(posting.id)
            dependents += len(outcome.dependents_cancelled)
        self._store.mark_auto_posting_batch_rolled_back(batch_id)
        return {
            "batch_id": batch_id,
            "cancelled_postings": len(cancelled),
            "cancelled_dependents": dependents,
            "posting_ids": cancelled,
        }
