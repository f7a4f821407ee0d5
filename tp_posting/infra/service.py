"""Transport-agnostic façade over the posting engine.

:class:`PostingEngineService` owns what the core must not: transactions,
logging and the translation of SQLite failures into :class:`StorageFailure`.
Every public method is one request and one unit of work, so a batch either
keeps its successful rows together with the quota it consumed, or keeps
nothing.
"""
from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from typing import Any, Iterator, Mapping, Sequence

from tp_posting.core.allowance import calculate_allowance
from tp_posting.core.auto_posting import (
    AutoPostingAllocator,
    AutoPostingBatchRecord,
    AutoPostingOptions,
    AutoPostingResult,
)
from tp_posting.core.batch import BatchPostingProcessor, BatchResult, CancellationResult
from tp_posting.core.common.errors import NotFoundError, PostingEngineError, StorageFailure, ValidationError
from tp_posting.core.common.reasons import ReasonCode, reason_message
from tp_posting.core.common.types import (
    AllowanceBreakdown,
    AuthorContext,
    DeanAllocation,
    Posting,
    PostingCandidate,
    Rank,
)
from tp_posting.core.policy_loader import EnginePolicy
from tp_posting.core.qa.invariants import QaReport, run_all_invariants
from tp_posting.core.quota import KEEP_NOTES, DeanQuotaManager, PostingStats
from tp_posting.core.reporting import session_allowance_summary, supervisor_allowance_totals
from tp_posting.core.validator import PostingValidator, ValidationResult
from tp_posting.infra.errors import DatabaseOperationError
from tp_posting.infra.local_database import LocalDatabase
from tp_posting.infra.logging import log_step
from tp_posting.infra.posting_repository import PostingRepository

logger = logging.getLogger(__name__)

__all__ = ["EngineComponents", "PostingEngineService"]


class EngineComponents:
    """Core collaborators wired to one repository."""

    def __init__(self, repository: PostingRepository, policy: EnginePolicy) -> None:
        self.repository = repository
        self.validator = PostingValidator(repository, ceiling_mode=policy.supervisor_ceiling_mode)
        self.quota = DeanQuotaManager(repository)
        self.processor = BatchPostingProcessor(repository, self.validator, self.quota)
        self.allocator = AutoPostingAllocator(repository, self.processor, self.quota)


class PostingEngineService:
    """Entry point used by the CLI (and by any other transport).

    Args:
        db: Initialised :class:`LocalDatabase`.
        policy: Parsed engine configuration.
    """

    def __init__(self, db: LocalDatabase, policy: EnginePolicy) -> None:
        self._db = db
        self._policy = policy

    @property
    def policy(self) -> EnginePolicy:
        return self._policy

    # ------------------------------------------------------------ plumbing
    def _repository(self, conn: sqlite3.Connection) -> PostingRepository:
        return PostingRepository(
            conn,
            defaults=self._policy.session_defaults,
            default_max_postings=self._policy.default_max_postings_per_supervisor,
        )

    @contextmanager
    def _unit_of_work(
        self, operation: str, *, session_id: int | None = None, batch_id: int | None = None
    ) -> Iterator[EngineComponents]:
        """One transaction; SQLite and infra errors surface as :class:`StorageFailure`."""

        try:
            step = log_step(logger, operation, session_id=session_id, batch_id=batch_id)
            with step, self._db.unit_of_work() as conn:
                yield EngineComponents(self._repository(conn), self._policy)
        except (sqlite3.Error, DatabaseOperationError) as exc:
            logger.error("storage failure during %s: %s", operation, exc)
            raise StorageFailure(f"Storage unavailable during {operation}: {exc}", cause=exc) from exc

    @contextmanager
    def _read(self, operation: str) -> Iterator[EngineComponents]:
        try:
            with self._db.read_only() as conn:
                yield EngineComponents(self._repository(conn), self._policy)
        except (sqlite3.Error, DatabaseOperationError) as exc:
            logger.exception("storage failure during %s", operation)
            raise StorageFailure(f"Storage unavailable during {operation}: {exc}", cause=exc) from exc

    def initialize(self) -> None:
        self._db.initialize()

    def seed(self, payload: Mapping[str, Sequence[Mapping[str, Any]]]) -> dict[str, int]:
        with self._unit_of_work("seed") as engine:
            counts = engine.repository.seed(payload)
        logger.info("reference data seeded: %s", counts)
        return counts

    # ----------------------------------------------------------- postings
    def validate(self, session_id: int, candidate: Mapping[str, Any] | PostingCandidate) -> ValidationResult:
        if not isinstance(candidate, PostingCandidate):
            try:
                candidate = PostingCandidate.from_mapping(candidate, session_id=session_id)
            except PostingEngineError as exc:
                return ValidationResult(valid=False, errors=[exc.message], error_kind=exc.kind, code=exc.code)
        with self._read("validate") as engine:
            return engine.validator.validate(candidate)

    def submit_batch(
        self,
        session_id: int,
        candidates: Sequence[Mapping[str, Any] | PostingCandidate],
        author: AuthorContext,
    ) -> BatchResult:
        """Process one batch in one transaction.

        Raises:
            ValidationError: oversized batch, or a dean without allocation.
            ConflictError: a dean batch larger than the remaining quota.
            NotFoundError: unknown session.
            StorageFailure: storage became unavailable; nothing was kept.
        """

        if len(candidates) > self._policy.max_batch_size:
            raise ValidationError(
                reason_message(
                    ReasonCode.INVALID_INPUT,
                    detail=f"batch of {len(candidates)} exceeds the limit of {self._policy.max_batch_size}",
                ),
                code=ReasonCode.INVALID_INPUT,
            )
        with self._unit_of_work("submit_batch", session_id=session_id) as engine:
            result = engine.processor.submit_batch(session_id, candidates, author)
        logger.info(
            "batch processed: %d ok, %d failed, %d dependent",
            len(result.successful),
            len(result.failed),
            len(result.dependent_postings),
            extra={"session_id": session_id},
        )
        for failure in result.failed:
            logger.debug("row %d rejected (%s): %s", failure.row, failure.code, failure.error)
        return result

    def cancel_posting(self, posting_id: int) -> CancellationResult:
        with self._unit_of_work("cancel_posting") as engine:
            outcome = engine.processor.cancel_posting(posting_id)
        logger.info(
            "posting %s cancelled with %d dependent(s)", posting_id, len(outcome.dependents_cancelled)
        )
        return outcome

    # -------------------------------------------------------- auto-posting
    def auto_post(self, session_id: int, options: AutoPostingOptions, author: AuthorContext) -> AutoPostingResult:
        try:
            with self._unit_of_work("auto_post", session_id=session_id) as engine:
                result = engine.allocator.run(session_id, options, author)
        except StorageFailure as exc:
            if not options.dry_run:
                self._record_failed_run(session_id, options, author, str(exc))
            raise
        logger.info(
            "auto-posting %s: %d assigned, %d unfilled",
            "preview" if options.dry_run else f"batch {result.batch_id}",
            len(result.assigned),
            len(result.unfilled),
            extra={"session_id": session_id},
        )
        return result

    def _record_failed_run(
        self, session_id: int, options: AutoPostingOptions, author: AuthorContext, message: str
    ) -> None:
        try:
            with self._db.unit_of_work() as conn:
                self._repository(conn).record_failed_auto_posting_batch(
                    session_id, author.user_id, options.criteria(), message
                )
        except (sqlite3.Error, StorageFailure, PostingEngineError):
            logger.exception("could not record failed auto-posting run for session %s", session_id)

    def rollback_auto_posting(self, batch_id: int) -> dict[str, Any]:
        with self._unit_of_work("rollback_auto_posting", batch_id=batch_id) as engine:
            outcome = engine.allocator.rollback(batch_id)
        logger.info("auto-posting batch %s rolled back (%d postings)", batch_id, outcome["cancelled_postings"])
        return outcome

    def auto_posting_history(
        self, session_id: int | None = None, *, limit: int = 20, offset: int = 0
    ) -> list[AutoPostingBatchRecord]:
        """Recorded auto-posting runs, newest first, including failed and rolled-back ones."""

        if limit < 1 or offset < 0:
            raise ValidationError(
                reason_message(ReasonCode.INVALID_INPUT, detail="limit must be >= 1 and offset >= 0"),
                code=ReasonCode.INVALID_INPUT,
            )
        with self._read("auto_posting_history") as engine:
            if session_id is not None:
                engine.validator.load_policy(session_id)
            return engine.repository.list_auto_posting_batches(session_id, limit=limit, offset=offset)

    # ----------------------------------------------------------- allowance
    def calculate_allowance(
        self,
        session_id: int,
        distance_km: float,
        *,
        rank: Rank | int,
        visit_count: int = 1,
    ) -> AllowanceBreakdown:
        if distance_km < 0:
            raise ValidationError(
                reason_message(ReasonCode.INVALID_INPUT, detail="distance_km must be >= 0"),
                code=ReasonCode.INVALID_INPUT,
            )
        if visit_count < 1:
            raise ValidationError(
                reason_message(ReasonCode.INVALID_INPUT, detail="visit_count must be >= 1"),
                code=ReasonCode.INVALID_INPUT,
            )
        with self._read("calculate_allowance") as engine:
            policy = engine.validator.load_policy(session_id)
            if not isinstance(rank, Rank):
                rank_id = rank
                found = engine.repository.get_rank(rank_id)
                if found is None:
                    raise NotFoundError(
                        reason_message(ReasonCode.NOT_FOUND, entity="Rank", ident=rank_id),
                        code=ReasonCode.RANK_NOT_FOUND,
                    )
                rank = found
        return calculate_allowance(rank, distance_km, policy, visit_count)

    # --------------------------------------------------------------- quota
    def allocate_dean(
        self,
        session_id: int,
        dean_user_id: int,
        allocated_postings: int,
        *,
        faculty_id: int | None = None,
        notes: str | None = None,
        allocated_by: int | None = None,
    ) -> DeanAllocation:
        with self._unit_of_work("allocate_dean", session_id=session_id) as engine:
            allocation = engine.quota.allocate(
                session_id,
                dean_user_id,
                allocated_postings,
                faculty_id=faculty_id,
                notes=notes,
                allocated_by=allocated_by,
            )
        logger.info("dean %s allocated %d posting(s)", dean_user_id, allocation.allocated_postings)
        return allocation

    def update_dean_allocation(
        self, allocation_id: int, allocated_postings: int, notes: str | None | object = KEEP_NOTES
    ) -> DeanAllocation:
        """Resize an allocation. Omitted ``notes`` are kept; ``None`` clears them."""

        with self._unit_of_work("update_dean_allocation") as engine:
            return engine.quota.update_allocation(allocation_id, allocated_postings, notes)

    def delete_dean_allocation(self, allocation_id: int) -> None:
        with self._unit_of_work("delete_dean_allocation") as engine:
            engine.quota.delete(allocation_id)

    def list_dean_allocations(self, session_id: int) -> list[DeanAllocation]:
        with self._read("list_dean_allocations") as engine:
            return engine.quota.list_allocations(session_id)

    def my_allocation(self, session_id: int, dean_user_id: int) -> DeanAllocation | None:
        with self._read("my_allocation") as engine:
            engine.validator.load_policy(session_id)
            return engine.quota.own_allocation(session_id, dean_user_id)

    def my_postings(self, session_id: int, dean_user_id: int) -> list[Posting]:
        """Active primary postings the dean created in a session; empty for non-deans."""

        with self._read("my_postings") as engine:
            engine.validator.load_policy(session_id)
            user = engine.repository.get_supervisor(dean_user_id)
            if user is None or not user.is_dean:
                return []
            return engine.repository.list_dean_postings(session_id, dean_user_id)

    def posting_stats(self, session_id: int) -> PostingStats:
        with self._read("posting_stats") as engine:
            return engine.quota.posting_stats(session_id)

    # ----------------------------------------------------------- reporting
    def allowance_summary(self, session_id: int) -> dict[str, Any]:
        with self._read("allowance_summary") as engine:
            engine.validator.load_policy(session_id)
            frame = engine.repository.postings_frame(session_id)
        per_supervisor = supervisor_allowance_totals(frame)
        return {
            "session_id": session_id,
            "summary": session_allowance_summary(frame),
            "supervisors": per_supervisor.to_dict(orient="records"),
        }

    def run_qa(self, session_id: int) -> QaReport:
        with self._read("run_qa") as engine:
            engine.validator.load_policy(session_id)
            frame = engine.repository.postings_frame(session_id)
            allocations = engine.quota.list_allocations(session_id)
        report = run_all_invariants(postings=frame, allocations=allocations)
        if not report.passed:
            logger.warning(
                "QA found %d violation(s) in session %s", len(report.violations), session_id
            )
        return report
