"""Batch posting processor.

One request submits an ordered list of candidates for one session. The
processor:

1. flags later rows that repeat an earlier row's ``(school, group, visit)``;
2. validates every surviving row against committed state;
3. commits each valid row in its own savepoint and prices it;
4. creates zero-allowance dependent postings for merged cluster members;
5. charges a quota-bound dean for the successful primary postings.

Row failures are data (``BatchResult.failed``). A :class:`StorageFailure`
propagates and the caller rolls back the whole request.
"""

from __future__ import annotations

from contextlib import AbstractContextManager
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Protocol, Sequence

from tp_posting.core.allowance import calculate_allowance, zero_allowance
from tp_posting.core.common.errors import (
    ConflictError,
    NotFoundError,
    PostingEngineError,
    ValidationError,
)
from tp_posting.core.common.reasons import ReasonCode, reason_message
from tp_posting.core.common.types import (
    AuthorContext,
    ClusterMember,
    Posting,
    PostingCandidate,
    PostingStatus,
    PostingType,
    Rank,
    School,
    SessionPolicy,
    SlotKey,
)
from tp_posting.core.quota import DeanQuotaManager
from tp_posting.core.validator import PostingReader, PostingValidator

__all__ = [
    "PostingStore",
    "RowSuccess",
    "RowFailure",
    "BatchResult",
    "CommitOutcome",
    "CancellationResult",
    "resolve_in_batch_duplicates",
    "BatchPostingProcessor",
]

CandidateInput = PostingCandidate | Mapping[str, Any]


class PostingStore(PostingReader, Protocol):
    """Read/write storage collaborator of the processor."""

    def get_rank(self, rank_id: int) -> Rank | None: ...

    def get_school(self, school_id: int) -> School | None: ...

    def get_merged_cluster_members(
        self, school_id: int, group_number: int, session_id: int
    ) -> Sequence[ClusterMember]: ...

    def create_posting(self, posting: Posting) -> int: ...

    def get_posting(self, posting_id: int) -> Posting | None: ...

    def list_dependent_postings(self, posting_id: int) -> Sequence[Posting]: ...

    def cancel_posting(self, posting_id: int) -> None: ...

    def savepoint(self, name: str) -> AbstractContextManager[Any]: ...


@dataclass(frozen=True)
class RowSuccess:
    row: int
    posting: Posting
    dependents: list[Posting] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "row": self.row,
            "posting": self.posting.as_dict(),
            "dependent_posting_ids": [d.id for d in self.dependents],
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True)
class RowFailure:
    row: int
    error: str
    kind: str
    code: ReasonCode
    candidate: Mapping[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "row": self.row,
            "error": self.error,
            "kind": self.kind,
            "code": str(self.code),
            "candidate": dict(self.candidate),
        }


@dataclass(frozen=True)
class BatchResult:
    successful: list[RowSuccess]
    failed: list[RowFailure]
    dependent_postings: list[Posting]
    summary: Dict[str, Any]

    def as_dict(self) -> dict[str, Any]:
        return {
            "successful": [row.as_dict() for row in self.successful],
            "failed": [row.as_dict() for row in self.failed],
            "dependent_postings": [p.as_dict() for p in self.dependent_postings],
            "summary": dict(self.summary),
        }


@dataclass(frozen=True)
class CommitOutcome:
    posting: Posting
    dependents: list[Posting]
    warnings: list[str]


@dataclass(frozen=True)
class CancellationResult:
    posting: Posting
    dependents_cancelled: list[int]
    quota_released_for: int | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "posting_id": self.posting.id,
            "dependents_cancelled": list(self.dependents_cancelled),
            "quota_released_for": self.quota_released_for,
        }


def resolve_in_batch_duplicates(keys: Sequence[SlotKey | None]) -> Dict[int, int]:
    """Map each later duplicate to the 1-based row of its first occurrence.

    Only earlier rows are looked at, so the first occurrence is never
    flagged. ``None`` keys (unparseable rows) are skipped.

    Example::

        >>> resolve_in_batch_duplicates([(5, 1, 2), (5, 1, 3), (5, 1, 2)])
        {2: 1}
    """

    first_seen: Dict[SlotKey, int] = {}
    duplicates: Dict[int, int] = {}
    for index, key in enumerate(keys):
        if key is None:
            continue
        if key in first_seen:
            duplicates[index] = first_seen[key] + 1
        else:
            first_seen[key] = index
    return duplicates


def _candidate_payload(raw: CandidateInput) -> Mapping[str, Any]:
    if isinstance(raw, PostingCandidate):
        return raw.as_dict()
    return dict(raw)


class BatchPostingProcessor:
    """Validate, price and commit postings; shared by batches and the auto-poster."""

    def __init__(
        self,
        store: PostingStore,
        validator: PostingValidator,
        quota: DeanQuotaManager | None = None,
    ) -> None:
        self._store = store
        self._validator = validator
        self._quota = quota

    @property
    def validator(self) -> PostingValidator:
        return self._validator

    def submit_batch(
        self,
        session_id: int,
        candidates: Sequence[CandidateInput],
        author: AuthorContext,
    ) -> BatchResult:
        """Process one ordered batch for ``session_id``.

        Raises:
            NotFoundError: the session does not exist.
            ValidationError: a quota-bound dean has no allocation.
            ConflictError: a quota-bound dean asks for more than remains.
            StorageFailure: storage is unavailable; nothing must be kept.
        """

        policy = self._validator.load_policy(session_id)
        if author.quota_bound:
            if self._quota is None:
                raise ValidationError(
                    reason_message(ReasonCode.QUOTA_MISSING, dean_user_id=author.user_id, session_id=session_id),
                    code=ReasonCode.QUOTA_MISSING,
                )
            self._quota.gate_batch(session_id, author.user_id, len(candidates))

        parsed: List[PostingCandidate | PostingEngineError] = []
        for raw in candidates:
            if isinstance(raw, PostingCandidate):
                parsed.append(raw if raw.session_id == session_id else replace(raw, session_id=session_id))
                continue
            try:
                parsed.append(PostingCandidate.from_mapping(raw, session_id=session_id))
            except PostingEngineError as exc:
                parsed.append(exc)

        duplicates = resolve_in_batch_duplicates(
            [item.slot_key if isinstance(item, PostingCandidate) else None for item in parsed]
        )

        successful: list[RowSuccess] = []
        failed: list[RowFailure] = []
        dependents: list[Posting] = []
        for index, item in enumerate(parsed):
            row = index + 1
            payload = _candidate_payload(candidates[index])
            if isinstance(item, PostingEngineError):
                failed.append(RowFailure(row, item.message, item.kind, item.code, payload))
                continue
            if index in duplicates:
                dup = ConflictError(
                    reason_message(ReasonCode.DUPLICATE_IN_BATCH, row=duplicates[index]),
                    code=ReasonCode.DUPLICATE_IN_BATCH,
                )
                failed.append(RowFailure(row, dup.message, dup.kind, dup.code, payload))
                continue
            try:
                with self._store.savepoint(f"batch_row_{row}"):
                    outcome = self.commit_one(item, author=author, policy=policy)
            except PostingEngineError as exc:
                failed.append(RowFailure(row, exc.message, exc.kind, exc.code, payload))
                continue
            successful.append(RowSuccess(row, outcome.posting, outcome.dependents, outcome.warnings))
            dependents.extend(outcome.dependents)

        quota_used = 0
        if author.quota_bound and successful and self._quota is not None:
            quota_used = len(successful)
            self._quota.consume(session_id, author.user_id, quota_used)

        summary = {
            "session_id": session_id,
            "total": len(candidates),
            "successful": len(successful),
            "failed": len(failed),
            "dependent_postings": len(dependents),
            "quota_consumed": quota_used,
        }
        return BatchResult(successful, failed, dependents, summary)

    def commit_one(
        self,
        candidate: PostingCandidate,
        *,
        author: AuthorContext,
        policy: SessionPolicy | None = None,
        posting_type: PostingType = PostingType.MULTIPOSTING,
        batch_id: int | None = None,
    ) -> CommitOutcome:
        """Validate, price and persist one primary posting plus its dependents.

        Callers wrap this in a savepoint; a raised :class:`PostingEngineError`
        means nothing of this row may be kept.
        """

        if policy is None:
            policy = self._validator.load_policy(candidate.session_id)
        warnings = self._validator.check(candidate, policy=policy)

        supervisor = self._store.get_supervisor(candidate.supervisor_id)
        if supervisor is None:
            raise NotFoundError(
                reason_message(ReasonCode.SUPERVISOR_NOT_FOUND, supervisor_id=candidate.supervisor_id),
                code=ReasonCode.SUPERVISOR_NOT_FOUND,
            )
        if author.quota_bound and author.faculty_id is not None and supervisor.faculty_id != author.faculty_id:
            raise ValidationError(
                reason_message(ReasonCode.OUTSIDE_FACULTY, supervisor_id=supervisor.id),
                code=ReasonCode.OUTSIDE_FACULTY,
            )
        rank = self._store.get_rank(supervisor.rank_id) if supervisor.rank_id is not None else None
        if rank is None:
            raise NotFoundError(
                reason_message(ReasonCode.RANK_NOT_FOUND, rank_id=supervisor.rank_id, supervisor_id=supervisor.id),
                code=ReasonCode.RANK_NOT_FOUND,
            )
        school = self._store.get_school(candidate.school_id)
        if school is None:
            raise NotFoundError(
                reason_message(ReasonCode.SCHOOL_NOT_FOUND, school_id=candidate.school_id),
                code=ReasonCode.SCHOOL_NOT_FOUND,
            )

        posting = Posting(
            session_id=candidate.session_id,
            supervisor_id=supervisor.id,
            school_id=candidate.school_id,
            group_number=candidate.group_number,
            visit_number=candidate.visit_number,
            distance_km=float(school.distance_km),
            is_primary=True,
            allowance=calculate_allowance(rank, school.distance_km, policy),
            rank_id=rank.id,
            posting_type=posting_type,
            posted_by=author.user_id,
            created_by_dean_id=author.user_id if author.quota_bound else None,
            auto_posting_batch_id=batch_id,
        )
        posting = replace(posting, id=self._store.create_posting(posting))
        return CommitOutcome(posting, self.propagate_dependents(posting, policy), warnings)

    def propagate_dependents(self, primary: Posting, policy: SessionPolicy) -> list[Posting]:
        """Create zero-allowance postings for the other members of a merged cluster.

        Members whose slot already holds an active posting are skipped, so a
        repeated call creates nothing new.
        """

        members = self._store.get_merged_cluster_members(
            primary.school_id, primary.group_number, primary.session_id
        )
        created: list[Posting] = []
        seen: set[tuple[int, int]] = {(primary.school_id, primary.group_number)}
        for member in members:
            member_key = (member.school_id, member.group_number)
            if member_key in seen:
                continue
            seen.add(member_key)
            existing = self._store.find_active_posting(
                member.school_id, member.group_number, primary.visit_number, primary.session_id
            )
            if existing is not None:
                continue
            school = self._store.get_school(member.school_id)
            distance = float(school.distance_km) if school is not None else primary.distance_km
            dependent = Posting(
                session_id=primary.session_id,
                supervisor_id=primary.supervisor_id,
                school_id=member.school_id,
                group_number=member.group_number,
                visit_number=primary.visit_number,
                distance_km=distance,
                is_primary=False,
                allowance=zero_allowance(distance, policy),
                merged_with_posting_id=primary.id,
                rank_id=primary.rank_id,
                posting_type=primary.posting_type,
                posted_by=primary.posted_by,
                created_by_dean_id=primary.created_by_dean_id,
                auto_posting_batch_id=primary.auto_posting_batch_id,
            )
            created.append(replace(dependent, id=self._store.create_posting(dependent)))
        return created

    def cancel_posting(self, posting_id: int) -> CancellationResult:
        """Soft-delete a posting and its dependents; give a dean's quota back.

        Raises:
            NotFoundError: unknown posting.
            ConflictError: the posting is already cancelled.
        """

        posting = self._store.get_posting(posting_id)
        if posting is None:
            raise NotFoundError(
                reason_message(ReasonCode.NOT_FOUND, entity="Posting", ident=posting_id),
                code=ReasonCode.NOT_FOUND,
            )
        if not posting.is_active:
            raise ConflictError(
                reason_message(ReasonCode.POSTING_ALREADY_CANCELLED, posting_id=posting_id),
                code=ReasonCode.POSTING_ALREADY_CANCELLED,
            )

        cancelled_dependents: list[int] = []
        if posting.is_primary:
            for dependent in self._store.list_dependent_postings(posting_id):
                if dependent.status is PostingStatus.ACTIVE and dependent.id is not None:
                    self._store.cancel_posting(dependent.id)
                    cancelled_dependents.append(dependent.id)
        self._store.cancel_posting(posting_id)

        released_for = None
        if posting.is_primary and posting.created_by_dean_id is not None and self._quota is not None:
            if self._quota.release(posting.session_id, posting.created_by_dean_id, 1) is not None:
                released_for = posting.created_by_dean_id
        return CancellationResult(posting, cancelled_dependents, released_for)
