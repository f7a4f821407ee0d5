from __future__ import annotations

import pytest

from tp_posting.core.common.errors import ConflictError, NotFoundError, StorageFailure, ValidationError
from tp_posting.core.common.reasons import ReasonCode
from tp_posting.core.common.types import AuthorContext, LocationCategory
from tp_posting.infra.posting_repository import PostingRepository
from tp_posting.infra.service import PostingEngineService

SESSION_ID = 1
ADMIN = AuthorContext.admin(900)
DEAN = AuthorContext(user_id=4, is_dean=True, faculty_id=10)


def _row(supervisor_id: int, school_id: int, visit: int, group: int = 1) -> dict[str, int]:
    return {"supervisor_id": supervisor_id, "school_id": school_id, "group_number": group, "visit_number": visit}


def _active_count(service: PostingEngineService) -> int:
    return service.allowance_summary(SESSION_ID)["summary"]["total_postings"]


# ------------------------------------------------------------------- batches
def test_duplicate_slot_in_batch_references_first_row(service: PostingEngineService) -> None:
    result = service.submit_batch(SESSION_ID, [_row(1, 5, 2), _row(2, 5, 2)], ADMIN)

    assert [r.row for r in result.successful] == [1]
    assert len(result.failed) == 1
    failure = result.failed[0]
    assert failure.row == 2
    assert failure.kind == "conflict"
    assert failure.code is ReasonCode.DUPLICATE_IN_BATCH
    assert "row 1" in failure.error
    assert result.summary["successful"] == 1
    assert result.summary["failed"] == 1


def test_postings_are_priced_by_distance(service: PostingEngineService) -> None:
    result = service.submit_batch(SESSION_ID, [_row(1, 5, 1), _row(2, 7, 1), _row(3, 6, 1)], ADMIN)

    inside, far, dsa_band = (row.posting.allowance for row in result.successful)
    assert inside.category is LocationCategory.INSIDE
    assert inside.per_visit_total == 2000
    assert far.dta == 4000 and far.dsa == 0
    assert dsa_band.dsa == 2500 and dsa_band.dta == 0
    assert dsa_band.per_visit_total == 4500


def test_row_failures_do_not_abort_the_batch(service: PostingEngineService) -> None:
    rows = [_row(1, 5, 1), _row(99, 5, 2), {"school_id": 5}, _row(1, 5, 4), _row(5, 5, 3)]

    result = service.submit_batch(SESSION_ID, rows, ADMIN)

    assert [r.row for r in result.successful] == [1]
    codes = {f.row: f.code for f in result.failed}
    assert codes == {
        2: ReasonCode.SUPERVISOR_NOT_FOUND,
        3: ReasonCode.INVALID_INPUT,
        4: ReasonCode.VISIT_OUT_OF_RANGE,
        5: ReasonCode.SUPERVISOR_INACTIVE,
    }
    assert _active_count(service) == 1


def test_taken_slot_in_later_batch_names_the_holder(service: PostingEngineService) -> None:
    service.submit_batch(SESSION_ID, [_row(1, 5, 2)], ADMIN)

    result = service.submit_batch(SESSION_ID, [_row(2, 5, 2)], ADMIN)

    assert result.failed[0].code is ReasonCode.SLOT_TAKEN
    assert result.failed[0].error == "Group 1, Visit 2 is already assigned to Ada Obi."


def test_supervisor_ceiling_counts_primary_postings(service: PostingEngineService) -> None:
    result = service.submit_batch(SESSION_ID, [_row(1, 6, 1), _row(1, 5, 1), _row(1, 5, 2)], ADMIN)

    assert len(result.successful) == 2
    assert result.failed[0].code is ReasonCode.SUPERVISOR_AT_CEILING
    assert result.failed[0].error == "Supervisor has reached the maximum posting limit (2)."


def test_advisory_ceiling_accepts_with_warning(make_service) -> None:
    service = make_service(supervisor_ceiling_mode="advisory")

    result = service.submit_batch(SESSION_ID, [_row(1, 5, 1), _row(1, 5, 2), _row(1, 5, 3)], ADMIN)

    assert len(result.successful) == 3
    assert result.successful[2].warnings


def test_unknown_session_is_not_found(service: PostingEngineService) -> None:
    with pytest.raises(NotFoundError) as excinfo:
        service.submit_batch(42, [_row(1, 5, 1)], ADMIN)
    assert excinfo.value.code is ReasonCode.SESSION_NOT_FOUND


def test_oversized_batch_is_rejected(make_service) -> None:
    service = make_service(max_batch_size=2)

    with pytest.raises(ValidationError):
        service.submit_batch(SESSION_ID, [_row(1, 5, 1), _row(2, 5, 2), _row(3, 5, 3)], ADMIN)
    assert _active_count(service) == 0


def test_validate_does_not_write(service: PostingEngineService) -> None:
    ok = service.validate(SESSION_ID, _row(1, 5, 1))
    bad = service.validate(SESSION_ID, {"supervisor_id": "x", "school_id": 5, "group_number": 1, "visit_number": 1})

    assert ok.valid
    assert not bad.valid and bad.error_kind == "validation"
    assert _active_count(service) == 0


def test_storage_failure_discards_the_whole_batch(
    service: PostingEngineService, monkeypatch: pytest.MonkeyPatch
) -> None:
    original = PostingRepository.create_posting
    calls = []

    def failing_second_write(self, posting):
        calls.append(posting.slot_key)
        if len(calls) == 2:
            raise StorageFailure("disk gone")
        return original(self, posting)

    monkeypatch.setattr(PostingRepository, "create_posting", failing_second_write)

    with pytest.raises(StorageFailure):
        service.submit_batch(SESSION_ID, [_row(1, 5, 1), _row(2, 5, 2)], ADMIN)

    assert len(calls) == 2
    assert _active_count(service) == 0


def test_visit_zero_reaches_the_validator(service: PostingEngineService) -> None:
    result = service.submit_batch(
        SESSION_ID, [_row(1, 99, 0), _row(1, 5, 0), {**_row(1, 5, 1), "visit_number": "x"}], ADMIN
    )

    codes = {f.row: f.code for f in result.failed}
    assert codes == {
        1: ReasonCode.GROUP_NOT_FOUND,
        2: ReasonCode.VISIT_OUT_OF_RANGE,
        3: ReasonCode.INVALID_INPUT,
    }
    assert result.failed[0].kind == "not_found"

# ------------------------------------------------------------ merged groups
def test_primary_posting_creates_zero_allowance_dependent(service: PostingEngineService) -> None:
    result = service.submit_batch(SESSION_ID, [_row(1, 6, 1)], ADMIN)

    primary = result.successful[0].posting
    assert len(result.dependent_postings) == 1
    dependent = result.dependent_postings[0]
    assert (dependent.school_id, dependent.group_number, dependent.visit_number) == (8, 1, 1)
    assert not dependent.is_primary
    assert dependent.merged_with_posting_id == primary.id
    assert dependent.allowance.is_zero
    assert dependent.supervisor_id == primary.supervisor_id


def test_posting_on_secondary_group_covers_the_primary(service: PostingEngineService) -> None:
    result = service.submit_batch(SESSION_ID, [_row(2, 8, 2)], ADMIN)

    dependents = result.dependent_postings
    assert [(d.school_id, d.group_number, d.visit_number) for d in dependents] == [(6, 1, 2)]


def test_dependent_propagation_is_idempotent(service: PostingEngineService, components) -> None:
    result = service.submit_batch(SESSION_ID, [_row(1, 6, 3)], ADMIN)
    primary = result.successful[0].posting

    with components() as engine:
        policy = engine.validator.load_policy(SESSION_ID)
        again = engine.processor.propagate_dependents(primary, policy)

    assert again == []
    assert service.allowance_summary(SESSION_ID)["summary"]["dependent_postings"] == 1


def test_dependents_do_not_count_towards_ceiling(service: PostingEngineService) -> None:
    result = service.submit_batch(SESSION_ID, [_row(1, 6, 1), _row(1, 6, 2)], ADMIN)

    assert len(result.successful) == 2
    assert len(result.dependent_postings) == 2


# ---------------------------------------------------------------- cancelling
def test_cancel_cascades_to_dependents(service: PostingEngineService) -> None:
    result = service.submit_batch(SESSION_ID, [_row(1, 6, 1)], ADMIN)
    primary = result.successful[0].posting

    outcome = service.cancel_posting(primary.id)

    assert outcome.dependents_cancelled == [result.dependent_postings[0].id]
    assert _active_count(service) == 0
    with pytest.raises(ConflictError) as excinfo:
        service.cancel_posting(primary.id)
    assert excinfo.value.code is ReasonCode.POSTING_ALREADY_CANCELLED


def test_cancel_unknown_posting(service: PostingEngineService) -> None:
    with pytest.raises(NotFoundError):
        service.cancel_posting(1234)


# --------------------------------------------------------------- dean quota
def test_dean_without_allocation_is_rejected(service: PostingEngineService) -> None:
    with pytest.raises(ValidationError) as excinfo:
        service.submit_batch(SESSION_ID, [_row(1, 5, 1)], DEAN)
    assert excinfo.value.code is ReasonCode.QUOTA_MISSING


def test_dean_batch_over_quota_writes_nothing(service: PostingEngineService) -> None:
    service.allocate_dean(SESSION_ID, 4, 2, allocated_by=900)

    with pytest.raises(ConflictError) as excinfo:
        service.submit_batch(SESSION_ID, [_row(1, 5, 1), _row(2, 5, 2), _row(1, 5, 3)], DEAN)

    assert excinfo.value.message == "You can only create 2 more posting(s). Requested: 3."
    assert _active_count(service) == 0
    assert service.list_dean_allocations(SESSION_ID)[0].used_postings == 0


def test_dean_consumes_quota_for_successful_primaries(service: PostingEngineService) -> None:
    service.allocate_dean(SESSION_ID, 4, 3)

    result = service.submit_batch(SESSION_ID, [_row(1, 6, 1), _row(3, 5, 1), _row(2, 5, 2)], DEAN)

    assert len(result.successful) == 2
    assert result.failed[0].code is ReasonCode.OUTSIDE_FACULTY
    assert result.summary["quota_consumed"] == 2
    allocation = service.list_dean_allocations(SESSION_ID)[0]
    assert allocation.used_postings == 2
    assert allocation.remaining == 1
    assert all(row.posting.created_by_dean_id == 4 for row in result.successful)


def test_cancelling_dean_posting_releases_quota(service: PostingEngineService) -> None:
    service.allocate_dean(SESSION_ID, 4, 1)
    result = service.submit_batch(SESSION_ID, [_row(1, 5, 1)], DEAN)

    outcome = service.cancel_posting(result.successful[0].posting.id)

    assert outcome.quota_released_for == 4
    assert service.list_dean_allocations(SESSION_ID)[0].used_postings == 0


def test_dean_allocation_lifecycle(service: PostingEngineService) -> None:
    stats = service.posting_stats(SESSION_ID)
    assert stats.primary_postings == 9
    assert stats.merged_postings == 3

    allocation = service.allocate_dean(SESSION_ID, 4, 4, notes="first pass")
    service.submit_batch(SESSION_ID, [_row(1, 5, 1)], DEAN)

    with pytest.raises(ValidationError):
        service.update_dean_allocation(allocation.id, 0)
    with pytest.raises(ValidationError):
        service.update_dean_allocation(allocation.id, 10)
    updated = service.update_dean_allocation(allocation.id, 5)
    assert updated.allocated_postings == 5
    assert updated.notes == "first pass"

    with pytest.raises(ConflictError):
        service.delete_dean_allocation(allocation.id)
    assert service.posting_stats(SESSION_ID).total_used == 1


def test_allocating_to_non_dean_is_rejected(service: PostingEngineService) -> None:
    with pytest.raises(ValidationError) as excinfo:
        service.allocate_dean(SESSION_ID, 1, 2)
    assert excinfo.value.code is ReasonCode.NOT_A_DEAN


def test_update_keeps_notes_unless_cleared(service: PostingEngineService) -> None:
    allocation = service.allocate_dean(SESSION_ID, 4, 2, notes="first pass")

    kept = service.update_dean_allocation(allocation.id, 3)
    replaced = service.update_dean_allocation(allocation.id, 3, "second pass")
    cleared = service.update_dean_allocation(allocation.id, 3, None)

    assert kept.notes == "first pass"
    assert replaced.notes == "second pass"
    assert cleared.notes is None
    assert service.list_dean_allocations(SESSION_ID)[0].notes is None


def test_dean_sees_own_allocation_and_postings(service: PostingEngineService) -> None:
    assert service.my_allocation(SESSION_ID, 4) is None
    service.allocate_dean(SESSION_ID, 4, 3)
    service.submit_batch(SESSION_ID, [_row(1, 6, 1), _row(2, 5, 1)], DEAN)
    service.submit_batch(SESSION_ID, [_row(2, 7, 1)], ADMIN)
    cancelled = service.submit_batch(SESSION_ID, [_row(1, 5, 2)], DEAN).successful[0].posting
    service.cancel_posting(cancelled.id)

    allocation = service.my_allocation(SESSION_ID, 4)
    postings = service.my_postings(SESSION_ID, 4)

    assert allocation is not None and allocation.used_postings == 2
    assert [(p.school_id, p.visit_number) for p in postings] == [(5, 1), (6, 1)]
    assert all(p.is_primary and p.created_by_dean_id == 4 for p in postings)


def test_non_dean_self_view_is_empty(service: PostingEngineService) -> None:
    service.submit_batch(SESSION_ID, [_row(1, 5, 1)], ADMIN)

    assert service.my_allocation(SESSION_ID, 1) is None
    assert service.my_postings(SESSION_ID, 1) == []
    assert service.my_postings(SESSION_ID, 404) == []
    with pytest.raises(NotFoundError):
        service.my_postings(42, 4)

# -------------------------------------------------------- allowance and QA
def test_calculate_allowance_by_rank_id(service: PostingEngineService) -> None:
    breakdown = service.calculate_allowance(SESSION_ID, 40, rank=1, visit_count=2)

    assert breakdown.per_visit_total == 8000
    assert breakdown.grand_total == 16000


def test_calculate_allowance_rejects_bad_input(service: PostingEngineService) -> None:
    with pytest.raises(ValidationError):
        service.calculate_allowance(SESSION_ID, -1, rank=1)
    with pytest.raises(NotFoundError):
        service.calculate_allowance(SESSION_ID, 5, rank=77)


def test_allowance_summary_pays_tetfund_once(service: PostingEngineService) -> None:
    service.submit_batch(SESSION_ID, [_row(1, 6, 1), _row(1, 7, 1)], ADMIN)

    report = service.allowance_summary(SESSION_ID)

    ada = report["supervisors"][0]
    assert ada["supervisor_id"] == 1
    assert ada["postings"] == 2
    assert ada["tetfund"] == 1000
    # transport 1000 + 2000, DSA 2500, DTA 5000, TETFund once
    assert ada["total"] == 11500
    assert report["summary"]["dependent_postings"] == 1


def test_qa_passes_on_engine_written_data(service: PostingEngineService) -> None:
    service.allocate_dean(SESSION_ID, 4, 2)
    service.submit_batch(SESSION_ID, [_row(1, 6, 1), _row(2, 5, 1)], DEAN)

    report = service.run_qa(SESSION_ID)

    assert report.passed
    assert report.violations == []
