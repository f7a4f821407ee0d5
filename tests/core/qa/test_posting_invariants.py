from __future__ import annotations

from dataclasses import replace

from tp_posting.core.allowance import calculate_allowance, zero_allowance
from tp_posting.core.common.types import DeanAllocation, Posting, PostingStatus, Rank, SessionPolicy
from tp_posting.core.qa.invariants import (
    check_ALLOW_01,
    check_ALLOW_02,
    check_DEP_01,
    check_QUOTA_01,
    check_SLOT_01,
    run_all_invariants,
)
from tp_posting.core.reporting import postings_frame

POLICY = SessionPolicy(session_id=1)
RANK = Rank(id=1, local_running_allowance=2000, transport_per_km=50, dta=5000, tetfund=1000)


def _posting(posting_id: int, distance: float = 20, *, visit: int = 1, school_id: int = 6, **changes) -> Posting:
    posting = Posting(
        session_id=1,
        supervisor_id=1,
        school_id=school_id,
        group_number=1,
        visit_number=visit,
        distance_km=distance,
        is_primary=True,
        allowance=calculate_allowance(RANK, distance, POLICY),
        id=posting_id,
    )
    return replace(posting, **changes)


def _dependent(posting_id: int, parent: int | None, **changes) -> Posting:
    changes.setdefault("allowance", zero_allowance(20, POLICY))
    return _posting(posting_id, school_id=8, is_primary=False, merged_with_posting_id=parent, **changes)


def test_clean_session_passes_every_rule() -> None:
    frame = postings_frame([_posting(1), _dependent(2, 1), _posting(3, 8, school_id=5)])

    report = run_all_invariants(postings=frame, allocations=[])

    assert report.passed
    assert report.to_summary_frame()["status"].tolist() == ["PASS"] * 5


def test_duplicate_active_slot_is_reported() -> None:
    frame = postings_frame([_posting(1), _posting(2), _posting(3, status=PostingStatus.CANCELLED)])

    result = check_SLOT_01(frame)

    assert not result.passed
    assert len(result.violations) == 1
    assert result.violations[0].details == {"session_id": 1, "school_id": 6, "group_number": 1, "visit_number": 1}
    assert "2 active postings" in result.violations[0].message


def test_cancelled_duplicates_do_not_count() -> None:
    frame = postings_frame([_posting(1), _posting(2, status=PostingStatus.CANCELLED)])

    assert check_SLOT_01(frame).passed


def test_dsa_with_dta_is_reported() -> None:
    tampered = _posting(1)
    tampered = replace(tampered, allowance=replace(tampered.allowance, dta=5000.0))

    result = check_ALLOW_01(postings_frame([tampered]))

    assert not result.passed
    assert result.violations[0].details["posting_id"] == 1


def test_inside_posting_with_transport_is_reported() -> None:
    inside = _posting(1, 8)
    inside = replace(inside, allowance=replace(inside.allowance, transport=400.0))
    outside = _posting(2, 40, visit=2)
    outside = replace(outside, allowance=replace(outside.allowance, local_running=2000.0))

    result = check_ALLOW_02(postings_frame([inside, outside]))

    messages = sorted(v.message for v in result.violations)
    assert messages == ["Inside posting carries outside components", "Outside posting carries local running"]


def test_dependent_rules() -> None:
    priced = _dependent(2, 1, allowance=calculate_allowance(RANK, 20, POLICY))
    orphan = _dependent(3, 99, visit=2)

    result = check_DEP_01(postings_frame([_posting(1), priced, orphan]))

    assert not result.passed
    assert [v.details["posting_id"] for v in result.violations] == [2, 3]
    assert {v.message for v in result.violations} == {
        "Dependent posting carries an allowance",
        "Dependent posting has no primary",
    }


def test_quota_overuse_is_an_error() -> None:
    allocation = DeanAllocation(session_id=1, dean_user_id=4, allocated_postings=2, used_postings=3)

    result = check_QUOTA_01([allocation])

    assert not result.passed
    assert result.violations[0].level == "error"


def test_quota_drift_is_only_a_warning() -> None:
    allocation = DeanAllocation(session_id=1, dean_user_id=4, allocated_postings=3, used_postings=2)
    frame = postings_frame([_posting(1, created_by_dean_id=4)])

    result = check_QUOTA_01([allocation], frame)

    assert result.passed
    assert [v.level for v in result.violations] == ["warning"]
    assert result.violations[0].details["active_primaries"] == 1


def test_report_groups_violations_by_rule() -> None:
    frame = postings_frame([_posting(1), _posting(2)])

    report = run_all_invariants(postings=frame)

    assert not report.passed
    assert len(report.violations_by_rule("QA_RULE_SLOT_01")) == 1
    assert report.violations_by_rule("QA_RULE_DEP_01") == []
    assert report.as_dict()["violations"][0]["rule_id"] == "QA_RULE_SLOT_01"
