from __future__ import annotations

from dataclasses import dataclass, field

import pytest

from tp_posting.core.allowance import zero_allowance
from tp_posting.core.common.errors import ConflictError, NotFoundError, ValidationError
from tp_posting.core.common.reasons import ReasonCode
from tp_posting.core.common.types import (
    Group,
    Posting,
    PostingCandidate,
    SessionPolicy,
    Supervisor,
)
from tp_posting.core.policy_loader import CeilingMode
from tp_posting.core.validator import PostingValidator


@dataclass
class FakeReader:
    policies: dict[int, SessionPolicy] = field(default_factory=dict)
    supervisors: dict[int, Supervisor] = field(default_factory=dict)
    groups: dict[tuple[int, int, int], Group] = field(default_factory=dict)
    postings: dict[tuple[int, int, int, int], Posting] = field(default_factory=dict)
    counts: dict[int, int] = field(default_factory=dict)

    def get_session_policy(self, session_id: int) -> SessionPolicy | None:
        return self.policies.get(session_id)

    def get_supervisor(self, supervisor_id: int) -> Supervisor | None:
        return self.supervisors.get(supervisor_id)

    def get_group(self, school_id: int, session_id: int, group_number: int) -> Group | None:
        return self.groups.get((school_id, session_id, group_number))

    def find_active_posting(self, school_id, group_number, visit_number, session_id):
        return self.postings.get((session_id, school_id, group_number, visit_number))

    def count_active_postings(self, supervisor_id: int, session_id: int) -> int:
        return self.counts.get(supervisor_id, 0)


def _reader(**policy_overrides) -> FakeReader:
    policy = SessionPolicy(session_id=1, **policy_overrides)
    reader = FakeReader(policies={1: policy})
    reader.supervisors = {
        1: Supervisor(id=1, name="Ada Obi", rank_id=1),
        2: Supervisor(id=2, name="Bola Ade", rank_id=1),
        5: Supervisor(id=5, name="Ngozi Okafor", rank_id=1, is_active=False),
    }
    reader.groups = {
        (5, 1, 1): Group(school_id=5, session_id=1, group_number=1, student_count=6, available_visits=(1, 3)),
    }
    taken = Posting(
        session_id=1,
        supervisor_id=2,
        school_id=5,
        group_number=1,
        visit_number=2,
        distance_km=8,
        is_primary=True,
        allowance=zero_allowance(8, policy),
        id=11,
    )
    reader.postings = {(1, 5, 1, 2): taken}
    return reader


def _candidate(**overrides) -> PostingCandidate:
    values = {"session_id": 1, "supervisor_id": 1, "school_id": 5, "group_number": 1, "visit_number": 1}
    values.update(overrides)
    return PostingCandidate(**values)


def test_valid_candidate_has_no_errors() -> None:
    result = PostingValidator(_reader()).validate(_candidate())

    assert result.valid
    assert result.errors == []
    assert result.code is ReasonCode.OK


def test_unknown_session_raises_not_found() -> None:
    with pytest.raises(NotFoundError) as excinfo:
        PostingValidator(_reader()).check(_candidate(session_id=2))
    assert excinfo.value.code is ReasonCode.SESSION_NOT_FOUND


@pytest.mark.parametrize(
    ("overrides", "code"),
    [
        ({"supervisor_id": 99}, ReasonCode.SUPERVISOR_NOT_FOUND),
        ({"supervisor_id": 5}, ReasonCode.SUPERVISOR_INACTIVE),
        ({"group_number": 4}, ReasonCode.GROUP_NOT_FOUND),
    ],
)
def test_missing_references_are_not_found(overrides: dict, code: ReasonCode) -> None:
    result = PostingValidator(_reader()).validate(_candidate(**overrides))

    assert not result.valid
    assert result.error_kind == "not_found"
    assert result.code is code


def test_visit_out_of_range_is_a_validation_error() -> None:
    with pytest.raises(ValidationError) as excinfo:
        PostingValidator(_reader()).check(_candidate(visit_number=4))
    assert excinfo.value.code is ReasonCode.VISIT_OUT_OF_RANGE
    assert "1..3" in excinfo.value.message


def test_taken_slot_names_the_holder() -> None:
    with pytest.raises(ConflictError) as excinfo:
        PostingValidator(_reader()).check(_candidate(visit_number=2))
    assert excinfo.value.code is ReasonCode.SLOT_TAKEN
    assert excinfo.value.message == "Group 1, Visit 2 is already assigned to Bola Ade."


def test_enforced_ceiling_rejects_supervisor() -> None:
    reader = _reader(max_postings_per_supervisor=2)
    reader.counts[1] = 2

    with pytest.raises(ConflictError) as excinfo:
        PostingValidator(reader, ceiling_mode=CeilingMode.ENFORCED).check(_candidate())
    assert excinfo.value.code is ReasonCode.SUPERVISOR_AT_CEILING
    assert excinfo.value.details == {"current": 2, "ceiling": 2}


def test_advisory_ceiling_only_warns() -> None:
    reader = _reader(max_postings_per_supervisor=2)
    reader.counts[1] = 2

    result = PostingValidator(reader, ceiling_mode=CeilingMode.ADVISORY).validate(_candidate())

    assert result.valid
    assert result.warnings == ["Supervisor already holds 2 posting(s); the session limit is 2."]


def test_ceiling_off_skips_the_count() -> None:
    reader = _reader(max_postings_per_supervisor=1)
    reader.counts[1] = 7

    assert PostingValidator(reader, ceiling_mode=CeilingMode.OFF).validate(_candidate()).valid


def test_ceiling_falls_back_to_max_visits() -> None:
    reader = _reader(max_supervision_visits=3)
    reader.counts[1] = 3

    result = PostingValidator(reader).validate(_candidate())

    assert result.code is ReasonCode.SUPERVISOR_AT_CEILING
