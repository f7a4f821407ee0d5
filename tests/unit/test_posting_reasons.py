from __future__ import annotations

from tp_posting.core.common.errors import (
    ConflictError,
    NotFoundError,
    PostingEngineError,
    StorageFailure,
    ValidationError,
)
from tp_posting.core.common.reasons import ReasonCode, build_reason, reason_message


def test_every_reason_code_has_a_message() -> None:
    for code in ReasonCode:
        assert reason_message(code)


def test_duplicate_message_references_first_row() -> None:
    reason = build_reason(ReasonCode.DUPLICATE_IN_BATCH, row=1)

    assert reason.code is ReasonCode.DUPLICATE_IN_BATCH
    assert "row 1" in reason.message


def test_missing_placeholders_are_left_in_place() -> None:
    assert "{holder}" in reason_message(ReasonCode.SLOT_TAKEN, group_number=1, visit_number=2)


def test_error_kinds_and_default_codes() -> None:
    assert ValidationError("x").kind == "validation"
    assert NotFoundError("x").code is ReasonCode.NOT_FOUND
    conflict = ConflictError("taken", code=ReasonCode.SLOT_TAKEN, details={"slot": [5, 1, 2]})
    assert conflict.to_dict() == {
        "kind": "conflict",
        "code": "SLOT_TAKEN",
        "message": "taken",
        "details": {"slot": [5, 1, 2]},
    }


def test_storage_failure_is_not_a_row_error() -> None:
    assert not issubclass(StorageFailure, PostingEngineError)
