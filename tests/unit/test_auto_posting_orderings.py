from __future__ import annotations

import pytest

from tp_posting.core.auto_posting import (
    SLOT_ORDERINGS,
    AutoPostingOptions,
    default_supervisor_key,
    slot_sort_key,
)
from tp_posting.core.common.errors import ValidationError
from tp_posting.core.common.types import Slot, Supervisor

SLOTS = [
    Slot(school_id=7, group_number=1, visit_number=1, distance_km=40, route_id=1, lga="Moro"),
    Slot(school_id=5, group_number=1, visit_number=2, distance_km=8, route_id=2, lga="Ilorin West"),
    Slot(school_id=5, group_number=1, visit_number=1, distance_km=8, route_id=2, lga="Ilorin West"),
    Slot(school_id=6, group_number=1, visit_number=1, distance_km=20, route_id=None, lga=None),
]


def _keys(slots: list[Slot]) -> list[tuple[int, int, int]]:
    return [slot.key for slot in slots]


def test_known_orderings() -> None:
    assert set(SLOT_ORDERINGS) == {"school_group_visit", "visit_first", "route_based", "lga_based"}


def test_school_group_visit_ordering() -> None:
    ordered = sorted(SLOTS, key=slot_sort_key("school_group_visit"))

    assert _keys(ordered) == [(5, 1, 1), (5, 1, 2), (6, 1, 1), (7, 1, 1)]


def test_visit_first_ordering() -> None:
    ordered = sorted(SLOTS, key=slot_sort_key("visit_first"))

    assert _keys(ordered) == [(5, 1, 1), (6, 1, 1), (7, 1, 1), (5, 1, 2)]


def test_route_ordering_puts_unrouted_schools_last() -> None:
    ordered = sorted(SLOTS, key=slot_sort_key("route_based"))

    assert _keys(ordered) == [(7, 1, 1), (5, 1, 1), (5, 1, 2), (6, 1, 1)]


def test_lga_ordering_is_alphabetical() -> None:
    ordered = sorted(SLOTS, key=slot_sort_key("lga_based"))

    assert _keys(ordered) == [(5, 1, 1), (5, 1, 2), (7, 1, 1), (6, 1, 1)]


def test_priority_puts_farther_schools_first() -> None:
    ordered = sorted(SLOTS, key=slot_sort_key("school_group_visit", priority_enabled=True))

    assert _keys(ordered) == [(7, 1, 1), (6, 1, 1), (5, 1, 1), (5, 1, 2)]


def test_unknown_ordering_is_rejected() -> None:
    with pytest.raises(ValidationError):
        slot_sort_key("random")


def test_supervisor_key_prefers_least_loaded_then_natural_id() -> None:
    key = default_supervisor_key()
    sups = [Supervisor(id=10, name="J"), Supervisor(id=2, name="B"), Supervisor(id=3, name="C")]
    load = {10: 0, 2: 1, 3: 0}

    ordered = sorted(sups, key=lambda s: key(s, load[s.id]))

    assert [s.id for s in ordered] == [3, 10, 2]


def test_supervisor_key_uses_rank_priority_when_enabled() -> None:
    key = default_supervisor_key(priority_enabled=True)
    sups = [Supervisor(id=1, name="A", priority_number=3), Supervisor(id=2, name="B", priority_number=1)]

    ordered = sorted(sups, key=lambda s: key(s, 0))

    assert [s.id for s in ordered] == [2, 1]


def test_options_criteria_name_custom_orderings() -> None:
    options = AutoPostingOptions(slot_ordering=lambda slot: (slot.visit_number,), max_assignments=4)

    assert options.criteria()["slot_ordering"] == "custom"
    assert options.criteria()["max_assignments"] == 4
