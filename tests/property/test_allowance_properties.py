from __future__ import annotations

import pytest

hypothesis = pytest.importorskip("hypothesis")
from hypothesis import given, settings  # type: ignore  # noqa: E402
from hypothesis import strategies as st  # type: ignore  # noqa: E402

from tp_posting.core.allowance import calculate_allowance  # noqa: E402
from tp_posting.core.common.types import LocationCategory, Rank, SessionPolicy, natural_key  # noqa: E402

amounts = st.floats(min_value=0, max_value=100_000, allow_nan=False, allow_infinity=False)
distances = st.floats(min_value=0, max_value=500, allow_nan=False, allow_infinity=False)


@st.composite
def policies(draw) -> SessionPolicy:
    low = draw(st.floats(min_value=0, max_value=100, allow_nan=False))
    high = draw(st.floats(min_value=low, max_value=200, allow_nan=False))
    return SessionPolicy(
        session_id=1,
        inside_distance_threshold_km=draw(st.floats(min_value=0, max_value=50, allow_nan=False)),
        dsa_enabled=draw(st.booleans()),
        dsa_min_distance_km=low,
        dsa_max_distance_km=high,
        dsa_percentage=draw(st.floats(min_value=0, max_value=100, allow_nan=False)),
    )


@st.composite
def ranks(draw) -> Rank:
    return Rank(
        id=1,
        local_running_allowance=draw(amounts),
        transport_per_km=draw(st.floats(min_value=0, max_value=500, allow_nan=False)),
        dta=draw(amounts),
        tetfund=draw(amounts),
    )


@settings(max_examples=200)
@given(ranks(), distances, policies())
def test_dsa_and_dta_are_never_both_paid(rank: Rank, distance: float, policy: SessionPolicy) -> None:
    result = calculate_allowance(rank, distance, policy)

    assert result.dsa == 0 or result.dta == 0


@settings(max_examples=200)
@given(ranks(), distances, policies())
def test_inside_and_outside_components_are_exclusive(
    rank: Rank, distance: float, policy: SessionPolicy
) -> None:
    result = calculate_allowance(rank, distance, policy)

    if result.category is LocationCategory.INSIDE:
        assert result.transport == result.dsa == result.dta == result.tetfund == 0
    else:
        assert result.local_running == 0


@settings(max_examples=100)
@given(ranks(), distances, policies(), st.integers(min_value=1, max_value=6))
def test_grand_total_scales_with_visits(rank: Rank, distance: float, policy: SessionPolicy, visits: int) -> None:
    result = calculate_allowance(rank, distance, policy, visit_count=visits)

    assert result.grand_total == pytest.approx(result.per_visit_total * visits)
    assert result.per_visit_total >= 0


@settings(max_examples=50)
@given(st.lists(st.text(min_size=1), min_size=3, max_size=6))
def test_natural_key_monotonic(ids: list[str]) -> None:
    sorted_ids = sorted(ids, key=natural_key)
    for earlier, later in zip(sorted_ids, sorted_ids[1:]):
        assert natural_key(earlier) <= natural_key(later)
