"""Distance-tiered allowance calculator.

Pure function of ``(rank, distance, policy, visit_count)``. Inside the
threshold only the local running allowance applies; outside it transport,
TETFund and exactly one of DSA or DTA apply.

Example::

    >>> rank = Rank(id=1, local_running_allowance=2000, transport_per_km=50, dta=5000, tetfund=1000)
    >>> calculate_allowance(rank, 20, SessionPolicy(session_id=1)).per_visit_total
    4500.0
"""

from __future__ import annotations

from tp_posting.core.common.types import (
    AllowanceBreakdown,
    LocationCategory,
    Rank,
    SessionPolicy,
)

__all__ = ["is_inside", "dsa_applies", "calculate_allowance", "zero_allowance"]


def is_inside(distance_km: float, policy: SessionPolicy) -> bool:
    return float(distance_km) <= float(policy.inside_distance_threshold_km)


def dsa_applies(distance_km: float, policy: SessionPolicy) -> bool:
    """DSA replaces DTA only when enabled and the distance is inside the DSA band."""

    if not policy.dsa_enabled:
        return False
    return policy.dsa_min_distance_km <= float(distance_km) <= policy.dsa_max_distance_km


def _format_amount(value: float) -> str:
    return f"{value:,.2f}"


def calculate_allowance(
    rank: Rank,
    distance_km: float,
    policy: SessionPolicy,
    visit_count: int = 1,
) -> AllowanceBreakdown:
    """Price one posting under the session's distance tiers.

    Args:
        rank: Rate card of the supervisor's rank.
        distance_km: Distance to the school; validated by the caller.
        policy: Session thresholds and DSA settings.
        visit_count: Number of visits the per-visit total is multiplied by.

    Returns:
        AllowanceBreakdown with category and an audit rationale. DSA and DTA
        are never both non-zero.
    """

    distance = float(distance_km)
    other = float(sum(float(v) for v in rank.other_allowances.values()))

    if is_inside(distance, policy):
        category = LocationCategory.INSIDE
        local_running = float(rank.local_running_allowance)
        transport = dsa = dta = tetfund = 0.0
        rationale = (
            f"INSIDE: {distance:g} km <= {policy.inside_distance_threshold_km:g} km threshold; "
            f"local running {_format_amount(local_running)} only"
        )
    else:
        category = LocationCategory.OUTSIDE
        local_running = 0.0
        transport = float(rank.transport_per_km) * distance
        tetfund = float(rank.tetfund)
        if dsa_applies(distance, policy):
            dsa = float(rank.dta) * float(policy.dsa_percentage) / 100.0
            dta = 0.0
            component = (
                f"DSA {policy.dsa_percentage:g}% of DTA {_format_amount(float(rank.dta))} "
                f"= {_format_amount(dsa)} (within {policy.dsa_min_distance_km:g}-"
                f"{policy.dsa_max_distance_km:g} km)"
            )
        else:
            dsa = 0.0
            dta = float(rank.dta)
            if policy.dsa_enabled:
                component = (
                    f"DTA {_format_amount(dta)} (outside DSA range "
                    f"{policy.dsa_min_distance_km:g}-{policy.dsa_max_distance_km:g} km)"
                )
            else:
                component = f"DTA {_format_amount(dta)} (DSA disabled)"
        rationale = (
            f"OUTSIDE: {distance:g} km > {policy.inside_distance_threshold_km:g} km threshold; "
            f"transport {_format_amount(float(rank.transport_per_km))}/km x {distance:g} km "
            f"= {_format_amount(transport)}; {component}; TETFund {_format_amount(tetfund)}"
        )

    if other:
        rationale += f"; other allowances {_format_amount(other)}"

    per_visit = local_running + transport + dsa + dta + tetfund + other
    visits = int(visit_count)
    return AllowanceBreakdown(
        local_running=local_running,
        transport=transport,
        dsa=dsa,
        dta=dta,
        tetfund=tetfund,
        other=other,
        per_visit_total=per_visit,
        grand_total=per_visit * visits,
        visit_count=visits,
        distance_km=distance,
        category=category,
        rationale=rationale,
    )


def zero_allowance(distance_km: float, policy: SessionPolicy) -> AllowanceBreakdown:
    """All-zero breakdown carried by dependent (merged-group) postings."""

    distance = float(distance_km)
    category = LocationCategory.INSIDE if is_inside(distance, policy) else LocationCategory.OUTSIDE
    return AllowanceBreakdown(
        local_running=0.0,
        transport=0.0,
        dsa=0.0,
        dta=0.0,
        tetfund=0.0,
        other=0.0,
        per_visit_total=0.0,
        grand_total=0.0,
        visit_count=1,
        distance_km=distance,
        category=category,
        rationale=f"{category}: dependent posting (merged group); no allowance",
    )
