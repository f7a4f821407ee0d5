"""QA invariants over a session's postings and dean allocations.

Each ``check_*`` returns a :class:`QaRuleResult`; :func:`run_all_invariants`
collects them into a :class:`QaReport`. Inputs are the frame produced by
:func:`tp_posting.core.reporting.postings_frame` and a list of allocations.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence

import pandas as pd

from tp_posting.core.common.types import DeanAllocation

RuleId = str

__all__ = [
    "QaViolation",
    "QaRuleResult",
    "QaReport",
    "RULE_DESCRIPTIONS",
    "run_all_invariants",
    "check_SLOT_01",
    "check_ALLOW_01",
    "check_ALLOW_02",
    "check_DEP_01",
    "check_QUOTA_01",
]

RULE_DESCRIPTIONS: Mapping[RuleId, str] = {
    "QA_RULE_SLOT_01": "At most one active posting per (session, school, group, visit)",
    "QA_RULE_ALLOW_01": "DSA and DTA are never both non-zero",
    "QA_RULE_ALLOW_02": "Inside postings carry local running only; outside postings carry none",
    "QA_RULE_DEP_01": "Dependent postings carry zero allowance and reference a primary",
    "QA_RULE_QUOTA_01": "Dean used postings never exceed allocated postings",
}

_EPS = 1e-9


@dataclass(frozen=True)
class QaViolation:
    """One broken rule.

    Attributes:
        rule_id: Stable rule id, e.g. ``"QA_RULE_SLOT_01"``.
        level: ``"error"`` or ``"warning"``.
        message: Readable cause.
        details: Optional structured context.
    """

    rule_id: RuleId
    level: str
    message: str
    details: Mapping[str, object] | None = None

    def as_dict(self) -> dict[str, object]:
        return {
            "rule_id": self.rule_id,
            "level": self.level,
            "message": self.message,
            "details": dict(self.details or {}),
        }


@dataclass(frozen=True)
class QaRuleResult:
    rule_id: RuleId
    passed: bool
    violations: list[QaViolation]


@dataclass(frozen=True)
class QaReport:
    results: list[QaRuleResult]

    @property
    def violations(self) -> list[QaViolation]:
        merged: list[QaViolation] = []
        for result in self.results:
            merged.extend(result.violations)
        return merged

    @property
    def passed(self) -> bool:
        return all(result.passed for result in self.results)

    def violations_by_rule(self, rule_id: RuleId) -> list[QaViolation]:
        return [
            violation
            for result in self.results
            if result.rule_id == rule_id
            for violation in result.violations
        ]

    def to_summary_frame(self, *, descriptions: Mapping[str, str] | None = None) -> pd.DataFrame:
        descriptions = RULE_DESCRIPTIONS if descriptions is None else descriptions
        rows = []
        for result in sorted(self.results, key=lambda item: item.rule_id):
            rows.append(
                {
                    "rule_id": result.rule_id,
                    "description": descriptions.get(result.rule_id, ""),
                    "status": "PASS" if result.passed else "FAIL",
                    "violations_count": len(result.violations),
                }
            )
        return pd.DataFrame(rows, columns=["rule_id", "description", "status", "violations_count"])

    def as_dict(self) -> dict[str, object]:
        return {
            "passed": self.passed,
            "rules": self.to_summary_frame().to_dict(orient="records"),
            "violations": [v.as_dict() for v in self.violations],
        }


def run_all_invariants(
    *,
    postings: pd.DataFrame,
    allocations: Sequence[DeanAllocation] = (),
) -> QaReport:
    """Run every rule.

    Example::

        >>> from tp_posting.core.reporting import postings_frame
        >>> run_all_invariants(postings=postings_frame([])).passed
        True
    """

    return QaReport(
        results=[
            check_SLOT_01(postings),
            check_ALLOW_01(postings),
            check_ALLOW_02(postings),
            check_DEP_01(postings),
            check_QUOTA_01(allocations, postings),
        ]
    )


def _active(frame: pd.DataFrame) -> pd.DataFrame:
    if frame.empty:
        return frame
    return frame.loc[frame["status"] == "active"]


def _posting_details(row: pd.Series) -> dict[str, object]:
    return {
        "posting_id": row.get("posting_id"),
        "school_id": row.get("school_id"),
        "group_number": row.get("group_number"),
        "visit_number": row.get("visit_number"),
    }


def check_SLOT_01(postings: pd.DataFrame) -> QaRuleResult:
    """QA_RULE_SLOT_01: duplicate active slots."""

    rule = "QA_RULE_SLOT_01"
    active = _active(postings)
    if active.empty:
        return QaRuleResult(rule, True, [])
    keys = ["session_id", "school_id", "group_number", "visit_number"]
    counts = active.groupby(keys, sort=True).size()
    violations = [
        QaViolation(
            rule_id=rule,
            level="error",
            message=f"{int(count)} active postings share one slot",
            details=dict(zip(keys, (int(v) for v in key))),
        )
        for key, count in counts.items()
        if count > 1
    ]
    return QaRuleResult(rule, not violations, violations)


def check_ALLOW_01(postings: pd.DataFrame) -> QaRuleResult:
    """QA_RULE_ALLOW_01: DSA/DTA exclusivity."""

    rule = "QA_RULE_ALLOW_01"
    if postings.empty:
        return QaRuleResult(rule, True, [])
    broken = postings.loc[(postings["dsa"] > _EPS) & (postings["dta"] > _EPS)]
    violations = [
        QaViolation(rule, "error", "Posting carries both DSA and DTA", _posting_details(row))
        for _, row in broken.iterrows()
    ]
    return QaRuleResult(rule, not violations, violations)


def check_ALLOW_02(postings: pd.DataFrame) -> QaRuleResult:
    """QA_RULE_ALLOW_02: inside/outside component exclusivity."""

    rule = "QA_RULE_ALLOW_02"
    if postings.empty:
        return QaRuleResult(rule, True, [])
    outside_parts = postings[["transport", "dsa", "dta", "tetfund"]].abs().sum(axis=1)
    inside_broken = postings.loc[(postings["category"] == "INSIDE") & (outside_parts > _EPS)]
    outside_broken = postings.loc[(postings["category"] == "OUTSIDE") & (postings["local_running"].abs() > _EPS)]
    violations: list[QaViolation] = []
    for _, row in inside_broken.iterrows():
        violations.append(QaViolation(rule, "error", "Inside posting carries outside components", _posting_details(row)))
    for _, row in outside_broken.iterrows():
        violations.append(QaViolation(rule, "error", "Outside posting carries local running", _posting_details(row)))
    return QaRuleResult(rule, not violations, violations)


def check_DEP_01(postings: pd.DataFrame) -> QaRuleResult:
    """QA_RULE_DEP_01: dependents are free and point at an existing primary."""

    rule = "QA_RULE_DEP_01"
    if postings.empty:
        return QaRuleResult(rule, True, [])
    dependents = postings.loc[~postings["is_primary"].astype(bool)]
    primary_ids = set(postings.loc[postings["is_primary"].astype(bool), "posting_id"].dropna().astype(int))
    violations: list[QaViolation] = []
    for _, row in dependents.iterrows():
        if abs(float(row["grand_total"])) > _EPS or abs(float(row["per_visit_total"])) > _EPS:
            violations.append(QaViolation(rule, "error", "Dependent posting carries an allowance", _posting_details(row)))
        parent = row.get("merged_with_posting_id")
        if parent is None or pd.isna(parent) or int(parent) not in primary_ids:
            violations.append(QaViolation(rule, "error", "Dependent posting has no primary", _posting_details(row)))
    return QaRuleResult(rule, not violations, violations)


def check_QUOTA_01(
    allocations: Iterable[DeanAllocation],
    postings: pd.DataFrame | None = None,
) -> QaRuleResult:
    """QA_RULE_QUOTA_01: quota monotonicity, plus a drift warning against postings."""

    rule = "QA_RULE_QUOTA_01"
    violations: list[QaViolation] = []
    dean_counts: dict[int, int] = {}
    if postings is not None and not postings.empty:
        active = _active(postings)
        authored = active.loc[active["is_primary"].astype(bool) & active["created_by_dean_id"].notna()]
        dean_counts = {int(k): int(v) for k, v in authored.groupby("created_by_dean_id").size().items()}

    for allocation in allocations:
        details = {
            "dean_user_id": allocation.dean_user_id,
            "allocated_postings": allocation.allocated_postings,
            "used_postings": allocation.used_postings,
        }
        if allocation.used_postings > allocation.allocated_postings or allocation.used_postings < 0:
            violations.append(QaViolation(rule, "error", "Used postings outside 0..allocated", details))
        if dean_counts and dean_counts.get(allocation.dean_user_id, 0) != allocation.used_postings:
            violations.append(
                QaViolation(
                    rule,
                    "warning",
                    "Used postings differ from active dean-authored primaries",
                    {**details, "active_primaries": dean_counts.get(allocation.dean_user_id, 0)},
                )
            )
    passed = not any(v.level == "error" for v in violations)
    return QaRuleResult(rule, passed, violations)
