"""pandas summaries over posting records (core-only, no I/O).

Frames use one row per posting with the allowance columns flattened. TETFund
is paid once per supervisor per session, so supervisor totals take its
maximum instead of its sum.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, Mapping

import pandas as pd

from tp_posting.core.common.types import Posting

__all__ = [
    "POSTING_COLUMNS",
    "ALLOWANCE_COLUMNS",
    "postings_frame",
    "supervisor_allowance_totals",
    "session_allowance_summary",
    "auto_posting_statistics",
]

ALLOWANCE_COLUMNS: tuple[str, ...] = (
    "local_running",
    "transport",
    "dsa",
    "dta",
    "tetfund",
    "other",
    "per_visit_total",
    "grand_total",
)

POSTING_COLUMNS: tuple[str, ...] = (
    "posting_id",
    "session_id",
    "supervisor_id",
    "school_id",
    "group_number",
    "visit_number",
    "distance_km",
    "is_primary",
    "merged_with_posting_id",
    "status",
    "posting_type",
    "created_by_dean_id",
    "category",
) + ALLOWANCE_COLUMNS


def postings_frame(postings: Iterable[Posting]) -> pd.DataFrame:
    """Flatten postings into a frame with :data:`POSTING_COLUMNS`."""

    rows: list[dict[str, Any]] = []
    for posting in postings:
        allowance = posting.allowance
        rows.append(
            {
                "posting_id": posting.id,
                "session_id": posting.session_id,
                "supervisor_id": posting.supervisor_id,
                "school_id": posting.school_id,
                "group_number": posting.group_number,
                "visit_number": posting.visit_number,
                "distance_km": posting.distance_km,
                "is_primary": posting.is_primary,
                "merged_with_posting_id": posting.merged_with_posting_id,
                "status": str(posting.status),
                "posting_type": str(posting.posting_type),
                "created_by_dean_id": posting.created_by_dean_id,
                "category": str(allowance.category),
                "local_running": allowance.local_running,
                "transport": allowance.transport,
                "dsa": allowance.dsa,
                "dta": allowance.dta,
                "tetfund": allowance.tetfund,
                "other": allowance.other,
                "per_visit_total": allowance.per_visit_total,
                "grand_total": allowance.grand_total,
            }
        )
    frame = pd.DataFrame(rows, columns=list(POSTING_COLUMNS))
    if not frame.empty:
        frame[list(ALLOWANCE_COLUMNS)] = frame[list(ALLOWANCE_COLUMNS)].astype(float)
    return frame


def _active_primary(frame: pd.DataFrame) -> pd.DataFrame:
    if frame.empty:
        return frame
    mask = (frame["status"] == "active") & frame["is_primary"].astype(bool)
    return frame.loc[mask]


def supervisor_allowance_totals(frame: pd.DataFrame) -> pd.DataFrame:
    """Per-supervisor totals of active primary postings.

    ``total`` adds local running, transport, DSA, DTA and other allowances of
    every posting, plus TETFund once.
    """

    columns = [
        "supervisor_id",
        "postings",
        "inside",
        "outside",
        "local_running",
        "transport",
        "dsa",
        "dta",
        "other",
        "tetfund",
        "total",
    ]
    active = _active_primary(frame)
    if active.empty:
        return pd.DataFrame(columns=columns)

    grouped = active.groupby("supervisor_id", sort=True)
    totals = grouped[["local_running", "transport", "dsa", "dta", "other"]].sum()
    totals["tetfund"] = grouped["tetfund"].max()
    totals["postings"] = grouped.size()
    totals["inside"] = grouped["category"].apply(lambda s: int((s == "INSIDE").sum()))
    totals["outside"] = grouped["category"].apply(lambda s: int((s == "OUTSIDE").sum()))
    totals["total"] = totals[["local_running", "transport", "dsa", "dta", "other", "tetfund"]].sum(axis=1)
    result = totals.reset_index()
    return result[columns]


def session_allowance_summary(frame: pd.DataFrame) -> Dict[str, Any]:
    """Headline numbers of a session's active postings."""

    if frame.empty:
        active = frame
    else:
        active = frame.loc[frame["status"] == "active"]
    primary = _active_primary(frame)
    per_supervisor = supervisor_allowance_totals(frame)
    dependent_count = int(len(active) - len(primary))
    return {
        "total_postings": int(len(active)),
        "primary_postings": int(len(primary)),
        "dependent_postings": dependent_count,
        "supervisors": int(per_supervisor["supervisor_id"].nunique()) if not per_supervisor.empty else 0,
        "inside_postings": int((primary["category"] == "INSIDE").sum()) if not primary.empty else 0,
        "outside_postings": int((primary["category"] == "OUTSIDE").sum()) if not primary.empty else 0,
        "dsa_postings": int((primary["dsa"] > 0).sum()) if not primary.empty else 0,
        "dta_postings": int((primary["dta"] > 0).sum()) if not primary.empty else 0,
        "total_amount": float(per_supervisor["total"].sum()) if not per_supervisor.empty else 0.0,
    }


def auto_posting_statistics(assignments: Iterable[Mapping[str, Any]]) -> Dict[str, Any]:
    """Load spread of an auto-posting plan (``supervisor_id`` per assigned slot)."""

    frame = pd.DataFrame(list(assignments), columns=["supervisor_id", "school_id", "visit_number"])
    if frame.empty:
        return {"assigned": 0, "supervisors": 0, "min_per_supervisor": 0, "max_per_supervisor": 0, "schools": 0}
    per_supervisor = frame.groupby("supervisor_id").size()
    return {
        "assigned": int(len(frame)),
        "supervisors": int(per_supervisor.size),
        "min_per_supervisor": int(per_supervisor.min()),
        "max_per_supervisor": int(per_supervisor.max()),
        "schools": int(frame["school_id"].nunique()),
    }
