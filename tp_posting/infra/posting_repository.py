"""SQLite implementation of the engine's storage collaborators.

One :class:`PostingRepository` wraps one connection that is already inside a
unit of work. It satisfies the ``PostingStore``, ``QuotaStore`` and
``AutoPostingStore`` protocols of the core, converts rows into core records and
translates :mod:`sqlite3` failures:

* a violation of the active-slot unique index becomes a per-row
  :class:`ConflictError` (``SLOT_TAKEN_AT_COMMIT``);
* any other SQLite error becomes :class:`StorageFailure`.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Any, Iterable, Mapping, Sequence

import pandas as pd

from tp_posting.core.auto_posting import (
    BATCH_COMPLETED,
    BATCH_FAILED,
    BATCH_PROCESSING,
    BATCH_ROLLED_BACK,
    AutoPostingBatchRecord,
)
from tp_posting.core.common.errors import ConflictError, StorageFailure, ValidationError
from tp_posting.core.common.reasons import ReasonCode, reason_message
from tp_posting.core.common.types import (
    AllowanceBreakdown,
    ClusterMember,
    DeanAllocation,
    Group,
    LocationCategory,
    Posting,
    PostingStatus,
    PostingType,
    Rank,
    School,
    SessionPolicy,
    Supervisor,
)
from tp_posting.core.policy_loader import SessionDefaults
from tp_posting.core.reporting import POSTING_COLUMNS
from tp_posting.infra.errors import ReferenceDataError
from tp_posting.infra.local_database import savepoint, utc_now_iso

__all__ = ["PostingRepository", "seed_reference_data"]

_ACTIVE_SLOT_INDEX = "ux_postings_active_slot"

_SUPERVISOR_SELECT = """
    SELECT s.id, s.name, s.rank_id, s.faculty_id, s.is_dean, s.is_active,
           COALESCE(r.priority_number, 99) AS priority_number
    FROM supervisors AS s
    LEFT JOIN ranks AS r ON r.id = s.rank_id
"""


def _is_slot_violation(exc: sqlite3.IntegrityError) -> bool:
    text = str(exc)
    return "UNIQUE" in text and ("postings.session_id" in text or _ACTIVE_SLOT_INDEX in text)


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _row_to_posting(row: sqlite3.Row) -> Posting:
    allowance = AllowanceBreakdown(
        local_running=float(row["local_running"]),
        transport=float(row["transport"]),
        dsa=float(row["dsa"]),
        dta=float(row["dta"]),
        tetfund=float(row["tetfund"]),
        other=float(row["other"]),
        per_visit_total=float(row["per_visit_total"]),
        grand_total=float(row["grand_total"]),
        visit_count=int(row["visit_count"]),
        distance_km=float(row["distance_km"]),
        category=LocationCategory(row["category"]),
        rationale=row["rationale"],
    )
    return Posting(
        id=int(row["id"]),
        session_id=int(row["session_id"]),
        supervisor_id=int(row["supervisor_id"]),
        school_id=int(row["school_id"]),
        group_number=int(row["group_number"]),
        visit_number=int(row["visit_number"]),
        distance_km=float(row["distance_km"]),
        is_primary=bool(row["is_primary"]),
        allowance=allowance,
        merged_with_posting_id=row["merged_with_posting_id"],
        status=PostingStatus(row["status"]),
        rank_id=row["rank_id"],
        posting_type=PostingType(row["posting_type"]),
        posted_by=row["posted_by"],
        created_by_dean_id=row["created_by_dean_id"],
        auto_posting_batch_id=row["auto_posting_batch_id"],
        created_at=_parse_timestamp(row["created_at"]),
    )


def _row_to_supervisor(row: sqlite3.Row) -> Supervisor:
    return Supervisor(
        id=int(row["id"]),
        name=row["name"],
        rank_id=row["rank_id"],
        faculty_id=row["faculty_id"],
        is_dean=bool(row["is_dean"]),
        is_active=bool(row["is_active"]),
        priority_number=int(row["priority_number"]),
    )


def _row_to_batch(row: sqlite3.Row) -> AutoPostingBatchRecord:
    return AutoPostingBatchRecord(
        id=int(row["id"]),
        session_id=int(row["session_id"]),
        initiated_by=row["initiated_by"],
        status=row["status"],
        criteria=json.loads(row["criteria"] or "{}"),
        total_postings_created=int(row["total_postings_created"]),
        total_supervisors_posted=int(row["total_supervisors_posted"]),
        error_message=row["error_message"],
        started_at=_parse_timestamp(row["started_at"]),
        completed_at=_parse_timestamp(row["completed_at"]),
    )


def _row_to_allocation(row: sqlite3.Row) -> DeanAllocation:
    return DeanAllocation(
        id=int(row["id"]),
        session_id=int(row["session_id"]),
        dean_user_id=int(row["dean_user_id"]),
        faculty_id=row["faculty_id"],
        allocated_postings=int(row["allocated_postings"]),
        used_postings=int(row["used_postings"]),
        notes=row["notes"],
        allocated_by=row["allocated_by"],
    )


class PostingRepository:
    """Storage collaborator bound to one open connection.

    Args:
        conn: Connection inside a :meth:`LocalDatabase.unit_of_work`.
        defaults: Fallbacks for session columns left ``NULL``.
        default_max_postings: Ceiling used when a session sets none.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        defaults: SessionDefaults,
        default_max_postings: int | None = None,
    ) -> None:
        self._conn = conn
        self._defaults = defaults
        self._default_max_postings = default_max_postings

    # ---------------------------------------------------------------- helpers
    def _query(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        try:
            return self._conn.execute(sql, tuple(params)).fetchall()
        except sqlite3.Error as exc:
            raise StorageFailure(f"Storage read failed: {exc}", cause=exc) from exc

    def _query_one(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Row | None:
        rows = self._query(sql, params)
        return rows[0] if rows else None

    def _write(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        try:
            return self._conn.execute(sql, tuple(params))
        except sqlite3.IntegrityError as exc:
            raise ValidationError(f"Rejected by storage constraint: {exc}", code=ReasonCode.INVALID_INPUT) from exc
        except sqlite3.Error as exc:
            raise StorageFailure(f"Storage write failed: {exc}", cause=exc) from exc

    def savepoint(self, name: str) -> AbstractContextManager[None]:
        return savepoint(self._conn, name)

    def seed(self, payload: Mapping[str, Iterable[Mapping[str, Any]]]) -> dict[str, int]:
        try:
            return seed_reference_data(self._conn, payload)
        except sqlite3.IntegrityError as exc:
            raise ReferenceDataError(section="seed", message=str(exc)) from exc

    # ------------------------------------------------------------- reference
    def get_session_policy(self, session_id: int) -> SessionPolicy | None:
        row = self._query_one("SELECT * FROM sessions WHERE id = ?", (session_id,))
        if row is None:
            return None
        dsa_enabled = row["dsa_enabled"]
        return self._defaults.session_policy(
            int(row["id"]),
            inside_distance_threshold_km=row["inside_distance_threshold_km"],
            dsa_enabled=None if dsa_enabled is None else bool(dsa_enabled),
            dsa_min_distance_km=row["dsa_min_distance_km"],
            dsa_max_distance_km=row["dsa_max_distance_km"],
            dsa_percentage=row["dsa_percentage"],
            max_supervision_visits=row["max_supervision_visits"],
            max_postings_per_supervisor=row["max_postings_per_supervisor"] or self._default_max_postings,
        )

    def get_rank(self, rank_id: int) -> Rank | None:
        row = self._query_one("SELECT * FROM ranks WHERE id = ?", (rank_id,))
        if row is None:
            return None
        other = json.loads(row["other_allowances"] or "{}")
        return Rank(
            id=int(row["id"]),
            name=row["name"],
            local_running_allowance=float(row["local_running_allowance"]),
            transport_per_km=float(row["transport_per_km"]),
            dsa=float(row["dsa"]),
            dta=float(row["dta"]),
            tetfund=float(row["tetfund"]),
            other_allowances={str(k): float(v) for k, v in other.items()},
            priority_number=int(row["priority_number"]),
        )

    def get_supervisor(self, supervisor_id: int) -> Supervisor | None:
        row = self._query_one(_SUPERVISOR_SELECT + " WHERE s.id = ?", (supervisor_id,))
        return _row_to_supervisor(row) if row is not None else None

    def list_supervisors(self, *, faculty_id: int | None = None) -> list[Supervisor]:
        sql = _SUPERVISOR_SELECT + " WHERE s.is_active = 1"
        params: list[Any] = []
        if faculty_id is not None:
            sql += " AND s.faculty_id = ?"
            params.append(faculty_id)
        return [_row_to_supervisor(row) for row in self._query(sql + " ORDER BY s.id", params)]

    def get_school(self, school_id: int) -> School | None:
        row = self._query_one("SELECT * FROM schools WHERE id = ?", (school_id,))
        if row is None:
            return None
        return School(
            id=int(row["id"]),
            name=row["name"],
            distance_km=float(row["distance_km"]),
            route_id=row["route_id"],
            lga=row["lga"],
        )

    # ----------------------------------------------------------------- groups
    def _occupied_visits(self, school_id: int, session_id: int, group_number: int) -> set[int]:
        rows = self._query(
            """
            SELECT visit_number FROM postings
            WHERE session_id = ? AND school_id = ? AND group_number = ? AND status = 'active'
            """,
            (session_id, school_id, group_number),
        )
        return {int(row["visit_number"]) for row in rows}

    def _is_merged_secondary(self, school_id: int, session_id: int, group_number: int) -> bool:
        row = self._query_one(
            """
            SELECT 1 FROM merged_groups
            WHERE session_id = ? AND secondary_school_id = ? AND secondary_group_number = ?
            """,
            (session_id, school_id, group_number),
        )
        return row is not None

    def _build_group(self, row: sqlite3.Row, max_visits: int) -> Group:
        school_id = int(row["school_id"])
        session_id = int(row["session_id"])
        group_number = int(row["group_number"])
        occupied = self._occupied_visits(school_id, session_id, group_number)
        return Group(
            school_id=school_id,
            session_id=session_id,
            group_number=group_number,
            student_count=int(row["student_count"]),
            available_visits=tuple(v for v in range(1, max_visits + 1) if v not in occupied),
            is_merged_secondary=self._is_merged_secondary(school_id, session_id, group_number),
        )

    def _max_visits(self, session_id: int) -> int:
        policy = self.get_session_policy(session_id)
        return policy.max_supervision_visits if policy else self._defaults.max_supervision_visits

    def get_group(self, school_id: int, session_id: int, group_number: int) -> Group | None:
        row = self._query_one(
            "SELECT * FROM school_groups WHERE session_id = ? AND school_id = ? AND group_number = ?",
            (session_id, school_id, group_number),
        )
        if row is None:
            return None
        return self._build_group(row, self._max_visits(session_id))

    def list_groups(self, session_id: int) -> list[Group]:
        max_visits = self._max_visits(session_id)
        rows = self._query(
            "SELECT * FROM school_groups WHERE session_id = ? ORDER BY school_id, group_number",
            (session_id,),
        )
        return [self._build_group(row, max_visits) for row in rows]

    def session_group_counts(self, session_id: int) -> tuple[int, int]:
        groups = self._query_one(
            "SELECT COUNT(*) AS n FROM school_groups WHERE session_id = ?", (session_id,)
        )
        merged = self._query_one(
            "SELECT COUNT(*) AS n FROM merged_groups WHERE session_id = ?", (session_id,)
        )
        return int(groups["n"]) if groups else 0, int(merged["n"]) if merged else 0

    def get_merged_cluster_members(
        self, school_id: int, group_number: int, session_id: int
    ) -> list[ClusterMember]:
        """Other members of the cluster ``(school_id, group_number)`` belongs to."""

        parent = self._query_one(
            """
            SELECT primary_school_id, primary_group_number FROM merged_groups
            WHERE session_id = ? AND secondary_school_id = ? AND secondary_group_number = ?
            """,
            (session_id, school_id, group_number),
        )
        if parent is not None:
            root = (int(parent["primary_school_id"]), int(parent["primary_group_number"]))
        else:
            root = (school_id, group_number)
        rows = self._query(
            """
            SELECT secondary_school_id, secondary_group_number FROM merged_groups
            WHERE session_id = ? AND primary_school_id = ? AND primary_group_number = ?
            ORDER BY secondary_school_id, secondary_group_number
            """,
            (session_id, root[0], root[1]),
        )
        members = [ClusterMember(*root)] + [
            ClusterMember(int(row["secondary_school_id"]), int(row["secondary_group_number"])) for row in rows
        ]
        if len(members) == 1:
            return []
        return [m for m in members if (m.school_id, m.group_number) != (school_id, group_number)]

    # --------------------------------------------------------------- postings
    def find_active_posting(
        self, school_id: int, group_number: int, visit_number: int, session_id: int
    ) -> Posting | None:
        row = self._query_one(
            """
            SELECT * FROM postings
            WHERE session_id = ? AND school_id = ? AND group_number = ? AND visit_number = ?
              AND status = 'active'
            """,
            (session_id, school_id, group_number, visit_number),
        )
        return _row_to_posting(row) if row is not None else None

    def count_active_postings(self, supervisor_id: int, session_id: int) -> int:
        """Active *primary* postings of a supervisor; dependents are not counted."""

        row = self._query_one(
            """
            SELECT COUNT(*) AS n FROM postings
            WHERE supervisor_id = ? AND session_id = ? AND status = 'active' AND is_primary = 1
            """,
            (supervisor_id, session_id),
        )
        return int(row["n"]) if row else 0

    def create_posting(self, posting: Posting) -> int:
        allowance = posting.allowance
        params = (
            posting.session_id,
            posting.supervisor_id,
            posting.school_id,
            posting.group_number,
            posting.visit_number,
            posting.distance_km,
            int(posting.is_primary),
            posting.merged_with_posting_id,
            posting.rank_id,
            allowance.local_running,
            allowance.transport,
            allowance.dsa,
            allowance.dta,
            allowance.tetfund,
            allowance.other,
            allowance.per_visit_total,
            allowance.grand_total,
            allowance.visit_count,
            str(allowance.category),
            allowance.rationale,
            str(posting.status),
            str(posting.posting_type),
            posting.posted_by,
            posting.created_by_dean_id,
            posting.auto_posting_batch_id,
            utc_now_iso(),
        )
        try:
            cursor = self._conn.execute(
                """
                INSERT INTO postings (
                    session_id, supervisor_id, school_id, group_number, visit_number,
                    distance_km, is_primary, merged_with_posting_id, rank_id,
                    local_running, transport, dsa, dta, tetfund, other,
                    per_visit_total, grand_total, visit_count, category, rationale,
                    status, posting_type, posted_by, created_by_dean_id,
                    auto_posting_batch_id, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                params,
            )
        except sqlite3.IntegrityError as exc:
            if _is_slot_violation(exc):
                raise ConflictError(
                    reason_message(
                        ReasonCode.SLOT_TAKEN_AT_COMMIT,
                        group_number=posting.group_number,
                        visit_number=posting.visit_number,
                    ),
                    code=ReasonCode.SLOT_TAKEN_AT_COMMIT,
                    details={"slot": [posting.school_id, posting.group_number, posting.visit_number]},
                ) from exc
            raise ValidationError(f"Rejected by storage constraint: {exc}", code=ReasonCode.INVALID_INPUT) from exc
        except sqlite3.Error as exc:
            raise StorageFailure(f"Storage write failed: {exc}", cause=exc) from exc
        return int(cursor.lastrowid)

    def get_posting(self, posting_id: int) -> Posting | None:
        row = self._query_one("SELECT * FROM postings WHERE id = ?", (posting_id,))
        return _row_to_posting(row) if row is not None else None

    def list_dependent_postings(self, posting_id: int) -> list[Posting]:
        rows = self._query(
            "SELECT * FROM postings WHERE merged_with_posting_id = ? ORDER BY id", (posting_id,)
        )
        return [_row_to_posting(row) for row in rows]

    def cancel_posting(self, posting_id: int) -> None:
        self._write(
            "UPDATE postings SET status = 'cancelled', cancelled_at = ? WHERE id = ? AND status = 'active'",
            (utc_now_iso(), posting_id),
        )

    def list_session_postings(self, session_id: int, *, include_cancelled: bool = False) -> list[Posting]:
        sql = "SELECT * FROM postings WHERE session_id = ?"
        if not include_cancelled:
            sql += " AND status = 'active'"
        return [_row_to_posting(row) for row in self._query(sql + " ORDER BY id", (session_id,))]

    def list_dean_postings(self, session_id: int, dean_user_id: int) -> list[Posting]:
        rows = self._query(
            """
            SELECT * FROM postings
            WHERE session_id = ? AND created_by_dean_id = ? AND is_primary = 1 AND status = 'active'
            ORDER BY created_at DESC, id DESC
            """,
            (session_id, dean_user_id),
        )
        return [_row_to_posting(row) for row in rows]

    def postings_frame(self, session_id: int) -> pd.DataFrame:
        """All postings of a session in the reporting layout (one row per posting)."""

        columns = ", ".join(
            "id AS posting_id" if column == "posting_id" else column for column in POSTING_COLUMNS
        )
        try:
            frame = pd.read_sql_query(
                f"SELECT {columns} FROM postings WHERE session_id = ? ORDER BY id",
                self._conn,
                params=(session_id,),
            )
        except (sqlite3.Error, pd.errors.DatabaseError) as exc:
            raise StorageFailure(f"Storage read failed: {exc}", cause=exc) from exc
        frame["is_primary"] = frame["is_primary"].astype(bool)
        return frame

    # ------------------------------------------------------------------ quota
    def get_allocation(self, allocation_id: int) -> DeanAllocation | None:
        row = self._query_one("SELECT * FROM dean_allocations WHERE id = ?", (allocation_id,))
        return _row_to_allocation(row) if row is not None else None

    def find_allocation(self, session_id: int, dean_user_id: int) -> DeanAllocation | None:
        row = self._query_one(
            "SELECT * FROM dean_allocations WHERE session_id = ? AND dean_user_id = ?",
            (session_id, dean_user_id),
        )
        return _row_to_allocation(row) if row is not None else None

    def list_allocations(self, session_id: int) -> list[DeanAllocation]:
        rows = self._query(
            "SELECT * FROM dean_allocations WHERE session_id = ? ORDER BY dean_user_id", (session_id,)
        )
        return [_row_to_allocation(row) for row in rows]

    def insert_allocation(self, allocation: DeanAllocation) -> int:
        now = utc_now_iso()
        cursor = self._write(
            """
            INSERT INTO dean_allocations (
                session_id, dean_user_id, faculty_id, allocated_postings, used_postings,
                notes, allocated_by, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                allocation.session_id,
                allocation.dean_user_id,
                allocation.faculty_id,
                allocation.allocated_postings,
                allocation.used_postings,
                allocation.notes,
                allocation.allocated_by,
                now,
                now,
            ),
        )
        return int(cursor.lastrowid)

    def save_allocation(self, allocation: DeanAllocation) -> None:
        self._write(
            """
            UPDATE dean_allocations
            SET allocated_postings = ?, used_postings = ?, notes = ?, faculty_id = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                allocation.allocated_postings,
                allocation.used_postings,
                allocation.notes,
                allocation.faculty_id,
                utc_now_iso(),
                allocation.id,
            ),
        )

    def delete_allocation(self, allocation_id: int) -> None:
        self._write("DELETE FROM dean_allocations WHERE id = ?", (allocation_id,))

    # ------------------------------------------------------ auto-posting audit
    def create_auto_posting_batch(self, session_id: int, initiated_by: int, criteria: Mapping[str, Any]) -> int:
        cursor = self._write(
            """
            INSERT INTO auto_posting_batches (session_id, initiated_by, criteria, status, started_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (session_id, initiated_by, json.dumps(dict(criteria), sort_keys=True), BATCH_PROCESSING, utc_now_iso()),
        )
        return int(cursor.lastrowid)

    def complete_auto_posting_batch(self, batch_id: int, *, total_postings: int, total_supervisors: int) -> None:
        self._write(
            """
            UPDATE auto_posting_batches
            SET status = ?, total_postings_created = ?, total_supervisors_posted = ?, completed_at = ?
            WHERE id = ?
            """,
            (BATCH_COMPLETED, total_postings, total_supervisors, utc_now_iso(), batch_id),
        )

    def record_failed_auto_posting_batch(
        self, session_id: int, initiated_by: int, criteria: Mapping[str, Any], error_message: str
    ) -> int:
        now = utc_now_iso()
        cursor = self._write(
            """
            INSERT INTO auto_posting_batches (
                session_id, initiated_by, criteria, status, error_message, started_at, completed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (session_id, initiated_by, json.dumps(dict(criteria), sort_keys=True), BATCH_FAILED, error_message, now, now),
        )
        return int(cursor.lastrowid)

    def get_auto_posting_batch(self, batch_id: int) -> AutoPostingBatchRecord | None:
        row = self._query_one("SELECT * FROM auto_posting_batches WHERE id = ?", (batch_id,))
        return _row_to_batch(row) if row is not None else None

    def list_auto_posting_batches(
        self, session_id: int | None = None, *, limit: int = 20, offset: int = 0
    ) -> list[AutoPostingBatchRecord]:
        """Newest runs first; every session when ``session_id`` is ``None``."""

        sql = "SELECT * FROM auto_posting_batches"
        params: list[Any] = []
        if session_id is not None:
            sql += " WHERE session_id = ?"
            params.append(session_id)
        sql += " ORDER BY started_at DESC, id DESC LIMIT ? OFFSET ?"
        params.extend((limit, offset))
        return [_row_to_batch(row) for row in self._query(sql, params)]

    def mark_auto_posting_batch_rolled_back(self, batch_id: int) -> None:
        self._write(
            "UPDATE auto_posting_batches SET status = ?, rolled_back_at = ? WHERE id = ?",
            (BATCH_ROLLED_BACK, utc_now_iso(), batch_id),
        )

    def list_batch_primary_postings(self, batch_id: int) -> list[Posting]:
        rows = self._query(
            """
            SELECT * FROM postings
            WHERE auto_posting_batch_id = ? AND is_primary = 1 AND status = 'active'
            ORDER BY id
            """,
            (batch_id,),
        )
        return [_row_to_posting(row) for row in rows]


# --------------------------------------------------------------------- seeding
_SEED_SECTIONS: tuple[str, ...] = (
    "sessions",
    "ranks",
    "supervisors",
    "schools",
    "groups",
    "merged_groups",
)


def _require(section: str, row: Mapping[str, Any], *keys: str) -> None:
    missing = [key for key in keys if row.get(key) is None]
    if missing:
        raise ReferenceDataError(section=section, message=f"missing {', '.join(missing)} in {dict(row)}")


def seed_reference_data(conn: sqlite3.Connection, payload: Mapping[str, Iterable[Mapping[str, Any]]]) -> dict[str, int]:
    """Upsert reference rows (sessions, ranks, supervisors, schools, groups, merges).

    Returns:
        Row count written per section.
    """

    unknown = sorted(set(payload) - set(_SEED_SECTIONS))
    if unknown:
        raise ReferenceDataError(section=",".join(unknown), message="unknown seed section")

    counts: dict[str, int] = {}
    for row in payload.get("sessions", ()):
        _require("sessions", row, "id", "name")
        dsa_enabled = row.get("dsa_enabled")
        conn.execute(
            """
            INSERT INTO sessions (
                id, name, inside_distance_threshold_km, dsa_enabled, dsa_min_distance_km,
                dsa_max_distance_km, dsa_percentage, max_supervision_visits, max_postings_per_supervisor
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                name = excluded.name,
                inside_distance_threshold_km = excluded.inside_distance_threshold_km,
                dsa_enabled = excluded.dsa_enabled,
                dsa_min_distance_km = excluded.dsa_min_distance_km,
                dsa_max_distance_km = excluded.dsa_max_distance_km,
                dsa_percentage = excluded.dsa_percentage,
                max_supervision_visits = excluded.max_supervision_visits,
                max_postings_per_supervisor = excluded.max_postings_per_supervisor
            """,
            (
                row["id"],
                row["name"],
                row.get("inside_distance_threshold_km"),
                None if dsa_enabled is None else int(bool(dsa_enabled)),
                row.get("dsa_min_distance_km"),
                row.get("dsa_max_distance_km"),
                row.get("dsa_percentage"),
                row.get("max_supervision_visits"),
                row.get("max_postings_per_supervisor"),
            ),
        )
        counts["sessions"] = counts.get("sessions", 0) + 1

    for row in payload.get("ranks", ()):
        _require("ranks", row, "id", "name")
        conn.execute(
            """
            INSERT INTO ranks (
                id, name, local_running_allowance, transport_per_km, dsa, dta, tetfund,
                other_allowances, priority_number
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                name = excluded.name,
                local_running_allowance = excluded.local_running_allowance,
                transport_per_km = excluded.transport_per_km,
                dsa = excluded.dsa,
                dta = excluded.dta,
                tetfund = excluded.tetfund,
                other_allowances = excluded.other_allowances,
                priority_number = excluded.priority_number
            """,
            (
                row["id"],
                row["name"],
                row.get("local_running_allowance", 0),
                row.get("transport_per_km", 0),
                row.get("dsa", 0),
                row.get("dta", 0),
                row.get("tetfund", 0),
                json.dumps(dict(row.get("other_allowances") or {}), sort_keys=True),
                row.get("priority_number", 99),
            ),
        )
        counts["ranks"] = counts.get("ranks", 0) + 1

    for row in payload.get("supervisors", ()):
        _require("supervisors", row, "id", "name")
        conn.execute(
            """
            INSERT INTO supervisors (id, name, rank_id, faculty_id, is_dean, is_active)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                name = excluded.name,
                rank_id = excluded.rank_id,
                faculty_id = excluded.faculty_id,
                is_dean = excluded.is_dean,
                is_active = excluded.is_active
            """,
            (
                row["id"],
                row["name"],
                row.get("rank_id"),
                row.get("faculty_id"),
                int(bool(row.get("is_dean", False))),
                int(bool(row.get("is_active", True))),
            ),
        )
        counts["supervisors"] = counts.get("supervisors", 0) + 1

    for row in payload.get("schools", ()):
        _require("schools", row, "id", "name")
        conn.execute(
            """
            INSERT INTO schools (id, name, distance_km, route_id, lga) VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                name = excluded.name,
                distance_km = excluded.distance_km,
                route_id = excluded.route_id,
                lga = excluded.lga
            """,
            (row["id"], row["name"], row.get("distance_km", 0), row.get("route_id"), row.get("lga")),
        )
        counts["schools"] = counts.get("schools", 0) + 1

    for row in payload.get("groups", ()):
        _require("groups", row, "session_id", "school_id", "group_number")
        conn.execute(
            """
            INSERT INTO school_groups (session_id, school_id, group_number, student_count)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (session_id, school_id, group_number)
            DO UPDATE SET student_count = excluded.student_count
            """,
            (row["session_id"], row["school_id"], row["group_number"], row.get("student_count", 0)),
        )
        counts["groups"] = counts.get("groups", 0) + 1

    for row in payload.get("merged_groups", ()):
        _require(
            "merged_groups",
            row,
            "session_id",
            "primary_school_id",
            "primary_group_number",
            "secondary_school_id",
            "secondary_group_number",
        )
        conn.execute(
            """
            INSERT INTO merged_groups (
                session_id, primary_school_id, primary_group_number,
                secondary_school_id, secondary_group_number
            ) VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (session_id, secondary_school_id, secondary_group_number)
            DO UPDATE SET primary_school_id = excluded.primary_school_id,
                          primary_group_number = excluded.primary_group_number
            """,
            (
                row["session_id"],
                row["primary_school_id"],
                row["primary_group_number"],
                row["secondary_school_id"],
                row["secondary_group_number"],
            ),
        )
        counts["merged_groups"] = counts.get("merged_groups", 0) + 1
    return counts
