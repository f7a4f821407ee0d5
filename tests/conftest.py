from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

import pytest

from tp_posting.core.policy_loader import EnginePolicy, parse_policy_dict
from tp_posting.infra.local_database import LocalDatabase
from tp_posting.infra.posting_repository import PostingRepository
from tp_posting.infra.service import EngineComponents, PostingEngineService

SESSION_ID = 1
ADMIN_ID = 900


def make_policy(**overrides: Any) -> EnginePolicy:
    """Engine policy used across the suite; ``overrides`` replace top-level keys."""

    payload: dict[str, Any] = {
        "version": "1.2.0",
        "session_defaults": {
            "inside_distance_threshold_km": 10.0,
            "dsa_enabled": True,
            "dsa_min_distance_km": 11.0,
            "dsa_max_distance_km": 30.0,
            "dsa_percentage": 50.0,
            "max_supervision_visits": 3,
        },
        "supervisor_ceiling_mode": "enforced",
        "default_slot_ordering": "school_group_visit",
        "priority_enabled": False,
        "default_max_postings_per_supervisor": 50,
        "max_batch_size": 500,
    }
    payload.update(overrides)
    return parse_policy_dict(payload)


def reference_payload() -> dict[str, list[dict[str, Any]]]:
    """One session, four schools and a merged cluster ``(6,1) + (8,1)``.

    Rank 1 is the worked example: local running 2000, transport 50/km,
    DTA 5000, TETFund 1000. Each supervisor may hold two primary postings.
    """

    return {
        "sessions": [
            {
                "id": SESSION_ID,
                "name": "2025/2026 Teaching Practice",
                "inside_distance_threshold_km": 10,
                "dsa_enabled": True,
                "dsa_min_distance_km": 11,
                "dsa_max_distance_km": 30,
                "dsa_percentage": 50,
                "max_supervision_visits": 3,
                "max_postings_per_supervisor": 2,
            }
        ],
        "ranks": [
            {
                "id": 1,
                "name": "Senior Lecturer",
                "local_running_allowance": 2000,
                "transport_per_km": 50,
                "dta": 5000,
                "tetfund": 1000,
                "priority_number": 1,
            },
            {
                "id": 2,
                "name": "Lecturer II",
                "local_running_allowance": 1500,
                "transport_per_km": 40,
                "dta": 4000,
                "tetfund": 800,
                "priority_number": 2,
            },
        ],
        "supervisors": [
            {"id": 1, "name": "Ada Obi", "rank_id": 1, "faculty_id": 10},
            {"id": 2, "name": "Bola Ade", "rank_id": 2, "faculty_id": 10},
            {"id": 3, "name": "Chidi Eze", "rank_id": 1, "faculty_id": 20},
            {"id": 4, "name": "Musa Bello", "rank_id": 1, "faculty_id": 10, "is_dean": True},
            {"id": 5, "name": "Ngozi Okafor", "rank_id": 2, "faculty_id": 10, "is_active": False},
        ],
        "schools": [
            {"id": 5, "name": "Central School", "distance_km": 8, "route_id": 2, "lga": "Ilorin West"},
            {"id": 6, "name": "Hill School", "distance_km": 20, "route_id": 1, "lga": "Asa"},
            {"id": 7, "name": "River School", "distance_km": 40, "route_id": 1, "lga": "Moro"},
            {"id": 8, "name": "Annex School", "distance_km": 20, "route_id": 1, "lga": "Asa"},
        ],
        "groups": [
            {"session_id": SESSION_ID, "school_id": 5, "group_number": 1, "student_count": 6},
            {"session_id": SESSION_ID, "school_id": 6, "group_number": 1, "student_count": 4},
            {"session_id": SESSION_ID, "school_id": 7, "group_number": 1, "student_count": 5},
            {"session_id": SESSION_ID, "school_id": 8, "group_number": 1, "student_count": 2},
        ],
        "merged_groups": [
            {
                "session_id": SESSION_ID,
                "primary_school_id": 6,
                "primary_group_number": 1,
                "secondary_school_id": 8,
                "secondary_group_number": 1,
            }
        ],
    }


@pytest.fixture
def engine_policy() -> EnginePolicy:
    return make_policy()


@pytest.fixture
def database(tmp_path: Path) -> LocalDatabase:
    db = LocalDatabase(tmp_path / "postings.sqlite")
    db.initialize()
    return db


@pytest.fixture
def service(database: LocalDatabase, engine_policy: EnginePolicy) -> PostingEngineService:
    svc = PostingEngineService(database, engine_policy)
    svc.seed(reference_payload())
    return svc


@pytest.fixture
def components(database: LocalDatabase, service: PostingEngineService):
    """Open a write transaction and hand out wired core components."""

    @contextmanager
    def _open() -> Iterator[EngineComponents]:
        policy = service.policy
        with database.unit_of_work() as conn:
            repository = PostingRepository(
                conn,
                defaults=policy.session_defaults,
                default_max_postings=policy.default_max_postings_per_supervisor,
            )
            yield EngineComponents(repository, policy)

    return _open


@pytest.fixture
def make_service(database: LocalDatabase):
    """Build a seeded service with policy ``overrides``."""

    def _make(**overrides: Any) -> PostingEngineService:
        svc = PostingEngineService(database, make_policy(**overrides))
        svc.seed(reference_payload())
        return svc

    return _make


@pytest.fixture
def reference_data() -> dict[str, list[dict[str, Any]]]:
    return reference_payload()
