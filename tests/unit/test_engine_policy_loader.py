"""Engine policy parsing, version gate and cache."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from tp_posting.core.policy_loader import (
    DEFAULT_POLICY_PATH,
    CeilingMode,
    load_policy,
    parse_policy_dict,
)


@pytest.fixture(autouse=True)
def _clear_policy_cache():
    load_policy.cache_clear()
    yield
    load_policy.cache_clear()


def _valid_payload() -> dict[str, object]:
    return {
        "version": "1.2.0",
        "session_defaults": {
            "inside_distance_threshold_km": 10.0,
            "dsa_enabled": True,
            "dsa_min_distance_km": 11.0,
            "dsa_max_distance_km": 30.0,
            "dsa_percentage": 50.0,
            "max_supervision_visits": 3,
        },
        "supervisor_ceiling_mode": "advisory",
        "default_slot_ordering": "visit_first",
        "priority_enabled": True,
        "default_max_postings_per_supervisor": 40,
        "max_batch_size": 200,
    }


def test_parse_full_payload() -> None:
    policy = parse_policy_dict(_valid_payload())

    assert policy.supervisor_ceiling_mode is CeilingMode.ADVISORY
    assert policy.default_slot_ordering == "visit_first"
    assert policy.priority_enabled is True
    assert policy.default_max_postings_per_supervisor == 40
    assert policy.max_batch_size == 200
    assert policy.session_defaults.dsa_percentage == 50.0


def test_minimal_payload_uses_defaults() -> None:
    policy = parse_policy_dict({"version": "1.2.0"})

    assert policy.supervisor_ceiling_mode is CeilingMode.ENFORCED
    assert policy.default_max_postings_per_supervisor == 50
    assert policy.max_batch_size == 500
    assert policy.session_defaults.max_supervision_visits == 3


def test_session_defaults_build_session_policy() -> None:
    defaults = parse_policy_dict(_valid_payload()).session_defaults

    session = defaults.session_policy(7, dsa_percentage=None, max_supervision_visits=4, max_postings_per_supervisor=2)

    assert session.session_id == 7
    assert session.dsa_percentage == 50.0
    assert session.max_supervision_visits == 4
    assert session.supervisor_ceiling == 2


@pytest.mark.parametrize(
    ("section", "key", "value"),
    [
        ("session_defaults", "dsa_percentage", 120),
        ("session_defaults", "dsa_min_distance_km", 40),
        ("session_defaults", "max_supervision_visits", 0),
        ("session_defaults", "unexpected", 1),
        (None, "supervisor_ceiling_mode", "sometimes"),
        (None, "default_slot_ordering", "random"),
        (None, "max_batch_size", 0),
    ],
)
def test_invalid_values_are_rejected(section: str | None, key: str, value: object) -> None:
    payload = _valid_payload()
    target = payload[section] if section else payload
    target[key] = value  # type: ignore[index]

    with pytest.raises(ValueError):
        parse_policy_dict(payload)


def test_non_boolean_flag_is_a_type_error() -> None:
    payload = _valid_payload()
    payload["priority_enabled"] = "yes"

    with pytest.raises(TypeError):
        parse_policy_dict(payload)


def test_version_mismatch_raises_by_default() -> None:
    payload = _valid_payload()
    payload["version"] = "1.1.0"

    with pytest.raises(ValueError, match="version mismatch"):
        parse_policy_dict(payload)


def test_version_mismatch_can_warn() -> None:
    payload = _valid_payload()
    payload["version"] = "1.1.0"

    with pytest.warns(RuntimeWarning):
        policy = parse_policy_dict(payload, on_version_mismatch="warn")
    assert policy.version == "1.1.0"


def test_major_version_mismatch_always_raises() -> None:
    payload = _valid_payload()
    payload["version"] = "2.0.0"

    with pytest.raises(ValueError, match="major"):
        parse_policy_dict(payload, on_version_mismatch="warn")


def test_version_gate_has_no_migration_mode() -> None:
    older = {"version": "1.0.0", "dsa_percentage": 40, "enforce_supervisor_ceiling": False}

    with pytest.raises(ValueError, match="Unsupported version mismatch mode"):
        parse_policy_dict(older, on_version_mismatch="migrate")  # type: ignore[arg-type]
    with pytest.warns(RuntimeWarning):
        policy = parse_policy_dict(older, on_version_mismatch="warn")

    assert policy.version == "1.0.0"
    assert policy.session_defaults.dsa_percentage == 50.0
    assert policy.supervisor_ceiling_mode is CeilingMode.ENFORCED


def test_load_policy_reads_file_and_caches(tmp_path: Path) -> None:
    path = tmp_path / "engine_policy.json"
    path.write_text(json.dumps(_valid_payload()), encoding="utf-8")

    first = load_policy(path)
    second = load_policy(path)

    assert first is second
    assert first.max_batch_size == 200


def test_load_policy_missing_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_policy(tmp_path / "missing.json")


def test_load_policy_rejects_invalid_json(tmp_path: Path) -> None:
    path = tmp_path / "engine_policy.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(ValueError, match="Invalid JSON"):
        load_policy(path)


def test_shipped_policy_loads() -> None:
    policy = load_policy(Path(__file__).resolve().parents[2] / DEFAULT_POLICY_PATH)

    assert policy.version == "1.2.0"
    assert policy.supervisor_ceiling_mode is CeilingMode.ENFORCED
