"""
Test Recovery Validator - Strict validation, one-pass repair and the startup scan

Run with: pytest tests/test_recovery_validator.py
"""

import json

import pytest

from blueprint_coach.contracts import CapturedField, PendingConfirmation, Stage, SubStepAddress
from blueprint_coach.core.recovery_validator import MAX_VALUE_LENGTH, RecoveryValidator
from blueprint_coach.core.session_state import SessionState
from blueprint_coach.persistence import LocalSessionStore
from blueprint_coach.utils.clock import ManualClock

NOW = 1_700_000_000.0
NOW_ISO = "2023-11-14T22:13:20Z"


@pytest.fixture
def validator():
    return RecoveryValidator(clock=ManualClock(start=NOW))


def valid_state(session_id="abc12345"):
    return SessionState(
        session_id=session_id,
        stage=Stage.TOPIC_2,
        fields={
            "topic1.value": CapturedField(key="topic1.value", value="Energy shapes communities", confirmed=True),
        },
        pending=PendingConfirmation(
            target="topic2.value",
            stage=Stage.TOPIC_2,
            proposed_value="How might we power our town fairly?",
            attempts=1,
            created_at=NOW,
        ),
        attempts={"topic2.value": 1},
        created_at=NOW,
        updated_at=NOW + 60,
        revision=3,
    )


def legacy_record():
    return {
        "session_id": "abc12345",
        "stage": "Big_Idea",
        "ideation": {"bigIdea": "  Energy shapes communities ", "essentialQuestion": ""},
        "fields": {"Challenge": {"value": "Design a solar plan", "confirmed": "yes"}},
        "created_at": 1_700_000_000_000,
        "updated_at": "2023-11-14 22:13:20",
        "revision": "4",
        "theme": "dark",
    }


# =============================================================================
# Validation
# =============================================================================

def test_valid_record_passes_unchanged(validator):
    result = validator.validate(valid_state().to_record())

    assert result.ok
    assert result.warnings == []
    assert not result.repaired
    assert result.sanitized["created_at"] == NOW_ISO
    assert result.sanitized["pending"]["proposed_value"] == "How might we power our town fairly?"


def test_validation_is_idempotent(validator):
    first = validator.validate(legacy_record())
    second = validator.validate(first.sanitized)

    assert second.ok
    assert second.warnings == []
    assert second.sanitized == first.sanitized


def test_sanitized_record_restores_state(validator):
    state = valid_state()

    result = validator.validate(state.to_record(), session_id="abc12345")

    assert SessionState.from_record(result.sanitized) == state


def test_legacy_record_is_migrated_without_inventing_content(validator):
    """Legacy keys, stages and timestamps are mapped; nothing becomes confirmed"""
    result = validator.validate(legacy_record())

    assert result.ok
    assert result.repaired
    record = result.sanitized
    assert record["schema_version"] == 2
    assert record["stage"] == Stage.TOPIC_1.value
    assert record["revision"] == 4
    assert record["created_at"] == NOW_ISO
    assert record["updated_at"] == NOW_ISO

    values = {f["key"]: f for f in record["fields"]}
    assert set(values) == {"topic1.value", "topic3.value"}
    assert values["topic1.value"]["value"] == "Energy shapes communities"
    assert values["topic3.value"]["value"] == "Design a solar plan"
    assert not any(f["confirmed"] for f in record["fields"])

    assert any("theme" in w for w in result.warnings)
    assert any("ideation" in w for w in result.warnings)

    print("✓ Legacy migration test passed")


def test_storage_key_wins_over_stored_id(validator):
    record = valid_state("abc12345").to_record()

    result = validator.validate(record, session_id="other999")

    assert result.ok
    assert result.sanitized["session_id"] == "other999"
    assert any("storage key" in w for w in result.warnings)


def test_unparseable_dates_fall_back_to_clock(validator):
    record = valid_state().to_record()
    record["created_at"] = "yesterday"
    record["updated_at"] = None

    result = validator.validate(record)

    assert result.ok
    assert result.sanitized["created_at"] == NOW_ISO
    assert result.sanitized["updated_at"] == NOW_ISO


def test_field_repairs(validator):
    record = valid_state().to_record()
    record["fields"] = [
        {"key": "topic1.value", "value": "First draft", "confirmed": True, "provenance": "user"},
        {"key": "topic1.value", "value": "  Second draft  ", "confirmed": True, "provenance": "robot"},
        {"key": "Journey.Phase1.Name", "value": 42, "confirmed": False, "provenance": "user"},
        {"key": "not a key", "value": "x", "confirmed": False, "provenance": "user"},
        {"key": "topic3.value", "value": "   ", "confirmed": False, "provenance": "user"},
        "garbage",
    ]
    record["attempts"] = {"topic2.value": "2", "bad key": 1}
    record["pending"]["status"] = "thinking"

    result = validator.validate(record)

    assert result.ok
    fields = {f["key"]: f for f in result.sanitized["fields"]}
    assert list(fields) == ["topic1.value", "journey.phase1.name"]
    assert fields["topic1.value"]["value"] == "Second draft"
    assert fields["topic1.value"]["provenance"] == "user"
    assert fields["journey.phase1.name"]["value"] == "42"
    assert result.sanitized["attempts"] == {"topic2.value": 2}
    assert result.sanitized["pending"]["status"] == "await_confirm"


def test_oversized_values_are_clipped(validator):
    record = valid_state().to_record()
    record["fields"][0]["value"] = "energy " * 700

    result = validator.validate(record)

    assert result.ok
    assert len(result.sanitized["fields"][0]["value"]) <= MAX_VALUE_LENGTH
    assert any("clipped" in w for w in result.warnings)


def test_sub_step_is_kept_for_the_state_machine_to_judge(validator):
    state = SessionState(
        session_id="abc12345",
        stage=Stage.JOURNEY,
        sub_step=SubStepAddress(stage=Stage.JOURNEY, index=2, length=6),
        created_at=NOW,
        updated_at=NOW,
    )
    record = state.to_record()
    record["sub_step"]["index"] = 2.0

    result = validator.validate(record)

    assert result.ok
    assert result.sanitized["sub_step"] == {"stage": "journey", "index": 2, "length": 6}


@pytest.mark.parametrize("raw", [
    "not a record",
    ["a", "list"],
    None,
    {"session_id": "bad id!", "stage": "topic_1"},
    {"stage": "topic_1"},
])
def test_unrecoverable_records(validator, raw):
    result = validator.validate(raw)

    assert not result.ok
    assert result.sanitized is None
    assert result.errors


# =============================================================================
# Startup scan
# =============================================================================

def test_recover_all_purges_migrates_and_keeps(tmp_path, validator):
    store = LocalSessionStore(str(tmp_path))
    store.set("good0001", valid_state("good0001").to_record())
    store.set("abc12345", legacy_record())
    (tmp_path / "broken01.json").write_text("{not json", encoding="utf-8")
    (tmp_path / "listy001.json").write_text(json.dumps([1, 2, 3]), encoding="utf-8")
    (tmp_path / "sync_queue.json").write_text("[]", encoding="utf-8")

    summary = validator.recover_all(store)

    assert summary.checked == 4
    assert summary.unchanged == 1
    assert summary.migrated == 1
    assert summary.removed == 2
    assert set(summary.reasons) == {"abc12345", "broken01", "listy001"}
    assert store.list_ids() == ["abc12345", "good0001"]

    # Migrated record now passes without repairs
    again = validator.validate(store.get("abc12345"), session_id="abc12345")
    assert again.ok and again.warnings == []

    print("✓ Startup recovery test passed")
