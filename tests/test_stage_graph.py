"""
Test Stage Graph - Stage order, gates, jumps and the consistency sweep

Run with: pytest tests/test_stage_graph.py
"""

import pytest

from blueprint_coach.contracts import CapturedField, Stage
from blueprint_coach.core.stage_graph import (
    STATUS_DRAFT,
    STATUS_IN_PROGRESS,
    STATUS_READY,
    StageDefinition,
    StageGraph,
    default_stage_definitions,
)


def confirmed(**values):
    """Build a fields mapping of confirmed values (keys use '__' for '.')"""
    fields = {}
    for name, value in values.items():
        key = name.replace("__", ".")
        fields[key] = CapturedField(key=key, value=value, confirmed=True)
    return fields


TOPICS = dict(
    topic1__value="Energy shapes communities",
    topic2__value="How might we power our town?",
    topic3__value="Design a solar plan for the school",
)


def test_stage_order_and_next_stage():
    """Stages follow enum order; COMPLETE is terminal"""
    graph = StageGraph()

    assert graph.first_stage == Stage.TOPIC_1
    assert graph.next_stage(Stage.TOPIC_1) == Stage.TOPIC_2
    assert graph.next_stage(Stage.JOURNEY) == Stage.DELIVERABLES
    assert graph.next_stage(Stage.COMPLETE) == Stage.COMPLETE
    assert graph.output_keys() == [
        "topic1.value", "topic2.value", "topic3.value", "journey.value", "deliverables.value",
    ]

    print("✓ Stage order test passed")


def test_can_enter_reports_missing_in_prerequisite_order():
    graph = StageGraph()

    gate = graph.can_enter(Stage.DELIVERABLES, confirmed(topic1__value="Energy shapes communities"))

    assert not gate.ok
    assert gate.missing == ("topic2.value", "topic3.value", "journey.value")
    assert "Deliverables" in gate.reason
    assert "topic3.value" in gate.reason

    assert graph.can_enter(Stage.TOPIC_1, {}).ok


def test_min_length_bar_applies_to_unconfirmed_fields_only():
    """Short unconfirmed text fails the bar; a confirmed value always passes"""
    graph = StageGraph(prerequisite_min_length=3)

    short_draft = {"topic1.value": CapturedField(key="topic1.value", value="ab", confirmed=False)}
    short_confirmed = {"topic1.value": CapturedField(key="topic1.value", value="ab", confirmed=True)}
    blank = {"topic1.value": CapturedField(key="topic1.value", value="   ", confirmed=True)}

    assert not graph.is_populated("topic1.value", short_draft)
    assert graph.is_populated("topic1.value", short_confirmed)
    assert not graph.is_populated("topic1.value", blank)
    assert not graph.is_populated("topic1.value", {})


def test_jump_to_deliverables_without_challenge_is_rejected():
    """Forward jump blocked by a missing prerequisite names the field"""
    graph = StageGraph()
    fields = confirmed(
        topic1__value=TOPICS["topic1__value"],
        topic2__value=TOPICS["topic2__value"],
    )

    gate = graph.validate_jump(Stage.TOPIC_3, Stage.DELIVERABLES, fields)

    assert not gate.ok
    assert "topic3.value" in gate.missing
    assert "topic3.value" in gate.reason

    print("✓ Rejected jump test passed")


def test_backward_jump_is_rejected():
    graph = StageGraph()

    gate = graph.validate_jump(Stage.TOPIC_3, Stage.TOPIC_1, confirmed(**TOPICS))

    assert not gate.ok
    assert gate.missing == ()
    assert "reset" in gate.reason


def test_forward_jump_with_prerequisites_is_allowed():
    graph = StageGraph()

    assert graph.validate_jump(Stage.TOPIC_1, Stage.JOURNEY, confirmed(**TOPICS)).ok


def test_sweep_rolls_back_to_earliest_unmet_stage():
    graph = StageGraph()
    fields = confirmed(topic1__value=TOPICS["topic1__value"], topic3__value=TOPICS["topic3__value"])

    result = graph.sweep(Stage.JOURNEY, fields)

    assert result.rolled_back
    assert result.stage == Stage.TOPIC_2
    assert result.missing == ("topic2.value",)
    assert result.reason == "Returned to Essential Question because topic2.value is missing"


def test_sweep_keeps_stage_when_gate_holds():
    graph = StageGraph()

    result = graph.sweep(Stage.JOURNEY, confirmed(**TOPICS))

    assert not result.rolled_back
    assert result.stage == Stage.JOURNEY


def test_completion_ratio_and_status():
    graph = StageGraph()

    assert graph.completion_ratio({}) == 0.0
    assert graph.status({}) == STATUS_DRAFT

    draft = {"journey.phase1.name": CapturedField(key="journey.phase1.name", value="Launch")}
    assert graph.status(draft) == STATUS_IN_PROGRESS

    fields = confirmed(**TOPICS)
    assert graph.completion_ratio(fields) == 0.6

    fields.update(confirmed(journey__value="Phase 1: Launch", deliverables__value="Checkpoint 1: Pitch"))
    assert graph.completion_ratio(fields) == 1.0
    assert graph.status(fields) == STATUS_READY


def test_decomposed_templates():
    graph = StageGraph()

    journey = graph.definition(Stage.JOURNEY).sub_steps
    assert journey.addresses()[:3] == [
        "journey.phase1.name", "journey.phase1.activities", "journey.phase2.name",
    ]
    assert len(journey.addresses()) == 6
    assert journey.group_of(3) == 2
    assert journey.slot_label(1) == "key activities"

    deliverables = graph.definition(Stage.DELIVERABLES).sub_steps
    assert deliverables.open_ended
    assert len(deliverables.addresses()) == 4
    assert deliverables.composite_key == "deliverables.value"


def test_invalid_graph_fails_fast():
    """Missing stages and forward-referencing prerequisites are reported together"""
    definitions = [d for d in default_stage_definitions() if d.stage != Stage.COMPLETE]
    definitions[0] = StageDefinition(
        stage=Stage.TOPIC_1,
        field_key="topic1.value",
        prerequisites=("journey.value",),
        label="Big Idea",
    )

    with pytest.raises(ValueError) as excinfo:
        StageGraph(definitions)

    message = str(excinfo.value)
    assert "Stage 'complete' has no definition" in message
    assert "requires 'journey.value'" in message


if __name__ == '__main__':
    print("\n" + "="*60)
    print("TESTING STAGE GRAPH")
    print("="*60 + "\n")

    test_stage_order_and_next_stage()
    test_can_enter_reports_missing_in_prerequisite_order()
    test_min_length_bar_applies_to_unconfirmed_fields_only()
    test_jump_to_deliverables_without_challenge_is_rejected()
    test_backward_jump_is_rejected()
    test_forward_jump_with_prerequisites_is_allowed()
    test_sweep_rolls_back_to_earliest_unmet_stage()
    test_sweep_keeps_stage_when_gate_holds()
    test_completion_ratio_and_status()
    test_decomposed_templates()
    test_invalid_graph_fails_fast()

    print("\n" + "="*60)
    print("ALL STAGE GRAPH TESTS PASSED ✓")
    print("="*60 + "\n")
