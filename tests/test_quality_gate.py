"""
Test Quality Gate - Heuristic evaluation, decisions and reply classification

Run with: pytest tests/test_quality_gate.py
"""

import json
from pathlib import Path

import pytest

from blueprint_coach.contracts import Quality, QualityDecision, Stage
from blueprint_coach.core.quality_gate import (
    RULE_FORBIDS_QUESTION,
    RULE_MIN_TOKENS,
    HeuristicTable,
    QualityGate,
    ReplyKind,
    contains_phrase,
    tokenize,
)


SHIPPED_TABLE = Path(__file__).resolve().parent.parent / "data" / "heuristics.json"


class TestEvaluate:
    """Stage heuristics from the default table"""

    @pytest.fixture
    def gate(self):
        return QualityGate(HeuristicTable.default())

    def test_short_big_idea_is_low(self, gate):
        assessment = gate.evaluate(Stage.TOPIC_1, "ok")
        assert assessment.quality == Quality.LOW
        assert RULE_MIN_TOKENS in assessment.failed_rules
        assert "expand" in assessment.hint

    def test_big_idea_as_question_is_medium(self, gate):
        assessment = gate.evaluate(Stage.TOPIC_1, "What makes energy fair for everyone?")
        assert assessment.quality == Quality.MEDIUM
        assert assessment.failed_rules == (RULE_FORBIDS_QUESTION,)

    def test_full_big_idea_is_high(self, gate):
        assessment = gate.evaluate(
            Stage.TOPIC_1, "Students design a renewable-energy proposal for their neighborhood"
        )
        assert assessment.quality == Quality.HIGH
        assert assessment.hint is None

    def test_essential_question_needs_a_question(self, gate):
        assert gate.evaluate(Stage.TOPIC_2, "Energy is important").quality == Quality.LOW
        assert gate.evaluate(Stage.TOPIC_2, "Is solar power better than wind?").quality == Quality.MEDIUM
        assert gate.evaluate(Stage.TOPIC_2, "How might we power our town fairly?").quality == Quality.HIGH

    def test_challenge_needs_detail_and_action(self, gate):
        assert gate.evaluate(Stage.TOPIC_3, "Solar panels").quality == Quality.LOW
        assert gate.evaluate(Stage.TOPIC_3, "Students study local energy usage").quality == Quality.MEDIUM
        assert gate.evaluate(Stage.TOPIC_3, "Students design a solar plan for school").quality == Quality.HIGH

    def test_lowest_failing_level_wins(self, gate):
        """'Why?' fails both rules on topic 1; low beats medium"""
        assessment = gate.evaluate(Stage.TOPIC_1, "Why?")
        assert assessment.quality == Quality.LOW
        assert len(assessment.failed_rules) == 2

    def test_stage_without_rules_is_high(self, gate):
        assert gate.evaluate(Stage.JOURNEY, "x").quality == Quality.HIGH


def test_decide_maps_quality_to_protocol():
    gate = QualityGate(HeuristicTable.default())
    low = gate.evaluate(Stage.TOPIC_1, "ok")
    high = gate.evaluate(Stage.TOPIC_1, "Energy choices shape communities")

    assert gate.decide(Stage.TOPIC_1, low) == QualityDecision.AWAIT_REFINE
    assert gate.decide(Stage.TOPIC_1, high) == QualityDecision.AWAIT_CONFIRM

    auto = QualityGate(HeuristicTable.from_dict({"rules": {}, "auto_accept_stages": ["topic_1"]}))
    assert auto.decide(Stage.TOPIC_1, high) == QualityDecision.ACCEPT_IMMEDIATE
    assert auto.decide(Stage.TOPIC_2, high) == QualityDecision.AWAIT_CONFIRM

    print("✓ Decision mapping test passed")


@pytest.mark.parametrize("reply,expected", [
    ("yes", ReplyKind.PROGRESS),
    ("Sounds good!", ReplyKind.PROGRESS),
    ("ok let's go", ReplyKind.PROGRESS),
    ("no", ReplyKind.REFINE),
    ("wait, let me change it", ReplyKind.REFINE),
    ("not quite", ReplyKind.REFINE),
    ("yes but actually no", ReplyKind.REFINE),
    ("Students explore how energy choices change neighborhoods over time", ReplyKind.NEW_INPUT),
    ("A brand new idea about water", ReplyKind.NEW_INPUT),
    ("", ReplyKind.NEW_INPUT),
])
def test_classify_reply(reply, expected):
    gate = QualityGate(HeuristicTable.default())
    assert gate.classify_reply(reply) == expected


def test_long_affirmative_reply_is_new_input():
    """Affirmations are only recognized in short replies"""
    gate = QualityGate(HeuristicTable.default(), affirmative_max_tokens=4)
    assert gate.classify_reply("yes students will build great things together") == ReplyKind.NEW_INPUT


def test_tokens_match_on_word_boundaries():
    """'no' must not match inside 'know' or 'notebook'"""
    gate = QualityGate(HeuristicTable.default())
    assert gate.classify_reply("I know") == ReplyKind.NEW_INPUT
    assert not contains_phrase(tokenize("notebook"), "no")
    assert contains_phrase(tokenize("Let's go now"), "let's go")


def test_forced_accept_due():
    gate = QualityGate(HeuristicTable.default(), forced_accept_threshold=3)
    assert not gate.forced_accept_due(2)
    assert gate.forced_accept_due(3)
    assert gate.forced_accept_due(4)


def test_table_validation_collects_errors():
    data = {
        "rules": {
            "topic_9": [],
            "topic_1": [
                {"kind": "min_tokens", "level": "low"},
                {"kind": "shouting", "level": "low"},
                {"kind": "requires_any_word", "level": "medium", "words": []},
                {"kind": "forbids_question", "level": "high"},
            ],
        },
        "auto_accept_stages": ["nowhere"],
    }

    with pytest.raises(ValueError) as excinfo:
        HeuristicTable.from_dict(data)

    message = str(excinfo.value)
    assert "Unknown stage 'topic_9'" in message
    assert "positive 'count'" in message
    assert "unknown kind 'shouting'" in message
    assert "non-empty 'words'" in message
    assert "invalid level 'high'" in message
    assert "Unknown stage 'nowhere' in auto_accept_stages" in message


def test_table_from_json(tmp_path):
    path = tmp_path / "heuristics.json"
    path.write_text(json.dumps({
        "rules": {"topic_1": [{"kind": "min_tokens", "count": 10, "level": "medium", "hint": "More!"}]},
    }))

    gate = QualityGate(HeuristicTable.from_json(str(path)))

    assessment = gate.evaluate(Stage.TOPIC_1, "Energy shapes our communities")
    assert assessment.quality == Quality.MEDIUM
    assert assessment.hint == "More!"

    with pytest.raises(FileNotFoundError):
        HeuristicTable.from_json(str(tmp_path / "missing.json"))


def test_shipped_table_matches_default():
    """data/heuristics.json loads and rates like the built-in table"""
    shipped = QualityGate(HeuristicTable.from_json(str(SHIPPED_TABLE)))
    builtin = QualityGate(HeuristicTable.default())

    for stage, text in [
        (Stage.TOPIC_1, "ok"),
        (Stage.TOPIC_2, "Is it good?"),
        (Stage.TOPIC_3, "Students design a solar plan for school"),
    ]:
        assert shipped.evaluate(stage, text) == builtin.evaluate(stage, text)


def test_gate_rejects_wrong_table_type():
    with pytest.raises(TypeError, match="HeuristicTable"):
        QualityGate({"rules": {}})
