"""
Quality Gate - Heuristic quality checks and the confirmation protocol

Responsibilities:
- Evaluate candidate text against a stage's heuristic rules
- Map quality to a decision (accept immediately / await confirm / await refine)
- Classify replies to a pending confirmation (progress / refine / new input)
- Decide when the forced-accept safety valve fires

NOT responsible for:
- Storing pending confirmations (state machine owns the session state)
- Stage advancement (state machine + stage graph)
- Prompt wording (prompt templates)

Design principles:
- Rules are configuration (HeuristicTable), not code branches per stage
- Token/phrase matching, never raw substring matching
- Fail fast: heuristic tables are validated when loaded
"""

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from blueprint_coach.contracts import Quality, QualityDecision, Stage

logger = logging.getLogger(__name__)

# Rule kinds
RULE_MIN_TOKENS = "min_tokens"
RULE_REQUIRES_QUESTION = "requires_question"
RULE_FORBIDS_QUESTION = "forbids_question"
RULE_REQUIRES_ANY_WORD = "requires_any_word"
RULE_FORBIDS_LEADING_WORD = "forbids_leading_word"

RULE_KINDS = {
    RULE_MIN_TOKENS,
    RULE_REQUIRES_QUESTION,
    RULE_FORBIDS_QUESTION,
    RULE_REQUIRES_ANY_WORD,
    RULE_FORBIDS_LEADING_WORD,
}

# Lexicons for the progress/refine detector
PROGRESS_WORDS = (
    "yes", "yep", "yeah", "sure", "ok", "okay", "good", "great", "perfect",
    "continue", "next", "proceed", "move on", "let's go", "sounds good",
    "that works", "ready", "done", "confirmed", "looks good", "accept",
)

REFINE_WORDS = (
    "no", "nope", "wait", "actually", "hmm", "let me", "change", "different",
    "revise", "edit", "modify", "adjust", "refine", "improve", "not quite",
    "almost", "close but", "try again", "redo",
)

QUESTION_WORDS = ("how", "why", "what", "when", "where", "which")

_TOKEN_PATTERN = re.compile(r"[a-z0-9']+")


class ReplyKind(str, Enum):
    """Classification of a reply to a pending confirmation."""
    PROGRESS = "progress"
    REFINE = "refine"
    NEW_INPUT = "new_input"


@dataclass(frozen=True)
class HeuristicRule:
    """
    One quality predicate.

    Attributes:
        kind: One of RULE_KINDS
        level: Quality assigned when the rule fails (LOW or MEDIUM)
        hint: Enhancement hint returned when this rule decides the quality
        count: Threshold for min_tokens
        words: Word list for requires_any_word / forbids_leading_word
    """
    kind: str
    level: Quality = Quality.LOW
    hint: str = ""
    count: int = 0
    words: Tuple[str, ...] = ()


@dataclass(frozen=True)
class QualityAssessment:
    """
    Quality evaluation result.

    Attributes:
        quality: HIGH, MEDIUM or LOW
        hint: Hint of the deciding rule (None when HIGH)
        failed_rules: Kinds of every failing rule, in table order
    """
    quality: Quality
    hint: Optional[str] = None
    failed_rules: Tuple[str, ...] = ()


@dataclass(frozen=True)
class HeuristicTable:
    """
    Configurable heuristic rule set.

    Attributes:
        rules: Stage -> ordered rules (stages without rules always rate HIGH)
        auto_accept_stages: Stages where HIGH quality commits without confirmation
        progress_words: Affirmative tokens/phrases
        refine_words: Hedge/correction tokens/phrases
        hedge_max_tokens: Longer replies are treated as new input even if they hedge
    """
    rules: Dict[Stage, Tuple[HeuristicRule, ...]] = field(default_factory=dict)
    auto_accept_stages: FrozenSet[Stage] = frozenset()
    progress_words: Tuple[str, ...] = PROGRESS_WORDS
    refine_words: Tuple[str, ...] = REFINE_WORDS
    hedge_max_tokens: int = 6

    @classmethod
    def default(cls) -> "HeuristicTable":
        return cls.from_dict(DEFAULT_HEURISTICS)

    @classmethod
    def from_json(cls, path: str) -> "HeuristicTable":
        """
        Load table from a JSON file.

        Raises:
            FileNotFoundError: If the file doesn't exist
            ValueError: If the table is malformed
        """
        table_path = Path(path)
        if not table_path.exists():
            raise FileNotFoundError(f"Heuristic table not found: {path}")
        with open(table_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        table = cls.from_dict(data)
        logger.info(f"Heuristic table loaded from {path}")
        return table

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HeuristicTable":
        """
        Build and validate a table from plain data.

        Checks:
        - Stage names are known
        - Rule kinds are known
        - Levels are 'low' or 'medium'
        - min_tokens rules carry a positive count
        - word rules carry a non-empty word list

        Raises:
            ValueError: If validation fails
        """
        errors = []
        rules: Dict[Stage, Tuple[HeuristicRule, ...]] = {}
        stage_values = {s.value: s for s in Stage}

        for stage_name, raw_rules in (data.get("rules") or {}).items():
            stage = stage_values.get(stage_name)
            if stage is None:
                errors.append(f"Unknown stage '{stage_name}' in rules")
                continue
            parsed = []
            for i, raw in enumerate(raw_rules):
                kind = raw.get("kind")
                if kind not in RULE_KINDS:
                    errors.append(f"Rule {i} for '{stage_name}' has unknown kind '{kind}'")
                    continue
                level_name = raw.get("level", Quality.LOW.value)
                if level_name not in (Quality.LOW.value, Quality.MEDIUM.value):
                    errors.append(f"Rule {i} for '{stage_name}' has invalid level '{level_name}'")
                    continue
                count = int(raw.get("count", 0))
                words = tuple(w.lower() for w in raw.get("words", ()))
                if kind == RULE_MIN_TOKENS and count < 1:
                    errors.append(f"Rule {i} for '{stage_name}' needs a positive 'count'")
                if kind in (RULE_REQUIRES_ANY_WORD, RULE_FORBIDS_LEADING_WORD) and not words:
                    errors.append(f"Rule {i} for '{stage_name}' needs a non-empty 'words' list")
                parsed.append(HeuristicRule(
                    kind=kind,
                    level=Quality(level_name),
                    hint=raw.get("hint", ""),
                    count=count,
                    words=words,
                ))
            rules[stage] = tuple(parsed)

        auto_accept = set()
        for stage_name in data.get("auto_accept_stages", []):
            if stage_name not in stage_values:
                errors.append(f"Unknown stage '{stage_name}' in auto_accept_stages")
            else:
                auto_accept.add(stage_values[stage_name])

        hedge_max_tokens = int(data.get("hedge_max_tokens", 6))
        if hedge_max_tokens < 1:
            errors.append("hedge_max_tokens must be >= 1")

        if errors:
            error_msg = "Heuristic table validation failed:\n  - " + "\n  - ".join(errors)
            raise ValueError(error_msg)

        return cls(
            rules=rules,
            auto_accept_stages=frozenset(auto_accept),
            progress_words=tuple(data.get("progress_words", PROGRESS_WORDS)),
            refine_words=tuple(data.get("refine_words", REFINE_WORDS)),
            hedge_max_tokens=hedge_max_tokens,
        )


# Default rule set: topic 1 is a conceptual statement, topic 2 an open
# question, topic 3 an actionable challenge.
DEFAULT_HEURISTICS: Dict[str, Any] = {
    "rules": {
        Stage.TOPIC_1.value: [
            {
                "kind": RULE_MIN_TOKENS, "count": 3, "level": "low",
                "hint": "Could you expand on this concept a bit more? What deeper understanding should students develop?",
            },
            {
                "kind": RULE_FORBIDS_QUESTION, "level": "medium",
                "hint": "This sounds like a question. Try framing it as a conceptual understanding instead.",
            },
        ],
        Stage.TOPIC_2.value: [
            {
                "kind": RULE_REQUIRES_QUESTION, "level": "low",
                "hint": "Phrase this as a question that will drive student inquiry.",
            },
            {
                "kind": RULE_FORBIDS_LEADING_WORD, "level": "medium",
                "words": ["is", "are", "do", "does", "can", "will", "should"],
                "hint": "To make this more open-ended, start with 'How' or 'Why' instead.",
            },
        ],
        Stage.TOPIC_3.value: [
            {
                "kind": RULE_MIN_TOKENS, "count": 5, "level": "low",
                "hint": "Add more detail about what students will actually do or create.",
            },
            {
                "kind": RULE_REQUIRES_ANY_WORD, "level": "medium",
                "words": ["create", "design", "solve", "build", "develop", "improve", "make", "plan", "propose"],
                "hint": "Consider adding an action verb to make this more task-oriented.",
            },
        ],
    },
    "auto_accept_stages": [],
}


# =============================================================================
# Text helpers
# =============================================================================

def tokenize(text: str) -> List[str]:
    """Lowercase word tokens."""
    return _TOKEN_PATTERN.findall(text.lower())


def contains_phrase(tokens: List[str], phrase: str) -> bool:
    """Whether ``phrase`` occurs in ``tokens`` on token boundaries."""
    phrase_tokens = tokenize(phrase)
    if not phrase_tokens:
        return False
    width = len(phrase_tokens)
    return any(
        tokens[i:i + width] == phrase_tokens
        for i in range(len(tokens) - width + 1)
    )


def _word_count(text: str) -> int:
    return len(text.split())


class QualityGate:
    """
    Stateless quality evaluator and reply classifier.

    All state (pending confirmation, attempt counters) is owned by the
    caller and passed in.
    """

    def __init__(self, table: HeuristicTable, forced_accept_threshold: int = 3, affirmative_max_tokens: int = 4):
        """
        Initialize gate.

        Args:
            table: Heuristic rule table
            forced_accept_threshold: K consecutive rejections before forced commit
            affirmative_max_tokens: Longest reply still treated as an affirmation

        Raises:
            TypeError: If table is not a HeuristicTable
        """
        if not isinstance(table, HeuristicTable):
            raise TypeError(f"table must be a HeuristicTable, got {type(table).__name__}")
        self.table = table
        self.forced_accept_threshold = forced_accept_threshold
        self.affirmative_max_tokens = affirmative_max_tokens

    def evaluate(self, stage: Stage, text: str) -> QualityAssessment:
        """
        Evaluate candidate text for a stage.

        The lowest failing level wins; among equals the first rule in table
        order supplies the hint.

        Args:
            stage: Active stage
            text: Candidate value

        Returns:
            QualityAssessment: quality band, hint and failed rule kinds
        """
        failed: List[HeuristicRule] = []
        for rule in self.table.rules.get(stage, ()):
            if not self._passes(rule, text):
                failed.append(rule)

        if not failed:
            return QualityAssessment(quality=Quality.HIGH)

        deciding = min(failed, key=lambda r: r.level.rank)
        logger.debug(
            f"Quality {deciding.level.value} for {stage.value}: "
            f"{[r.kind for r in failed]}"
        )
        return QualityAssessment(
            quality=deciding.level,
            hint=deciding.hint or None,
            failed_rules=tuple(r.kind for r in failed),
        )

    def decide(self, stage: Stage, assessment: QualityAssessment) -> QualityDecision:
        """
        Map an assessment to a protocol decision.

        HIGH commits immediately only on auto-accept stages; otherwise
        HIGH and MEDIUM await confirmation and LOW awaits refinement.
        """
        if assessment.quality == Quality.LOW:
            return QualityDecision.AWAIT_REFINE
        if assessment.quality == Quality.HIGH and stage in self.table.auto_accept_stages:
            return QualityDecision.ACCEPT_IMMEDIATE
        return QualityDecision.AWAIT_CONFIRM

    def classify_reply(self, text: str) -> ReplyKind:
        """
        Progress/refine detector for replies to a pending confirmation.

        Args:
            text: Raw reply

        Returns:
            ReplyKind: REFINE for a short hedge/correction, PROGRESS for a
                       short affirmation, NEW_INPUT otherwise
        """
        tokens = tokenize(text)
        if not tokens:
            return ReplyKind.NEW_INPUT

        hedged = any(contains_phrase(tokens, w) for w in self.table.refine_words)
        if hedged and len(tokens) <= self.table.hedge_max_tokens:
            return ReplyKind.REFINE

        if len(tokens) <= self.affirmative_max_tokens and not hedged:
            if any(contains_phrase(tokens, w) for w in self.table.progress_words):
                return ReplyKind.PROGRESS

        return ReplyKind.NEW_INPUT

    def forced_accept_due(self, attempts: int) -> bool:
        """True once K consecutive inputs have failed to commit."""
        return attempts >= self.forced_accept_threshold

    # =========================================================================
    # Rule evaluation
    # =========================================================================

    def _passes(self, rule: HeuristicRule, text: str) -> bool:
        """
        Evaluate one rule.

        Supports: min_tokens, requires_question, forbids_question,
        requires_any_word, forbids_leading_word
        """
        tokens = tokenize(text)

        if rule.kind == RULE_MIN_TOKENS:
            return _word_count(text) >= rule.count

        if rule.kind == RULE_REQUIRES_QUESTION:
            return "?" in text or any(t in QUESTION_WORDS for t in tokens)

        if rule.kind == RULE_FORBIDS_QUESTION:
            return "?" not in text

        if rule.kind == RULE_REQUIRES_ANY_WORD:
            return any(contains_phrase(tokens, w) for w in rule.words)

        if rule.kind == RULE_FORBIDS_LEADING_WORD:
            return not tokens or tokens[0] not in rule.words

        # Unknown kind (tables are validated on load, so only reachable
        # with a hand-built HeuristicRule)
        logger.warning(f"Unknown heuristic rule kind: {rule.kind}")
        return True
