"""
Stage Graph - Stage order, prerequisites and gate validation

Responsibilities:
- Declare the ordered authoring stages and the field each one produces
- Declare which stages decompose into micro-steps (and their shape)
- Check whether a stage may be entered given the captured fields
- Validate manual stage jumps
- Run the consistency sweep that rolls back to the earliest unmet stage
- Derive completion ratio and blueprint status for rendering

Design principles:
- Stateless: all state comes from the fields mapping passed in
- Deterministic: same fields always produce the same gate result
- Fail fast: graph definitions are validated on construction
- Enum-indexed: every Stage must have exactly one definition
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

from blueprint_coach.contracts import CapturedField, Stage

logger = logging.getLogger(__name__)

# Blueprint status labels
STATUS_DRAFT = "draft"
STATUS_IN_PROGRESS = "in-progress"
STATUS_READY = "ready"


@dataclass(frozen=True)
class SubStepTemplate:
    """
    Shape of a decomposed stage.

    A stage with P groups of F slot fields flattens into P*F addresses of
    the form '<section>.<group_label><n>.<slot>'.

    Attributes:
        section: Key prefix (e.g. 'journey')
        group_label: Name of one repeating group (e.g. 'phase')
        group_count: Number of groups P
        slot_fields: Slot names within a group (F entries)
        slot_labels: Human-readable slot names for prompts
        open_ended: Whether a sentinel may truncate the sequence early
        min_groups: Complete groups required before the sentinel is honoured
    """
    section: str
    group_label: str
    group_count: int
    slot_fields: Tuple[str, ...]
    slot_labels: Tuple[str, ...] = ()
    open_ended: bool = False
    min_groups: int = 1

    @property
    def composite_key(self) -> str:
        return f"{self.section}.value"

    def addresses(self) -> List[str]:
        """Flattened address queue in prompt order."""
        return [
            f"{self.section}.{self.group_label}{group}.{slot}"
            for group in range(1, self.group_count + 1)
            for slot in self.slot_fields
        ]

    def group_of(self, index: int) -> int:
        """1-based group number for a queue position."""
        return index // len(self.slot_fields) + 1

    def slot_label(self, index: int) -> str:
        slot_position = index % len(self.slot_fields)
        if self.slot_labels:
            return self.slot_labels[slot_position]
        return self.slot_fields[slot_position]


@dataclass(frozen=True)
class StageDefinition:
    """
    One node of the stage graph.

    Attributes:
        stage: Stage this definition describes
        field_key: Output field committed when the stage completes (None for terminal)
        prerequisites: Field keys that must be populated to enter the stage
        label: Human-readable stage name
        prompt: Deterministic fallback prompt shown on entry
        sub_steps: Decomposition template, or None for single-field stages
    """
    stage: Stage
    field_key: Optional[str]
    prerequisites: Tuple[str, ...] = ()
    label: str = ""
    prompt: str = ""
    sub_steps: Optional[SubStepTemplate] = None


@dataclass(frozen=True)
class GateResult:
    """
    Outcome of a gate check.

    Attributes:
        ok: True if the stage may be entered
        missing: Prerequisite keys that are empty or too short
        reason: Human-readable explanation (empty when ok)
    """
    ok: bool
    missing: Tuple[str, ...] = ()
    reason: str = ""


@dataclass(frozen=True)
class SweepResult:
    """
    Outcome of a consistency sweep.

    Attributes:
        stage: Stage the session should be in
        rolled_back: True if the sweep moved the session
        reason: Human-readable explanation when rolled back
        missing: Keys that caused the rollback
    """
    stage: Stage
    rolled_back: bool = False
    reason: str = ""
    missing: Tuple[str, ...] = field(default_factory=tuple)


def default_stage_definitions() -> List[StageDefinition]:
    """
    Default blueprint workflow.

    Topics 1-3 are single-field stages, the learning journey is a
    3 x 2 matrix, and deliverables are an open-ended list of checkpoints.
    """
    journey = SubStepTemplate(
        section="journey",
        group_label="phase",
        group_count=3,
        slot_fields=("name", "activities"),
        slot_labels=("name", "key activities"),
    )
    deliverables = SubStepTemplate(
        section="deliverables",
        group_label="checkpoint",
        group_count=4,
        slot_fields=("value",),
        slot_labels=("description",),
        open_ended=True,
        min_groups=1,
    )
    return [
        StageDefinition(
            stage=Stage.TOPIC_1,
            field_key="topic1.value",
            prerequisites=(),
            label="Big Idea",
            prompt="What is the big idea your project is built around?",
        ),
        StageDefinition(
            stage=Stage.TOPIC_2,
            field_key="topic2.value",
            prerequisites=("topic1.value",),
            label="Essential Question",
            prompt="What open-ended question will drive the students' inquiry?",
        ),
        StageDefinition(
            stage=Stage.TOPIC_3,
            field_key="topic3.value",
            prerequisites=("topic1.value", "topic2.value"),
            label="Challenge",
            prompt="What authentic challenge will students take on?",
        ),
        StageDefinition(
            stage=Stage.JOURNEY,
            field_key=journey.composite_key,
            prerequisites=("topic1.value", "topic2.value", "topic3.value"),
            label="Learning Journey",
            prompt="Let's map the learning journey one phase at a time.",
            sub_steps=journey,
        ),
        StageDefinition(
            stage=Stage.DELIVERABLES,
            field_key=deliverables.composite_key,
            prerequisites=("topic1.value", "topic2.value", "topic3.value", "journey.value"),
            label="Deliverables",
            prompt="Let's list the checkpoints students will deliver. Type 'done' when finished.",
            sub_steps=deliverables,
        ),
        StageDefinition(
            stage=Stage.COMPLETE,
            field_key=None,
            prerequisites=(
                "topic1.value", "topic2.value", "topic3.value",
                "journey.value", "deliverables.value",
            ),
            label="Complete",
            prompt="Your blueprint is complete.",
        ),
    ]


class StageGraph:
    """
    Ordered stage graph with gate validation.

    Holds no session state. Every check takes the captured fields
    mapping (dotted key -> CapturedField) as an argument.
    """

    def __init__(
        self,
        definitions: Optional[List[StageDefinition]] = None,
        prerequisite_min_length: int = 3
    ):
        """
        Initialize graph.

        Args:
            definitions: Stage definitions (defaults to the blueprint workflow)
            prerequisite_min_length: Minimum trimmed length of a populated field

        Raises:
            ValueError: If definitions are incomplete or inconsistent
        """
        definitions = definitions if definitions is not None else default_stage_definitions()
        self.prerequisite_min_length = prerequisite_min_length
        self._definitions: Dict[Stage, StageDefinition] = {d.stage: d for d in definitions}
        self._validate(definitions)
        logger.debug(f"StageGraph initialized with {len(self._definitions)} stages")

    # =========================================================================
    # Lookup
    # =========================================================================

    @property
    def stages(self) -> List[Stage]:
        return list(Stage)

    @property
    def first_stage(self) -> Stage:
        return self.stages[0]

    def definition(self, stage: Stage) -> StageDefinition:
        return self._definitions[stage]

    def next_stage(self, stage: Stage) -> Stage:
        """Stage after ``stage`` (COMPLETE maps to itself)."""
        if stage == Stage.COMPLETE:
            return stage
        return self.stages[stage.index + 1]

    def output_keys(self) -> List[str]:
        return [d.field_key for d in self._ordered() if d.field_key]

    # =========================================================================
    # Gate checks
    # =========================================================================

    def is_populated(self, key: str, fields: Mapping[str, CapturedField]) -> bool:
        """
        Whether a field counts as populated for gating.

        Non-empty after trimming and at least prerequisite_min_length long.
        A confirmed field always passes the length bar: it was accepted
        explicitly or forced, and must not trap the session.
        """
        captured = fields.get(key)
        if captured is None:
            return False
        text = captured.value.strip()
        if not text:
            return False
        if captured.confirmed:
            return True
        return len(text) >= self.prerequisite_min_length

    def can_enter(self, stage: Stage, fields: Mapping[str, CapturedField]) -> GateResult:
        """
        Check all prerequisites of ``stage``.

        Args:
            stage: Stage to enter
            fields: Captured fields

        Returns:
            GateResult: ok plus the missing keys in prerequisite order
        """
        definition = self.definition(stage)
        missing = tuple(
            key for key in definition.prerequisites
            if not self.is_populated(key, fields)
        )
        if not missing:
            return GateResult(ok=True)
        reason = f"Cannot enter {definition.label}: missing {', '.join(missing)}"
        return GateResult(ok=False, missing=missing, reason=reason)

    def validate_jump(
        self,
        current: Stage,
        target: Stage,
        fields: Mapping[str, CapturedField]
    ) -> GateResult:
        """
        Validate a manual stage jump.

        Backward jumps are never allowed (only reset returns to the start).
        Forward jumps require the target's prerequisites.
        """
        if target.index < current.index:
            return GateResult(
                ok=False,
                reason=(
                    f"Cannot move back from {self.definition(current).label} "
                    f"to {self.definition(target).label}; reset the session instead"
                ),
            )
        return self.can_enter(target, fields)

    def earliest_unmet_stage(self, fields: Mapping[str, CapturedField]) -> Stage:
        """First stage whose output field is not populated (COMPLETE if none)."""
        for definition in self._ordered():
            if definition.field_key and not self.is_populated(definition.field_key, fields):
                return definition.stage
        return Stage.COMPLETE

    def sweep(self, stage: Stage, fields: Mapping[str, CapturedField]) -> SweepResult:
        """
        Consistency sweep on the current stage.

        If the current stage's prerequisites no longer hold, the session
        belongs in the earliest stage that produces a missing field.

        Args:
            stage: Current stage
            fields: Captured fields

        Returns:
            SweepResult: target stage and rollback reason
        """
        gate = self.can_enter(stage, fields)
        if gate.ok:
            return SweepResult(stage=stage)

        target = self.earliest_unmet_stage(fields)
        reason = (
            f"Returned to {self.definition(target).label} because "
            f"{', '.join(gate.missing)} {'is' if len(gate.missing) == 1 else 'are'} missing"
        )
        logger.warning(f"Gate sweep rollback {stage.value} -> {target.value}: {gate.missing}")
        return SweepResult(stage=target, rolled_back=True, reason=reason, missing=gate.missing)

    # =========================================================================
    # Derived views
    # =========================================================================

    def completion_ratio(self, fields: Mapping[str, CapturedField]) -> float:
        """Fraction of output fields that are confirmed."""
        keys = self.output_keys()
        if not keys:
            return 1.0
        done = sum(
            1 for key in keys
            if key in fields and fields[key].confirmed and fields[key].value.strip()
        )
        return round(done / len(keys), 4)

    def status(self, fields: Mapping[str, CapturedField]) -> str:
        """
        Blueprint status.

        Returns:
            str: 'ready' when every output is confirmed, 'in-progress' when
                 any field holds text, otherwise 'draft'
        """
        if self.completion_ratio(fields) >= 1.0:
            return STATUS_READY
        if any(f.value.strip() for f in fields.values()):
            return STATUS_IN_PROGRESS
        return STATUS_DRAFT

    # =========================================================================
    # Validation
    # =========================================================================

    def _ordered(self) -> List[StageDefinition]:
        return [self._definitions[stage] for stage in Stage if stage in self._definitions]

    def _validate(self, definitions: List[StageDefinition]) -> None:
        """
        Validate graph on initialization.

        Checks:
        - Every Stage has exactly one definition
        - Only the terminal stage lacks an output field
        - Prerequisites reference outputs of earlier stages only
        - Decomposed stages output their composite key

        Raises:
            ValueError: If validation fails
        """
        errors = []

        seen = [d.stage for d in definitions]
        for stage in Stage:
            count = seen.count(stage)
            if count == 0:
                errors.append(f"Stage '{stage.value}' has no definition")
            elif count > 1:
                errors.append(f"Stage '{stage.value}' defined {count} times")

        produced = set()
        for definition in self._ordered():
            for key in definition.prerequisites:
                if key not in produced:
                    errors.append(
                        f"Stage '{definition.stage.value}' requires '{key}' "
                        f"which no earlier stage produces"
                    )
            if definition.stage != Stage.COMPLETE and not definition.field_key:
                errors.append(f"Stage '{definition.stage.value}' missing field_key")
            template = definition.sub_steps
            if template is not None:
                if template.composite_key != definition.field_key:
                    errors.append(
                        f"Stage '{definition.stage.value}' composite key "
                        f"'{template.composite_key}' != field_key '{definition.field_key}'"
                    )
                if template.group_count < 1 or not template.slot_fields:
                    errors.append(f"Stage '{definition.stage.value}' has an empty sub-step template")
                if template.min_groups < 1 or template.min_groups > template.group_count:
                    errors.append(f"Stage '{definition.stage.value}' min_groups out of range")
            if definition.field_key:
                produced.add(definition.field_key)

        if errors:
            error_msg = "Stage graph validation failed:\n  - " + "\n  - ".join(errors)
            raise ValueError(error_msg)
