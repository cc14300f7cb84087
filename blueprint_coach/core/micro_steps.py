"""
Micro-Step Sequencer - Decomposes matrix-shaped stages into atomic prompts

Responsibilities:
- Flatten a stage's groups x slots into an ordered address queue
- Move the pointer forward and back (back clears the re-entered value)
- Write captured sub-fields unconfirmed under their dotted address
- Honour the sentinel on open-ended sequences
- Synthesize the composite draft and hand it over as a composite
  pending confirmation for the parent stage

NOT responsible for:
- Confirming the composite (state machine handles the reply)
- Quality checks on sub-fields

Design principles:
- Pure: every operation returns a new SessionState
- Deterministic composite text (same fields -> same draft)
"""

import logging
from dataclasses import dataclass, replace
from typing import List, Optional

from blueprint_coach.contracts import (
    CapturedField,
    ConfirmationStatus,
    PendingConfirmation,
    Provenance,
    Stage,
    SubStepAddress,
)
from blueprint_coach.core.session_state import SessionState
from blueprint_coach.core.stage_graph import StageGraph, SubStepTemplate
from blueprint_coach.utils.prompt_templates import PromptTemplateID, render

logger = logging.getLogger(__name__)

# Navigation and sentinel commands (matched on the whole trimmed input)
BACK_COMMANDS = {"back", "previous", "prev", "go back"}
SENTINEL_COMMANDS = {"done", "finished", "that's all", "that is all", "no more"}


@dataclass(frozen=True)
class SequencerResult:
    """
    Outcome of one sequencer step.

    Attributes:
        state: New session state
        prompt: Deterministic prompt for the next step
        composite_ready: True if a composite pending confirmation was created
        went_back: True if the pointer moved back one address
        rejected: Reason when the input was not applied
    """
    state: SessionState
    prompt: str
    composite_ready: bool = False
    went_back: bool = False
    rejected: Optional[str] = None


def _normalize_command(text: str) -> str:
    return " ".join(text.lower().strip().strip(".!").split())


def is_back_command(text: str) -> bool:
    return _normalize_command(text) in BACK_COMMANDS


def is_sentinel(text: str) -> bool:
    return _normalize_command(text) in SENTINEL_COMMANDS


def synthesize_composite(template: SubStepTemplate, state: SessionState, groups: int) -> str:
    """
    Deterministic composite draft.

    One line per captured group: '<Group> <n>: slot | slot'. Empty slots
    are skipped; a group with no captured slots is omitted.
    """
    lines = []
    for group in range(1, groups + 1):
        values = []
        for slot in template.slot_fields:
            value = state.value_of(f"{template.section}.{template.group_label}{group}.{slot}")
            if value and value.strip():
                values.append(value.strip())
        if values:
            lines.append(f"{template.group_label.title()} {group}: {' | '.join(values)}")
    return "\n".join(lines)


class MicroStepSequencer:
    """
    Stateless sequencer over the stage graph's sub-step templates.
    """

    def __init__(self, graph: StageGraph):
        self.graph = graph

    def template_for(self, stage: Stage) -> Optional[SubStepTemplate]:
        return self.graph.definition(stage).sub_steps

    def addresses(self, stage: Stage) -> List[str]:
        template = self.template_for(stage)
        return template.addresses() if template else []

    # =========================================================================
    # Pointer movement
    # =========================================================================

    def start(self, state: SessionState) -> SessionState:
        """Place the pointer on the first address of the active stage."""
        template = self.template_for(state.stage)
        if template is None:
            return replace(state, sub_step=None)
        address = SubStepAddress(stage=state.stage, index=0, length=len(template.addresses()))
        return replace(state, sub_step=address)

    def next(self, address: SubStepAddress) -> SubStepAddress:
        return replace(address, index=min(address.index + 1, address.length))

    def prev(self, address: SubStepAddress) -> SubStepAddress:
        return replace(address, index=max(address.index - 1, 0))

    def prompt_for(self, address: SubStepAddress, template_id: str = PromptTemplateID.MICRO_STEP, **extra) -> str:
        template = self.template_for(address.stage)
        return render(
            template_id,
            group=template.group_label.title(),
            number=template.group_of(address.index),
            slot=template.slot_label(address.index),
            **extra,
        )

    # =========================================================================
    # Input handling
    # =========================================================================

    def handle_input(self, state: SessionState, text: str, provenance: Provenance, at: float) -> SequencerResult:
        """
        Route one input while a sub-step is active.

        Args:
            state: Session state with a non-null sub_step
            text: Trimmed, non-empty input
            provenance: Who authored the input
            at: Event time (epoch seconds)

        Returns:
            SequencerResult
        """
        if is_back_command(text):
            return self.go_back(state)
        template = self.template_for(state.stage)
        if template is not None and template.open_ended and is_sentinel(text):
            return self.finish_early(state, at)
        return self.on_field_captured(state, text, provenance, at)

    def go_back(self, state: SessionState) -> SequencerResult:
        """Step back one address and clear the value stored there."""
        address = state.sub_step
        if address.index == 0:
            return SequencerResult(
                state=state,
                prompt=self.prompt_for(address, PromptTemplateID.MICRO_STEP_AT_START),
                rejected="already at first step",
            )
        previous = self.prev(address)
        key = self.addresses(state.stage)[previous.index]
        new_state = replace(state.without_fields([key]), sub_step=previous)
        logger.debug(f"Sub-step back to {key}")
        return SequencerResult(
            state=new_state,
            prompt=self.prompt_for(previous, PromptTemplateID.MICRO_STEP_BACK),
            went_back=True,
        )

    def on_field_captured(self, state: SessionState, value: str, provenance: Provenance, at: float) -> SequencerResult:
        """
        Write the sub-field and advance.

        On exhaustion the composite draft becomes the pending confirmation
        and the sub-step pointer is released.
        """
        address = state.sub_step
        key = self.addresses(state.stage)[address.index]
        new_state = state.with_field(CapturedField(key=key, value=value, confirmed=False, provenance=provenance))
        advanced = self.next(address)
        logger.debug(f"Captured sub-field {key}")

        if advanced.index >= advanced.length:
            template = self.template_for(state.stage)
            groups = advanced.length // len(template.slot_fields)
            return self._submit_composite(replace(new_state, sub_step=advanced), template, groups, at)

        return SequencerResult(state=replace(new_state, sub_step=advanced), prompt=self.prompt_for(advanced))

    def finish_early(self, state: SessionState, at: float) -> SequencerResult:
        """
        Sentinel on an open-ended sequence.

        Truncates at the last complete group: the partial group and every
        later address are cleared. Rejected before min_groups groups exist.
        """
        template = self.template_for(state.stage)
        address = state.sub_step
        slots = len(template.slot_fields)
        complete_groups = address.index // slots

        if complete_groups < template.min_groups:
            plural = f"{template.group_label}s" if template.min_groups != 1 else template.group_label
            return SequencerResult(
                state=state,
                prompt=self.prompt_for(
                    address,
                    PromptTemplateID.SENTINEL_TOO_EARLY,
                    min_groups=template.min_groups,
                    group_plural=plural,
                ),
                rejected=f"at least {template.min_groups} {plural} required",
            )

        cut = complete_groups * slots
        stale = self.addresses(state.stage)[cut:]
        truncated = replace(
            state.without_fields(stale),
            sub_step=replace(address, index=cut, length=cut),
        )
        logger.info(f"Sequence for {state.stage.value} truncated at {complete_groups} groups")
        return self._submit_composite(truncated, template, complete_groups, at)

    def restart(self, state: SessionState) -> SequencerResult:
        """Start the sequence again from the first address (values kept)."""
        restarted = self.start(replace(state, pending=None))
        return SequencerResult(
            state=restarted,
            prompt=self.prompt_for(
                restarted.sub_step,
                PromptTemplateID.COMPOSITE_RESTART,
                label=self.graph.definition(state.stage).label,
            ),
        )

    def _submit_composite(self, state: SessionState, template: SubStepTemplate, groups: int, at: float) -> SequencerResult:
        draft = synthesize_composite(template, state, groups)
        pending = PendingConfirmation(
            target=template.composite_key,
            stage=state.stage,
            proposed_value=draft,
            status=ConfirmationStatus.AWAIT_CONFIRM,
            composite=True,
            created_at=at,
        )
        label = self.graph.definition(state.stage).label
        logger.info(f"Composite draft ready for {template.composite_key} ({groups} groups)")
        return SequencerResult(
            state=replace(state, sub_step=None, pending=pending),
            prompt=render(PromptTemplateID.COMPOSITE_CONFIRM, label=label, value=draft),
            composite_ready=True,
        )
