"""
Conversation State Machine - Pure transition function for guided authoring

Responsibilities:
- Route each event: micro-step sequencer, confirmation reply, or quality gate
- Commit fields (explicit accept, immediate accept, forced-accept)
- Advance stages and run the gate sweep after every commit
- Validate manual stage jumps and handle reset
- Clear orphaned pending confirmations and sub-step pointers
- Emit side-effect commands (persist, generate, notify) instead of doing I/O

NOT responsible for:
- Persistence, generation or notification delivery (session runtime)
- Reading clocks (every event carries its own time)

Design principles:
- Pure: transition(state, event) -> TransitionResult, no hidden state
- Enum-indexed stage dispatch, checked for exhaustiveness at import
- Validation and quality problems never raise; they become outcomes
"""

import logging
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Tuple

from blueprint_coach.commands import (
    LEVEL_INFO,
    LEVEL_WARNING,
    Event,
    Notify,
    PersistSnapshot,
    RequestGeneration,
    RequestStageJump,
    ResetSession,
    ResolveConfirmation,
    SideEffect,
    UserInput,
)
from blueprint_coach.contracts import (
    CapturedField,
    ConfirmationStatus,
    PendingConfirmation,
    Provenance,
    Quality,
    QualityDecision,
    Stage,
)
from blueprint_coach.core.micro_steps import MicroStepSequencer, SequencerResult, is_back_command
from blueprint_coach.core.quality_gate import HeuristicTable, QualityGate, ReplyKind
from blueprint_coach.core.session_state import SessionState
from blueprint_coach.core.stage_graph import StageGraph
from blueprint_coach.errors import OrphanStateError, QualityRejected, ValidationError
from blueprint_coach.results import Outcome, Rejection, TransitionResult
from blueprint_coach.settings import CoachSettings
from blueprint_coach.utils.prompt_templates import PromptTemplateID, render

logger = logging.getLogger(__name__)

# Stage handler kinds
HANDLER_SINGLE_FIELD = "single_field"
HANDLER_DECOMPOSED = "decomposed"
HANDLER_TERMINAL = "terminal"

STAGE_HANDLERS: Dict[Stage, str] = {
    Stage.TOPIC_1: HANDLER_SINGLE_FIELD,
    Stage.TOPIC_2: HANDLER_SINGLE_FIELD,
    Stage.TOPIC_3: HANDLER_SINGLE_FIELD,
    Stage.JOURNEY: HANDLER_DECOMPOSED,
    Stage.DELIVERABLES: HANDLER_DECOMPOSED,
    Stage.COMPLETE: HANDLER_TERMINAL,
}

_unhandled = [stage.value for stage in Stage if stage not in STAGE_HANDLERS]
if _unhandled:
    raise RuntimeError(f"No transition handler for stages: {_unhandled}")


class ConversationStateMachine:
    """
    Deterministic guided-authoring state machine.

    Holds only configuration (graph, heuristic table, settings). Session
    state flows in and out of transition().
    """

    def __init__(
        self,
        heuristics: Optional[HeuristicTable] = None,
        graph: Optional[StageGraph] = None,
        settings: Optional[CoachSettings] = None
    ):
        """
        Initialize machine.

        Args:
            heuristics: Quality rule table (defaults to the built-in table)
            graph: Stage graph (defaults to the blueprint workflow)
            settings: Protocol settings (thresholds, timeouts)

        Raises:
            TypeError: If a collaborator has the wrong type
            ValueError: If the graph disagrees with the stage handler table
        """
        self.settings = settings or CoachSettings()
        self.graph = graph or StageGraph(prerequisite_min_length=self.settings.prerequisite_min_length)
        if not isinstance(self.graph, StageGraph):
            raise TypeError(f"graph must be a StageGraph, got {type(self.graph).__name__}")

        self.gate = QualityGate(
            heuristics or HeuristicTable.default(),
            forced_accept_threshold=self.settings.forced_accept_threshold,
            affirmative_max_tokens=self.settings.affirmative_max_tokens,
        )
        self.sequencer = MicroStepSequencer(self.graph)

        for stage, kind in STAGE_HANDLERS.items():
            decomposed = self.graph.definition(stage).sub_steps is not None
            if decomposed != (kind == HANDLER_DECOMPOSED):
                raise ValueError(
                    f"Stage '{stage.value}' handler '{kind}' does not match its graph definition"
                )

        self._stage_handlers: Dict[str, Callable[[SessionState, UserInput, str], TransitionResult]] = {
            HANDLER_SINGLE_FIELD: self._handle_single_field,
            HANDLER_DECOMPOSED: self._handle_decomposed,
            HANDLER_TERMINAL: self._handle_terminal,
        }

    # =========================================================================
    # Public interface
    # =========================================================================

    def transition(self, state: SessionState, event: Event) -> TransitionResult:
        """
        Apply one event.

        Args:
            state: Current session state
            event: UserInput, ResolveConfirmation, RequestStageJump or ResetSession

        Returns:
            TransitionResult: new state, side-effect commands, outcome, prompt

        Raises:
            TypeError: If event is not a known event type
        """
        if isinstance(event, ResetSession):
            return self._reset(state, event)

        cleaned, notices = self._cleanup_orphans(state, event.at)

        if isinstance(event, UserInput):
            result = self._on_user_input(cleaned, event)
        elif isinstance(event, ResolveConfirmation):
            result = self._on_resolve(cleaned, event)
        elif isinstance(event, RequestStageJump):
            result = self._on_jump(cleaned, event)
        else:
            raise TypeError(f"Unknown event type: {type(event).__name__}")

        return self._finalize(state, result, event.at, notices)

    def reconcile(self, state: SessionState, at: float) -> TransitionResult:
        """
        Bring a loaded state into a consistent shape.

        Runs orphan cleanup and the gate sweep, and places the micro-step
        pointer when a decomposed stage has nothing in progress.
        """
        cleaned, notices = self._cleanup_orphans(state, at)
        swept, sweep_notices, reason = self._sweep(cleaned)
        swept = self._enter_stage(swept)
        prompt = self._stage_prompt(swept)
        if reason:
            prompt = render(PromptTemplateID.ROLLBACK, reason=reason, prompt=prompt)
        outcome = Outcome.ROLLED_BACK if reason else Outcome.IGNORED
        result = TransitionResult(state=swept, commands=tuple(sweep_notices), outcome=outcome, prompt=prompt)
        return self._finalize(state, result, at, notices)

    def initial_prompt(self, state: SessionState) -> str:
        return self._stage_prompt(state)

    # =========================================================================
    # Event handlers
    # =========================================================================

    def _on_user_input(self, state: SessionState, event: UserInput) -> TransitionResult:
        text = event.text.strip()
        if not text:
            return self._result(state, Outcome.IGNORED, self._current_prompt(state))

        if state.sub_step is not None:
            return self._from_sequencer(
                self.sequencer.handle_input(state, text, event.provenance, event.at)
            )

        if state.pending is not None:
            return self._handle_reply(state, text, event)

        kind = STAGE_HANDLERS[state.stage]
        return self._stage_handlers[kind](state, event, text)

    def _on_resolve(self, state: SessionState, event: ResolveConfirmation) -> TransitionResult:
        pending = state.pending
        if pending is None:
            prompt = render(PromptTemplateID.NOTHING_PENDING, prompt=self._current_prompt(state))
            return self._result(state, Outcome.NO_PENDING, prompt)

        attempts = state.attempts.get(pending.target, 0)
        if event.accept:
            # Same rules as a typed affirmation
            if self.gate.forced_accept_due(attempts):
                return self._commit(state, pending.target, pending.proposed_value, pending.provenance, forced=True)
            if pending.status == ConfirmationStatus.AWAIT_CONFIRM:
                return self._commit(state, pending.target, pending.proposed_value, pending.provenance, forced=False)
            return self._refuse_affirmation(state, pending, attempts, event)

        return self._refine(state.with_attempts(pending.target, attempts + 1), pending)

    def _on_jump(self, state: SessionState, event: RequestStageJump) -> TransitionResult:
        target = event.target
        if target == state.stage:
            return self._result(state, Outcome.IGNORED, self._current_prompt(state))

        gate = self.graph.validate_jump(state.stage, target, state.fields)
        if not gate.ok:
            error = ValidationError(gate.reason, missing=gate.missing)
            logger.info(f"Stage jump {state.stage.value} -> {target.value} rejected: {error}")
            rejection = Rejection(reason=gate.reason, event_type=type(event).__name__, missing=gate.missing)
            notice = Notify(level=LEVEL_INFO, code=error.code, message=gate.reason)
            return self._result(
                state,
                Outcome.JUMP_REJECTED,
                render(PromptTemplateID.JUMP_REJECTED, reason=gate.reason),
                commands=[notice],
                rejection=rejection,
            )

        jumped = replace(state, stage=target, sub_step=None)
        jumped, notices = self._cleanup_orphans(jumped, event.at)
        jumped = self._enter_stage(jumped)
        logger.info(f"Stage jump {state.stage.value} -> {target.value}")
        label = self.graph.definition(target).label
        prompt = f"{render(PromptTemplateID.JUMP_ACCEPTED, label=label)} {self._stage_prompt(jumped)}"
        return self._result(jumped, Outcome.JUMPED, prompt, commands=notices)

    def _reset(self, state: SessionState, event: ResetSession) -> TransitionResult:
        fresh = replace(
            SessionState.initial(state.session_id, event.at),
            revision=state.revision + 1,
        )
        logger.info(f"Session {state.session_id} reset")
        prompt = render(PromptTemplateID.RESET, prompt=self._stage_prompt(fresh))
        commands: List[SideEffect] = [PersistSnapshot(
            session_id=fresh.session_id, revision=fresh.revision, record=fresh.to_record()
        )]
        return TransitionResult(state=fresh, commands=tuple(commands), outcome=Outcome.RESET, prompt=prompt)

    # =========================================================================
    # Stage handlers (no pending confirmation, no active sub-step)
    # =========================================================================

    def _handle_single_field(self, state: SessionState, event: UserInput, text: str) -> TransitionResult:
        key = self.graph.definition(state.stage).field_key
        return self._evaluate_candidate(state, key, text, event.provenance, event.at)

    def _handle_decomposed(self, state: SessionState, event: UserInput, text: str) -> TransitionResult:
        started = self._enter_stage(state)
        return self._from_sequencer(
            self.sequencer.handle_input(started, text, event.provenance, event.at)
        )

    def _handle_terminal(self, state: SessionState, event: UserInput, text: str) -> TransitionResult:
        return self._result(state, Outcome.COMPLETE, render(PromptTemplateID.COMPLETE))

    # =========================================================================
    # Confirmation protocol
    # =========================================================================

    def _evaluate_candidate(
        self,
        state: SessionState,
        key: str,
        text: str,
        provenance: Provenance,
        at: float
    ) -> TransitionResult:
        """
        Run the quality gate on a fresh value for ``key``.

        Forced-accept fires first: after K non-committing inputs the value
        is committed whatever its quality.
        """
        attempts = state.attempts.get(key, 0)
        if self.gate.forced_accept_due(attempts):
            return self._commit(state, key, text, provenance, forced=True)

        assessment = self.gate.evaluate(state.stage, text)
        decision = self.gate.decide(state.stage, assessment)
        if decision == QualityDecision.ACCEPT_IMMEDIATE:
            return self._commit(state, key, text, provenance, forced=False)

        status = (
            ConfirmationStatus.AWAIT_REFINE
            if decision == QualityDecision.AWAIT_REFINE
            else ConfirmationStatus.AWAIT_CONFIRM
        )
        pending = PendingConfirmation(
            target=key,
            stage=state.stage,
            proposed_value=text,
            attempts=attempts + 1,
            status=status,
            hint=assessment.hint,
            provenance=provenance,
            created_at=at,
        )
        new_state = replace(state.with_attempts(key, attempts + 1), pending=pending)
        label = self.graph.definition(state.stage).label

        if status == ConfirmationStatus.AWAIT_REFINE:
            logger.info(f"{key}: quality low, awaiting refinement (attempt {attempts + 1})")
            prompt = render(PromptTemplateID.REFINE_LOW, value=text, hint=assessment.hint or "")
            return self._result(new_state, Outcome.AWAITING_REFINE, prompt, generation_context={"hint": assessment.hint})

        if provenance == Provenance.SUGGESTED:
            prompt = render(PromptTemplateID.CONFIRM_SUGGESTION, value=text, label=label)
        elif assessment.quality == Quality.MEDIUM:
            prompt = render(PromptTemplateID.CONFIRM_MEDIUM, value=text, label=label, hint=assessment.hint or "")
        else:
            prompt = render(PromptTemplateID.CONFIRM_HIGH, value=text, label=label)
        logger.info(f"{key}: quality {assessment.quality.value}, awaiting confirmation")
        return self._result(new_state, Outcome.AWAITING_CONFIRM, prompt, generation_context={"hint": assessment.hint})

    def _handle_reply(self, state: SessionState, text: str, event: UserInput) -> TransitionResult:
        """
        Classify a reply to the pending confirmation.

        PROGRESS commits (AWAIT_CONFIRM) or is refused (AWAIT_REFINE),
        REFINE discards the pending value, NEW_INPUT replaces it.
        """
        pending = state.pending
        key = pending.target
        attempts = state.attempts.get(key, 0)
        kind = self.gate.classify_reply(text)
        if pending.composite and is_back_command(text):
            kind = ReplyKind.REFINE

        if self.gate.forced_accept_due(attempts):
            if kind in (ReplyKind.PROGRESS, ReplyKind.REFINE):
                return self._commit(state, key, pending.proposed_value, pending.provenance, forced=True)
            return self._commit(state, key, text, event.provenance, forced=True)

        if kind == ReplyKind.PROGRESS:
            if pending.status == ConfirmationStatus.AWAIT_CONFIRM:
                return self._commit(state, key, pending.proposed_value, pending.provenance, forced=False)
            return self._refuse_affirmation(state, pending, attempts, event)

        if kind == ReplyKind.REFINE:
            return self._refine(state.with_attempts(key, attempts + 1), pending)

        if pending.composite:
            replaced = replace(
                state.with_attempts(key, attempts + 1),
                pending=replace(
                    pending,
                    proposed_value=text,
                    attempts=attempts + 1,
                    provenance=event.provenance,
                    created_at=event.at,
                ),
            )
            label = self.graph.definition(state.stage).label
            prompt = render(PromptTemplateID.COMPOSITE_CONFIRM, label=label, value=text)
            return self._result(replaced, Outcome.AWAITING_CONFIRM, prompt)

        return self._evaluate_candidate(replace(state, pending=None), key, text, event.provenance, event.at)

    def _refuse_affirmation(
        self,
        state: SessionState,
        pending: PendingConfirmation,
        attempts: int,
        event: Event
    ) -> TransitionResult:
        """Keep a low-quality pending value and ask for refinement (counts as an attempt)."""
        error = QualityRejected(
            f"{pending.target} needs refinement before it can be confirmed", hint=pending.hint
        )
        logger.info(f"{type(error).__name__}: {error}")
        kept = replace(
            state.with_attempts(pending.target, attempts + 1),
            pending=replace(pending, attempts=attempts + 1),
        )
        prompt = render(
            PromptTemplateID.REFINE_STILL_PENDING,
            value=pending.proposed_value,
            hint=pending.hint or "",
        )
        rejection = Rejection(reason=str(error), event_type=type(event).__name__)
        return self._result(kept, Outcome.AWAITING_REFINE, prompt, rejection=rejection)

    def _refine(self, state: SessionState, pending: PendingConfirmation) -> TransitionResult:
        """Discard the pending value and re-prompt (composites restart their sequence)."""
        if pending.composite:
            return self._from_sequencer(self.sequencer.restart(state), outcome=Outcome.REPROMPT)

        cleared = replace(state, pending=None)
        definition = self.graph.definition(state.stage)
        prompt = render(PromptTemplateID.REFINE_REPROMPT, label=definition.label, prompt=definition.prompt)
        return self._result(cleared, Outcome.REPROMPT, prompt)

    # =========================================================================
    # Commit, advance and sweep
    # =========================================================================

    def _commit(
        self,
        state: SessionState,
        key: str,
        value: str,
        provenance: Provenance,
        forced: bool
    ) -> TransitionResult:
        """
        Commit a confirmed value, advance the stage and run the sweep.

        Committing writes by key, so committing the same value twice
        leaves one entry. Composite commits also confirm their sub-fields.
        """
        definition = self.graph.definition(state.stage)
        committed = state.with_field(CapturedField(key=key, value=value, confirmed=True, provenance=provenance))

        template = definition.sub_steps
        if template is not None and key == template.composite_key:
            prefix = f"{template.section}."
            for sub_key, captured in list(committed.fields.items()):
                if sub_key.startswith(prefix) and sub_key != key:
                    committed = committed.with_field(replace(captured, confirmed=True))

        committed = replace(committed.with_attempts(key, 0), pending=None, sub_step=None)
        logger.info(f"Committed {key} ({'forced' if forced else 'confirmed'})")

        advanced = committed
        if key == definition.field_key:
            advanced = replace(committed, stage=self.graph.next_stage(state.stage))

        swept, notices, reason = self._sweep(advanced)
        swept = self._enter_stage(swept)

        template_id = PromptTemplateID.FORCED_ACCEPTED if forced else PromptTemplateID.ACCEPTED
        prompt = f"{render(template_id, label=definition.label, value=value)} {self._stage_prompt(swept)}"
        if reason:
            prompt = render(PromptTemplateID.ROLLBACK, reason=reason, prompt=self._stage_prompt(swept))

        outcome = Outcome.FORCED_COMMIT if forced else Outcome.COMMITTED
        if forced:
            notices.append(Notify(
                level=LEVEL_INFO,
                code="forced_accept",
                message=f"{definition.label} saved after repeated attempts",
            ))
        return self._result(swept, outcome, prompt, commands=notices)

    def _sweep(self, state: SessionState) -> Tuple[SessionState, List[SideEffect], str]:
        """Gate sweep on the current stage; rolls back and clears pending on failure."""
        result = self.graph.sweep(state.stage, state.fields)
        if not result.rolled_back:
            return state, [], ""
        rolled = replace(state, stage=result.stage, pending=None, sub_step=None)
        notice = Notify(level=LEVEL_WARNING, code=ValidationError.code, message=result.reason)
        return rolled, [notice], result.reason

    def _enter_stage(self, state: SessionState) -> SessionState:
        """Place the micro-step pointer when a decomposed stage has nothing in progress."""
        if STAGE_HANDLERS[state.stage] != HANDLER_DECOMPOSED:
            return state
        if state.sub_step is not None or state.pending is not None:
            return state
        return self.sequencer.start(state)

    # =========================================================================
    # Orphan cleanup
    # =========================================================================

    def _cleanup_orphans(self, state: SessionState, at: float) -> Tuple[SessionState, List[SideEffect]]:
        """
        Clear a pending confirmation or sub-step pointer that no longer
        belongs to the active stage, or a pending confirmation idle past
        the confirmation timeout.
        """
        notices: List[SideEffect] = []
        cleaned = state

        pending = state.pending
        if pending is not None:
            reason = None
            if pending.stage != state.stage:
                reason = f"pending confirmation for {pending.target} belongs to {pending.stage.value}"
            elif at - state.updated_at > self.settings.confirmation_timeout_seconds:
                reason = f"pending confirmation for {pending.target} expired after inactivity"
            if reason:
                error = OrphanStateError(reason)
                logger.warning(f"{type(error).__name__}: {error}")
                cleaned = replace(cleaned, pending=None)
                notices.append(Notify(level=LEVEL_WARNING, code=error.code, message=str(error)))

        sub_step = state.sub_step
        if sub_step is not None:
            template = self.graph.definition(state.stage).sub_steps
            valid = (
                sub_step.stage == state.stage
                and template is not None
                and 0 <= sub_step.index < sub_step.length <= len(template.addresses())
            )
            if not valid:
                error = OrphanStateError(f"sub-step pointer for {sub_step.stage.value} is stale")
                logger.warning(f"{type(error).__name__}: {error}")
                cleaned = replace(cleaned, sub_step=None)
                notices.append(Notify(level=LEVEL_WARNING, code=error.code, message=str(error)))

        return cleaned, notices

    # =========================================================================
    # Result helpers
    # =========================================================================

    def _from_sequencer(self, step: SequencerResult, outcome: Optional[Outcome] = None) -> TransitionResult:
        if outcome is None:
            if step.composite_ready:
                outcome = Outcome.COMPOSITE_READY
            elif step.rejected:
                outcome = Outcome.SUB_STEP_REJECTED
            elif step.went_back:
                outcome = Outcome.SUB_STEP_BACK
            else:
                outcome = Outcome.SUB_STEP_CAPTURED
        return self._result(step.state, outcome, step.prompt)

    def _result(
        self,
        state: SessionState,
        outcome: Outcome,
        prompt: str,
        commands: Optional[List[SideEffect]] = None,
        rejection: Optional[Rejection] = None,
        generation_context: Optional[Dict] = None
    ) -> TransitionResult:
        effects: List[SideEffect] = list(commands or [])
        if outcome not in (Outcome.IGNORED, Outcome.NO_PENDING, Outcome.JUMP_REJECTED):
            context = {
                "stage": state.stage.value,
                "stage_label": self.graph.definition(state.stage).label,
                "outcome": outcome.value,
                "outputs": {
                    key: state.fields[key].value
                    for key in self.graph.output_keys() if key in state.fields
                },
                "pending": state.pending.proposed_value if state.pending else None,
            }
            context.update(generation_context or {})
            effects.append(RequestGeneration(
                purpose=outcome.value,
                stage=state.stage,
                context=context,
                fallback_text=prompt,
            ))
        return TransitionResult(state=state, commands=tuple(effects), outcome=outcome, prompt=prompt, rejection=rejection)

    def _finalize(
        self,
        before: SessionState,
        result: TransitionResult,
        at: float,
        notices: List[SideEffect]
    ) -> TransitionResult:
        """Bump revision, stamp time and add a persist command when state changed."""
        state = result.state
        commands = list(notices) + list(result.commands)
        if state != before:
            state = replace(state, revision=before.revision + 1, updated_at=at)
            commands.insert(0, PersistSnapshot(
                session_id=state.session_id,
                revision=state.revision,
                record=state.to_record(),
            ))
        return replace(result, state=state, commands=tuple(commands))

    # =========================================================================
    # Prompts
    # =========================================================================

    def _stage_prompt(self, state: SessionState) -> str:
        if state.stage == Stage.COMPLETE:
            return render(PromptTemplateID.COMPLETE)
        if state.sub_step is not None:
            definition = self.graph.definition(state.stage)
            intro = render(PromptTemplateID.STAGE_INTRO, label=definition.label, prompt=definition.prompt)
            return f"{intro} {self.sequencer.prompt_for(state.sub_step)}"
        definition = self.graph.definition(state.stage)
        return render(PromptTemplateID.STAGE_INTRO, label=definition.label, prompt=definition.prompt)

    def _current_prompt(self, state: SessionState) -> str:
        if state.pending is not None:
            label = self.graph.definition(state.stage).label
            if state.pending.composite:
                return render(PromptTemplateID.COMPOSITE_CONFIRM, label=label, value=state.pending.proposed_value)
            return render(PromptTemplateID.CONFIRM_HIGH, value=state.pending.proposed_value, label=label)
        return self._stage_prompt(state)


def transition(
    state: SessionState,
    event: Event,
    heuristics: HeuristicTable,
    graph: Optional[StageGraph] = None,
    settings: Optional[CoachSettings] = None
) -> TransitionResult:
    """
    Functional entry point: transition(state, event, heuristic table).

    Builds a machine from the given configuration and applies one event.
    """
    return ConversationStateMachine(heuristics=heuristics, graph=graph, settings=settings).transition(state, event)
