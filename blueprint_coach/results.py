"""
Result types returned by the conversation state machine.

These are the ONLY return types from ``transition()``.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from blueprint_coach.commands import SideEffect
from blueprint_coach.core.session_state import SessionState


class Outcome(str, Enum):
    """What a transition did."""
    IGNORED = "ignored"
    AWAITING_CONFIRM = "awaiting_confirm"
    AWAITING_REFINE = "awaiting_refine"
    REPROMPT = "reprompt"
    COMMITTED = "committed"
    FORCED_COMMIT = "forced_commit"
    SUB_STEP_CAPTURED = "sub_step_captured"
    SUB_STEP_BACK = "sub_step_back"
    SUB_STEP_REJECTED = "sub_step_rejected"
    COMPOSITE_READY = "composite_ready"
    NO_PENDING = "no_pending"
    JUMPED = "jumped"
    JUMP_REJECTED = "jump_rejected"
    ROLLED_BACK = "rolled_back"
    RESET = "reset"
    COMPLETE = "complete"


@dataclass(frozen=True)
class Rejection:
    """
    Event rejected by the machine (nothing committed, stage unchanged).

    Examples:
    - Stage jump to DELIVERABLES while topic3.value is empty
    - Backward stage jump
    - Accepting a value that still awaits refinement

    Attributes:
        reason: Human-readable explanation
        event_type: Name of the rejected event type
        missing: Field keys that blocked the event
    """
    reason: str
    event_type: str
    missing: Tuple[str, ...] = ()


@dataclass(frozen=True)
class TransitionResult:
    """
    Result of one transition.

    Attributes:
        state: New session state
        commands: Side-effect commands for the runtime, in order
        outcome: What happened
        prompt: Deterministic prompt text for the caller
        rejection: Set when the event was rejected
    """
    state: SessionState
    commands: Tuple[SideEffect, ...]
    outcome: Outcome
    prompt: str
    rejection: Optional[Rejection] = None

    @property
    def committed(self) -> bool:
        return self.outcome in (Outcome.COMMITTED, Outcome.FORCED_COMMIT)
