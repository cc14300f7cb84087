"""
Event and command types for the conversation state machine.

Events are the ONLY input to ``transition()``. Side-effect commands are
the ONLY output besides the new state: the machine never writes, never
calls the generator and never notifies anyone itself. The session
runtime executes the commands.

Every event carries its own timestamp; the machine reads no clock.
"""

import copy
from dataclasses import dataclass, field
from typing import Any, Dict

from blueprint_coach.contracts import Provenance, Stage

# Notice levels
LEVEL_INFO = "info"
LEVEL_WARNING = "warning"
LEVEL_ERROR = "error"


# Event types

@dataclass(frozen=True)
class UserInput:
    """
    Raw text typed (or a suggestion picked) by the user.

    Attributes:
        text: Raw input (trimmed by the machine)
        at: Event time, epoch seconds
        provenance: SUGGESTED when the user adopted a generated suggestion
    """
    text: str
    at: float
    provenance: Provenance = Provenance.USER


@dataclass(frozen=True)
class ResolveConfirmation:
    """
    Explicit accept/refine of the pending confirmation (e.g. a button).

    Attributes:
        accept: True commits the pending value, False asks to refine it
        at: Event time, epoch seconds
    """
    accept: bool
    at: float


@dataclass(frozen=True)
class RequestStageJump:
    """Manual navigation to another stage (validated)."""
    target: Stage
    at: float


@dataclass(frozen=True)
class ResetSession:
    """Return the session to the empty initial state (same id)."""
    at: float


Event = UserInput | ResolveConfirmation | RequestStageJump | ResetSession


# Side-effect command types

@dataclass(frozen=True)
class PersistSnapshot:
    """
    Save the session record.

    Attributes:
        session_id: Session identifier
        revision: State revision this record was produced at
        record: JSON-safe session record (deep copied)
    """
    session_id: str
    revision: int
    record: Dict[str, Any] = field(default_factory=dict)

    def payload(self) -> Dict[str, Any]:
        return copy.deepcopy(self.record)


@dataclass(frozen=True)
class RequestGeneration:
    """
    Ask the generation collaborator for richer prompt text.

    Attributes:
        purpose: What the text is for (transition outcome name)
        stage: Stage the prompt belongs to
        context: Generation context (labels, captured outputs, hint)
        fallback_text: Deterministic text used on failure or timeout
    """
    purpose: str
    stage: Stage
    context: Dict[str, Any] = field(default_factory=dict)
    fallback_text: str = ""


@dataclass(frozen=True)
class Notify:
    """
    Non-blocking notice for the caller.

    Attributes:
        level: info | warning | error
        code: Error taxonomy code (e.g. 'orphan_state', 'persist_permanent')
        message: Human-readable text
    """
    level: str
    code: str
    message: str


SideEffect = PersistSnapshot | RequestGeneration | Notify
