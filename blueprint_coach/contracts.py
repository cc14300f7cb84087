"""
Semantic contracts for the blueprint coaching system.

This module defines the immutable data structures shared between the
stage graph, quality gate, micro-step sequencer, state machine and the
persistence layer.

Design principles:
- Frozen dataclasses (immutable after creation)
- String enums so values serialize to JSON unchanged
- No validation logic (contracts, not validators)
- No dependencies on other project modules

Contents:
- Stage: ordered authoring stages
- Provenance, Quality, QualityDecision, ConfirmationStatus: protocol enums
- CapturedField: one captured value keyed by dotted address
- PendingConfirmation: the single proposed-but-unconfirmed value slot
- SubStepAddress: position inside a decomposed stage
- SyncQueueEntry: durable retry record for a failed remote write

Usage:
    from blueprint_coach.contracts import Stage, CapturedField
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class Stage(str, Enum):
    """
    Authoring stages in canonical order.

    Order is total: the declaration order below IS the stage order.
    COMPLETE is terminal and owns no output field.
    """
    TOPIC_1 = "topic_1"
    TOPIC_2 = "topic_2"
    TOPIC_3 = "topic_3"
    JOURNEY = "journey"
    DELIVERABLES = "deliverables"
    COMPLETE = "complete"

    @property
    def index(self) -> int:
        return list(Stage).index(self)


class Provenance(str, Enum):
    """Who authored a captured value."""
    USER = "user"
    SUGGESTED = "suggested"


class Quality(str, Enum):
    """Heuristic quality band for a candidate value."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return {"low": 0, "medium": 1, "high": 2}[self.value]


class QualityDecision(str, Enum):
    """What the quality gate wants done with a candidate value."""
    ACCEPT_IMMEDIATE = "accept_immediate"
    AWAIT_CONFIRM = "await_confirm"
    AWAIT_REFINE = "await_refine"


class ConfirmationStatus(str, Enum):
    """Status of the pending confirmation slot."""
    AWAIT_CONFIRM = "await_confirm"
    AWAIT_REFINE = "await_refine"


@dataclass(frozen=True)
class CapturedField:
    """
    A single captured value.

    Attributes:
        key: Dotted field address (e.g. 'topic1.value', 'journey.phase2.name')
        value: Captured text
        confirmed: True only after explicit accept or forced-accept
        provenance: USER if typed, SUGGESTED if adopted from a generated suggestion
    """
    key: str
    value: str
    confirmed: bool = False
    provenance: Provenance = Provenance.USER

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "value": self.value,
            "confirmed": self.confirmed,
            "provenance": self.provenance.value,
        }


@dataclass(frozen=True)
class PendingConfirmation:
    """
    Proposed value awaiting the user's accept/refine decision.

    At most one exists per session. A composite confirmation targets a
    whole decomposed section (e.g. 'journey.value') rather than a single
    field.

    Attributes:
        target: Field key (or composite section key) the value will commit to
        stage: Stage that created this confirmation
        proposed_value: Text that will be committed on accept
        attempts: Consecutive non-committing inputs against this target
        status: AWAIT_CONFIRM or AWAIT_REFINE
        composite: True when produced by the micro-step sequencer
        hint: Optional refinement guidance from the quality gate
        provenance: Provenance the committed field will carry
        created_at: Epoch seconds (injected clock)
    """
    target: str
    stage: Stage
    proposed_value: str
    attempts: int = 0
    status: ConfirmationStatus = ConfirmationStatus.AWAIT_CONFIRM
    composite: bool = False
    hint: Optional[str] = None
    provenance: Provenance = Provenance.USER
    created_at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": self.target,
            "stage": self.stage.value,
            "proposed_value": self.proposed_value,
            "attempts": self.attempts,
            "status": self.status.value,
            "composite": self.composite,
            "hint": self.hint,
            "provenance": self.provenance.value,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class SubStepAddress:
    """
    Position inside a decomposed stage.

    Attributes:
        stage: Stage being decomposed
        index: Pointer into the flattened address queue
        length: Current queue length (shrinks when a sentinel truncates)
    """
    stage: Stage
    index: int = 0
    length: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"stage": self.stage.value, "index": self.index, "length": self.length}


@dataclass(frozen=True)
class SyncQueueEntry:
    """
    Durable record of a remote write that exhausted its retries.

    Attributes:
        session_id: Session the payload belongs to
        payload: Serialized session record (JSON-safe dict)
        attempts: Drain attempts so far
        next_retry_at: Epoch seconds before which the entry is not retried
        enqueued_at: Epoch seconds when first queued
        last_error: Text of the most recent failure
    """
    session_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    attempts: int = 0
    next_retry_at: float = 0.0
    enqueued_at: float = 0.0
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "payload": self.payload,
            "attempts": self.attempts,
            "next_retry_at": self.next_retry_at,
            "enqueued_at": self.enqueued_at,
            "last_error": self.last_error,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "SyncQueueEntry":
        return SyncQueueEntry(
            session_id=data["session_id"],
            payload=data.get("payload", {}),
            attempts=int(data.get("attempts", 0)),
            next_retry_at=float(data.get("next_retry_at", 0.0)),
            enqueued_at=float(data.get("enqueued_at", 0.0)),
            last_error=data.get("last_error"),
        )
