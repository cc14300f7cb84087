"""
Session state value and its serialized record form.

SessionState is the single value the state machine consumes and produces.
It is never mutated: every change goes through ``dataclasses.replace``
and the helpers below, which copy the field and attempt maps.

Record form (what the stores hold and RecoveryValidator checks):
    {
        "schema_version": 2,
        "session_id": "...",
        "stage": "topic_1",
        "fields": [{"key", "value", "confirmed", "provenance"}, ...],
        "pending": {...} | null,
        "sub_step": {"stage", "index", "length"} | null,
        "attempts": {"topic1.value": 1},
        "created_at": ISO-8601 UTC,
        "updated_at": ISO-8601 UTC,
        "revision": 7
    }
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from blueprint_coach.contracts import (
    CapturedField,
    ConfirmationStatus,
    PendingConfirmation,
    Provenance,
    Stage,
    SubStepAddress,
)
from blueprint_coach.core.stage_graph import StageGraph

SCHEMA_VERSION = 2


def to_iso(epoch_seconds: float) -> str:
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc).isoformat()


def from_iso(value: str) -> float:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


@dataclass(frozen=True)
class SessionState:
    """
    Complete authoring state of one session.

    Attributes:
        session_id: Session identifier
        stage: Active stage
        fields: Ordered map of dotted key -> CapturedField
        sub_step: Active micro-step address (only inside a decomposed stage)
        pending: The single pending confirmation slot
        attempts: Field key -> consecutive non-committing inputs
        created_at: Epoch seconds
        updated_at: Epoch seconds of the last state-changing transition
        revision: Incremented on every state-changing transition
    """
    session_id: str
    stage: Stage = Stage.TOPIC_1
    fields: Dict[str, CapturedField] = field(default_factory=dict)
    sub_step: Optional[SubStepAddress] = None
    pending: Optional[PendingConfirmation] = None
    attempts: Dict[str, int] = field(default_factory=dict)
    created_at: float = 0.0
    updated_at: float = 0.0
    revision: int = 0

    @staticmethod
    def initial(session_id: str, at: float) -> "SessionState":
        return SessionState(session_id=session_id, created_at=at, updated_at=at)

    def value_of(self, key: str) -> Optional[str]:
        captured = self.fields.get(key)
        return captured.value if captured else None

    def with_field(self, captured: CapturedField) -> "SessionState":
        """Write a field by key (overwrite, never duplicate)."""
        fields = dict(self.fields)
        fields[captured.key] = captured
        return replace(self, fields=fields)

    def without_fields(self, keys: Iterable[str]) -> "SessionState":
        drop = set(keys)
        fields = {k: v for k, v in self.fields.items() if k not in drop}
        return replace(self, fields=fields)

    def with_attempts(self, key: str, count: int) -> "SessionState":
        attempts = dict(self.attempts)
        if count <= 0:
            attempts.pop(key, None)
        else:
            attempts[key] = count
        return replace(self, attempts=attempts)

    # =========================================================================
    # Record conversion
    # =========================================================================

    def to_record(self) -> Dict[str, Any]:
        """JSON-safe record (the shape RecoveryValidator accepts)."""
        pending = None
        if self.pending is not None:
            pending = self.pending.to_dict()
            pending["created_at"] = to_iso(self.pending.created_at)
        return {
            "schema_version": SCHEMA_VERSION,
            "session_id": self.session_id,
            "stage": self.stage.value,
            "fields": [f.to_dict() for f in self.fields.values()],
            "pending": pending,
            "sub_step": self.sub_step.to_dict() if self.sub_step else None,
            "attempts": dict(self.attempts),
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "revision": self.revision,
        }

    @staticmethod
    def from_record(record: Dict[str, Any]) -> "SessionState":
        """
        Rebuild state from a validated record.

        Args:
            record: Sanitized output of RecoveryValidator

        Returns:
            SessionState
        """
        fields = {}
        for raw in record.get("fields", []):
            fields[raw["key"]] = CapturedField(
                key=raw["key"],
                value=raw["value"],
                confirmed=raw["confirmed"],
                provenance=Provenance(raw["provenance"]),
            )

        pending = None
        raw_pending = record.get("pending")
        if raw_pending:
            pending = PendingConfirmation(
                target=raw_pending["target"],
                stage=Stage(raw_pending["stage"]),
                proposed_value=raw_pending["proposed_value"],
                attempts=raw_pending["attempts"],
                status=ConfirmationStatus(raw_pending["status"]),
                composite=raw_pending["composite"],
                hint=raw_pending.get("hint"),
                provenance=Provenance(raw_pending["provenance"]),
                created_at=from_iso(raw_pending["created_at"]),
            )

        sub_step = None
        raw_sub = record.get("sub_step")
        if raw_sub:
            sub_step = SubStepAddress(
                stage=Stage(raw_sub["stage"]),
                index=raw_sub["index"],
                length=raw_sub["length"],
            )

        return SessionState(
            session_id=record["session_id"],
            stage=Stage(record["stage"]),
            fields=fields,
            sub_step=sub_step,
            pending=pending,
            attempts=dict(record.get("attempts", {})),
            created_at=from_iso(record["created_at"]),
            updated_at=from_iso(record["updated_at"]),
            revision=record["revision"],
        )


def build_snapshot(state: SessionState, graph: StageGraph) -> Dict[str, Any]:
    """
    Render-ready view of a session.

    Args:
        state: Session state
        graph: Stage graph (for labels, completion ratio and status)

    Returns:
        dict: stage, completion ratio, status, captured fields, pending
              confirmation and micro-step position
    """
    definition = graph.definition(state.stage)

    sub_step = None
    if state.sub_step is not None and definition.sub_steps is not None:
        template = definition.sub_steps
        addresses = template.addresses()
        index = state.sub_step.index
        sub_step = {
            "stage": state.sub_step.stage.value,
            "index": index,
            "length": state.sub_step.length,
            "address": addresses[index] if index < len(addresses) else None,
            "group": template.group_of(index),
            "slot": template.slot_label(index),
        }

    return {
        "session_id": state.session_id,
        "stage": state.stage.value,
        "stage_label": definition.label,
        "completion_ratio": graph.completion_ratio(state.fields),
        "status": graph.status(state.fields),
        "fields": [f.to_dict() for f in state.fields.values()],
        "pending": state.pending.to_dict() if state.pending else None,
        "sub_step": sub_step,
        "revision": state.revision,
    }
