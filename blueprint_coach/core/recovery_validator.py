"""
Recovery Validator - Schema validation and repair of stored session records

Responsibilities:
- Validate stored records against the strict session schema
- On failure, coerce once (trim/clip strings, clamp numbers, default
  invalid enums, normalize dates, drop unknown keys, migrate legacy
  shapes) and re-validate
- Report warnings for every repair and diagnostics for every failure
- Scan all stored sessions at startup: migrate, purge, summarize

NOT responsible for:
- Stage consistency (the state machine sweeps loaded state)

Design principles:
- Never fabricate authored content: unrecoverable fields are dropped,
  never invented, and nothing becomes confirmed by repair
- Idempotent: validating sanitized output returns it unchanged
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt, StrictStr, field_validator, model_validator
from pydantic import ValidationError as SchemaValidationError

from blueprint_coach.contracts import ConfirmationStatus, Provenance, Stage
from blueprint_coach.core.session_state import SCHEMA_VERSION
from blueprint_coach.persistence import LocalSessionStore
from blueprint_coach.utils.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

FIELD_KEY_PATTERN = r"^[a-z][a-z0-9_]*(\.[a-z][a-z0-9_]*)+$"
SESSION_ID_PATTERN = r"^[A-Za-z0-9_-]{1,128}$"
MAX_VALUE_LENGTH = 4000
MAX_HINT_LENGTH = 500
MAX_COUNTER = 1_000_000

# Legacy field keys and stage names from earlier record layouts
LEGACY_FIELD_KEYS = {
    "ideation.bigidea": "topic1.value",
    "ideation.big_idea": "topic1.value",
    "ideation.essentialquestion": "topic2.value",
    "ideation.essential_question": "topic2.value",
    "ideation.challenge": "topic3.value",
    "bigidea": "topic1.value",
    "essentialquestion": "topic2.value",
    "challenge": "topic3.value",
}

LEGACY_IDEATION_KEYS = {
    "bigIdea": "topic1.value",
    "essentialQuestion": "topic2.value",
    "challenge": "topic3.value",
}

LEGACY_STAGES = {
    "big_idea": Stage.TOPIC_1,
    "ideation": Stage.TOPIC_1,
    "essential_question": Stage.TOPIC_2,
    "challenge": Stage.TOPIC_3,
    "learning_journey": Stage.JOURNEY,
    "completed": Stage.COMPLETE,
}

DATE_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
    "%Y/%m/%d %H:%M:%S",
    "%Y/%m/%d",
    "%Y-%m-%d",
    "%d/%m/%Y %H:%M",
    "%d/%m/%Y",
)

TOP_LEVEL_KEYS = {
    "schema_version", "session_id", "stage", "fields", "pending",
    "sub_step", "attempts", "created_at", "updated_at", "revision",
}


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# =============================================================================
# Schema
# =============================================================================

class CapturedFieldRecord(BaseModel):
    """One captured field."""
    model_config = ConfigDict(extra="forbid")

    key: StrictStr = Field(..., pattern=FIELD_KEY_PATTERN, max_length=128)
    value: StrictStr = Field(..., min_length=1, max_length=MAX_VALUE_LENGTH)
    confirmed: StrictBool
    provenance: Provenance

    @field_validator("value")
    @classmethod
    def _trimmed(cls, v: str) -> str:
        if v != v.strip():
            raise ValueError("value must be trimmed")
        return v


class PendingRecord(BaseModel):
    """The pending confirmation slot."""
    model_config = ConfigDict(extra="forbid")

    target: StrictStr = Field(..., pattern=FIELD_KEY_PATTERN, max_length=128)
    stage: Stage
    proposed_value: StrictStr = Field(..., min_length=1, max_length=MAX_VALUE_LENGTH)
    attempts: StrictInt = Field(..., ge=0, le=MAX_COUNTER)
    status: ConfirmationStatus
    composite: StrictBool
    hint: Optional[StrictStr] = Field(None, max_length=MAX_HINT_LENGTH)
    provenance: Provenance
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return _to_utc(v)


class SubStepRecord(BaseModel):
    """Micro-step pointer."""
    model_config = ConfigDict(extra="forbid")

    stage: Stage
    index: StrictInt = Field(..., ge=0, le=MAX_COUNTER)
    length: StrictInt = Field(..., ge=0, le=MAX_COUNTER)


class SessionRecord(BaseModel):
    """Stored session record (schema version 2)."""
    model_config = ConfigDict(extra="forbid")

    schema_version: StrictInt = Field(..., ge=SCHEMA_VERSION, le=SCHEMA_VERSION)
    session_id: StrictStr = Field(..., pattern=SESSION_ID_PATTERN)
    stage: Stage
    fields: List[CapturedFieldRecord] = Field(default_factory=list)
    pending: Optional[PendingRecord] = None
    sub_step: Optional[SubStepRecord] = None
    attempts: Dict[StrictStr, StrictInt] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
    revision: StrictInt = Field(..., ge=0, le=MAX_COUNTER)

    @field_validator("created_at", "updated_at")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return _to_utc(v)

    @field_validator("attempts")
    @classmethod
    def _attempt_counts(cls, v: Dict[str, int]) -> Dict[str, int]:
        for key, count in v.items():
            if not re.match(FIELD_KEY_PATTERN, key):
                raise ValueError(f"invalid attempts key '{key}'")
            if count < 0 or count > MAX_COUNTER:
                raise ValueError(f"attempt count for '{key}' out of range")
        return v

    @model_validator(mode="after")
    def _unique_keys(self) -> "SessionRecord":
        keys = [f.key for f in self.fields]
        duplicates = sorted({k for k in keys if keys.count(k) > 1})
        if duplicates:
            raise ValueError(f"duplicate field keys: {duplicates}")
        return self


# =============================================================================
# Results
# =============================================================================

@dataclass(frozen=True)
class RecoveryResult:
    """
    Validation outcome.

    Attributes:
        ok: True if sanitized holds a valid record
        sanitized: Valid JSON-safe record (None on failure)
        warnings: One entry per repair applied
        errors: Diagnostics when validation failed after coercion
    """
    ok: bool
    sanitized: Optional[Dict[str, Any]] = None
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def repaired(self) -> bool:
        return self.ok and bool(self.warnings)


@dataclass
class RecoverySummary:
    """
    Startup scan summary.

    Attributes:
        checked: Sessions examined
        unchanged: Valid as stored
        migrated: Repaired and written back
        removed: Purged as unrecoverable
        reasons: session id -> why it was migrated or removed
    """
    checked: int = 0
    unchanged: int = 0
    migrated: int = 0
    removed: int = 0
    reasons: Dict[str, str] = field(default_factory=dict)


def _describe(error: SchemaValidationError) -> List[str]:
    return [
        f"{'.'.join(str(p) for p in item['loc']) or '<root>'}: {item['msg']}"
        for item in error.errors()
    ]


class RecoveryValidator:
    """
    Validates and repairs stored session records.
    """

    def __init__(self, clock: Optional[Clock] = None, max_value_length: int = MAX_VALUE_LENGTH):
        """
        Initialize validator.

        Args:
            clock: Time source for replacing unparseable timestamps
            max_value_length: Clip length for captured values
        """
        self.clock = clock or SystemClock()
        self.max_value_length = min(max_value_length, MAX_VALUE_LENGTH)

    def validate(self, raw: Any, session_id: Optional[str] = None) -> RecoveryResult:
        """
        Validate a stored record, repairing it once if needed.

        Args:
            raw: Record as read from a store
            session_id: Storage key the record was read under (authoritative)

        Returns:
            RecoveryResult
        """
        if isinstance(raw, dict) and (session_id is None or raw.get("session_id") == session_id):
            try:
                record = SessionRecord.model_validate(raw)
                return RecoveryResult(ok=True, sanitized=record.model_dump(mode="json"))
            except SchemaValidationError as e:
                logger.info(f"Strict validation failed ({len(e.errors())} issues), attempting repair")

        warnings: List[str] = []
        coerced = self._coerce(raw, session_id, warnings)
        if coerced is None:
            return RecoveryResult(ok=False, warnings=warnings, errors=list(warnings) or ["record is not an object"])

        try:
            record = SessionRecord.model_validate(coerced)
        except SchemaValidationError as e:
            errors = _describe(e)
            logger.warning(f"Record could not be repaired: {errors}")
            return RecoveryResult(ok=False, warnings=warnings, errors=errors)

        logger.info(f"Record repaired with {len(warnings)} change(s)")
        return RecoveryResult(ok=True, sanitized=record.model_dump(mode="json"), warnings=warnings)

    def recover_all(self, store: LocalSessionStore) -> RecoverySummary:
        """
        Startup scan of every locally stored session.

        Valid records are left alone, repairable ones are written back,
        unrecoverable ones are removed.

        Returns:
            RecoverySummary
        """
        summary = RecoverySummary()
        for session_id in store.list_ids():
            summary.checked += 1
            try:
                raw = store.get(session_id)
            except ValueError as e:
                store.remove(session_id)
                summary.removed += 1
                summary.reasons[session_id] = f"unreadable: {e}"
                continue

            result = self.validate(raw, session_id=session_id)
            if not result.ok:
                store.remove(session_id)
                summary.removed += 1
                summary.reasons[session_id] = "; ".join(result.errors)
            elif result.warnings:
                store.set(session_id, result.sanitized)
                summary.migrated += 1
                summary.reasons[session_id] = "; ".join(result.warnings)
            else:
                summary.unchanged += 1

        logger.info(
            f"Recovery scan: {summary.checked} checked, {summary.unchanged} unchanged, "
            f"{summary.migrated} migrated, {summary.removed} removed"
        )
        return summary

    # =========================================================================
    # Coercion
    # =========================================================================

    def _coerce(self, raw: Any, session_id: Optional[str], warnings: List[str]) -> Optional[Dict[str, Any]]:
        """Single repair pass. Returns None when the record has no usable shape."""
        if not isinstance(raw, dict):
            warnings.append(f"record is {type(raw).__name__}, not an object")
            return None

        data = dict(raw)
        out: Dict[str, Any] = {}

        for key in sorted(set(data) - TOP_LEVEL_KEYS - {"ideation"}):
            warnings.append(f"dropped unknown key '{key}'")

        if data.get("schema_version") != SCHEMA_VERSION:
            warnings.append(f"schema_version {data.get('schema_version')!r} migrated to {SCHEMA_VERSION}")
        out["schema_version"] = SCHEMA_VERSION

        stored_id = data.get("session_id")
        if session_id is not None and stored_id != session_id:
            warnings.append(f"session_id {stored_id!r} replaced with storage key")
            stored_id = session_id
        if not isinstance(stored_id, str) or not re.match(SESSION_ID_PATTERN, stored_id.strip()):
            warnings.append(f"invalid session_id {stored_id!r}")
            return None
        out["session_id"] = stored_id.strip()

        out["stage"] = self._coerce_stage(data.get("stage"), "stage", warnings) or Stage.TOPIC_1.value

        fields = self._coerce_fields(data.get("fields"), warnings)
        ideation = data.get("ideation") if isinstance(data.get("ideation"), dict) else {}
        for legacy_key, key in LEGACY_IDEATION_KEYS.items():
            value = ideation.get(legacy_key)
            if isinstance(value, str) and value.strip() and key not in fields:
                fields[key] = {
                    "key": key,
                    "value": self._clip(value.strip(), key, warnings),
                    "confirmed": False,
                    "provenance": Provenance.USER.value,
                }
                warnings.append(f"migrated ideation.{legacy_key} to {key}")
        if "ideation" in data:
            warnings.append("dropped legacy 'ideation' block")
        out["fields"] = list(fields.values())

        now = self.clock.now()
        created = self._coerce_date(data.get("created_at"), "created_at", warnings)
        updated = self._coerce_date(data.get("updated_at"), "updated_at", warnings)
        fallback = updated or created or datetime.fromtimestamp(now, tz=timezone.utc).isoformat()
        out["created_at"] = created or fallback
        out["updated_at"] = updated or fallback

        out["pending"] = self._coerce_pending(data.get("pending"), out["updated_at"], warnings)
        out["sub_step"] = self._coerce_sub_step(data.get("sub_step"), warnings)
        out["attempts"] = self._coerce_attempts(data.get("attempts"), warnings)
        out["revision"] = self._coerce_int(data.get("revision"), "revision", warnings, default=0)
        return out

    def _coerce_stage(self, value: Any, name: str, warnings: List[str]) -> Optional[str]:
        valid = {s.value for s in Stage}
        if isinstance(value, str):
            normalized = value.strip().lower()
            if normalized in valid:
                if normalized != value:
                    warnings.append(f"{name} {value!r} normalized")
                return normalized
            if normalized in LEGACY_STAGES:
                warnings.append(f"{name} {value!r} migrated to {LEGACY_STAGES[normalized].value}")
                return LEGACY_STAGES[normalized].value
        warnings.append(f"{name} {value!r} invalid")
        return None

    def _coerce_fields(self, value: Any, warnings: List[str]) -> Dict[str, Dict[str, Any]]:
        """Fields as an ordered dict keyed by field key (last duplicate wins)."""
        items: List[Any]
        if isinstance(value, dict):
            warnings.append("fields mapping converted to list")
            items = [
                dict(v, key=k) if isinstance(v, dict) else {"key": k, "value": v}
                for k, v in value.items()
            ]
        elif isinstance(value, list):
            items = value
        else:
            if value is not None:
                warnings.append(f"fields {type(value).__name__} dropped")
            items = []

        fields: Dict[str, Dict[str, Any]] = {}
        for item in items:
            if not isinstance(item, dict):
                warnings.append(f"dropped malformed field entry {item!r}")
                continue
            key = self._coerce_key(item.get("key"), warnings)
            if key is None:
                continue
            raw_value = item.get("value")
            if isinstance(raw_value, (int, float)) and not isinstance(raw_value, bool):
                raw_value = str(raw_value)
                warnings.append(f"{key} number converted to text")
            if not isinstance(raw_value, str) or not raw_value.strip():
                warnings.append(f"dropped empty field {key}")
                continue
            text = raw_value.strip()
            if text != raw_value:
                warnings.append(f"{key} trimmed")
            confirmed = item.get("confirmed")
            if not isinstance(confirmed, bool):
                warnings.append(f"{key} confirmed {confirmed!r} reset to false")
                confirmed = False
            provenance = item.get("provenance")
            if provenance not in {p.value for p in Provenance}:
                if provenance is not None:
                    warnings.append(f"{key} provenance {provenance!r} defaulted to user")
                provenance = Provenance.USER.value
            extra = set(item) - {"key", "value", "confirmed", "provenance"}
            if extra:
                warnings.append(f"{key} dropped keys {sorted(extra)}")
            if key in fields:
                warnings.append(f"duplicate field {key} (kept last)")
                del fields[key]
            fields[key] = {
                "key": key,
                "value": self._clip(text, key, warnings),
                "confirmed": confirmed,
                "provenance": provenance,
            }
        return fields

    def _coerce_key(self, value: Any, warnings: List[str]) -> Optional[str]:
        if not isinstance(value, str):
            warnings.append(f"dropped field with key {value!r}")
            return None
        key = value.strip()
        legacy = LEGACY_FIELD_KEYS.get(key.lower())
        if legacy:
            warnings.append(f"legacy key {value!r} migrated to {legacy}")
            return legacy
        if not re.match(FIELD_KEY_PATTERN, key):
            lowered = key.lower()
            if re.match(FIELD_KEY_PATTERN, lowered):
                warnings.append(f"key {value!r} lowercased")
                return lowered
            warnings.append(f"dropped field with invalid key {value!r}")
            return None
        if key != value:
            warnings.append(f"key {value!r} trimmed")
        return key

    def _coerce_pending(self, value: Any, updated_at: str, warnings: List[str]) -> Optional[Dict[str, Any]]:
        if value is None:
            return None
        if not isinstance(value, dict):
            warnings.append("dropped malformed pending confirmation")
            return None
        target = self._coerce_key(value.get("target"), warnings)
        stage = self._coerce_stage(value.get("stage"), "pending.stage", warnings)
        proposed = value.get("proposed_value")
        if target is None or stage is None or not isinstance(proposed, str) or not proposed.strip():
            warnings.append("dropped unrecoverable pending confirmation")
            return None

        status = value.get("status")
        if status not in {s.value for s in ConfirmationStatus}:
            warnings.append(f"pending.status {status!r} defaulted to await_confirm")
            status = ConfirmationStatus.AWAIT_CONFIRM.value
        composite = value.get("composite")
        if not isinstance(composite, bool):
            composite = False
            warnings.append("pending.composite defaulted to false")
        hint = value.get("hint")
        if hint is not None and not isinstance(hint, str):
            hint = None
            warnings.append("pending.hint dropped")
        elif isinstance(hint, str) and len(hint) > MAX_HINT_LENGTH:
            hint = hint[:MAX_HINT_LENGTH]
            warnings.append("pending.hint clipped")
        provenance = value.get("provenance")
        if provenance not in {p.value for p in Provenance}:
            provenance = Provenance.USER.value
            warnings.append("pending.provenance defaulted to user")

        return {
            "target": target,
            "stage": stage,
            "proposed_value": self._clip(proposed.strip(), "pending", warnings),
            "attempts": self._coerce_int(value.get("attempts"), "pending.attempts", warnings, default=0),
            "status": status,
            "composite": composite,
            "hint": hint,
            "provenance": provenance,
            "created_at": self._coerce_date(value.get("created_at"), "pending.created_at", warnings) or updated_at,
        }

    def _coerce_sub_step(self, value: Any, warnings: List[str]) -> Optional[Dict[str, Any]]:
        if value is None:
            return None
        if not isinstance(value, dict):
            warnings.append("dropped malformed sub_step")
            return None
        stage = self._coerce_stage(value.get("stage"), "sub_step.stage", warnings)
        if stage is None:
            warnings.append("dropped sub_step with invalid stage")
            return None
        return {
            "stage": stage,
            "index": self._coerce_int(value.get("index"), "sub_step.index", warnings, default=0),
            "length": self._coerce_int(value.get("length"), "sub_step.length", warnings, default=0),
        }

    def _coerce_attempts(self, value: Any, warnings: List[str]) -> Dict[str, int]:
        if value is None:
            return {}
        if not isinstance(value, dict):
            warnings.append("dropped malformed attempts")
            return {}
        attempts = {}
        for key, count in value.items():
            if not isinstance(key, str) or not re.match(FIELD_KEY_PATTERN, key):
                warnings.append(f"dropped attempts for {key!r}")
                continue
            attempts[key] = self._coerce_int(count, f"attempts.{key}", warnings, default=0)
        return attempts

    def _coerce_int(self, value: Any, name: str, warnings: List[str], default: int) -> int:
        if isinstance(value, bool) or value is None:
            number = None
        elif isinstance(value, int):
            number = value
        elif isinstance(value, float):
            number = int(value)
            warnings.append(f"{name} truncated to integer")
        elif isinstance(value, str):
            try:
                number = int(value.strip())
                warnings.append(f"{name} parsed from text")
            except ValueError:
                number = None
        else:
            number = None

        if number is None:
            warnings.append(f"{name} {value!r} defaulted to {default}")
            return default
        clamped = max(0, min(number, MAX_COUNTER))
        if clamped != number:
            warnings.append(f"{name} clamped to {clamped}")
        return clamped

    def _coerce_date(self, value: Any, name: str, warnings: List[str]) -> Optional[str]:
        """ISO-8601 UTC text, or None when unparseable."""
        parsed: Optional[datetime] = None
        if isinstance(value, datetime):
            parsed = value
        elif isinstance(value, (int, float)) and not isinstance(value, bool):
            # Millisecond epochs come from older clients
            seconds = value / 1000 if value > 1e11 else value
            try:
                parsed = datetime.fromtimestamp(seconds, tz=timezone.utc)
            except (OverflowError, OSError, ValueError):
                parsed = None
        elif isinstance(value, str) and value.strip():
            text = value.strip()
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                for fmt in DATE_FORMATS:
                    try:
                        parsed = datetime.strptime(text, fmt)
                        break
                    except ValueError:
                        continue

        if parsed is None:
            warnings.append(f"{name} {value!r} unparseable")
            return None
        normalized = _to_utc(parsed).isoformat()
        if normalized != value:
            warnings.append(f"{name} normalized")
        return normalized

    def _clip(self, text: str, name: str, warnings: List[str]) -> str:
        if len(text) > self.max_value_length:
            warnings.append(f"{name} clipped to {self.max_value_length} characters")
            return text[:self.max_value_length].rstrip()
        return text
