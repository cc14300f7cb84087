"""
Error taxonomy for the blueprint coaching system.

Validation and quality problems are resolved inside the state machine and
never reach the caller as exceptions. Persistence and generation problems
are reported on the notification channel. These classes exist so that
every failure has a name in logs, notices and rejections.
"""


class BlueprintCoachError(Exception):
    """Base class for all project errors"""
    code = "error"


class ValidationError(BlueprintCoachError):
    """Malformed input or a rejected stage jump"""
    code = "validation"

    def __init__(self, message: str, missing=None):
        super().__init__(message)
        self.missing = list(missing or [])


class QualityRejected(BlueprintCoachError):
    """Candidate value judged low quality (carries a refinement hint)"""
    code = "quality_rejected"

    def __init__(self, message: str, hint: str = None):
        super().__init__(message)
        self.hint = hint


class PersistError(BlueprintCoachError):
    """Base class for remote/local persistence failures"""
    code = "persist"


class PersistPermanentError(PersistError):
    """Authentication or permission failure. Never retried."""
    code = "persist_permanent"


class PersistTransientError(PersistError):
    """Connectivity or timeout failure. Retried with backoff."""
    code = "persist_transient"


class GenerationUnavailable(BlueprintCoachError):
    """Generation timed out or failed; fallback text is used instead"""
    code = "generation_unavailable"


class OrphanStateError(BlueprintCoachError):
    """Pending confirmation or sub-step detached from the active stage"""
    code = "orphan_state"
