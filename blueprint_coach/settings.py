"""
Runtime settings for the blueprint coaching system.

Every tunable of the confirmation protocol, the persistence layer and the
generation adapter lives here. Values load from ``BLUEPRINT_*`` environment
variables and are validated fail-fast.
"""

import os
from dataclasses import dataclass, replace

GENERATION_BACKENDS = {"template", "huggingface"}


@dataclass(frozen=True)
class CoachSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    forced_accept_threshold: int = 3
    confirmation_timeout_seconds: float = 1800.0
    prerequisite_min_length: int = 3
    affirmative_max_tokens: int = 4
    debounce_seconds: float = 1.5
    retry_base_delay: float = 1.0
    retry_multiplier: float = 2.0
    retry_max_delay: float = 30.0
    retry_max_attempts: int = 5
    sync_queue_max_size: int = 50
    generation_timeout_seconds: float = 15.0
    storage_root: str = "outputs/sessions"
    model_name: str = "mistralai/Mistral-7B-Instruct-v0.2"
    generation_backend: str = "template"
    heuristics_path: str = ""

    @classmethod
    def from_env(cls) -> "CoachSettings":
        return cls(
            forced_accept_threshold=_get_env_int("BLUEPRINT_FORCED_ACCEPT_THRESHOLD", default=3, minimum=1),
            confirmation_timeout_seconds=_get_env_float("BLUEPRINT_CONFIRMATION_TIMEOUT", default=1800.0, minimum=1.0),
            prerequisite_min_length=_get_env_int("BLUEPRINT_PREREQUISITE_MIN_LENGTH", default=3, minimum=1),
            affirmative_max_tokens=_get_env_int("BLUEPRINT_AFFIRMATIVE_MAX_TOKENS", default=4, minimum=1),
            debounce_seconds=_get_env_float("BLUEPRINT_DEBOUNCE_SECONDS", default=1.5, minimum=0.0),
            retry_base_delay=_get_env_float("BLUEPRINT_RETRY_BASE_DELAY", default=1.0, minimum=0.0),
            retry_multiplier=_get_env_float("BLUEPRINT_RETRY_MULTIPLIER", default=2.0, minimum=1.0),
            retry_max_delay=_get_env_float("BLUEPRINT_RETRY_MAX_DELAY", default=30.0, minimum=0.0),
            retry_max_attempts=_get_env_int("BLUEPRINT_RETRY_MAX_ATTEMPTS", default=5, minimum=1),
            sync_queue_max_size=_get_env_int("BLUEPRINT_SYNC_QUEUE_MAX_SIZE", default=50, minimum=1),
            generation_timeout_seconds=_get_env_float("BLUEPRINT_GENERATION_TIMEOUT", default=15.0, minimum=0.1),
            storage_root=os.getenv("BLUEPRINT_STORAGE_ROOT", "outputs/sessions"),
            model_name=os.getenv("BLUEPRINT_MODEL_NAME", "mistralai/Mistral-7B-Instruct-v0.2"),
            generation_backend=os.getenv("BLUEPRINT_GENERATION_BACKEND", "template"),
            heuristics_path=os.getenv("BLUEPRINT_HEURISTICS_PATH", ""),
        ).normalized()

    def normalized(self) -> "CoachSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        if self.forced_accept_threshold < 1:
            raise ValueError(
                f"BLUEPRINT_FORCED_ACCEPT_THRESHOLD must be >= 1, got: {self.forced_accept_threshold}"
            )
        if self.retry_max_attempts < 1:
            raise ValueError(
                f"BLUEPRINT_RETRY_MAX_ATTEMPTS must be >= 1, got: {self.retry_max_attempts}"
            )
        if self.retry_multiplier < 1.0:
            raise ValueError(
                f"BLUEPRINT_RETRY_MULTIPLIER must be >= 1.0, got: {self.retry_multiplier}"
            )
        if self.sync_queue_max_size < 1:
            raise ValueError(
                f"BLUEPRINT_SYNC_QUEUE_MAX_SIZE must be >= 1, got: {self.sync_queue_max_size}"
            )
        if not self.storage_root.strip():
            raise ValueError("BLUEPRINT_STORAGE_ROOT must be non-empty")
        model_name = self.model_name.strip()
        if not model_name:
            raise ValueError("BLUEPRINT_MODEL_NAME must be non-empty")
        backend = self.generation_backend.strip().lower()
        if backend not in GENERATION_BACKENDS:
            raise ValueError(
                f"BLUEPRINT_GENERATION_BACKEND must be one of {sorted(GENERATION_BACKENDS)}, got: {self.generation_backend!r}"
            )

        # A cap below the base delay would make every wait the cap.
        max_delay = max(self.retry_max_delay, self.retry_base_delay)
        return replace(
            self,
            retry_max_delay=max_delay,
            storage_root=self.storage_root.strip(),
            model_name=model_name,
            generation_backend=backend,
            heuristics_path=self.heuristics_path.strip(),
        )

    def backoff_delay(self, attempt: int) -> float:
        """
        Delay before retry number ``attempt`` (1-based).

        Args:
            attempt: Number of failed attempts so far

        Returns:
            float: base * multiplier^(attempt-1), capped at retry_max_delay
        """
        delay = self.retry_base_delay * (self.retry_multiplier ** max(attempt - 1, 0))
        return min(delay, self.retry_max_delay)


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound.

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if value < minimum or value > maximum:
        raise ValueError(f"{name} must be in [{minimum}, {maximum}], got: {value}")
    return value


def _get_env_float(name: str, default: float, minimum: float, maximum: float = 1e7) -> float:
    """Parse a float from an environment variable with bounds checking."""
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if value < minimum or value > maximum:
        raise ValueError(f"{name} must be in [{minimum}, {maximum}], got: {value}")
    return value
