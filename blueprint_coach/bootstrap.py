"""
Wiring for entry points.

Builds the shared collaborators (stores, state machine, coordinator,
validator, generator) from CoachSettings and runs the startup recovery
scan over local sessions.
"""

import logging
from typing import Optional

from blueprint_coach.core.persistence_coordinator import PersistenceCoordinator
from blueprint_coach.core.quality_gate import HeuristicTable
from blueprint_coach.core.recovery_validator import RecoveryValidator
from blueprint_coach.core.session_runtime import SessionService
from blueprint_coach.core.state_machine import ConversationStateMachine
from blueprint_coach.persistence import InMemoryRemoteStore, LocalSessionStore, RemoteStore, SyncQueue
from blueprint_coach.settings import CoachSettings
from blueprint_coach.utils.clock import Clock, SystemClock
from blueprint_coach.utils.generators import Generator, HuggingFaceGenerator, TemplateGenerator
from blueprint_coach.utils.notifications import NotificationChannel

logger = logging.getLogger(__name__)


def load_heuristics(settings: CoachSettings) -> HeuristicTable:
    if settings.heuristics_path:
        logger.info(f"Loading heuristic table from {settings.heuristics_path}")
        return HeuristicTable.from_json(settings.heuristics_path)
    return HeuristicTable.default()


def build_generator(settings: CoachSettings) -> Generator:
    """Template text by default; a local model when configured (slow to load)."""
    if settings.generation_backend == "huggingface":
        from blueprint_coach.utils.hf_client import HuggingFaceClient

        logger.info("Initializing HuggingFace model (this takes ~30 seconds)...")
        client = HuggingFaceClient(model_name=settings.model_name, load_in_4bit=True)
        logger.info("Model loaded successfully")
        return HuggingFaceGenerator(client)
    return TemplateGenerator()


def build_service(
    settings: Optional[CoachSettings] = None,
    remote_store: Optional[RemoteStore] = None,
    generator: Optional[Generator] = None,
    clock: Optional[Clock] = None,
    notifications: Optional[NotificationChannel] = None,
    recover: bool = True,
    debounce: bool = True
) -> SessionService:
    """
    Assemble a SessionService.

    Args:
        settings: Runtime settings (defaults to environment)
        remote_store: Remote datastore (defaults to in-memory)
        generator: Generation collaborator (defaults per settings)
        clock: Time source
        notifications: Notice channel
        recover: Run the local recovery scan before serving
        debounce: Coalesce rapid edits into one remote write

    Returns:
        SessionService
    """
    settings = settings or CoachSettings.from_env()
    clock = clock or SystemClock()

    local_store = LocalSessionStore(settings.storage_root)
    sync_queue = SyncQueue(settings.storage_root, max_size=settings.sync_queue_max_size)
    validator = RecoveryValidator(clock=clock)

    if recover:
        summary = validator.recover_all(local_store)
        for session_id, reason in summary.reasons.items():
            logger.info(f"Recovery {session_id}: {reason}")

    coordinator = PersistenceCoordinator(
        local_store=local_store,
        remote_store=remote_store or InMemoryRemoteStore(),
        sync_queue=sync_queue,
        clock=clock,
        settings=settings,
        notifications=notifications or NotificationChannel(),
    )
    machine = ConversationStateMachine(heuristics=load_heuristics(settings), settings=settings)

    return SessionService(
        machine=machine,
        coordinator=coordinator,
        validator=validator,
        generator=generator or build_generator(settings),
        clock=clock,
        settings=settings,
        debounce=debounce,
    )
