"""
Session Runtime - Drives the state machine and executes its side effects

Responsibilities:
- Own the in-memory SessionState of each open session
- Feed caller operations to the state machine as events
- Execute side-effect commands: persistence, generation, notifications
- Match generation responses to requests by token (stale ones dropped)
- Create, load (with recovery) and reset sessions

NOT responsible for:
- Transition rules (ConversationStateMachine)
- Write ordering, retries, sync queue (PersistenceCoordinator)
- Record repair (RecoveryValidator)

Design principles:
- A transition and its command dispatch run without suspending, so
  commits apply in dispatch order
- Persistence is optimistic: state updates first, writes flush in
  background tasks
- Generation never blocks progress: failure or timeout means the
  deterministic text is shown
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Set

from blueprint_coach.commands import (
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
from blueprint_coach.contracts import Provenance, Stage
from blueprint_coach.core.persistence_coordinator import DrainReport, PersistenceCoordinator
from blueprint_coach.core.recovery_validator import RecoveryValidator
from blueprint_coach.core.session_state import SessionState, build_snapshot
from blueprint_coach.core.state_machine import ConversationStateMachine
from blueprint_coach.errors import GenerationUnavailable, PersistTransientError, ValidationError
from blueprint_coach.persistence import validate_session_id
from blueprint_coach.results import Outcome, Rejection, TransitionResult
from blueprint_coach.settings import CoachSettings
from blueprint_coach.utils.clock import Clock, SystemClock
from blueprint_coach.utils.generators import Generator, TemplateGenerator
from blueprint_coach.utils.helpers import generate_request_token, generate_session_id
from blueprint_coach.utils.notifications import NotificationChannel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TurnResponse:
    """
    What a caller gets back from one operation.

    Attributes:
        outcome: Transition outcome
        prompt: Text to show (generated, or the deterministic fallback)
        snapshot: Render-ready session view after the transition
        rejection: Set when the event was rejected
        generated: True if prompt came from the generator
    """
    outcome: Outcome
    prompt: str
    snapshot: Dict[str, Any]
    rejection: Optional[Rejection] = None
    generated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        rejection = None
        if self.rejection is not None:
            rejection = {
                "reason": self.rejection.reason,
                "event_type": self.rejection.event_type,
                "missing": list(self.rejection.missing),
            }
        return {
            "outcome": self.outcome.value,
            "prompt": self.prompt,
            "snapshot": self.snapshot,
            "rejection": rejection,
            "generated": self.generated,
        }


class GuidedSession:
    """
    One open authoring session.

    Callers use submit_input / resolve_confirmation / request_stage_jump /
    reset and read snapshot(). Each call applies one event synchronously,
    dispatches the resulting commands, then (by default) waits for the
    generated prompt.
    """

    def __init__(
        self,
        state: SessionState,
        machine: ConversationStateMachine,
        coordinator: PersistenceCoordinator,
        generator: Optional[Generator] = None,
        clock: Optional[Clock] = None,
        settings: Optional[CoachSettings] = None,
        notifications: Optional[NotificationChannel] = None,
        debounce: bool = True
    ):
        """
        Initialize session.

        Args:
            state: Starting state (fresh or recovered)
            machine: State machine
            coordinator: Persistence coordinator shared by all sessions
            generator: Generation collaborator (defaults to deterministic text)
            clock: Time source for event timestamps and generation timeout
            settings: Runtime settings
            notifications: Channel for notices
            debounce: Coalesce rapid edits into one remote write

        Raises:
            TypeError: If machine or coordinator has the wrong type
        """
        if not isinstance(machine, ConversationStateMachine):
            raise TypeError(f"machine must be a ConversationStateMachine, got {type(machine).__name__}")
        if not isinstance(coordinator, PersistenceCoordinator):
            raise TypeError(f"coordinator must be a PersistenceCoordinator, got {type(coordinator).__name__}")
        if generator is not None and not hasattr(generator, "generate"):
            raise TypeError("generator must have generate() method")

        self.machine = machine
        self.coordinator = coordinator
        self.generator = generator or TemplateGenerator()
        self.clock = clock or SystemClock()
        self.settings = settings or CoachSettings()
        self.notifications = notifications or coordinator.notifications
        self.debounce = debounce

        self._state = state
        self._prompt = machine.initial_prompt(state)
        self._generation_token: Optional[str] = None
        self._generation_task: Optional[asyncio.Task] = None
        self._persist_tasks: Set[asyncio.Task] = set()

    # =========================================================================
    # Caller operations
    # =========================================================================

    @property
    def session_id(self) -> str:
        return self._state.session_id

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def prompt(self) -> str:
        """Latest display text (updated when a current generation lands)."""
        return self._prompt

    async def submit_input(
        self,
        text: str,
        provenance: Provenance = Provenance.USER,
        wait: bool = True
    ) -> TurnResponse:
        return await self.dispatch(UserInput(text=text, at=self.clock.now(), provenance=provenance), wait)

    async def resolve_confirmation(self, accept: bool, wait: bool = True) -> TurnResponse:
        return await self.dispatch(ResolveConfirmation(accept=accept, at=self.clock.now()), wait)

    async def request_stage_jump(self, target: Stage, wait: bool = True) -> TurnResponse:
        return await self.dispatch(RequestStageJump(target=target, at=self.clock.now()), wait)

    async def reset(self, wait: bool = True) -> TurnResponse:
        """
        Return to the empty initial state (same session id).

        Earlier in-flight writes are ignored and a pending debounced write
        is cancelled before the fresh state is saved.
        """
        self.coordinator.invalidate(self.session_id, discard_queued=True)
        return await self.dispatch(ResetSession(at=self.clock.now()), wait)

    def snapshot(self) -> Dict[str, Any]:
        snapshot = build_snapshot(self._state, self.machine.graph)
        snapshot["prompt"] = self._prompt
        snapshot["local_only"] = self.coordinator.is_local_only(self.session_id)
        return snapshot

    async def dispatch(self, event: Event, wait: bool = True) -> TurnResponse:
        """
        Apply one event and run its side effects.

        Args:
            event: Event for the state machine
            wait: Wait for the generated prompt before returning

        Returns:
            TurnResponse
        """
        result = self.machine.transition(self._state, event)
        return await self.apply(result, wait)

    async def flush(self) -> None:
        """Push debounced writes now and wait for every outstanding write."""
        await self.coordinator.flush_debounced(self.session_id)
        pending = list(self._persist_tasks)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def close(self) -> None:
        """Cancel generation in flight (writes continue in the background)."""
        if self._generation_task is not None and not self._generation_task.done():
            self._generation_task.cancel()
        self._generation_token = None

    # =========================================================================
    # Command execution
    # =========================================================================

    async def apply(self, result: TransitionResult, wait: bool = True) -> TurnResponse:
        """Adopt a transition result and execute its commands."""
        self._state = result.state
        self._prompt = result.prompt
        generation = self._execute(result.commands)

        prompt = result.prompt
        generated = False
        if wait and generation is not None:
            await asyncio.wait({generation})
            if not generation.cancelled() and generation.result() is not None:
                prompt = generation.result()
                generated = prompt != result.prompt

        return TurnResponse(
            outcome=result.outcome,
            prompt=prompt,
            snapshot=self.snapshot(),
            rejection=result.rejection,
            generated=generated,
        )

    def _execute(self, commands: Iterable[SideEffect]) -> Optional[asyncio.Task]:
        """Run commands in order. Returns the generation task, if any."""
        generation = None
        for command in commands:
            if isinstance(command, PersistSnapshot):
                self._persist(command)
            elif isinstance(command, Notify):
                self.notifications.emit(command)
            elif isinstance(command, RequestGeneration):
                generation = self._request_generation(command)
            else:
                logger.error(f"Unknown side-effect command: {type(command).__name__}")
        return generation

    def _persist(self, command: PersistSnapshot) -> None:
        payload = command.payload()
        try:
            if self.debounce:
                task = self.coordinator.save_debounced(command.session_id, payload)
            else:
                task = asyncio.get_running_loop().create_task(
                    self.coordinator.save(command.session_id, payload)
                )
        except OSError as e:
            logger.error(f"Local save failed for {command.session_id}: {e}")
            self.notifications.emit(Notify(
                level=LEVEL_WARNING,
                code=PersistTransientError.code,
                message="Could not save on this device; recent changes may be lost if the page closes.",
            ))
            return
        self._persist_tasks.add(task)
        task.add_done_callback(self._on_persist_done)

    def _on_persist_done(self, task: asyncio.Task) -> None:
        self._persist_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background save for {self.session_id} failed: {error!r}")

    def _request_generation(self, request: RequestGeneration) -> asyncio.Task:
        """Supersede any generation in flight and start a new one."""
        if self._generation_task is not None and not self._generation_task.done():
            self._generation_task.cancel()
            logger.debug(f"Generation superseded for {self.session_id}")
        token = generate_request_token()
        self._generation_token = token
        self._generation_task = asyncio.get_running_loop().create_task(self._generate(token, request))
        return self._generation_task

    async def _generate(self, token: str, request: RequestGeneration) -> Optional[str]:
        """
        Produce display text for one request.

        Returns:
            Generated text, the fallback text on failure, or None if the
            request was superseded before it resolved
        """
        try:
            text = await self._generate_with_timeout(request)
        except GenerationUnavailable as e:
            logger.info(f"Generation unavailable ({request.purpose}), using fallback: {e}")
            text = request.fallback_text
        except Exception as e:
            logger.warning(f"Generation failed ({request.purpose}), using fallback: {e!r}")
            text = request.fallback_text

        if token != self._generation_token:
            logger.debug(f"Discarding stale generation for {self.session_id}")
            return None
        self._prompt = text
        return text

    async def _generate_with_timeout(self, request: RequestGeneration) -> str:
        """Race the generator against the injected clock."""
        generation = asyncio.ensure_future(self.generator.generate(request))
        timer = asyncio.ensure_future(self.clock.sleep(self.settings.generation_timeout_seconds))
        try:
            done, _ = await asyncio.wait({generation, timer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            timer.cancel()
            if not generation.done():
                generation.cancel()
        if generation not in done:
            raise GenerationUnavailable(
                f"no response within {self.settings.generation_timeout_seconds}s"
            )
        return generation.result()


class SessionService:
    """
    Factory and registry for open sessions.

    Holds the collaborators shared by every session (machine, coordinator,
    validator, generator) and the sessions currently in memory.
    """

    def __init__(
        self,
        machine: ConversationStateMachine,
        coordinator: PersistenceCoordinator,
        validator: Optional[RecoveryValidator] = None,
        generator: Optional[Generator] = None,
        clock: Optional[Clock] = None,
        settings: Optional[CoachSettings] = None,
        debounce: bool = True
    ):
        self.machine = machine
        self.coordinator = coordinator
        self.clock = clock or coordinator.clock
        self.validator = validator or RecoveryValidator(clock=self.clock)
        self.generator = generator
        self.settings = settings or coordinator.settings
        self.notifications = coordinator.notifications
        self.debounce = debounce
        self._sessions: Dict[str, GuidedSession] = {}

    def get(self, session_id: str) -> GuidedSession:
        """
        Raises:
            KeyError: If the session is not open
        """
        if session_id not in self._sessions:
            raise KeyError(f"Session not open: {session_id}")
        return self._sessions[session_id]

    def open_ids(self) -> List[str]:
        return list(self._sessions)

    def create(self, session_id: Optional[str] = None) -> GuidedSession:
        """Open a new empty session (state is saved on its first change)."""
        session_id = validate_session_id(session_id or generate_session_id())
        state = SessionState.initial(session_id, self.clock.now())
        logger.info(f"Session created: {session_id}")
        return self._replace(state)

    async def load(self, session_id: str) -> GuidedSession:
        """
        Open a stored session.

        Reads the local and remote copies, validates both and keeps the
        valid one with the higher revision. A repaired record is written
        back locally. When no copy is usable the session starts fresh with
        a notice.

        Args:
            session_id: Session to load

        Returns:
            GuidedSession

        Raises:
            ValueError: If session_id is not a valid identifier
        """
        validate_session_id(session_id)
        candidates = []
        rejected = 0

        try:
            local = self.coordinator.local_store.get(session_id)
        except ValueError as e:
            logger.warning(f"Local copy of {session_id} unreadable: {e}")
            local = None
            rejected += 1
        if local is not None:
            candidates.append(("local", local))

        try:
            remote = await self.coordinator.remote_store.get(session_id)
        except Exception as e:
            logger.warning(f"Remote copy of {session_id} unavailable: {e!r}")
            remote = None
        if remote is not None:
            candidates.append(("remote", remote))

        best = None
        for source, raw in candidates:
            result = self.validator.validate(raw, session_id=session_id)
            if not result.ok:
                logger.warning(f"{source} copy of {session_id} rejected: {result.errors}")
                rejected += 1
                continue
            if best is None or result.sanitized["revision"] > best[1].sanitized["revision"]:
                best = (source, result)

        if best is None:
            if rejected:
                reason = ValidationError(f"Saved progress for {session_id} could not be recovered")
                self.notifications.emit(Notify(
                    level=LEVEL_WARNING,
                    code=reason.code,
                    message=f"{reason} Starting a fresh blueprint.",
                ))
            else:
                logger.info(f"No stored copy of {session_id}, starting fresh")
            return self._replace(SessionState.initial(session_id, self.clock.now()))

        source, result = best
        if result.repaired:
            logger.info(f"Recovered {session_id} from {source} with repairs: {result.warnings}")
            self.coordinator.local_store.set(session_id, result.sanitized)

        state = SessionState.from_record(result.sanitized)
        reconciled = self.machine.reconcile(state, self.clock.now())
        session = self._replace(state)
        await session.apply(reconciled, wait=False)
        logger.info(f"Session loaded: {session_id} (revision {session.state.revision}, from {source})")
        return session

    async def drain_sync_queue(self) -> DrainReport:
        return await self.coordinator.drain_sync_queue()

    async def close_all(self) -> None:
        """Flush and close every open session."""
        for session in list(self._sessions.values()):
            await session.flush()
            session.close()
        self._sessions.clear()

    def _replace(self, state: SessionState) -> GuidedSession:
        """Open state in place of any session already open under the same id."""
        previous = self._sessions.pop(state.session_id, None)
        if previous is not None:
            previous.close()
            self.coordinator.invalidate(state.session_id)
        return self._open(state)

    def _open(self, state: SessionState) -> GuidedSession:
        session = GuidedSession(
            state=state,
            machine=self.machine,
            coordinator=self.coordinator,
            generator=self.generator,
            clock=self.clock,
            settings=self.settings,
            notifications=self.notifications,
            debounce=self.debounce,
        )
        self._sessions[state.session_id] = session
        return session
