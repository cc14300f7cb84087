"""
Persistence Coordinator - Exclusive, durable, retrying session writes

Responsibilities:
- Serialize writes per session id (FIFO per-key lock)
- Write the local durable store first, then the remote store
- Debounce rapid edits into one remote write
- Classify remote failures: permanent -> local-only mode, transient ->
  exponential backoff, then the durable sync queue
- Drain the sync queue on reconnect
- Ignore results of writes made before a session was reset

Design principles:
- The per-key lock is held for exactly one remote attempt; backoff
  sleeps happen outside it
- A write superseded by a newer applied write is dropped, so the
  remote record never moves backwards
- All timing goes through the injected Clock
"""

import asyncio
import inspect
import itertools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Set, TypeVar

from blueprint_coach.commands import LEVEL_INFO, LEVEL_WARNING, Notify
from blueprint_coach.contracts import SyncQueueEntry
from blueprint_coach.errors import PersistPermanentError, PersistTransientError
from blueprint_coach.persistence import LocalSessionStore, RemoteStore, SyncQueue
from blueprint_coach.settings import CoachSettings
from blueprint_coach.utils.clock import Clock, SystemClock
from blueprint_coach.utils.notifications import NotificationChannel

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Remote error codes reported by hosted datastores for auth failures
PERMANENT_ERROR_CODES = {"permission-denied", "unauthenticated", "unauthorized", "forbidden"}


class FailureKind(str, Enum):
    PERMANENT = "permanent"
    TRANSIENT = "transient"


class SaveStatus(str, Enum):
    """Final status of one save request."""
    SAVED = "saved"
    SUPERSEDED = "superseded"
    IGNORED = "ignored"
    LOCAL_ONLY = "local_only"
    QUEUED = "queued"


@dataclass(frozen=True)
class DrainReport:
    """
    Result of one sync queue drain.

    Attributes:
        attempted: Entries retried
        succeeded: Entries written and removed
        remaining: Entries still queued
    """
    attempted: int
    succeeded: int
    remaining: int


def classify_failure(error: BaseException) -> FailureKind:
    """
    Classify a remote failure.

    PermissionError, PersistPermanentError and errors carrying an auth
    error code are permanent. Everything else (connectivity, timeouts,
    unknown errors) is transient.
    """
    if isinstance(error, (PersistPermanentError, PermissionError)):
        return FailureKind.PERMANENT
    code = str(getattr(error, "code", "") or "").lower()
    if code in PERMANENT_ERROR_CODES:
        return FailureKind.PERMANENT
    if not isinstance(error, (PersistTransientError, ConnectionError, TimeoutError, OSError)):
        logger.warning(f"Unclassified persistence error treated as transient: {error!r}")
    return FailureKind.TRANSIENT


class PersistenceCoordinator:
    """
    Coordinates local and remote writes for many sessions on one event loop.
    """

    def __init__(
        self,
        local_store: LocalSessionStore,
        remote_store: RemoteStore,
        sync_queue: SyncQueue,
        clock: Optional[Clock] = None,
        settings: Optional[CoachSettings] = None,
        notifications: Optional[NotificationChannel] = None
    ):
        """
        Initialize coordinator.

        Args:
            local_store: Durable local store (written first, synchronously)
            remote_store: Remote datastore
            sync_queue: Durable queue for writes that exhausted retries
            clock: Time source for debounce and backoff
            settings: Retry and debounce settings
            notifications: Channel for degraded-mode notices

        Raises:
            TypeError: If remote_store lacks async get/set
        """
        for method in ("get", "set"):
            if not inspect.iscoroutinefunction(getattr(remote_store, method, None)):
                raise TypeError(f"remote_store must provide async '{method}()'")

        self.local_store = local_store
        self.remote_store = remote_store
        self.sync_queue = sync_queue
        self.clock = clock or SystemClock()
        self.settings = settings or CoachSettings()
        self.notifications = notifications or NotificationChannel()

        self._locks: Dict[str, asyncio.Lock] = {}
        self._seq = itertools.count(1)
        self._applied_seq: Dict[str, int] = {}
        self._epochs: Dict[str, int] = {}
        self._local_only: Set[str] = set()
        self._debounce_tasks: Dict[str, asyncio.Task] = {}
        self._debounce_payloads: Dict[str, Dict[str, Any]] = {}
        self._queued_notified: Set[str] = set()

    # =========================================================================
    # Exclusive execution
    # =========================================================================

    async def run_exclusive(self, session_id: str, op: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``op`` while holding the session's lock.

        Calls for the same id queue FIFO; a later call's body does not
        start until the earlier one settles (success or failure).

        Args:
            session_id: Lock key
            op: Zero-argument coroutine function

        Returns:
            Whatever ``op`` returns (exceptions propagate)
        """
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        async with lock:
            return await op()

    # =========================================================================
    # Saving
    # =========================================================================

    def is_local_only(self, session_id: str) -> bool:
        return session_id in self._local_only

    def epoch(self, session_id: str) -> int:
        return self._epochs.get(session_id, 0)

    async def save(self, session_id: str, payload: Dict[str, Any]) -> SaveStatus:
        """
        Save a record: local durable write, then remote write with retry.

        Args:
            session_id: Session identifier
            payload: JSON-safe record

        Returns:
            SaveStatus: final status of the remote side
        """
        self._write_local(session_id, payload)
        return await self._push_remote(session_id, payload)

    def save_debounced(self, session_id: str, payload: Dict[str, Any]) -> asyncio.Task:
        """
        Save locally now and schedule the remote write after the debounce
        window. A newer call inside the window cancels the pending timer.

        Returns:
            asyncio.Task: resolves to the SaveStatus of the remote write
                          (cancelled if superseded)
        """
        self._write_local(session_id, payload)
        previous = self._debounce_tasks.pop(session_id, None)
        if previous is not None and not previous.done():
            previous.cancel()
            logger.debug(f"Debounced save for {session_id} superseded")
        self._debounce_payloads[session_id] = payload
        task = asyncio.get_running_loop().create_task(self._debounced_push(session_id, payload))
        self._debounce_tasks[session_id] = task
        return task

    async def flush_debounced(self, session_id: Optional[str] = None) -> None:
        """Push pending debounced payloads immediately."""
        session_ids = [session_id] if session_id else list(self._debounce_tasks)
        for sid in session_ids:
            task = self._debounce_tasks.pop(sid, None)
            payload = self._debounce_payloads.pop(sid, None)
            if task is None or task.done() or payload is None:
                continue
            task.cancel()
            await self._push_remote(sid, payload)

    def invalidate(self, session_id: str, discard_queued: bool = False) -> None:
        """
        Session reset or superseded: results of earlier writes are ignored
        and any pending debounced write is cancelled.

        Args:
            session_id: Session identifier
            discard_queued: Also drop its queued payload (reset: the old
                            content must never reach the remote store)
        """
        self._epochs[session_id] = self.epoch(session_id) + 1
        task = self._debounce_tasks.pop(session_id, None)
        self._debounce_payloads.pop(session_id, None)
        if task is not None and not task.done():
            task.cancel()
        if discard_queued:
            if self.sync_queue.remove(session_id):
                logger.info(f"Discarded queued write for {session_id} from before reset")
            self._queued_notified.discard(session_id)
        logger.info(f"Persistence epoch for {session_id} is now {self._epochs[session_id]}")

    async def _debounced_push(self, session_id: str, payload: Dict[str, Any]) -> SaveStatus:
        await self.clock.sleep(self.settings.debounce_seconds)
        # Past the window: the write is now in flight and no longer cancellable
        if self._debounce_tasks.get(session_id) is asyncio.current_task():
            self._debounce_tasks.pop(session_id, None)
            self._debounce_payloads.pop(session_id, None)
        return await self._push_remote(session_id, payload)

    def _write_local(self, session_id: str, payload: Dict[str, Any]) -> None:
        self.local_store.set(session_id, payload)

    async def _push_remote(self, session_id: str, payload: Dict[str, Any]) -> SaveStatus:
        if session_id in self._local_only:
            return SaveStatus.LOCAL_ONLY

        seq = next(self._seq)
        epoch = self.epoch(session_id)
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.settings.retry_max_attempts + 1):
            try:
                status = await self.run_exclusive(
                    session_id, lambda: self._attempt(session_id, seq, epoch, payload)
                )
                return status
            except Exception as e:
                if epoch != self.epoch(session_id):
                    logger.info(f"Ignoring failed write for {session_id} from before reset")
                    return SaveStatus.IGNORED
                if classify_failure(e) == FailureKind.PERMANENT:
                    self._enter_local_only(session_id, e)
                    return SaveStatus.LOCAL_ONLY
                last_error = e
                logger.warning(
                    f"Remote write for {session_id} failed "
                    f"(attempt {attempt}/{self.settings.retry_max_attempts}): {e}"
                )
                if attempt < self.settings.retry_max_attempts:
                    await self.clock.sleep(self.settings.backoff_delay(attempt))

        if epoch != self.epoch(session_id):
            return SaveStatus.IGNORED
        if self._applied_seq.get(session_id, 0) > seq:
            return SaveStatus.SUPERSEDED

        error = PersistTransientError(f"retries exhausted: {last_error}")
        self.sync_queue.enqueue(SyncQueueEntry(
            session_id=session_id,
            payload=payload,
            attempts=self.settings.retry_max_attempts,
            next_retry_at=self.clock.now(),
            enqueued_at=self.clock.now(),
            last_error=str(last_error),
        ))
        if session_id not in self._queued_notified:
            self._queued_notified.add(session_id)
            self.notifications.emit(Notify(
                level=LEVEL_WARNING,
                code=error.code,
                message="Cloud save is delayed; your work is saved on this device and will sync when the connection returns.",
            ))
        return SaveStatus.QUEUED

    async def _attempt(self, session_id: str, seq: int, epoch: int, payload: Dict[str, Any]) -> SaveStatus:
        """One remote attempt (runs under the session lock)."""
        if epoch != self.epoch(session_id):
            return SaveStatus.IGNORED
        if self._applied_seq.get(session_id, 0) > seq:
            logger.debug(f"Dropping superseded write {seq} for {session_id}")
            return SaveStatus.SUPERSEDED

        await self.remote_store.set(session_id, payload)

        if epoch != self.epoch(session_id):
            return SaveStatus.IGNORED
        self._applied_seq[session_id] = seq
        if self.sync_queue.remove(session_id):
            logger.info(f"Newer write for {session_id} replaced its queued entry")
        self._queued_notified.discard(session_id)
        return SaveStatus.SAVED

    def _enter_local_only(self, session_id: str, error: BaseException) -> None:
        if session_id in self._local_only:
            return
        self._local_only.add(session_id)
        permanent = error if isinstance(error, PersistPermanentError) else PersistPermanentError(str(error))
        logger.error(f"Permanent persistence failure for {session_id}: {error}")
        self.notifications.emit(Notify(
            level=LEVEL_WARNING,
            code=permanent.code,
            message="Cloud save is unavailable for this session; continuing in local-only mode.",
        ))

    # =========================================================================
    # Sync queue
    # =========================================================================

    async def drain_sync_queue(self) -> DrainReport:
        """
        Retry queued writes in FIFO order.

        Entries are removed on success and left queued (attempts + 1,
        next retry time pushed back) on failure. An entry replaced or
        removed while the drain waited for the session lock is skipped,
        so a newer write is never overwritten by an older queued payload.

        Returns:
            DrainReport
        """
        attempted = 0
        succeeded = 0
        now = self.clock.now()

        for entry in self.sync_queue.entries():
            if entry.session_id in self._local_only or entry.next_retry_at > now:
                continue
            attempted += 1
            epoch = self.epoch(entry.session_id)
            try:
                written = await self.run_exclusive(
                    entry.session_id,
                    lambda entry=entry, epoch=epoch: self._drain_entry(entry, epoch),
                )
            except Exception as e:
                if classify_failure(e) == FailureKind.PERMANENT:
                    self._enter_local_only(entry.session_id, e)
                logger.warning(f"Queued write for {entry.session_id} failed again: {e}")
                if not self._is_current(entry):
                    continue
                attempts = entry.attempts + 1
                self.sync_queue.update(SyncQueueEntry(
                    session_id=entry.session_id,
                    payload=entry.payload,
                    attempts=attempts,
                    next_retry_at=now + self.settings.backoff_delay(attempts),
                    enqueued_at=entry.enqueued_at,
                    last_error=str(e),
                ))
                continue

            if not written:
                continue
            self._queued_notified.discard(entry.session_id)
            succeeded += 1
            logger.info(f"Queued write for {entry.session_id} synced")

        report = DrainReport(attempted=attempted, succeeded=succeeded, remaining=len(self.sync_queue))
        if succeeded:
            self.notifications.emit(Notify(
                level=LEVEL_INFO,
                code="sync_restored",
                message=f"Synced {succeeded} delayed save(s).",
            ))
        return report

    def _is_current(self, entry: SyncQueueEntry) -> bool:
        """True if ``entry`` is still the queued write for its session."""
        current = self.sync_queue.get(entry.session_id)
        return (
            current is not None
            and current.enqueued_at == entry.enqueued_at
            and current.payload == entry.payload
        )

    async def _drain_entry(self, entry: SyncQueueEntry, epoch: int) -> bool:
        """Write one queued payload (runs under the session lock)."""
        if epoch != self.epoch(entry.session_id) or not self._is_current(entry):
            logger.debug(f"Queued write for {entry.session_id} was superseded, skipping")
            return False

        await self.remote_store.set(entry.session_id, entry.payload)

        if self._is_current(entry):
            self.sync_queue.remove(entry.session_id)
        return epoch == self.epoch(entry.session_id)
