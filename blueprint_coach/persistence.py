"""
Session stores.

- LocalSessionStore: durable local JSON files, one per session, written
  atomically. Always available; written synchronously on every save.
- SyncQueue: durable FIFO of remote writes that exhausted their retries.
  One entry per session (latest write wins), bounded size.
- RemoteStore / InMemoryRemoteStore: the asynchronous remote datastore
  interface and a dict-backed implementation for development and tests.
"""

import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

from blueprint_coach.contracts import SyncQueueEntry

logger = logging.getLogger(__name__)

_SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* atomically.

    Writes to a temporary file in the same directory, then renames
    (``os.replace``) into place, so a crash mid-write never leaves a
    partial file behind.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def validate_session_id(session_id: str) -> str:
    """
    Check a session id is safe to use as a file name.

    Raises:
        ValueError: If the id contains anything but letters, digits, '-' or '_'
    """
    if not isinstance(session_id, str) or not _SESSION_ID_PATTERN.match(session_id):
        raise ValueError(f"Invalid session id: {session_id!r}")
    return session_id


class LocalSessionStore:
    """
    Local durable session store.

    Layout:
        outputs/sessions/
            3f2a9c1e.json
            7b11d0aa.json
            sync_queue.json   (owned by SyncQueue)
    """

    SUFFIX = ".json"

    def __init__(self, base_dir: str = "outputs/sessions"):
        """
        Initialize store.

        Args:
            base_dir: Directory holding one JSON file per session
        """
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"LocalSessionStore initialized: {self.base_dir}")

    def _path(self, session_id: str) -> Path:
        return self.base_dir / f"{validate_session_id(session_id)}{self.SUFFIX}"

    def get(self, session_id: str) -> Optional[Dict[str, Any]]:
        """
        Read a stored record.

        Returns:
            dict or None: Raw record, None if the session was never stored

        Raises:
            ValueError: If the file exists but is not a JSON object
        """
        path = self._path(session_id)
        if not path.exists():
            return None
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ValueError(f"Unreadable session file {path.name}: {e}") from e
        if not isinstance(data, dict):
            raise ValueError(f"Session file {path.name} does not hold a JSON object")
        return data

    def set(self, session_id: str, record: Dict[str, Any]) -> None:
        path = self._path(session_id)
        _atomic_write_text(path, json.dumps(record, indent=2, ensure_ascii=False))
        logger.debug(f"Saved local record for {session_id}")

    def remove(self, session_id: str) -> bool:
        path = self._path(session_id)
        if not path.exists():
            return False
        path.unlink()
        logger.info(f"Removed local record for {session_id}")
        return True

    def list_ids(self) -> List[str]:
        """Session ids with a stored file, sorted."""
        return sorted(
            p.stem for p in self.base_dir.glob(f"*{self.SUFFIX}")
            if _SESSION_ID_PATTERN.match(p.stem) and p.name != SyncQueue.FILENAME
        )


class SyncQueue:
    """
    Durable FIFO of failed remote writes.

    Design:
    - One entry per session: enqueueing replaces the older payload and
      moves the entry to the back
    - Bounded: the oldest entry is dropped when full (its payload is
      still in the local store)
    - Every mutation rewrites the queue file atomically
    """

    FILENAME = "sync_queue.json"

    def __init__(self, base_dir: str = "outputs/sessions", max_size: int = 50):
        self.path = Path(base_dir) / self.FILENAME
        self.max_size = max_size
        self._entries: List[SyncQueueEntry] = self._load()
        logger.info(f"SyncQueue loaded with {len(self._entries)} entries")

    def __len__(self) -> int:
        return len(self._entries)

    def entries(self) -> List[SyncQueueEntry]:
        return list(self._entries)

    def get(self, session_id: str) -> Optional[SyncQueueEntry]:
        for entry in self._entries:
            if entry.session_id == session_id:
                return entry
        return None

    def enqueue(self, entry: SyncQueueEntry) -> Optional[SyncQueueEntry]:
        """
        Append an entry (latest write wins per session).

        Returns:
            SyncQueueEntry or None: Entry dropped to respect max_size
        """
        self._entries = [e for e in self._entries if e.session_id != entry.session_id]
        self._entries.append(entry)
        dropped = None
        if len(self._entries) > self.max_size:
            dropped = self._entries.pop(0)
            logger.warning(f"Sync queue full, dropped oldest entry for {dropped.session_id}")
        self._save()
        logger.info(f"Queued remote write for {entry.session_id} ({len(self._entries)} queued)")
        return dropped

    def update(self, entry: SyncQueueEntry) -> None:
        """Replace an entry in place (keeps its queue position)."""
        self._entries = [entry if e.session_id == entry.session_id else e for e in self._entries]
        self._save()

    def remove(self, session_id: str) -> bool:
        before = len(self._entries)
        self._entries = [e for e in self._entries if e.session_id != session_id]
        if len(self._entries) == before:
            return False
        self._save()
        return True

    def _load(self) -> List[SyncQueueEntry]:
        if not self.path.exists():
            return []
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                raw = json.load(f)
            return [SyncQueueEntry.from_dict(item) for item in raw]
        except (OSError, ValueError, KeyError, TypeError) as e:
            # A corrupt queue must not block startup; the local store still
            # holds every payload.
            logger.error(f"Discarding unreadable sync queue {self.path}: {e}")
            return []

    def _save(self) -> None:
        _atomic_write_text(
            self.path,
            json.dumps([e.to_dict() for e in self._entries], indent=2, ensure_ascii=False),
        )


class RemoteStore:
    """
    Remote datastore interface.

    Implementations raise PermissionError / PersistPermanentError for
    authorization failures and ConnectionError / TimeoutError /
    PersistTransientError for connectivity failures.
    """

    async def get(self, session_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def set(self, session_id: str, record: Dict[str, Any]) -> None:
        raise NotImplementedError


class InMemoryRemoteStore(RemoteStore):
    """
    Dict-backed remote store.

    Attributes:
        records: session id -> last written record
        writes: (session id, record) in the order writes were applied
        online: When False every call raises ConnectionError
    """

    def __init__(self):
        self.records: Dict[str, Dict[str, Any]] = {}
        self.writes: List[tuple] = []
        self.online = True

    async def get(self, session_id: str) -> Optional[Dict[str, Any]]:
        if not self.online:
            raise ConnectionError("remote store offline")
        record = self.records.get(session_id)
        return json.loads(json.dumps(record)) if record is not None else None

    async def set(self, session_id: str, record: Dict[str, Any]) -> None:
        if not self.online:
            raise ConnectionError("remote store offline")
        stored = json.loads(json.dumps(record))
        self.records[session_id] = stored
        self.writes.append((session_id, stored))
