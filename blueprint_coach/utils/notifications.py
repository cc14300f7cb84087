"""
Non-blocking notification channel.

Persistence and generation problems are reported here instead of being
raised. Producers call emit() from the event loop; callers poll drain()
from any thread (the HTTP API runs in Flask's request threads).
"""

import logging
from collections import deque
from typing import Deque, List

from blueprint_coach.commands import LEVEL_ERROR, LEVEL_WARNING, Notify

logger = logging.getLogger(__name__)


class NotificationChannel:
    """
    Notice emitter with an unread buffer and a bounded history.

    Design:
    - Unread notices are handed out exactly once by drain()
    - deque append/popleft are atomic, so emit() and drain() may run on
      different threads without losing a notice
    - History keeps the latest notices for diagnostics, read or not
    """

    def __init__(self, history_size: int = 200, max_unread: int = 500):
        self._history: Deque[Notify] = deque(maxlen=history_size)
        self._unread: Deque[Notify] = deque(maxlen=max_unread)

    def emit(self, notice: Notify) -> None:
        if notice.level == LEVEL_ERROR:
            logger.error(f"[{notice.code}] {notice.message}")
        elif notice.level == LEVEL_WARNING:
            logger.warning(f"[{notice.code}] {notice.message}")
        else:
            logger.info(f"[{notice.code}] {notice.message}")

        self._history.append(notice)
        self._unread.append(notice)

    def recent(self) -> List[Notify]:
        return list(self._history)

    def drain(self) -> List[Notify]:
        """Return every unread notice, oldest first, and mark them read."""
        notices = []
        while True:
            try:
                notices.append(self._unread.popleft())
            except IndexError:
                return notices
