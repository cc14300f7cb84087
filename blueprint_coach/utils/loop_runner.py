"""
Background event loop for synchronous callers.

Flask handlers are synchronous; the session runtime is asyncio. One
daemon thread runs one event loop for the whole process so that
debounce timers, retries and the per-session locks all live on a single
loop. Handlers submit coroutines with run() and block on the result.
"""

import asyncio
import logging
import threading
from typing import Any, Coroutine, Optional

logger = logging.getLogger(__name__)


class BackgroundLoop:
    """Event loop running forever in a daemon thread."""

    def __init__(self, name: str = "blueprint-coach-loop"):
        self.name = name
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._ready = threading.Event()

    def start(self) -> "BackgroundLoop":
        if self._thread is not None:
            return self

        def _runner() -> None:
            self.loop = asyncio.new_event_loop()
            asyncio.set_event_loop(self.loop)
            self.loop.call_soon(self._ready.set)
            try:
                self.loop.run_forever()
            finally:
                self.loop.close()

        self._thread = threading.Thread(target=_runner, name=self.name, daemon=True)
        self._thread.start()
        self._ready.wait()
        logger.info(f"Background event loop '{self.name}' started")
        return self

    def run(self, coro: Coroutine[Any, Any, Any], timeout: Optional[float] = None) -> Any:
        """
        Run a coroutine on the loop and wait for its result.

        Raises:
            RuntimeError: If the loop is not running
            Whatever the coroutine raises
        """
        if self.loop is None or not self.loop.is_running():
            coro.close()
            raise RuntimeError("Background loop is not running")
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        return future.result(timeout)

    def stop(self) -> None:
        if self.loop is None or self._thread is None:
            return
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout=5)
        self._thread = None
        logger.info(f"Background event loop '{self.name}' stopped")
