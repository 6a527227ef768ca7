"""
Fire-and-forget background task runner.

Summaries and title checks run on a thread pool so they never delay the
user-visible response. Tasks submitted for the same chat run one at a time,
so their metadata writes cannot interleave. Failures are logged here; they
never propagate to the caller.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable

logger = logging.getLogger(__name__)


@dataclass
class _ChatLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    # Tasks submitted for the chat that have not finished yet
    pending: int = 0


class BackgroundTaskRunner:
    """Thread-pool executor with per-chat serialization."""

    def __init__(self, max_workers: int = 4):
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="chat-context"
        )
        self._chat_locks: dict[str, _ChatLock] = {}
        self._locks_guard = threading.Lock()

    def _acquire(self, chat_id: str) -> threading.Lock:
        with self._locks_guard:
            entry = self._chat_locks.get(chat_id)
            if entry is None:
                entry = _ChatLock()
                self._chat_locks[chat_id] = entry
            entry.pending += 1
            return entry.lock

    def _release(self, chat_id: str):
        """Drop the chat's lock once its last pending task is done."""
        with self._locks_guard:
            entry = self._chat_locks.get(chat_id)
            if entry is None:
                return
            entry.pending -= 1
            if entry.pending <= 0:
                del self._chat_locks[chat_id]

    def submit(self, chat_id: str, name: str, fn: Callable, *args, **kwargs) -> Future:
        """Run ``fn(*args, **kwargs)`` in the background for ``chat_id``."""
        lock = self._acquire(chat_id)

        def _run():
            try:
                with lock:
                    return fn(*args, **kwargs)
            finally:
                self._release(chat_id)

        try:
            future = self._executor.submit(_run)
        except RuntimeError:
            self._release(chat_id)
            raise
        future.add_done_callback(lambda f: self._log_outcome(f, chat_id, name))
        return future

    @staticmethod
    def _log_outcome(future: Future, chat_id: str, name: str):
        if future.cancelled():
            logger.warning("Background task %s for chat %s was cancelled", name, chat_id)
            return
        error = future.exception()
        if error is not None:
            logger.error(
                "Background task %s failed for chat %s",
                name,
                chat_id,
                exc_info=(type(error), error, error.__traceback__),
            )
        else:
            logger.debug("Background task %s finished for chat %s", name, chat_id)

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait)
