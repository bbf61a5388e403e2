"""
Background dispatch for learning, usage and analytics writes.

The response path never waits on these tasks. A failing task is logged and
dropped; it never reaches the caller.
"""

import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any

import structlog

logger = structlog.get_logger()


class BackgroundDispatcher:
    """
    Thread-pool runner for fire-and-forget work.

    Args:
        max_workers: Pool size
    """

    def __init__(self, max_workers: int = 2):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="wallet-query")
        self._pending: set[Future] = set()
        self._lock = threading.Lock()

    def submit(self, fn: Callable[..., Any], *args: Any, task_name: str | None = None, **kwargs: Any) -> Future:
        name = task_name or getattr(fn, "__name__", "task")

        def run() -> Any:
            try:
                return fn(*args, **kwargs)
            except Exception as e:
                logger.warning("background_task_failed", task=name, error_type=type(e).__name__, error=str(e))
                return None

        future = self._executor.submit(run)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def drain(self, timeout: float | None = None) -> bool:
        """
        Wait for queued tasks.

        Returns:
            True if every task finished within the timeout
        """
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        if not_done:
            logger.warning("background_drain_timeout", pending=len(not_done), timeout=timeout)
        return not not_done

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)


class InlineDispatcher(BackgroundDispatcher):
    """Runs tasks on the calling thread; used by scripts and tests."""

    def __init__(self) -> None:
        pass

    def submit(self, fn: Callable[..., Any], *args: Any, task_name: str | None = None, **kwargs: Any) -> Future:
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            logger.warning(
                "background_task_failed",
                task=task_name or getattr(fn, "__name__", "task"),
                error_type=type(e).__name__,
                error=str(e),
            )
            future.set_result(None)
        return future

    def drain(self, timeout: float | None = None) -> bool:
        return True

    def shutdown(self, wait: bool = True) -> None:
        pass
