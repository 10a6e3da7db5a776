"""In-process runner for the sync-background dispatch path.

Each submitted run executes on a worker thread with its own event loop.
Exceptions that escape the job are handed to the ``on_error`` callback,
which records the failure in the database so pollers can see it.
"""
from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

JobFactory = Callable[[], Awaitable[Any]]
ErrorCallback = Callable[[str, BaseException], None]


def _run_coroutine(factory: JobFactory) -> Any:
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(factory())
    finally:
        loop.close()
        asyncio.set_event_loop(None)


class BackgroundRunner:
    def __init__(self, max_workers: int = 2):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="batch-run")
        self._futures: dict[str, Future] = {}
        self._lock = threading.Lock()

    def submit(self, run_id: str, factory: JobFactory, on_error: ErrorCallback) -> Future:
        def _job() -> Any:
            try:
                return _run_coroutine(factory)
            except Exception as exc:
                logger.exception("Background run %s failed: %s", run_id[:8], exc)
                try:
                    on_error(run_id, exc)
                except Exception as cb_exc:
                    logger.exception("Error callback for run %s failed: %s", run_id[:8], cb_exc)
                raise
            finally:
                with self._lock:
                    self._futures.pop(run_id, None)

        with self._lock:
            future = self._executor.submit(_job)
            self._futures[run_id] = future
        logger.info("Run %s submitted to background runner", run_id[:8])
        return future

    def active_runs(self) -> list[str]:
        with self._lock:
            return list(self._futures)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


class InlineRunner(BackgroundRunner):
    """Runs the job synchronously in the caller's thread; used by tests."""

    def __init__(self):
        self._futures = {}
        self._lock = threading.Lock()

    def submit(self, run_id: str, factory: JobFactory, on_error: ErrorCallback) -> Future:
        future: Future = Future()
        try:
            future.set_result(_run_coroutine(factory))
        except Exception as exc:
            on_error(run_id, exc)
            future.set_exception(exc)
        return future

    def shutdown(self, wait: bool = True) -> None:
        return None
