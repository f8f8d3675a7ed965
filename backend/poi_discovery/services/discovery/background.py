# backend/poi_discovery/services/discovery/background.py
"""
Detached background work for write-backs.

Jobs submitted here run on their own tasks, outside the cancellation
scope of the request that submitted them. Failures never reach the
submitter: each one becomes a PersistenceWarning that is logged, counted
and kept in a short history for inspection.
"""
from __future__ import annotations

import asyncio
from collections import deque
import inspect
import logging
from typing import Any, Callable, Deque, Dict, List, Optional, Set

from poi_discovery.core.exceptions import PersistenceWarning
from poi_discovery.services.discovery.metrics import record_persistence_failure

logger = logging.getLogger(__name__)

ErrorListener = Callable[[PersistenceWarning], None]


class BackgroundTaskQueue:
    """
    Owns detached write-back tasks and their error channel.

    Sync callables run in a worker thread (asyncio.to_thread); coroutine
    functions run directly on the loop.
    """

    def __init__(self, max_error_history: int = 50) -> None:
        self._tasks: Set["asyncio.Task[Any]"] = set()
        self._errors: Deque[PersistenceWarning] = deque(maxlen=max_error_history)
        self._listeners: List[ErrorListener] = []
        self._submitted = 0
        self._completed = 0
        self._failed = 0
        self._closed = False

    def add_error_listener(self, listener: ErrorListener) -> None:
        self._listeners.append(listener)

    def submit(
        self, operation: str, func: Callable[..., Any], *args: Any, **kwargs: Any
    ) -> "asyncio.Task[Any]":
        """Schedule func(*args, **kwargs) and return immediately."""
        if self._closed:
            raise RuntimeError("BackgroundTaskQueue is closed")
        task = asyncio.create_task(
            self._run(operation, func, *args, **kwargs), name=f"background:{operation}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self._submitted += 1
        return task

    async def _run(
        self, operation: str, func: Callable[..., Any], *args: Any, **kwargs: Any
    ) -> Any:
        try:
            if inspect.iscoroutinefunction(func):
                result = await func(*args, **kwargs)
            else:
                result = await asyncio.to_thread(func, *args, **kwargs)
        except Exception as exc:
            self._report(PersistenceWarning(operation, exc))
            return None
        self._completed += 1
        return result

    def _report(self, warning: PersistenceWarning) -> None:
        self._failed += 1
        self._errors.append(warning)
        record_persistence_failure(warning.operation)
        logger.warning(f"Background {warning.operation} failed: {warning.cause}")
        for listener in self._listeners:
            try:
                listener(warning)
            except Exception as e:
                logger.debug(f"Background error listener raised: {e}")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    @property
    def errors(self) -> List[PersistenceWarning]:
        return list(self._errors)

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for outstanding jobs. Returns False if the timeout hit first.
        """
        if not self._tasks:
            return True
        _, pending = await asyncio.wait(list(self._tasks), timeout=timeout)
        if pending:
            logger.warning(f"{len(pending)} background jobs still running after drain timeout")
        return not pending

    async def close(self, timeout: Optional[float] = 10.0) -> None:
        """Stop accepting jobs and wait for the ones in flight."""
        self._closed = True
        await self.drain(timeout)

    def stats(self) -> Dict[str, Any]:
        return {
            "pending": self.pending,
            "submitted": self._submitted,
            "completed": self._completed,
            "failed": self._failed,
            "recent_errors": [
                {"operation": w.operation, "error": str(w.cause)} for w in list(self._errors)[-5:]
            ],
        }
