"""Background polling of long-running work requests."""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """Named futures created at issue time and joined where needed.

    Errors raised by a task surface only when it is joined.
    """

    def __init__(self, max_workers: int = 4) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="devops-poll")
        self._futures: Dict[str, Future] = {}

    def submit(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        if name in self._futures:
            raise ValueError(f"Background task {name} already running")
        logger.debug("Starting background task %s", name)
        future = self._executor.submit(fn, *args, **kwargs)
        self._futures[name] = future
        return future

    def pending(self, name: str) -> bool:
        return name in self._futures

    def join(self, name: str, timeout: Optional[float] = None) -> Any:
        """Wait for `name` and return its result; re-raises its exception."""
        future = self._futures.pop(name)
        logger.debug("Joining background task %s", name)
        return future.result(timeout=timeout)

    def names(self) -> List[str]:
        return list(self._futures)

    def abandon(self) -> None:
        """Stop waiting for outstanding tasks; queued ones never start."""
        if self._futures:
            logger.info("Abandoning background tasks: %s", ", ".join(self._futures))
        self._futures.clear()
        self._executor.shutdown(wait=False, cancel_futures=True)

    def close(self) -> None:
        self._futures.clear()
        self._executor.shutdown(wait=True)
