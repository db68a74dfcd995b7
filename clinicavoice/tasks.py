"""Detached background work.

Side effects such as invitation emails or medical analysis run after the
primary operation has already succeeded.  They are submitted here and never
joined; failures are logged and counted, not raised to the caller.
"""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Optional

import structlog

from clinicavoice.observability import DETACHED_TASK_FAILURES

logger = structlog.get_logger(__name__)


class DetachedTaskRunner:
    """Fire-and-forget task submission backed by a thread pool.

    ``inline=True`` runs each task synchronously in the caller's thread,
    which keeps tests deterministic while preserving the swallow-and-log
    failure policy.
    """

    def __init__(self, max_workers: int = 4, inline: bool = False) -> None:
        self.inline = inline
        self._executor: Optional[ThreadPoolExecutor] = None
        if not inline:
            self._executor = ThreadPoolExecutor(
                max_workers=max_workers, thread_name_prefix="clinicavoice-task"
            )

    def submit(self, name: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        if self._executor is None:
            try:
                func(*args, **kwargs)
            except Exception:
                DETACHED_TASK_FAILURES.labels(name).inc()
                logger.exception("detached_task_failed", task=name)
            return
        future = self._executor.submit(func, *args, **kwargs)
        future.add_done_callback(lambda fut: self._log_outcome(name, fut))

    @staticmethod
    def _log_outcome(name: str, future: Future) -> None:
        exc = future.exception()
        if exc is None:
            logger.debug("detached_task_completed", task=name)
            return
        DETACHED_TASK_FAILURES.labels(name).inc()
        logger.error("detached_task_failed", task=name, exc_info=exc)

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)


__all__ = ["DetachedTaskRunner"]
