"""
Fire-and-forget dispatch of notifications and other best-effort work.
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Dict, Optional, Set

from orderflow.services.base.base_service import BaseService
from orderflow.services.base.capabilities import NotificationPort


class BackgroundDispatcher(BaseService):
    """
    Runs best-effort callables on a small thread pool.

    Submissions are never awaited by the caller. Failures are logged and
    swallowed here, which is the only place that happens.
    """

    def __init__(self, max_workers: int = 2, thread_name_prefix: str = "orderflow-dispatch"):
        super().__init__()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=thread_name_prefix)
        self._pending: Set[Future] = set()
        self._lock = threading.Lock()

    def submit(self, label: str, func: Callable[..., Any], *args, **kwargs) -> Future:
        future = self._executor.submit(func, *args, **kwargs)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(lambda f: self._on_done(label, f))
        return future

    def _on_done(self, label: str, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

        exc = future.exception()
        if exc is not None:
            self._logger.error(
                f"Background task failed: {label}",
                exc_info=(type(exc), exc, exc.__traceback__),
                extra={"task": label, "exception_type": type(exc).__name__},
            )

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait for pending work; returns True when nothing is left running."""
        with self._lock:
            pending = set(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait_for_pending: bool = True) -> None:
        self._executor.shutdown(wait=wait_for_pending)


class NotificationDispatcher(BaseService):
    """
    Sends templated notifications through the notification capability
    without blocking the caller.
    """

    def __init__(self, channel: NotificationPort, dispatcher: BackgroundDispatcher):
        super().__init__()
        self.channel = channel
        self.dispatcher = dispatcher

    def send(self, target: str, template_key: str, params: Dict[str, Any]) -> None:
        self._logger.debug(
            f"Notification queued: {template_key} to {target}",
            extra={"target": target, "template_key": template_key},
        )
        self.dispatcher.submit(
            f"notify:{template_key}",
            self.channel.notify,
            target,
            template_key,
            dict(params),
        )
