from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable

from reconciler.src.policy import RetryPolicy
from reconciler.src.workqueue import RateLimitingQueue

LOGGER = logging.getLogger(__name__)


def wait_for_cache_sync(
    stop_event: threading.Event,
    *synced: Callable[[], bool],
    poll_interval: float = 0.1,
) -> bool:
    """Block until every *synced* callable reports True; False if *stop_event* fires first."""
    while not stop_event.is_set():
        if all(check() for check in synced):
            return True
        stop_event.wait(timeout=poll_interval)
    return False


class WorkerPool:
    """Threads pulling keys off the queue and feeding them to the sync handler.

    The queue never hands the same key to two workers at once, so extra
    workers add no parallelism on the single operator key; they only keep
    the pool responsive should more keys ever exist.
    """

    def __init__(
        self,
        queue: RateLimitingQueue,
        sync_handler: Callable[[str], None],
        retry_policy: RetryPolicy,
        logger: logging.Logger | None = None,
    ) -> None:
        self.queue = queue
        self.sync_handler = sync_handler
        self.retry_policy = retry_policy
        self.logger = logger or LOGGER
        self._threads: list[threading.Thread] = []

    def process_next_work_item(self) -> bool:
        """Handle one key.  Returns False once the queue is shutting down."""
        key, shutting_down = self.queue.get()
        if shutting_down or key is None:
            return False

        try:
            err: Exception | None = None
            try:
                self.sync_handler(key)
            except Exception as exc:
                err = exc
            self.retry_policy.handle(err, key)
        finally:
            self.queue.done(key)
        return True

    def _worker(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                if not self.process_next_work_item():
                    return
            except Exception:
                # Only the retry policy itself can get here; keep the worker alive.
                self.logger.exception("Unexpected error in reconciliation worker")

    def run(
        self,
        workers: int,
        stop_event: threading.Event,
        synced: Iterable[Callable[[], bool]] = (),
    ) -> bool:
        """Run *workers* threads until *stop_event* fires.

        Returns False without starting any worker if the caches never synced.
        On stop the queue is shut down so idle workers unblock, and every
        worker is joined so in-flight syncs complete before returning.
        """
        if workers < 1:
            raise ValueError("workers must be >= 1")

        try:
            if not wait_for_cache_sync(stop_event, *synced):
                self.logger.error("Failed to sync caches")
                return False

            for index in range(workers):
                thread = threading.Thread(
                    target=self._worker,
                    args=(stop_event,),
                    name=f"{self.queue.name}-worker-{index}",
                    daemon=True,
                )
                self._threads.append(thread)
                thread.start()

            stop_event.wait()
            return True
        finally:
            self.queue.shut_down()
            for thread in self._threads:
                thread.join()
            self._threads.clear()
