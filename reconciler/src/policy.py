from __future__ import annotations

import logging

from reconciler.src.errors import ERROR_REPORTER, ErrorReporter
from reconciler.src.metrics import METRICS
from reconciler.src.workqueue import RateLimitingQueue

# With the 5 ms base delay the requeues wait 5ms, 10ms, 20ms, 40ms, 80ms,
# 160ms, 320ms, 640ms, 1.3s, 2.6s, 5.1s, 10.2s, 20.4s, 41s, 82s.
MAX_RETRIES = 15


class RetryPolicy:
    """Decides what happens to a key after a sync attempt."""

    def __init__(
        self,
        queue: RateLimitingQueue,
        max_retries: int = MAX_RETRIES,
        reporter: ErrorReporter | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.queue = queue
        self.max_retries = max_retries
        self.reporter = reporter or ERROR_REPORTER
        self.logger = logger or logging.getLogger(__name__)

    def handle(self, err: BaseException | None, key: str) -> None:
        if err is None:
            # TODO: report the Available condition once operator status reporting exists.
            self.queue.forget(key)
            return

        if self.queue.num_requeues(key) < self.max_retries:
            self.logger.debug("Error syncing operator %s: %s", key, err)
            self.queue.add_rate_limited(key)
            return

        self.reporter.handle_error(err)
        self.logger.debug("Dropping operator %r out of the queue: %s", key, err)
        METRICS.dropped_keys_total.inc()
        self.queue.forget(key)
