from __future__ import annotations

import logging
import threading

from reconciler.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class OperatorError(RuntimeError):
    """Base class for errors raised by the reconciliation core."""


class ConfigError(OperatorError):
    """Raised when the operator configuration cannot be resolved."""


class ImageManifestError(ConfigError):
    """Raised when the image manifest file is unreadable or malformed."""


class ApplyError(OperatorError):
    """Raised when a create-or-update call against the cluster fails.

    The message names the operation, resource kind and object so a log line is
    actionable on its own; the originating ``ApiException`` is chained.
    """

    def __init__(self, operation: str, kind: str, name: str, reason: object) -> None:
        super().__init__(f"failed to {operation} {kind} {name}: {reason}")
        self.operation = operation
        self.kind = kind
        self.name = name


class StageError(OperatorError):
    """A sync pipeline stage failed; ``__cause__`` is the stage's own error."""

    def __init__(self, stage: str, cause: BaseException) -> None:
        super().__init__(f"sync stage {stage} failed: {cause}")
        self.stage = stage
        self.cause = cause


class BootstrapError(OperatorError):
    """The bootstrap convergence loop cannot complete."""


class BootstrapConfigError(BootstrapError):
    """Configuration resolution failed during a bootstrap tick."""


class BootstrapTimeout(BootstrapError):
    """The bootstrap deadline passed before every milestone was reached."""


class ErrorReporter:
    """Process-wide sink for errors that are no longer retried.

    Dropped reconciliation keys end up here so persistent failures stay
    visible in logs and metrics even though the queue stopped retrying them.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or LOGGER
        self._lock = threading.Lock()
        self._reported = 0

    @property
    def reported(self) -> int:
        with self._lock:
            return self._reported

    def handle_error(self, err: BaseException) -> None:
        with self._lock:
            self._reported += 1
        METRICS.reported_errors_total.inc()
        self.logger.error(
            "Observed a reconciliation error: %s",
            err,
            exc_info=(type(err), err, err.__traceback__),
        )


ERROR_REPORTER = ErrorReporter()
