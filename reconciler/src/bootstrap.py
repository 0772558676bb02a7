from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from reconciler.src import manifests
from reconciler.src.config import ConfigResolver, OperatorConfig
from reconciler.src.errors import BootstrapConfigError, BootstrapTimeout
from reconciler.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_TIMEOUT_SECONDS = 600.0


class PollTimeout(Exception):
    """The polled condition did not succeed before the deadline."""


def poll_until(
    condition: Callable[[], bool],
    interval: float,
    timeout: float,
    stop_event: threading.Event,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """Evaluate *condition* every *interval* seconds until it returns True.

    The first evaluation happens one interval after the call.  Returns True on
    success and False if *stop_event* fires.  Raises :class:`PollTimeout`
    once *timeout* has elapsed, so a never-succeeding condition gives up no
    later than ``timeout + interval``.  Exceptions from *condition* propagate.
    """
    deadline = clock() + timeout
    while True:
        if stop_event.wait(timeout=interval):
            return False
        if condition():
            return True
        if clock() >= deadline:
            raise PollTimeout(f"condition not met within {timeout}s")


@dataclass
class BootstrapState:
    cluster_created: bool = False
    machine_set_created: bool = False

    @property
    def complete(self) -> bool:
        return self.cluster_created and self.machine_set_created


class BootstrapLoop:
    """Creates the initial Cluster and MachineSet objects, retrying until a deadline.

    Each tick re-resolves the operator configuration, then works through the
    milestones in order.  A creation failure only ends the tick; the next
    tick resumes at the first milestone not yet reached.  Failing to resolve
    the configuration, or running out of time, raises a
    :class:`BootstrapError` for the caller to treat as fatal.
    """

    def __init__(
        self,
        resolver: ConfigResolver,
        create_cluster: Callable[[OperatorConfig], object],
        create_machine_set: Callable[[OperatorConfig], object],
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        logger: logging.Logger | None = None,
    ) -> None:
        if poll_interval <= 0:
            raise ValueError("poll_interval must be > 0")
        if timeout <= 0:
            raise ValueError("timeout must be > 0")
        self.resolver = resolver
        self.create_cluster = create_cluster
        self.create_machine_set = create_machine_set
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.logger = logger or LOGGER

    def _attempt(self, state: BootstrapState) -> bool:
        METRICS.bootstrap_attempts_total.inc()
        try:
            config = self.resolver.resolve()
            # Rendering both objects up front reports malformed fields such as
            # replicas as configuration errors instead of creation retries.
            manifests.cluster_object(config)
            manifests.machine_set_object(config)
        except Exception as exc:
            raise BootstrapConfigError(f"error resolving operator config: {exc}") from exc
        self.logger.info("Images %s", dict(config.images))

        if not state.cluster_created:
            self.logger.info("Trying to deploy Cluster object")
            try:
                self.create_cluster(config)
            except Exception as exc:
                self.logger.info("Cannot create cluster, retrying: %s", exc)
                return False
            state.cluster_created = True
            METRICS.bootstrap_milestone.labels(milestone="cluster").set(1)
            self.logger.info("Created Cluster object")

        if not state.machine_set_created:
            self.logger.info("Trying to deploy MachineSet object")
            try:
                self.create_machine_set(config)
            except Exception as exc:
                self.logger.info("Cannot create MachineSet, retrying: %s", exc)
                return False
            state.machine_set_created = True
            METRICS.bootstrap_milestone.labels(milestone="machine_set").set(1)
            self.logger.info("Created MachineSet object successfully")

        return True

    def run(self, stop_event: threading.Event) -> BootstrapState:
        """Poll until both milestones are reached, *stop_event* fires, or time runs out.

        Returns the final state; it is incomplete only when stopped early.
        """
        state = BootstrapState()
        METRICS.bootstrap_milestone.labels(milestone="cluster").set(0)
        METRICS.bootstrap_milestone.labels(milestone="machine_set").set(0)
        try:
            finished = poll_until(
                lambda: self._attempt(state),
                interval=self.poll_interval,
                timeout=self.timeout,
                stop_event=stop_event,
            )
        except PollTimeout as exc:
            raise BootstrapTimeout(
                f"timed out after {self.timeout}s deploying machines "
                f"(cluster_created={state.cluster_created}, "
                f"machine_set_created={state.machine_set_created})"
            ) from exc

        if not finished:
            self.logger.info("Bootstrap stopped before completion")
        return state
