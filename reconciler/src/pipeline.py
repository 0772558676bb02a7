from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any, TypeVar

from reconciler.src import stages
from reconciler.src.config import ConfigResolver, OperatorConfig, OperatorSettings
from reconciler.src.errors import StageError
from reconciler.src.kube import KubeClients
from reconciler.src.metrics import METRICS

T = TypeVar("T")

STAGE_CRDS = "custom-resource-definitions"
STAGE_OPERATOR_CONFIG = "operator-config"
STAGE_IMAGE_DETAILS = "image-details"
STAGE_CLUSTER_API_SERVER = "cluster-api-server"
STAGE_CLUSTER_API_CONTROLLER = "cluster-api-controller"
STAGE_SYNC_ALL = "sync-all"

STAGES = (
    STAGE_CRDS,
    STAGE_OPERATOR_CONFIG,
    STAGE_IMAGE_DETAILS,
    STAGE_CLUSTER_API_SERVER,
    STAGE_CLUSTER_API_CONTROLLER,
    STAGE_SYNC_ALL,
)


class SyncPipeline:
    """Runs the ordered convergence stages for one reconciliation key.

    Stages run strictly in the order of :data:`STAGES`.  The first failure
    stops the run and is raised as a :class:`StageError` chained from the
    stage's own exception; stages that already succeeded are left in place
    and simply re-applied on the next attempt.
    """

    def __init__(
        self,
        clients: KubeClients,
        settings: OperatorSettings,
        resolver: ConfigResolver | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.clients = clients
        self.settings = settings
        self.resolver = resolver or ConfigResolver(clients.core, settings)
        self.logger = logger or logging.getLogger(__name__)

    def _run_stage(self, stage: str, fn: Callable[..., T], *args: Any) -> T:
        started = time.monotonic()
        try:
            return fn(*args)
        except Exception as exc:
            METRICS.sync_failures_total.labels(stage=stage).inc()
            raise StageError(stage, exc) from exc
        finally:
            METRICS.sync_duration_seconds.labels(stage=stage).observe(time.monotonic() - started)

    def sync(self, key: str) -> None:
        started = time.monotonic()
        self.logger.debug("Started syncing operator %r", key)
        try:
            self._run_stage(STAGE_CRDS, stages.sync_custom_resource_definitions, self.clients)

            self.logger.info("Getting operator config from the cluster config map")
            config: OperatorConfig = self._run_stage(
                STAGE_OPERATOR_CONFIG, self.resolver.operator_config
            )
            config = self._run_stage(STAGE_IMAGE_DETAILS, self.resolver.with_image_details, config)

            self._run_stage(
                STAGE_CLUSTER_API_SERVER, stages.sync_cluster_api_server, self.clients, config
            )
            self.logger.info("Synced cluster api server")
            self._run_stage(
                STAGE_CLUSTER_API_CONTROLLER,
                stages.sync_cluster_api_controller,
                self.clients,
                config,
            )
            self.logger.info("Synced cluster api controller")
            self._run_stage(STAGE_SYNC_ALL, stages.sync_all, self.clients, config)
        finally:
            self.logger.debug(
                "Finished syncing operator %r (%.3fs)", key, time.monotonic() - started
            )
