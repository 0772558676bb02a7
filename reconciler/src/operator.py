from __future__ import annotations

import logging
import os
import threading
from collections.abc import Callable, Sequence

from reconciler.src import stages
from reconciler.src.bootstrap import (
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_TIMEOUT_SECONDS,
    BootstrapLoop,
)
from reconciler.src.config import (
    CLUSTER_CONFIG_NAME,
    CLUSTER_CONFIG_NAMESPACE,
    ConfigResolver,
    OperatorSettings,
)
from reconciler.src.errors import BootstrapError
from reconciler.src.events import EventDispatcher, reconciliation_key
from reconciler.src.informer import ResourceInformer
from reconciler.src.kube import KubeClients
from reconciler.src.manifests import CLUSTER_API_GROUP, CLUSTER_API_VERSION
from reconciler.src.pipeline import SyncPipeline
from reconciler.src.policy import RetryPolicy
from reconciler.src.workers import WorkerPool, wait_for_cache_sync
from reconciler.src.workqueue import RateLimitingQueue

QUEUE_NAME = "machineapioperator"


class Operator:
    """Wires the informers, work queue, worker pool, sync pipeline and bootstrap loop.

    Every informer feeds the same :class:`EventDispatcher`, so any change to a
    watched object enqueues the one ``namespace/name`` key and triggers a
    full sync.  The bootstrap loop runs on its own thread alongside the
    workers; it is the only component whose failure stops the process.
    """

    def __init__(
        self,
        clients: KubeClients,
        settings: OperatorSettings,
        informers: Sequence[ResourceInformer] = (),
        bootstrap_poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        bootstrap_timeout: float = DEFAULT_TIMEOUT_SECONDS,
        pipeline: SyncPipeline | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.clients = clients
        self.settings = settings
        self.logger = logger or logging.getLogger(__name__)
        self.key = reconciliation_key(settings.namespace, settings.name)

        # The queue only ever holds one key; it is used for its dedup and backoff.
        self.queue = RateLimitingQueue(QUEUE_NAME)
        self.dispatcher = EventDispatcher(self.queue, self.key)
        self.informers = list(informers)
        for informer in self.informers:
            informer.add_event_handler(self.dispatcher)

        resolver = ConfigResolver(clients.core, settings)
        self.pipeline = pipeline or SyncPipeline(clients, settings, resolver=resolver)
        self.retry_policy = RetryPolicy(self.queue)
        self.pool = WorkerPool(self.queue, self.pipeline.sync, self.retry_policy)
        self.bootstrap = BootstrapLoop(
            resolver,
            create_cluster=lambda config: stages.sync_cluster(clients, config),
            create_machine_set=lambda config: stages.sync_machine_set(clients, config),
            poll_interval=bootstrap_poll_interval,
            timeout=bootstrap_timeout,
        )

        self.ready = threading.Event()
        self.bootstrapped = threading.Event()
        self.fatal_error: BaseException | None = None

    def _synced_checks(self) -> list[Callable[[], bool]]:
        return [informer.has_synced for informer in self.informers if informer.wait_for_sync]

    def _run_bootstrap(self, stop_event: threading.Event) -> None:
        try:
            state = self.bootstrap.run(stop_event)
        except BootstrapError as exc:
            self.logger.critical("Error out while trying to deploy machines: %s", exc)
            self.fatal_error = exc
            stop_event.set()
            return
        except Exception as exc:
            self.logger.critical("Unexpected error while deploying machines", exc_info=True)
            self.fatal_error = exc
            stop_event.set()
            return
        if state.complete:
            self.bootstrapped.set()

    def run(self, workers: int, stop_event: threading.Event) -> None:
        """Start watching and reconciling; block until *stop_event* fires."""
        self.logger.info("Starting MachineAPIOperator")
        informer_threads = [
            threading.Thread(
                target=informer.run,
                args=(stop_event,),
                name=f"informer-{informer.resource}",
                daemon=True,
            )
            for informer in self.informers
        ]
        for thread in informer_threads:
            thread.start()

        try:
            if not wait_for_cache_sync(stop_event, *self._synced_checks()):
                self.logger.error("Failed to sync caches")
                return
            self.logger.info("Synced up caches")
            self.ready.set()

            bootstrap_thread = threading.Thread(
                target=self._run_bootstrap,
                args=(stop_event,),
                name="bootstrap",
                daemon=True,
            )
            bootstrap_thread.start()
            self.pool.run(workers, stop_event)
            bootstrap_thread.join()
        finally:
            self.queue.shut_down()
            for informer in self.informers:
                informer.request_stop()
            self.ready.clear()
            self.logger.info("Shutting down MachineAPIOperator")


def build_informers(clients: KubeClients, settings: OperatorSettings) -> list[ResourceInformer]:
    """Return informers for every collection whose changes should trigger a sync.

    The machine-set informer does not gate startup: its type is registered by
    the first sync, which cannot run before startup completes.  It watches
    every namespace because ``targetNamespace`` in ``mao-config`` may place
    the machine set outside the operator's own namespace.
    """
    namespace = settings.namespace
    return [
        ResourceInformer(
            "machinesets",
            clients.custom_objects.list_cluster_custom_object,
            wait_for_sync=False,
            group=CLUSTER_API_GROUP,
            version=CLUSTER_API_VERSION,
            plural="machinesets",
        ),
        ResourceInformer(
            "configmaps",
            clients.core.list_namespaced_config_map,
            namespace=CLUSTER_CONFIG_NAMESPACE,
            field_selector=f"metadata.name={CLUSTER_CONFIG_NAME}",
        ),
        ResourceInformer(
            "serviceaccounts",
            clients.core.list_namespaced_service_account,
            namespace=namespace,
        ),
        ResourceInformer(
            "customresourcedefinitions",
            clients.apiextensions.list_custom_resource_definition,
        ),
        ResourceInformer(
            "deployments",
            clients.apps.list_namespaced_deployment,
            namespace=namespace,
        ),
        ResourceInformer("clusterroles", clients.rbac.list_cluster_role),
        ResourceInformer("clusterrolebindings", clients.rbac.list_cluster_role_binding),
    ]


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def build_operator_from_env(clients: KubeClients) -> Operator:
    """Construct an :class:`Operator` from environment variables.

    Environment variables (with defaults):
        ``OPERATOR_NAMESPACE``: Namespace the operator runs in (``openshift-machine-api``).
        ``OPERATOR_NAME``: Operator name used in the reconciliation key (``machine-api-operator``).
        ``IMAGES_FILE``: JSON image manifest (``/etc/machine-api-operator/images.json``).
        ``BOOTSTRAP_POLL_INTERVAL_SECONDS``: Seconds between bootstrap attempts (``5``).
        ``BOOTSTRAP_TIMEOUT_SECONDS``: Seconds before bootstrap is declared failed (``600``).
    """
    namespace = os.getenv("OPERATOR_NAMESPACE", "openshift-machine-api").strip()
    if not namespace:
        raise ValueError("OPERATOR_NAMESPACE must be a non-empty string")

    name = os.getenv("OPERATOR_NAME", "machine-api-operator").strip()
    if not name:
        raise ValueError("OPERATOR_NAME must be a non-empty string")

    images_file = os.getenv("IMAGES_FILE", "/etc/machine-api-operator/images.json")
    poll_interval = env_int("BOOTSTRAP_POLL_INTERVAL_SECONDS", 5, minimum=1)
    timeout = env_int("BOOTSTRAP_TIMEOUT_SECONDS", 600, minimum=1)

    settings = OperatorSettings(namespace=namespace, name=name, images_file=images_file)
    return Operator(
        clients=clients,
        settings=settings,
        informers=build_informers(clients, settings),
        bootstrap_poll_interval=poll_interval,
        bootstrap_timeout=timeout,
    )
