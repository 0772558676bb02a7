"""Idempotent convergence stages shared by the sync pipeline and the bootstrap loop.

Every stage applies its manifests through :func:`reconciler.src.kube.apply_resource`,
so it is safe to run against objects that are missing, drifted or already
converged.
"""

from __future__ import annotations

from reconciler.src import manifests
from reconciler.src.config import OperatorConfig
from reconciler.src.kube import (
    ApplyResult,
    KubeClients,
    apply_cluster_role,
    apply_cluster_role_binding,
    apply_custom_object,
    apply_custom_resource_definition,
    apply_deployment,
    apply_service,
    apply_service_account,
)


def sync_custom_resource_definitions(clients: KubeClients) -> list[ApplyResult]:
    return [
        apply_custom_resource_definition(clients.apiextensions, crd)
        for crd in manifests.custom_resource_definitions()
    ]


def sync_cluster_api_server(clients: KubeClients, config: OperatorConfig) -> list[ApplyResult]:
    deployment, service = manifests.cluster_api_server(config)
    return [
        apply_deployment(clients.apps, deployment),
        apply_service(clients.core, service),
    ]


def sync_cluster_api_controller(clients: KubeClients, config: OperatorConfig) -> list[ApplyResult]:
    return [apply_deployment(clients.apps, manifests.cluster_api_controller(config))]


def sync_all(clients: KubeClients, config: OperatorConfig) -> list[ApplyResult]:
    service_account, cluster_role, binding = manifests.controller_rbac(config)
    return [
        apply_service_account(clients.core, service_account),
        apply_cluster_role(clients.rbac, cluster_role),
        apply_cluster_role_binding(clients.rbac, binding),
    ]


def sync_cluster(clients: KubeClients, config: OperatorConfig) -> ApplyResult:
    return apply_custom_object(clients.custom_objects, "clusters", manifests.cluster_object(config))


def sync_machine_set(clients: KubeClients, config: OperatorConfig) -> ApplyResult:
    return apply_custom_object(
        clients.custom_objects, "machinesets", manifests.machine_set_object(config)
    )
