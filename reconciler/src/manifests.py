from __future__ import annotations

from typing import Any

from reconciler.src.config import PROVIDER_AWS, PROVIDER_LIBVIRT, OperatorConfig

CLUSTER_API_GROUP = "cluster.k8s.io"
CLUSTER_API_VERSION = "v1alpha1"
CLUSTER_API_API_VERSION = f"{CLUSTER_API_GROUP}/{CLUSTER_API_VERSION}"

CLUSTER_API_SERVER_NAME = "clusterapi-apiserver"
CLUSTER_API_CONTROLLER_NAME = "clusterapi-controllers"
CONTROLLER_SERVICE_ACCOUNT = "machine-api-controllers"

IMAGE_CLUSTER_API_SERVER = "clusterAPIServer"
CONTROLLER_IMAGES = {
    PROVIDER_AWS: "clusterAPIControllerAWS",
    PROVIDER_LIBVIRT: "clusterAPIControllerLibvirt",
}

# (kind, plural) of every cluster-api type the operator registers.
CLUSTER_API_KINDS = (
    ("Cluster", "clusters"),
    ("Machine", "machines"),
    ("MachineSet", "machinesets"),
    ("MachineDeployment", "machinedeployments"),
)


def _labels(component: str) -> dict[str, str]:
    return {"app.kubernetes.io/name": component, "app.kubernetes.io/part-of": "machine-api"}


def custom_resource_definitions() -> list[dict[str, Any]]:
    definitions = []
    for kind, plural in CLUSTER_API_KINDS:
        definitions.append(
            {
                "apiVersion": "apiextensions.k8s.io/v1",
                "kind": "CustomResourceDefinition",
                "metadata": {"name": f"{plural}.{CLUSTER_API_GROUP}"},
                "spec": {
                    "group": CLUSTER_API_GROUP,
                    "scope": "Namespaced",
                    "names": {
                        "kind": kind,
                        "listKind": f"{kind}List",
                        "plural": plural,
                        "singular": kind.lower(),
                    },
                    "versions": [
                        {
                            "name": CLUSTER_API_VERSION,
                            "served": True,
                            "storage": True,
                            "subresources": {"status": {}},
                            "schema": {
                                "openAPIV3Schema": {
                                    "type": "object",
                                    "x-kubernetes-preserve-unknown-fields": True,
                                }
                            },
                        }
                    ],
                },
            }
        )
    return definitions


def _deployment(
    name: str,
    namespace: str,
    containers: list[dict[str, Any]],
    service_account: str | None = None,
) -> dict[str, Any]:
    pod_spec: dict[str, Any] = {"containers": containers}
    if service_account:
        pod_spec["serviceAccountName"] = service_account
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": name, "namespace": namespace, "labels": _labels(name)},
        "spec": {
            "replicas": 1,
            "selector": {"matchLabels": _labels(name)},
            "template": {
                "metadata": {"labels": _labels(name)},
                "spec": pod_spec,
            },
        },
    }


def cluster_api_server(config: OperatorConfig) -> tuple[dict[str, Any], dict[str, Any]]:
    """Return the Deployment and Service of the cluster-api aggregated API server."""
    deployment = _deployment(
        CLUSTER_API_SERVER_NAME,
        config.target_namespace,
        [
            {
                "name": "apiserver",
                "image": config.image(IMAGE_CLUSTER_API_SERVER),
                "args": ["--secure-port=6443", "--etcd-servers=http://localhost:2379"],
                "ports": [{"containerPort": 6443, "name": "https"}],
            }
        ],
        service_account=CONTROLLER_SERVICE_ACCOUNT,
    )
    service = {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {
            "name": CLUSTER_API_SERVER_NAME,
            "namespace": config.target_namespace,
            "labels": _labels(CLUSTER_API_SERVER_NAME),
        },
        "spec": {
            "selector": _labels(CLUSTER_API_SERVER_NAME),
            "ports": [{"port": 443, "targetPort": 6443, "protocol": "TCP"}],
        },
    }
    return deployment, service


def cluster_api_controller(config: OperatorConfig) -> dict[str, Any]:
    """Return the Deployment running the generic and provider machine controllers."""
    image = config.image(CONTROLLER_IMAGES[config.provider])
    return _deployment(
        CLUSTER_API_CONTROLLER_NAME,
        config.target_namespace,
        [
            {
                "name": "controller-manager",
                "image": image,
                "command": ["./manager"],
            },
            {
                "name": f"{config.provider}-machine-controller",
                "image": image,
                "command": ["./machine-controller-manager"],
                "args": [f"--namespace={config.target_namespace}"],
            },
        ],
        service_account=CONTROLLER_SERVICE_ACCOUNT,
    )


def controller_rbac(config: OperatorConfig) -> tuple[dict[str, Any], dict[str, Any], dict[str, Any]]:
    """Return the ServiceAccount, ClusterRole and ClusterRoleBinding used by the controllers."""
    service_account = {
        "apiVersion": "v1",
        "kind": "ServiceAccount",
        "metadata": {"name": CONTROLLER_SERVICE_ACCOUNT, "namespace": config.target_namespace},
    }
    cluster_role = {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "ClusterRole",
        "metadata": {"name": CONTROLLER_SERVICE_ACCOUNT},
        "rules": [
            {"apiGroups": [CLUSTER_API_GROUP], "resources": ["*"], "verbs": ["*"]},
            {
                "apiGroups": [""],
                "resources": ["nodes", "events", "secrets", "configmaps"],
                "verbs": ["get", "list", "watch", "create", "update", "patch"],
            },
        ],
    }
    binding = {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "ClusterRoleBinding",
        "metadata": {"name": CONTROLLER_SERVICE_ACCOUNT},
        "roleRef": {
            "apiGroup": "rbac.authorization.k8s.io",
            "kind": "ClusterRole",
            "name": CONTROLLER_SERVICE_ACCOUNT,
        },
        "subjects": [
            {
                "kind": "ServiceAccount",
                "name": CONTROLLER_SERVICE_ACCOUNT,
                "namespace": config.target_namespace,
            }
        ],
    }
    return service_account, cluster_role, binding


def cluster_object(config: OperatorConfig) -> dict[str, Any]:
    return {
        "apiVersion": CLUSTER_API_API_VERSION,
        "kind": "Cluster",
        "metadata": {"name": config.cluster_id, "namespace": config.target_namespace},
        "spec": {
            "clusterNetwork": {
                "services": {"cidrBlocks": ["10.3.0.0/16"]},
                "pods": {"cidrBlocks": ["10.2.0.0/16"]},
                "serviceDomain": "cluster.local",
            },
            "providerConfig": {"value": {"provider": config.provider, **config.provider_config}},
        },
    }


def machine_set_object(config: OperatorConfig) -> dict[str, Any]:
    name = f"{config.cluster_id}-worker"
    selector = {
        "sigs.k8s.io/cluster-api-cluster": config.cluster_id,
        "sigs.k8s.io/cluster-api-machineset": name,
    }
    return {
        "apiVersion": CLUSTER_API_API_VERSION,
        "kind": "MachineSet",
        "metadata": {
            "name": name,
            "namespace": config.target_namespace,
            "labels": {"sigs.k8s.io/cluster-api-cluster": config.cluster_id},
        },
        "spec": {
            "replicas": config.replicas,
            "selector": {"matchLabels": selector},
            "template": {
                "metadata": {"labels": selector},
                "spec": {
                    "providerConfig": {
                        "value": {"provider": config.provider, **config.provider_config}
                    },
                },
            },
        },
    }
