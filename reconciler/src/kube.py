from __future__ import annotations

import copy
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from hashlib import sha256
from typing import Any

from kubernetes import client, config
from kubernetes.client import (
    ApiextensionsV1Api,
    ApiException,
    AppsV1Api,
    CoreV1Api,
    CustomObjectsApi,
    RbacAuthorizationV1Api,
)
from kubernetes.config.config_exception import ConfigException

from reconciler.src.errors import ApplyError
from reconciler.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

APPLIED_HASH_ANNOTATION = "machine.openshift.io/applied-hash"

CREATED = "created"
UPDATED = "updated"
UNCHANGED = "unchanged"


@dataclass(frozen=True)
class KubeClients:
    """The typed API clients the operator talks to."""

    core: CoreV1Api
    apps: AppsV1Api
    apiextensions: ApiextensionsV1Api
    rbac: RbacAuthorizationV1Api
    custom_objects: CustomObjectsApi


@dataclass(frozen=True)
class ApplyResult:
    """Outcome of a single create-or-update call."""

    kind: str
    name: str
    action: str


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> KubeClients:
    """Return API clients using the active kube configuration."""
    return KubeClients(
        core=client.CoreV1Api(),
        apps=client.AppsV1Api(),
        apiextensions=client.ApiextensionsV1Api(),
        rbac=client.RbacAuthorizationV1Api(),
        custom_objects=client.CustomObjectsApi(),
    )


def manifest_hash(body: dict[str, Any]) -> str:
    """Return a SHA-256 hex digest of a manifest, ignoring key order."""
    stable_payload = json.dumps(body, sort_keys=True, separators=(",", ":"), default=str)
    return sha256(stable_payload.encode("utf-8")).hexdigest()


def object_annotations(obj: Any) -> dict[str, str]:
    """Extract ``metadata.annotations`` from a typed model or a plain dict."""
    if isinstance(obj, dict):
        annotations = (obj.get("metadata") or {}).get("annotations")
    else:
        annotations = getattr(getattr(obj, "metadata", None), "annotations", None)
    if not isinstance(annotations, dict):
        return {}
    return {k: ("" if v is None else str(v)) for k, v in annotations.items() if isinstance(k, str)}


def _with_hash_annotation(body: dict[str, Any], digest: str) -> dict[str, Any]:
    annotated = copy.deepcopy(body)
    metadata = annotated.setdefault("metadata", {})
    annotations = metadata.setdefault("annotations", {})
    annotations[APPLIED_HASH_ANNOTATION] = digest
    return annotated


def apply_resource(
    kind: str,
    body: dict[str, Any],
    read: Callable[[], Any],
    create: Callable[[dict[str, Any]], Any],
    patch: Callable[[dict[str, Any]], Any],
) -> ApplyResult:
    """Create *body* if absent, patch it if it drifted, otherwise do nothing.

    Drift is detected through the :data:`APPLIED_HASH_ANNOTATION` written on
    every create and patch, so re-applying an unchanged manifest issues no
    write at all.  A ``409 Conflict`` on create means a concurrent writer got
    there first; the next sync compares hashes and repairs any difference.
    """
    name = body["metadata"]["name"]
    digest = manifest_hash(body)
    annotated = _with_hash_annotation(body, digest)

    try:
        existing = read()
    except ApiException as exc:
        if exc.status != 404:
            raise ApplyError("read", kind, name, exc.reason) from exc
        existing = None

    if existing is None:
        try:
            create(annotated)
        except ApiException as exc:
            if exc.status != 409:
                raise ApplyError("create", kind, name, exc.reason) from exc
            LOGGER.debug("%s %s was created concurrently", kind, name)
            return _record(ApplyResult(kind=kind, name=name, action=UNCHANGED))
        LOGGER.info("Created %s %s", kind, name)
        return _record(ApplyResult(kind=kind, name=name, action=CREATED))

    if object_annotations(existing).get(APPLIED_HASH_ANNOTATION) == digest:
        return _record(ApplyResult(kind=kind, name=name, action=UNCHANGED))

    try:
        patch(annotated)
    except ApiException as exc:
        raise ApplyError("update", kind, name, exc.reason) from exc
    LOGGER.info("Updated %s %s", kind, name)
    return _record(ApplyResult(kind=kind, name=name, action=UPDATED))


def _record(result: ApplyResult) -> ApplyResult:
    METRICS.applied_resources_total.labels(kind=result.kind, action=result.action).inc()
    return result


def apply_custom_resource_definition(api: ApiextensionsV1Api, body: dict[str, Any]) -> ApplyResult:
    name = body["metadata"]["name"]
    return apply_resource(
        "CustomResourceDefinition",
        body,
        read=lambda: api.read_custom_resource_definition(name=name),
        create=lambda b: api.create_custom_resource_definition(body=b),
        patch=lambda b: api.patch_custom_resource_definition(name=name, body=b),
    )


def apply_deployment(api: AppsV1Api, body: dict[str, Any]) -> ApplyResult:
    name = body["metadata"]["name"]
    namespace = body["metadata"]["namespace"]
    return apply_resource(
        "Deployment",
        body,
        read=lambda: api.read_namespaced_deployment(name=name, namespace=namespace),
        create=lambda b: api.create_namespaced_deployment(namespace=namespace, body=b),
        patch=lambda b: api.patch_namespaced_deployment(name=name, namespace=namespace, body=b),
    )


def apply_service(api: CoreV1Api, body: dict[str, Any]) -> ApplyResult:
    name = body["metadata"]["name"]
    namespace = body["metadata"]["namespace"]
    return apply_resource(
        "Service",
        body,
        read=lambda: api.read_namespaced_service(name=name, namespace=namespace),
        create=lambda b: api.create_namespaced_service(namespace=namespace, body=b),
        patch=lambda b: api.patch_namespaced_service(name=name, namespace=namespace, body=b),
    )


def apply_service_account(api: CoreV1Api, body: dict[str, Any]) -> ApplyResult:
    name = body["metadata"]["name"]
    namespace = body["metadata"]["namespace"]
    return apply_resource(
        "ServiceAccount",
        body,
        read=lambda: api.read_namespaced_service_account(name=name, namespace=namespace),
        create=lambda b: api.create_namespaced_service_account(namespace=namespace, body=b),
        patch=lambda b: api.patch_namespaced_service_account(
            name=name, namespace=namespace, body=b
        ),
    )


def apply_cluster_role(api: RbacAuthorizationV1Api, body: dict[str, Any]) -> ApplyResult:
    name = body["metadata"]["name"]
    return apply_resource(
        "ClusterRole",
        body,
        read=lambda: api.read_cluster_role(name=name),
        create=lambda b: api.create_cluster_role(body=b),
        patch=lambda b: api.patch_cluster_role(name=name, body=b),
    )


def apply_cluster_role_binding(api: RbacAuthorizationV1Api, body: dict[str, Any]) -> ApplyResult:
    name = body["metadata"]["name"]
    return apply_resource(
        "ClusterRoleBinding",
        body,
        read=lambda: api.read_cluster_role_binding(name=name),
        create=lambda b: api.create_cluster_role_binding(body=b),
        patch=lambda b: api.patch_cluster_role_binding(name=name, body=b),
    )


def apply_custom_object(
    api: CustomObjectsApi, plural: str, body: dict[str, Any]
) -> ApplyResult:
    """Create-or-update a namespaced custom object; group and version come from ``apiVersion``."""
    group, _, version = body["apiVersion"].partition("/")
    name = body["metadata"]["name"]
    namespace = body["metadata"]["namespace"]
    return apply_resource(
        body["kind"],
        body,
        read=lambda: api.get_namespaced_custom_object(
            group=group, version=version, namespace=namespace, plural=plural, name=name
        ),
        create=lambda b: api.create_namespaced_custom_object(
            group=group, version=version, namespace=namespace, plural=plural, body=b
        ),
        patch=lambda b: api.patch_namespaced_custom_object(
            group=group, version=version, namespace=namespace, plural=plural, name=name, body=b
        ),
    )
