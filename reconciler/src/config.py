from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any

import yaml
from kubernetes.client import ApiException, CoreV1Api

from reconciler.src.errors import ConfigError, ImageManifestError

LOGGER = logging.getLogger(__name__)

CLUSTER_CONFIG_NAMESPACE = "kube-system"
CLUSTER_CONFIG_NAME = "cluster-config-v1"
CLUSTER_CONFIG_KEY = "mao-config"

PROVIDER_AWS = "aws"
PROVIDER_LIBVIRT = "libvirt"
SUPPORTED_PROVIDERS = frozenset({PROVIDER_AWS, PROVIDER_LIBVIRT})


@dataclass(frozen=True)
class OperatorSettings:
    """Process-level settings that stay fixed for the operator's lifetime.

    Attributes:
        namespace:   Namespace the operator itself runs in; also the default
                     target namespace for managed resources.
        name:        Operator name, the second half of the reconciliation key.
        images_file: Path of the JSON image manifest, re-read on every sync.
    """

    namespace: str
    name: str
    images_file: str


@dataclass(frozen=True)
class OperatorConfig:
    """Desired-state configuration resolved from the cluster for one sync.

    Each sync and each bootstrap tick builds its own instance; nothing mutates
    it after construction.
    """

    target_namespace: str
    provider: str
    provider_config: Mapping[str, Any] = field(default_factory=dict)
    images: Mapping[str, str] = field(default_factory=dict)

    @property
    def cluster_id(self) -> str:
        return str(
            self.provider_config.get("clusterName")
            or self.provider_config.get("clusterID")
            or "cluster"
        )

    @property
    def replicas(self) -> int:
        raw = self.provider_config.get("replicas", 1)
        try:
            return int(raw)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"{self.provider}.replicas must be an integer, got: {raw!r}") from exc

    def image(self, component: str) -> str:
        """Return the image for *component* or fail if the manifest lacks it."""
        image = self.images.get(component)
        if not image:
            raise ConfigError(f"image for component {component} not found in image manifest")
        return image


def operator_config_from_config_map(config_map: Any, default_namespace: str) -> OperatorConfig:
    """Parse the ``mao-config`` entry of the cluster config map.

    The entry holds YAML (JSON is accepted as a subset)::

        targetNamespace: openshift-machine-api
        provider: aws
        aws:
          clusterName: demo
          replicas: 2

    An empty ``targetNamespace`` falls back to *default_namespace*.
    """
    data = getattr(config_map, "data", None) or {}
    raw = data.get(CLUSTER_CONFIG_KEY)
    if raw is None:
        raise ConfigError(f"{CLUSTER_CONFIG_KEY} doesn't exist")

    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise ConfigError(f"failed unmarshalling config file: {exc}") from exc

    if parsed is None:
        parsed = {}
    if not isinstance(parsed, dict):
        raise ConfigError(
            f"failed unmarshalling config file: expected a mapping, got {type(parsed).__name__}"
        )

    provider = str(parsed.get("provider") or "").strip().lower()
    if provider not in SUPPORTED_PROVIDERS:
        raise ConfigError(
            f"unsupported provider {provider!r}, expected one of {sorted(SUPPORTED_PROVIDERS)}"
        )

    provider_config = parsed.get(provider) or {}
    if not isinstance(provider_config, dict):
        raise ConfigError(f"{provider} section of {CLUSTER_CONFIG_KEY} must be a mapping")

    target_namespace = str(parsed.get("targetNamespace") or "").strip() or default_namespace
    return OperatorConfig(
        target_namespace=target_namespace,
        provider=provider,
        provider_config=dict(provider_config),
    )


def load_images(path: str) -> dict[str, str]:
    """Read the image manifest at *path*: a JSON object of component name to image."""
    try:
        with open(path, encoding="utf-8") as handle:
            raw = handle.read()
    except OSError as exc:
        raise ImageManifestError(f"could not read image manifest {path}: {exc}") from exc

    try:
        images = json.loads(raw)
    except ValueError as exc:
        raise ImageManifestError(f"could not parse image manifest {path}: {exc}") from exc

    if not isinstance(images, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in images.items()
    ):
        raise ImageManifestError(
            f"image manifest {path} must map component names to image references"
        )
    return images


class ConfigResolver:
    """Builds a fresh :class:`OperatorConfig` from the cluster and the image manifest."""

    def __init__(
        self,
        core_api: CoreV1Api,
        settings: OperatorSettings,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.settings = settings
        self.logger = logger or LOGGER

    def operator_config(self) -> OperatorConfig:
        try:
            config_map = self.core_api.read_namespaced_config_map(
                name=CLUSTER_CONFIG_NAME,
                namespace=CLUSTER_CONFIG_NAMESPACE,
            )
        except ApiException as exc:
            raise ConfigError(
                f"could not find {CLUSTER_CONFIG_NAMESPACE}/{CLUSTER_CONFIG_NAME} "
                f"config map: {exc.reason}"
            ) from exc
        return operator_config_from_config_map(config_map, self.settings.namespace)

    def with_image_details(self, config: OperatorConfig) -> OperatorConfig:
        # Never cached: an operator upgrade ships a new manifest under the same path.
        images = load_images(self.settings.images_file)
        self.logger.debug("Loaded images %s", images)
        return replace(config, images=images)

    def resolve(self) -> OperatorConfig:
        return self.with_image_details(self.operator_config())
