from __future__ import annotations

import json
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from kubernetes.client import ApiException

from reconciler.src.config import (
    ConfigResolver,
    OperatorConfig,
    OperatorSettings,
    load_images,
    operator_config_from_config_map,
)
from reconciler.src.errors import ConfigError, ImageManifestError

AWS_CONFIG = """
targetNamespace: machines
provider: aws
aws:
  clusterName: demo
  region: us-east-1
  replicas: 3
"""


def make_config_map(data: dict[str, str] | None) -> SimpleNamespace:
    return SimpleNamespace(metadata=SimpleNamespace(name="cluster-config-v1"), data=data)


def _settings(images_file: str = "/nonexistent/images.json") -> OperatorSettings:
    return OperatorSettings(
        namespace="openshift-machine-api",
        name="machine-api-operator",
        images_file=images_file,
    )


def test_parses_operator_config() -> None:
    config = operator_config_from_config_map(
        make_config_map({"mao-config": AWS_CONFIG}), "openshift-machine-api"
    )

    assert config.target_namespace == "machines"
    assert config.provider == "aws"
    assert config.provider_config["region"] == "us-east-1"
    assert config.cluster_id == "demo"
    assert config.replicas == 3
    assert dict(config.images) == {}


def test_missing_field_fails_with_descriptive_error() -> None:
    with pytest.raises(ConfigError, match="mao-config doesn't exist"):
        operator_config_from_config_map(make_config_map({"other": "x"}), "ns")


def test_missing_data_fails_with_descriptive_error() -> None:
    with pytest.raises(ConfigError, match="mao-config doesn't exist"):
        operator_config_from_config_map(make_config_map(None), "ns")


def test_empty_target_namespace_defaults_to_operator_namespace() -> None:
    config = operator_config_from_config_map(
        make_config_map({"mao-config": 'targetNamespace: ""\nprovider: libvirt\n'}),
        "openshift-machine-api",
    )

    assert config.target_namespace == "openshift-machine-api"
    assert config.provider == "libvirt"
    assert config.cluster_id == "cluster"
    assert config.replicas == 1


def test_accepts_json_document() -> None:
    config = operator_config_from_config_map(
        make_config_map({"mao-config": json.dumps({"provider": "aws"})}), "ns"
    )

    assert config.target_namespace == "ns"


def test_unparseable_config_fails() -> None:
    with pytest.raises(ConfigError, match="failed unmarshalling config file"):
        operator_config_from_config_map(make_config_map({"mao-config": "provider: [aws"}), "ns")


def test_non_mapping_config_fails() -> None:
    with pytest.raises(ConfigError, match="expected a mapping"):
        operator_config_from_config_map(make_config_map({"mao-config": "- aws"}), "ns")


def test_unsupported_provider_fails() -> None:
    with pytest.raises(ConfigError, match="unsupported provider 'gcp'"):
        operator_config_from_config_map(make_config_map({"mao-config": "provider: gcp"}), "ns")


def test_invalid_replicas_fails_when_read() -> None:
    config = OperatorConfig(
        target_namespace="ns", provider="aws", provider_config={"replicas": "many"}
    )

    with pytest.raises(ConfigError, match="aws.replicas must be an integer"):
        _ = config.replicas


def test_image_lookup_requires_component() -> None:
    config = OperatorConfig(
        target_namespace="ns", provider="aws", images={"clusterAPIServer": "quay.io/a:1"}
    )

    assert config.image("clusterAPIServer") == "quay.io/a:1"
    with pytest.raises(ConfigError, match="clusterAPIControllerAWS not found"):
        config.image("clusterAPIControllerAWS")


def test_load_images_reads_mapping(tmp_path: Path) -> None:
    images_file = tmp_path / "images.json"
    images_file.write_text(json.dumps({"clusterAPIServer": "quay.io/a:1"}), encoding="utf-8")

    assert load_images(str(images_file)) == {"clusterAPIServer": "quay.io/a:1"}


def test_load_images_missing_file_fails(tmp_path: Path) -> None:
    with pytest.raises(ImageManifestError, match="could not read image manifest"):
        load_images(str(tmp_path / "missing.json"))


def test_load_images_malformed_json_fails(tmp_path: Path) -> None:
    images_file = tmp_path / "images.json"
    images_file.write_text("{not json", encoding="utf-8")

    with pytest.raises(ImageManifestError, match="could not parse image manifest"):
        load_images(str(images_file))


def test_load_images_rejects_non_string_values(tmp_path: Path) -> None:
    images_file = tmp_path / "images.json"
    images_file.write_text(json.dumps({"clusterAPIServer": 3}), encoding="utf-8")

    with pytest.raises(ImageManifestError, match="must map component names"):
        load_images(str(images_file))


def test_resolver_reads_well_known_config_map() -> None:
    core_api = MagicMock()
    core_api.read_namespaced_config_map.return_value = make_config_map(
        {"mao-config": AWS_CONFIG}
    )

    config = ConfigResolver(core_api, _settings()).operator_config()

    core_api.read_namespaced_config_map.assert_called_once_with(
        name="cluster-config-v1", namespace="kube-system"
    )
    assert config.provider == "aws"


def test_resolver_wraps_lookup_failure() -> None:
    core_api = MagicMock()
    core_api.read_namespaced_config_map.side_effect = ApiException(status=404, reason="Not Found")

    with pytest.raises(ConfigError, match="could not find kube-system/cluster-config-v1") as info:
        ConfigResolver(core_api, _settings()).operator_config()

    assert isinstance(info.value.__cause__, ApiException)


def test_resolver_rereads_images_on_every_call(tmp_path: Path) -> None:
    images_file = tmp_path / "images.json"
    images_file.write_text(json.dumps({"clusterAPIServer": "quay.io/a:1"}), encoding="utf-8")
    core_api = MagicMock()
    core_api.read_namespaced_config_map.return_value = make_config_map(
        {"mao-config": AWS_CONFIG}
    )
    resolver = ConfigResolver(core_api, _settings(str(images_file)))

    first = resolver.resolve()
    images_file.write_text(json.dumps({"clusterAPIServer": "quay.io/a:2"}), encoding="utf-8")
    second = resolver.resolve()

    assert first.images["clusterAPIServer"] == "quay.io/a:1"
    assert second.images["clusterAPIServer"] == "quay.io/a:2"
    assert first is not second
