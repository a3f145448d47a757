"""Tests for KubernetesClusterClient.

All kubernetes client calls are mocked; no real cluster needed.
"""

from __future__ import annotations

import sys
from contextlib import contextmanager
from unittest.mock import MagicMock, patch

import pytest

from driftguard.cluster.k8s_client import KubernetesClusterClient
from driftguard.cluster.manifest import API_GROUP, API_VERSION, PLURAL, to_manifest
from driftguard.errors import TransientClusterError


class ApiException(Exception):
    """Stand-in matching kubernetes.client.exceptions.ApiException by name."""

    def __init__(self, status: int, reason: str = "") -> None:
        super().__init__(reason)
        self.status = status
        self.reason = reason


@contextmanager
def _mock_kubernetes_modules():
    """Inject a mock kubernetes package into sys.modules."""
    mock_k8s = MagicMock()
    mock_client = mock_k8s.client
    mock_config = mock_k8s.config
    modules = {
        "kubernetes": mock_k8s,
        "kubernetes.client": mock_client,
        "kubernetes.config": mock_config,
    }
    with patch.dict(sys.modules, modules):
        yield mock_client, mock_config


@pytest.fixture()
def k8s():
    with _mock_kubernetes_modules() as (mock_client, mock_config):
        yield mock_client, mock_config


@pytest.fixture()
def api_client() -> MagicMock:
    return MagicMock()


@pytest.fixture()
def client(k8s, api_client) -> KubernetesClusterClient:
    return KubernetesClusterClient(api_client=api_client, name="prod-east", request_timeout=3.0)


def _objects(k8s) -> MagicMock:
    mock_client, _ = k8s
    return mock_client.CustomObjectsApi.return_value


class TestSetup:
    def test_requires_kubernetes(self):
        with patch.dict(sys.modules, {"kubernetes": None}):
            with pytest.raises(ImportError, match="driftguard\\[k8s\\]"):
                KubernetesClusterClient()

    def test_name_defaults_to_context(self, k8s):
        assert KubernetesClusterClient(context="kind-dev").name == "kind-dev"
        assert KubernetesClusterClient().name == "default"

    def test_loads_kubeconfig_lazily(self, k8s):
        mock_client, mock_config = k8s
        _objects(k8s).list_cluster_custom_object.return_value = {"items": []}
        client = KubernetesClusterClient(kubeconfig="/tmp/kubeconfig", context="kind-dev")
        mock_config.load_kube_config.assert_not_called()
        client.list_policies()
        client.list_policies()
        mock_config.load_kube_config.assert_called_once_with(
            config_file="/tmp/kubeconfig", context="kind-dev",
        )

    def test_in_cluster(self, k8s):
        _, mock_config = k8s
        _objects(k8s).list_cluster_custom_object.return_value = {"items": []}
        KubernetesClusterClient(in_cluster=True).list_policies()
        mock_config.load_incluster_config.assert_called_once()
        mock_config.load_kube_config.assert_not_called()

    def test_uses_given_api_client(self, k8s, client, api_client):
        mock_client, mock_config = k8s
        _objects(k8s).list_cluster_custom_object.return_value = {"items": []}
        client.list_policies()
        mock_client.CustomObjectsApi.assert_called_with(api_client)
        mock_config.load_kube_config.assert_not_called()


class TestPolicies:
    def test_get(self, k8s, client, desired):
        manifest = to_manifest(desired[0])
        manifest["metadata"]["resourceVersion"] = "12"
        _objects(k8s).get_cluster_custom_object.return_value = manifest
        assert client.get_policy(desired[0].name) == desired[0]
        _objects(k8s).get_cluster_custom_object.assert_called_once_with(
            API_GROUP, API_VERSION, PLURAL, desired[0].name, _request_timeout=3.0,
        )

    def test_get_not_found(self, k8s, client):
        _objects(k8s).get_cluster_custom_object.side_effect = ApiException(404, "Not Found")
        assert client.get_policy("nope") is None

    def test_get_error_is_transient(self, k8s, client):
        _objects(k8s).get_cluster_custom_object.side_effect = ApiException(500, "Internal")
        with pytest.raises(TransientClusterError, match="\\(500\\) on get p") as exc_info:
            client.get_policy("p")
        assert exc_info.value.cluster == "prod-east"

    def test_connection_error_is_transient(self, k8s, client):
        _objects(k8s).list_cluster_custom_object.side_effect = ConnectionError("refused")
        with pytest.raises(TransientClusterError, match="refused"):
            client.list_policies()

    def test_list(self, k8s, client, desired):
        _objects(k8s).list_cluster_custom_object.return_value = {
            "items": [to_manifest(d) for d in desired[:2]],
        }
        assert [d.name for d in client.list_policies()] == [d.name for d in desired[:2]]

    def test_list_skips_unparseable(self, k8s, client, desired):
        broken = to_manifest(desired[0])
        del broken["spec"]["rules"][0]["name"]
        _objects(k8s).list_cluster_custom_object.return_value = {
            "items": [broken, to_manifest(desired[1])],
        }
        assert [d.name for d in client.list_policies()] == [desired[1].name]

    def test_create(self, k8s, client, desired):
        client.create_policy(desired[0])
        args, kwargs = _objects(k8s).create_cluster_custom_object.call_args
        assert args == (API_GROUP, API_VERSION, PLURAL, to_manifest(desired[0]))
        assert kwargs == {"_request_timeout": 3.0}

    def test_update_carries_resource_version(self, k8s, client, desired):
        existing = to_manifest(desired[0])
        existing["metadata"]["resourceVersion"] = "99"
        _objects(k8s).get_cluster_custom_object.return_value = existing
        client.update_policy(desired[0])
        args, _ = _objects(k8s).replace_cluster_custom_object.call_args
        assert args[3] == desired[0].name
        assert args[4]["metadata"]["resourceVersion"] == "99"

    def test_update_missing(self, k8s, client, desired):
        _objects(k8s).get_cluster_custom_object.side_effect = ApiException(404)
        with pytest.raises(TransientClusterError, match="not found"):
            client.update_policy(desired[0])
        _objects(k8s).replace_cluster_custom_object.assert_not_called()

    def test_delete(self, k8s, client):
        assert client.delete_policy("p")

    def test_delete_not_found(self, k8s, client):
        _objects(k8s).delete_cluster_custom_object.side_effect = ApiException(404)
        assert not client.delete_policy("p")

    def test_delete_conflict(self, k8s, client):
        _objects(k8s).delete_cluster_custom_object.side_effect = ApiException(409, "Conflict")
        with pytest.raises(TransientClusterError):
            client.delete_policy("p")


class TestPods:
    def test_list_pods(self, k8s, client, api_client):
        mock_client, _ = k8s
        pods = [{"metadata": {"name": "web-0", "namespace": "default"}}]
        api_client.sanitize_for_serialization.return_value = {"items": pods}
        assert client.list_pods() == pods
        core = mock_client.CoreV1Api.return_value
        core.list_pod_for_all_namespaces.assert_called_once_with(_request_timeout=3.0)

    def test_list_pods_error(self, k8s, client):
        mock_client, _ = k8s
        mock_client.CoreV1Api.return_value.list_pod_for_all_namespaces.side_effect = ApiException(403, "Forbidden")
        with pytest.raises(TransientClusterError, match="Forbidden"):
            client.list_pods()
