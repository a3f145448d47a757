"""KubernetesClusterClient: policy documents via the kubernetes Python client.

Uses the official ``kubernetes`` client library. Policy documents are
Kyverno ``ClusterPolicy`` custom resources reached through
``CustomObjectsApi``; pods are read through ``CoreV1Api``. Every call
carries ``_request_timeout`` so one unreachable cluster cannot stall a
fleet pass.

Requires: ``pip install driftguard[k8s]``
"""

from __future__ import annotations

import logging
from typing import Any

from driftguard.cluster.manifest import (
    API_GROUP,
    API_VERSION,
    PLURAL,
    from_manifest,
    parse_listed,
    resource_version,
    to_manifest,
)
from driftguard.errors import TransientClusterError
from driftguard.models import PolicyDocument

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 10.0


def _check_kubernetes_available() -> None:
    """Raise ImportError with helpful message if kubernetes is not installed."""
    try:
        import kubernetes  # noqa: F401
    except ImportError:
        raise ImportError(
            "The 'kubernetes' package is required for KubernetesClusterClient. "
            "Install it with: pip install driftguard[k8s]"
        ) from None


def _is_api_exception(exc: BaseException) -> bool:
    # Detect kubernetes ApiException by class name to avoid import
    return type(exc).__name__ == "ApiException"


class KubernetesClusterClient:
    """ClusterClient backed by a kubernetes ``ApiClient``.

    Client setup:
    - If ``api_client`` is given (e.g. from a ClusterAccessor), it is used as-is
    - If ``in_cluster`` is set, uses the in-cluster service account
    - Otherwise loads ``kubeconfig`` (or the default kubeconfig) and ``context``
    """

    def __init__(
        self,
        api_client: Any = None,
        kubeconfig: str | None = None,
        context: str | None = None,
        in_cluster: bool = False,
        name: str = "",
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        _check_kubernetes_available()
        self._api_client = api_client
        self._kubeconfig = kubeconfig
        self._context = context
        self._in_cluster = in_cluster
        self._name = name or context or "default"
        self._timeout = request_timeout

    @property
    def name(self) -> str:
        return self._name

    def get_policy(self, name: str) -> PolicyDocument | None:
        obj = self._get_raw(name)
        return from_manifest(obj) if obj is not None else None

    def list_policies(self) -> list[PolicyDocument]:
        api = self._custom_objects()
        try:
            result = api.list_cluster_custom_object(
                API_GROUP, API_VERSION, PLURAL, _request_timeout=self._timeout,
            )
        except Exception as exc:
            raise self._translate(exc, "list", "*") from exc
        items = result.get("items", []) if isinstance(result, dict) else []
        return parse_listed(items, self._name)

    def create_policy(self, document: PolicyDocument) -> None:
        api = self._custom_objects()
        try:
            api.create_cluster_custom_object(
                API_GROUP,
                API_VERSION,
                PLURAL,
                to_manifest(document),
                _request_timeout=self._timeout,
            )
        except Exception as exc:
            raise self._translate(exc, "create", document.name) from exc
        logger.debug("Created %s on %s", document.name, self._name)

    def update_policy(self, document: PolicyDocument) -> None:
        existing = self._get_raw(document.name)
        if existing is None:
            raise TransientClusterError(
                f"policy {document.name} not found on {self._name}",
                cluster=self._name,
                resource=document.name,
            )
        body = to_manifest(document)
        version = resource_version(existing)
        if version:
            body["metadata"]["resourceVersion"] = version

        api = self._custom_objects()
        try:
            api.replace_cluster_custom_object(
                API_GROUP,
                API_VERSION,
                PLURAL,
                document.name,
                body,
                _request_timeout=self._timeout,
            )
        except Exception as exc:
            raise self._translate(exc, "update", document.name) from exc
        logger.debug("Updated %s on %s", document.name, self._name)

    def delete_policy(self, name: str) -> bool:
        api = self._custom_objects()
        try:
            api.delete_cluster_custom_object(
                API_GROUP, API_VERSION, PLURAL, name, _request_timeout=self._timeout,
            )
        except Exception as exc:
            if _is_api_exception(exc) and exc.status == 404:
                return False
            raise self._translate(exc, "delete", name) from exc
        logger.debug("Deleted %s on %s", name, self._name)
        return True

    def list_pods(self) -> list[dict[str, Any]]:
        from kubernetes import client

        api_client = self._get_api_client()
        core = client.CoreV1Api(api_client)
        try:
            result = core.list_pod_for_all_namespaces(_request_timeout=self._timeout)
        except Exception as exc:
            raise self._translate(exc, "list", "pods") from exc
        data = api_client.sanitize_for_serialization(result)
        return list(data.get("items", [])) if isinstance(data, dict) else []

    # --- Private: client setup ---

    def _get_api_client(self) -> Any:
        """Build (once) a kubernetes ApiClient from constructor config."""
        if self._api_client is not None:
            return self._api_client

        from kubernetes import client, config

        if self._in_cluster:
            config.load_incluster_config()
        else:
            kwargs: dict[str, Any] = {}
            if self._kubeconfig:
                kwargs["config_file"] = self._kubeconfig
            if self._context:
                kwargs["context"] = self._context
            config.load_kube_config(**kwargs)
        self._api_client = client.ApiClient()
        return self._api_client

    def _custom_objects(self) -> Any:
        from kubernetes import client

        return client.CustomObjectsApi(self._get_api_client())

    # --- Private: helpers ---

    def _get_raw(self, name: str) -> dict[str, Any] | None:
        api = self._custom_objects()
        try:
            return api.get_cluster_custom_object(
                API_GROUP, API_VERSION, PLURAL, name, _request_timeout=self._timeout,
            )
        except Exception as exc:
            if _is_api_exception(exc) and exc.status == 404:
                return None
            raise self._translate(exc, "get", name) from exc

    def _translate(self, exc: Exception, verb: str, resource: str) -> TransientClusterError:
        if _is_api_exception(exc):
            message = f"K8s API error ({exc.status}) on {verb} {resource}: {exc.reason}"
        else:
            message = f"K8s client error on {verb} {resource}: {exc}"
        return TransientClusterError(message, cluster=self._name, resource=resource)
