"""Wire format for policy documents.

The only place that knows a PolicyDocument is stored as a Kyverno
``ClusterPolicy`` custom resource.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from pydantic import ValidationError

from driftguard.errors import ConfigError
from driftguard.models import POLICY_KIND, PolicyDocument

logger = logging.getLogger(__name__)

API_GROUP = "kyverno.io"
API_VERSION = "v1"
PLURAL = "clusterpolicies"

SERVER_METADATA_FIELDS = frozenset({
    "resourceVersion",
    "uid",
    "generation",
    "creationTimestamp",
    "managedFields",
    "selfLink",
    "deletionTimestamp",
    "deletionGracePeriodSeconds",
    "finalizers",
    "ownerReferences",
})


def to_manifest(document: PolicyDocument) -> dict[str, Any]:
    """Serialize a document into a ClusterPolicy manifest."""
    metadata: dict[str, Any] = {"name": document.name}
    if document.annotations:
        metadata["annotations"] = dict(document.annotations)
    if document.labels:
        metadata["labels"] = dict(document.labels)
    return {
        "apiVersion": f"{API_GROUP}/{API_VERSION}",
        "kind": POLICY_KIND,
        "metadata": metadata,
        "spec": document.tracked_spec(),
    }


def from_manifest(obj: dict[str, Any]) -> PolicyDocument:
    """Parse a ClusterPolicy manifest, dropping server-populated fields.

    Raises:
        ConfigError: If the manifest is not a ClusterPolicy or fails to parse.
    """
    if not isinstance(obj, dict):
        raise ConfigError(f"Expected a mapping, got {type(obj).__name__}")
    kind = obj.get("kind", POLICY_KIND)
    if kind != POLICY_KIND:
        raise ConfigError(f"kind must be '{POLICY_KIND}', got '{kind}'")

    metadata = {
        k: v
        for k, v in (obj.get("metadata") or {}).items()
        if k not in SERVER_METADATA_FIELDS
    }
    spec = obj.get("spec") or {}
    try:
        return PolicyDocument.model_validate({
            "name": metadata.get("name", ""),
            "annotations": metadata.get("annotations") or {},
            "labels": metadata.get("labels") or {},
            **spec,
        })
    except ValidationError as e:
        raise ConfigError(
            f"Invalid policy manifest '{metadata.get('name', '')}': {e}"
        ) from e


def parse_listed(objs: Iterable[dict[str, Any]], cluster: str) -> list[PolicyDocument]:
    """Parse listed manifests, skipping (and logging) any that do not parse."""
    documents: list[PolicyDocument] = []
    for obj in objs:
        try:
            documents.append(from_manifest(obj))
        except ConfigError as e:
            logger.warning("Skipping unparseable %s on %s: %s", POLICY_KIND, cluster, e)
    return documents


def resource_version(obj: dict[str, Any]) -> str | None:
    return (obj.get("metadata") or {}).get("resourceVersion")
