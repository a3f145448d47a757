"""Shared fixtures: a fixed clock, a sample specification and workloads."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest
import yaml

from driftguard.cluster.client import InMemoryClusterClient
from driftguard.models import PolicyDocument
from driftguard.policy.compiler import PolicyCompiler
from driftguard.specification import ClusterSpecification

# Monday
FIXED_TIME = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)

SPEC_DATA: dict[str, Any] = {
    "apiVersion": "driftguard.dev/v1",
    "kind": "ClusterSpecification",
    "metadata": {"name": "prod-baseline", "version": "1.2.0"},
    "spec": {
        "workloads": {
            "containers": {
                "required": [
                    {"key": "securityContext.runAsNonRoot", "value": True},
                    {"key": "securityContext.allowPrivilegeEscalation", "value": False},
                    {"key": "resources.limits.memory", "exists": True},
                ],
                "forbidden": [
                    {"key": "securityContext.privileged", "value": True},
                    {"key": "hostNetwork", "value": True},
                ],
            },
            "images": {
                "blockedRegistries": ["docker.io"],
                "allowedRegistries": ["registry.example.com"],
            },
        },
    },
}

EXPECTED_POLICIES = [
    "require-run-as-non-root",
    "disallow-privilege-escalation",
    "require-resource-limits",
    "disallow-privileged-containers",
    "disallow-host-namespaces",
    "block-image-registries",
    "restrict-image-registries",
]


def make_pod(
    name: str = "web-0",
    namespace: str = "default",
    image: str = "registry.example.com/web:1.0",
    **security: Any,
) -> dict[str, Any]:
    """A pod that satisfies every requirement unless overridden."""
    context = {"runAsNonRoot": True, "allowPrivilegeEscalation": False}
    context.update(security)
    return {
        "metadata": {"name": name, "namespace": namespace},
        "spec": {
            "containers": [{
                "name": "app",
                "image": image,
                "securityContext": context,
                "resources": {"limits": {"memory": "256Mi", "cpu": "500m"}},
            }],
        },
    }


def with_message(doc: PolicyDocument, message: str) -> PolicyDocument:
    """Copy of *doc* whose first rule has a different validation message."""
    data = doc.model_dump(mode="json", by_alias=True, exclude_none=True)
    data["rules"][0]["validate"]["message"] = message
    return PolicyDocument.model_validate(data)


def with_extra_rule(doc: PolicyDocument, rule_name: str = "extra-rule") -> PolicyDocument:
    data = doc.model_dump(mode="json", by_alias=True, exclude_none=True)
    extra = dict(data["rules"][0], name=rule_name)
    data["rules"].append(extra)
    return PolicyDocument.model_validate(data)


@pytest.fixture()
def clock():
    return lambda: FIXED_TIME


@pytest.fixture()
def spec() -> ClusterSpecification:
    return ClusterSpecification.model_validate(SPEC_DATA)


@pytest.fixture()
def desired(spec: ClusterSpecification) -> list[PolicyDocument]:
    return PolicyCompiler().compile(spec)


@pytest.fixture()
def in_sync(desired: list[PolicyDocument]) -> InMemoryClusterClient:
    """A cluster whose actual state equals the desired state."""
    return InMemoryClusterClient(name="prod-east", policies=desired, pods=[make_pod()])


@pytest.fixture()
def spec_file(tmp_path: Path) -> Path:
    path = tmp_path / "cluster-spec.yaml"
    path.write_text(yaml.safe_dump(SPEC_DATA), encoding="utf-8")
    return path
