"""Cluster specification schema.

The specification is the source of truth for desired policy documents and
compliance checks. It is read-only input to every detection cycle.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from driftguard.models import SpecInfo


class _SpecModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class FieldRequirement(_SpecModel):
    """A required or forbidden container field."""

    key: str
    value: Any = None
    exists: bool | None = None


class ContainerSpec(_SpecModel):
    required: list[FieldRequirement] = Field(default_factory=list)
    forbidden: list[FieldRequirement] = Field(default_factory=list)


class ImageSpec(_SpecModel):
    allowed_registries: list[str] = Field(default_factory=list, alias="allowedRegistries")
    blocked_registries: list[str] = Field(default_factory=list, alias="blockedRegistries")
    require_digests: bool = Field(default=False, alias="requireDigests")
    require_signatures: bool = Field(default=False, alias="requireSignatures")


class WorkloadsSpec(_SpecModel):
    containers: ContainerSpec | None = None
    images: ImageSpec | None = None


class KubernetesSpec(_SpecModel):
    min_version: str = Field(default="", alias="minVersion")
    max_version: str = Field(default="", alias="maxVersion")


class PodSecuritySpec(_SpecModel):
    enforce: str = ""
    audit: str = ""
    warn: str = ""


class RBACRule(_SpecModel):
    api_group: str = Field(default="", alias="apiGroup")
    resource: str
    verbs: list[str] = Field(default_factory=list)


class RBACSpec(_SpecModel):
    minimum_rules: list[RBACRule] = Field(default_factory=list, alias="minimumRules")
    forbidden_rules: list[RBACRule] = Field(default_factory=list, alias="forbiddenRules")


class SpecFields(_SpecModel):
    kubernetes: KubernetesSpec = Field(default_factory=KubernetesSpec)
    pod_security: PodSecuritySpec | None = Field(default=None, alias="podSecurity")
    workloads: WorkloadsSpec | None = None
    rbac: RBACSpec | None = None
    admission: dict[str, Any] | None = None
    compliance: dict[str, Any] | None = None


class SpecMetadata(_SpecModel):
    name: str
    version: str = ""
    description: str = ""
    labels: dict[str, str] = Field(default_factory=dict)


class ClusterSpecification(_SpecModel):
    api_version: str = Field(default="driftguard.dev/v1", alias="apiVersion")
    kind: str = "ClusterSpecification"
    metadata: SpecMetadata
    spec: SpecFields = Field(default_factory=SpecFields)

    @property
    def name(self) -> str:
        return self.metadata.name

    def info(self) -> SpecInfo:
        return SpecInfo(name=self.metadata.name, version=self.metadata.version)

    def requires(self, key: str, value: Any = True) -> bool:
        """True if containers must have *key* set to *value*."""
        return any(_matches(r, key, value) for r in self._containers().required)

    def requires_existence(self, key: str) -> bool:
        return any(r.key == key and r.exists for r in self._containers().required)

    def forbids(self, key: str, value: Any = True) -> bool:
        """True if containers must not have *key* set to *value*."""
        return any(_matches(r, key, value) for r in self._containers().forbidden)

    def images(self) -> ImageSpec:
        if self.spec.workloads is None or self.spec.workloads.images is None:
            return ImageSpec()
        return self.spec.workloads.images

    def _containers(self) -> ContainerSpec:
        if self.spec.workloads is None or self.spec.workloads.containers is None:
            return ContainerSpec()
        return self.spec.workloads.containers


def _matches(req: FieldRequirement, key: str, value: Any) -> bool:
    # YAML authors write both `true` and `"true"`
    return req.key == key and str(req.value).lower() == str(value).lower()
