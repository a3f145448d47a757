"""PolicyCompiler: turns a cluster specification into policy documents.

Purely structural, no cluster I/O. Each specification requirement maps to
exactly one document through the fixed ``POLICY_MAP`` table; documents are
emitted in table order.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from driftguard.models import (
    PROVENANCE_ANNOTATION,
    SPEC_ANNOTATION,
    MatchResources,
    PolicyDocument,
    PolicyRule,
    ResourceDescription,
    ResourceFilter,
    Validation,
    ValidationFailureAction,
)
from driftguard.policy.validator import PolicyValidator
from driftguard.specification import ClusterSpecification

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PolicyMapping:
    """Maps one specification requirement to one policy document."""

    name: str
    title: str
    category: str
    severity: str
    description: str
    rule_name: str
    message: str
    applies: Callable[[ClusterSpecification], bool]
    pattern: Callable[[ClusterSpecification], dict[str, Any]]


def _containers(fields: dict[str, Any]) -> dict[str, Any]:
    return {"spec": {"containers": [fields]}}


def _blocked_pattern(spec: ClusterSpecification) -> dict[str, Any]:
    expr = " & ".join(f"!{r}/*" for r in spec.images().blocked_registries)
    return _containers({"image": expr})


def _allowed_pattern(spec: ClusterSpecification) -> dict[str, Any]:
    expr = " | ".join(f"{r}/*" for r in spec.images().allowed_registries)
    return _containers({"image": expr})


POLICY_MAP: tuple[PolicyMapping, ...] = (
    PolicyMapping(
        name="require-run-as-non-root",
        title="Require runAsNonRoot",
        category="Pod Security Standards (Restricted)",
        severity="medium",
        description="Containers must run as non-root users",
        rule_name="check-run-as-non-root",
        message="Containers must run as non-root (securityContext.runAsNonRoot must be true)",
        applies=lambda s: s.requires("securityContext.runAsNonRoot", True),
        pattern=lambda s: {"spec": {"securityContext": {"runAsNonRoot": True}}},
    ),
    PolicyMapping(
        name="disallow-privilege-escalation",
        title="Disallow Privilege Escalation",
        category="Pod Security Standards (Restricted)",
        severity="medium",
        description="Privilege escalation must be disabled",
        rule_name="check-allow-privilege-escalation",
        message=(
            "Privilege escalation is disallowed "
            "(securityContext.allowPrivilegeEscalation must be false)"
        ),
        applies=lambda s: s.requires("securityContext.allowPrivilegeEscalation", False),
        pattern=lambda s: _containers(
            {"securityContext": {"allowPrivilegeEscalation": False}}
        ),
    ),
    PolicyMapping(
        name="require-resource-limits",
        title="Require Resource Limits",
        category="Best Practices",
        severity="medium",
        description="All containers must have memory and CPU limits defined",
        rule_name="check-resource-limits",
        message="All containers must have memory and CPU limits",
        applies=lambda s: s.requires_existence("resources.limits.memory"),
        pattern=lambda s: _containers(
            {"resources": {"limits": {"memory": "?*", "cpu": "?*"}}}
        ),
    ),
    PolicyMapping(
        name="disallow-privileged-containers",
        title="Disallow Privileged Containers",
        category="Pod Security Standards (Baseline)",
        severity="high",
        description="Privileged containers are not allowed",
        rule_name="check-privileged",
        message="Privileged containers are not allowed",
        applies=lambda s: s.forbids("securityContext.privileged", True),
        pattern=lambda s: _containers(
            {"=(securityContext)": {"=(privileged)": False}}
        ),
    ),
    PolicyMapping(
        name="disallow-host-namespaces",
        title="Disallow Host Namespaces",
        category="Pod Security Standards (Baseline)",
        severity="high",
        description="Host namespaces (hostNetwork, hostPID, hostIPC) are not allowed",
        rule_name="check-host-namespaces",
        message="Host namespaces are not allowed",
        applies=lambda s: s.forbids("hostNetwork", True),
        pattern=lambda s: {
            "spec": {"=(hostNetwork)": False, "=(hostPID)": False, "=(hostIPC)": False}
        },
    ),
    PolicyMapping(
        name="require-image-digests",
        title="Require Image Digests",
        category="Supply Chain Security",
        severity="medium",
        description="Images must use digests (not tags) for immutability",
        rule_name="check-image-digest",
        message="Images must use digests (e.g., image@sha256:...) not tags",
        applies=lambda s: s.images().require_digests,
        pattern=lambda s: _containers({"image": "*@sha256:*"}),
    ),
    PolicyMapping(
        name="block-image-registries",
        title="Block Specific Image Registries",
        category="Supply Chain Security",
        severity="high",
        description="Images from blocked registries are not allowed",
        rule_name="block-registries",
        message="Images from blocked registries are not allowed",
        applies=lambda s: bool(s.images().blocked_registries),
        pattern=_blocked_pattern,
    ),
    PolicyMapping(
        name="restrict-image-registries",
        title="Restrict Image Registries",
        category="Supply Chain Security",
        severity="medium",
        description="Images must come from an allowed registry",
        rule_name="allowed-registries",
        message="Images must come from an allowed registry",
        applies=lambda s: bool(s.images().allowed_registries),
        pattern=_allowed_pattern,
    ),
)


def enabled_mappings(spec: ClusterSpecification) -> list[PolicyMapping]:
    """Mappings whose requirement the specification turns on, in table order."""
    return [m for m in POLICY_MAP if m.applies(spec)]


class PolicyCompiler:
    """Compiles a ClusterSpecification into validated PolicyDocuments."""

    def __init__(
        self,
        validator: PolicyValidator | None = None,
        failure_action: ValidationFailureAction = ValidationFailureAction.ENFORCE,
    ) -> None:
        self._validator = validator or PolicyValidator()
        self._failure_action = failure_action

    def compile(self, spec: ClusterSpecification) -> list[PolicyDocument]:
        """Return one document per enabled requirement.

        Raises:
            ConfigError: If a compiled document fails structural validation.
        """
        documents = [self._build(m, spec) for m in enabled_mappings(spec)]
        self._validator.validate_or_raise(documents)
        logger.debug(
            "Compiled %d policy documents from specification %s",
            len(documents),
            spec.name,
        )
        return documents

    def _build(self, mapping: PolicyMapping, spec: ClusterSpecification) -> PolicyDocument:
        description = mapping.description
        if mapping.name == "block-image-registries":
            description = f"Block images from: {', '.join(spec.images().blocked_registries)}"
        return PolicyDocument(
            name=mapping.name,
            annotations={
                "policies.kyverno.io/title": mapping.title,
                "policies.kyverno.io/category": mapping.category,
                "policies.kyverno.io/severity": mapping.severity,
                "policies.kyverno.io/description": description,
                PROVENANCE_ANNOTATION: "true",
                SPEC_ANNOTATION: spec.name,
            },
            validation_failure_action=str(self._failure_action),
            background=True,
            rules=[
                PolicyRule(
                    name=mapping.rule_name,
                    match=MatchResources(
                        match_any=[
                            ResourceFilter(resources=ResourceDescription(kinds=["Pod"]))
                        ],
                    ),
                    validation=Validation(
                        message=mapping.message,
                        pattern=mapping.pattern(spec),
                    ),
                )
            ],
        )
