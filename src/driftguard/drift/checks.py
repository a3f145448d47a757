"""Workload compliance checks.

Each check evaluates every pod on a cluster against one specification
requirement and reports pass/fail with the offending pods. The checks
mirror the policy documents the compiler emits: a policy prevents new
violations at admission time, a check finds the ones already running.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from driftguard.cluster.client import ClusterClient
from driftguard.models import CheckResult, CheckStatus, Severity
from driftguard.policy.compiler import enabled_mappings
from driftguard.specification import ClusterSpecification

DEFAULT_EXEMPT_NAMESPACES = ("kube-system",)

Pod = dict[str, Any]
PodPredicate = Callable[[Pod, ClusterSpecification], list[str]]


@runtime_checkable
class ComplianceCheck(Protocol):
    """Anything with a name, a declared severity, and ``run(client)``."""

    name: str
    severity: Severity

    def run(self, client: ClusterClient) -> CheckResult: ...


def _containers(pod: Pod) -> Iterator[dict[str, Any]]:
    spec = pod.get("spec") or {}
    yield from spec.get("initContainers") or []
    yield from spec.get("containers") or []


def _sc(container: dict[str, Any]) -> dict[str, Any]:
    return container.get("securityContext") or {}


def _non_root(pod: Pod, spec: ClusterSpecification) -> list[str]:
    pod_level = ((pod.get("spec") or {}).get("securityContext") or {}).get("runAsNonRoot")
    return [
        c.get("name", "?")
        for c in _containers(pod)
        if _sc(c).get("runAsNonRoot", pod_level) is not True
    ]


def _privilege_escalation(pod: Pod, spec: ClusterSpecification) -> list[str]:
    return [
        c.get("name", "?")
        for c in _containers(pod)
        if _sc(c).get("allowPrivilegeEscalation") is not False
    ]


def _resource_limits(pod: Pod, spec: ClusterSpecification) -> list[str]:
    out: list[str] = []
    for c in _containers(pod):
        limits = (c.get("resources") or {}).get("limits") or {}
        if not limits.get("memory") or not limits.get("cpu"):
            out.append(c.get("name", "?"))
    return out


def _privileged(pod: Pod, spec: ClusterSpecification) -> list[str]:
    return [c.get("name", "?") for c in _containers(pod) if _sc(c).get("privileged") is True]


def _host_namespaces(pod: Pod, spec: ClusterSpecification) -> list[str]:
    pod_spec = pod.get("spec") or {}
    return [k for k in ("hostNetwork", "hostPID", "hostIPC") if pod_spec.get(k) is True]


def _digests(pod: Pod, spec: ClusterSpecification) -> list[str]:
    return [c.get("image", "?") for c in _containers(pod) if "@sha256:" not in c.get("image", "")]


def _blocked(pod: Pod, spec: ClusterSpecification) -> list[str]:
    blocked = spec.images().blocked_registries
    return [
        c.get("image", "?")
        for c in _containers(pod)
        if any(c.get("image", "").startswith(f"{r}/") for r in blocked)
    ]


def _allowed(pod: Pod, spec: ClusterSpecification) -> list[str]:
    allowed = spec.images().allowed_registries
    return [
        c.get("image", "?")
        for c in _containers(pod)
        if not any(c.get("image", "").startswith(f"{r}/") for r in allowed)
    ]


# policy name -> (check severity, predicate)
CHECK_MAP: dict[str, tuple[Severity, PodPredicate]] = {
    "require-run-as-non-root": (Severity.HIGH, _non_root),
    "disallow-privilege-escalation": (Severity.HIGH, _privilege_escalation),
    "require-resource-limits": (Severity.MEDIUM, _resource_limits),
    "disallow-privileged-containers": (Severity.CRITICAL, _privileged),
    "disallow-host-namespaces": (Severity.CRITICAL, _host_namespaces),
    "require-image-digests": (Severity.MEDIUM, _digests),
    "block-image-registries": (Severity.HIGH, _blocked),
    "restrict-image-registries": (Severity.MEDIUM, _allowed),
}


@dataclass
class WorkloadCheck:
    """A compliance check evaluated against every pod on a cluster."""

    name: str
    severity: Severity
    description: str
    spec: ClusterSpecification
    predicate: PodPredicate
    exempt_namespaces: tuple[str, ...] = field(default=DEFAULT_EXEMPT_NAMESPACES)

    def run(self, client: ClusterClient) -> CheckResult:
        violations: list[str] = []
        for pod in client.list_pods():
            meta = pod.get("metadata") or {}
            namespace = meta.get("namespace", "default")
            if namespace in self.exempt_namespaces:
                continue
            offenders = self.predicate(pod, self.spec)
            if offenders:
                violations.append(
                    f"{namespace}/{meta.get('name', '?')}: {', '.join(offenders)}"
                )

        if violations:
            return CheckResult(
                name=self.name,
                status=CheckStatus.FAIL,
                severity=self.severity,
                message=f"{self.description} ({len(violations)} pods in violation)",
                violations=sorted(violations),
            )
        return CheckResult(
            name=self.name,
            status=CheckStatus.PASS,
            severity=self.severity,
            message=self.description,
        )


def build_checks(
    spec: ClusterSpecification,
    exempt_namespaces: tuple[str, ...] = DEFAULT_EXEMPT_NAMESPACES,
) -> list[WorkloadCheck]:
    """One workload check per requirement the specification enables."""
    checks: list[WorkloadCheck] = []
    for mapping in enabled_mappings(spec):
        severity, predicate = CHECK_MAP[mapping.name]
        checks.append(WorkloadCheck(
            name=mapping.name,
            severity=severity,
            description=mapping.description,
            spec=spec,
            predicate=predicate,
            exempt_namespaces=exempt_namespaces,
        ))
    return checks
