"""Core data models for DriftGuard.

Defines the schemas for:
- Policy documents (what should exist on every cluster)
- Drift events and reports (what diverged, and how badly)
- Remediation results (what was done about it)
- Drift history and statistics
- Fleet sync and consistency results
- Audit records returned by mutating operations
"""

from __future__ import annotations

import enum
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field

# --- Annotations ---

PROVENANCE_ANNOTATION = "driftguard.dev/generated"
DRIFT_SEVERITY_ANNOTATION = "driftguard.dev/drift-severity"
SPEC_ANNOTATION = "driftguard.dev/spec"
TARGET_CLUSTER_ANNOTATION = "driftguard.dev/target-cluster"
MANAGED_BY_ANNOTATION = "driftguard.dev/managed-by"
MANAGED_BY_VALUE = "driftguard"

POLICY_KIND = "ClusterPolicy"


# --- Enums ---


class Severity(enum.StrEnum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return SEVERITY_RANK[self]


SEVERITY_RANK: dict[Severity, int] = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class DriftType(enum.StrEnum):
    POLICY = "policy"
    COMPLIANCE = "compliance"
    CONFIGURATION = "configuration"


class DriftKind(enum.StrEnum):
    MISSING = "missing"
    MODIFIED = "modified"
    EXTRA = "extra"
    NEW_VIOLATION = "new-violation"


class DriftStatus(enum.StrEnum):
    DETECTED = "detected"
    REMEDIATED = "remediated"
    FAILED = "failed"
    MANUAL_REQUIRED = "manual-required"


class CheckStatus(enum.StrEnum):
    PASS = "pass"
    FAIL = "fail"


class ValidationFailureAction(enum.StrEnum):
    ENFORCE = "Enforce"
    AUDIT = "Audit"


class UpdateMode(enum.StrEnum):
    """How an existing document is rewritten: replace it, or keep cluster-only rules."""

    REPLACE = "replace"
    MERGE = "merge"


def as_utc(value: datetime) -> datetime:
    """Treat a naive timestamp as UTC."""
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value


def max_severity(severities: Iterable[Severity]) -> Severity | None:
    """Return the highest severity, or None for an empty iterable."""
    best: Severity | None = None
    for sev in severities:
        if best is None or sev.rank > best.rank:
            best = sev
    return best


# --- Policy Document ---


class _WireModel(BaseModel):
    """Accepts both Python field names and wire (camelCase) aliases.

    Undeclared fields (preconditions, context, failurePolicy, ...) are kept
    so they take part in comparison and survive a round trip.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class ResourceDescription(_WireModel):
    """Resource kinds (and optional names/namespaces) a rule applies to."""

    kinds: list[str] = Field(default_factory=list)
    names: list[str] | None = None
    namespaces: list[str] | None = None


class ResourceFilter(_WireModel):
    resources: ResourceDescription | None = None


class MatchResources(_WireModel):
    """Resource selection for a rule. Exactly one of any/all must be set."""

    match_any: list[ResourceFilter] | None = Field(default=None, alias="any")
    match_all: list[ResourceFilter] | None = Field(default=None, alias="all")


class Validation(_WireModel):
    """Validation block. Exactly one of pattern/anyPattern/deny must be set."""

    message: str | None = None
    pattern: Any = None
    any_pattern: list[Any] | None = Field(default=None, alias="anyPattern")
    deny: dict[str, Any] | None = None


class Mutation(_WireModel):
    patch_strategic_merge: dict[str, Any] | None = Field(
        default=None, alias="patchStrategicMerge",
    )
    patches_json6902: str | None = Field(default=None, alias="patchesJson6902")


class PolicyRule(_WireModel):
    """A single rule within a policy document."""

    name: str
    match: MatchResources = Field(default_factory=MatchResources)
    exclude: MatchResources | None = None
    validation: Validation | None = Field(default=None, alias="validate")
    mutation: Mutation | None = Field(default=None, alias="mutate")


class PolicyDocument(_WireModel):
    """An engine-internal policy document.

    Serialization to the target system's wire format lives in
    ``driftguard.cluster.manifest``; nothing else knows about it.
    """

    name: str
    annotations: dict[str, str] = Field(default_factory=dict)
    labels: dict[str, str] = Field(default_factory=dict)
    validation_failure_action: str | None = Field(
        default=None, alias="validationFailureAction",
    )
    background: bool | None = None
    rules: list[PolicyRule] = Field(default_factory=list)

    def tracked_spec(self) -> dict[str, Any]:
        """The spec subtree that drift detection and consistency compare."""
        return self.model_dump(
            mode="json",
            by_alias=True,
            exclude_none=True,
            exclude={"name", "annotations", "labels"},
        )

    def is_managed(self) -> bool:
        """True if the document carries the DriftGuard provenance tag."""
        return self.annotations.get(PROVENANCE_ANNOTATION) == "true"

    def declared_severity(self, default: Severity = Severity.HIGH) -> Severity:
        raw = self.annotations.get(DRIFT_SEVERITY_ANNOTATION, "")
        try:
            return Severity(raw.lower())
        except ValueError:
            return default

    def rule_names(self) -> list[str]:
        return [r.name for r in self.rules]


# --- Drift ---


class ResourceRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: str
    name: str
    namespace: str | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def path(self) -> str:
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"


class Modification(BaseModel):
    old_value: Any = None
    new_value: Any = None


class DriftDiff(BaseModel):
    """Structured difference between expected and actual state.

    Keys are dotted paths into the compared subtree
    (e.g. ``rules[0].validate.message``).
    """

    added: dict[str, Any] = Field(default_factory=dict)
    removed: dict[str, Any] = Field(default_factory=dict)
    modified: dict[str, Modification] = Field(default_factory=dict)

    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.modified)


class RemediationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    action: str
    status: DriftStatus
    timestamp: datetime
    error: str | None = None
    details: str = ""


class DriftEvent(BaseModel):
    """A single drift detection event.

    Immutable: a remediation outcome is attached by creating a new
    event with ``with_remediation()``.
    """

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    type: DriftType
    severity: Severity
    resource: ResourceRef
    drift_kind: DriftKind
    message: str = ""
    expected: dict[str, Any] | None = None
    actual: dict[str, Any] | None = None
    diff: DriftDiff | None = None
    remediation: RemediationResult | None = None

    def with_remediation(self, result: RemediationResult) -> DriftEvent:
        return self.model_copy(update={"remediation": result})


class CheckResult(BaseModel):
    """Outcome of one compliance check run."""

    name: str
    status: CheckStatus
    severity: Severity
    message: str = ""
    violations: list[str] = Field(default_factory=list)


class SpecInfo(BaseModel):
    name: str = ""
    version: str = ""


class DriftCounts(BaseModel):
    total: int = 0
    policies: int = 0
    compliance: int = 0
    configuration: int = 0


class DriftReport(BaseModel):
    """One detection cycle's aggregate."""

    timestamp: datetime
    spec: SpecInfo = Field(default_factory=SpecInfo)
    detected: bool = False
    severity: Severity | None = None
    types: list[DriftType] = Field(default_factory=list)
    counts: DriftCounts = Field(default_factory=DriftCounts)
    events: list[DriftEvent] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    check_results: list[CheckResult] = Field(default_factory=list)

    @classmethod
    def build(
        cls,
        timestamp: datetime,
        events: list[DriftEvent],
        spec: SpecInfo | None = None,
        warnings: list[str] | None = None,
        check_results: list[CheckResult] | None = None,
    ) -> DriftReport:
        """Assemble a report and derive its summary fields from *events*."""
        present = {e.type for e in events}
        counts = DriftCounts(
            total=len(events),
            policies=sum(1 for e in events if e.type == DriftType.POLICY),
            compliance=sum(1 for e in events if e.type == DriftType.COMPLIANCE),
            configuration=sum(
                1 for e in events if e.type == DriftType.CONFIGURATION
            ),
        )
        return cls(
            timestamp=timestamp,
            spec=spec or SpecInfo(),
            detected=bool(events),
            severity=max_severity(e.severity for e in events),
            types=[t for t in DriftType if t in present],
            counts=counts,
            events=list(events),
            warnings=list(warnings or []),
            check_results=list(check_results or []),
        )

    def events_at_or_above(self, threshold: Severity) -> list[DriftEvent]:
        """Events an alert notifier should act on."""
        return [e for e in self.events if e.severity.rank >= threshold.rank]


class DriftStats(BaseModel):
    total_events: int = 0
    events_by_type: dict[str, int] = Field(default_factory=dict)
    events_by_severity: dict[str, int] = Field(default_factory=dict)
    remediation_success_rate: float = 0.0
    first_event: datetime | None = None
    last_event: datetime | None = None


class DriftHistory(BaseModel):
    events: list[DriftEvent] = Field(default_factory=list)
    stats: DriftStats = Field(default_factory=DriftStats)


# --- Cluster ---


class ClusterInfo(BaseModel):
    """Metadata about a resolved cluster handle."""

    name: str
    uid: str = ""
    api_server_url: str = ""
    version: str = ""
    is_local: bool = False
    allow_enforcement: bool = True


# --- Audit ---


class AuditRecord(BaseModel):
    """An audit value returned by a mutating (or would-be mutating) operation."""

    record_id: str
    timestamp: datetime
    operation: str
    cluster: str = ""
    resource: str = ""
    status: str
    detail: str = ""
    error: str | None = None
    dry_run: bool = False


# --- Remediation ---


class RemediationSummary(BaseModel):
    """Aggregate result of remediating one report."""

    dry_run: bool = False
    remediated: int = 0
    failed: int = 0
    manual_required: int = 0
    planned: int = 0
    skipped: int = 0
    events: list[DriftEvent] = Field(default_factory=list)
    errors: dict[str, str] = Field(default_factory=dict)
    audit: list[AuditRecord] = Field(default_factory=list)


# --- Fleet sync ---


class SyncOutcome(BaseModel):
    cluster: str
    policy: str
    action: str
    success: bool
    error: str | None = None


class TargetFailure(BaseModel):
    cluster: str
    error: str


class FleetSyncResult(BaseModel):
    policy: str
    total: int = 0
    success_count: int = 0
    succeeded: list[str] = Field(default_factory=list)
    failures: list[TargetFailure] = Field(default_factory=list)
    audit: list[AuditRecord] = Field(default_factory=list)

    @property
    def partial(self) -> bool:
        """Some, but not all, targets failed."""
        return bool(self.failures) and self.success_count > 0

    @property
    def all_failed(self) -> bool:
        return self.total > 0 and self.success_count == 0


class InconsistencyKind(enum.StrEnum):
    MISSING = "missing"
    DIVERGENT = "divergent"
    UNREACHABLE = "unreachable"
    INVALID = "invalid"


class Inconsistency(BaseModel):
    cluster: str
    kind: InconsistencyKind
    message: str
    diff: DriftDiff | None = None


class ConsistencyReport(BaseModel):
    policy: str
    baseline: str | None = None
    checked: list[str] = Field(default_factory=list)
    inconsistencies: list[Inconsistency] = Field(default_factory=list)

    @property
    def consistent(self) -> bool:
        return not self.inconsistencies
