"""Drift detector.

Diffs desired policy documents and compliance posture against one
cluster's actual state and emits typed drift events:

- Policy drift: ``missing`` (desired document absent), ``modified``
  (tracked spec differs), ``extra`` (a DriftGuard-managed document on the
  cluster that is no longer desired).
- Compliance drift: ``new-violation`` when a check that previously passed
  now fails.

Each cycle re-reads current state. A failed read skips that resource with a
warning; the cycle only fails when every read failed. Events are sorted by
(severity desc, resource path asc) so identical inputs give identical
reports.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from driftguard.cluster.client import ClusterClient
from driftguard.drift.checks import ComplianceCheck
from driftguard.drift.differ import compute_diff
from driftguard.errors import ClusterUnreachableError, ConfigError, TransientClusterError
from driftguard.models import (
    POLICY_KIND,
    CheckResult,
    CheckStatus,
    DriftEvent,
    DriftKind,
    DriftReport,
    DriftType,
    PolicyDocument,
    ResourceRef,
    Severity,
    SpecInfo,
    UpdateMode,
)

logger = logging.getLogger(__name__)

CHECK_KIND = "ComplianceCheck"
MODIFIED_SEVERITY = Severity.MEDIUM
EXTRA_SEVERITY = Severity.LOW
DEFAULT_ENABLED_TYPES = frozenset({DriftType.POLICY, DriftType.COMPLIANCE})


def snapshot(document: PolicyDocument) -> dict[str, Any]:
    """Plain-data snapshot of a document for an event's expected/actual."""
    return document.model_dump(mode="json", by_alias=True, exclude_none=True)


def comparable(
    desired: PolicyDocument,
    actual: PolicyDocument,
    update_mode: UpdateMode = UpdateMode.REPLACE,
) -> PolicyDocument:
    """The part of *actual* that remediation in *update_mode* would rewrite.

    Merge keeps rules that only exist on the cluster, so they are not drift.
    """
    if update_mode != UpdateMode.MERGE:
        return actual
    names = set(desired.rule_names())
    return actual.model_copy(update={"rules": [r for r in actual.rules if r.name in names]})


def sort_events(events: Iterable[DriftEvent]) -> list[DriftEvent]:
    return sorted(
        events,
        key=lambda e: (-e.severity.rank, e.resource.path, str(e.drift_kind)),
    )


@dataclass
class _Cycle:
    """Per-cycle accumulator: events, warnings and read accounting."""

    now: datetime
    cluster: str
    events: list[DriftEvent] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    check_results: list[CheckResult] = field(default_factory=list)
    reads: int = 0
    failed_reads: int = 0

    def read_failed(self, resource: str, exc: Exception) -> None:
        self.failed_reads += 1
        message = f"skipped {resource}: {exc}"
        self.warnings.append(message)
        logger.warning("Drift read failed on %s: %s", self.cluster, message)

    def unparseable(self, resource: str, exc: Exception) -> None:
        message = f"skipped {resource}: invalid manifest: {exc}"
        self.warnings.append(message)
        logger.warning("Drift check on %s: %s", self.cluster, message)


class Detector:
    """Computes a DriftReport for one cluster.

    Stateless between calls: the compliance baseline is passed in and the
    report's ``check_results`` are what the caller feeds into the next cycle.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or (lambda: datetime.now(tz=UTC))

    def detect(
        self,
        desired: Sequence[PolicyDocument],
        checks: Sequence[ComplianceCheck],
        client: ClusterClient,
        *,
        spec: SpecInfo | None = None,
        previous: Mapping[str, CheckStatus] | None = None,
        enabled_types: Iterable[DriftType] | None = None,
        update_mode: UpdateMode = UpdateMode.REPLACE,
    ) -> DriftReport:
        """Detect drift between desired state and *client*'s actual state.

        Args:
            desired: The authoritative policy documents.
            checks: Compliance checks to re-run.
            client: Read surface of the cluster under inspection.
            spec: Name/version of the specification, copied into the report.
            previous: Last known status per check name. A check without an
                entry is treated as previously passing.
            enabled_types: Drift types to detect (default: policy, compliance).
            update_mode: How remediation will write documents. Under
                ``merge``, rules present only on the cluster are not drift.

        Raises:
            ClusterUnreachableError: If every read in the cycle failed.
        """
        types = frozenset(enabled_types) if enabled_types is not None else DEFAULT_ENABLED_TYPES
        cycle = _Cycle(now=self._clock(), cluster=client.name)

        if DriftType.POLICY in types:
            self._detect_policy_drift(desired, client, update_mode, cycle)
        if DriftType.COMPLIANCE in types:
            self._detect_compliance_drift(checks, client, previous or {}, cycle)

        if cycle.reads and cycle.failed_reads == cycle.reads:
            raise ClusterUnreachableError(
                f"all {cycle.reads} reads failed on cluster {client.name}",
                cluster=client.name,
            )

        report = DriftReport.build(
            timestamp=cycle.now,
            events=sort_events(cycle.events),
            spec=spec,
            warnings=cycle.warnings,
            check_results=cycle.check_results,
        )
        if report.detected:
            logger.info(
                "Detected %d drift events on %s (severity: %s)",
                report.counts.total,
                client.name,
                report.severity,
            )
        return report

    # --- Policy drift ---

    def _detect_policy_drift(
        self,
        desired: Sequence[PolicyDocument],
        client: ClusterClient,
        update_mode: UpdateMode,
        cycle: _Cycle,
    ) -> None:
        desired_names = {d.name for d in desired}

        for doc in desired:
            cycle.reads += 1
            try:
                actual = client.get_policy(doc.name)
            except TransientClusterError as exc:
                cycle.read_failed(f"{POLICY_KIND}/{doc.name}", exc)
                continue
            except ConfigError as exc:
                cycle.unparseable(f"{POLICY_KIND}/{doc.name}", exc)
                continue

            if actual is None:
                cycle.events.append(self._missing(doc, cycle.now))
                continue

            diff = compute_diff(
                doc.tracked_spec(), comparable(doc, actual, update_mode).tracked_spec(),
            )
            if not diff.is_empty():
                cycle.events.append(DriftEvent(
                    timestamp=cycle.now,
                    type=DriftType.POLICY,
                    severity=MODIFIED_SEVERITY,
                    resource=ResourceRef(kind=POLICY_KIND, name=doc.name),
                    drift_kind=DriftKind.MODIFIED,
                    message=f"{POLICY_KIND} '{doc.name}' differs from the desired spec",
                    expected=snapshot(doc),
                    actual=snapshot(actual),
                    diff=diff,
                ))

        cycle.reads += 1
        try:
            deployed = client.list_policies()
        except TransientClusterError as exc:
            cycle.read_failed(f"{POLICY_KIND}/*", exc)
            return
        except ConfigError as exc:
            cycle.unparseable(f"{POLICY_KIND}/*", exc)
            return

        for actual in deployed:
            if actual.is_managed() and actual.name not in desired_names:
                cycle.events.append(DriftEvent(
                    timestamp=cycle.now,
                    type=DriftType.POLICY,
                    severity=EXTRA_SEVERITY,
                    resource=ResourceRef(kind=POLICY_KIND, name=actual.name),
                    drift_kind=DriftKind.EXTRA,
                    message=f"{POLICY_KIND} '{actual.name}' is managed but not desired",
                    actual=snapshot(actual),
                ))

    def _missing(self, doc: PolicyDocument, now: datetime) -> DriftEvent:
        return DriftEvent(
            timestamp=now,
            type=DriftType.POLICY,
            severity=doc.declared_severity(),
            resource=ResourceRef(kind=POLICY_KIND, name=doc.name),
            drift_kind=DriftKind.MISSING,
            message=f"{POLICY_KIND} '{doc.name}' is missing from the cluster",
            expected=snapshot(doc),
        )

    # --- Compliance drift ---

    def _detect_compliance_drift(
        self,
        checks: Sequence[ComplianceCheck],
        client: ClusterClient,
        previous: Mapping[str, CheckStatus],
        cycle: _Cycle,
    ) -> None:
        for check in checks:
            cycle.reads += 1
            try:
                result = check.run(client)
            except TransientClusterError as exc:
                cycle.read_failed(f"{CHECK_KIND}/{check.name}", exc)
                continue

            cycle.check_results.append(result)
            was = previous.get(check.name, CheckStatus.PASS)
            if was == CheckStatus.PASS and result.status == CheckStatus.FAIL:
                cycle.events.append(DriftEvent(
                    timestamp=cycle.now,
                    type=DriftType.COMPLIANCE,
                    severity=check.severity,
                    resource=ResourceRef(kind=CHECK_KIND, name=check.name),
                    drift_kind=DriftKind.NEW_VIOLATION,
                    message=f"Compliance check '{check.name}' started failing: {result.message}",
                    expected={"status": str(CheckStatus.PASS)},
                    actual={
                        "status": str(result.status),
                        "violations": list(result.violations),
                    },
                ))
