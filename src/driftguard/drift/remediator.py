"""Remediator: applies corrective actions for a drift report to one cluster.

State machine per event::

    detected -> remediated | failed | manual-required

- ``missing``  -> create the expected document
- ``modified`` -> update (replace, or merge keeping cluster-only rules)
- ``extra``    -> report only, unless ``force`` is set, then delete
- ``new-violation`` and any non-policy type -> manual-required

Dry-run short-circuits every branch to a "would ..." result without any
cluster mutation. Events are processed independently: one failure never
blocks the rest of the batch. Outcomes are attached to new event values;
the input report is never modified.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import UTC, datetime

from pydantic import BaseModel, Field

from driftguard.audit.logger import build_record
from driftguard.cluster.client import ClusterClient
from driftguard.drift.checks import ComplianceCheck
from driftguard.drift.detector import Detector
from driftguard.drift.strategy import RemediationStrategy
from driftguard.errors import TransientClusterError
from driftguard.models import (
    POLICY_KIND,
    AuditRecord,
    CheckStatus,
    ClusterInfo,
    DriftEvent,
    DriftKind,
    DriftReport,
    DriftStatus,
    DriftType,
    PolicyDocument,
    RemediationResult,
    RemediationSummary,
    SpecInfo,
    UpdateMode,
)

logger = logging.getLogger(__name__)


class RemediateOptions(BaseModel):
    """Options for one remediation pass.

    ``types=None`` remediates every drift type (non-policy types still end up
    manual-required). ``update_mode=replace`` discards rules that exist on the
    cluster but not in the desired document; ``merge`` keeps them.
    """

    dry_run: bool = False
    force: bool = False
    types: list[DriftType] | None = None
    update_mode: UpdateMode = UpdateMode.REPLACE
    strategy: RemediationStrategy = Field(default_factory=RemediationStrategy)


class _Outcome(Exception):
    """Carries a failed action out of a remediation branch."""

    def __init__(self, action: str, error: str) -> None:
        super().__init__(error)
        self.action = action
        self.error = error


class Remediator:
    """Remediates the events of a DriftReport against one cluster."""

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or (lambda: datetime.now(tz=UTC))

    def remediate(
        self,
        report: DriftReport,
        client: ClusterClient,
        options: RemediateOptions | None = None,
        cluster: ClusterInfo | None = None,
    ) -> RemediationSummary:
        """Remediate every event in *report*.

        Never raises for per-event failures; those are counted and recorded
        in the summary's ``errors`` keyed by resource path.
        """
        options = options or RemediateOptions()
        cluster = cluster or ClusterInfo(name=client.name)
        summary = RemediationSummary(dry_run=options.dry_run)

        for event in report.events:
            if not self._type_enabled(event.type, options.types) or (
                event.remediation is not None
                and event.remediation.status == DriftStatus.REMEDIATED
            ):
                summary.skipped += 1
                summary.events.append(event)
                continue

            try:
                result, record = self._remediate_event(event, client, options, cluster)
            except Exception as exc:
                logger.exception("Remediation of %s aborted", event.resource.path)
                result = RemediationResult(
                    action="remediate",
                    status=DriftStatus.FAILED,
                    timestamp=self._clock(),
                    error=str(exc),
                )
                record = self._record(event, result, cluster, dry_run=options.dry_run)
            summary.events.append(event.with_remediation(result))
            if record is not None:
                summary.audit.append(record)

            if result.status == DriftStatus.REMEDIATED:
                summary.remediated += 1
            elif result.status == DriftStatus.FAILED:
                summary.failed += 1
                summary.errors[event.resource.path] = result.error or "unknown error"
            elif result.status == DriftStatus.MANUAL_REQUIRED:
                summary.manual_required += 1
            else:
                summary.planned += 1

        logger.info(
            "Remediation on %s%s: %d remediated, %d failed, %d manual, %d planned",
            cluster.name,
            " (dry-run)" if options.dry_run else "",
            summary.remediated,
            summary.failed,
            summary.manual_required,
            summary.planned,
        )
        return summary

    def remediate_all(
        self,
        detector: Detector,
        desired: Sequence[PolicyDocument],
        checks: Sequence[ComplianceCheck],
        client: ClusterClient,
        options: RemediateOptions | None = None,
        cluster: ClusterInfo | None = None,
        *,
        spec: SpecInfo | None = None,
        previous: Mapping[str, CheckStatus] | None = None,
    ) -> tuple[DriftReport, RemediationSummary]:
        """Detect drift, then remediate it, in one call."""
        options = options or RemediateOptions()
        report = detector.detect(
            desired,
            checks,
            client,
            spec=spec,
            previous=previous,
            enabled_types=options.types,
            update_mode=options.update_mode,
        )
        if not report.detected:
            return report, RemediationSummary(dry_run=options.dry_run)
        return report, self.remediate(report, client, options, cluster)

    # --- Per-event ---

    def _remediate_event(
        self,
        event: DriftEvent,
        client: ClusterClient,
        options: RemediateOptions,
        cluster: ClusterInfo,
    ) -> tuple[RemediationResult, AuditRecord | None]:
        now = self._clock()

        if event.type == DriftType.COMPLIANCE:
            return self._manual(now, "Compliance drift requires manual intervention"), None
        if event.type != DriftType.POLICY:
            return self._manual(
                now, f"Remediation not supported for type {event.type}", action="skipped",
            ), None
        if not cluster.allow_enforcement:
            return self._manual(
                now, f"Enforcement is not allowed on cluster {cluster.name}",
            ), None

        reason = options.strategy.blocked_reason(event, now)
        if reason is not None:
            return self._manual(now, reason), None

        name = event.resource.name
        if event.drift_kind == DriftKind.EXTRA and not options.force:
            return self._manual(
                now,
                f"Extra policy '{name}' not deleted (use --force to delete)",
                action="skip",
            ), None

        action = _ACTIONS.get(event.drift_kind)
        if action is None:
            return self._manual(now, f"Unknown drift kind: {event.drift_kind}"), None

        if options.dry_run:
            result = RemediationResult(
                action=action,
                status=DriftStatus.DETECTED,
                timestamp=now,
                details=f"Would {action} {POLICY_KIND} '{name}' (dry-run)",
            )
            return result, self._record(event, result, cluster, dry_run=True)

        try:
            details = self._apply(action, event, client, options)
        except _Outcome as exc:
            result = RemediationResult(
                action=exc.action, status=DriftStatus.FAILED, timestamp=now, error=exc.error,
            )
        except TransientClusterError as exc:
            logger.warning("Remediation of %s on %s failed: %s", event.resource.path, cluster.name, exc)
            result = RemediationResult(
                action=action, status=DriftStatus.FAILED, timestamp=now, error=str(exc),
            )
        except Exception as exc:
            logger.exception("Unexpected error remediating %s", event.resource.path)
            result = RemediationResult(
                action=action, status=DriftStatus.FAILED, timestamp=now, error=str(exc),
            )
        else:
            result = RemediationResult(
                action=action, status=DriftStatus.REMEDIATED, timestamp=now, details=details,
            )
        return result, self._record(event, result, cluster, dry_run=False)

    def _apply(
        self,
        action: str,
        event: DriftEvent,
        client: ClusterClient,
        options: RemediateOptions,
    ) -> str:
        name = event.resource.name
        if action == "delete":
            client.delete_policy(name)
            return f"Deleted {POLICY_KIND} '{name}'"

        if event.expected is None:
            raise _Outcome(action, f"no expected policy to {action}")
        desired = PolicyDocument.model_validate(event.expected)

        if action == "create":
            client.create_policy(desired)
            return f"Created {POLICY_KIND} '{name}'"

        if options.update_mode == UpdateMode.MERGE and event.actual is not None:
            desired = merge_rules(desired, PolicyDocument.model_validate(event.actual))
        client.update_policy(desired)
        return f"Updated {POLICY_KIND} '{name}' ({options.update_mode})"

    # --- Helpers ---

    @staticmethod
    def _type_enabled(drift_type: DriftType, types: Iterable[DriftType] | None) -> bool:
        return types is None or drift_type in set(types)

    @staticmethod
    def _manual(now: datetime, details: str, action: str = "manual-required") -> RemediationResult:
        return RemediationResult(
            action=action,
            status=DriftStatus.MANUAL_REQUIRED,
            timestamp=now,
            details=details,
        )

    @staticmethod
    def _record(
        event: DriftEvent,
        result: RemediationResult,
        cluster: ClusterInfo,
        dry_run: bool,
    ) -> AuditRecord:
        return build_record(
            operation=f"remediate.{result.action}",
            status=str(result.status),
            cluster=cluster.name,
            resource=event.resource.path,
            detail=result.details,
            error=result.error,
            dry_run=dry_run,
            timestamp=result.timestamp,
        )


_ACTIONS: dict[DriftKind, str] = {
    DriftKind.MISSING: "create",
    DriftKind.MODIFIED: "update",
    DriftKind.EXTRA: "delete",
}


def merge_rules(desired: PolicyDocument, actual: PolicyDocument) -> PolicyDocument:
    """Desired document with cluster-only rules appended after its own."""
    names = set(desired.rule_names())
    kept = [r for r in actual.rules if r.name not in names]
    if not kept:
        return desired
    return desired.model_copy(update={"rules": [*desired.rules, *kept]})
