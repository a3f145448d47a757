"""PolicySynchronizer: propagate one policy document across a fleet.

- ``sync_policy_to_cluster``: validate, then get -> create or update.
  Idempotent; safe to call repeatedly.
- ``sync_policies_across_fleet``: fan out to every target with a bounded
  worker pool. One target's failure never stops the others. Raises
  ``FleetSyncError`` only when every target failed.
- ``validate_policy_consistency``: compare the tracked spec of the same-named
  document across an ordered target list, using the first target that has
  the document as the baseline.
- ``remove_policy_from_cluster``: delete; not-found counts as success.

Timeouts on remote calls belong to the cluster clients, not to this module.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime
from typing import TypeVar

from driftguard.audit.logger import build_record
from driftguard.cluster.accessor import ClusterHandle
from driftguard.drift.differ import compute_diff
from driftguard.errors import ConfigError, FleetSyncError, TransientClusterError
from driftguard.models import (
    MANAGED_BY_ANNOTATION,
    MANAGED_BY_VALUE,
    POLICY_KIND,
    TARGET_CLUSTER_ANNOTATION,
    AuditRecord,
    ConsistencyReport,
    FleetSyncResult,
    Inconsistency,
    InconsistencyKind,
    PolicyDocument,
    SyncOutcome,
    TargetFailure,
)
from driftguard.policy.validator import PolicyValidator

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 8

T = TypeVar("T")


def stamp_for_cluster(document: PolicyDocument, cluster: str) -> PolicyDocument:
    """Copy of *document* carrying the target-cluster and managed-by annotations."""
    annotations = dict(document.annotations)
    annotations[TARGET_CLUSTER_ANNOTATION] = cluster
    annotations[MANAGED_BY_ANNOTATION] = MANAGED_BY_VALUE
    return document.model_copy(update={"annotations": annotations})


def _require_ordered(targets: Sequence[ClusterHandle]) -> list[ClusterHandle]:
    if not isinstance(targets, Sequence) or isinstance(targets, str):
        raise TypeError(
            "targets must be an ordered sequence of cluster handles, "
            f"got {type(targets).__name__}"
        )
    handles = list(targets)
    names = [h.info.name for h in handles]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ConfigError(
            f"Duplicate target clusters: {', '.join(duplicates)}",
            errors=[f"duplicate target: {n}" for n in duplicates],
        )
    return handles


class _Accumulator:
    """Lock-guarded fan-in of per-target results, keyed by target position."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._results: dict[int, object] = {}

    def put(self, index: int, value: object) -> None:
        with self._lock:
            self._results[index] = value

    def ordered(self, count: int) -> list[object]:
        with self._lock:
            return [self._results[i] for i in range(count)]


class PolicySynchronizer:
    """Synchronizes policy documents to one or many clusters."""

    def __init__(
        self,
        validator: PolicyValidator | None = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._validator = validator or PolicyValidator()
        self._max_workers = max(1, max_workers)
        self._clock = clock or (lambda: datetime.now(tz=UTC))

    # --- Single cluster ---

    def sync_policy_to_cluster(
        self,
        document: PolicyDocument,
        target: ClusterHandle,
    ) -> SyncOutcome:
        """Create or update *document* on one cluster.

        Raises:
            ConfigError: If the document is invalid. Nothing is sent.
        """
        self._validator.validate_or_raise([document])
        return self._sync_one(document, target)

    def remove_policy_from_cluster(self, name: str, target: ClusterHandle) -> SyncOutcome:
        cluster = target.info.name
        try:
            existed = target.client.delete_policy(name)
        except TransientClusterError as exc:
            logger.warning("Failed to remove %s from %s: %s", name, cluster, exc)
            return SyncOutcome(
                cluster=cluster, policy=name, action="delete", success=False, error=str(exc),
            )
        logger.info(
            "Removed %s from %s%s", name, cluster, "" if existed else " (not present)",
        )
        return SyncOutcome(cluster=cluster, policy=name, action="delete", success=True)

    # --- Fleet ---

    def sync_policies_across_fleet(
        self,
        document: PolicyDocument,
        targets: Sequence[ClusterHandle],
    ) -> FleetSyncResult:
        """Sync *document* to every target.

        Returns a result naming every failure. Partial failure is not raised.

        Raises:
            ConfigError: Invalid document or duplicate target names.
            FleetSyncError: Every target failed.
        """
        self._validator.validate_or_raise([document])
        handles = _require_ordered(targets)
        logger.info("Syncing %s across %d clusters", document.name, len(handles))

        outcomes: list[SyncOutcome] = self._fan_out(
            handles, lambda h: self._sync_one(document, h),
        )

        result = FleetSyncResult(policy=document.name, total=len(handles))
        for outcome in outcomes:
            result.audit.append(self._record(outcome))
            if outcome.success:
                result.succeeded.append(outcome.cluster)
            else:
                result.failures.append(
                    TargetFailure(cluster=outcome.cluster, error=outcome.error or "unknown error"),
                )
        result.success_count = len(result.succeeded)

        logger.info(
            "Fleet sync of %s complete: %d total, %d succeeded, %d failed",
            document.name,
            result.total,
            result.success_count,
            len(result.failures),
        )
        if result.all_failed:
            raise FleetSyncError(
                f"Sync of {document.name} failed on all {result.total} clusters",
                result,
            )
        return result

    def validate_policy_consistency(
        self,
        name: str,
        targets: Sequence[ClusterHandle],
    ) -> ConsistencyReport:
        """Compare the named document across an ordered list of targets.

        The baseline is the first target (in list order) that has the
        document. Targets that lack it are reported ``missing``. Targets that
        cannot be read are reported ``unreachable`` and unparseable documents
        ``invalid``. Documents whose tracked spec differs from the
        baseline's are reported ``divergent``.
        """
        handles = _require_ordered(targets)
        report = ConsistencyReport(policy=name, checked=[h.info.name for h in handles])
        fetched: list[PolicyDocument | TransientClusterError | ConfigError | None] = self._fan_out(
            handles, lambda h: self._fetch(name, h),
        )

        baseline_index = next(
            (i for i, doc in enumerate(fetched) if isinstance(doc, PolicyDocument)),
            None,
        )
        baseline = fetched[baseline_index] if baseline_index is not None else None
        if baseline_index is not None:
            report.baseline = handles[baseline_index].info.name

        for i, (handle, doc) in enumerate(zip(handles, fetched, strict=True)):
            cluster = handle.info.name
            if isinstance(doc, TransientClusterError):
                report.inconsistencies.append(Inconsistency(
                    cluster=cluster,
                    kind=InconsistencyKind.UNREACHABLE,
                    message=f"Could not read {POLICY_KIND} {name} from {cluster}: {doc}",
                ))
            elif isinstance(doc, ConfigError):
                report.inconsistencies.append(Inconsistency(
                    cluster=cluster,
                    kind=InconsistencyKind.INVALID,
                    message=f"{POLICY_KIND} {name} in cluster {cluster} cannot be parsed: {doc}",
                ))
            elif doc is None:
                report.inconsistencies.append(Inconsistency(
                    cluster=cluster,
                    kind=InconsistencyKind.MISSING,
                    message=f"{POLICY_KIND} {name} not found in cluster {cluster}",
                ))
            elif i != baseline_index and isinstance(baseline, PolicyDocument):
                diff = compute_diff(baseline.tracked_spec(), doc.tracked_spec())
                if not diff.is_empty():
                    report.inconsistencies.append(Inconsistency(
                        cluster=cluster,
                        kind=InconsistencyKind.DIVERGENT,
                        message=(
                            f"{POLICY_KIND} {name} in cluster {cluster} differs "
                            f"from baseline {report.baseline}"
                        ),
                        diff=diff,
                    ))

        if report.consistent:
            logger.info("%s is consistent across %d clusters", name, len(handles))
        else:
            logger.warning(
                "%s has %d inconsistencies across %d clusters",
                name,
                len(report.inconsistencies),
                len(handles),
            )
        return report

    # --- Private ---

    def _fan_out(
        self,
        handles: list[ClusterHandle],
        work: Callable[[ClusterHandle], T],
    ) -> list[T]:
        if not handles:
            return []
        acc = _Accumulator()

        def run(index: int, handle: ClusterHandle) -> None:
            acc.put(index, work(handle))

        workers = min(self._max_workers, len(handles))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="driftguard-sync") as pool:
            futures = [pool.submit(run, i, h) for i, h in enumerate(handles)]
            for future in futures:
                future.result()
        return acc.ordered(len(handles))  # type: ignore[return-value]

    def _sync_one(self, document: PolicyDocument, target: ClusterHandle) -> SyncOutcome:
        cluster = target.info.name
        if not target.info.allow_enforcement:
            logger.info("Enforcement not allowed on %s, skipping sync of %s", cluster, document.name)
            return SyncOutcome(cluster=cluster, policy=document.name, action="skip", success=True)

        stamped = stamp_for_cluster(document, cluster)
        action = "get"
        try:
            existing = target.client.get_policy(document.name)
            if existing is None:
                action = "create"
                target.client.create_policy(stamped)
            else:
                action = "update"
                target.client.update_policy(stamped)
        except TransientClusterError as exc:
            logger.warning("Failed to sync %s to %s: %s", document.name, cluster, exc)
            return SyncOutcome(
                cluster=cluster, policy=document.name, action=action, success=False, error=str(exc),
            )
        except Exception as exc:
            logger.exception("Unexpected error syncing %s to %s", document.name, cluster)
            return SyncOutcome(
                cluster=cluster, policy=document.name, action=action, success=False, error=str(exc),
            )

        logger.debug("Synced %s to %s (%s)", document.name, cluster, action)
        return SyncOutcome(cluster=cluster, policy=document.name, action=action, success=True)

    @staticmethod
    def _fetch(
        name: str, target: ClusterHandle,
    ) -> PolicyDocument | TransientClusterError | ConfigError | None:
        try:
            return target.client.get_policy(name)
        except (TransientClusterError, ConfigError) as exc:
            return exc

    def _record(self, outcome: SyncOutcome) -> AuditRecord:
        return build_record(
            operation=f"sync.{outcome.action}",
            status="success" if outcome.success else "failed",
            cluster=outcome.cluster,
            resource=f"{POLICY_KIND}/{outcome.policy}",
            error=outcome.error,
            timestamp=self._clock(),
        )
