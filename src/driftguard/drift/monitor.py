"""Monitor: periodic detect -> remediate -> store cycles.

One background thread per specification. Each thread runs a cycle
immediately, then waits out the rest of the interval before the next one.
A cycle that outruns the interval delays the next cycle instead of queueing
another, so two cycles for the same specification never overlap.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime

from pydantic import BaseModel, Field

from driftguard.cluster.client import ClusterClient
from driftguard.drift.checks import build_checks
from driftguard.drift.detector import Detector
from driftguard.drift.history import HistoryStore
from driftguard.drift.remediator import RemediateOptions, Remediator
from driftguard.drift.strategy import RemediationStrategy
from driftguard.errors import FatalSetupError, TransientClusterError
from driftguard.models import (
    CheckStatus,
    ClusterInfo,
    DriftHistory,
    DriftReport,
    DriftType,
    RemediationSummary,
    UpdateMode,
)
from driftguard.policy.compiler import PolicyCompiler
from driftguard.specification import ClusterSpecification

logger = logging.getLogger(__name__)


class MonitorConfig(BaseModel):
    interval_seconds: float = Field(300.0, gt=0)
    auto_remediate: bool = False
    remediate_types: list[DriftType] | None = None
    force: bool = False
    update_mode: UpdateMode = UpdateMode.REPLACE
    enabled_types: list[DriftType] | None = None
    strategy: RemediationStrategy = Field(default_factory=RemediationStrategy)


@dataclass
class MonitorTarget:
    """A specification bound to the cluster it is monitored on."""

    spec: ClusterSpecification
    client: ClusterClient
    cluster: ClusterInfo | None = None
    exempt_namespaces: tuple[str, ...] = ("kube-system",)

    @property
    def key(self) -> str:
        return f"{self.spec.name}@{self.client.name}"


class CycleSummary(BaseModel):
    """What one monitor cycle did."""

    spec: str
    cluster: str
    report: DriftReport | None = None
    remediation: RemediationSummary | None = None
    stored: int = 0
    error: str | None = None


@dataclass
class _Worker:
    thread: threading.Thread
    stop: threading.Event


class Monitor:
    """Drives detection cycles for any number of specifications."""

    def __init__(
        self,
        history: HistoryStore,
        detector: Detector | None = None,
        remediator: Remediator | None = None,
        compiler: PolicyCompiler | None = None,
        config: MonitorConfig | None = None,
    ) -> None:
        self._history = history
        self._detector = detector or Detector()
        self._remediator = remediator or Remediator()
        self._compiler = compiler or PolicyCompiler()
        self._config = config or MonitorConfig()
        self._lock = threading.Lock()
        self._baselines: dict[str, dict[str, CheckStatus]] = {}
        self._cycle_locks: dict[str, threading.Lock] = {}
        self._workers: dict[str, _Worker] = {}

    @property
    def config(self) -> MonitorConfig:
        return self._config

    def check_once(self, target: MonitorTarget) -> CycleSummary:
        """Run one cycle for *target*.

        A cluster that cannot be read is reported in the summary's ``error``
        and retried on the next cycle. Setup failures (history backend,
        invalid specification) raise.
        """
        with self._cycle_lock(target.key):
            return self._cycle(target)

    def start(self, target: MonitorTarget) -> bool:
        """Start monitoring *target* in the background.

        Returns False if it is already being monitored.
        """
        with self._lock:
            worker = self._workers.get(target.key)
            if worker is not None and worker.thread.is_alive():
                return False
            stop = threading.Event()
            thread = threading.Thread(
                target=self._run,
                args=(target, stop),
                name=f"driftguard-monitor-{target.key}",
                daemon=True,
            )
            self._workers[target.key] = _Worker(thread=thread, stop=stop)
        logger.info(
            "Monitoring %s every %.0fs", target.key, self._config.interval_seconds,
        )
        thread.start()
        return True

    def stop(self, key: str, timeout: float | None = None) -> bool:
        """Stop the monitor for *key*. Returns False if none was running."""
        with self._lock:
            worker = self._workers.pop(key, None)
        if worker is None:
            return False
        worker.stop.set()
        if worker.thread is not threading.current_thread():
            worker.thread.join(timeout)
        logger.info("Stopped monitoring %s", key)
        return True

    def stop_all(self, timeout: float | None = None) -> None:
        with self._lock:
            keys = list(self._workers)
        for key in keys:
            self.stop(key, timeout)

    def is_running(self, key: str) -> bool:
        with self._lock:
            worker = self._workers.get(key)
        return worker is not None and worker.thread.is_alive()

    def get_history(self, since: datetime | None = None) -> DriftHistory:
        return self._history.get_history(since)

    def baseline(self, key: str) -> dict[str, CheckStatus]:
        """Last known compliance status per check for *key*."""
        with self._lock:
            return dict(self._baselines.get(key, {}))

    # --- Private ---

    def _cycle_lock(self, key: str) -> threading.Lock:
        with self._lock:
            return self._cycle_locks.setdefault(key, threading.Lock())

    def _run(self, target: MonitorTarget, stop: threading.Event) -> None:
        interval = self._config.interval_seconds
        while not stop.is_set():
            started = time.monotonic()
            try:
                self.check_once(target)
            except FatalSetupError:
                logger.exception("Monitoring %s stopped: setup failure", target.key)
                break
            except Exception:
                logger.exception("Drift check failed for %s", target.key)
            elapsed = time.monotonic() - started
            if stop.wait(max(0.0, interval - elapsed)):
                break

    def _cycle(self, target: MonitorTarget) -> CycleSummary:
        spec = target.spec
        summary = CycleSummary(spec=spec.name, cluster=target.client.name)
        desired = self._compiler.compile(spec)
        checks = build_checks(spec, target.exempt_namespaces)

        try:
            report = self._detector.detect(
                desired,
                checks,
                target.client,
                spec=spec.info(),
                previous=self.baseline(target.key),
                enabled_types=self._config.enabled_types,
                update_mode=self._config.update_mode,
            )
        except TransientClusterError as exc:
            logger.warning("Drift check skipped for %s: %s", target.key, exc)
            summary.error = str(exc)
            return summary

        self._update_baseline(target.key, report)
        summary.report = report
        events = report.events

        if self._config.auto_remediate and report.detected:
            options = RemediateOptions(
                force=self._config.force,
                types=self._config.remediate_types,
                update_mode=self._config.update_mode,
                strategy=self._config.strategy,
            )
            summary.remediation = self._remediator.remediate(
                report, target.client, options, target.cluster,
            )
            events = summary.remediation.events

        self._history.store_many(events)
        summary.stored = len(events)

        if report.detected:
            logger.info(
                "Drift on %s: %d events (severity: %s)",
                target.key,
                report.counts.total,
                report.severity,
            )
        return summary

    def _update_baseline(self, key: str, report: DriftReport) -> None:
        with self._lock:
            baseline = self._baselines.setdefault(key, {})
            for result in report.check_results:
                baseline[result.name] = result.status
