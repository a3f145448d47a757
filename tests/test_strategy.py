"""Tests for remediation strategy gating."""

from datetime import timedelta, timezone

from conftest import FIXED_TIME
from driftguard.drift.strategy import Exemption, RemediationStrategy, TimeWindow
from driftguard.models import DriftEvent, DriftKind, DriftType, ResourceRef, Severity


def _event(name: str = "require-run-as-non-root", namespace: str | None = None, kind: str = "ClusterPolicy") -> DriftEvent:
    return DriftEvent(
        timestamp=FIXED_TIME,
        type=DriftType.POLICY,
        severity=Severity.HIGH,
        resource=ResourceRef(kind=kind, name=name, namespace=namespace),
        drift_kind=DriftKind.MISSING,
    )


class TestTimeWindow:
    def test_inside_daytime_window(self):
        assert TimeWindow(start_hour=9, end_hour=17).contains(FIXED_TIME)

    def test_outside_daytime_window(self):
        assert not TimeWindow(start_hour=18, end_hour=20).contains(FIXED_TIME)

    def test_window_wrapping_midnight(self):
        window = TimeWindow(start_hour=22, end_hour=6)
        assert window.contains(FIXED_TIME.replace(hour=23))
        assert window.contains(FIXED_TIME.replace(hour=3))
        assert not window.contains(FIXED_TIME)

    def test_offset_timestamp_is_compared_in_utc(self):
        evening = FIXED_TIME.astimezone(timezone(timedelta(hours=-5)))
        assert TimeWindow(start_hour=12, end_hour=12).contains(evening)

    def test_days(self):
        assert TimeWindow(days=[0]).contains(FIXED_TIME)
        assert not TimeWindow(days=[5, 6]).contains(FIXED_TIME)


class TestExemption:
    def test_glob_name(self):
        assert Exemption(name="require-*").matches(_event(), FIXED_TIME)
        assert not Exemption(name="disallow-*").matches(_event(), FIXED_TIME)

    def test_kind_filter(self):
        assert not Exemption(kind="ComplianceCheck").matches(_event(), FIXED_TIME)

    def test_namespace_filter(self):
        exemption = Exemption(namespace="legacy")
        assert exemption.matches(_event(namespace="legacy"), FIXED_TIME)
        assert not exemption.matches(_event(namespace="prod"), FIXED_TIME)

    def test_expired(self):
        exemption = Exemption(expires_at=FIXED_TIME - timedelta(days=1))
        assert not exemption.matches(_event(), FIXED_TIME)

    def test_naive_expiry_is_utc(self):
        exemption = Exemption.model_validate({"expires_at": "2026-03-02T13:00:00"})
        assert exemption.expires_at == FIXED_TIME + timedelta(hours=1)
        assert exemption.matches(_event(), FIXED_TIME)
        assert not exemption.matches(_event(), FIXED_TIME + timedelta(hours=2))


class TestRemediationStrategy:
    def test_empty_strategy_blocks_nothing(self):
        assert RemediationStrategy().blocked_reason(_event(), FIXED_TIME) is None

    def test_excluded_namespace(self):
        strategy = RemediationStrategy(exclude_namespaces=["kube-system"])
        reason = strategy.blocked_reason(_event(namespace="kube-system"), FIXED_TIME)
        assert reason == "namespace kube-system is excluded from remediation"

    def test_include_scope(self):
        strategy = RemediationStrategy(include_namespaces=["prod"])
        assert strategy.blocked_reason(_event(namespace="prod"), FIXED_TIME) is None
        assert "outside the remediation scope" in strategy.blocked_reason(_event(namespace="dev"), FIXED_TIME)

    def test_cluster_scoped_ignores_namespace_scope(self):
        strategy = RemediationStrategy(include_namespaces=["prod"])
        assert strategy.blocked_reason(_event(), FIXED_TIME) is None

    def test_outside_windows(self):
        strategy = RemediationStrategy(time_windows=[TimeWindow(start_hour=0, end_hour=4)])
        assert "outside remediation windows" in strategy.blocked_reason(_event(), FIXED_TIME)

    def test_any_window_allows(self):
        strategy = RemediationStrategy(time_windows=[
            TimeWindow(start_hour=0, end_hour=4),
            TimeWindow(days=[0], start_hour=10, end_hour=14),
        ])
        assert strategy.blocked_reason(_event(), FIXED_TIME) is None

    def test_exemption_reason(self):
        strategy = RemediationStrategy(exemptions=[Exemption(name="require-*", reason="CHG-1042")])
        reason = strategy.blocked_reason(_event(), FIXED_TIME)
        assert reason == "ClusterPolicy/require-run-as-non-root is exempt: CHG-1042"
