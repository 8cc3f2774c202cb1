"""Tests for SafetyMonitor risk scoring, alerts and metrics."""
from datetime import datetime, timedelta

import pytest

from safeharbor.shared.models import (
    AlertType,
    RiskTrend,
    SafetyEvent,
    SafetyEventType,
    Severity,
)
from safeharbor.shared.store import InMemoryStore
from safeharbor.shared.utils import configure_pii_salt
from safeharbor.services.monitoring_service.monitor import MonitorThresholds, SafetyMonitor
from safeharbor.services.safety_service.service import TriageService


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 1, 15, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture(autouse=True)
def setup_pii_salt():
    """Configure PII salt before each test."""
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def monitor(clock):
    return SafetyMonitor(store=InMemoryStore(clock=clock), clock=clock)


def crisis_event(clock, severity, user_id="user_1", age_hours=0.0, indicators=("hopelessness",)):
    return SafetyEvent(
        user_id=user_id,
        type=SafetyEventType.CRISIS_DETECTED,
        severity=severity,
        details={"indicators": list(indicators)},
        timestamp=clock.now - timedelta(hours=age_hours),
    )


class TestRiskScore:
    """Decayed, severity-weighted risk score."""

    @pytest.mark.parametrize("severity,expected_risk,expected_level", [
        (Severity.LOW, 25.0, Severity.LOW),
        (Severity.MEDIUM, 40.0, Severity.MEDIUM),
        (Severity.HIGH, 55.0, Severity.MEDIUM),
        (Severity.CRITICAL, 85.0, Severity.CRITICAL),
    ])
    def test_single_event(self, monitor, clock, severity, expected_risk, expected_level):
        monitor.record_safety_event(crisis_event(clock, severity))
        profile = monitor.get_user_safety_profile("user_1")
        assert profile.risk_score == pytest.approx(expected_risk)
        assert profile.current_risk_level == expected_level

    def test_half_life_decay(self, monitor, clock):
        monitor.record_safety_event(crisis_event(clock, Severity.HIGH, age_hours=6))
        # 10 + 15 x 3 x 0.5
        assert monitor.get_user_safety_profile("user_1").risk_score == pytest.approx(32.5)

    def test_events_outside_window_ignored(self, monitor, clock):
        monitor.record_safety_event(crisis_event(clock, Severity.CRITICAL, age_hours=25))
        assert monitor.get_user_safety_profile("user_1").risk_score == pytest.approx(10.0)

    def test_capped_at_100(self, monitor, clock):
        for _ in range(3):
            monitor.record_safety_event(crisis_event(clock, Severity.CRITICAL))
        assert monitor.get_user_safety_profile("user_1").risk_score == 100.0

    @pytest.mark.parametrize("event_type,details", [
        (SafetyEventType.ESCALATION_INITIATED, {"escalation_id": "esc_1"}),
        (SafetyEventType.PROFESSIONAL_ASSIGNED, {"escalation_id": "esc_1", "professional_id": "pro_1"}),
        (SafetyEventType.ESCALATION_FAILED, {"escalation_id": "esc_1"}),
        (SafetyEventType.INTERVENTION_COMPLETED, {"escalation_id": "esc_1"}),
    ])
    def test_lifecycle_events_carry_no_risk(self, monitor, clock, event_type, details):
        monitor.record_safety_event(crisis_event(clock, Severity.MEDIUM))
        monitor.record_safety_event(SafetyEvent(
            user_id="user_1", type=event_type, severity=Severity.CRITICAL, details=details,
        ))
        profile = monitor.get_user_safety_profile("user_1")
        assert profile.risk_score == pytest.approx(40.0)
        assert profile.current_risk_level == Severity.MEDIUM
        assert len(profile.escalation_history) == 2

    def test_unknown_user_has_no_profile(self, monitor):
        assert monitor.get_user_safety_profile("nobody") is None


class TestSafetyScore:
    """Safety score tracks 100 - risk within a slack of 10."""

    def test_first_event_complements_risk(self, monitor, clock):
        monitor.record_safety_event(crisis_event(clock, Severity.LOW))
        profile = monitor.get_user_safety_profile("user_1")
        assert profile.safety_score == pytest.approx(75.0)

    def test_smoothing_clamped_to_slack(self, monitor, clock):
        monitor.record_safety_event(crisis_event(clock, Severity.LOW))
        monitor.record_safety_event(crisis_event(clock, Severity.CRITICAL))
        profile = monitor.get_user_safety_profile("user_1")
        assert profile.risk_score == 100.0
        assert profile.safety_score == pytest.approx(10.0)

    def test_sum_stays_within_band(self, monitor, clock):
        for severity in [Severity.LOW, Severity.HIGH, Severity.MEDIUM, Severity.CRITICAL, Severity.LOW]:
            monitor.record_safety_event(crisis_event(clock, severity))
            clock.advance(hours=2)
            profile = monitor.get_user_safety_profile("user_1")
            assert 90 <= profile.risk_score + profile.safety_score <= 110

    def test_classified_assessments_keep_scores_complementary(self):
        monitor = SafetyMonitor()
        triage = TriageService(monitor=monitor)
        messages = [
            "I've been feeling really down lately",
            "I feel so hopeless",
            "I want to kill myself",
            "I'm okay today",
            "I have a plan to kill myself",
        ]
        for message in messages:
            assessment = triage.classify("user_rt", "sess_rt", message)
            if assessment is None:
                continue
            profile = monitor.get_user_safety_profile("user_rt")
            assert 90 <= profile.risk_score + profile.safety_score <= 110


class TestProfile:
    """Derived profile fields."""

    def test_crisis_indicators_accumulate(self, monitor, clock):
        monitor.record_safety_event(crisis_event(clock, Severity.HIGH, indicators=["hopelessness"]))
        monitor.record_safety_event(crisis_event(clock, Severity.HIGH, indicators=["self_harm"]))
        profile = monitor.get_user_safety_profile("user_1")
        assert profile.crisis_indicators == frozenset({"hopelessness", "self_harm"})

    def test_escalation_history_bounded(self, monitor, clock):
        for _ in range(12):
            monitor.record_safety_event(crisis_event(clock, Severity.LOW))
        assert len(monitor.get_user_safety_profile("user_1").escalation_history) == 10

    def test_trend_declining(self, monitor, clock):
        for severity in [Severity.LOW] * 5 + [Severity.HIGH] * 5:
            monitor.record_safety_event(crisis_event(clock, severity, age_hours=30))
        assert monitor.get_user_safety_profile("user_1").trend == RiskTrend.DECLINING

    def test_trend_improving(self, monitor, clock):
        for severity in [Severity.HIGH] * 5 + [Severity.LOW] * 5:
            monitor.record_safety_event(crisis_event(clock, severity, age_hours=30))
        assert monitor.get_user_safety_profile("user_1").trend == RiskTrend.IMPROVING

    def test_trend_stable_without_history(self, monitor, clock):
        for _ in range(4):
            monitor.record_safety_event(crisis_event(clock, Severity.HIGH))
        assert monitor.get_user_safety_profile("user_1").trend == RiskTrend.STABLE

    def test_profile_snapshot_is_copy(self, monitor, clock):
        monitor.record_safety_event(crisis_event(clock, Severity.LOW))
        snapshot = monitor.get_user_safety_profile("user_1")
        snapshot.risk_score = 99.0
        assert monitor.get_user_safety_profile("user_1").risk_score == pytest.approx(25.0)


class TestEventValidation:
    """Untyped payloads are validated at the boundary."""

    def test_dict_payload_accepted(self, monitor):
        event_id = monitor.record_safety_event({
            "user_id": "user_1",
            "type": "crisis_detected",
            "severity": "high",
            "details": {"indicators": ["hopelessness"]},
        })
        assert event_id.startswith("sevt_")
        assert monitor.get_user_safety_profile("user_1") is not None

    @pytest.mark.parametrize("payload", [
        {"user_id": "user_1", "type": "bogus", "severity": "high"},
        {"user_id": "user_1", "severity": "high"},
        {"user_id": "user_1", "type": "crisis_detected", "severity": "high", "details": {}},
        {"user_id": "", "type": "escalation_failed", "severity": "low",
         "details": {"escalation_id": "esc_1"}},
    ])
    def test_invalid_payload_rejected(self, monitor, payload):
        with pytest.raises(ValueError):
            monitor.record_safety_event(payload)

    def test_recent_events(self, monitor, clock):
        monitor.record_safety_event(crisis_event(clock, Severity.LOW, age_hours=0))
        monitor.record_safety_event(crisis_event(clock, Severity.LOW, user_id="user_2", age_hours=2))
        assert len(monitor.get_recent_events(hours=1)) == 1
        assert len(monitor.get_recent_events(hours=3)) == 2


class TestAlerts:
    """Alert deduplication and acknowledgement."""

    def test_same_signature_within_cooldown_deduplicated(self, monitor):
        first = monitor.create_safety_alert(AlertType.SYSTEM_OVERLOAD, Severity.HIGH, "Overload", "a")
        second = monitor.create_safety_alert(AlertType.SYSTEM_OVERLOAD, Severity.HIGH, "Overload", "b")
        assert first == second
        assert len(monitor.get_active_alerts()) == 1

    def test_deduplicated_alert_collects_users(self, monitor):
        alert_id = monitor.create_safety_alert(
            AlertType.USER_RISK, Severity.HIGH, "Risk", affected_users=["u1"])
        monitor.create_safety_alert(AlertType.USER_RISK, Severity.HIGH, "Risk", affected_users=["u2"])
        alert = [a for a in monitor.get_active_alerts() if a.id == alert_id][0]
        assert alert.affected_users == ["u1", "u2"]

    def test_new_alert_after_cooldown(self, monitor, clock):
        first = monitor.create_safety_alert(AlertType.SYSTEM_OVERLOAD, Severity.HIGH, "Overload")
        clock.advance(minutes=31)
        second = monitor.create_safety_alert(AlertType.SYSTEM_OVERLOAD, Severity.HIGH, "Overload")
        assert first != second

    def test_new_alert_after_acknowledge(self, monitor):
        first = monitor.create_safety_alert(AlertType.SYSTEM_OVERLOAD, Severity.HIGH, "Overload")
        monitor.acknowledge_safety_alert(first, "ops_1")
        second = monitor.create_safety_alert(AlertType.SYSTEM_OVERLOAD, Severity.HIGH, "Overload")
        assert first != second

    def test_different_severity_not_deduplicated(self, monitor):
        first = monitor.create_safety_alert(AlertType.SYSTEM_OVERLOAD, Severity.HIGH, "Overload")
        second = monitor.create_safety_alert(AlertType.SYSTEM_OVERLOAD, Severity.CRITICAL, "Overload")
        assert first != second

    def test_acknowledge_is_idempotent(self, monitor, clock):
        alert_id = monitor.create_safety_alert(AlertType.RESPONSE_DELAY, Severity.MEDIUM, "Slow")
        assert monitor.acknowledge_safety_alert(alert_id, "ops_1") is True
        assert monitor.acknowledge_safety_alert(alert_id, "ops_2") is False
        assert monitor.get_active_alerts() == []

    def test_acknowledge_unknown(self, monitor):
        assert monitor.acknowledge_safety_alert("alert_missing", "ops_1") is False

    def test_critical_user_raises_alert(self, monitor, clock):
        monitor.record_safety_event(crisis_event(clock, Severity.CRITICAL))
        alerts = monitor.get_active_alerts()
        assert len(alerts) == 1
        assert alerts[0].type == AlertType.USER_RISK
        assert alerts[0].affected_users == ["user_1"]


class TestMetrics:
    """Aggregate snapshots and threshold checks."""

    def test_update_safety_metrics(self, monitor, clock):
        monitor.escalation_stats_provider = lambda: {
            "active": 2, "resolved": 3, "failed": 1, "average_response_time": 12.5,
        }
        monitor.record_safety_event(crisis_event(clock, Severity.CRITICAL, user_id="u_crit"))
        monitor.record_safety_event(crisis_event(clock, Severity.LOW, user_id="u_low"))

        metrics = monitor.update_safety_metrics()

        assert metrics.active_users == 2
        assert metrics.critical_risk_users == 1
        assert metrics.high_risk_users == 0
        assert metrics.active_escalations == 2
        assert metrics.failed_escalations == 1
        assert metrics.average_response_time == 12.5
        # mean of 15 and 75
        assert metrics.safety_score == 45
        assert metrics.unacknowledged_alerts == 1

    def test_no_users_is_fully_safe(self, monitor):
        assert monitor.update_safety_metrics().safety_score == 100

    def test_failing_stats_provider_tolerated(self, monitor):
        def broken():
            raise RuntimeError("stats down")
        monitor.escalation_stats_provider = broken
        assert monitor.update_safety_metrics().active_escalations == 0

    def test_metrics_history_capped(self, clock):
        monitor = SafetyMonitor(
            store=InMemoryStore(clock=clock),
            thresholds=MonitorThresholds(max_metrics_history=3),
            clock=clock,
        )
        for _ in range(5):
            monitor.update_safety_metrics()
        assert len(monitor.get_metrics_history()) == 3

    def test_metrics_history_window(self, monitor, clock):
        monitor.update_safety_metrics()
        clock.advance(hours=2)
        monitor.update_safety_metrics()
        assert len(monitor.get_metrics_history(hours=1)) == 1

    def test_check_safety_thresholds(self, monitor, clock):
        monitor.escalation_stats_provider = lambda: {"active": 60, "average_response_time": 20}
        monitor.record_safety_event(crisis_event(clock, Severity.CRITICAL))
        monitor.update_safety_metrics()

        alert_ids = monitor.check_safety_thresholds()

        titles = {a.title for a in monitor.get_active_alerts() if a.id in alert_ids}
        assert titles == {
            "Critical risk users detected",
            "High escalation volume",
            "Slow professional response",
            "Low global safety score",
        }

    def test_check_thresholds_deduplicates(self, monitor, clock):
        monitor.record_safety_event(crisis_event(clock, Severity.CRITICAL))
        first = monitor.check_safety_thresholds()
        second = monitor.check_safety_thresholds()
        assert first == second


class TestMaintenance:
    """Retention and runtime threshold updates."""

    def test_cleanup_old_data(self, monitor, clock):
        monitor.record_safety_event(crisis_event(clock, Severity.LOW, user_id="u_old", age_hours=24 * 8))
        monitor.record_safety_event(crisis_event(clock, Severity.LOW, user_id="u_new"))
        alert_id = monitor.create_safety_alert(AlertType.SYSTEM_OVERLOAD, Severity.HIGH, "Overload")
        monitor.acknowledge_safety_alert(alert_id, "ops_1")
        monitor.update_safety_metrics()
        clock.advance(hours=25)

        removed = monitor.cleanup_old_data()

        assert removed == {"events": 1, "profiles": 1, "alerts": 1, "metrics": 1}
        assert monitor.get_user_safety_profile("u_old") is None
        assert monitor.get_user_safety_profile("u_new") is not None

    def test_update_thresholds(self, monitor):
        monitor.update_thresholds(alert_cooldown_minutes=5)
        assert monitor.thresholds.alert_cooldown_minutes == 5

    def test_update_unknown_threshold(self, monitor):
        with pytest.raises(ValueError):
            monitor.update_thresholds(not_a_setting=1)
