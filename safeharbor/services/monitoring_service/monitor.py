"""Safety monitor - per-user risk profiles, alerts and aggregate metrics.

Every safety event updates the originating user's profile:
    risk_score    decayed, severity-weighted sum of the last 24 hours of
                  crisis detections
    safety_score  smoothed toward 100 - risk_score, kept within 10 points
    trend         last 5 detections compared with the 5 before them

Alerts are deduplicated by (type, severity, title) within a cooldown
window while unacknowledged.
"""
import logging
import threading
import uuid
from dataclasses import dataclass, fields, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from safeharbor.shared.models import (
    ESCALATION_EVENT_TYPES,
    AlertType,
    RiskTrend,
    SafetyAlert,
    SafetyEvent,
    SafetyEventType,
    SafetyMetrics,
    Severity,
    UserSafetyProfile,
)
from safeharbor.shared.store import InMemoryStore, KeyValueStore
from safeharbor.shared.utils import hash_pii

logger = logging.getLogger(__name__)

EVENT_NAMESPACE = "safety_events"
PROFILE_NAMESPACE = "safety_profiles"
ALERT_NAMESPACE = "safety_alerts"
METRICS_NAMESPACE = "safety_metrics"
METRICS_KEY = "global"

SEVERITY_WEIGHTS: Dict[Severity, float] = {
    Severity.LOW: 1.0,
    Severity.MEDIUM: 2.0,
    Severity.HIGH: 3.0,
    Severity.CRITICAL: 5.0,
}

# Only detections carry risk; escalation lifecycle events are bookkeeping
RISK_EVENT_TYPES = frozenset({SafetyEventType.CRISIS_DETECTED})


@dataclass(frozen=True)
class MonitorThresholds:
    """Policy parameters for risk scoring, alerting and retention."""
    # Risk score (0-100)
    baseline_risk: float = 10.0
    risk_per_weight: float = 15.0
    risk_window_hours: float = 24.0
    decay_half_life_hours: float = 6.0

    # Risk level cutoffs
    medium_risk_score: float = 40.0
    high_risk_score: float = 70.0
    critical_risk_score: float = 85.0

    # Safety score smoothing
    safety_smoothing: float = 0.3
    safety_slack: float = 10.0

    # Trend
    trend_window: int = 5
    trend_band: float = 0.5

    # Retention
    max_events_per_user: int = 100
    escalation_history_size: int = 10
    max_metrics_history: int = 1000
    event_retention_days: int = 7
    alert_retention_hours: int = 24
    active_user_hours: int = 24

    # Alerting
    alert_cooldown_minutes: int = 30
    high_risk_share: float = 0.1
    max_active_escalations: int = 50
    max_average_response_minutes: float = 15.0
    min_safety_score: int = 70


class SafetyMonitor:
    """Tracks user safety profiles and system-wide safety metrics.

    Thread-safe: all profile, alert and metric updates are serialized
    by one lock, so per-user event order is preserved.
    """

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        thresholds: Optional[MonitorThresholds] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
        escalation_stats_provider: Optional[Callable[[], Dict[str, Any]]] = None,
    ):
        """Initialize monitor.

        Args:
            store: Store for events, profiles, alerts and metric snapshots
            thresholds: Scoring and alerting policy
            clock: Time source
            escalation_stats_provider: Returns active/resolved/failed
                escalation counts and average_response_time
        """
        self.store = store or InMemoryStore()
        self.thresholds = thresholds or MonitorThresholds()
        self._clock = clock
        self.escalation_stats_provider = escalation_stats_provider
        self._lock = threading.RLock()

        logger.info(
            "SAFETY_MONITOR_INITIALIZED",
            extra={
                "alert_cooldown_minutes": self.thresholds.alert_cooldown_minutes,
                "decay_half_life_hours": self.thresholds.decay_half_life_hours,
            }
        )

    # Events and profiles

    def record_safety_event(self, event: Union[SafetyEvent, Dict[str, Any]]) -> str:
        """Append an event to the user's log and refresh their profile.

        Args:
            event: A SafetyEvent, or an untyped payload validated here

        Returns:
            The event id

        Raises:
            ValueError: If an untyped payload is not a valid event
        """
        if not isinstance(event, SafetyEvent):
            try:
                event = SafetyEvent.from_dict(event)
            except KeyError as e:
                raise ValueError(f"Safety event missing field: {e}")

        with self._lock:
            self.store.append(
                EVENT_NAMESPACE,
                event.user_id,
                event,
                max_len=self.thresholds.max_events_per_user,
            )
            previous = self.store.get(PROFILE_NAMESPACE, event.user_id)
            profile = self._build_profile(event.user_id, previous)
            self.store.put(PROFILE_NAMESPACE, event.user_id, profile)

        logger.info(
            "SAFETY_EVENT_RECORDED",
            extra={
                "event_id": event.event_id,
                "event_type": event.type.value,
                "severity": event.severity.value,
                "user_id_hash": hash_pii(event.user_id),
                "risk_score": round(profile.risk_score, 1),
                "safety_score": round(profile.safety_score, 1),
            }
        )

        previous_level = previous.current_risk_level if previous else Severity.LOW
        if profile.current_risk_level != previous_level:
            self._on_risk_level_change(profile, previous_level)

        return event.event_id

    def get_user_safety_profile(self, user_id: str) -> Optional[UserSafetyProfile]:
        """Snapshot of a user's profile, or None if no events were recorded."""
        with self._lock:
            profile = self.store.get(PROFILE_NAMESPACE, user_id)
            return replace(profile) if profile is not None else None

    def _build_profile(
        self, user_id: str, previous: Optional[UserSafetyProfile]
    ) -> UserSafetyProfile:
        now = self._clock()
        events = self.store.get_list(EVENT_NAMESPACE, user_id)

        risk_score = self._risk_score(events, now)
        target = 100.0 - risk_score
        if previous is None:
            safety_score = target
        else:
            alpha = self.thresholds.safety_smoothing
            safety_score = previous.safety_score + alpha * (target - previous.safety_score)
        slack = self.thresholds.safety_slack
        safety_score = min(max(safety_score, target - slack), target + slack)
        safety_score = min(max(safety_score, 0.0), 100.0)

        indicators = set(previous.crisis_indicators) if previous else set()
        for e in events:
            if e.type == SafetyEventType.CRISIS_DETECTED:
                indicators.update(e.details.get("indicators", []))

        history = [e for e in events if e.type in ESCALATION_EVENT_TYPES]

        return UserSafetyProfile(
            user_id=user_id,
            current_risk_level=self._risk_level(risk_score),
            risk_score=risk_score,
            safety_score=safety_score,
            crisis_indicators=frozenset(indicators),
            escalation_history=tuple(history[-self.thresholds.escalation_history_size:]),
            trend=self._trend(events),
            last_activity=max(e.timestamp for e in events) if events else now,
            last_updated=now,
        )

    def _risk_score(self, events: Iterable[SafetyEvent], now: datetime) -> float:
        """Severity-weighted sum with exponential decay by event age."""
        t = self.thresholds
        window = timedelta(hours=t.risk_window_hours)
        total = 0.0
        for e in events:
            age = now - e.timestamp
            if e.type not in RISK_EVENT_TYPES or age > window:
                continue
            age_hours = max(age.total_seconds(), 0.0) / 3600
            total += SEVERITY_WEIGHTS[e.severity] * 0.5 ** (age_hours / t.decay_half_life_hours)
        return min(100.0, t.baseline_risk + t.risk_per_weight * total)

    def _risk_level(self, risk_score: float) -> Severity:
        t = self.thresholds
        if risk_score >= t.critical_risk_score:
            return Severity.CRITICAL
        if risk_score >= t.high_risk_score:
            return Severity.HIGH
        if risk_score >= t.medium_risk_score:
            return Severity.MEDIUM
        return Severity.LOW

    def _trend(self, events: List[SafetyEvent]) -> RiskTrend:
        n = self.thresholds.trend_window
        events = [e for e in events if e.type in RISK_EVENT_TYPES]
        recent = events[-n:]
        earlier = events[-2 * n:-n]
        if not earlier:
            return RiskTrend.STABLE

        def mean_weight(window: List[SafetyEvent]) -> float:
            return sum(SEVERITY_WEIGHTS[e.severity] for e in window) / len(window)

        delta = mean_weight(recent) - mean_weight(earlier)
        if delta > self.thresholds.trend_band:
            return RiskTrend.DECLINING
        if delta < -self.thresholds.trend_band:
            return RiskTrend.IMPROVING
        return RiskTrend.STABLE

    def _on_risk_level_change(self, profile: UserSafetyProfile, previous: Severity) -> None:
        log = logger.warning if profile.current_risk_level.rank > previous.rank else logger.info
        log(
            "USER_RISK_LEVEL_CHANGED",
            extra={
                "user_id_hash": hash_pii(profile.user_id),
                "from": previous.value,
                "to": profile.current_risk_level.value,
                "risk_score": round(profile.risk_score, 1),
            }
        )
        if profile.current_risk_level == Severity.CRITICAL:
            self.create_safety_alert(
                alert_type=AlertType.USER_RISK,
                severity=Severity.CRITICAL,
                title="User at critical risk",
                description=f"Risk score {profile.risk_score:.0f} reached critical level",
                affected_users=[profile.user_id],
            )

    # Alerts

    def create_safety_alert(
        self,
        alert_type: AlertType,
        severity: Severity,
        title: str,
        description: str = "",
        affected_users: Iterable[str] = (),
    ) -> str:
        """Raise an alert unless an identical one is still cooling down.

        Returns:
            The new alert id, or the id of the unacknowledged alert with the
            same (type, severity, title) created within the cooldown window
        """
        now = self._clock()
        signature = (alert_type.value, severity.value, title)
        cooldown = timedelta(minutes=self.thresholds.alert_cooldown_minutes)

        with self._lock:
            for existing in self.store.values(ALERT_NAMESPACE):
                if (
                    existing.signature == signature
                    and not existing.acknowledged
                    and now - existing.triggered_at < cooldown
                ):
                    for user_id in affected_users:
                        if user_id not in existing.affected_users:
                            existing.affected_users.append(user_id)
                    self.store.put(ALERT_NAMESPACE, existing.id, existing)
                    logger.info(
                        "SAFETY_ALERT_SUPPRESSED",
                        extra={"alert_id": existing.id, "alert_type": alert_type.value}
                    )
                    return existing.id

            alert = SafetyAlert(
                id=f"alert_{uuid.uuid4().hex[:12]}",
                type=alert_type,
                severity=severity,
                title=title,
                description=description,
                affected_users=list(affected_users),
                triggered_at=now,
            )
            self.store.put(ALERT_NAMESPACE, alert.id, alert)

        log = logger.critical if severity == Severity.CRITICAL else logger.warning
        log(
            "SAFETY_ALERT_CREATED",
            extra={
                "alert_id": alert.id,
                "alert_type": alert_type.value,
                "severity": severity.value,
                "title": title,
                "affected_user_count": len(alert.affected_users),
            }
        )
        return alert.id

    def acknowledge_safety_alert(self, alert_id: str, acknowledged_by: str) -> bool:
        """Mark an alert acknowledged.

        Returns:
            False if the alert is unknown or was already acknowledged
        """
        with self._lock:
            alert = self.store.get(ALERT_NAMESPACE, alert_id)
            if alert is None or alert.acknowledged:
                return False
            alert.acknowledged = True
            alert.acknowledged_by = acknowledged_by
            alert.acknowledged_at = self._clock()
            self.store.put(ALERT_NAMESPACE, alert_id, alert)

        logger.info(
            "SAFETY_ALERT_ACKNOWLEDGED",
            extra={"alert_id": alert_id, "acknowledged_by": acknowledged_by}
        )
        return True

    def get_active_alerts(self) -> List[SafetyAlert]:
        """Unacknowledged alerts, newest first."""
        with self._lock:
            alerts = [replace(a, affected_users=list(a.affected_users))
                      for a in self.store.values(ALERT_NAMESPACE) if not a.acknowledged]
        return sorted(alerts, key=lambda a: a.triggered_at, reverse=True)

    # Aggregate metrics

    def update_safety_metrics(self) -> SafetyMetrics:
        """Compute and store a system-wide snapshot."""
        now = self._clock()
        active_since = now - timedelta(hours=self.thresholds.active_user_hours)
        stats = self._escalation_stats()

        with self._lock:
            profiles = [p for p in self.store.values(PROFILE_NAMESPACE)
                        if p.last_activity >= active_since]
            alerts = self.store.values(ALERT_NAMESPACE)

            if profiles:
                safety_score = round(sum(p.safety_score for p in profiles) / len(profiles))
            else:
                safety_score = 100

            metrics = SafetyMetrics(
                active_users=len(profiles),
                high_risk_users=sum(1 for p in profiles if p.current_risk_level == Severity.HIGH),
                critical_risk_users=sum(
                    1 for p in profiles if p.current_risk_level == Severity.CRITICAL
                ),
                active_escalations=int(stats.get("active", 0)),
                resolved_escalations=int(stats.get("resolved", 0)),
                failed_escalations=int(stats.get("failed", 0)),
                average_response_time=float(stats.get("average_response_time", 0.0)),
                safety_score=int(min(max(safety_score, 0), 100)),
                alerts_triggered=len(alerts),
                unacknowledged_alerts=sum(1 for a in alerts if not a.acknowledged),
                timestamp=now,
            )
            self.store.append(
                METRICS_NAMESPACE,
                METRICS_KEY,
                metrics,
                max_len=self.thresholds.max_metrics_history,
            )

        logger.info(
            "SAFETY_METRICS_UPDATED",
            extra={
                "active_users": metrics.active_users,
                "high_risk_users": metrics.high_risk_users,
                "critical_risk_users": metrics.critical_risk_users,
                "active_escalations": metrics.active_escalations,
                "safety_score": metrics.safety_score,
            }
        )
        return metrics

    def _escalation_stats(self) -> Dict[str, Any]:
        if self.escalation_stats_provider is None:
            return {}
        try:
            return self.escalation_stats_provider()
        except Exception as e:
            logger.error(
                "ESCALATION_STATS_UNAVAILABLE",
                extra={"error": str(e), "error_type": type(e).__name__}
            )
            return {}

    def check_safety_thresholds(self) -> List[str]:
        """Raise alerts for the latest metrics snapshot.

        Returns:
            Ids of alerts raised or still cooling down
        """
        history = self.store.get_list(METRICS_NAMESPACE, METRICS_KEY)
        metrics = history[-1] if history else self.update_safety_metrics()
        t = self.thresholds
        alert_ids = []

        if metrics.critical_risk_users > 0:
            alert_ids.append(self.create_safety_alert(
                AlertType.USER_RISK,
                Severity.CRITICAL,
                "Critical risk users detected",
                f"{metrics.critical_risk_users} users at critical risk level",
            ))

        if metrics.active_users and metrics.high_risk_users / metrics.active_users > t.high_risk_share:
            alert_ids.append(self.create_safety_alert(
                AlertType.TREND_ANOMALY,
                Severity.HIGH,
                "High proportion of high-risk users",
                f"{metrics.high_risk_users} of {metrics.active_users} active users at high risk",
            ))

        if metrics.active_escalations > t.max_active_escalations:
            alert_ids.append(self.create_safety_alert(
                AlertType.SYSTEM_OVERLOAD,
                Severity.HIGH,
                "High escalation volume",
                f"{metrics.active_escalations} active escalations",
            ))

        if metrics.average_response_time > t.max_average_response_minutes:
            alert_ids.append(self.create_safety_alert(
                AlertType.RESPONSE_DELAY,
                Severity.MEDIUM,
                "Slow professional response",
                f"Average response time {metrics.average_response_time:.1f} min",
            ))

        if metrics.safety_score < t.min_safety_score:
            alert_ids.append(self.create_safety_alert(
                AlertType.TREND_ANOMALY,
                Severity.MEDIUM,
                "Low global safety score",
                f"Global safety score {metrics.safety_score}",
            ))

        return alert_ids

    # History and retention

    def get_recent_events(self, hours: float = 24) -> List[SafetyEvent]:
        """Events across all users from the last ``hours``, newest first."""
        since = self._clock() - timedelta(hours=hours)
        with self._lock:
            events = [
                e
                for user_id in self.store.list_keys(EVENT_NAMESPACE)
                for e in self.store.get_list(EVENT_NAMESPACE, user_id)
                if e.timestamp >= since
            ]
        return sorted(events, key=lambda e: e.timestamp, reverse=True)

    def get_metrics_history(self, hours: float = 24) -> List[SafetyMetrics]:
        """Metric snapshots from the last ``hours``, oldest first."""
        since = self._clock() - timedelta(hours=hours)
        return [m for m in self.store.get_list(METRICS_NAMESPACE, METRICS_KEY)
                if m.timestamp >= since]

    def cleanup_old_data(self) -> Dict[str, int]:
        """Drop expired events, idle profiles, old acknowledged alerts and metrics."""
        now = self._clock()
        t = self.thresholds
        event_cutoff = now - timedelta(days=t.event_retention_days)
        alert_cutoff = now - timedelta(hours=t.alert_retention_hours)
        removed = {"events": 0, "profiles": 0, "alerts": 0, "metrics": 0}

        with self._lock:
            for user_id in self.store.list_keys(EVENT_NAMESPACE):
                events = self.store.get_list(EVENT_NAMESPACE, user_id)
                kept = [e for e in events if e.timestamp >= event_cutoff]
                removed["events"] += len(events) - len(kept)
                if kept:
                    self.store.replace_list(EVENT_NAMESPACE, user_id, kept)
                else:
                    self.store.delete_list(EVENT_NAMESPACE, user_id)
                    if self.store.delete(PROFILE_NAMESPACE, user_id):
                        removed["profiles"] += 1

            for alert in self.store.values(ALERT_NAMESPACE):
                if alert.acknowledged and alert.triggered_at < alert_cutoff:
                    self.store.delete(ALERT_NAMESPACE, alert.id)
                    removed["alerts"] += 1

            snapshots = self.store.get_list(METRICS_NAMESPACE, METRICS_KEY)
            kept_metrics = [m for m in snapshots if m.timestamp >= alert_cutoff]
            removed["metrics"] = len(snapshots) - len(kept_metrics)
            self.store.replace_list(METRICS_NAMESPACE, METRICS_KEY, kept_metrics)

        logger.info("SAFETY_DATA_CLEANED", extra=removed)
        return removed

    def update_thresholds(self, **changes: Any) -> MonitorThresholds:
        """Replace monitor thresholds at runtime.

        Raises:
            ValueError: If a setting name is unknown
        """
        known = {f.name for f in fields(MonitorThresholds)}
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f"Unknown monitor thresholds: {', '.join(sorted(unknown))}")

        with self._lock:
            self.thresholds = replace(self.thresholds, **changes)

        logger.info(
            "MONITOR_THRESHOLDS_UPDATED",
            extra={"changed": sorted(changes)}
        )
        return self.thresholds
