"""Safety monitoring models: events, user profiles, alerts and metrics.

Events are tagged by SafetyEventType and validated when constructed, so
payloads that reach the monitor always carry the fields their type needs.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple
import uuid

from .crisis import Severity


class SafetyEventType(Enum):
    CRISIS_DETECTED = "crisis_detected"
    ESCALATION_INITIATED = "escalation_initiated"
    PROFESSIONAL_ASSIGNED = "professional_assigned"
    ESCALATION_FAILED = "escalation_failed"
    INTERVENTION_COMPLETED = "intervention_completed"
    ALERT_TRIGGERED = "alert_triggered"


# Detail keys each event type must carry
REQUIRED_EVENT_DETAILS: Dict[SafetyEventType, FrozenSet[str]] = {
    SafetyEventType.CRISIS_DETECTED: frozenset({"indicators"}),
    SafetyEventType.ESCALATION_INITIATED: frozenset({"escalation_id"}),
    SafetyEventType.PROFESSIONAL_ASSIGNED: frozenset({"escalation_id", "professional_id"}),
    SafetyEventType.ESCALATION_FAILED: frozenset({"escalation_id"}),
    SafetyEventType.INTERVENTION_COMPLETED: frozenset({"escalation_id"}),
    SafetyEventType.ALERT_TRIGGERED: frozenset({"alert_id"}),
}

ESCALATION_EVENT_TYPES: FrozenSet[SafetyEventType] = frozenset({
    SafetyEventType.CRISIS_DETECTED,
    SafetyEventType.ESCALATION_INITIATED,
    SafetyEventType.PROFESSIONAL_ASSIGNED,
    SafetyEventType.ESCALATION_FAILED,
    SafetyEventType.INTERVENTION_COMPLETED,
})


@dataclass(frozen=True)
class SafetyEvent:
    """Immutable entry in a user's safety event log."""
    user_id: str
    type: SafetyEventType
    severity: Severity
    details: Dict[str, Any] = field(default_factory=dict)
    resolved: bool = False
    event_id: str = field(default_factory=lambda: f"sevt_{uuid.uuid4().hex[:12]}")
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def __post_init__(self):
        if not self.user_id:
            raise ValueError("SafetyEvent requires a user_id")
        if not isinstance(self.type, SafetyEventType):
            raise ValueError(f"Unknown safety event type: {self.type!r}")
        if not isinstance(self.severity, Severity):
            raise ValueError(f"Unknown severity: {self.severity!r}")
        missing = REQUIRED_EVENT_DETAILS[self.type] - set(self.details)
        if missing:
            raise ValueError(
                f"{self.type.value} event missing details: {', '.join(sorted(missing))}"
            )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SafetyEvent":
        """Validate and build an event from an untyped payload."""
        return cls(
            user_id=data.get("user_id", ""),
            type=SafetyEventType(data["type"]),
            severity=Severity(data["severity"]),
            details=dict(data.get("details", {})),
            resolved=bool(data.get("resolved", False)),
        )


class RiskTrend(Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"


@dataclass
class UserSafetyProfile:
    """Derived, mutable per-user view recomputed on every new event.

    ``safety_score`` is smoothed independently of ``risk_score`` and is
    kept within 10 points of ``100 - risk_score``.
    """
    user_id: str
    current_risk_level: Severity = Severity.LOW
    risk_score: float = 10.0
    safety_score: float = 90.0
    crisis_indicators: FrozenSet[str] = frozenset()
    escalation_history: Tuple[SafetyEvent, ...] = ()
    trend: RiskTrend = RiskTrend.STABLE
    last_activity: datetime = field(default_factory=datetime.utcnow)
    last_updated: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "current_risk_level": self.current_risk_level.value,
            "risk_score": round(self.risk_score, 1),
            "safety_score": round(self.safety_score, 1),
            "crisis_indicators": sorted(self.crisis_indicators),
            "escalation_history": [
                {"event_id": e.event_id, "type": e.type.value, "severity": e.severity.value,
                 "timestamp": e.timestamp.isoformat()}
                for e in self.escalation_history
            ],
            "trend": self.trend.value,
            "last_activity": self.last_activity.isoformat(),
            "last_updated": self.last_updated.isoformat(),
        }


class AlertType(Enum):
    USER_RISK = "user_risk"
    SYSTEM_OVERLOAD = "system_overload"
    RESPONSE_DELAY = "response_delay"
    TREND_ANOMALY = "trend_anomaly"


@dataclass
class SafetyAlert:
    """Deduplicated operational alert."""
    id: str
    type: AlertType
    severity: Severity
    title: str
    description: str
    affected_users: List[str] = field(default_factory=list)
    triggered_at: datetime = field(default_factory=datetime.utcnow)
    acknowledged: bool = False
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None

    @property
    def signature(self) -> Tuple[str, str, str]:
        return (self.type.value, self.severity.value, self.title)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "severity": self.severity.value,
            "title": self.title,
            "description": self.description,
            "affected_users": list(self.affected_users),
            "triggered_at": self.triggered_at.isoformat(),
            "acknowledged": self.acknowledged,
            "acknowledged_by": self.acknowledged_by,
            "acknowledged_at": self.acknowledged_at.isoformat() if self.acknowledged_at else None,
        }


@dataclass(frozen=True)
class SafetyMetrics:
    """Aggregate snapshot produced by SafetyMonitor.update_safety_metrics."""
    active_users: int
    high_risk_users: int
    critical_risk_users: int
    active_escalations: int
    resolved_escalations: int
    failed_escalations: int
    average_response_time: float
    safety_score: int
    alerts_triggered: int
    unacknowledged_alerts: int
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def __post_init__(self):
        if not 0 <= self.safety_score <= 100:
            raise ValueError(f"Safety score must be 0-100, got {self.safety_score}")
