"""Crisis assessment domain models.

A CrisisAssessment is the immutable output of one classification pass
(classifier, false-positive filter and severity stratifier combined).
Assessments are persisted append-only for audit.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple
import uuid


class Severity(Enum):
    """Severity tiers for a crisis assessment, lowest to highest."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)

    def bump(self, ceiling: "Severity") -> "Severity":
        """Return the next tier up, never above ``ceiling``."""
        if self.rank >= ceiling.rank:
            return self
        return _SEVERITY_ORDER[self.rank + 1]


_SEVERITY_ORDER = (Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL)


class Indicator(Enum):
    """Named crisis signals detected in user text."""
    SUICIDE_IDEATION = "suicide_ideation"
    SELF_HARM = "self_harm"
    SEVERE_DEPRESSION = "severe_depression"
    ACUTE_ANXIETY = "acute_anxiety"
    HOPELESSNESS = "hopelessness"
    SUBSTANCE_ABUSE = "substance_abuse"
    EATING_DISORDERS = "eating_disorders"
    DOMESTIC_VIOLENCE = "domestic_violence"


# Indicators that force the critical tier regardless of anything else
CRITICAL_INDICATORS: FrozenSet[Indicator] = frozenset({
    Indicator.SUICIDE_IDEATION,
    Indicator.SELF_HARM,
})


class ActionType(Enum):
    ESCALATE = "escalate"
    RESOURCES = "resources"
    MONITOR = "monitor"
    INTERVENE = "intervene"


class ActionPriority(Enum):
    IMMEDIATE = "immediate"
    URGENT = "urgent"
    ROUTINE = "routine"


class ActionTarget(Enum):
    PROFESSIONAL = "professional"
    EMERGENCY_SERVICES = "emergency_services"
    USER = "user"


@dataclass(frozen=True)
class RecommendedAction:
    """A single recommended response step attached to an assessment."""
    type: ActionType
    priority: ActionPriority
    target: ActionTarget
    description: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "type": self.type.value,
            "priority": self.priority.value,
            "target": self.target.value,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecommendedAction":
        return cls(
            type=ActionType(data["type"]),
            priority=ActionPriority(data["priority"]),
            target=ActionTarget(data["target"]),
            description=data.get("description", ""),
        )


@dataclass(frozen=True)
class CrisisAssessment:
    """Immutable result of one classification pass.

    Never mutated after creation. ``context`` holds the source text
    truncated for audit; it is never written to application logs.
    """
    user_id: str
    session_id: str
    severity: Severity
    confidence: float
    indicators: FrozenSet[Indicator] = frozenset()
    risk_factors: Tuple[str, ...] = ()
    recommended_actions: Tuple[RecommendedAction, ...] = ()
    immediate: bool = False
    context: str = ""
    pattern_version: str = ""
    assessment_id: str = field(default_factory=lambda: f"assess_{uuid.uuid4().hex[:12]}")
    detected_at: datetime = field(default_factory=datetime.utcnow)

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Confidence must be 0.0-1.0, got {self.confidence}")

    @property
    def dominant_indicator(self) -> Optional[Indicator]:
        """Highest-priority indicator present, in declaration order."""
        for indicator in Indicator:
            if indicator in self.indicators:
                return indicator
        return None

    def has_action(self, action_type: ActionType, priority: Optional[ActionPriority] = None) -> bool:
        return any(
            a.type == action_type and (priority is None or a.priority == priority)
            for a in self.recommended_actions
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses and storage."""
        return {
            "assessment_id": self.assessment_id,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "severity": self.severity.value,
            "confidence": round(self.confidence, 3),
            "indicators": sorted(i.value for i in self.indicators),
            "risk_factors": list(self.risk_factors),
            "recommended_actions": [a.to_dict() for a in self.recommended_actions],
            "immediate": self.immediate,
            "context": self.context,
            "pattern_version": self.pattern_version,
            "detected_at": self.detected_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CrisisAssessment":
        """Build an assessment from an API payload.

        Raises:
            KeyError: If a required field is missing
            ValueError: If an enum value or confidence is invalid
        """
        kwargs: Dict[str, Any] = {
            "user_id": data["user_id"],
            "session_id": data["session_id"],
            "severity": Severity(data["severity"]),
            "confidence": float(data["confidence"]),
            "indicators": frozenset(Indicator(i) for i in data.get("indicators", [])),
            "risk_factors": tuple(data.get("risk_factors", [])),
            "recommended_actions": tuple(
                RecommendedAction.from_dict(a) for a in data.get("recommended_actions", [])
            ),
            "immediate": bool(data.get("immediate", False)),
            "context": data.get("context", ""),
            "pattern_version": data.get("pattern_version", ""),
        }
        if data.get("assessment_id"):
            kwargs["assessment_id"] = data["assessment_id"]
        if data.get("detected_at"):
            kwargs["detected_at"] = datetime.fromisoformat(data["detected_at"])
        return cls(**kwargs)
