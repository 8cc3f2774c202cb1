"""Shared domain models for Safeharbor."""
from .crisis import (
    Severity,
    Indicator,
    CRITICAL_INDICATORS,
    ActionType,
    ActionPriority,
    ActionTarget,
    RecommendedAction,
    CrisisAssessment,
)
from .escalation import (
    EscalationStatus,
    EscalationPriority,
    EscalationStep,
    Escalation,
    ProfessionalStatus,
    ProfessionalAvailability,
)
from .safety import (
    SafetyEventType,
    SafetyEvent,
    ESCALATION_EVENT_TYPES,
    RiskTrend,
    UserSafetyProfile,
    AlertType,
    SafetyAlert,
    SafetyMetrics,
)

__all__ = [
    "Severity",
    "Indicator",
    "CRITICAL_INDICATORS",
    "ActionType",
    "ActionPriority",
    "ActionTarget",
    "RecommendedAction",
    "CrisisAssessment",
    "EscalationStatus",
    "EscalationPriority",
    "EscalationStep",
    "Escalation",
    "ProfessionalStatus",
    "ProfessionalAvailability",
    "SafetyEventType",
    "SafetyEvent",
    "ESCALATION_EVENT_TYPES",
    "RiskTrend",
    "UserSafetyProfile",
    "AlertType",
    "SafetyAlert",
    "SafetyMetrics",
]
