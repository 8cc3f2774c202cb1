"""Escalation lifecycle and professional availability models."""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from .crisis import Severity


class EscalationStatus(Enum):
    """State machine for one crisis response lifecycle."""
    INITIATED = "initiated"
    MATCHING = "matching"
    CHANNEL_OPEN = "channel_open"
    RESOLVED = "resolved"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (EscalationStatus.RESOLVED, EscalationStatus.FAILED)


class EscalationPriority(Enum):
    ROUTINE = "routine"
    URGENT = "urgent"
    EMERGENCY = "emergency"

    @classmethod
    def for_severity(cls, severity: Severity) -> "EscalationPriority":
        if severity == Severity.CRITICAL:
            return cls.EMERGENCY
        if severity == Severity.HIGH:
            return cls.URGENT
        return cls.ROUTINE


@dataclass(frozen=True)
class EscalationStep:
    """One entry in an escalation's audit trail."""
    action: str
    actor: str
    status: EscalationStatus
    success: bool = True
    details: Dict[str, Any] = field(default_factory=dict)
    executed_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "actor": self.actor,
            "status": self.status.value,
            "success": self.success,
            "details": dict(self.details),
            "executed_at": self.executed_at.isoformat(),
        }


@dataclass
class Escalation:
    """Mutable record of one crisis response lifecycle.

    Owned exclusively by EscalationOrchestrator, which serializes every
    mutation per escalation id.
    """
    id: str
    user_id: str
    session_id: str
    assessment_id: str
    status: EscalationStatus
    priority: EscalationPriority
    started_at: datetime
    professional_id: Optional[str] = None
    channel_id: Optional[str] = None
    estimated_response_time: Optional[int] = None
    response_time_breach: bool = False
    retry_after_seconds: Optional[int] = None
    resolved_at: Optional[datetime] = None
    outcome: Optional[str] = None
    steps: List[EscalationStep] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "assessment_id": self.assessment_id,
            "status": self.status.value,
            "priority": self.priority.value,
            "professional_id": self.professional_id,
            "channel_id": self.channel_id,
            "estimated_response_time": self.estimated_response_time,
            "response_time_breach": self.response_time_breach,
            "retry_after_seconds": self.retry_after_seconds,
            "started_at": self.started_at.isoformat(),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "outcome": self.outcome,
            "steps": [s.to_dict() for s in self.steps],
        }


class ProfessionalStatus(Enum):
    AVAILABLE = "available"
    BUSY = "busy"
    UNAVAILABLE = "unavailable"


@dataclass
class ProfessionalAvailability:
    """Per-professional capacity counters.

    ``current_workload`` may exceed ``max_workload`` only for emergency
    contacts assigned to critical cases.
    """
    id: str
    specialties: FrozenSet[str]
    languages: FrozenSet[str]
    max_workload: int
    current_workload: int = 0
    emergency_contact: bool = False
    estimated_response_time: int = 10  # minutes
    status: ProfessionalStatus = ProfessionalStatus.AVAILABLE
    name: str = ""

    def __post_init__(self):
        if self.max_workload < 1:
            raise ValueError(f"max_workload must be >= 1, got {self.max_workload}")
        if self.current_workload < 0:
            raise ValueError(f"current_workload must be >= 0, got {self.current_workload}")

    @property
    def at_capacity(self) -> bool:
        return self.current_workload >= self.max_workload

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "specialties": sorted(self.specialties),
            "languages": sorted(self.languages),
            "current_workload": self.current_workload,
            "max_workload": self.max_workload,
            "emergency_contact": self.emergency_contact,
            "estimated_response_time": self.estimated_response_time,
            "status": self.status.value,
        }
