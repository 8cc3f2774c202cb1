"""Professional matching and workload accounting.

Hard constraints (a professional failing any is never returned):
- speaks every required language
- shares at least one preferred specialty, when any are given
- is not unavailable
- has spare capacity, unless the case is critical and they are an
  emergency contact

Score (0-100):
- specialty overlap ratio x specialty weight
- language weight (always earned once hard constraints pass)
- spare capacity ratio x workload weight
- emergency bonus for emergency contacts on critical cases

Ranking: highest score, then lowest workload, then lowest estimated
response time, then id. Workload counters only change under the
matcher's lock, so concurrent assign/release never lose an update.
"""
import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

from safeharbor.shared.models import (
    CrisisAssessment,
    Indicator,
    ProfessionalAvailability,
    ProfessionalStatus,
    Severity,
)
from safeharbor.shared.store import InMemoryStore, KeyValueStore

logger = logging.getLogger(__name__)

PROFESSIONAL_NAMESPACE = "professionals"

CRISIS_TYPES: Dict[Indicator, str] = {
    Indicator.SUICIDE_IDEATION: "suicidal_threat",
    Indicator.SELF_HARM: "self_harm",
    Indicator.SEVERE_DEPRESSION: "depression",
    Indicator.ACUTE_ANXIETY: "anxiety",
    Indicator.SUBSTANCE_ABUSE: "substance_abuse",
    Indicator.EATING_DISORDERS: "eating_disorder",
    Indicator.DOMESTIC_VIOLENCE: "domestic_violence",
}
DEFAULT_CRISIS_TYPE = "crisis_intervention"

INDICATOR_SPECIALTIES: Dict[Indicator, str] = {
    Indicator.SUICIDE_IDEATION: "suicide_prevention",
    Indicator.SELF_HARM: "self_harm",
    Indicator.SEVERE_DEPRESSION: "depression",
    Indicator.HOPELESSNESS: "depression",
    Indicator.ACUTE_ANXIETY: "anxiety",
    Indicator.SUBSTANCE_ABUSE: "substance_abuse",
    Indicator.EATING_DISORDERS: "eating_disorders",
    Indicator.DOMESTIC_VIOLENCE: "domestic_violence",
}
DEFAULT_SPECIALTY = "crisis_intervention"


def crisis_type_for(indicator: Optional[Indicator]) -> str:
    """Crisis type routed on for the dominant indicator."""
    return CRISIS_TYPES.get(indicator, DEFAULT_CRISIS_TYPE)


def specialties_for(indicators: Iterable[Indicator]) -> FrozenSet[str]:
    """Specialties suited to a set of indicators."""
    specialties = frozenset(INDICATOR_SPECIALTIES[i] for i in indicators if i in INDICATOR_SPECIALTIES)
    return specialties or frozenset({DEFAULT_SPECIALTY})


@dataclass(frozen=True)
class MatchWeights:
    """Scoring weights for professional matching."""
    specialty: float = 40.0
    language: float = 20.0
    workload: float = 20.0
    emergency_bonus: float = 10.0
    max_results: int = 5
    # Assumed wait for a professional who cannot take the case right now
    next_available_minutes: int = 30


@dataclass(frozen=True)
class MatchCriteria:
    """What a crisis needs from a professional."""
    crisis_type: str
    severity: Severity
    required_languages: FrozenSet[str] = frozenset({"en"})
    preferred_specialties: FrozenSet[str] = frozenset()
    max_response_time: Optional[int] = None  # minutes

    @classmethod
    def for_assessment(
        cls,
        assessment: CrisisAssessment,
        required_languages: Iterable[str] = ("en",),
        max_response_time: Optional[int] = None,
    ) -> "MatchCriteria":
        return cls(
            crisis_type=crisis_type_for(assessment.dominant_indicator),
            severity=assessment.severity,
            required_languages=frozenset(required_languages),
            preferred_specialties=specialties_for(assessment.indicators),
            max_response_time=max_response_time,
        )


@dataclass(frozen=True)
class MatchAvailability:
    immediately: bool
    next_available: datetime


@dataclass(frozen=True)
class ProfessionalMatch:
    """One ranked candidate. ``professional`` is a snapshot, not live state."""
    professional: ProfessionalAvailability
    score: float
    estimated_response_time: int
    availability: MatchAvailability
    reasoning: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "professional": self.professional.to_dict(),
            "score": self.score,
            "estimated_response_time": self.estimated_response_time,
            "reasoning": list(self.reasoning),
            "availability": {
                "immediately": self.availability.immediately,
                "next_available": self.availability.next_available.isoformat(),
            },
        }


class ProfessionalMatcher:
    """Ranks professionals for a crisis and tracks their workload."""

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        weights: Optional[MatchWeights] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        """Initialize matcher.

        Args:
            store: Store holding ProfessionalAvailability records
            weights: Scoring weights
            clock: Time source for availability estimates
        """
        self.store = store or InMemoryStore()
        self.weights = weights or MatchWeights()
        self._clock = clock
        self._lock = threading.RLock()

        logger.info(
            "PROFESSIONAL_MATCHER_INITIALIZED",
            extra={"max_results": self.weights.max_results}
        )

    # Registry

    def register_professional(self, professional: ProfessionalAvailability) -> None:
        """Add a professional to the registry.

        Raises:
            DuplicateError: If the id is already registered
        """
        with self._lock:
            self.store.insert(PROFESSIONAL_NAMESPACE, professional.id, replace(professional))
        logger.info(
            "PROFESSIONAL_REGISTERED",
            extra={
                "professional_id": professional.id,
                "specialties": sorted(professional.specialties),
                "max_workload": professional.max_workload,
                "emergency_contact": professional.emergency_contact,
            }
        )

    def get_professional(self, professional_id: str) -> Optional[ProfessionalAvailability]:
        """Snapshot of a professional's current state."""
        with self._lock:
            record = self.store.get(PROFESSIONAL_NAMESPACE, professional_id)
            return replace(record) if record is not None else None

    def set_professional_status(self, professional_id: str, status: ProfessionalStatus) -> bool:
        with self._lock:
            record = self.store.get(PROFESSIONAL_NAMESPACE, professional_id)
            if record is None:
                logger.warning(
                    "PROFESSIONAL_NOT_FOUND",
                    extra={"professional_id": professional_id, "operation": "set_status"}
                )
                return False
            previous = record.status
            self.store.put(PROFESSIONAL_NAMESPACE, professional_id, replace(record, status=status))

        logger.info(
            "PROFESSIONAL_STATUS_UPDATED",
            extra={
                "professional_id": professional_id,
                "from": previous.value,
                "to": status.value,
            }
        )
        return True

    def available_count(self) -> int:
        """Professionals who can take a new non-critical case right now."""
        return sum(1 for p in self._snapshot() if _immediately_available(p))

    def _snapshot(self) -> List[ProfessionalAvailability]:
        with self._lock:
            return [replace(p) for p in self.store.values(PROFESSIONAL_NAMESPACE)]

    # Matching

    def find_best_match(self, criteria: MatchCriteria) -> List[ProfessionalMatch]:
        """Rank professionals for a crisis.

        Args:
            criteria: Crisis requirements

        Returns:
            Up to ``max_results`` matches, best first. Empty when nobody
            satisfies the hard constraints; never raises.
        """
        try:
            matches = []
            for professional in self._snapshot():
                if self._eligible(professional, criteria):
                    matches.append(self._evaluate(professional, criteria))

            matches.sort(key=lambda m: (
                -m.score,
                m.professional.current_workload,
                m.estimated_response_time,
                m.professional.id,
            ))
            matches = matches[:self.weights.max_results]

            logger.info(
                "PROFESSIONAL_MATCHING_COMPLETED",
                extra={
                    "crisis_type": criteria.crisis_type,
                    "severity": criteria.severity.value,
                    "matches_found": len(matches),
                    "top_score": matches[0].score if matches else 0,
                }
            )
            return matches

        except Exception as e:
            logger.error(
                "PROFESSIONAL_MATCHING_FAILED",
                extra={
                    "crisis_type": criteria.crisis_type,
                    "error": str(e),
                    "error_type": type(e).__name__,
                }
            )
            return []

    def _eligible(self, professional: ProfessionalAvailability, criteria: MatchCriteria) -> bool:
        if professional.status == ProfessionalStatus.UNAVAILABLE:
            return False
        if not criteria.required_languages <= professional.languages:
            return False
        if criteria.preferred_specialties and not (criteria.preferred_specialties & professional.specialties):
            return False
        if professional.at_capacity or professional.status == ProfessionalStatus.BUSY:
            return _overflow_allowed(professional, criteria.severity)
        return True

    def _evaluate(self, professional: ProfessionalAvailability, criteria: MatchCriteria) -> ProfessionalMatch:
        w = self.weights
        reasoning: List[str] = []

        if criteria.preferred_specialties:
            overlap = criteria.preferred_specialties & professional.specialties
            ratio = len(overlap) / len(criteria.preferred_specialties)
            reasoning.append(f"Specialty match: {', '.join(sorted(overlap))}")
        else:
            ratio = 1.0
        score = ratio * w.specialty

        score += w.language
        reasoning.append(f"Language match: {', '.join(sorted(criteria.required_languages))}")

        spare = max(0.0, 1 - professional.current_workload / professional.max_workload)
        score += spare * w.workload
        reasoning.append(f"Workload capacity: {round(spare * 100)}% available")

        if professional.emergency_contact and criteria.severity == Severity.CRITICAL:
            score += w.emergency_bonus
            reasoning.append("Emergency contact available")

        now = self._clock()
        immediately = _immediately_available(professional)
        response_time = professional.estimated_response_time
        if immediately:
            next_available = now
        else:
            response_time += w.next_available_minutes
            next_available = now + timedelta(minutes=w.next_available_minutes)
            reasoning.append("Over capacity - emergency overflow")

        if criteria.max_response_time is not None and response_time > criteria.max_response_time:
            reasoning.append(
                f"Response time {response_time}m exceeds target {criteria.max_response_time}m"
            )

        return ProfessionalMatch(
            professional=professional,
            score=round(min(score, 100.0), 2),
            estimated_response_time=response_time,
            availability=MatchAvailability(immediately=immediately, next_available=next_available),
            reasoning=tuple(reasoning),
        )

    # Workload

    def assign(self, professional_id: str, severity: Severity) -> bool:
        """Take a workload slot, re-checking capacity atomically.

        Returns:
            False if the professional is unknown or can no longer accept
        """
        with self._lock:
            record = self.store.get(PROFESSIONAL_NAMESPACE, professional_id)
            if record is None or record.status == ProfessionalStatus.UNAVAILABLE:
                accepted = False
            elif record.at_capacity or record.status == ProfessionalStatus.BUSY:
                accepted = _overflow_allowed(record, severity)
            else:
                accepted = True

            if accepted:
                record = replace(record, current_workload=record.current_workload + 1)
                self.store.put(PROFESSIONAL_NAMESPACE, professional_id, record)

        if not accepted:
            logger.warning(
                "PROFESSIONAL_ASSIGN_REJECTED",
                extra={"professional_id": professional_id, "severity": severity.value}
            )
            return False

        logger.info(
            "PROFESSIONAL_ASSIGNED",
            extra={
                "professional_id": professional_id,
                "current_workload": record.current_workload,
                "max_workload": record.max_workload,
                "over_capacity": record.current_workload > record.max_workload,
            }
        )
        return True

    def release(self, professional_id: str) -> bool:
        """Give back a workload slot. Never drops below zero.

        Raises:
            NotFoundError: If the professional is not registered
        """
        with self._lock:
            record = self.store.require(PROFESSIONAL_NAMESPACE, professional_id)
            if record.current_workload == 0:
                logger.warning(
                    "PROFESSIONAL_RELEASE_AT_ZERO",
                    extra={"professional_id": professional_id}
                )
                return False
            record = replace(record, current_workload=record.current_workload - 1)
            self.store.put(PROFESSIONAL_NAMESPACE, professional_id, record)

        logger.info(
            "PROFESSIONAL_RELEASED",
            extra={
                "professional_id": professional_id,
                "current_workload": record.current_workload,
            }
        )
        return True


def _immediately_available(professional: ProfessionalAvailability) -> bool:
    return professional.status == ProfessionalStatus.AVAILABLE and not professional.at_capacity


def _overflow_allowed(professional: ProfessionalAvailability, severity: Severity) -> bool:
    return severity == Severity.CRITICAL and professional.emergency_contact
