"""Escalation orchestrator - crisis response state machine.

    initiated -> matching -> channel_open -> resolved
            \\            \\
             `-> failed    `-> failed

Every status change is a compare-and-set under the escalation's lock, so
a resolve racing another resolve (or a match racing a resolve) sees the
status it expects exactly once. Gateway calls run on a worker pool with
a timeout and never while a lock is held.

Failure handling:
    - No professional available: escalation fails with a retry hint
    - Channel creation fails: workload slot released, escalation fails
    - Notification fails: logged on the audit trail, escalation proceeds
"""
import logging
import threading
import uuid
import zlib
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from dataclasses import dataclass, replace
from datetime import datetime
from typing import (
    TYPE_CHECKING, Any, Callable, Dict, FrozenSet, List, Optional, Tuple,
)

from safeharbor.shared.models import (
    AlertType,
    CrisisAssessment,
    Escalation,
    EscalationPriority,
    EscalationStatus,
    EscalationStep,
    SafetyEvent,
    SafetyEventType,
    Severity,
)
from safeharbor.shared.store import (
    DuplicateError,
    InMemoryStore,
    KeyValueStore,
    RepositoryError,
)
from safeharbor.shared.utils import hash_pii
from safeharbor.services.professional_service import (
    MatchCriteria,
    ProfessionalMatch,
    ProfessionalMatcher,
)
from .gateways import GatewayError, NotificationGateway, SecureChannelGateway

if TYPE_CHECKING:
    from safeharbor.services.monitoring_service import SafetyMonitor

logger = logging.getLogger(__name__)

ESCALATION_NAMESPACE = "escalations"
ASSESSMENT_INDEX_NAMESPACE = "escalation_by_assessment"

_LOCK_STRIPES = 64

_PRIORITY_SEVERITY: Dict[EscalationPriority, Severity] = {
    EscalationPriority.EMERGENCY: Severity.CRITICAL,
    EscalationPriority.URGENT: Severity.HIGH,
    EscalationPriority.ROUTINE: Severity.MEDIUM,
}


@dataclass(frozen=True)
class EscalationConfig:
    """Timeouts, retries and response-time caps for escalations."""
    emergency_response_cap_minutes: int = 15
    urgent_response_cap_minutes: int = 30
    routine_response_cap_minutes: int = 120

    # Per-attempt bound on each external gateway call
    gateway_timeout_seconds: float = 5.0
    # Extra attempts after the first
    retry_count: int = 1
    gateway_workers: int = 8

    # Backoff hint returned when no professional is available
    retry_after_seconds: int = 300

    required_languages: Tuple[str, ...] = ("en",)

    def response_cap(self, priority: EscalationPriority) -> int:
        if priority == EscalationPriority.EMERGENCY:
            return self.emergency_response_cap_minutes
        if priority == EscalationPriority.URGENT:
            return self.urgent_response_cap_minutes
        return self.routine_response_cap_minutes


class EscalationOrchestrator:
    """Drives an actionable assessment to a professional and back."""

    def __init__(
        self,
        matcher: ProfessionalMatcher,
        channel_gateway: SecureChannelGateway,
        notification_gateway: NotificationGateway,
        store: Optional[KeyValueStore] = None,
        monitor: Optional["SafetyMonitor"] = None,
        config: Optional[EscalationConfig] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        """Initialize orchestrator with collaborators.

        Args:
            matcher: Professional matcher owning workload counters
            channel_gateway: Secure channel provider
            notification_gateway: Professional notifier
            store: Escalation record store
            monitor: Safety monitor receiving lifecycle events
            config: Timeouts, retries and response caps
            clock: Time source
        """
        self.matcher = matcher
        self.channel_gateway = channel_gateway
        self.notification_gateway = notification_gateway
        self.store = store or InMemoryStore()
        self.monitor = monitor
        self.config = config or EscalationConfig()
        self._clock = clock
        self._stripes = tuple(threading.Lock() for _ in range(_LOCK_STRIPES))
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.gateway_workers,
            thread_name_prefix="escalation-gateway",
        )

        logger.info(
            "ESCALATION_ORCHESTRATOR_INITIALIZED",
            extra={
                "gateway_timeout_seconds": self.config.gateway_timeout_seconds,
                "retry_count": self.config.retry_count,
                "monitor_attached": monitor is not None,
            }
        )

    def _lock_for(self, escalation_id: str) -> threading.Lock:
        return self._stripes[zlib.crc32(escalation_id.encode()) % _LOCK_STRIPES]

    # Entry points

    def evaluate_escalation(
        self,
        user_id: str,
        session_id: str,
        assessment: Optional[CrisisAssessment],
    ) -> Optional[Escalation]:
        """Start an escalation for an actionable assessment.

        Args:
            user_id: User the assessment concerns
            session_id: Conversation session
            assessment: Output of TriageService.classify

        Returns:
            The escalation (open or failed), or None when the assessment
            is absent or not actionable. Never raises.
        """
        if assessment is None or assessment.severity == Severity.LOW:
            logger.info(
                "ESCALATION_NOT_REQUIRED",
                extra={
                    "session_id": session_id,
                    "severity": assessment.severity.value if assessment else None,
                }
            )
            return None

        escalation_id = f"esc_{uuid.uuid4().hex[:12]}"
        try:
            self.store.insert(ASSESSMENT_INDEX_NAMESPACE, assessment.assessment_id, escalation_id)
        except DuplicateError:
            existing_id = self.store.get(ASSESSMENT_INDEX_NAMESPACE, assessment.assessment_id)
            logger.warning(
                "ESCALATION_ALREADY_EXISTS",
                extra={"assessment_id": assessment.assessment_id, "escalation_id": existing_id}
            )
            return self.get_escalation(existing_id)

        try:
            self._run(escalation_id, user_id, session_id, assessment)
        except Exception as e:
            logger.critical(
                "ESCALATION_ORCHESTRATION_ERROR",
                extra={
                    "escalation_id": escalation_id,
                    "error": str(e),
                    "error_type": type(e).__name__,
                    "action": "MANUAL_REVIEW_REQUIRED",
                }
            )
            self._fail(escalation_id, "orchestration_error", retry_after=self.config.retry_after_seconds)

        return self.get_escalation(escalation_id)

    def resolve_escalation(
        self,
        escalation_id: str,
        outcome: str,
        resolved_by: str = "professional",
    ) -> bool:
        """Close an open escalation and free the professional's slot.

        Returns:
            True on the first successful resolve; False if the escalation
            is unknown or not in channel_open (including already resolved)
        """
        escalation = self._transition(
            escalation_id,
            expected=frozenset({EscalationStatus.CHANNEL_OPEN}),
            new_status=EscalationStatus.RESOLVED,
            action="escalation_resolved",
            actor=resolved_by,
            details={"outcome": outcome},
            mutate=lambda e: self._mark_resolved(e, outcome),
        )
        if escalation is None:
            current = self.store.get(ESCALATION_NAMESPACE, escalation_id)
            logger.warning(
                "ESCALATION_RESOLVE_REJECTED",
                extra={
                    "escalation_id": escalation_id,
                    "status": current.status.value if current else None,
                    "reason": "not_found" if current is None else "invalid_state",
                }
            )
            return False

        self._release(escalation)

        logger.info(
            "ESCALATION_RESOLVED",
            extra={
                "escalation_id": escalation_id,
                "professional_id": escalation.professional_id,
                "resolved_by": resolved_by,
                "time_to_resolve_seconds": (
                    escalation.resolved_at - escalation.started_at
                ).total_seconds(),
            }
        )
        self._report_event(escalation, SafetyEventType.INTERVENTION_COMPLETED, {"outcome": outcome})
        return True

    def _mark_resolved(self, escalation: Escalation, outcome: str) -> None:
        escalation.resolved_at = self._clock()
        escalation.outcome = outcome

    # Queries

    def get_escalation(self, escalation_id: Optional[str]) -> Optional[Escalation]:
        """Snapshot of an escalation."""
        if escalation_id is None:
            return None
        with self._lock_for(escalation_id):
            escalation = self.store.get(ESCALATION_NAMESPACE, escalation_id)
            return _copy(escalation) if escalation is not None else None

    def get_active_escalations(self) -> List[Escalation]:
        """Non-terminal escalations, oldest first."""
        ids = [e.id for e in self.store.values(ESCALATION_NAMESPACE)]
        snapshots = (self.get_escalation(escalation_id) for escalation_id in ids)
        active = [e for e in snapshots if e is not None and not e.status.is_terminal]
        return sorted(active, key=lambda e: e.started_at)

    def get_escalation_stats(self) -> Dict[str, Any]:
        """Counts and mean estimated response time for monitoring."""
        escalations = self.store.values(ESCALATION_NAMESPACE)
        counts = {status: 0 for status in EscalationStatus}
        response_times = []
        for e in escalations:
            counts[e.status] += 1
            if e.estimated_response_time is not None:
                response_times.append(e.estimated_response_time)

        return {
            "active": sum(n for s, n in counts.items() if not s.is_terminal),
            "resolved": counts[EscalationStatus.RESOLVED],
            "failed": counts[EscalationStatus.FAILED],
            "average_response_time": (
                sum(response_times) / len(response_times) if response_times else 0.0
            ),
        }

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)

    # Workflow

    def _run(
        self,
        escalation_id: str,
        user_id: str,
        session_id: str,
        assessment: CrisisAssessment,
    ) -> None:
        priority = EscalationPriority.for_severity(assessment.severity)
        cap = self.config.response_cap(priority)
        now = self._clock()
        escalation = Escalation(
            id=escalation_id,
            user_id=user_id,
            session_id=session_id,
            assessment_id=assessment.assessment_id,
            status=EscalationStatus.INITIATED,
            priority=priority,
            started_at=now,
            steps=[EscalationStep(
                action="escalation_initiated",
                actor="system",
                status=EscalationStatus.INITIATED,
                details={"severity": assessment.severity.value, "priority": priority.value},
                executed_at=now,
            )],
        )
        with self._lock_for(escalation_id):
            self.store.put(ESCALATION_NAMESPACE, escalation_id, escalation)

        log = logger.critical if priority == EscalationPriority.EMERGENCY else logger.warning
        log(
            "ESCALATION_INITIATED",
            extra={
                "escalation_id": escalation_id,
                "assessment_id": assessment.assessment_id,
                "session_id": session_id,
                "user_id_hash": hash_pii(user_id),
                "severity": assessment.severity.value,
                "priority": priority.value,
            }
        )
        self._report_event(escalation, SafetyEventType.ESCALATION_INITIATED)

        criteria = MatchCriteria.for_assessment(
            assessment,
            required_languages=self.config.required_languages,
            max_response_time=cap,
        )
        self._transition(
            escalation_id,
            expected=frozenset({EscalationStatus.INITIATED}),
            new_status=EscalationStatus.MATCHING,
            action="matching_started",
            actor="system",
            details={
                "crisis_type": criteria.crisis_type,
                "specialties": sorted(criteria.preferred_specialties),
            },
        )

        ok, matches = self._call_gateway("find_best_match", self.matcher.find_best_match, criteria)
        match = self._assign_first(matches or [], assessment.severity) if ok else None
        if match is None:
            self._fail(
                escalation_id,
                "no_professional_available",
                retry_after=self.config.retry_after_seconds,
                details={"candidates": len(matches or [])},
            )
            return

        professional_id = match.professional.id
        try:
            self._record_step(
                escalation_id,
                action="professional_assigned",
                actor="professional_matcher",
                details={
                    "professional_id": professional_id,
                    "score": match.score,
                    "estimated_response_time": match.estimated_response_time,
                },
            )
            opened = self._open_channel(escalation_id, user_id, assessment, match, cap)
        except Exception:
            self._release_professional(professional_id, escalation_id)
            raise
        if opened is None:
            self._release_professional(professional_id, escalation_id)
            return

        self._report_event(
            opened,
            SafetyEventType.PROFESSIONAL_ASSIGNED,
            {"professional_id": professional_id, "channel_id": opened.channel_id},
        )

        if opened.response_time_breach:
            self._flag_breach(opened, cap)

        notified, _ = self._call_gateway(
            "notify",
            self._notify,
            professional_id,
            escalation_id,
            priority.value,
            opened.channel_id,
        )
        self._record_step(
            escalation_id,
            action="professional_notified",
            actor="notification_gateway",
            success=notified,
            details={"professional_id": professional_id},
        )

    def _open_channel(
        self,
        escalation_id: str,
        user_id: str,
        assessment: CrisisAssessment,
        match: ProfessionalMatch,
        cap: int,
    ) -> Optional[Escalation]:
        """Create the secure channel and move to channel_open.

        Returns None when the escalation did not open; the caller owns
        releasing the assigned professional in that case.
        """
        professional_id = match.professional.id
        ok, channel = self._call_gateway(
            "create_channel",
            self.channel_gateway.create_channel,
            professional_id,
            user_id,
            assessment.assessment_id,
            escalation_id,
        )
        if not ok:
            self._fail(
                escalation_id,
                "channel_creation_failed",
                details={"professional_id": professional_id},
            )
            return None

        channel_id = channel.channel_id
        algorithm = channel.encryption_algorithm
        breach = match.estimated_response_time > cap

        def open_channel(e: Escalation) -> None:
            e.professional_id = professional_id
            e.channel_id = channel_id
            e.estimated_response_time = match.estimated_response_time
            e.response_time_breach = breach

        return self._transition(
            escalation_id,
            expected=frozenset({EscalationStatus.MATCHING}),
            new_status=EscalationStatus.CHANNEL_OPEN,
            action="channel_opened",
            actor="secure_channel_gateway",
            details={"channel_id": channel_id, "encryption_algorithm": algorithm},
            mutate=open_channel,
        )

    def _notify(self, professional_id, escalation_id, priority, channel_id) -> bool:
        if not self.notification_gateway.notify(professional_id, escalation_id, priority, channel_id):
            raise GatewayError("Notification not delivered")
        return True

    def _assign_first(
        self, matches: List[ProfessionalMatch], severity: Severity
    ) -> Optional[ProfessionalMatch]:
        # A candidate may fill up between ranking and assignment
        for match in matches:
            if self.matcher.assign(match.professional.id, severity):
                return match
        return None

    def _flag_breach(self, escalation: Escalation, cap: int) -> None:
        logger.warning(
            "ESCALATION_RESPONSE_TIME_BREACH",
            extra={
                "escalation_id": escalation.id,
                "priority": escalation.priority.value,
                "estimated_response_time": escalation.estimated_response_time,
                "cap_minutes": cap,
            }
        )
        if self.monitor is None:
            return
        try:
            self.monitor.create_safety_alert(
                alert_type=AlertType.RESPONSE_DELAY,
                severity=Severity.HIGH,
                title=f"{escalation.priority.value.title()} response time cap exceeded",
                description=(
                    f"Estimated response {escalation.estimated_response_time} min "
                    f"exceeds {cap} min cap"
                ),
                affected_users=[escalation.user_id],
            )
        except Exception as e:
            logger.error(
                "ESCALATION_ALERT_FAILED",
                extra={"escalation_id": escalation.id, "error": str(e)}
            )

    def _fail(
        self,
        escalation_id: str,
        reason: str,
        retry_after: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        def mark_failed(e: Escalation) -> None:
            e.retry_after_seconds = retry_after

        failed = self._transition(
            escalation_id,
            expected=frozenset({EscalationStatus.INITIATED, EscalationStatus.MATCHING}),
            new_status=EscalationStatus.FAILED,
            action="escalation_failed",
            actor="system",
            success=False,
            details={"reason": reason, "retry_after_seconds": retry_after, **(details or {})},
            mutate=mark_failed,
        )
        if failed is None:
            return

        logger.critical(
            "ESCALATION_FAILED",
            extra={
                "escalation_id": escalation_id,
                "reason": reason,
                "retry_after_seconds": retry_after,
                "action": "RETRY_LATER" if retry_after else "MANUAL_REVIEW_REQUIRED",
            }
        )
        self._report_event(failed, SafetyEventType.ESCALATION_FAILED, {"reason": reason})

    def _release(self, escalation: Escalation) -> None:
        if escalation.professional_id:
            self._release_professional(escalation.professional_id, escalation.id)

    def _release_professional(self, professional_id: str, escalation_id: str) -> None:
        try:
            self.matcher.release(professional_id)
        except RepositoryError as e:
            logger.error(
                "PROFESSIONAL_RELEASE_FAILED",
                extra={
                    "escalation_id": escalation_id,
                    "professional_id": professional_id,
                    "error": str(e),
                }
            )

    # State machine primitives

    def _transition(
        self,
        escalation_id: str,
        expected: FrozenSet[EscalationStatus],
        new_status: EscalationStatus,
        action: str,
        actor: str,
        success: bool = True,
        details: Optional[Dict[str, Any]] = None,
        mutate: Optional[Callable[[Escalation], None]] = None,
    ) -> Optional[Escalation]:
        """Compare-and-set the status. Returns a snapshot, or None if the
        escalation is missing or not in an expected status."""
        with self._lock_for(escalation_id):
            escalation = self.store.get(ESCALATION_NAMESPACE, escalation_id)
            if escalation is None or escalation.status not in expected:
                return None

            previous = escalation.status
            if mutate is not None:
                mutate(escalation)
            escalation.status = new_status
            escalation.steps.append(EscalationStep(
                action=action,
                actor=actor,
                status=new_status,
                success=success,
                details=details or {},
                executed_at=self._clock(),
            ))
            self.store.put(ESCALATION_NAMESPACE, escalation_id, escalation)
            snapshot = _copy(escalation)

        logger.info(
            "ESCALATION_TRANSITION",
            extra={
                "escalation_id": escalation_id,
                "from": previous.value,
                "to": new_status.value,
                "action": action,
                "actor": actor,
            }
        )
        return snapshot

    def _record_step(
        self,
        escalation_id: str,
        action: str,
        actor: str,
        success: bool = True,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        with self._lock_for(escalation_id):
            escalation = self.store.get(ESCALATION_NAMESPACE, escalation_id)
            if escalation is None:
                return
            escalation.steps.append(EscalationStep(
                action=action,
                actor=actor,
                status=escalation.status,
                success=success,
                details=details or {},
                executed_at=self._clock(),
            ))
            self.store.put(ESCALATION_NAMESPACE, escalation_id, escalation)

        logger.info(
            "ESCALATION_STEP_RECORDED",
            extra={
                "escalation_id": escalation_id,
                "action": action,
                "success": success,
            }
        )

    def _call_gateway(self, name: str, fn: Callable[..., Any], *args: Any) -> Tuple[bool, Any]:
        """Run an external call with a timeout, retrying on failure.

        Returns:
            (succeeded, result)
        """
        attempts = 1 + self.config.retry_count
        for attempt in range(1, attempts + 1):
            future = self._executor.submit(fn, *args)
            try:
                return True, future.result(timeout=self.config.gateway_timeout_seconds)
            except FuturesTimeout:
                future.cancel()
                logger.error(
                    "GATEWAY_CALL_TIMEOUT",
                    extra={
                        "gateway_call": name,
                        "attempt": attempt,
                        "timeout_seconds": self.config.gateway_timeout_seconds,
                    }
                )
            except Exception as e:
                logger.error(
                    "GATEWAY_CALL_FAILED",
                    extra={
                        "gateway_call": name,
                        "attempt": attempt,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    }
                )
        return False, None

    def _report_event(
        self,
        escalation: Escalation,
        event_type: SafetyEventType,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        if self.monitor is None:
            return
        try:
            self.monitor.record_safety_event(SafetyEvent(
                user_id=escalation.user_id,
                type=event_type,
                severity=_PRIORITY_SEVERITY[escalation.priority],
                details={
                    "escalation_id": escalation.id,
                    "assessment_id": escalation.assessment_id,
                    **(details or {}),
                },
            ))
        except Exception as e:
            logger.error(
                "ESCALATION_EVENT_RECORD_FAILED",
                extra={
                    "escalation_id": escalation.id,
                    "event_type": event_type.value,
                    "error": str(e),
                }
            )


def _copy(escalation: Escalation) -> Escalation:
    return replace(escalation, steps=list(escalation.steps))
