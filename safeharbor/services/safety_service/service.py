"""Triage service - the classify entry point for the crisis path.

Runs classifier, false-positive filter and severity stratifier in order,
persists every produced assessment append-only, and reports it to the
safety monitor when one is wired in.

Failure handling:
    Nothing raised below this layer reaches the caller. An unexpected
    error is logged as CRISIS_CLASSIFICATION_FAILED and the call returns
    no assessment; it never returns a benign-looking result instead.
"""
import logging
import time
from dataclasses import dataclass, fields, replace
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

from safeharbor.shared.models import (
    CrisisAssessment,
    SafetyEvent,
    SafetyEventType,
    Severity,
)
from safeharbor.shared.store import InMemoryStore, KeyValueStore, RepositoryError
from safeharbor.shared.utils import hash_pii, hash_text_for_audit, truncate_for_audit
from .classifier import ClassificationContext, ClassificationResult, CrisisClassifier
from .config import FilterFactors, SafetyConfig, TriageThresholds
from .false_positive_filter import FalsePositiveFilter
from .stratifier import SeverityStratifier

if TYPE_CHECKING:
    from safeharbor.services.monitoring_service import SafetyMonitor

logger = logging.getLogger(__name__)

ASSESSMENT_NAMESPACE = "crisis_assessments"


@dataclass(frozen=True)
class TriageResult:
    """Full outcome of one triage pass, kept for audit.

    ``assessment`` is None when the raw signal was below the confidence
    floor or classification failed. A discounted message still carries
    its fired rule tags in ``applied_rules``.
    """
    assessment: Optional[CrisisAssessment]
    raw_confidence: float
    filtered_confidence: float
    risk_factors: Tuple[str, ...] = ()
    applied_rules: Tuple[str, ...] = ()
    suppressed: bool = False
    latency_ms: float = 0.0
    error: Optional[str] = None

    @property
    def actionable(self) -> bool:
        return self.assessment is not None and self.assessment.severity != Severity.LOW


class TriageService:
    """Classifies user messages into crisis assessments."""

    def __init__(
        self,
        classifier: Optional[CrisisClassifier] = None,
        false_positive_filter: Optional[FalsePositiveFilter] = None,
        stratifier: Optional[SeverityStratifier] = None,
        store: Optional[KeyValueStore] = None,
        monitor: Optional["SafetyMonitor"] = None,
        config: Optional[SafetyConfig] = None,
        thresholds: Optional[TriageThresholds] = None,
        max_assessments_per_user: int = 10000,
    ):
        """Initialize the triage pipeline.

        Args:
            classifier: Crisis classifier
            false_positive_filter: Contextual discount rules
            stratifier: Severity stratifier
            store: Append-only assessment store
            monitor: Safety monitor notified of every assessment
            config: Classification behavior configuration
            thresholds: Confidence thresholds shared by the pipeline
            max_assessments_per_user: Retention cap for the assessment log
        """
        self.config = config or SafetyConfig()
        self.thresholds = thresholds or TriageThresholds()
        self.classifier = classifier or CrisisClassifier(self.config, self.thresholds)
        self.false_positive_filter = false_positive_filter or FalsePositiveFilter()
        self.stratifier = stratifier or SeverityStratifier(self.thresholds)
        self.store = store or InMemoryStore()
        self.monitor = monitor
        self.max_assessments_per_user = max_assessments_per_user

        logger.info(
            "TRIAGE_SERVICE_INITIALIZED",
            extra={
                "pattern_version": self.config.pattern_version,
                "min_confidence": self.thresholds.min_confidence,
                "action_threshold": self.thresholds.action_threshold,
                "monitor_attached": monitor is not None,
            }
        )

    def classify(
        self,
        user_id: str,
        session_id: str,
        text: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> Optional[CrisisAssessment]:
        """Classify a message. Returns None when there is no assessment."""
        return self.evaluate(user_id, session_id, text, context).assessment

    def evaluate(
        self,
        user_id: str,
        session_id: str,
        text: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> TriageResult:
        """Run the full triage pipeline and return the audit view.

        Args:
            user_id: User identifier (hashed before logging)
            session_id: Conversation session identifier
            text: Raw message text
            context: Optional ``conversation_history`` list and
                ``session_metadata`` dict (hour, messages_per_minute,
                session_duration_seconds)

        Returns:
            TriageResult; never raises
        """
        start_time = time.perf_counter()
        try:
            return self._evaluate(user_id, session_id, text, context, start_time)
        except Exception as e:
            logger.error(
                "CRISIS_CLASSIFICATION_FAILED",
                extra={
                    "session_id": session_id,
                    "error": str(e),
                    "error_type": type(e).__name__,
                    "action": "NO_ASSESSMENT_RETURNED",
                }
            )
            return TriageResult(
                assessment=None,
                raw_confidence=0.0,
                filtered_confidence=0.0,
                latency_ms=(time.perf_counter() - start_time) * 1000,
                error=type(e).__name__,
            )

    def _evaluate(
        self,
        user_id: str,
        session_id: str,
        text: str,
        context: Optional[Dict[str, Any]],
        start_time: float,
    ) -> TriageResult:
        user_id_hash = hash_pii(user_id)
        text = text if isinstance(text, str) else ""

        logger.info(
            "CRISIS_CLASSIFICATION_STARTED",
            extra={
                "session_id": session_id,
                "user_id_hash": user_id_hash,
                "text_hash": hash_text_for_audit(text),
                "text_length": len(text),
            }
        )

        raw = self.classifier.classify(text, ClassificationContext.from_dict(context))
        filtered = self.false_positive_filter.apply(raw)
        latency_ms = (time.perf_counter() - start_time) * 1000

        if raw.confidence < self.thresholds.min_confidence:
            logger.info(
                "CRISIS_CLASSIFICATION_NO_SIGNAL",
                extra={
                    "session_id": session_id,
                    "user_id_hash": user_id_hash,
                    "raw_confidence": round(raw.confidence, 3),
                    "latency_ms": latency_ms,
                }
            )
            return TriageResult(
                assessment=None,
                raw_confidence=raw.confidence,
                filtered_confidence=filtered.confidence,
                risk_factors=filtered.risk_factors,
                applied_rules=filtered.discounts_applied,
                latency_ms=latency_ms,
            )

        assessment = self._build_assessment(user_id, session_id, text, filtered)
        suppressed = (
            raw.confidence >= self.thresholds.action_threshold
            and assessment.severity == Severity.LOW
        )

        self._log_outcome(assessment, raw, filtered, user_id_hash, suppressed, latency_ms)
        self._persist(assessment, user_id_hash)
        self._report(assessment, user_id_hash)

        return TriageResult(
            assessment=assessment,
            raw_confidence=raw.confidence,
            filtered_confidence=filtered.confidence,
            risk_factors=assessment.risk_factors,
            applied_rules=filtered.discounts_applied,
            suppressed=suppressed,
            latency_ms=latency_ms,
        )

    def _build_assessment(
        self,
        user_id: str,
        session_id: str,
        text: str,
        filtered: ClassificationResult,
    ) -> CrisisAssessment:
        severity, immediate, actions = self.stratifier.stratify(filtered)
        return CrisisAssessment(
            user_id=user_id,
            session_id=session_id,
            severity=severity,
            confidence=round(filtered.confidence, 4),
            indicators=filtered.indicators,
            risk_factors=filtered.risk_factors,
            recommended_actions=actions,
            immediate=immediate,
            context=truncate_for_audit(text),
            pattern_version=self.config.pattern_version,
        )

    def _log_outcome(
        self,
        assessment: CrisisAssessment,
        raw: ClassificationResult,
        filtered: ClassificationResult,
        user_id_hash: str,
        suppressed: bool,
        latency_ms: float,
    ) -> None:
        log_context = {
            "assessment_id": assessment.assessment_id,
            "session_id": assessment.session_id,
            "user_id_hash": user_id_hash,
            "severity": assessment.severity.value,
            "confidence": assessment.confidence,
            "raw_confidence": round(raw.confidence, 3),
            "indicators": sorted(i.value for i in assessment.indicators),
            "risk_factors": list(assessment.risk_factors),
            "latency_ms": latency_ms,
            "pattern_version": assessment.pattern_version,
        }

        if suppressed:
            logger.warning(
                "CRISIS_CLASSIFICATION_SUPPRESSED",
                extra={**log_context, "rules": list(filtered.discounts_applied)}
            )
        elif assessment.immediate:
            logger.critical(
                "CRISIS_ASSESSMENT_CRITICAL",
                extra={**log_context, "action": "IMMEDIATE_ESCALATION"}
            )
        else:
            logger.info("CRISIS_CLASSIFICATION_COMPLETED", extra=log_context)

        if latency_ms > self.config.max_classify_latency_ms:
            logger.warning(
                "CRISIS_CLASSIFICATION_SLOW",
                extra={
                    "assessment_id": assessment.assessment_id,
                    "latency_ms": latency_ms,
                    "budget_ms": self.config.max_classify_latency_ms,
                }
            )

    def _persist(self, assessment: CrisisAssessment, user_id_hash: str) -> None:
        try:
            self.store.append(
                ASSESSMENT_NAMESPACE,
                assessment.user_id,
                assessment.to_dict(),
                max_len=self.max_assessments_per_user,
            )
        except RepositoryError as e:
            logger.error(
                "CRISIS_ASSESSMENT_PERSIST_FAILED",
                extra={
                    "assessment_id": assessment.assessment_id,
                    "user_id_hash": user_id_hash,
                    "error": str(e),
                }
            )

    def _report(self, assessment: CrisisAssessment, user_id_hash: str) -> None:
        if self.monitor is None:
            return
        event = SafetyEvent(
            user_id=assessment.user_id,
            type=SafetyEventType.CRISIS_DETECTED,
            severity=assessment.severity,
            details={
                "assessment_id": assessment.assessment_id,
                "indicators": sorted(i.value for i in assessment.indicators),
                "confidence": assessment.confidence,
                "risk_factors": list(assessment.risk_factors),
            },
        )
        try:
            self.monitor.record_safety_event(event)
        except Exception as e:
            logger.error(
                "CRISIS_EVENT_RECORD_FAILED",
                extra={
                    "assessment_id": assessment.assessment_id,
                    "user_id_hash": user_id_hash,
                    "error": str(e),
                }
            )

    def get_assessments(self, user_id: str) -> List[CrisisAssessment]:
        """Audit log of a user's assessments, oldest first."""
        return [
            CrisisAssessment.from_dict(record)
            for record in self.store.get_list(ASSESSMENT_NAMESPACE, user_id)
        ]

    def update_thresholds(self, **changes: Any) -> None:
        """Replace threshold and filter-factor values at runtime.

        Raises:
            ValueError: On an unknown setting name
        """
        threshold_names = {f.name for f in fields(TriageThresholds)}
        factor_names = {f.name for f in fields(FilterFactors)}
        unknown = set(changes) - threshold_names - factor_names
        if unknown:
            raise ValueError(f"Unknown threshold settings: {', '.join(sorted(unknown))}")

        threshold_changes = {k: v for k, v in changes.items() if k in threshold_names}
        factor_changes = {k: v for k, v in changes.items() if k in factor_names}

        if threshold_changes:
            self.thresholds = replace(self.thresholds, **threshold_changes)
            self.classifier.thresholds = self.thresholds
            self.stratifier.thresholds = self.thresholds
        if factor_changes:
            self.false_positive_filter = FalsePositiveFilter(
                replace(self.false_positive_filter.factors, **factor_changes)
            )

        logger.info(
            "TRIAGE_THRESHOLDS_UPDATED",
            extra={"changed": sorted(changes)}
        )
