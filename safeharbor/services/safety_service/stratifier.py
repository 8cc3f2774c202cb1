"""Severity stratification and recommended actions.

Tiers, checked in order:
- CRITICAL: suicide ideation or self-harm at or above the critical threshold
- LOW: anything below the action threshold (recorded, never escalated)
- HIGH: three or more co-occurring distress indicators, or any single
  indicator at very high confidence
- MEDIUM: everything else that is actionable

Repeated distress in conversation history raises the tier by one, up to
HIGH, unless a false-positive rule discounted the message.
"""
import logging
from typing import FrozenSet, List, Optional, Tuple

from safeharbor.shared.models import (
    CRITICAL_INDICATORS,
    ActionPriority,
    ActionTarget,
    ActionType,
    Indicator,
    RecommendedAction,
    Severity,
)
from .classifier import ClassificationResult
from .config import TriageThresholds

logger = logging.getLogger(__name__)

DISTRESS_INDICATORS: FrozenSet[Indicator] = frozenset({
    Indicator.SEVERE_DEPRESSION,
    Indicator.ACUTE_ANXIETY,
    Indicator.HOPELESSNESS,
})

# Confidence above which a monitoring action is attached
MONITOR_CONFIDENCE = 0.4


class SeverityStratifier:
    """Maps filtered indicators and confidence to a severity tier."""

    def __init__(self, thresholds: Optional[TriageThresholds] = None):
        self.thresholds = thresholds or TriageThresholds()

    def severity_for(self, result: ClassificationResult) -> Severity:
        t = self.thresholds
        confidence = result.confidence
        indicators = result.indicators

        if indicators & CRITICAL_INDICATORS and confidence >= t.critical_threshold:
            return Severity.CRITICAL

        if confidence < t.action_threshold:
            severity = Severity.LOW
        elif (
            len(indicators & DISTRESS_INDICATORS) >= t.high_indicator_count
            or confidence >= t.very_high_threshold
        ):
            severity = Severity.HIGH
        else:
            severity = Severity.MEDIUM

        if result.repeated_distress and not result.discounts_applied:
            raised = severity.bump(ceiling=Severity.HIGH)
            if raised != severity:
                logger.info(
                    "CRISIS_SEVERITY_RAISED_BY_HISTORY",
                    extra={"from": severity.value, "to": raised.value}
                )
            severity = raised

        return severity

    def stratify(
        self, result: ClassificationResult
    ) -> Tuple[Severity, bool, Tuple[RecommendedAction, ...]]:
        """Return (severity, immediate, recommended actions)."""
        severity = self.severity_for(result)
        immediate = severity == Severity.CRITICAL
        actions = self.recommend_actions(severity, result)
        return severity, immediate, actions

    def recommend_actions(
        self, severity: Severity, result: ClassificationResult
    ) -> Tuple[RecommendedAction, ...]:
        """Build the ordered action list. Always includes user resources."""
        actions: List[RecommendedAction] = []

        if severity == Severity.CRITICAL:
            actions.append(RecommendedAction(
                type=ActionType.ESCALATE,
                priority=ActionPriority.IMMEDIATE,
                target=ActionTarget.PROFESSIONAL,
                description="Immediate professional intervention required",
            ))
            actions.append(RecommendedAction(
                type=ActionType.RESOURCES,
                priority=ActionPriority.IMMEDIATE,
                target=ActionTarget.USER,
                description="Show crisis hotlines: 988 Suicide & Crisis Lifeline, Crisis Text Line (HOME to 741741)",
            ))
        elif severity == Severity.HIGH:
            actions.append(RecommendedAction(
                type=ActionType.ESCALATE,
                priority=ActionPriority.URGENT,
                target=ActionTarget.PROFESSIONAL,
                description="Connect with a mental health professional",
            ))
            actions.append(RecommendedAction(
                type=ActionType.RESOURCES,
                priority=ActionPriority.URGENT,
                target=ActionTarget.USER,
                description="Share crisis support resources and coping strategies",
            ))
        else:
            actions.append(RecommendedAction(
                type=ActionType.RESOURCES,
                priority=ActionPriority.ROUTINE,
                target=ActionTarget.USER,
                description="Share self-help and support resources",
            ))

        if severity == Severity.CRITICAL or result.confidence > MONITOR_CONFIDENCE:
            actions.append(RecommendedAction(
                type=ActionType.MONITOR,
                priority=ActionPriority.URGENT if severity.rank >= Severity.HIGH.rank else ActionPriority.ROUTINE,
                target=ActionTarget.PROFESSIONAL,
                description="Increase monitoring of this conversation",
            ))

        return tuple(actions)
