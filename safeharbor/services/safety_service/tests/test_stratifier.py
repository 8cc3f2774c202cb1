"""Tests for SeverityStratifier tiers and recommended actions."""
import pytest

from safeharbor.shared.models import (
    ActionPriority,
    ActionTarget,
    ActionType,
    Indicator,
    Severity,
)
from safeharbor.services.safety_service.classifier import ClassificationResult
from safeharbor.services.safety_service.stratifier import SeverityStratifier


@pytest.fixture
def stratifier():
    return SeverityStratifier()


def result(scores, **kwargs):
    return ClassificationResult(
        indicator_scores=scores,
        confidence=max(scores.values()) if scores else 0.0,
        **kwargs,
    )


class TestTiers:

    def test_suicide_ideation_is_critical(self, stratifier):
        severity, immediate, actions = stratifier.stratify(result({Indicator.SUICIDE_IDEATION: 0.9}))
        assert severity == Severity.CRITICAL
        assert immediate is True

    def test_self_harm_critical_regardless_of_other_indicators(self, stratifier):
        severity = stratifier.severity_for(result({
            Indicator.SELF_HARM: 0.85,
            Indicator.SUBSTANCE_ABUSE: 0.4,
        }))
        assert severity == Severity.CRITICAL

    def test_discounted_suicide_ideation_is_low(self, stratifier):
        severity = stratifier.severity_for(result(
            {Indicator.SUICIDE_IDEATION: 0.3},
            discounts_applied=("negation_detected",),
        ))
        assert severity == Severity.LOW

    def test_three_distress_indicators_is_high(self, stratifier):
        severity = stratifier.severity_for(result({
            Indicator.SEVERE_DEPRESSION: 0.55,
            Indicator.ACUTE_ANXIETY: 0.55,
            Indicator.HOPELESSNESS: 0.6,
        }))
        assert severity == Severity.HIGH

    def test_single_very_high_indicator_is_high(self, stratifier):
        assert stratifier.severity_for(result({Indicator.SEVERE_DEPRESSION: 0.9})) == Severity.HIGH

    def test_single_moderate_indicator_is_medium(self, stratifier):
        assert stratifier.severity_for(result({Indicator.SEVERE_DEPRESSION: 0.55})) == Severity.MEDIUM

    def test_below_action_threshold_is_low(self, stratifier):
        assert stratifier.severity_for(result({Indicator.SUBSTANCE_ABUSE: 0.4})) == Severity.LOW


class TestHistoryBump:

    def test_repeated_distress_raises_one_tier(self, stratifier):
        severity = stratifier.severity_for(result(
            {Indicator.HOPELESSNESS: 0.65}, repeated_distress=True,
        ))
        assert severity == Severity.HIGH

    def test_bump_capped_at_high(self, stratifier):
        severity = stratifier.severity_for(result(
            {Indicator.SEVERE_DEPRESSION: 0.9}, repeated_distress=True,
        ))
        assert severity == Severity.HIGH

    def test_critical_unchanged(self, stratifier):
        severity = stratifier.severity_for(result(
            {Indicator.SUICIDE_IDEATION: 0.95}, repeated_distress=True,
        ))
        assert severity == Severity.CRITICAL

    def test_discounted_message_not_bumped(self, stratifier):
        severity = stratifier.severity_for(result(
            {Indicator.SUICIDE_IDEATION: 0.3},
            repeated_distress=True,
            discounts_applied=("negation_detected",),
        ))
        assert severity == Severity.LOW


class TestRecommendedActions:

    @pytest.mark.parametrize("scores", [
        {Indicator.SUICIDE_IDEATION: 0.95},
        {Indicator.SEVERE_DEPRESSION: 0.9},
        {Indicator.SEVERE_DEPRESSION: 0.55},
        {Indicator.SUBSTANCE_ABUSE: 0.35},
    ])
    def test_always_includes_user_resources(self, stratifier, scores):
        _, _, actions = stratifier.stratify(result(scores))
        assert any(
            a.type == ActionType.RESOURCES and a.target == ActionTarget.USER
            for a in actions
        )

    def test_critical_escalates_immediately_to_professional(self, stratifier):
        _, _, actions = stratifier.stratify(result({Indicator.SUICIDE_IDEATION: 0.95}))
        first = actions[0]
        assert first.type == ActionType.ESCALATE
        assert first.priority == ActionPriority.IMMEDIATE
        assert first.target == ActionTarget.PROFESSIONAL

    def test_high_escalates_urgently(self, stratifier):
        _, immediate, actions = stratifier.stratify(result({Indicator.SEVERE_DEPRESSION: 0.9}))
        assert immediate is False
        assert actions[0].type == ActionType.ESCALATE
        assert actions[0].priority == ActionPriority.URGENT

    def test_medium_does_not_escalate(self, stratifier):
        _, _, actions = stratifier.stratify(result({Indicator.SEVERE_DEPRESSION: 0.55}))
        assert all(a.type != ActionType.ESCALATE for a in actions)
        assert any(a.type == ActionType.MONITOR for a in actions)

    def test_monitor_only_above_confidence(self, stratifier):
        _, _, actions = stratifier.stratify(result({Indicator.SUBSTANCE_ABUSE: 0.35}))
        assert all(a.type != ActionType.MONITOR for a in actions)
