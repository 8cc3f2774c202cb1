"""Tests for FalsePositiveFilter discount rules."""
import re

import pytest

from safeharbor.shared.models import Indicator
from safeharbor.services.safety_service.classifier import CrisisClassifier
from safeharbor.services.safety_service.config import FilterFactors
from safeharbor.services.safety_service.false_positive_filter import (
    FalsePositiveFilter,
    FilterRule,
)


@pytest.fixture(scope="module")
def classifier():
    return CrisisClassifier()


@pytest.fixture
def fp_filter():
    return FalsePositiveFilter()


def run(classifier, fp_filter, text):
    return fp_filter.apply(classifier.classify(text))


class TestNegation:

    @pytest.mark.parametrize("text", [
        "I don't want to kill myself",
        "I don’t want to kill myself",
        "I would never hurt myself",
        "I'm not suicidal, just tired",
    ])
    def test_negation_discounts_below_action_threshold(self, classifier, fp_filter, text):
        result = run(classifier, fp_filter, text)
        assert "negation_detected" in result.risk_factors
        assert result.confidence < 0.5

    @pytest.mark.parametrize("text", [
        "I don't want to hurt anyone, I just want to kill myself",
        "I'm not going to end up like my mom. I want to end my life",
    ])
    def test_negation_elsewhere_in_message_ignored(self, classifier, fp_filter, text):
        raw = classifier.classify(text)
        result = fp_filter.apply(raw)
        assert "negation_detected" not in result.risk_factors
        assert result.confidence == raw.confidence

    def test_negation_must_cover_every_strongest_match(self, classifier, fp_filter):
        result = run(classifier, fp_filter, "I don't want to kill myself. I want to end my life")
        assert result.discounts_applied == ()

    @pytest.mark.parametrize("text,expected", [
        ("i would never ever kill myself", True),
        ("i never said that. kill myself", False),
    ])
    def test_scoped_rule_reaches_phrase_in_same_clause(self, text, expected):
        rule = FilterRule("negation", (re.compile(r"\bnever\b"),), 0.3, scoped=True)
        start = text.index("kill")
        assert rule.matches(text, [(start, start + len("kill myself"))]) is expected

    def test_indicators_preserved_for_audit(self, classifier, fp_filter):
        result = run(classifier, fp_filter, "I don't want to kill myself")
        assert Indicator.SUICIDE_IDEATION in result.indicators
        assert result.discounts_applied == ("negation_detected",)


class TestProfessionalContext:

    def test_clinical_framing_reduces_but_keeps_signal(self, classifier, fp_filter):
        raw = classifier.classify("My therapist discussed suicide prevention with us")
        result = fp_filter.apply(raw)
        assert "professional_context" in result.risk_factors
        assert 0.0 < result.confidence < raw.confidence
        assert result.confidence == pytest.approx(raw.confidence * 0.5)


class TestHypothetical:

    def test_what_if_someone(self, classifier, fp_filter):
        result = run(classifier, fp_filter, "What if someone said they want to die?")
        assert "hypothetical_content" in result.risk_factors
        assert result.confidence < 0.5

    def test_movie_framing(self, classifier, fp_filter):
        result = run(classifier, fp_filter, "In the movie the hero was suicidal for a while")
        assert "hypothetical_content" in result.risk_factors

    def test_cannot_imagine_is_not_framing(self, classifier, fp_filter):
        raw = classifier.classify("I can't imagine going on like this. I want to kill myself")
        assert fp_filter.apply(raw) is raw

    def test_imagine_if_is_framing(self, classifier, fp_filter):
        result = run(classifier, fp_filter, "Imagine if someone said they want to die")
        assert "hypothetical_content" in result.risk_factors


class TestJoking:

    def test_joking_qualifier_suppresses(self, classifier, fp_filter):
        result = run(classifier, fp_filter, "ugh this quiz, I want to die lol")
        assert "joking_context" in result.risk_factors
        assert result.confidence < 0.5


class TestRuleComposition:

    def test_rules_are_additive_and_ordered(self, classifier, fp_filter):
        result = run(classifier, fp_filter, "jk I don't want to kill myself")
        assert result.discounts_applied == ("negation_detected", "joking_context")
        assert result.risk_factors[:2] == ("negation_detected", "joking_context")
        assert result.confidence < 0.15

    def test_no_rule_returns_result_unchanged(self, classifier, fp_filter):
        raw = classifier.classify("I want to kill myself")
        assert fp_filter.apply(raw) is raw

    def test_empty_result_untouched(self, classifier, fp_filter):
        raw = classifier.classify("")
        assert fp_filter.apply(raw) is raw

    def test_custom_factors(self, classifier):
        lenient = FalsePositiveFilter(FilterFactors(hypothetical_factor=0.9))
        raw = classifier.classify("What if someone said they want to die?")
        assert lenient.apply(raw).confidence == pytest.approx(raw.confidence * 0.9)

    def test_rule_tags(self, fp_filter):
        assert fp_filter.rule_tags == (
            "negation_detected",
            "professional_context",
            "hypothetical_content",
            "joking_context",
        )
