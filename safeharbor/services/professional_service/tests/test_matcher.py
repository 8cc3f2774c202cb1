"""Tests for ProfessionalMatcher ranking, constraints and workload."""
import threading
from datetime import datetime, timedelta

import pytest

from safeharbor.shared.models import (
    CrisisAssessment,
    Indicator,
    ProfessionalAvailability,
    ProfessionalStatus,
    Severity,
)
from safeharbor.shared.store import DuplicateError, NotFoundError
from safeharbor.services.professional_service.matcher import (
    MatchCriteria,
    MatchWeights,
    ProfessionalMatcher,
    crisis_type_for,
    specialties_for,
)

NOW = datetime(2026, 1, 15, 12, 0, 0)


def professional(pid, specialties=("suicide_prevention",), languages=("en",), **kwargs):
    return ProfessionalAvailability(
        id=pid,
        specialties=frozenset(specialties),
        languages=frozenset(languages),
        max_workload=kwargs.pop("max_workload", 5),
        **kwargs,
    )


def criteria(severity=Severity.HIGH, specialties=("suicide_prevention",), languages=("en",), **kwargs):
    return MatchCriteria(
        crisis_type="suicidal_threat",
        severity=severity,
        required_languages=frozenset(languages),
        preferred_specialties=frozenset(specialties),
        **kwargs,
    )


@pytest.fixture
def matcher():
    return ProfessionalMatcher(clock=lambda: NOW)


class TestHardConstraints:

    def test_no_specialty_match_returns_empty(self, matcher):
        matcher.register_professional(professional("p1", specialties=("anxiety",)))
        assert matcher.find_best_match(criteria(specialties=("eating_disorders",))) == []

    def test_no_professionals_returns_empty(self, matcher):
        assert matcher.find_best_match(criteria()) == []

    def test_all_languages_required(self, matcher):
        matcher.register_professional(professional("p1", languages=("en",)))
        matcher.register_professional(professional("p2", languages=("en", "es")))
        matches = matcher.find_best_match(criteria(languages=("en", "es")))
        assert [m.professional.id for m in matches] == ["p2"]

    def test_unavailable_never_matched(self, matcher):
        matcher.register_professional(professional("p1", emergency_contact=True))
        matcher.set_professional_status("p1", ProfessionalStatus.UNAVAILABLE)
        assert matcher.find_best_match(criteria(severity=Severity.CRITICAL)) == []

    def test_full_workload_excluded_for_high_severity(self, matcher):
        matcher.register_professional(professional("p1", max_workload=2, current_workload=2))
        assert matcher.find_best_match(criteria(severity=Severity.HIGH)) == []

    def test_full_emergency_contact_excluded_when_not_critical(self, matcher):
        matcher.register_professional(professional(
            "p1", max_workload=2, current_workload=2, emergency_contact=True,
        ))
        assert matcher.find_best_match(criteria(severity=Severity.HIGH)) == []

    def test_full_emergency_contact_allowed_for_critical(self, matcher):
        matcher.register_professional(professional(
            "p1", max_workload=2, current_workload=2, emergency_contact=True,
        ))
        matches = matcher.find_best_match(criteria(severity=Severity.CRITICAL))
        assert len(matches) == 1
        assert matches[0].availability.immediately is False
        assert matches[0].availability.next_available == NOW + timedelta(minutes=30)

    def test_empty_preferred_specialties_is_unconstrained(self, matcher):
        matcher.register_professional(professional("p1", specialties=("anxiety",)))
        assert len(matcher.find_best_match(criteria(specialties=()))) == 1


class TestScoring:

    def test_score_components(self, matcher):
        matcher.register_professional(professional(
            "p1", specialties=("suicide_prevention", "depression"),
            max_workload=4, current_workload=1, emergency_contact=True,
        ))
        match = matcher.find_best_match(criteria(
            severity=Severity.CRITICAL, specialties=("suicide_prevention", "self_harm"),
        ))[0]
        # 0.5 x 40 + 20 + 0.75 x 20 + 10
        assert match.score == pytest.approx(65.0)
        assert "Emergency contact available" in match.reasoning
        assert any(r.startswith("Specialty match") for r in match.reasoning)

    def test_emergency_bonus_only_for_critical(self, matcher):
        matcher.register_professional(professional("p1", emergency_contact=True))
        high = matcher.find_best_match(criteria(severity=Severity.HIGH))[0]
        critical = matcher.find_best_match(criteria(severity=Severity.CRITICAL))[0]
        assert critical.score - high.score == pytest.approx(10.0)

    def test_custom_weights(self):
        matcher = ProfessionalMatcher(weights=MatchWeights(language=0.0, workload=0.0), clock=lambda: NOW)
        matcher.register_professional(professional("p1"))
        assert matcher.find_best_match(criteria())[0].score == pytest.approx(40.0)

    def test_response_time_target_noted(self, matcher):
        matcher.register_professional(professional("p1", estimated_response_time=20))
        match = matcher.find_best_match(criteria(max_response_time=15))[0]
        assert match.estimated_response_time == 20
        assert any("exceeds target" in r for r in match.reasoning)

    def test_to_dict(self, matcher):
        matcher.register_professional(professional("p1"))
        data = matcher.find_best_match(criteria())[0].to_dict()
        assert data["professional"]["id"] == "p1"
        assert data["availability"]["immediately"] is True
        assert data["availability"]["next_available"] == NOW.isoformat()


class TestRanking:

    def test_highest_score_first(self, matcher):
        matcher.register_professional(professional("p_busy", max_workload=4, current_workload=3))
        matcher.register_professional(professional("p_free", max_workload=4, current_workload=0))
        ids = [m.professional.id for m in matcher.find_best_match(criteria())]
        assert ids == ["p_free", "p_busy"]

    def test_tie_broken_by_lower_workload(self, matcher):
        # Equal spare ratio (0.5) so equal scores
        matcher.register_professional(professional("p_a", max_workload=4, current_workload=2))
        matcher.register_professional(professional("p_b", max_workload=2, current_workload=1))
        ids = [m.professional.id for m in matcher.find_best_match(criteria())]
        assert ids == ["p_b", "p_a"]

    def test_tie_broken_by_response_time(self, matcher):
        matcher.register_professional(professional("p_slow", estimated_response_time=20))
        matcher.register_professional(professional("p_fast", estimated_response_time=5))
        ids = [m.professional.id for m in matcher.find_best_match(criteria())]
        assert ids == ["p_fast", "p_slow"]

    def test_tie_broken_by_id(self, matcher):
        for pid in ("p_c", "p_a", "p_b"):
            matcher.register_professional(professional(pid))
        ids = [m.professional.id for m in matcher.find_best_match(criteria())]
        assert ids == ["p_a", "p_b", "p_c"]

    def test_at_most_five_results(self, matcher):
        for i in range(8):
            matcher.register_professional(professional(f"p{i}"))
        assert len(matcher.find_best_match(criteria())) == 5


class TestWorkload:

    def test_assign_increments(self, matcher):
        matcher.register_professional(professional("p1"))
        assert matcher.assign("p1", Severity.HIGH) is True
        assert matcher.get_professional("p1").current_workload == 1

    def test_assign_rejected_at_capacity(self, matcher):
        matcher.register_professional(professional("p1", max_workload=1, current_workload=1))
        assert matcher.assign("p1", Severity.HIGH) is False
        assert matcher.get_professional("p1").current_workload == 1

    def test_emergency_overflow_for_critical(self, matcher):
        matcher.register_professional(professional(
            "p1", max_workload=1, current_workload=1, emergency_contact=True,
        ))
        assert matcher.assign("p1", Severity.CRITICAL) is True
        assert matcher.get_professional("p1").current_workload == 2

    def test_assign_unknown(self, matcher):
        assert matcher.assign("ghost", Severity.HIGH) is False

    def test_release_never_below_zero(self, matcher):
        matcher.register_professional(professional("p1", current_workload=1))
        assert matcher.release("p1") is True
        assert matcher.release("p1") is False
        assert matcher.get_professional("p1").current_workload == 0

    def test_release_unknown_raises(self, matcher):
        with pytest.raises(NotFoundError):
            matcher.release("ghost")

    def test_concurrent_assign_respects_capacity(self, matcher):
        matcher.register_professional(professional("p1", max_workload=10))
        results = []

        def worker():
            results.append(matcher.assign("p1", Severity.HIGH))

        threads = [threading.Thread(target=worker) for _ in range(50)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 10
        assert matcher.get_professional("p1").current_workload == 10

    def test_snapshot_isolated_from_registry(self, matcher):
        matcher.register_professional(professional("p1"))
        snapshot = matcher.get_professional("p1")
        snapshot.current_workload = 4
        assert matcher.get_professional("p1").current_workload == 0


class TestRegistry:

    def test_duplicate_registration_rejected(self, matcher):
        matcher.register_professional(professional("p1"))
        with pytest.raises(DuplicateError):
            matcher.register_professional(professional("p1"))

    def test_set_status_unknown(self, matcher):
        assert matcher.set_professional_status("ghost", ProfessionalStatus.BUSY) is False

    def test_available_count(self, matcher):
        matcher.register_professional(professional("p1"))
        matcher.register_professional(professional("p2", max_workload=1, current_workload=1))
        matcher.register_professional(professional("p3"))
        matcher.set_professional_status("p3", ProfessionalStatus.BUSY)
        assert matcher.available_count() == 1


class TestCriteriaMapping:

    @pytest.mark.parametrize("indicator,expected", [
        (Indicator.SUICIDE_IDEATION, "suicidal_threat"),
        (Indicator.SELF_HARM, "self_harm"),
        (Indicator.SEVERE_DEPRESSION, "depression"),
        (Indicator.HOPELESSNESS, "crisis_intervention"),
        (None, "crisis_intervention"),
    ])
    def test_crisis_type_for(self, indicator, expected):
        assert crisis_type_for(indicator) == expected

    def test_specialties_for(self):
        assert specialties_for([Indicator.SUICIDE_IDEATION, Indicator.HOPELESSNESS]) == \
            frozenset({"suicide_prevention", "depression"})
        assert specialties_for([]) == frozenset({"crisis_intervention"})

    def test_for_assessment(self):
        assessment = CrisisAssessment(
            user_id="u1",
            session_id="s1",
            severity=Severity.CRITICAL,
            confidence=0.95,
            indicators=frozenset({Indicator.SUICIDE_IDEATION, Indicator.SEVERE_DEPRESSION}),
        )
        result = MatchCriteria.for_assessment(assessment, ["en", "es"], max_response_time=15)
        assert result.crisis_type == "suicidal_threat"
        assert result.severity == Severity.CRITICAL
        assert result.required_languages == frozenset({"en", "es"})
        assert result.preferred_specialties == frozenset({"suicide_prevention", "depression"})
        assert result.max_response_time == 15
