"""Professional Service: matching crises to human professionals.

Components:
- matcher.py: ProfessionalMatcher registry, ranking and workload accounting

Usage:
    from safeharbor.services.professional_service import ProfessionalMatcher, MatchCriteria
    matcher = ProfessionalMatcher()
    matches = matcher.find_best_match(MatchCriteria.for_assessment(assessment))
"""

from .matcher import (
    ProfessionalMatcher,
    MatchCriteria,
    MatchWeights,
    MatchAvailability,
    ProfessionalMatch,
    crisis_type_for,
    specialties_for,
)

__all__ = [
    "ProfessionalMatcher",
    "MatchCriteria",
    "MatchWeights",
    "MatchAvailability",
    "ProfessionalMatch",
    "crisis_type_for",
    "specialties_for",
]
