"""Safety Service: deterministic crisis classification.

Every user message passes through here first. Classification is rule and
lexicon based so each decision can be audited back to a pattern.

Components:
- text_normalizer.py: basic and adversarial views of a message
- classifier.py: CrisisClassifier, weighted lexicon and regex matching
- false_positive_filter.py: negation, professional, hypothetical and joking discounts
- stratifier.py: severity tiers and recommended actions
- service.py: TriageService, the classify entry point
- handler.py: Flask HTTP endpoints (/health, /ready, /classify)

Usage:
    from safeharbor.services.safety_service import TriageService
    triage = TriageService()
    assessment = triage.classify(user_id, session_id, text)
"""

from .classifier import CrisisClassifier, ClassificationContext, ClassificationResult
from .config import SafetyConfig, TriageThresholds, FilterFactors, CRISIS_KEYWORDS, RISK_PATTERNS
from .false_positive_filter import FalsePositiveFilter
from .stratifier import SeverityStratifier
from .service import TriageService, TriageResult
from .text_normalizer import TextNormalizer

__all__ = [
    "CrisisClassifier",
    "ClassificationContext",
    "ClassificationResult",
    "SafetyConfig",
    "TriageThresholds",
    "FilterFactors",
    "CRISIS_KEYWORDS",
    "RISK_PATTERNS",
    "FalsePositiveFilter",
    "SeverityStratifier",
    "TriageService",
    "TriageResult",
    "TextNormalizer",
]
