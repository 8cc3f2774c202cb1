"""False-positive filter - contextual discounts on raw classifications.

Rules run in a fixed order and are independent: each one that fires
appends its tag to the risk factors and scales confidence. Tags are kept
even when the discounted result is later suppressed, so a filtered crisis
message stays traceable in the audit trail.
"""
import logging
import re
from dataclasses import dataclass, replace
from typing import List, Optional, Sequence, Tuple

from .classifier import ClassificationResult
from .config import (
    HYPOTHETICAL_PATTERNS,
    JOKING_PATTERNS,
    NEGATION_PATTERNS,
    PROFESSIONAL_CONTEXT_PATTERNS,
    FilterFactors,
)

logger = logging.getLogger(__name__)


# Longest gap between a negation and the crisis phrase it qualifies
NEGATION_REACH_CHARS = 20

_CLAUSE_BREAK = re.compile(r"[.,;:!?]")


@dataclass(frozen=True)
class FilterRule:
    """One discount rule: tag, compiled patterns, factor and optional cap.

    A scoped rule fires only when every span of the strongest matched
    indicator is qualified by one of its matches, i.e. the match overlaps
    the span or ends just before it within the same clause. An unscoped
    rule fires on a match anywhere in the message.
    """
    tag: str
    patterns: Tuple["re.Pattern[str]", ...]
    factor: float
    cap: Optional[float] = None
    scoped: bool = False

    def matches(self, text: str, spans: Sequence[Tuple[int, int]] = ()) -> bool:
        if not self.scoped or not spans:
            return any(p.search(text) for p in self.patterns)
        hits = [m.span() for p in self.patterns for m in p.finditer(text)]
        return all(
            any(_qualifies(text, hit, span) for hit in hits)
            for span in spans
        )

    def apply(self, confidence: float) -> float:
        discounted = confidence * self.factor
        if self.cap is not None:
            discounted = min(discounted, self.cap)
        return discounted


def _qualifies(text: str, hit: Tuple[int, int], span: Tuple[int, int]) -> bool:
    hit_start, hit_end = hit
    span_start, span_end = span
    if hit_start < span_end and span_start < hit_end:
        return True
    gap = text[hit_end:span_start]
    return (
        hit_end <= span_start
        and len(gap) <= NEGATION_REACH_CHARS
        and not _CLAUSE_BREAK.search(gap)
    )


def _compile(patterns: Sequence[str]) -> Tuple["re.Pattern[str]", ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


class FalsePositiveFilter:
    """Applies negation, professional, hypothetical and joking discounts."""

    def __init__(self, factors: Optional[FilterFactors] = None):
        self.factors = factors or FilterFactors()
        f = self.factors
        self._rules: Tuple[FilterRule, ...] = (
            FilterRule("negation_detected", _compile(NEGATION_PATTERNS),
                       f.negation_factor, f.negation_cap, scoped=True),
            FilterRule("professional_context", _compile(PROFESSIONAL_CONTEXT_PATTERNS),
                       f.professional_factor),
            FilterRule("hypothetical_content", _compile(HYPOTHETICAL_PATTERNS),
                       f.hypothetical_factor),
            FilterRule("joking_context", _compile(JOKING_PATTERNS),
                       f.joking_factor, f.joking_cap),
        )

    @property
    def rule_tags(self) -> Tuple[str, ...]:
        return tuple(rule.tag for rule in self._rules)

    def apply(self, result: ClassificationResult) -> ClassificationResult:
        """Discount a raw classification.

        Results with no indicators pass through untouched.

        Args:
            result: Raw classifier output

        Returns:
            New ClassificationResult with scaled scores and the fired
            rule tags appended to ``risk_factors`` and ``discounts_applied``
        """
        if result.is_empty:
            return result

        confidence = result.confidence
        spans = result.primary_spans
        fired: List[str] = []
        for rule in self._rules:
            if rule.matches(result.text, spans):
                confidence = rule.apply(confidence)
                fired.append(rule.tag)

        if not fired:
            return result

        ratio = confidence / result.confidence if result.confidence else 0.0
        scores = {
            indicator: min(score * ratio, confidence)
            for indicator, score in result.indicator_scores.items()
        }

        logger.info(
            "CRISIS_FILTER_APPLIED",
            extra={
                "rules": fired,
                "original_confidence": round(result.confidence, 3),
                "filtered_confidence": round(confidence, 3),
            }
        )

        return replace(
            result,
            indicator_scores=scores,
            confidence=confidence,
            risk_factors=tuple(fired) + result.risk_factors,
            discounts_applied=result.discounts_applied + tuple(fired),
        )
