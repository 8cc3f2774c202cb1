"""Crisis classifier - lexicon and pattern matching.

Produces raw indicator scores and a preliminary confidence for one
message. Pure and side-effect free apart from logging: the compiled
lexicon is an immutable tuple swapped atomically on update, so the
classifier can serve concurrent requests without locking.

Scoring:
- Each matched keyword or pattern contributes its weight to its indicator.
- An indicator's score is its strongest match plus a small bonus per
  additional match, capped at 1.0.
- Behavioral metadata (late night, rapid messaging) nudges acute anxiety.
- Repeated distress in recent conversation history is flagged so the
  stratifier can raise severity one tier.
"""
import logging
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from safeharbor.shared.models import Indicator
from .config import (
    CRISIS_KEYWORDS,
    HISTORY_INDICATORS,
    RISK_PATTERNS,
    SafetyConfig,
    TriageThresholds,
)
from .text_normalizer import TextNormalizer

logger = logging.getLogger(__name__)

# Rejects quantified groups that themselves contain a quantifier, e.g. (a+)+
_NESTED_QUANTIFIER = re.compile(r"\((?:[^()\\]|\\.)*[+*}](?:[^()\\]|\\.)*\)\s*[+*{]")


@dataclass(frozen=True)
class ClassificationContext:
    """Optional per-request context accompanying a message."""
    conversation_history: Tuple[str, ...] = ()
    hour: Optional[int] = None
    messages_per_minute: Optional[float] = None
    session_duration_seconds: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "ClassificationContext":
        """Build context from an untyped payload, ignoring malformed fields."""
        if not data:
            return cls()
        history = data.get("conversation_history") or ()
        if isinstance(history, str) or not isinstance(history, (list, tuple)):
            history = ()
        metadata = data.get("session_metadata") or {}
        if not isinstance(metadata, Mapping):
            metadata = {}
        return cls(
            conversation_history=tuple(m for m in history if isinstance(m, str)),
            hour=_as_int(metadata.get("hour")),
            messages_per_minute=_as_float(metadata.get("messages_per_minute")),
            session_duration_seconds=_as_float(metadata.get("session_duration_seconds")),
        )


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _as_float(value: Any) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class ClassificationResult:
    """Raw classifier output before false-positive filtering."""
    indicator_scores: Dict[Indicator, float] = field(default_factory=dict)
    confidence: float = 0.0
    risk_factors: Tuple[str, ...] = ()
    matched_terms: Tuple[str, ...] = ()
    repeated_distress: bool = False
    discounts_applied: Tuple[str, ...] = ()
    # Normalized text the filter rules run against; never logged
    text: str = ""
    # (indicator, start, end) of every lexical match within ``text``
    match_spans: Tuple[Tuple[Indicator, int, int], ...] = ()

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Confidence must be 0.0-1.0, got {self.confidence}")

    @property
    def indicators(self) -> FrozenSet[Indicator]:
        return frozenset(self.indicator_scores)

    @property
    def is_empty(self) -> bool:
        return not self.indicator_scores

    @property
    def primary_spans(self) -> Tuple[Tuple[int, int], ...]:
        """Match spans of the strongest lexically matched indicator."""
        if not self.match_spans:
            return ()
        top = max(self.indicator_scores.get(i, 0.0) for i, _, _ in self.match_spans)
        return tuple(
            (start, end) for indicator, start, end in self.match_spans
            if self.indicator_scores.get(indicator, 0.0) == top
        )


_CompiledTerm = Tuple[Indicator, str, float, "re.Pattern[str]"]


class CrisisClassifier:
    """Deterministic lexicon and pattern matcher for crisis indicators."""

    def __init__(
        self,
        config: Optional[SafetyConfig] = None,
        thresholds: Optional[TriageThresholds] = None,
        normalizer: Optional[TextNormalizer] = None,
    ):
        """Initialize classifier with configuration.

        Args:
            config: Classification behavior configuration
            thresholds: Confidence thresholds and behavioral nudges
            normalizer: Text normalizer (shared instances are safe)
        """
        self.config = config or SafetyConfig()
        self.thresholds = thresholds or TriageThresholds()
        self._normalizer = normalizer or TextNormalizer()
        self._update_lock = threading.Lock()

        terms: List[_CompiledTerm] = []
        for indicator, keywords in CRISIS_KEYWORDS.items():
            terms.extend(self._compile_keywords(indicator, keywords))
        for indicator, pattern, weight in RISK_PATTERNS:
            terms.append(self._compile_pattern(indicator, pattern, weight))
        self._terms: Tuple[_CompiledTerm, ...] = tuple(terms)

        logger.info(
            "CRISIS_CLASSIFIER_INITIALIZED",
            extra={
                "pattern_version": self.config.pattern_version,
                "term_count": len(self._terms),
                "normalization_enabled": self.config.normalization_enabled,
            }
        )

    @staticmethod
    def _compile_keywords(
        indicator: Indicator, keywords: Mapping[str, float]
    ) -> List[_CompiledTerm]:
        compiled = []
        for keyword, weight in keywords.items():
            _check_weight(weight)
            # Word boundaries prevent partial matches ("cut" in "cute")
            pattern = re.compile(rf"\b{re.escape(keyword.lower())}\b")
            compiled.append((indicator, keyword, weight, pattern))
        return compiled

    @staticmethod
    def _compile_pattern(indicator: Indicator, pattern: str, weight: float) -> _CompiledTerm:
        _check_weight(weight)
        if _NESTED_QUANTIFIER.search(pattern):
            raise ValueError(f"Pattern has nested quantifiers: {pattern}")
        return (indicator, f"pattern:{pattern}", weight, re.compile(pattern, re.IGNORECASE))

    def classify(
        self,
        text: str,
        context: Optional[ClassificationContext] = None,
    ) -> ClassificationResult:
        """Score a message for crisis indicators.

        Empty or whitespace-only input yields an empty, zero-confidence
        result rather than an error.

        Args:
            text: Raw message text
            context: Conversation history and session metadata

        Returns:
            ClassificationResult with per-indicator scores
        """
        start_time = time.perf_counter()
        context = context or ClassificationContext()

        if not isinstance(text, str) or not text.strip():
            return ClassificationResult(risk_factors=("empty_input",))

        risk_factors: List[str] = []
        scored_text = self._normalizer.basic(text)
        scores, matched, spans = self._score(scored_text)

        if not scores and self.config.normalization_enabled:
            adversarial_text = self._normalizer.adversarial(text)
            scores, matched, spans = self._score(adversarial_text)
            if scores:
                scored_text = adversarial_text
                risk_factors.append("obfuscated_text")

        self._apply_behavioral_signals(scores, context, risk_factors)
        repeated = self._has_repeated_distress(context.conversation_history)
        if repeated:
            risk_factors.append("repeated_crisis_indicators")

        confidence = max(scores.values()) if scores else 0.0
        latency_ms = (time.perf_counter() - start_time) * 1000

        logger.debug(
            "CRISIS_CLASSIFIER_SCORED",
            extra={
                "indicators": sorted(i.value for i in scores),
                "match_count": len(matched),
                "confidence": round(confidence, 3),
                "latency_ms": latency_ms,
            }
        )

        return ClassificationResult(
            indicator_scores=scores,
            confidence=confidence,
            risk_factors=tuple(risk_factors),
            matched_terms=tuple(matched),
            repeated_distress=repeated,
            text=scored_text,
            match_spans=tuple(spans),
        )

    def _score(
        self, text: str
    ) -> Tuple[Dict[Indicator, float], List[str], List[Tuple[Indicator, int, int]]]:
        best: Dict[Indicator, float] = {}
        counts: Dict[Indicator, int] = {}
        matched: List[str] = []
        spans: List[Tuple[Indicator, int, int]] = []
        for indicator, term, weight, pattern in self._terms:
            hits = [m.span() for m in pattern.finditer(text)]
            if hits:
                matched.append(term)
                spans.extend((indicator, start, end) for start, end in hits)
                counts[indicator] = counts.get(indicator, 0) + 1
                best[indicator] = max(best.get(indicator, 0.0), weight)

        bonus = self.thresholds.extra_match_bonus
        scores = {
            indicator: min(1.0, best[indicator] + bonus * (counts[indicator] - 1))
            for indicator in best
        }
        return scores, matched, spans

    def _apply_behavioral_signals(
        self,
        scores: Dict[Indicator, float],
        context: ClassificationContext,
        risk_factors: List[str],
    ) -> None:
        t = self.thresholds

        if context.messages_per_minute is not None and context.messages_per_minute > t.rapid_messages_per_minute:
            scores[Indicator.ACUTE_ANXIETY] = min(
                1.0, scores.get(Indicator.ACUTE_ANXIETY, 0.0) + t.rapid_messaging_boost
            )
            risk_factors.append("rapid_messaging")

        if context.hour is not None and t.late_night_start_hour <= context.hour <= t.late_night_end_hour:
            risk_factors.append("late_night_session")
            if Indicator.ACUTE_ANXIETY in scores:
                scores[Indicator.ACUTE_ANXIETY] = min(
                    1.0, scores[Indicator.ACUTE_ANXIETY] + t.late_night_boost
                )

        if (
            scores
            and context.session_duration_seconds is not None
            and context.session_duration_seconds < t.brief_session_seconds
        ):
            risk_factors.append("brief_crisis_session")

    def _has_repeated_distress(self, history: Iterable[str]) -> bool:
        recent = list(history)[-self.thresholds.history_window:]
        hits = 0
        for message in recent:
            if not isinstance(message, str) or not message.strip():
                continue
            scores, _, _ = self._score(self._normalizer.basic(message))
            if any(
                score >= self.thresholds.action_threshold
                for indicator, score in scores.items()
                if indicator in HISTORY_INDICATORS
            ):
                hits += 1
        return hits >= self.thresholds.history_repeat_count

    def update_patterns(
        self,
        keywords: Optional[Mapping[Indicator, Mapping[str, float]]] = None,
        regexes: Optional[Iterable[Tuple[Indicator, str, float]]] = None,
    ) -> int:
        """Add weighted keywords and regex patterns at runtime.

        The new lexicon is compiled fully before it replaces the current
        one, so a bad pattern leaves the classifier unchanged.

        Args:
            keywords: Indicator -> {keyword: weight}
            regexes: (indicator, pattern, weight) tuples

        Returns:
            Number of terms added

        Raises:
            ValueError: On a weight outside 0-1 or a backtracking-prone pattern
        """
        added: List[_CompiledTerm] = []
        for indicator, words in (keywords or {}).items():
            added.extend(self._compile_keywords(indicator, words))
        for indicator, pattern, weight in regexes or ():
            added.append(self._compile_pattern(indicator, pattern, weight))

        with self._update_lock:
            self._terms = self._terms + tuple(added)

        logger.info(
            "CRISIS_PATTERNS_UPDATED",
            extra={
                "added_terms": len(added),
                "term_count": len(self._terms),
            }
        )
        return len(added)


def _check_weight(weight: float) -> None:
    if not 0.0 < weight <= 1.0:
        raise ValueError(f"Weight must be in (0.0, 1.0], got {weight}")
