"""Safety Service configuration: thresholds, discount factors and lexicons.

Numeric thresholds are policy parameters. They live in frozen dataclasses
so a running service swaps the whole object (``dataclasses.replace``)
rather than mutating values other threads are reading.

Lexicon regexes must stay linear-time: literal words joined by ``\\s+``
with bounded optional groups, never nested quantifiers.
"""
from dataclasses import dataclass
from typing import Dict, FrozenSet, Tuple

from safeharbor.shared.models import Indicator


@dataclass(frozen=True)
class TriageThresholds:
    """Confidence thresholds for classification and stratification."""

    # Below this the classifier yields no assessment at all
    min_confidence: float = 0.3
    # Below this an assessment is recorded but is not actionable
    action_threshold: float = 0.5
    # Suicide ideation / self-harm at or above this is critical
    critical_threshold: float = 0.5
    # A single indicator at or above this is high severity
    very_high_threshold: float = 0.85
    # Co-occurring distress indicators needed for high severity
    high_indicator_count: int = 3

    # Each extra match for the same indicator adds this, capped at 1.0
    extra_match_bonus: float = 0.05

    # Behavioral nudges
    late_night_start_hour: int = 2
    late_night_end_hour: int = 6
    late_night_boost: float = 0.1
    rapid_messages_per_minute: float = 5.0
    rapid_messaging_boost: float = 0.15
    brief_session_seconds: float = 60.0

    # Conversation history
    history_window: int = 5
    history_repeat_count: int = 2


@dataclass(frozen=True)
class FilterFactors:
    """Discount applied by each false-positive rule.

    ``cap`` rules also clamp confidence just under the action threshold so
    a fired rule always suppresses, however strong the raw signal was.
    """
    negation_factor: float = 0.3
    negation_cap: float = 0.45
    professional_factor: float = 0.5
    hypothetical_factor: float = 0.4
    joking_factor: float = 0.3
    joking_cap: float = 0.45


@dataclass(frozen=True)
class SafetyConfig:
    """Configuration for classification behavior."""

    # Maximum latency allowed for one classification (milliseconds)
    max_classify_latency_ms: int = 100

    # Scan adversarially-normalized text when plain text has no match
    normalization_enabled: bool = True

    # Version tracking for audit trail
    pattern_version: str = "2026.10.01"


# Weighted keyword lexicon per indicator. Weights are the confidence a
# single match contributes. Every suicide-ideation weight is above 0.85
# so an unfiltered match always lands in the critical tier.
CRISIS_KEYWORDS: Dict[Indicator, Dict[str, float]] = {
    Indicator.SUICIDE_IDEATION: {
        "kill myself": 0.95,
        "end my life": 0.95,
        "take my own life": 0.95,
        "suicide": 0.9,
        "suicidal": 0.9,
        "want to die": 0.9,
        "better off dead": 0.9,
        "no reason to live": 0.88,
        "don't want to live": 0.88,
        "dont want to live": 0.88,
        "tired of living": 0.86,
        "unalive": 0.9,
        "kms": 0.86,
        "end it all": 0.9,
        "never wake up": 0.86,
        "better off without me": 0.88,
    },
    Indicator.SELF_HARM: {
        "cut myself": 0.9,
        "cutting myself": 0.9,
        "self harm": 0.85,
        "self-harm": 0.85,
        "hurt myself": 0.85,
        "harm myself": 0.85,
        "burn myself": 0.85,
        "burned myself": 0.85,
    },
    Indicator.SEVERE_DEPRESSION: {
        "worthless": 0.6,
        "depressed": 0.55,
        "empty inside": 0.6,
        "hate myself": 0.6,
        "nothing matters": 0.6,
    },
    Indicator.HOPELESSNESS: {
        "hopeless": 0.65,
        "no future": 0.6,
        "give up": 0.55,
        "no way out": 0.65,
        "can't go on": 0.65,
        "can't take it anymore": 0.65,
        "no point anymore": 0.65,
    },
    Indicator.ACUTE_ANXIETY: {
        "panic attack": 0.55,
        "panic attacks": 0.55,
        "can't breathe": 0.55,
        "heart racing": 0.45,
        "terrified": 0.5,
    },
    Indicator.SUBSTANCE_ABUSE: {
        "overdose": 0.7,
        "drink myself to death": 0.75,
        "drugs": 0.4,
    },
    Indicator.EATING_DISORDERS: {
        "starve myself": 0.6,
        "haven't eaten": 0.5,
        "purge": 0.45,
        "binge": 0.35,
    },
    Indicator.DOMESTIC_VIOLENCE: {
        "hits me": 0.6,
        "afraid to go home": 0.6,
        "touches me": 0.6,
    },
}

# Syntactic risk patterns: (indicator, regex, weight)
RISK_PATTERNS: Tuple[Tuple[Indicator, str, float], ...] = (
    (Indicator.SUICIDE_IDEATION, r"\b(?:kill|end)\s+(?:myself|my\s+life)\b", 0.9),
    (Indicator.SUICIDE_IDEATION, r"\b(?:end|take)\s+my\s+(?:own\s+)?life\b", 0.9),
    (Indicator.SUICIDE_IDEATION, r"\b(?:suicide|suicidal)\s+(?:thoughts|ideation|plan|note)\b", 0.95),
    (Indicator.SUICIDE_IDEATION, r"\b(?:have|made|got)\s+a\s+plan\s+to\s+(?:kill|end|hurt)\b", 0.95),
    (Indicator.SUICIDE_IDEATION, r"\b(?:no\s+reason|don'?t\s+want)\s+to\s+(?:live|be\s+alive|exist)\b", 0.88),
    (Indicator.SUICIDE_IDEATION, r"\b(?:better|easier)\s+(?:off\s+)?dead\b", 0.88),
    (Indicator.SUICIDE_IDEATION, r"\b(?:tired|done)\s+(?:of|with)\s+living\b", 0.86),
    (Indicator.SELF_HARM, r"\b(?:hurt|harm|cutt?|burn)(?:ing)?\s+myself\b", 0.85),
    (Indicator.SEVERE_DEPRESSION,
     r"\bfeel(?:ing|s)?\s+(?:really\s+|so\s+|very\s+|pretty\s+)?(?:down|low|depressed|empty|numb)\b", 0.55),
    (Indicator.HOPELESSNESS, r"\b(?:nothing|no\s+point)\s+(?:will\s+)?(?:ever\s+)?(?:gets?\s+better|matters)\b", 0.6),
    (Indicator.ACUTE_ANXIETY, r"\b(?:can'?t|cannot)\s+(?:stop\s+)?(?:breathe|breathing|shaking)\b", 0.55),
    (Indicator.EATING_DISORDERS, r"\b(?:haven'?t|not)\s+eaten\s+(?:in|for)\s+days\b", 0.6),
)

# Negation of a crisis verb ("I don't want to kill myself"). Only counts
# when it overlaps or directly precedes the matched crisis phrase.
NEGATION_PATTERNS: Tuple[str, ...] = (
    r"\b(?:don'?t|do\s+not|never|not|won'?t|wouldn'?t|am\s+not|i'?m\s+not)\s+"
    r"(?:want|going|planning|plan|trying|intend)\s+to\s+(?:kill|hurt|harm|cut|end(?!\s+up\b)|die)\b",
    r"\bwould\s+never\s+(?:kill|hurt|harm|cut)\s+myself\b",
    r"\b(?:i'?m|i\s+am)\s+not\s+(?:suicidal|going\s+to\s+hurt\s+myself)\b",
    r"\bno\s+(?:thoughts?|intention|plans?)\s+(?:of|to)\s+(?:suicide|killing|hurting|harming|self[\s-]harm)\b",
    r"\b(?:not|never)\s+(?:suicidal|self[\s-]harming)\b",
)

# Third-person clinical or educational framing
PROFESSIONAL_CONTEXT_PATTERNS: Tuple[str, ...] = (
    r"\b(?:my|the|a|our)\s+(?:therapist|counselor|counsellor|psychologist|psychiatrist|doctor|teacher|professor)\s+"
    r"(?:discussed|talked\s+about|explained|covered|mentioned|taught|presented)\b",
    r"\b(?:suicide|self[\s-]harm)\s+(?:prevention|awareness|hotline|statistics|rates?)\b",
    r"\bcrisis\s+intervention\b",
    r"\b(?:research|study|paper|essay|lecture|class|course|training|seminar|workshop|presentation)\s+"
    r"(?:on|about|covering)\b",
)

# Fictional or hypothetical framing
HYPOTHETICAL_PATTERNS: Tuple[str, ...] = (
    r"\bwhat\s+if\s+(?:someone|somebody|a\s+person|people|they)\b",
    r"\b(?:suppose|imagine)\s+(?:if|someone|somebody|a\s+person|you|they)\b",
    r"\bhypothetically\b",
    r"\bin\s+the\s+(?:movie|film|book|novel|story|show|series|game|song)\b",
    r"\b(?:movie|film|book|novel|story|article|news|show|episode|song)\s+(?:about|where|regarding)\b",
    r"\b(?:character|protagonist)\s+(?:who|that|wants|tries)\b",
)

# Joking or minimizing qualifiers
JOKING_PATTERNS: Tuple[str, ...] = (
    r"\b(?:jk|j/k|lol|lmao|rofl|haha+)\b",
    r"\bjust\s+(?:kidding|joking)\b",
    r"\b(?:literally|gonna)\s+die\s+(?:of|from)\s+(?:embarrassment|laughing|boredom)\b",
    r"\bthis\s+(?:homework|exam|test|traffic|meeting)\s+is\s+killing\s+me\b",
)

# History messages matching any of these count toward repeated distress
HISTORY_INDICATORS: FrozenSet[Indicator] = frozenset({
    Indicator.SUICIDE_IDEATION,
    Indicator.SELF_HARM,
    Indicator.SEVERE_DEPRESSION,
    Indicator.HOPELESSNESS,
})
