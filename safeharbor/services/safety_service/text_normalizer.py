"""Text normalization for crisis classification.

Two views of every message are produced:

- ``basic``: lowercased, curly quotes folded, invisible characters
  stripped, whitespace collapsed. Emoji and other symbols are kept, so
  matching stays Unicode-safe around emoji-adjacent words.
- ``adversarial``: additionally folds styled Unicode letters, leetspeak
  and letter-separated spellings (k.i.l.l, k i l l) back to plain words.

Every step is a single linear pass or a bounded number of linear regex
substitutions, so very long inputs still finish promptly.
"""
import logging
import re
import unicodedata
from typing import Dict, Tuple

logger = logging.getLogger(__name__)


# Leetspeak character mappings (numbers/symbols to letters)
LEETSPEAK_MAP: Dict[str, str] = {
    "0": "o",
    "1": "i",
    "3": "e",
    "4": "a",
    "5": "s",
    "7": "t",
    "8": "b",
    "@": "a",
    "$": "s",
    "!": "i",
    "+": "t",
    "|": "l",
}

# Styled letter blocks folded back to ASCII: (first, last, ascii base)
UNICODE_LETTER_RANGES: Tuple[Tuple[int, int, int], ...] = (
    (0x1D400, 0x1D419, ord("A")),  # mathematical bold
    (0x1D41A, 0x1D433, ord("a")),
    (0x1D434, 0x1D44D, ord("A")),  # mathematical italic
    (0x1D44E, 0x1D467, ord("a")),
    (0x1D538, 0x1D551, ord("A")),  # double-struck
    (0x1D552, 0x1D56B, ord("a")),
    (0x24B6, 0x24CF, ord("A")),    # circled
    (0x24D0, 0x24E9, ord("a")),
    (0xFF21, 0xFF3A, ord("A")),    # fullwidth
    (0xFF41, 0xFF5A, ord("a")),
)

# Zero-width and invisible characters removed before matching
_INVISIBLE = "\u200b\u200c\u200d\u2060\ufeff\u00ad"

# Apostrophe and quote variants folded to ASCII
_QUOTES = {"\u2018": "'", "\u2019": "'", "\u02bc": "'", "\u201c": '"', "\u201d": '"'}

_BASIC_TABLE = str.maketrans({**{c: None for c in _INVISIBLE}, **_QUOTES})
_LEET_TABLE = str.maketrans(LEETSPEAK_MAP)

# Passes over letter-separated spellings; each pass joins adjacent pairs
_MAX_SEPARATOR_PASSES = 8


class TextNormalizer:
    """Produces the basic and adversarial views of a message."""

    def __init__(self):
        # Single letters joined by dots, dashes, underscores or whitespace
        self._separated_letters = re.compile(r"\b([a-z])(?:[.\-_]+|\s+)(?=[a-z]\b)")
        self._whitespace = re.compile(r"\s+")

        logger.info(
            "TEXT_NORMALIZER_INITIALIZED",
            extra={
                "leetspeak_mappings": len(LEETSPEAK_MAP),
                "unicode_ranges": len(UNICODE_LETTER_RANGES),
            }
        )

    def basic(self, text: str) -> str:
        """Lowercase, fold quotes, strip invisibles and collapse whitespace."""
        if not text:
            return ""
        folded = text.translate(_BASIC_TABLE).lower()
        return self._whitespace.sub(" ", folded).strip()

    def adversarial(self, text: str) -> str:
        """Fold evasion techniques back to plain lowercase words.

        Args:
            text: Raw input text

        Returns:
            Normalized text for a second matching pass
        """
        if not text:
            return ""
        result = text.translate(_BASIC_TABLE)
        result = self._fold_unicode(result)
        result = result.translate(_LEET_TABLE).lower()
        result = self._join_separated_letters(result)
        return self._whitespace.sub(" ", result).strip()

    def _fold_unicode(self, text: str) -> str:
        out = []
        for char in text:
            code_point = ord(char)
            if code_point < 128:
                out.append(char)
                continue
            for start, end, base in UNICODE_LETTER_RANGES:
                if start <= code_point <= end:
                    out.append(chr(base + (code_point - start)))
                    break
            else:
                decomposed = unicodedata.normalize("NFKD", char)
                ascii_only = "".join(
                    c for c in decomposed
                    if unicodedata.category(c) != "Mn" and ord(c) < 128
                )
                out.append(ascii_only or char)
        return "".join(out)

    def _join_separated_letters(self, text: str) -> str:
        # k.i.l.l -> kill; each pass is linear and the pass count is bounded
        for _ in range(_MAX_SEPARATOR_PASSES):
            joined = self._separated_letters.sub(r"\1", text)
            if joined == text:
                break
            text = joined
        return text
