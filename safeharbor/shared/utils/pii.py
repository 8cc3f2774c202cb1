"""PII handling utilities.

User identifiers reach application logs only as keyed digests; message
text appears only as a fingerprint or, on an assessment record, as a
truncated audit copy.
"""
import hashlib
import hmac
import logging
from typing import Optional

logger = logging.getLogger(__name__)

MIN_SALT_LENGTH = 32

# Audit copies of source text are cut to this many characters
AUDIT_CONTEXT_MAX_CHARS = 500

_PII_SALT: Optional[bytes] = None


def configure_pii_salt(salt: str) -> None:
    """Set the process-wide key used by hash_pii.

    Called once at startup, from PII_HASH_SALT in the HTTP handlers.

    Raises:
        ValueError: If salt is shorter than MIN_SALT_LENGTH
    """
    global _PII_SALT
    if not salt or len(salt) < MIN_SALT_LENGTH:
        logger.critical(
            "PII_SALT_REJECTED",
            extra={"salt_length": len(salt or ""), "min_length": MIN_SALT_LENGTH}
        )
        raise ValueError(f"PII salt must be at least {MIN_SALT_LENGTH} characters")

    _PII_SALT = salt.encode()
    logger.info("PII_SALT_CONFIGURED", extra={"salt_length": len(salt)})


def hash_pii(value: str) -> str:
    """HMAC-SHA256 of an identifier, stable for a given salt.

    Raises:
        RuntimeError: If configure_pii_salt() has not been called
    """
    if _PII_SALT is None:
        logger.critical("PII_HASH_FAILED", extra={"reason": "salt_not_configured"})
        raise RuntimeError("PII salt not configured. Call configure_pii_salt() first.")
    return hmac.new(_PII_SALT, value.encode(), hashlib.sha256).hexdigest()


def hash_text_for_audit(text: str) -> str:
    """Fingerprint message text without exposing it."""
    return hashlib.sha256(text.encode()).hexdigest()


def truncate_for_audit(text: str, max_chars: int = AUDIT_CONTEXT_MAX_CHARS) -> str:
    """Cut source text to the length retained on an assessment."""
    return text if len(text) <= max_chars else text[:max_chars]
