"""Shared utilities for Safeharbor."""
from .pii import hash_pii, hash_text_for_audit, configure_pii_salt, truncate_for_audit

__all__ = ["hash_pii", "hash_text_for_audit", "configure_pii_salt", "truncate_for_audit"]
