"""Safeharbor crisis triage core.

Rule-based crisis classification, false-positive suppression, severity
stratification, professional matching, escalation orchestration and
per-user safety monitoring.
"""
