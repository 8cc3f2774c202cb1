"""Safeharbor services.

- safety_service: classifies every user message before anything else
- professional_service: ranks professionals for an actionable crisis
- crisis_engine: escalates actionable assessments to a professional
- monitoring_service: per-user safety profiles, alerts and metrics
"""
