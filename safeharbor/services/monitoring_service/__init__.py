"""Monitoring Service: user safety profiles, alerts and system metrics.

Components:
- monitor.py: SafetyMonitor risk scoring, alert deduplication, metrics

Usage:
    from safeharbor.services.monitoring_service import SafetyMonitor
    monitor = SafetyMonitor()
    monitor.record_safety_event(event)
    profile = monitor.get_user_safety_profile(user_id)
"""

from .monitor import SafetyMonitor, MonitorThresholds, SEVERITY_WEIGHTS

__all__ = [
    "SafetyMonitor",
    "MonitorThresholds",
    "SEVERITY_WEIGHTS",
]
