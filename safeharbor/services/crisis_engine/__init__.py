"""Crisis Engine: escalation of actionable crisis assessments.

Components:
- orchestrator.py: EscalationOrchestrator state machine
- gateways.py: secure channel and notification gateway contracts
- http_handler.py: Flask endpoints

Escalation path:
    assessment -> match professional -> secure channel -> notify -> resolve
"""

from .gateways import (
    ChannelResult,
    FernetSecureChannelGateway,
    GatewayError,
    NotificationGateway,
    SecureChannelGateway,
    SnsNotificationGateway,
)
from .orchestrator import EscalationConfig, EscalationOrchestrator

__all__ = [
    "ChannelResult",
    "FernetSecureChannelGateway",
    "GatewayError",
    "NotificationGateway",
    "SecureChannelGateway",
    "SnsNotificationGateway",
    "EscalationConfig",
    "EscalationOrchestrator",
]
