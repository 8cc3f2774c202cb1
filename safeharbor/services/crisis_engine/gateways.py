"""External gateways used by the escalation orchestrator.

SecureChannelGateway opens an encrypted user/professional channel;
NotificationGateway alerts a professional. Both are I/O-bound external
collaborators: the orchestrator calls them without holding any lock and
bounds each call with a timeout.

Implementations:
- FernetSecureChannelGateway: development channel store, messages
  encrypted at rest with Fernet
- SnsNotificationGateway: best-effort SNS publish, never raises
"""
import json
import logging
import os
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from cryptography.fernet import Fernet, InvalidToken

from safeharbor.shared.store import InMemoryStore, KeyValueStore
from safeharbor.shared.utils import hash_pii

logger = logging.getLogger(__name__)

CHANNEL_NAMESPACE = "secure_channels"
CHANNEL_MESSAGE_NAMESPACE = "secure_channel_messages"
CHANNEL_AUDIT_NAMESPACE = "secure_channel_audit"


class GatewayError(Exception):
    """An external gateway rejected or failed a request."""
    pass


@dataclass(frozen=True)
class ChannelResult:
    channel_id: str
    status: str
    encryption_algorithm: str


class SecureChannelGateway(ABC):
    """Contract for the secure communication channel provider."""

    @abstractmethod
    def create_channel(
        self,
        professional_id: str,
        user_id: str,
        crisis_id: str,
        escalation_id: str,
    ) -> ChannelResult:
        """Open a channel between a professional and a user.

        Raises:
            GatewayError: If the channel could not be created
        """

    @abstractmethod
    def send_message(self, channel_id: str, sender_id: str, content: str) -> str:
        """Encrypt and store a message. Returns the message id."""

    @abstractmethod
    def decrypt_message(self, channel_id: str, message_id: str) -> str:
        """Return the plaintext of a stored message."""

    @abstractmethod
    def get_channel_audit(self, channel_id: str) -> List[Dict[str, Any]]:
        """Audit trail of a channel, oldest first. Never contains message text."""


class NotificationGateway(ABC):
    """Contract for alerting a professional about an assigned case."""

    @abstractmethod
    def notify(
        self,
        professional_id: str,
        escalation_id: str,
        priority: str,
        channel_id: Optional[str] = None,
    ) -> bool:
        """Best-effort notification. Returns False on failure."""


class FernetSecureChannelGateway(SecureChannelGateway):
    """Secure channels backed by a KeyValueStore with Fernet encryption.

    Suitable for development and tests. Message bodies are only ever
    stored as Fernet tokens.
    """

    ALGORITHM = "fernet-aes128-cbc-hmac-sha256"

    def __init__(
        self,
        key: Optional[Union[str, bytes]] = None,
        store: Optional[KeyValueStore] = None,
    ):
        """Initialize gateway.

        Args:
            key: Fernet key; a fresh key is generated when omitted
            store: Store for channels, tokens and audit entries
        """
        if isinstance(key, str):
            key = key.encode()
        self._fernet = Fernet(key or Fernet.generate_key())
        self.store = store or InMemoryStore()
        self._lock = threading.Lock()

        logger.info(
            "SECURE_CHANNEL_GATEWAY_INITIALIZED",
            extra={"algorithm": self.ALGORITHM, "key_provided": key is not None}
        )

    def create_channel(self, professional_id, user_id, crisis_id, escalation_id) -> ChannelResult:
        channel_id = f"chan_{uuid.uuid4().hex[:12]}"
        channel = {
            "channel_id": channel_id,
            "professional_id": professional_id,
            "user_id": user_id,
            "crisis_id": crisis_id,
            "escalation_id": escalation_id,
            "status": "active",
            "created_at": datetime.utcnow().isoformat(),
        }
        with self._lock:
            self.store.insert(CHANNEL_NAMESPACE, channel_id, channel)
        self._audit(channel_id, "channel_created", professional_id)

        logger.info(
            "SECURE_CHANNEL_CREATED",
            extra={
                "channel_id": channel_id,
                "escalation_id": escalation_id,
                "professional_id": professional_id,
                "user_id_hash": hash_pii(user_id),
            }
        )
        return ChannelResult(channel_id=channel_id, status="active", encryption_algorithm=self.ALGORITHM)

    def send_message(self, channel_id: str, sender_id: str, content: str) -> str:
        self._require_channel(channel_id)
        message_id = f"msg_{uuid.uuid4().hex[:12]}"
        token = self._fernet.encrypt(content.encode()).decode()
        self.store.put(CHANNEL_MESSAGE_NAMESPACE, f"{channel_id}:{message_id}", token)
        self._audit(channel_id, "message_sent", sender_id, message_id=message_id)
        return message_id

    def decrypt_message(self, channel_id: str, message_id: str) -> str:
        token = self.store.get(CHANNEL_MESSAGE_NAMESPACE, f"{channel_id}:{message_id}")
        if token is None:
            raise GatewayError(f"Message {message_id} not found in {channel_id}")
        try:
            plaintext = self._fernet.decrypt(token.encode()).decode()
        except InvalidToken:
            raise GatewayError("Invalid or corrupted encrypted message")
        self._audit(channel_id, "message_decrypted", "system", message_id=message_id)
        return plaintext

    def get_channel_audit(self, channel_id: str) -> List[Dict[str, Any]]:
        return self.store.get_list(CHANNEL_AUDIT_NAMESPACE, channel_id)

    def _require_channel(self, channel_id: str) -> Dict[str, Any]:
        channel = self.store.get(CHANNEL_NAMESPACE, channel_id)
        if channel is None:
            raise GatewayError(f"Unknown channel {channel_id}")
        return channel

    def _audit(self, channel_id: str, action: str, actor: str, **details: Any) -> None:
        self.store.append(CHANNEL_AUDIT_NAMESPACE, channel_id, {
            "action": action,
            "actor": actor,
            "timestamp": datetime.utcnow().isoformat(),
            **details,
        })


class SnsNotificationGateway(NotificationGateway):
    """Publishes professional notifications to an SNS topic.

    Failure Handling:
        - Publishing failure never raises
        - When the client is unavailable the payload is logged for
          manual follow-up
    """

    def __init__(
        self,
        topic_arn: Optional[str] = None,
        enabled: bool = True,
        region: Optional[str] = None,
    ):
        """Initialize notifier.

        Args:
            topic_arn: SNS topic ARN (defaults to NOTIFICATION_TOPIC_ARN env var)
            enabled: Whether publishing is enabled (disable for local dev)
            region: AWS region (defaults to AWS_REGION env var)
        """
        self.topic_arn = topic_arn or os.getenv("NOTIFICATION_TOPIC_ARN", "")
        self.enabled = enabled
        self.region = region or os.getenv("AWS_REGION", "us-east-1")
        self._sns_client = None

        logger.info(
            "NOTIFICATION_GATEWAY_INITIALIZED",
            extra={
                "topic_arn": self.topic_arn,
                "enabled": enabled,
                "region": self.region,
            }
        )

    @property
    def sns_client(self):
        """Lazy initialization of SNS client."""
        if self._sns_client is None and self.enabled:
            try:
                import boto3
                self._sns_client = boto3.client("sns", region_name=self.region)
            except Exception as e:
                logger.error(
                    "SNS_CLIENT_INIT_FAILED",
                    extra={"error": str(e)}
                )
        return self._sns_client

    def notify(self, professional_id, escalation_id, priority, channel_id=None) -> bool:
        payload = {
            "type": "escalation.assigned",
            "professional_id": professional_id,
            "escalation_id": escalation_id,
            "priority": priority,
            "channel_id": channel_id,
            "timestamp": datetime.utcnow().isoformat() + "Z",
        }

        if not self.enabled:
            logger.info(
                "PROFESSIONAL_NOTIFICATION_SKIPPED",
                extra={"escalation_id": escalation_id, "reason": "notifications_disabled"}
            )
            return False

        try:
            if self.sns_client is None:
                logger.critical(
                    "PROFESSIONAL_NOTIFICATION_FALLBACK_LOG",
                    extra={
                        "escalation_id": escalation_id,
                        "payload": json.dumps(payload),
                        "reason": "sns_client_unavailable",
                        "action": "MANUAL_NOTIFICATION_REQUIRED",
                    }
                )
                return False

            response = self.sns_client.publish(
                TopicArn=self.topic_arn,
                Subject=f"[{priority.upper()}] Crisis escalation assigned",
                Message=json.dumps(payload),
                MessageAttributes={
                    "priority": {"DataType": "String", "StringValue": priority},
                    "professional_id": {"DataType": "String", "StringValue": professional_id},
                },
            )

            logger.info(
                "PROFESSIONAL_NOTIFIED",
                extra={
                    "escalation_id": escalation_id,
                    "professional_id": professional_id,
                    "message_id": response.get("MessageId"),
                }
            )
            return True

        except Exception as e:
            logger.error(
                "PROFESSIONAL_NOTIFICATION_FAILED",
                extra={
                    "escalation_id": escalation_id,
                    "professional_id": professional_id,
                    "error": str(e),
                    "error_type": type(e).__name__,
                    "action": "MANUAL_NOTIFICATION_REQUIRED",
                }
            )
            return False
