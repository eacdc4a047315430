# consult_dispatch/infra/notification_senders.py
"""
Notification sender selection.

Backends:
- ``fcm`` - Firebase Cloud Messaging HTTP v1 (see fcm_sender.py)
- ``log`` - dev backend: logs the invitation and keeps it in memory

Usage:
    sender = get_notification_sender()
    result = await sender.send(push_token, payload)
"""
from __future__ import annotations

from dataclasses import dataclass, field
import time

from consult_dispatch.config import settings
from consult_dispatch.core.dispatch.domain import SendResult
from consult_dispatch.core.dispatch.ports import NotificationSender
from consult_dispatch.infra.logging_config import get_logger, mask_token

logger = get_logger(__name__)


@dataclass
class SentInvitation:
    """Invitation recorded by the log backend"""
    address: str
    payload: dict[str, str]
    sent_at: float = field(default_factory=time.time)


class LogNotificationSender:
    """Sender that never leaves the process. For local runs and demos."""

    def __init__(self, max_history: int = 100) -> None:
        self._max_history = max_history
        self.sent: list[SentInvitation] = []

    @property
    def name(self) -> str:
        return "log"

    def is_configured(self) -> bool:
        return True

    async def send(self, address: str, payload: dict[str, str]) -> SendResult:
        self.sent.append(SentInvitation(address=address, payload=dict(payload)))
        del self.sent[:-self._max_history]
        logger.info(
            f"[log sender] invitation: to={mask_token(address)}, "
            f"type={payload.get('type')}, request={payload.get('requestId', '')[:8]}, "
            f"candidate={payload.get('candidateId')}"
        )
        return SendResult.success()


def get_notification_sender() -> NotificationSender:
    """Build the sender selected by ``notification_backend``."""
    if settings.notification_backend == "fcm":
        from consult_dispatch.infra.fcm_sender import FcmNotificationSender

        sender = FcmNotificationSender.from_settings()
        if not sender.is_configured():
            logger.warning("notification_backend=fcm but FCM is not configured; sends will fail")
        return sender

    return LogNotificationSender()
