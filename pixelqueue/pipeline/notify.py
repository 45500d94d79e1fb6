"""
User Notifications

Messages sent to the account owner when a job finishes. Delivery adapters
for the chat platforms and push services live outside this worker; the
notifier here decides the route and hands the message over.
"""

from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, Optional

from pixelqueue.core.logging import get_logger
from pixelqueue.modules.jobs.models import SourceChannel

logger = get_logger(__name__)


FAILURE_MESSAGES = {
    "en": "Sorry, the network is having issues. Your credit has been refunded. 🙏",
    "fr": "Désolé, le réseau a des difficultés. Votre crédit a été remboursé. 🙏",
}

SUCCESS_MESSAGES = {
    "en": "✨ Your photo is ready! Click to see the result.",
    "fr": "✨ Votre photo est prête ! Cliquez pour voir le résultat.",
}


def failure_message(locale: str = "en") -> str:
    return FAILURE_MESSAGES.get(locale, FAILURE_MESSAGES["en"])


def success_message(locale: str = "en") -> str:
    return SUCCESS_MESSAGES.get(locale, SUCCESS_MESSAGES["en"])


def route_for(channel: Optional[str]) -> str:
    """Pick the delivery route for the channel a job came in on."""
    if channel in (SourceChannel.TELEGRAM_BOT.value, SourceChannel.WHATSAPP_BOT.value):
        return channel
    if channel in (SourceChannel.MOBILE_APP.value, SourceChannel.WEB_APP.value):
        return "push"
    return "stored"


@dataclass
class Notification:
    account_id: str
    job_id: str
    message: str
    kind: str
    route: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)


class Notifier(ABC):
    """Interface for the notification sink."""

    @abstractmethod
    async def notify(
        self,
        account_id: str,
        job_id: str,
        message: str,
        channel: Optional[str] = None,
        kind: str = "job_failed",
        metadata: Optional[Dict[str, Any]] = None
    ) -> Notification:
        pass


class LoggingNotifier(Notifier):
    """Routes by channel and logs the message. Keeps the most recent ones."""

    def __init__(self, history: int = 100):
        self.sent: Deque[Notification] = deque(maxlen=history)

    async def notify(self, account_id, job_id, message, channel=None, kind="job_failed", metadata=None):
        notification = Notification(
            account_id=account_id,
            job_id=job_id,
            message=message,
            kind=kind,
            route=route_for(channel),
            metadata=metadata or {},
        )
        self.sent.append(notification)
        logger.info(
            "notification_sent",
            account_id=account_id,
            job_id=job_id,
            kind=kind,
            route=notification.route
        )
        return notification
