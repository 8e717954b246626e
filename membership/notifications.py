"""
Lifecycle notices
Email delivery lives outside this service; the dispatcher and facade only hand
notices to a Notifier.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

SUBSCRIPTION_STARTED = "subscription_started"
SUBSCRIPTION_RENEWED = "subscription_renewed"
TIER_CHANGED = "tier_changed"
CANCELLATION_SCHEDULED = "cancellation_scheduled"
DOWNGRADE_SCHEDULED = "downgrade_scheduled"
DOWNGRADE_COMPLETE = "downgrade_complete"
SUBSCRIPTION_ENDED = "subscription_ended"
PAYMENT_FAILED = "payment_failed"
PAYMENT_RECOVERED = "payment_recovered"


class Notifier(ABC):
    @abstractmethod
    async def notify(self, user_id: str, notice: str, details: Optional[Dict[str, Any]] = None) -> None:
        ...


class LoggingNotifier(Notifier):
    """Default notifier: records notices in the log"""

    async def notify(self, user_id, notice, details=None):
        logger.info("Notice %s for user %s: %s", notice, user_id, details or {})


class RecordingNotifier(Notifier):
    """Keeps notices in memory (local development and tests)"""

    def __init__(self):
        self.sent: List[Tuple[str, str, Dict[str, Any]]] = []

    async def notify(self, user_id, notice, details=None):
        self.sent.append((user_id, notice, details or {}))

    def notices(self, user_id: Optional[str] = None) -> List[str]:
        return [notice for uid, notice, _ in self.sent if user_id is None or uid == user_id]


async def send_quietly(notifier: Notifier, user_id: str, notice: str, details: Optional[Dict[str, Any]] = None) -> None:
    """Deliver a notice; a failing notifier never undoes a committed record change"""
    try:
        await notifier.notify(user_id, notice, details)
    except Exception:
        logger.exception("Failed to deliver %s notice to user %s", notice, user_id)
