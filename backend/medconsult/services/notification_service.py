"""
Notification Service — Fire-and-forget dispatch of lifecycle events.

Called only after the transaction that justified the event has committed.
Delivery (push, SMS, WebSocket broadcast) belongs to an external transport;
a failure here is logged and never undoes a transition.
"""
import logging
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

Transport = Callable[[str, str, str, Dict[str, Any]], None]


class NotificationService:
    _transport: Optional[Transport] = None

    @classmethod
    def set_transport(cls, transport: Optional[Transport]) -> None:
        """Install the callable that actually delivers notifications."""
        cls._transport = transport

    @classmethod
    def dispatch(cls, user_id: str, title: str, body: str, data: Optional[Dict[str, Any]] = None) -> bool:
        payload = data or {}
        logger.info("Notify %s: %s", user_id, title)
        if cls._transport is None:
            return False
        try:
            cls._transport(user_id, title, body, payload)
            return True
        except Exception as e:
            logger.warning("Notification to %s failed (%s): %s", user_id, title, e)
            return False

    @classmethod
    def dispatch_all(cls, notifications: List[Dict[str, Any]]) -> int:
        """Send queued notifications; returns how many were delivered."""
        return sum(
            1 for n in notifications
            if cls.dispatch(n["user_id"], n["title"], n["body"], n.get("data"))
        )


def notice(user_id: str, title: str, body: str, **data) -> Dict[str, Any]:
    """Build a queued notification, sent once the surrounding transaction commits."""
    return {"user_id": user_id, "title": title, "body": body, "data": data}
