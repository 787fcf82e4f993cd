"""
Alert notification fan-out.
Records one popup notification per recipient (owner + assigned users), hands each
recipient's context to the delivery collaborator, and publishes bus events that the
push channel forwards to connected users.
"""

import logging
from typing import Callable, Dict, List, Optional

from models import (
    KIND_DEVICE_UNREACHABLE,
    KIND_INTERFACE_DOWN,
    Alert,
    Device,
)
from services.events import EventBus
from store import DataStore
from toolkit.utils import format_kbps

_LOGGER = logging.getLogger(__name__)

DeliverFn = Callable[[str, dict], None]


def alert_title(alert: Alert, device: Device) -> str:
    if alert.kind == KIND_DEVICE_UNREACHABLE:
        return f"Router Down: {device.name}"
    if alert.kind == KIND_INTERFACE_DOWN:
        return f"Port Down: {device.name}"
    return f"Traffic Alert: {device.name}"


def log_delivery(user_id: str, context: dict) -> None:
    """Default collaborator: email delivery is external, so only record the hand-off."""
    _LOGGER.info(
        "alert %s for user %s (%s, email=%s)",
        context.get("alertId"),
        user_id,
        context.get("severity"),
        bool(context.get("email")),
    )


class Notifier:
    def __init__(self, store: DataStore, events: EventBus, deliver: Optional[DeliverFn] = None):
        self.store = store
        self.events = events
        self._deliver = deliver or log_delivery

    def deliver_alert(self, user_id: str, context: dict) -> bool:
        try:
            self._deliver(user_id, context)
            return True
        except Exception:
            # Delivery is best-effort; one recipient failing must not block the others.
            _LOGGER.exception("alert delivery to %s failed", user_id)
            return False

    def notify_alert_opened(self, alert: Alert, device: Device, *, email: bool = False) -> List[str]:
        """Notify every recipient of a newly opened alert; returns the recipient ids."""
        recipients = self.store.list_alert_recipients(device.id)
        title = alert_title(alert, device)
        notifications: Dict[str, dict] = {}
        for user_id in recipients:
            notification_id = self.store.add_notification(user_id, alert.id, "popup", title, alert.message)
            context = {
                "alertId": alert.id,
                "notificationId": notification_id,
                "title": title,
                "message": alert.message,
                "severity": alert.severity,
                "routerName": device.name,
                "portName": alert.interface_name,
                "portComment": alert.interface_comment,
                "currentTraffic": format_kbps(alert.current_bps) if alert.current_bps is not None else "N/A",
                "threshold": format_kbps(alert.threshold_bps) if alert.threshold_bps is not None else "N/A",
                "email": bool(email),
            }
            if self.deliver_alert(user_id, context) and email:
                self.store.add_notification(user_id, alert.id, "email", title, alert.message)
            notifications[user_id] = {
                "id": notification_id,
                "title": title,
                "message": alert.message,
                "severity": alert.severity,
                "routerName": device.name,
                "portName": alert.interface_name,
                "portComment": alert.interface_comment,
            }
        self.events.publish(
            event_type="alert.opened",
            device_id=device.id,
            entity=alert.condition_key,
            summary=alert.message,
            data={"alertId": alert.id, "notifications": notifications},
        )
        _LOGGER.info("alert #%s (%s) sent to %d user(s)", alert.id, alert.condition_key, len(recipients))
        return recipients

    def notify_alert_cleared(self, alert: Alert, acknowledged_by: str) -> None:
        self.events.publish(
            event_type="alert.cleared",
            device_id=alert.device_id,
            entity=alert.condition_key,
            summary=f"Alert #{alert.id} acknowledged by {acknowledged_by}",
            data={"alertId": alert.id, "acknowledgedBy": acknowledged_by},
        )
