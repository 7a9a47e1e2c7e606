# FILE: app/services/notifier.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import requests

from app.core.config import settings
from app.utils.timezone import utcnow, iso_z

logger = logging.getLogger(__name__)

EVENT_RX_ISSUED = "prescription.issued"
EVENT_RX_DISPENSED = "prescription.dispensed"
EVENT_RX_CANCELLED = "prescription.cancelled"
EVENT_LOW_STOCK = "inventory.low_stock"


@dataclass
class Event:
    name: str
    data: Dict[str, Any] = field(default_factory=dict)
    occurred_at: str = field(default_factory=lambda: iso_z(utcnow()))

    def as_payload(self) -> Dict[str, Any]:
        return {"event": self.name, "occurred_at": self.occurred_at, "data": self.data}


Channel = Callable[[Event], None]


def log_channel(event: Event) -> None:
    logger.info("notify %s %s", event.name, event.data)


def webhook_channel(event: Event) -> None:
    """
    POST the event as JSON to NOTIFY_WEBHOOK_URL. No-op when unset.
    """
    url = settings.NOTIFY_WEBHOOK_URL
    if not url:
        return

    try:
        resp = requests.post(
            url,
            json=event.as_payload(),
            headers={"Content-Type": "application/json"},
            timeout=settings.NOTIFY_TIMEOUT_SECONDS,
        )
        if resp.status_code >= 400:
            logger.error(
                "Webhook returned status %s for %s. Response: %s",
                resp.status_code,
                event.name,
                resp.text[:500],
            )
    except requests.RequestException as e:
        logger.error("Error posting %s to webhook: %s", event.name, e)


_channels: List[Channel] = [log_channel, webhook_channel]


def register_channel(channel: Channel) -> None:
    _channels.append(channel)


def unregister_channel(channel: Channel) -> None:
    if channel in _channels:
        _channels.remove(channel)


def notify(name: str, data: Optional[Dict[str, Any]] = None) -> None:
    """
    Fan the event out to every channel. Delivery failures are logged and
    never reach the caller: the operation that raised the event has
    already committed.
    """
    event = Event(name=name, data=dict(data or {}))
    for channel in list(_channels):
        try:
            channel(event)
        except Exception:
            logger.exception("Notification channel %r failed for %s",
                             getattr(channel, "__name__", channel), name)
