"""
Subscribers - ready-made consumers of Singleton notifications.

A subscriber is any object with an ``on_notification(notification)`` method.
``attach()`` wires one to every event of a Singleton.

Includes LoggingSubscriber, MetricsSubscriber and WebhookSubscriber.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

import httpx

from . import __version__
from .monitoring import get_logger, get_meter
from .singleton import LockEvent, LockNotification, Singleton

logger = get_logger(__name__)


def attach(singleton: Singleton, subscriber: Any) -> Callable[[], None]:
    """
    Subscribe ``subscriber.on_notification`` to every event of ``singleton``.

    Returns:
        A zero-argument function that detaches the subscriber again
    """
    unsubscribers = [
        singleton.subscribe(event, subscriber.on_notification) for event in LockEvent
    ]

    def detach() -> None:
        for unsubscribe in unsubscribers:
            unsubscribe()

    return detach


class LoggingSubscriber:
    """Logs every notification: errors at ERROR, conflicts and expiry at WARNING."""

    def __init__(self, log_level: int = logging.INFO):
        self.log_level = log_level

    def on_notification(self, notification: LockNotification) -> None:
        extra = {"lock_name": notification.name}
        if notification.event is LockEvent.ERROR:
            logger.error(
                notification.message,
                exc_info=notification.error,
                extra=extra
            )
        elif notification.event in (LockEvent.CONFLICT, LockEvent.EXPIRED):
            logger.warning(notification.message, extra=extra)
        else:
            logger.log(self.log_level, notification.message, extra=extra)


class MetricsSubscriber:
    """Counts notifications per event, mirrored to OpenTelemetry when enabled."""

    def __init__(self):
        self.event_counts: Dict[str, int] = {event.value: 0 for event in LockEvent}
        self._meter = get_meter()
        self._counter = None
        if self._meter:
            self._counter = self._meter.create_counter(
                "singleton_process.lock.events",
                description="Singleton lock notifications by event"
            )

    def on_notification(self, notification: LockNotification) -> None:
        self.event_counts[notification.event.value] += 1
        if self._counter is not None:
            self._counter.add(1, {"event": notification.event.value, "lock_name": notification.name})

    def get_metrics(self) -> Dict[str, Any]:
        """Get collected metrics."""
        return {
            "event_counts": dict(self.event_counts),
            "acquired": self.event_counts[LockEvent.LOCKED.value],
            "conflicts": self.event_counts[LockEvent.CONFLICT.value],
            "errors": self.event_counts[LockEvent.ERROR.value],
        }


class WebhookSubscriber:
    """
    Posts notifications to an HTTP endpoint.

    Delivery is scheduled on the running loop and never changes the lock
    outcome; failures are logged.
    """

    def __init__(
        self,
        endpoint: str,
        timeout: float = 5.0,
        api_key: Optional[str] = None,
        events: Optional[List[LockEvent]] = None
    ):
        self.endpoint = endpoint
        self.timeout = timeout
        self.events = set(events) if events is not None else set(LockEvent)
        self.headers = {
            "Content-Type": "application/json",
            "User-Agent": f"singleton-process/{__version__}"
        }
        if api_key:
            self.headers["Authorization"] = f"Bearer {api_key}"

    async def _send(self, payload: Dict[str, Any]) -> bool:
        """Send event to webhook. Returns True when the endpoint accepted it."""
        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    self.endpoint,
                    json=payload,
                    headers=self.headers,
                    timeout=self.timeout
                )
                response.raise_for_status()
                return True
        except Exception as e:
            logger.error(f"Webhook error ({payload['event']}): {e}")
            return False

    async def on_notification(self, notification: LockNotification) -> bool:
        if notification.event not in self.events:
            return False
        return await self._send({
            "event": notification.event.value,
            "name": notification.name,
            "message": notification.message,
            "error": str(notification.error) if notification.error is not None else None,
            "error_type": type(notification.error).__name__ if notification.error is not None else None,
        })


__all__ = [
    "attach",
    "LoggingSubscriber",
    "MetricsSubscriber",
    "WebhookSubscriber",
]
