from __future__ import annotations

import logging
from dataclasses import dataclass, field

from fastapi import WebSocket

from ..errors import InvalidRequest
from .timeframes import utc_now
from .webhook_payloads import Notification
from .webhook_service import WebhookFilters

logger = logging.getLogger(__name__)

FILTER_FIELDS = ("risk_levels", "priorities", "satellite_ids", "event_types")


@dataclass
class Subscriber:
    websocket: WebSocket
    filters: WebhookFilters = field(default_factory=WebhookFilters)


def frame(frame_type: str, payload: dict) -> dict:
    return {"type": frame_type, "payload": payload, "timestamp": utc_now().isoformat()}


def notification_frame(notification: Notification) -> dict:
    return {
        "type": notification.event,
        "payload": {"sequence": notification.sequence, "kind": notification.kind, "alert": notification.alert},
        "timestamp": notification.at.isoformat(),
    }


class AlertStreamHub:
    """Tracks alert-stream WebSocket connections and their subscription filters."""

    def __init__(self):
        self._subscribers: dict[int, Subscriber] = {}

    @property
    def connection_count(self) -> int:
        return len(self._subscribers)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self._subscribers[id(websocket)] = Subscriber(websocket)
        await websocket.send_json(frame("connected", {"connections": len(self._subscribers)}))

    def disconnect(self, websocket: WebSocket) -> None:
        self._subscribers.pop(id(websocket), None)

    def subscribe(self, websocket: WebSocket, payload: dict | None) -> WebhookFilters:
        """Replace the connection's filter; an empty payload or null filter subscribes to everything.

        Raises InvalidRequest for a filter that is not an object or holds non-list fields.
        """
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise InvalidRequest("Subscribe payload must be an object")
        requested = payload.get("filter", payload)
        if requested is None:
            requested = {}
        if not isinstance(requested, dict):
            raise InvalidRequest("Subscription filter must be an object")
        fields = {}
        for name in FILTER_FIELDS:
            value = requested.get(name)
            if value is not None and not isinstance(value, list):
                raise InvalidRequest(f"Filter field '{name}' must be a list")
            fields[name] = value
        try:
            filters = WebhookFilters.from_dict(fields)
        except (TypeError, ValueError) as exc:
            raise InvalidRequest(f"Invalid subscription filter: {exc}") from exc
        subscriber = self._subscribers.get(id(websocket))
        if subscriber is not None:
            subscriber.filters = filters
        return filters

    async def broadcast(self, notification: Notification) -> int:
        message = notification_frame(notification)
        delivered = 0
        for key, subscriber in list(self._subscribers.items()):
            if not subscriber.filters.matches(notification):
                continue
            try:
                await subscriber.websocket.send_json(message)
                delivered += 1
            except Exception as exc:
                logger.warning("Alert stream subscriber dropped: %s", exc)
                self._subscribers.pop(key, None)
        return delivered
