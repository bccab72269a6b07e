"""Webhook endpoint registry and notification fan-out.

Each endpoint gets its own ``asyncio.Queue`` and worker task, so deliveries
to one endpoint complete in the order they were enqueued while a slow or
failing endpoint never holds up the others.  Attempts go through the
endpoint's circuit breaker and are retried with exponential backoff.
"""
from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable

import httpx

from ..errors import InvalidRequest, UnknownEndpoint
from .alert_service import DispatchRecord
from .circuit_breaker import CircuitBreaker, RetryPolicy
from .timeframes import ensure_utc, utc_now
from .webhook_payloads import Notification, email_payload, generic_payload, pagerduty_payload, slack_payload

logger = logging.getLogger(__name__)

ENDPOINT_TYPES = ("slack", "pagerduty", "email", "generic")
AUTH_TYPES = ("none", "basic", "bearer", "api-key", "hmac")
SIGNATURE_HEADER = "X-OrbitWatch-Signature"
TIMESTAMP_HEADER = "X-OrbitWatch-Timestamp"
RETRYABLE_STATUSES = {408, 429}
# Closing an alert is only streamed, never sent to endpoints
WEBHOOK_EVENTS = frozenset(
    {
        "alert_created",
        "alert_escalated",
        "alert_acknowledged",
        "alert_resolved",
        "reentry_created",
        "reentry_escalated",
        "reentry_resolved",
    }
)


@dataclass(frozen=True)
class WebhookAuth:
    type: str = "none"
    username: str | None = None
    password: str | None = None
    token: str | None = None
    api_key: str | None = None
    header_name: str = "X-API-Key"
    secret: str | None = None

    def headers(self, body: bytes, timestamp: str) -> dict[str, str]:
        if self.type == "basic":
            raw = f"{self.username or ''}:{self.password or ''}".encode()
            return {"Authorization": f"Basic {base64.b64encode(raw).decode()}"}
        if self.type == "bearer":
            return {"Authorization": f"Bearer {self.token or ''}"}
        if self.type == "api-key":
            return {self.header_name: self.api_key or ""}
        if self.type == "hmac":
            digest = hmac.new((self.secret or "").encode(), body, hashlib.sha256).hexdigest()
            return {SIGNATURE_HEADER: f"sha256={digest}", TIMESTAMP_HEADER: timestamp}
        return {}

    def to_dict(self, redact: bool = True) -> dict:
        hidden = "***"
        return {
            "type": self.type,
            "username": self.username,
            "password": hidden if redact and self.password else self.password,
            "token": hidden if redact and self.token else self.token,
            "api_key": hidden if redact and self.api_key else self.api_key,
            "header_name": self.header_name,
            "secret": hidden if redact and self.secret else self.secret,
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> "WebhookAuth":
        data = data or {}
        auth_type = data.get("type", "none")
        if auth_type not in AUTH_TYPES:
            raise InvalidRequest(f"Unknown auth type '{auth_type}'")
        return cls(
            type=auth_type,
            username=data.get("username"),
            password=data.get("password"),
            token=data.get("token"),
            api_key=data.get("api_key"),
            header_name=data.get("header_name") or "X-API-Key",
            secret=data.get("secret"),
        )


@dataclass(frozen=True)
class WebhookFilters:
    """Empty filters match everything; each non-empty filter must match.

    ``min_distance_km`` keeps only conjunctions whose miss distance is at or
    below the bound, so re-entry notifications never pass it.
    """

    risk_levels: tuple[str, ...] = ()
    priorities: tuple[str, ...] = ()
    satellite_ids: tuple[int, ...] = ()
    min_distance_km: float | None = None
    event_types: tuple[str, ...] = ()

    def matches(self, notification: Notification) -> bool:
        if self.event_types and notification.event not in self.event_types:
            return False
        if self.risk_levels and notification.risk_level not in self.risk_levels:
            return False
        if self.priorities and notification.priority not in self.priorities:
            return False
        if self.satellite_ids and not set(self.satellite_ids) & set(notification.satellite_ids):
            return False
        if self.min_distance_km is not None:
            miss = notification.miss_distance_km
            if miss is None or miss > self.min_distance_km:
                return False
        return True

    def to_dict(self) -> dict:
        return {
            "risk_levels": list(self.risk_levels),
            "priorities": list(self.priorities),
            "satellite_ids": list(self.satellite_ids),
            "min_distance_km": self.min_distance_km,
            "event_types": list(self.event_types),
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> "WebhookFilters":
        data = data or {}
        min_distance = data.get("min_distance_km")
        return cls(
            risk_levels=tuple(data.get("risk_levels") or ()),
            priorities=tuple(data.get("priorities") or ()),
            satellite_ids=tuple(int(x) for x in data.get("satellite_ids") or ()),
            min_distance_km=float(min_distance) if min_distance is not None else None,
            event_types=tuple(data.get("event_types") or ()),
        )


@dataclass
class EndpointStats:
    sent: int = 0
    succeeded: int = 0
    failed: int = 0
    short_circuited: int = 0
    attempts: int = 0
    last_error: str | None = None
    last_status_code: int | None = None
    last_sent_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "sent": self.sent,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "short_circuited": self.short_circuited,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "last_status_code": self.last_status_code,
            "last_sent_at": self.last_sent_at.isoformat() if self.last_sent_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> "EndpointStats":
        data = data or {}
        last = data.get("last_sent_at")
        return cls(
            sent=int(data.get("sent", 0)),
            succeeded=int(data.get("succeeded", 0)),
            failed=int(data.get("failed", 0)),
            short_circuited=int(data.get("short_circuited", 0)),
            attempts=int(data.get("attempts", 0)),
            last_error=data.get("last_error"),
            last_status_code=data.get("last_status_code"),
            last_sent_at=ensure_utc(datetime.fromisoformat(last)) if last else None,
        )


@dataclass
class WebhookEndpoint:
    id: str
    name: str
    type: str
    url: str
    auth: WebhookAuth = field(default_factory=WebhookAuth)
    filters: WebhookFilters = field(default_factory=WebhookFilters)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    enabled: bool = True
    config: dict = field(default_factory=dict)
    stats: EndpointStats = field(default_factory=EndpointStats)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self, redact: bool = True) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "url": self.url,
            "auth": self.auth.to_dict(redact=redact),
            "filters": self.filters.to_dict(),
            "retry": self.retry.to_dict(),
            "enabled": self.enabled,
            "config": dict(self.config),
            "stats": self.stats.to_dict(),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "WebhookEndpoint":
        endpoint_type = data.get("type")
        if endpoint_type not in ENDPOINT_TYPES:
            raise InvalidRequest(f"Unknown endpoint type '{endpoint_type}'")
        url = data.get("url") or ""
        if not url.startswith(("http://", "https://")):
            raise InvalidRequest("Endpoint URL must be http(s)")
        now = utc_now()
        created = data.get("created_at")
        updated = data.get("updated_at")
        return cls(
            id=data.get("id") or f"WH-{secrets.token_hex(4).upper()}",
            name=data.get("name") or endpoint_type,
            type=endpoint_type,
            url=url,
            auth=WebhookAuth.from_dict(data.get("auth")),
            filters=WebhookFilters.from_dict(data.get("filters")),
            retry=RetryPolicy.from_dict(data.get("retry")),
            enabled=bool(data.get("enabled", True)),
            config=dict(data.get("config") or {}),
            stats=EndpointStats.from_dict(data.get("stats")),
            created_at=ensure_utc(datetime.fromisoformat(created)) if created else now,
            updated_at=ensure_utc(datetime.fromisoformat(updated)) if updated else now,
        )


class EndpointRegistry:
    def __init__(self, default_retry: RetryPolicy | None = None) -> None:
        self.default_retry = default_retry or RetryPolicy()
        self._lock = threading.Lock()
        self._endpoints: dict[str, WebhookEndpoint] = {}

    def create(self, data: dict) -> WebhookEndpoint:
        retry = {**self.default_retry.to_dict(), **(data.get("retry") or {})}
        endpoint = WebhookEndpoint.from_dict({**data, "id": None, "stats": None, "retry": retry})
        with self._lock:
            self._endpoints[endpoint.id] = endpoint
        logger.info("Webhook endpoint created: id=%s type=%s", endpoint.id, endpoint.type)
        return endpoint

    def restore(self, endpoints: list[WebhookEndpoint]) -> None:
        with self._lock:
            self._endpoints = {endpoint.id: endpoint for endpoint in endpoints}

    def update(self, endpoint_id: str, changes: dict) -> WebhookEndpoint:
        with self._lock:
            current = self._endpoints.get(endpoint_id)
            if current is None:
                raise UnknownEndpoint(endpoint_id)
            merged = current.to_dict(redact=False)
            for key, value in changes.items():
                if value is None:
                    continue
                if key in ("auth", "filters", "retry", "config") and isinstance(value, dict):
                    merged[key] = {**merged[key], **value}
                else:
                    merged[key] = value
            merged["id"] = endpoint_id
            merged["updated_at"] = utc_now().isoformat()
            updated = WebhookEndpoint.from_dict(merged)
            updated.stats = current.stats
            self._endpoints[endpoint_id] = updated
        logger.info("Webhook endpoint updated: id=%s", endpoint_id)
        return updated

    def delete(self, endpoint_id: str) -> None:
        with self._lock:
            if self._endpoints.pop(endpoint_id, None) is None:
                raise UnknownEndpoint(endpoint_id)
        logger.info("Webhook endpoint deleted: id=%s", endpoint_id)

    def get(self, endpoint_id: str) -> WebhookEndpoint:
        endpoint = self._endpoints.get(endpoint_id)
        if endpoint is None:
            raise UnknownEndpoint(endpoint_id)
        return endpoint

    def list(self) -> list[WebhookEndpoint]:
        return sorted(self._endpoints.values(), key=lambda e: (e.created_at, e.id))

    def matching(self, notification: Notification) -> list[WebhookEndpoint]:
        return [e for e in self.list() if e.enabled and e.filters.matches(notification)]


DispatchListener = Callable[[str, DispatchRecord], None]


class WebhookDispatcher:
    """Delivers notifications to every matching endpoint.

    Parameters:
        registry: Endpoint configurations.
        client: Shared ``httpx.AsyncClient``; one is created on ``start`` if omitted.
        timeout_seconds: Per-attempt HTTP timeout.
        sleep: Awaitable used for backoff delays (injectable for tests).
        clock: Monotonic clock shared by the circuit breakers.
        on_dispatch: Called with (alert id, record) after every delivery.
    """

    def __init__(
        self,
        registry: EndpointRegistry,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 10.0,
        breaker_failure_threshold: int = 5,
        breaker_open_seconds: float = 60.0,
        breaker_max_open_seconds: float = 600.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        on_dispatch: DispatchListener | None = None,
        dashboard_url: str | None = None,
        pagerduty_routing_key: str | None = None,
    ):
        self.registry = registry
        self._client = client
        self._owns_client = client is None
        self.timeout_seconds = timeout_seconds
        self.breaker_failure_threshold = breaker_failure_threshold
        self.breaker_open_seconds = breaker_open_seconds
        self.breaker_max_open_seconds = breaker_max_open_seconds
        self._sleep = sleep
        self._clock = clock
        self.on_dispatch = on_dispatch
        self.dashboard_url = dashboard_url
        self.pagerduty_routing_key = pagerduty_routing_key
        self._breakers: dict[str, CircuitBreaker] = {}
        self._queues: dict[str, asyncio.Queue] = {}
        self._workers: dict[str, asyncio.Task] = {}

    @classmethod
    def from_settings(cls, registry: EndpointRegistry, settings, **kwargs) -> "WebhookDispatcher":
        return cls(
            registry,
            timeout_seconds=settings.webhook_timeout_seconds,
            breaker_failure_threshold=settings.breaker_failure_threshold,
            breaker_open_seconds=settings.breaker_open_seconds,
            breaker_max_open_seconds=settings.breaker_max_open_seconds,
            dashboard_url=settings.dashboard_url,
            pagerduty_routing_key=settings.pagerduty_routing_key,
            **kwargs,
        )

    def breaker(self, endpoint_id: str) -> CircuitBreaker:
        breaker = self._breakers.get(endpoint_id)
        if breaker is None:
            breaker = CircuitBreaker(
                endpoint_id,
                failure_threshold=self.breaker_failure_threshold,
                open_seconds=self.breaker_open_seconds,
                max_open_seconds=self.breaker_max_open_seconds,
                clock=self._clock,
            )
            self._breakers[endpoint_id] = breaker
        return breaker

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._client

    # --- queueing ---

    def enqueue(self, notification: Notification) -> int:
        """Queue ``notification`` for every enabled endpoint whose filters match.

        Must be called from the event loop thread. Returns the number of endpoints;
        events outside WEBHOOK_EVENTS reach none.
        """
        if notification.event not in WEBHOOK_EVENTS:
            return 0
        endpoints = self.registry.matching(notification)
        for endpoint in endpoints:
            queue = self._queues.get(endpoint.id)
            if queue is None:
                queue = asyncio.Queue()
                self._queues[endpoint.id] = queue
                self._workers[endpoint.id] = asyncio.create_task(
                    self._worker(endpoint.id, queue), name=f"webhook-{endpoint.id}"
                )
            queue.put_nowait(notification)
        return len(endpoints)

    async def _worker(self, endpoint_id: str, queue: asyncio.Queue) -> None:
        while True:
            notification = await queue.get()
            try:
                if notification is None:
                    return
                try:
                    endpoint = self.registry.get(endpoint_id)
                except UnknownEndpoint:
                    continue
                await self.deliver(endpoint, notification)
            except Exception:
                logger.exception("Webhook worker failed: endpoint=%s", endpoint_id)
            finally:
                queue.task_done()

    async def drain(self) -> None:
        """Wait until every queued notification has been delivered or recorded as failed."""
        for queue in list(self._queues.values()):
            await queue.join()

    async def stop(self) -> None:
        for queue in self._queues.values():
            queue.put_nowait(None)
        if self._workers:
            await asyncio.gather(*self._workers.values(), return_exceptions=True)
        self._queues.clear()
        self._workers.clear()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    # --- delivery ---

    def build_payload(self, endpoint: WebhookEndpoint, notification: Notification) -> dict:
        if endpoint.type == "slack":
            return slack_payload(notification, self.dashboard_url, endpoint.config.get("channel"))
        if endpoint.type == "pagerduty":
            routing_key = endpoint.config.get("routing_key") or self.pagerduty_routing_key
            return pagerduty_payload(notification, routing_key, self.dashboard_url)
        if endpoint.type == "email":
            return email_payload(notification, endpoint.config.get("recipients", []), endpoint.config.get("from"))
        return generic_payload(notification)

    def _headers(self, endpoint: WebhookEndpoint, notification: Notification, body: bytes) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": "OrbitWatch-Webhook/1.0",
            "X-OrbitWatch-Event": notification.event,
            "X-OrbitWatch-Delivery": f"{notification.alert_id}:{notification.sequence}",
        }
        headers.update(endpoint.config.get("headers") or {})
        headers.update(endpoint.auth.headers(body, str(int(time.time()))))
        return headers

    async def deliver(self, endpoint: WebhookEndpoint, notification: Notification) -> DispatchRecord:
        """Deliver one notification to one endpoint, honouring breaker and retry policy."""
        body = json.dumps(self.build_payload(endpoint, notification), default=str).encode()
        headers = self._headers(endpoint, notification, body)
        breaker = self.breaker(endpoint.id)
        policy = endpoint.retry

        attempts = 0
        status_code: int | None = None
        error: str | None = None
        status = "failed"
        for attempt in range(1, policy.max_attempts + 1):
            if not breaker.allow_request():
                if attempts == 0:
                    status = "short_circuited"
                    error = "circuit breaker open"
                logger.warning(
                    "Webhook short-circuited: endpoint=%s alert=%s event=%s",
                    endpoint.id, notification.alert_id, notification.event,
                )
                break
            attempts += 1
            retryable = True
            try:
                response = await self._http().post(
                    endpoint.url, content=body, headers=headers, timeout=self.timeout_seconds
                )
            except httpx.HTTPError as exc:
                status_code = None
                error = f"{type(exc).__name__}: {exc}"
            else:
                status_code = response.status_code
                if 200 <= status_code < 300:
                    breaker.record_success()
                    status = "sent"
                    error = None
                    break
                error = f"HTTP {status_code}"
                retryable = status_code >= 500 or status_code in RETRYABLE_STATUSES
            breaker.record_failure()
            logger.warning(
                "Webhook attempt failed: endpoint=%s attempt=%d/%d error=%s",
                endpoint.id, attempt, policy.max_attempts, error,
            )
            if not retryable or attempt == policy.max_attempts:
                break
            await self._sleep(policy.backoff(attempt))

        record = DispatchRecord(
            endpoint_id=endpoint.id,
            event=notification.event,
            sequence=notification.sequence,
            status=status,
            attempts=attempts,
            status_code=status_code,
            error=error,
            at=utc_now(),
        )
        self._record_stats(endpoint, record)
        if self.on_dispatch is not None:
            self.on_dispatch(notification.alert_id, record)
        return record

    @staticmethod
    def _record_stats(endpoint: WebhookEndpoint, record: DispatchRecord) -> None:
        stats = endpoint.stats
        stats.sent += 1
        stats.attempts += record.attempts
        stats.last_sent_at = record.at
        if record.status == "sent":
            stats.succeeded += 1
            stats.last_status_code = record.status_code
            return
        stats.failed += 1
        if record.status == "short_circuited":
            stats.short_circuited += 1
        stats.last_error = record.error
        stats.last_status_code = record.status_code

    async def send_test(self, endpoint_id: str) -> DispatchRecord:
        endpoint = self.registry.get(endpoint_id)
        now = utc_now()
        sample = {
            "id": "ALT-TEST",
            "status": "new",
            "priority": "low",
            "risk_level": "low",
            "escalation_level": 0,
            "acknowledgment": None,
            "satellites": [{"norad_id": 0, "name": "TEST OBJECT A"}, {"norad_id": 1, "name": "TEST OBJECT B"}],
            "conjunction": {
                "tca": now.isoformat(),
                "miss_distance_km": 9.99,
                "relative_velocity_kms": 0.0,
                "probability_of_collision": 0.0,
            },
            "created_at": now.isoformat(),
        }
        return await self.deliver(endpoint, Notification(event="test", sequence=0, at=now, alert=sample))

    def breaker_states(self) -> dict[str, dict]:
        return {endpoint_id: breaker.to_dict() for endpoint_id, breaker in self._breakers.items()}
