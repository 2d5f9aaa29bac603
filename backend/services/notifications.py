"""
Domain Notification Service

Emits domain notification events (e.g. reconciliation net differences)
to the platform's notification hub.

Features:
- One delivery per dedupe key
- HMAC-SHA256 signature for payload authentication (webhook emitter)
- In-memory emitter for development and tests

Event Types:
- finance.reconciliation_net_difference
"""

import hashlib
import hmac
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from enum import Enum
from functools import lru_cache
from typing import Optional, Dict, Any, List, Set

import httpx

from config import get_settings

logger = logging.getLogger(__name__)


# ==================== CONSTANTS ====================

class NotificationEventType(str, Enum):
    """Supported notification event types."""
    RECONCILIATION_NET_DIFFERENCE = "finance.reconciliation_net_difference"


class NotificationPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# ==================== DATA CLASSES ====================

@dataclass
class NotificationEvent:
    """Notification event payload."""
    event_type: str
    module: str
    priority: str
    dedupe_key: str
    entity_id: str
    entity_type: str
    title: str
    body: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    client_id: Optional[str] = None
    condominium_id: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DeliveryResult:
    """Result of a notification delivery attempt."""
    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
    duration_ms: Optional[int] = None
    deduplicated: bool = False


# ==================== EMITTERS ====================

class NotificationEmitter(ABC):
    """
    Base emitter. Delivers each dedupe key at most once per process;
    failed deliveries do not consume the key.
    """

    def __init__(self):
        self._delivered_keys: Set[str] = set()

    async def emit(self, event: NotificationEvent) -> DeliveryResult:
        if event.dedupe_key in self._delivered_keys:
            logger.info(
                f"Notification {event.event_type} skipped (duplicate)",
                extra={"dedupe_key": event.dedupe_key},
            )
            return DeliveryResult(success=True, deduplicated=True)

        result = await self._deliver(event)
        if result.success:
            self._delivered_keys.add(event.dedupe_key)
            logger.info(
                f"Notification {event.event_type} delivered",
                extra={"dedupe_key": event.dedupe_key, "priority": event.priority},
            )
        else:
            logger.warning(
                f"Notification {event.event_type} failed: {result.error}",
                extra={"dedupe_key": event.dedupe_key},
            )
        return result

    @abstractmethod
    async def _deliver(self, event: NotificationEvent) -> DeliveryResult:
        ...


class InMemoryNotificationEmitter(NotificationEmitter):
    """Keeps delivered events in a list."""

    def __init__(self):
        super().__init__()
        self.events: List[NotificationEvent] = []

    async def _deliver(self, event: NotificationEvent) -> DeliveryResult:
        self.events.append(event)
        return DeliveryResult(success=True, duration_ms=0)


class WebhookNotificationEmitter(NotificationEmitter):
    """
    Posts events to the notification hub webhook.

    Includes HMAC-SHA256 signature in headers.
    """

    def __init__(self, url: str, secret_key: str, timeout: float = 10.0):
        super().__init__()
        self.url = url
        self.secret_key = secret_key
        self.timeout = timeout

    def sign(self, payload_bytes: bytes) -> str:
        return hmac.new(
            self.secret_key.encode('utf-8'),
            payload_bytes,
            hashlib.sha256
        ).hexdigest()

    async def _deliver(self, event: NotificationEvent) -> DeliveryResult:
        start_time = datetime.now(timezone.utc)
        payload = event.to_dict()

        try:
            payload_bytes = json.dumps(payload, sort_keys=True, default=str).encode('utf-8')
            headers = {
                'Content-Type': 'application/json',
                'X-Webhook-Signature': f'sha256={self.sign(payload_bytes)}',
                'X-Webhook-Event': event.event_type,
                'X-Webhook-Timestamp': event.timestamp,
            }

            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url, content=payload_bytes, headers=headers)

            duration = int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)

            if 200 <= response.status_code < 300:
                return DeliveryResult(
                    success=True,
                    status_code=response.status_code,
                    duration_ms=duration
                )
            return DeliveryResult(
                success=False,
                status_code=response.status_code,
                error=f"HTTP {response.status_code}: {response.text[:200]}",
                duration_ms=duration
            )

        except httpx.TimeoutException:
            return DeliveryResult(success=False, error="Connection timeout")
        except httpx.ConnectError as e:
            return DeliveryResult(success=False, error=f"Connection failed: {str(e)[:100]}")
        except httpx.HTTPError as e:
            return DeliveryResult(success=False, error=f"Delivery error: {str(e)[:100]}")


@lru_cache()
def get_notification_emitter() -> NotificationEmitter:
    """Webhook emitter when NOTIFICATION_WEBHOOK_URL is set, else in-memory."""
    settings = get_settings()
    if settings.NOTIFICATION_WEBHOOK_URL:
        return WebhookNotificationEmitter(
            settings.NOTIFICATION_WEBHOOK_URL,
            settings.NOTIFICATION_WEBHOOK_SECRET,
            timeout=settings.NOTIFICATION_TIMEOUT_SECONDS,
        )
    return InMemoryNotificationEmitter()
