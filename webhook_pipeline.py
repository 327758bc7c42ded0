"""
Inbound webhook processing.

A request moves through: platform check, rate check, signature check over
the raw body, JSON decode, idempotency check, normalisation, cache update,
fan-out. Each step may end the request early; the outcome is a
``WebhookResult`` that the HTTP layer returns verbatim.

Webhooks only ever update deliveries the cache already knows about. An event
for an order nobody has fetched is acknowledged and dropped, because the
payload alone does not say which user the order belongs to. A delivery that
has reached a terminal status is never changed again.
"""

from __future__ import annotations

import asyncio
import json
import os
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Mapping, Optional

from adapter_registry import AdapterRegistry
from delivery_cache import DeliveryCache, DeliveryHistoryStore
from delivery_models import DeliveryTimestamps, FetchMeta, UnifiedDelivery, utcnow
from eta_engine import calculate_eta
from platform_adapters import WebhookEvent
from platform_adapters.errors import PlatformDataError, SignatureInvalidError
from rate_limiter import SlidingWindowRateLimiter, rate_limit_headers, webhook_rate_limiter
from realtime import PushNotifier, RealtimeHub
from status_normalizer import is_terminal_status

WEBHOOK_DEDUPE_TTL_S = int(os.getenv("WEBHOOK_DEDUPE_TTL_S", str(24 * 60 * 60)))
SIGNATURE_HEADERS = ("x-webhook-signature", "x-signature")


@dataclass
class WebhookResult:
    status_code: int
    body: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)


class IdempotencyStore:
    """(platform, event_id) keys seen within the TTL. Check-and-mark is atomic."""

    def __init__(self, ttl_s: int = WEBHOOK_DEDUPE_TTL_S, clock=time.monotonic) -> None:
        self.ttl_s = ttl_s
        self._clock = clock
        self._seen: Dict[str, float] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def key(platform: str, event_id: str) -> str:
        return f"{platform}:{event_id}"

    async def check_and_mark(self, platform: str, event_id: str) -> bool:
        """True if this is the first sighting; False for a duplicate."""
        async with self._lock:
            now = self._clock()
            self._prune(now)
            key = self.key(platform, event_id)
            if key in self._seen:
                return False
            self._seen[key] = now + self.ttl_s
            return True

    async def release(self, platform: str, event_id: str) -> None:
        async with self._lock:
            self._seen.pop(self.key(platform, event_id), None)

    async def count(self) -> int:
        async with self._lock:
            self._prune(self._clock())
            return len(self._seen)

    def _prune(self, now: float) -> None:
        expired = [key for key, expires in self._seen.items() if expires <= now]
        for key in expired:
            del self._seen[key]


def build_webhook_event(platform: str, body: Any) -> WebhookEvent:
    data = body if isinstance(body, dict) else {}
    event_id = data.get("event_id") or data.get("id") or uuid.uuid4().hex
    event_type = data.get("event_type") or data.get("type") or "update"
    return WebhookEvent(platform=platform, event_id=str(event_id), event_type=str(event_type), data=body)


def merge_deliveries(cached: UnifiedDelivery, incoming: UnifiedDelivery) -> UnifiedDelivery:
    """Overlay a webhook snapshot on the cached one.

    Webhook payloads are partial: anything they leave empty keeps the cached
    value. Status always comes from the webhook.
    """
    driver = incoming.driver or cached.driver
    if incoming.driver is not None and incoming.driver.location is None and cached.driver_location is not None:
        driver = replace(incoming.driver, location=cached.driver_location)

    eta = incoming.eta
    if eta.estimated_arrival is None and not eta.minutes_remaining:
        eta = cached.eta

    timestamps = DeliveryTimestamps(
        ordered=cached.timestamps.ordered,
        **{
            attr: getattr(incoming.timestamps, attr) or getattr(cached.timestamps, attr)
            for attr in ("confirmed", "driver_assigned", "picked_up", "delivered", "cancelled")
        },
    )

    return replace(
        cached,
        status=incoming.status,
        status_label=incoming.status_label,
        status_updated_at=incoming.status_updated_at,
        driver=driver,
        destination=incoming.destination if incoming.destination.address else cached.destination,
        eta=eta,
        order=incoming.order if (incoming.order.item_count or incoming.order.items) else cached.order,
        tracking=incoming.tracking if incoming.tracking.url else cached.tracking,
        timestamps=timestamps,
        meta=FetchMeta(
            adapter_id=incoming.meta.adapter_id,
            fetch_method="webhook",
            last_fetched_at=utcnow(),
            raw_data=incoming.meta.raw_data,
        ),
    )


class WebhookPipeline:
    def __init__(
        self,
        registry: AdapterRegistry,
        cache: DeliveryCache,
        history: DeliveryHistoryStore,
        hub: RealtimeHub,
        *,
        notifier: Optional[PushNotifier] = None,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        dedupe: Optional[IdempotencyStore] = None,
    ) -> None:
        self.registry = registry
        self.cache = cache
        self.history = history
        self.hub = hub
        self.notifier = notifier
        self.rate_limiter = rate_limiter or webhook_rate_limiter()
        self.dedupe = dedupe or IdempotencyStore()

    async def handle(
        self,
        platform: str,
        body: Any,
        headers: Mapping[str, str],
        raw_body: Optional[bytes] = None,
    ) -> WebhookResult:
        tag = f"[webhook:{platform}]"
        if not self.registry.has(platform):
            print(f"{tag} unknown platform")
            return WebhookResult(400, {"error": "Unknown platform"})

        limit = await self.rate_limiter.check(platform)
        limit_headers = rate_limit_headers(limit)
        if not limit.success:
            print(f"{tag} rate limited")
            return WebhookResult(429, {"error": "Too many requests"}, limit_headers)

        event: Optional[WebhookEvent] = None
        try:
            adapter = self.registry.get(platform)
            if not adapter.supports_webhooks():
                return WebhookResult(400, {"error": f"{platform} does not support webhooks"}, limit_headers)

            lowered = {key.lower(): value for key, value in headers.items()}
            signature = next((lowered[name] for name in SIGNATURE_HEADERS if lowered.get(name)), None)
            if not signature:
                raise SignatureInvalidError(platform, "Missing signature")
            if not adapter.verify_webhook(body, signature, raw_body=raw_body):
                raise SignatureInvalidError(platform)

            if body is None and raw_body is not None:
                try:
                    body = json.loads(raw_body)
                except ValueError:
                    return WebhookResult(400, {"error": "Invalid payload"}, limit_headers)

            candidate = build_webhook_event(platform, body)
            if not await self.dedupe.check_and_mark(platform, candidate.event_id):
                print(f"{tag} duplicate event {candidate.event_id}")
                return WebhookResult(200, {"received": True, "duplicate": True}, limit_headers)
            event = candidate

            incoming = adapter.normalize_webhook_payload(event)
            if incoming is None:
                return WebhookResult(200, {"received": True, "processed": False}, limit_headers)

            processed = await self._apply(incoming, tag)
            return WebhookResult(200, {"received": True, "processed": processed}, limit_headers)
        except SignatureInvalidError as exc:
            print(f"{tag} rejected: {exc.message}")
            return WebhookResult(401, {"error": exc.message}, limit_headers)
        except PlatformDataError as exc:
            print(f"{tag} invalid payload: {exc.message}")
            await self._release(event)
            return WebhookResult(400, {"error": "Invalid payload"}, limit_headers)
        except Exception as exc:
            print(f"{tag} error: {exc!r}")
            await self._release(event)
            return WebhookResult(500, {"error": "Internal server error"}, limit_headers)

    async def _release(self, event: Optional[WebhookEvent]) -> None:
        # let a corrected redelivery through
        if event is not None:
            await self.dedupe.release(event.platform, event.event_id)

    async def _apply(self, incoming: UnifiedDelivery, tag: str) -> bool:
        entry = await self.cache.find_by_external_id(incoming.platform, incoming.external_order_id)
        if entry is None:
            print(f"{tag} no cached delivery for {incoming.external_order_id}; ignoring")
            return False

        cached = entry.to_delivery()
        if is_terminal_status(cached.status):
            print(f"{tag} {cached.id} already {cached.status}; ignoring late update")
            return False

        merged = merge_deliveries(cached, incoming)
        merged.eta_estimate = calculate_eta(merged).to_dict()
        user_id = entry.user_id
        previous_status = cached.status

        await self.cache.upsert(user_id, merged)
        self.hub.publish_delivery_update(user_id, merged, previous_status)
        if merged.driver_location is not None:
            self.hub.publish_location_update(user_id, merged)

        if is_terminal_status(merged.status):
            await self.history.archive(user_id, merged)
        else:
            await self.history.record_transition(user_id, merged)

        if self.notifier is not None:
            await self.notifier.notify_transition(user_id, merged, previous_status)
        print(f"{tag} {merged.id}: {previous_status} -> {merged.status}")
        return True


__all__ = [
    "IdempotencyStore",
    "SIGNATURE_HEADERS",
    "WEBHOOK_DEDUPE_TTL_S",
    "WebhookPipeline",
    "WebhookResult",
    "build_webhook_event",
    "merge_deliveries",
]
