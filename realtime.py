"""
Realtime fan-out.

Events are published to in-process topics (``user:{id}`` for everything a
user sees, ``delivery:{id}:location`` for a single map view) and consumed by
SSE streams. Each subscriber owns a bounded queue; a slow client simply
misses updates. There is no replay: a client that reconnects gets the next
event, and the query API for current state.

Notable status transitions additionally go out as Web Push notifications.
"""

from __future__ import annotations

import asyncio
import json
import os
from typing import Any, Dict, Optional, Set

from pywebpush import WebPushException, webpush

from delivery_models import UnifiedDelivery, isoformat, utcnow
from push_subscriptions import PushSubscriptionStore
from status_normalizer import (
    ARRIVING,
    DELAYED,
    DELIVERED,
    DRIVER_ASSIGNED,
    OUT_FOR_DELIVERY,
    get_status_label,
    is_terminal_status,
)

SUBSCRIBER_QUEUE_SIZE = 10

VAPID_PUBLIC_KEY = os.getenv("VAPID_PUBLIC_KEY", "")
VAPID_PRIVATE_KEY = os.getenv("VAPID_PRIVATE_KEY", "")
VAPID_SUBJECT = os.getenv("VAPID_SUBJECT", "mailto:support@dropdeck.app")

NOTIFY_STATUSES = frozenset({DRIVER_ASSIGNED, OUT_FOR_DELIVERY, ARRIVING, DELIVERED, DELAYED})


def user_topic(user_id: str) -> str:
    return f"user:{user_id}"


def delivery_location_topic(delivery_id: str) -> str:
    return f"delivery:{delivery_id}:location"


# ---------------------------
# Event builders
# ---------------------------

def _event(event_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": event_type, "timestamp": isoformat(utcnow()), "payload": payload}


def delivery_update_event(delivery: UnifiedDelivery, previous_status: Optional[str] = None) -> Dict[str, Any]:
    return _event("delivery_update", {
        "deliveryId": delivery.id,
        "platform": delivery.platform,
        "status": delivery.status,
        "statusLabel": delivery.status_label,
        "eta": delivery.eta.to_dict(),
        "previousStatus": previous_status,
        "isComplete": is_terminal_status(delivery.status),
    })


def location_update_event(delivery: UnifiedDelivery) -> Optional[Dict[str, Any]]:
    location = delivery.driver_location
    if location is None:
        return None
    return _event("location_update", {
        "deliveryId": delivery.id,
        "platform": delivery.platform,
        "location": location.to_dict(),
        "etaMinutes": delivery.eta.minutes_remaining,
    })


def connection_status_event(platform: str, status: str, error: Optional[str] = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"platform": platform, "status": status}
    if error:
        payload["error"] = error
    return _event("connection_status", payload)


def system_status_event(status: str, message: Optional[str] = None) -> Dict[str, Any]:
    return _event("system_status", {"status": status, "message": message})


def notification_event(title: str, body: str, *, delivery_id: Optional[str] = None,
                       url: Optional[str] = None) -> Dict[str, Any]:
    return _event("notification", {"title": title, "body": body, "deliveryId": delivery_id, "url": url})


def sse_encode(event: Dict[str, Any]) -> str:
    return f"data: {json.dumps(event)}\n\n"


# ---------------------------
# Hub
# ---------------------------

class RealtimeHub:
    """Topic -> set of subscriber queues."""

    def __init__(self, queue_size: int = SUBSCRIBER_QUEUE_SIZE) -> None:
        self._queue_size = queue_size
        self._topics: Dict[str, Set[asyncio.Queue]] = {}

    def subscribe(self, topic: str) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._topics.setdefault(topic, set()).add(q)
        return q

    def unsubscribe(self, topic: str, q: asyncio.Queue) -> None:
        subs = self._topics.get(topic)
        if subs is None:
            return
        subs.discard(q)
        if not subs:
            del self._topics[topic]

    def subscriber_count(self, topic: Optional[str] = None) -> int:
        if topic is not None:
            return len(self._topics.get(topic, ()))
        return sum(len(subs) for subs in self._topics.values())

    def publish(self, topic: str, event: Dict[str, Any]) -> int:
        """Queue ``event`` for every subscriber of ``topic``. Returns how many got it."""
        subs = self._topics.get(topic)
        if not subs:
            return 0
        encoded = sse_encode(event)
        delivered = 0
        for q in list(subs):
            try:
                q.put_nowait(encoded)
                delivered += 1
            except asyncio.QueueFull:
                pass  # Drop update for slow clients
        return delivered

    def publish_delivery_update(self, user_id: str, delivery: UnifiedDelivery,
                                previous_status: Optional[str] = None) -> int:
        return self.publish(user_topic(user_id), delivery_update_event(delivery, previous_status))

    def publish_location_update(self, user_id: str, delivery: UnifiedDelivery) -> int:
        event = location_update_event(delivery)
        if event is None:
            return 0
        sent = self.publish(user_topic(user_id), event)
        return sent + self.publish(delivery_location_topic(delivery.id), event)

    def publish_connection_status(self, user_id: str, platform: str, status: str,
                                  error: Optional[str] = None) -> int:
        return self.publish(user_topic(user_id), connection_status_event(platform, status, error))

    async def stream(self, topic: str, initial: Optional[Dict[str, Any]] = None):
        """Async generator of SSE frames for one client."""
        q = self.subscribe(topic)
        try:
            if initial is not None:
                yield sse_encode(initial)
            while True:
                encoded = await q.get()
                yield encoded
        finally:
            self.unsubscribe(topic, q)


# ---------------------------
# Web Push
# ---------------------------

def push_payload_for(delivery: UnifiedDelivery) -> Dict[str, Any]:
    label = get_status_label(delivery.status)
    body = label
    if delivery.status in (OUT_FOR_DELIVERY, ARRIVING) and delivery.eta.minutes_remaining:
        body = f"{label} - about {delivery.eta.minutes_remaining} min away"
    return {
        "title": f"{delivery.platform.title()} order update",
        "body": body[:200],
        "icon": "/icons/icon-192.png",
        "tag": f"delivery-{delivery.id}",
        "url": f"/deliveries/{delivery.id}",
    }


class PushNotifier:
    def __init__(
        self,
        store: PushSubscriptionStore,
        *,
        public_key: Optional[str] = None,
        private_key: Optional[str] = None,
        subject: Optional[str] = None,
    ) -> None:
        self.store = store
        self.public_key = VAPID_PUBLIC_KEY if public_key is None else public_key
        self.private_key = VAPID_PRIVATE_KEY if private_key is None else private_key
        self.subject = subject or VAPID_SUBJECT

    @property
    def configured(self) -> bool:
        return bool(self.public_key and self.private_key)

    def should_notify(self, delivery: UnifiedDelivery, previous_status: Optional[str]) -> bool:
        return delivery.status in NOTIFY_STATUSES and delivery.status != previous_status

    async def notify_transition(self, user_id: str, delivery: UnifiedDelivery,
                                previous_status: Optional[str]) -> int:
        if not self.configured or not self.should_notify(delivery, previous_status):
            return 0
        return await self.send(user_id, push_payload_for(delivery))

    async def send(self, user_id: str, payload: Dict[str, Any]) -> int:
        """Push ``payload`` to every browser of ``user_id``. Never raises."""
        subscriptions = await self.store.get_for_user(user_id)
        sent_count = 0
        for sub in subscriptions:
            try:
                # pywebpush is blocking
                await asyncio.to_thread(
                    webpush,
                    subscription_info=sub.to_subscription_info(),
                    data=json.dumps(payload),
                    vapid_private_key=self.private_key,
                    vapid_claims={"sub": self.subject},
                )
                sent_count += 1
            except WebPushException as e:
                if e.response is not None and e.response.status_code == 410:
                    # Subscription expired
                    print(f"[push] removing expired subscription for user {user_id}")
                    await self.store.remove_subscription(sub.endpoint)
                else:
                    print(f"[push] WebPushException: {e}")
            except Exception as push_err:
                print(f"[push] push error: {push_err}")
        return sent_count


__all__ = [
    "NOTIFY_STATUSES",
    "PushNotifier",
    "RealtimeHub",
    "connection_status_event",
    "delivery_location_topic",
    "delivery_update_event",
    "location_update_event",
    "notification_event",
    "push_payload_for",
    "sse_encode",
    "system_status_event",
    "user_topic",
]
