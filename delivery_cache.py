"""
Delivery snapshot cache and completed-delivery history.

``DeliveryCache`` is a read-through cache keyed by (user, platform,
external order id). Entries carry an expiry; expired entries are never
served to readers, but they still identify which user owns an order so a
late webhook can be routed. ``purge_expired`` drops them once they are past
the retention window.

``DeliveryHistoryStore`` keeps the status timeline of every delivery seen
and freezes it when the delivery reaches a terminal status.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from delivery_models import UnifiedDelivery, isoformat, parse_timestamp, utcnow
from json_store import JsonFileStore
from status_normalizer import is_terminal_status

DELIVERY_CACHE_TTL_S = int(os.getenv("DELIVERY_CACHE_TTL_S", "30"))


@dataclass
class CacheEntry:
    user_id: str
    platform: str
    external_order_id: str
    delivery: Dict[str, Any]
    status: str
    last_updated: datetime
    expires_at: datetime
    eta_minutes: Optional[int] = None
    driver_location: Optional[Dict[str, Any]] = None

    @property
    def key(self) -> str:
        return _key(self.user_id, self.platform, self.external_order_id)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def to_delivery(self) -> UnifiedDelivery:
        return UnifiedDelivery.from_dict(self.delivery)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "platform": self.platform,
            "external_order_id": self.external_order_id,
            "delivery": self.delivery,
            "status": self.status,
            "eta_minutes": self.eta_minutes,
            "driver_location": self.driver_location,
            "last_updated": isoformat(self.last_updated),
            "expires_at": isoformat(self.expires_at),
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "CacheEntry":
        return cls(
            user_id=str(raw["user_id"]),
            platform=str(raw["platform"]),
            external_order_id=str(raw["external_order_id"]),
            delivery=dict(raw["delivery"]),
            status=str(raw.get("status") or raw["delivery"].get("status")),
            eta_minutes=raw.get("eta_minutes"),
            driver_location=raw.get("driver_location"),
            last_updated=parse_timestamp(raw.get("last_updated")) or utcnow(),
            expires_at=parse_timestamp(raw.get("expires_at")) or utcnow(),
        )


def _key(user_id: str, platform: str, external_order_id: str) -> str:
    return f"{user_id}:{platform}:{external_order_id}"


class DeliveryCache(JsonFileStore):
    def __init__(self, path: Path, ttl_s: int = DELIVERY_CACHE_TTL_S):
        self._entries: Dict[str, CacheEntry] = {}
        self.ttl_s = ttl_s
        super().__init__(path)

    def _load_state(self, raw: Dict[str, Any]) -> None:
        self._entries.clear()
        for item in raw.get("entries", []):
            if not isinstance(item, dict):
                continue
            try:
                entry = CacheEntry.from_dict(item)
            except (KeyError, TypeError, AttributeError):
                continue
            self._entries[entry.key] = entry

    def _dump_state(self) -> Dict[str, Any]:
        return {"entries": [entry.to_dict() for entry in self._entries.values()]}

    async def get(self, user_id: str, platform: str, external_order_id: str) -> Optional[UnifiedDelivery]:
        async with self._lock:
            entry = self._entries.get(_key(user_id, platform, external_order_id))
            if entry is None or entry.is_expired():
                return None
            return entry.to_delivery()

    async def get_by_delivery_id(self, user_id: str, delivery_id: str) -> Optional[UnifiedDelivery]:
        now = utcnow()
        async with self._lock:
            for entry in self._entries.values():
                if entry.user_id == user_id and entry.delivery.get("id") == delivery_id and not entry.is_expired(now):
                    return entry.to_delivery()
        return None

    async def find_by_external_id(self, platform: str, external_order_id: str) -> Optional[CacheEntry]:
        """Owner lookup for inbound webhooks; includes expired entries."""
        async with self._lock:
            matches = [
                entry
                for entry in self._entries.values()
                if entry.platform == platform and entry.external_order_id == external_order_id
            ]
        if not matches:
            return None
        return max(matches, key=lambda entry: entry.last_updated)

    def _make_entry(self, user_id: str, delivery: UnifiedDelivery, ttl_s: Optional[int], now: datetime) -> CacheEntry:
        location = delivery.driver_location
        return CacheEntry(
            user_id=user_id,
            platform=delivery.platform,
            external_order_id=delivery.external_order_id,
            delivery=delivery.to_dict(include_raw=True),
            status=delivery.status,
            eta_minutes=delivery.eta.minutes_remaining,
            driver_location=location.to_dict() if location else None,
            last_updated=now,
            expires_at=now + timedelta(seconds=self.ttl_s if ttl_s is None else ttl_s),
        )

    async def upsert(self, user_id: str, delivery: UnifiedDelivery, ttl_s: Optional[int] = None) -> CacheEntry:
        entry = self._make_entry(user_id, delivery, ttl_s, utcnow())
        async with self._lock:
            self._entries[entry.key] = entry
            await self._persist()
        return entry

    async def upsert_many(self, user_id: str, deliveries: List[UnifiedDelivery], ttl_s: Optional[int] = None) -> None:
        if not deliveries:
            return
        now = utcnow()
        async with self._lock:
            for delivery in deliveries:
                entry = self._make_entry(user_id, delivery, ttl_s, now)
                self._entries[entry.key] = entry
            await self._persist()

    async def list_for_user(self, user_id: str, platform: Optional[str] = None) -> List[UnifiedDelivery]:
        now = utcnow()
        async with self._lock:
            entries = [
                entry
                for entry in self._entries.values()
                if entry.user_id == user_id
                and (platform is None or entry.platform == platform)
                and not entry.is_expired(now)
            ]
        return [entry.to_delivery() for entry in entries]

    async def delete_for_user_platform(self, user_id: str, platform: str) -> int:
        async with self._lock:
            doomed = [k for k, e in self._entries.items() if e.user_id == user_id and e.platform == platform]
            for key in doomed:
                del self._entries[key]
            if doomed:
                await self._persist()
            return len(doomed)

    async def purge_expired(self, retention_s: int = 0) -> int:
        """Drop entries expired for longer than ``retention_s``."""
        cutoff = utcnow() - timedelta(seconds=retention_s)
        async with self._lock:
            doomed = [k for k, e in self._entries.items() if e.expires_at <= cutoff]
            for key in doomed:
                del self._entries[key]
            if doomed:
                await self._persist()
            return len(doomed)

    async def count(self) -> int:
        async with self._lock:
            return len(self._entries)


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


@dataclass
class HistoryEntry:
    user_id: str
    delivery_id: str
    platform: str
    external_order_id: str
    timeline: List[Dict[str, Any]] = field(default_factory=list)
    final_status: Optional[str] = None
    completed_at: Optional[datetime] = None
    delivery: Optional[Dict[str, Any]] = None

    @property
    def archived(self) -> bool:
        return self.final_status is not None

    @property
    def last_status(self) -> Optional[str]:
        return self.timeline[-1]["status"] if self.timeline else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "delivery_id": self.delivery_id,
            "platform": self.platform,
            "external_order_id": self.external_order_id,
            "timeline": self.timeline,
            "final_status": self.final_status,
            "completed_at": isoformat(self.completed_at),
            "delivery": self.delivery,
        }

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            "deliveryId": self.delivery_id,
            "platform": self.platform,
            "externalOrderId": self.external_order_id,
            "finalStatus": self.final_status,
            "completedAt": isoformat(self.completed_at),
            "timeline": self.timeline,
            "delivery": self.delivery,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "HistoryEntry":
        return cls(
            user_id=str(raw["user_id"]),
            delivery_id=str(raw["delivery_id"]),
            platform=str(raw["platform"]),
            external_order_id=str(raw.get("external_order_id") or ""),
            timeline=[t for t in raw.get("timeline") or [] if isinstance(t, dict)],
            final_status=raw.get("final_status"),
            completed_at=parse_timestamp(raw.get("completed_at")),
            delivery=raw.get("delivery"),
        )


class DeliveryHistoryStore(JsonFileStore):
    def __init__(self, path: Path):
        self._entries: Dict[str, HistoryEntry] = {}
        super().__init__(path)

    def _load_state(self, raw: Dict[str, Any]) -> None:
        self._entries.clear()
        for item in raw.get("deliveries", []):
            if not isinstance(item, dict):
                continue
            try:
                entry = HistoryEntry.from_dict(item)
            except KeyError:
                continue
            self._entries[f"{entry.user_id}:{entry.delivery_id}"] = entry

    def _dump_state(self) -> Dict[str, Any]:
        return {"deliveries": [entry.to_dict() for entry in self._entries.values()]}

    def _entry_for(self, user_id: str, delivery: UnifiedDelivery) -> HistoryEntry:
        key = f"{user_id}:{delivery.id}"
        entry = self._entries.get(key)
        if entry is None:
            entry = HistoryEntry(
                user_id=user_id,
                delivery_id=delivery.id,
                platform=delivery.platform,
                external_order_id=delivery.external_order_id,
            )
            self._entries[key] = entry
        return entry

    @staticmethod
    def _append(entry: HistoryEntry, delivery: UnifiedDelivery) -> bool:
        if entry.last_status == delivery.status:
            return False
        entry.timeline.append({"status": delivery.status, "timestamp": isoformat(delivery.status_updated_at)})
        return True

    async def last_status(self, user_id: str, delivery_id: str) -> Optional[str]:
        async with self._lock:
            entry = self._entries.get(f"{user_id}:{delivery_id}")
            return entry.last_status if entry else None

    async def record_transition(self, user_id: str, delivery: UnifiedDelivery) -> bool:
        """Append the delivery's status to its timeline if it changed. Frozen entries are left alone."""
        async with self._lock:
            entry = self._entry_for(user_id, delivery)
            if entry.archived or not self._append(entry, delivery):
                return False
            await self._persist()
            return True

    async def archive(self, user_id: str, delivery: UnifiedDelivery) -> bool:
        """Freeze a terminal delivery. Returns False if it was already archived."""
        if not is_terminal_status(delivery.status):
            raise ValueError(f"Cannot archive delivery {delivery.id} in status {delivery.status}")
        async with self._lock:
            entry = self._entry_for(user_id, delivery)
            if entry.archived:
                return False
            self._append(entry, delivery)
            entry.final_status = delivery.status
            entry.completed_at = delivery.timestamps.delivered or delivery.timestamps.cancelled or utcnow()
            entry.delivery = delivery.to_dict()
            await self._persist()
            print(f"[history] archived {delivery.id} ({delivery.status}) for user {user_id}")
            return True

    async def list_for_user(
        self, user_id: str, platform: Optional[str] = None, limit: int = 20, offset: int = 0
    ) -> List[HistoryEntry]:
        async with self._lock:
            entries = [
                e
                for e in self._entries.values()
                if e.user_id == user_id and e.archived and (platform is None or e.platform == platform)
            ]
        entries.sort(key=lambda e: e.completed_at or utcnow(), reverse=True)
        return entries[max(offset, 0):max(offset, 0) + max(limit, 0)]

    async def get(self, user_id: str, delivery_id: str) -> Optional[HistoryEntry]:
        async with self._lock:
            return self._entries.get(f"{user_id}:{delivery_id}")

    async def count(self) -> int:
        async with self._lock:
            return len(self._entries)


__all__ = ["CacheEntry", "DELIVERY_CACHE_TTL_S", "DeliveryCache", "DeliveryHistoryStore", "HistoryEntry"]
