"""
Read side of the engine: what a user's dashboard asks for.

``get_active_deliveries`` fans out over every connected platform at once.
A platform that fails contributes nothing to the result instead of failing
the request; auth failures additionally flag the connection so the UI can
prompt for a reconnect.
"""

from __future__ import annotations

import asyncio
from typing import Dict, List, Optional

from adapter_registry import AdapterRegistry
from connections_store import CONNECTED, ConnectionStore, PlatformConnection
from delivery_cache import DeliveryCache, DeliveryHistoryStore, HistoryEntry
from delivery_models import PLATFORMS, UnifiedDelivery
from eta_engine import calculate_eta
from platform_adapters.errors import DeliveryNotFoundError, PlatformAdapterError, UpstreamAuthError
from rate_limiter import SlidingWindowRateLimiter, platform_rate_limiter
from realtime import PushNotifier, RealtimeHub
from status_normalizer import is_terminal_status, sort_by_status_priority
from token_manager import TokenManager

# delivery ids are "<first two letters of platform>_<external id>"
PLATFORM_BY_PREFIX: Dict[str, str] = {platform[:2]: platform for platform in PLATFORMS}


def platform_for_delivery_id(delivery_id: str) -> Optional[str]:
    prefix, sep, rest = delivery_id.partition("_")
    if not sep or not rest:
        return None
    return PLATFORM_BY_PREFIX.get(prefix)


def enrich_eta(delivery: UnifiedDelivery) -> UnifiedDelivery:
    delivery.eta_estimate = calculate_eta(delivery).to_dict()
    return delivery


class DeliveryService:
    def __init__(
        self,
        connections: ConnectionStore,
        registry: AdapterRegistry,
        cache: DeliveryCache,
        history: DeliveryHistoryStore,
        tokens: TokenManager,
        *,
        hub: Optional[RealtimeHub] = None,
        notifier: Optional[PushNotifier] = None,
        platform_limiter: Optional[SlidingWindowRateLimiter] = None,
    ) -> None:
        self.connections = connections
        self.registry = registry
        self.cache = cache
        self.history = history
        self.tokens = tokens
        self.hub = hub
        self.notifier = notifier
        self.platform_limiter = platform_limiter or platform_rate_limiter()

    async def get_active_deliveries(self, user_id: str, platform: Optional[str] = None) -> List[UnifiedDelivery]:
        conns = await self.connections.list_for_user(user_id, status=CONNECTED)
        if platform is not None:
            conns = [conn for conn in conns if conn.platform == platform]
        results = await asyncio.gather(*(self._fetch_platform(conn) for conn in conns), return_exceptions=True)

        deliveries: List[UnifiedDelivery] = []
        for conn, result in zip(conns, results):
            if isinstance(result, BaseException):
                print(f"[deliveries] {conn.platform} failed for user {user_id}: {result!r}")
                continue
            deliveries.extend(result)
        return sort_by_status_priority(deliveries)

    async def _fetch_platform(self, conn: PlatformConnection) -> List[UnifiedDelivery]:
        cached = await self.cache.list_for_user(conn.user_id, conn.platform)
        if cached:
            return [enrich_eta(delivery) for delivery in cached]

        limit = await self.platform_limiter.check(f"{conn.user_id}:{conn.platform}")
        if not limit.success:
            print(f"[deliveries] {conn.platform} poll skipped for user {conn.user_id}: rate limited")
            return []

        adapter = self.registry.get(conn.platform)
        try:
            context = await self.tokens.get_connection_context(conn)
            deliveries = await adapter.get_active_deliveries(context)
        except UpstreamAuthError as exc:
            print(f"[deliveries] {conn.platform} auth failure for user {conn.user_id}: {exc.message}")
            await self.tokens.mark_auth_failure(conn, exc)
            return []
        except PlatformAdapterError as exc:
            print(f"[deliveries] {conn.platform} error for user {conn.user_id}: {exc.message}")
            return []

        for delivery in deliveries:
            enrich_eta(delivery)
        await self.cache.upsert_many(conn.user_id, deliveries)
        for delivery in deliveries:
            await self._record(conn.user_id, delivery)
        await self.connections.touch_sync(conn.id)
        return deliveries

    async def _record(self, user_id: str, delivery: UnifiedDelivery) -> None:
        previous_status = await self.history.last_status(user_id, delivery.id)
        if is_terminal_status(delivery.status):
            await self.history.archive(user_id, delivery)
        else:
            await self.history.record_transition(user_id, delivery)
        if previous_status is None or previous_status == delivery.status:
            return
        if self.hub is not None:
            self.hub.publish_delivery_update(user_id, delivery, previous_status)
        if self.notifier is not None:
            await self.notifier.notify_transition(user_id, delivery, previous_status)

    async def get_delivery(self, user_id: str, delivery_id: str) -> UnifiedDelivery:
        cached = await self.cache.get_by_delivery_id(user_id, delivery_id)
        if cached is not None:
            return enrich_eta(cached)

        platform = platform_for_delivery_id(delivery_id)
        conn = await self.connections.get(user_id, platform) if platform else None
        if conn is None:
            raise DeliveryNotFoundError(platform, delivery_id)

        adapter = self.registry.get(platform)
        try:
            context = await self.tokens.get_connection_context(conn)
            delivery = await adapter.get_delivery_details(context, delivery_id)
        except UpstreamAuthError as exc:
            await self.tokens.mark_auth_failure(conn, exc)
            raise
        enrich_eta(delivery)
        await self.cache.upsert(user_id, delivery)
        await self._record(user_id, delivery)
        return delivery

    async def get_history(
        self, user_id: str, platform: Optional[str] = None, limit: int = 20, offset: int = 0
    ) -> List[HistoryEntry]:
        return await self.history.list_for_user(user_id, platform, limit=limit, offset=offset)


__all__ = ["DeliveryService", "PLATFORM_BY_PREFIX", "enrich_eta", "platform_for_delivery_id"]
