"""
Connection lifecycle: OAuth handshake, session connect, proactive refresh,
forced refresh, connection tests and disconnect.

Plaintext credentials only exist inside ``AdapterConnection`` objects built
for a single upstream call; everything persisted goes through the vault.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional

from adapter_registry import AdapterRegistry
from connections_store import (
    CONNECTED,
    ERROR,
    EXPIRED,
    EXPIRING_SOON,
    ConnectionStore,
    PlatformConnection,
)
from delivery_cache import DeliveryCache
from delivery_models import utcnow
from oauth_state import OAuthStateStore
from platform_adapters import AdapterConnection, EmbeddedSessionAdapter, PlatformAdapter, TokenSet
from platform_adapters.errors import (
    CapabilityError,
    PlatformAdapterError,
    TokenExpiredError,
    UpstreamAuthError,
)
from platform_adapters.ubereats import generate_code_verifier
from realtime import RealtimeHub
from token_vault import decrypt_token, encrypt_token


class ConnectionNotFoundError(LookupError):
    def __init__(self, platform: str) -> None:
        super().__init__(f"No {platform} connection")
        self.platform = platform


def _encrypt(value: Optional[str]) -> Optional[Dict[str, Any]]:
    return encrypt_token(value).to_dict() if value else None


class TokenManager:
    def __init__(
        self,
        connections: ConnectionStore,
        registry: AdapterRegistry,
        cache: DeliveryCache,
        hub: Optional[RealtimeHub] = None,
        oauth_states: Optional[OAuthStateStore] = None,
    ) -> None:
        self.connections = connections
        self.registry = registry
        self.cache = cache
        self.hub = hub
        self.oauth_states = oauth_states or OAuthStateStore()
        self.lock = asyncio.Lock()
        self._inflight: Dict[str, asyncio.Task] = {}

    # ---------------------------
    # Connect
    # ---------------------------

    async def initiate_oauth(self, user_id: str, platform: str) -> Dict[str, str]:
        adapter = self.registry.get(platform)
        if not adapter.supports_oauth():
            raise CapabilityError(f"{platform} does not support OAuth", platform)
        verifier = generate_code_verifier() if adapter.uses_pkce() else None
        state = await self.oauth_states.create(user_id, platform, code_verifier=verifier)
        return {"auth_url": adapter.get_oauth_url(user_id, state, code_verifier=verifier), "state": state}

    async def complete_oauth(self, user_id: str, platform: str, tokens: TokenSet,
                             metadata: Optional[Dict[str, Any]] = None) -> PlatformConnection:
        conn = await self.connections.upsert(
            user_id,
            platform,
            access_token=_encrypt(tokens.access_token),
            refresh_token=_encrypt(tokens.refresh_token),
            expires_at=tokens.expires_at,
            metadata=metadata,
        )
        print(f"[token_manager] connected {platform} for user {user_id}")
        self._publish_status(user_id, platform, CONNECTED)
        return conn

    async def handle_oauth_callback(self, user_id: str, platform: str, code: str, state: str) -> PlatformConnection:
        """Validate ``state``, exchange ``code`` and store the resulting tokens."""
        record = await self.oauth_states.consume(state, user_id, platform)
        adapter = self.registry.get(platform)
        tokens = await adapter.exchange_code(code, code_verifier=record.code_verifier)
        return await self.complete_oauth(user_id, platform, tokens)

    async def connect_session(self, user_id: str, platform: str, payload: Dict[str, Any]) -> PlatformConnection:
        adapter = self.registry.get(platform)
        tokens = await adapter.connect_session(payload)
        if isinstance(adapter, EmbeddedSessionAdapter):
            conn = await self.connections.upsert(
                user_id,
                platform,
                session_data=_encrypt(tokens.access_token),
                expires_at=tokens.expires_at,
                metadata={"authType": "session"},
            )
        else:
            conn = await self.connections.upsert(
                user_id,
                platform,
                access_token=_encrypt(tokens.access_token),
                refresh_token=_encrypt(tokens.refresh_token),
                expires_at=tokens.expires_at,
                metadata={"authType": tokens.token_type or "api_key"},
            )
        print(f"[token_manager] connected {platform} session for user {user_id}")
        self._publish_status(user_id, platform, CONNECTED)
        return conn

    # ---------------------------
    # Credentials
    # ---------------------------

    async def require_connection(self, user_id: str, platform: str) -> PlatformConnection:
        conn = await self.connections.get(user_id, platform)
        if conn is None:
            raise ConnectionNotFoundError(platform)
        return conn

    async def get_connection_context(self, conn: PlatformConnection, now: Optional[datetime] = None) -> AdapterConnection:
        """Decrypt credentials for one call, refreshing them first if they expire soon."""
        now = now or utcnow()
        if conn.status == EXPIRED:
            raise TokenExpiredError(conn.platform, "Connection expired; please reconnect")
        if conn.session_data is not None:
            if conn.expires_at is not None and conn.expires_at <= now:
                await self._mark(conn, EXPIRED, "Captured session expired")
                raise TokenExpiredError(conn.platform, "Captured session expired; please reconnect")
            return self._context(conn)
        if conn.refresh_token is not None and conn.is_expiring_soon(now, EXPIRING_SOON):
            conn = await self._refresh_singleflight(conn)
        return self._context(conn)

    def _context(self, conn: PlatformConnection) -> AdapterConnection:
        return AdapterConnection(
            connection_id=conn.id,
            user_id=conn.user_id,
            platform=conn.platform,
            access_token=decrypt_token(conn.access_token) if conn.access_token else None,
            session_data=decrypt_token(conn.session_data) if conn.session_data else None,
        )

    async def _refresh_singleflight(self, conn: PlatformConnection) -> PlatformConnection:
        # one upstream refresh per connection; concurrent callers await the same task
        async with self.lock:
            task = self._inflight.get(conn.id)
            if task is None:
                task = asyncio.create_task(self._refresh(conn))
                self._inflight[conn.id] = task
        try:
            return await task
        finally:
            async with self.lock:
                if self._inflight.get(conn.id) is task:
                    del self._inflight[conn.id]

    async def _refresh(self, conn: PlatformConnection) -> PlatformConnection:
        adapter = self.registry.get(conn.platform)
        refresh_token = decrypt_token(conn.refresh_token)
        tokens = await adapter.refresh_token(refresh_token)
        updated = await self.connections.update_tokens(
            conn.id,
            access_token=encrypt_token(tokens.access_token).to_dict(),
            refresh_token=_encrypt(tokens.refresh_token),
            expires_at=tokens.expires_at,
        )
        print(f"[token_manager] refreshed {conn.platform} token for user {conn.user_id}")
        return updated or conn

    async def force_refresh(self, user_id: str, platform: str) -> PlatformConnection:
        """Refresh now regardless of expiry. Failures change status, never delete."""
        conn = await self.require_connection(user_id, platform)
        if conn.refresh_token is None:
            raise CapabilityError(f"{platform} connection has no refresh token", platform)
        try:
            conn = await self._refresh_singleflight(conn)
        except TokenExpiredError as exc:
            await self._mark(conn, EXPIRED, exc.message)
            raise
        except PlatformAdapterError as exc:
            await self._mark(conn, ERROR, exc.message)
            raise
        self._publish_status(user_id, platform, CONNECTED)
        return conn

    async def mark_auth_failure(self, conn: PlatformConnection, error: UpstreamAuthError) -> None:
        status = EXPIRED if isinstance(error, TokenExpiredError) else ERROR
        await self._mark(conn, status, error.message)

    async def _mark(self, conn: PlatformConnection, status: str, error: Optional[str] = None) -> None:
        await self.connections.set_status(conn.id, status)
        print(f"[token_manager] {conn.platform} connection for user {conn.user_id} is now {status}")
        self._publish_status(conn.user_id, conn.platform, status, error)

    def _publish_status(self, user_id: str, platform: str, status: str, error: Optional[str] = None) -> None:
        if self.hub is not None:
            self.hub.publish_connection_status(user_id, platform, status, error)

    # ---------------------------
    # Management
    # ---------------------------

    async def disconnect(self, user_id: str, platform: str) -> bool:
        conn = await self.connections.get(user_id, platform)
        if conn is None:
            return False
        adapter = self.registry.get(platform)
        if conn.access_token is not None:
            try:
                await adapter.revoke_token(decrypt_token(conn.access_token))
            except Exception as exc:
                print(f"[token_manager] revoke failed for {platform}: {exc}")
        await self.connections.delete(user_id, platform)
        cleared = await self.cache.delete_for_user_platform(user_id, platform)
        print(f"[token_manager] disconnected {platform} for user {user_id} ({cleared} cached deliveries cleared)")
        self._publish_status(user_id, platform, "disconnected")
        return True

    async def test_connection(self, user_id: str, platform: str) -> Dict[str, Any]:
        conn = await self.require_connection(user_id, platform)
        adapter: PlatformAdapter = self.registry.get(platform)
        try:
            context = await self.get_connection_context(conn)
            await adapter.test_connection(context.credential)
        except PlatformAdapterError as exc:
            return {"connected": False, "error": exc.message}
        await self.connections.touch_sync(conn.id)
        return {"connected": True}

    async def list_connections(self, user_id: str) -> List[Dict[str, Any]]:
        now = utcnow()
        return [conn.to_public_dict(now) for conn in await self.connections.list_for_user(user_id)]


__all__ = ["ConnectionNotFoundError", "TokenManager"]
