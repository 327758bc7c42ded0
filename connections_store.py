"""
Platform connection storage.

One ``PlatformConnection`` per (user, platform). Tokens are stored only in
their encrypted form (``EncryptedData.to_dict()``); nothing in this module
ever sees plaintext credentials.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from delivery_models import isoformat, parse_timestamp, utcnow
from json_store import JsonFileStore

CONNECTED = "connected"
EXPIRED = "expired"
ERROR = "error"
DISCONNECTED = "disconnected"
CONNECTION_STATUSES = (CONNECTED, EXPIRED, ERROR, DISCONNECTED)

EXPIRING_SOON = timedelta(minutes=5)


@dataclass
class PlatformConnection:
    id: str
    user_id: str
    platform: str
    access_token: Optional[Dict[str, Any]] = None  # EncryptedData dict
    refresh_token: Optional[Dict[str, Any]] = None
    session_data: Optional[Dict[str, Any]] = None
    expires_at: Optional[datetime] = None
    status: str = CONNECTED
    last_sync_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_expiring_soon(self, now: Optional[datetime] = None, window: timedelta = EXPIRING_SOON) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at - (now or utcnow()) <= window

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "platform": self.platform,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "session_data": self.session_data,
            "expires_at": isoformat(self.expires_at),
            "status": self.status,
            "last_sync_at": isoformat(self.last_sync_at),
            "metadata": self.metadata,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }

    def to_public_dict(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """API view: no token material, plus the derived expiry flag."""
        return {
            "id": self.id,
            "platform": self.platform,
            "status": self.status,
            "expiresAt": isoformat(self.expires_at),
            "lastSyncAt": isoformat(self.last_sync_at),
            "isExpiringSoon": self.is_expiring_soon(now),
            "metadata": self.metadata,
            "createdAt": isoformat(self.created_at),
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "PlatformConnection":
        status = raw.get("status")
        return cls(
            id=str(raw["id"]),
            user_id=str(raw["user_id"]),
            platform=str(raw["platform"]),
            access_token=raw.get("access_token"),
            refresh_token=raw.get("refresh_token"),
            session_data=raw.get("session_data"),
            expires_at=parse_timestamp(raw.get("expires_at")),
            status=status if status in CONNECTION_STATUSES else CONNECTED,
            last_sync_at=parse_timestamp(raw.get("last_sync_at")),
            metadata=raw.get("metadata") if isinstance(raw.get("metadata"), dict) else {},
            created_at=parse_timestamp(raw.get("created_at")) or utcnow(),
            updated_at=parse_timestamp(raw.get("updated_at")) or utcnow(),
        )


class ConnectionStore(JsonFileStore):
    """JSON-file store with a unique (user_id, platform) key."""

    def __init__(self, path: Path):
        self._connections: Dict[tuple[str, str], PlatformConnection] = {}
        super().__init__(path)

    def _load_state(self, raw: Dict[str, Any]) -> None:
        self._connections.clear()
        for entry in raw.get("connections", []):
            if not isinstance(entry, dict):
                continue
            try:
                conn = PlatformConnection.from_dict(entry)
            except KeyError:
                continue
            self._connections[(conn.user_id, conn.platform)] = conn

    def _dump_state(self) -> Dict[str, Any]:
        return {"connections": [conn.to_dict() for conn in self._connections.values()]}

    async def upsert(
        self,
        user_id: str,
        platform: str,
        *,
        access_token: Optional[Dict[str, Any]] = None,
        refresh_token: Optional[Dict[str, Any]] = None,
        session_data: Optional[Dict[str, Any]] = None,
        expires_at: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PlatformConnection:
        """Create or replace the credentials of the (user, platform) connection."""
        async with self._lock:
            now = utcnow()
            existing = self._connections.get((user_id, platform))
            conn = PlatformConnection(
                id=existing.id if existing else uuid.uuid4().hex,
                user_id=user_id,
                platform=platform,
                access_token=access_token,
                refresh_token=refresh_token,
                session_data=session_data,
                expires_at=expires_at,
                status=CONNECTED,
                last_sync_at=existing.last_sync_at if existing else None,
                metadata=dict(metadata or (existing.metadata if existing else {})),
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )
            self._connections[(user_id, platform)] = conn
            await self._persist()
            return conn

    async def get(self, user_id: str, platform: str) -> Optional[PlatformConnection]:
        async with self._lock:
            return self._connections.get((user_id, platform))

    async def get_by_id(self, connection_id: str) -> Optional[PlatformConnection]:
        async with self._lock:
            for conn in self._connections.values():
                if conn.id == connection_id:
                    return conn
            return None

    async def list_for_user(self, user_id: str, status: Optional[str] = None) -> List[PlatformConnection]:
        async with self._lock:
            conns = [c for c in self._connections.values() if c.user_id == user_id]
        if status is not None:
            conns = [c for c in conns if c.status == status]
        return sorted(conns, key=lambda c: c.platform)

    async def update_tokens(
        self,
        connection_id: str,
        *,
        access_token: Dict[str, Any],
        refresh_token: Optional[Dict[str, Any]],
        expires_at: Optional[datetime],
    ) -> Optional[PlatformConnection]:
        async with self._lock:
            conn = self._find(connection_id)
            if conn is None:
                return None
            conn.access_token = access_token
            if refresh_token is not None:
                conn.refresh_token = refresh_token
            conn.expires_at = expires_at
            conn.status = CONNECTED
            conn.updated_at = utcnow()
            await self._persist()
            return conn

    async def set_status(self, connection_id: str, status: str) -> Optional[PlatformConnection]:
        if status not in CONNECTION_STATUSES:
            raise ValueError(f"Unknown connection status: {status}")
        async with self._lock:
            conn = self._find(connection_id)
            if conn is None:
                return None
            if conn.status != status:
                conn.status = status
                conn.updated_at = utcnow()
                await self._persist()
            return conn

    async def touch_sync(self, connection_id: str) -> None:
        async with self._lock:
            conn = self._find(connection_id)
            if conn is None:
                return
            conn.last_sync_at = utcnow()
            await self._persist()

    async def delete(self, user_id: str, platform: str) -> bool:
        async with self._lock:
            if self._connections.pop((user_id, platform), None) is None:
                return False
            await self._persist()
            return True

    async def count(self) -> int:
        async with self._lock:
            return len(self._connections)

    def _find(self, connection_id: str) -> Optional[PlatformConnection]:
        for conn in self._connections.values():
            if conn.id == connection_id:
                return conn
        return None


__all__ = [
    "CONNECTED",
    "CONNECTION_STATUSES",
    "ConnectionStore",
    "DISCONNECTED",
    "ERROR",
    "EXPIRED",
    "PlatformConnection",
]
