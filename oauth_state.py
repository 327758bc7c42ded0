"""Short-lived OAuth ``state`` nonces binding a callback to the user who started it."""

from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from delivery_models import utcnow

STATE_TTL = timedelta(minutes=10)

INVALID_STATE = "invalid_state"
STATE_EXPIRED = "state_expired"
STATE_MISMATCH = "state_mismatch"


class OAuthStateError(Exception):
    def __init__(self, code: str, message: Optional[str] = None) -> None:
        super().__init__(message or code)
        self.code = code


@dataclass
class OAuthState:
    state: str
    user_id: str
    platform: str
    created_at: datetime
    expires_at: datetime
    code_verifier: Optional[str] = None


class OAuthStateStore:
    """In-process nonce store. Every state is single use: ``consume`` deletes
    it before checking anything else, so a replayed callback always fails."""

    def __init__(self, ttl: timedelta = STATE_TTL) -> None:
        self._ttl = ttl
        self._lock = asyncio.Lock()
        self._states: Dict[str, OAuthState] = {}

    async def create(self, user_id: str, platform: str, code_verifier: Optional[str] = None) -> str:
        now = utcnow()
        state = secrets.token_urlsafe(32)
        async with self._lock:
            self._prune(now)
            self._states[state] = OAuthState(
                state=state,
                user_id=user_id,
                platform=platform,
                created_at=now,
                expires_at=now + self._ttl,
                code_verifier=code_verifier,
            )
        return state

    async def consume(self, state: str, user_id: str, platform: str) -> OAuthState:
        async with self._lock:
            record = self._states.pop(state, None) if state else None
        if record is None:
            raise OAuthStateError(INVALID_STATE, "Unknown or already used OAuth state")
        if utcnow() >= record.expires_at:
            raise OAuthStateError(STATE_EXPIRED, "OAuth state expired")
        if not secrets.compare_digest(record.user_id, user_id) or record.platform != platform:
            print(f"[oauth] state mismatch for platform {platform}")
            raise OAuthStateError(STATE_MISMATCH, "OAuth state does not match this user or platform")
        return record

    async def count(self) -> int:
        async with self._lock:
            return len(self._states)

    def _prune(self, now: datetime) -> None:
        expired = [key for key, record in self._states.items() if record.expires_at <= now]
        for key in expired:
            del self._states[key]


__all__ = [
    "INVALID_STATE",
    "OAuthState",
    "OAuthStateError",
    "OAuthStateStore",
    "STATE_EXPIRED",
    "STATE_MISMATCH",
    "STATE_TTL",
]
