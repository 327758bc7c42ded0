"""Per-user Web Push subscriptions, persisted next to the other JSON stores."""

from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from json_store import JsonFileStore


@dataclass
class PushSubscription:
    user_id: str
    endpoint: str
    p256dh: str
    auth: str
    created_at: str
    user_agent: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["PushSubscription"]:
        if not isinstance(raw, dict):
            return None
        required = [raw.get(name) for name in ("user_id", "endpoint", "p256dh", "auth")]
        if not all(required):
            return None
        return cls(
            *required,
            created_at=raw.get("created_at") or datetime.now(timezone.utc).isoformat(),
            user_agent=raw.get("user_agent"),
        )

    def to_subscription_info(self) -> Dict[str, Any]:
        """Shape pywebpush expects for ``subscription_info``."""
        return {"endpoint": self.endpoint, "keys": {"p256dh": self.p256dh, "auth": self.auth}}


class PushSubscriptionStore(JsonFileStore):
    """Browser endpoints by owner.

    An endpoint belongs to one user at a time; subscribing the same browser
    from another account moves it.
    """

    def __init__(self, path: Path):
        self._by_endpoint: Dict[str, PushSubscription] = {}
        super().__init__(path)

    def _load_state(self, raw: Dict[str, Any]) -> None:
        self._by_endpoint = {}
        for entry in raw.get("subscriptions", []):
            sub = PushSubscription.from_dict(entry)
            if sub is not None:
                self._by_endpoint[sub.endpoint] = sub

    def _dump_state(self) -> Dict[str, Any]:
        return {"subscriptions": [asdict(sub) for sub in self._by_endpoint.values()]}

    async def add_subscription(
        self,
        user_id: str,
        endpoint: str,
        keys: Dict[str, str],
        user_agent: Optional[str] = None,
    ) -> bool:
        """Store or replace the subscription. True only for a new endpoint."""
        sub = PushSubscription.from_dict({
            "user_id": user_id,
            "endpoint": endpoint,
            "p256dh": keys.get("p256dh"),
            "auth": keys.get("auth"),
            "user_agent": user_agent,
        })
        if sub is None:
            return False
        async with self._lock:
            is_new = endpoint not in self._by_endpoint
            self._by_endpoint[endpoint] = sub
            await self._persist()
        return is_new

    async def remove_subscription(self, endpoint: str, user_id: Optional[str] = None) -> bool:
        async with self._lock:
            sub = self._by_endpoint.get(endpoint)
            if sub is None or (user_id is not None and sub.user_id != user_id):
                return False
            del self._by_endpoint[endpoint]
            await self._persist()
        return True

    async def get_for_user(self, user_id: str) -> List[PushSubscription]:
        async with self._lock:
            return [sub for sub in self._by_endpoint.values() if sub.user_id == user_id]

    async def count(self) -> int:
        async with self._lock:
            return len(self._by_endpoint)


__all__ = ["PushSubscription", "PushSubscriptionStore"]
