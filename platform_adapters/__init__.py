"""
Platform Adapters

Each delivery platform is wrapped by one ``PlatformAdapter`` implementation.
All adapters share a single contract and advertise what they can do through
capability flags, so callers branch on ``supports_oauth()`` /
``supports_webhooks()`` rather than on the concrete class.

Three integration strategies realise the contract:

* Direct-API (``instacart``, ``costco``, ``ubereats``, ``doordash``,
  ``totalwine``): official API, pushes updates through signed webhooks.
* Session-proxy (``amazon``): OAuth handshake, but no webhooks; freshness
  comes from short-TTL polling.
* Embedded-session (``walmart``, ``shipt``, ``drizly``, ``samsclub``): no
  OAuth at all; the credential is a captured browser session blob.

Example usage:
    from adapter_registry import build_default_registry

    registry = build_default_registry()
    adapter = registry.get("instacart")
    if adapter.supports_oauth():
        url = adapter.get_oauth_url(user_id, state)
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import httpx

from delivery_models import UnifiedDelivery, generate_delivery_id, parse_timestamp, utcnow
from status_normalizer import get_status_label, map_platform_status

from .errors import (
    CapabilityError,
    PlatformDataError,
    TokenExpiredError,
    UpstreamAuthError,
)
from .http import UPSTREAM_TIMEOUT, request_json, with_retry


@dataclass
class AdapterCapabilities:
    oauth: bool = False
    webhooks: bool = False
    live_location: bool = False
    driver_contact: bool = False
    session_auth: bool = False
    order_items: bool = False
    eta_updates: bool = False

    def to_dict(self) -> Dict[str, bool]:
        return {
            "oauth": self.oauth,
            "webhooks": self.webhooks,
            "liveLocation": self.live_location,
            "driverContact": self.driver_contact,
            "sessionAuth": self.session_auth,
            "orderItems": self.order_items,
            "etaUpdates": self.eta_updates,
        }


@dataclass
class AdapterMetadata:
    platform_id: str
    display_name: str
    primary_color: str
    capabilities: AdapterCapabilities
    api_base_url: str
    min_polling_interval: int = 30
    max_polling_interval: int = 300
    default_polling_interval: int = 60
    authorization_url: Optional[str] = None
    token_url: Optional[str] = None
    icon_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "platformId": self.platform_id,
            "displayName": self.display_name,
            "primaryColor": self.primary_color,
            "iconUrl": self.icon_url or f"/icons/{self.platform_id}.svg",
            "capabilities": self.capabilities.to_dict(),
            "minPollingInterval": self.min_polling_interval,
            "maxPollingInterval": self.max_polling_interval,
            "defaultPollingInterval": self.default_polling_interval,
        }


@dataclass
class TokenSet:
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    token_type: Optional[str] = None
    scope: Optional[str] = None

    @classmethod
    def from_oauth_response(
        cls, platform: str, data: Any, fallback_refresh: Optional[str] = None
    ) -> "TokenSet":
        if not isinstance(data, dict) or not data.get("access_token"):
            raise PlatformDataError(platform, "token response missing access_token")
        expires_in = data.get("expires_in")
        expires_at = None
        if isinstance(expires_in, (int, float)) and not isinstance(expires_in, bool):
            expires_at = utcnow() + timedelta(seconds=float(expires_in))
        return cls(
            access_token=str(data["access_token"]),
            refresh_token=data.get("refresh_token") or fallback_refresh,
            expires_at=expires_at,
            token_type=data.get("token_type"),
            scope=data.get("scope"),
        )


@dataclass
class AdapterConnection:
    """Decrypted credentials for one upstream call. Never persisted."""
    connection_id: str
    user_id: str
    platform: str
    access_token: Optional[str] = None
    session_data: Optional[str] = None

    @property
    def credential(self) -> str:
        return self.access_token or self.session_data or ""


@dataclass
class WebhookEvent:
    platform: str
    event_id: str
    event_type: str
    data: Any
    timestamp: datetime = field(default_factory=utcnow)


def canonical_json(payload: Any) -> bytes:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


class PlatformAdapter(ABC):
    """
    Base class for all delivery platform adapters.

    Subclasses declare ``metadata`` and implement the two delivery queries and
    their payload normalisation. OAuth, webhook and session operations default
    to raising ``CapabilityError`` (or returning a rejection) so that a
    capability is only usable where the flag says so.
    """

    metadata: AdapterMetadata
    webhook_secret_env: Optional[str] = None
    webhook_digest: Callable[..., Any] = hashlib.sha256
    webhook_signature_prefix: Optional[str] = None

    def __init__(
        self,
        *,
        client: Optional[httpx.AsyncClient] = None,
        webhook_secret: Optional[str] = None,
    ) -> None:
        self._client = client
        self._owns_client = client is None
        self._webhook_secret = webhook_secret

    # -- identity -----------------------------------------------------------

    @property
    def platform_id(self) -> str:
        return self.metadata.platform_id

    @property
    def display_name(self) -> str:
        return self.metadata.display_name

    @property
    def capabilities(self) -> AdapterCapabilities:
        return self.metadata.capabilities

    # -- capability flags ---------------------------------------------------

    def supports_oauth(self) -> bool:
        return self.capabilities.oauth

    def supports_webhooks(self) -> bool:
        return self.capabilities.webhooks

    def uses_pkce(self) -> bool:
        return False

    # -- OAuth ---------------------------------------------------------------

    def get_oauth_url(self, user_id: str, state: str, code_verifier: Optional[str] = None) -> str:
        raise CapabilityError(f"{self.platform_id} does not support OAuth", self.platform_id)

    async def exchange_code(self, code: str, code_verifier: Optional[str] = None) -> TokenSet:
        raise CapabilityError(f"{self.platform_id} does not support OAuth", self.platform_id)

    async def refresh_token(self, refresh_token: str) -> TokenSet:
        raise CapabilityError(f"{self.platform_id} does not support token refresh", self.platform_id)

    async def revoke_token(self, token: str) -> None:
        """Best-effort upstream revocation. Platforms without one do nothing."""
        return None

    async def test_connection(self, credential: str) -> None:
        raise CapabilityError(f"{self.platform_id} does not implement connection test", self.platform_id)

    async def connect_session(self, payload: Dict[str, Any]) -> TokenSet:
        """Establish a non-OAuth connection from adapter-specific setup data."""
        raise CapabilityError(f"{self.platform_id} connects through OAuth", self.platform_id)

    # -- deliveries ---------------------------------------------------------

    @abstractmethod
    async def get_active_deliveries(self, connection: AdapterConnection) -> List[UnifiedDelivery]:
        """Return every in-flight delivery visible to this connection."""

    @abstractmethod
    async def get_delivery_details(
        self, connection: AdapterConnection, delivery_id: str
    ) -> UnifiedDelivery:
        """Return one delivery; ``delivery_id`` may be ours (``in_123``) or external."""

    # -- webhooks -----------------------------------------------------------

    def _resolve_webhook_secret(self) -> str:
        if self._webhook_secret is not None:
            return self._webhook_secret
        if self.webhook_secret_env:
            return (os.getenv(self.webhook_secret_env) or "").strip()
        return ""

    def verify_webhook(
        self, payload: Any, signature: Optional[str], raw_body: Optional[bytes] = None
    ) -> bool:
        if not self.supports_webhooks():
            return False
        secret = self._resolve_webhook_secret()
        if not signature or not secret:
            return False
        provided = signature.strip()
        prefix = self.webhook_signature_prefix
        if prefix and provided.startswith(prefix):
            provided = provided[len(prefix):]
        body = raw_body if raw_body is not None else canonical_json(payload)
        expected = hmac.new(secret.encode("utf-8"), body, self.webhook_digest).hexdigest()
        return secrets.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))

    def normalize_webhook_payload(self, event: WebhookEvent) -> Optional[UnifiedDelivery]:
        return None

    # -- polling / status ---------------------------------------------------

    def get_polling_interval(self, has_active_delivery: bool = False) -> int:
        if has_active_delivery:
            return self.metadata.min_polling_interval
        return self.metadata.default_polling_interval

    def map_status(self, raw_status: Optional[str]) -> str:
        return map_platform_status(self.platform_id, raw_status)

    def get_status_label(self, status: str) -> str:
        return get_status_label(status)

    def generate_delivery_id(self, external_id: str) -> str:
        return generate_delivery_id(self.platform_id, external_id)

    def external_id_from(self, delivery_id: str) -> str:
        prefix = f"{self.platform_id[:2]}_"
        return delivery_id[len(prefix):] if delivery_id.startswith(prefix) else delivery_id

    # -- HTTP ----------------------------------------------------------------

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=UPSTREAM_TIMEOUT)
            self._owns_client = True
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, url: str, *, retry: bool = True, **kwargs: Any) -> Any:
        client = await self._ensure_client()

        async def _once() -> Any:
            return await request_json(client, self.platform_id, method, url, **kwargs)

        if not retry:
            return await _once()
        return await with_retry(_once)

    async def _token_request(self, url: str, form: Dict[str, str], *, auth: Any = None,
                             refresh: bool = False, fallback_refresh: Optional[str] = None) -> TokenSet:
        """POST an OAuth token grant and translate failures into the auth taxonomy."""
        try:
            data = await self._request("POST", url, data=form, auth=auth, retry=False,
                                       headers={"Accept": "application/json"})
        except UpstreamAuthError as exc:
            if refresh:
                raise TokenExpiredError(self.platform_id, f"Token refresh rejected: {exc.message}") from exc
            raise
        except PlatformDataError as exc:
            # 400 invalid_grant and friends
            if refresh:
                raise TokenExpiredError(self.platform_id, f"Token refresh failed: {exc.message}") from exc
            raise UpstreamAuthError(self.platform_id, f"Token exchange failed: {exc.message}", exc) from exc
        return TokenSet.from_oauth_response(self.platform_id, data, fallback_refresh=fallback_refresh)

    def _build_delivery(self, *, external_id: str, raw_status: Optional[str], **fields: Any) -> UnifiedDelivery:
        """Assemble a ``UnifiedDelivery`` with canonical status and label filled in."""
        status = self.map_status(raw_status)
        platform = fields.pop("platform", self.platform_id)
        updated = fields.pop("status_updated_at", None)
        return UnifiedDelivery(
            id=generate_delivery_id(platform, external_id),
            platform=platform,
            external_order_id=external_id,
            status=status,
            status_label=self.get_status_label(status),
            status_updated_at=parse_timestamp(updated) or utcnow(),
            **fields,
        )


class EmbeddedSessionAdapter(PlatformAdapter):
    """
    Adapter for platforms without OAuth: the credential is a browser session
    captured by the companion extension and posted as JSON.

    The session blob is validated (required keys, capture age), tested against
    the platform, and stored encrypted as the connection's session data.
    """

    required_session_keys: tuple[str, ...] = ()
    required_cookies: tuple[str, ...] = ()
    session_max_age = timedelta(days=7)

    def parse_session(self, session_json: str) -> Dict[str, Any]:
        try:
            session = json.loads(session_json)
        except (TypeError, ValueError) as exc:
            raise UpstreamAuthError(self.platform_id, "Session data is not valid JSON") from exc
        if not isinstance(session, dict):
            raise UpstreamAuthError(self.platform_id, "Session data must be an object")
        self.validate_session(session)
        return session

    def validate_session(self, session: Dict[str, Any]) -> None:
        missing = [key for key in self.required_session_keys if not session.get(key)]
        cookies = session.get("cookies") if isinstance(session.get("cookies"), dict) else {}
        missing.extend(f"cookie:{name}" for name in self.required_cookies if not cookies.get(name))
        if missing:
            raise UpstreamAuthError(self.platform_id, f"Session is missing {', '.join(missing)}")
        captured = parse_timestamp(session.get("capturedAt"))
        if captured is not None and utcnow() - captured > self.session_max_age:
            raise TokenExpiredError(self.platform_id, "Captured session is too old; please reconnect")

    async def connect_session(self, payload: Dict[str, Any]) -> TokenSet:
        session = dict(payload or {})
        session.setdefault("capturedAt", utcnow().isoformat())
        session_json = json.dumps(session, sort_keys=True)
        self.parse_session(session_json)
        await self.test_connection(session_json)
        captured = parse_timestamp(session["capturedAt"]) or utcnow()
        return TokenSet(access_token=session_json, expires_at=captured + self.session_max_age)

    def session_headers(self, session: Dict[str, Any]) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        cookies = session.get("cookies")
        if isinstance(cookies, dict) and cookies:
            headers["Cookie"] = "; ".join(f"{name}={value}" for name, value in cookies.items())
        token = session.get("token")
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if session.get("userAgent"):
            headers["User-Agent"] = str(session["userAgent"])
        return headers


__all__ = [
    "AdapterCapabilities",
    "AdapterConnection",
    "AdapterMetadata",
    "EmbeddedSessionAdapter",
    "PlatformAdapter",
    "TokenSet",
    "WebhookEvent",
    "canonical_json",
]
