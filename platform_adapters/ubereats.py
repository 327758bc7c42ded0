"""
Uber Eats adapter (Direct-API, OAuth 2.0 + PKCE).

The PKCE verifier is minted when the authorization URL is requested and is
bound to the OAuth state record, so the callback can hand it back to
``exchange_code``.
"""

from __future__ import annotations

import base64
import hashlib
import os
import secrets
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import httpx

from delivery_models import (
    DeliveryEta,
    DeliveryTimestamps,
    Destination,
    DriverInfo,
    DriverLocation,
    DriverVehicle,
    FetchMeta,
    OrderItem,
    OrderSummary,
    TrackingInfo,
    UnifiedDelivery,
    coerce_float,
    coerce_int,
    mask_license_plate,
    mask_phone_number,
    minutes_until,
    parse_timestamp,
    utcnow,
)
from status_normalizer import ACTIVE_STATUSES, PREPARING

from . import (
    AdapterCapabilities,
    AdapterConnection,
    AdapterMetadata,
    PlatformAdapter,
    TokenSet,
    WebhookEvent,
)
from .common import build_location, estimated_arrival, format_address, require_dict, require_list, require_str
from .errors import PlatformAdapterError, PlatformDataError, UpstreamAuthError
from .http import bearer

API_BASE = "https://api.uber.com/v1"
AUTH_BASE = "https://auth.uber.com/oauth/v2"
SCOPES = ("eats.order", "eats.store.orders.read", "delivery.status")
DEFAULT_ETA_MINUTES = 30


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def generate_code_verifier() -> str:
    # 32 random bytes -> 43 chars, the RFC 7636 minimum length
    return _b64url(secrets.token_bytes(32))


def code_challenge(verifier: str) -> str:
    return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())


class UberEatsAdapter(PlatformAdapter):
    metadata = AdapterMetadata(
        platform_id="ubereats",
        display_name="Uber Eats",
        primary_color="#06C167",
        capabilities=AdapterCapabilities(
            oauth=True,
            webhooks=True,
            live_location=True,
            driver_contact=True,
            order_items=True,
            eta_updates=True,
        ),
        api_base_url=API_BASE,
        authorization_url=f"{AUTH_BASE}/authorize",
        token_url=f"{AUTH_BASE}/token",
        min_polling_interval=30,
        max_polling_interval=120,
        default_polling_interval=60,
    )
    webhook_secret_env = "UBEREATS_WEBHOOK_SECRET"

    def __init__(
        self,
        *,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        webhook_secret: Optional[str] = None,
    ) -> None:
        super().__init__(client=client, webhook_secret=webhook_secret)
        self._client_id = client_id if client_id is not None else (os.getenv("UBEREATS_CLIENT_ID") or "").strip()
        self._client_secret = (
            client_secret if client_secret is not None else (os.getenv("UBEREATS_CLIENT_SECRET") or "").strip()
        )
        app_url = (os.getenv("APP_URL") or "http://localhost:8080").rstrip("/")
        self._redirect_uri = redirect_uri or f"{app_url}/oauth/ubereats/callback"

    def uses_pkce(self) -> bool:
        return True

    def _require_oauth_config(self) -> None:
        missing = []
        if not self._client_id:
            missing.append("UBEREATS_CLIENT_ID")
        if not self._client_secret:
            missing.append("UBEREATS_CLIENT_SECRET")
        if missing:
            raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")

    # -- OAuth ---------------------------------------------------------------

    def get_oauth_url(self, user_id: str, state: str, code_verifier: Optional[str] = None) -> str:
        self._require_oauth_config()
        if not code_verifier:
            raise UpstreamAuthError(self.platform_id, "PKCE code verifier required")
        params = {
            "client_id": self._client_id,
            "redirect_uri": self._redirect_uri,
            "response_type": "code",
            "scope": " ".join(SCOPES),
            "state": state,
            "code_challenge": code_challenge(code_verifier),
            "code_challenge_method": "S256",
        }
        return f"{self.metadata.authorization_url}?{urlencode(params)}"

    async def exchange_code(self, code: str, code_verifier: Optional[str] = None) -> TokenSet:
        self._require_oauth_config()
        if not code_verifier:
            raise UpstreamAuthError(self.platform_id, "PKCE code verifier missing for code exchange")
        form = {
            "grant_type": "authorization_code",
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "code": code,
            "redirect_uri": self._redirect_uri,
            "code_verifier": code_verifier,
        }
        return await self._token_request(self.metadata.token_url, form)

    async def refresh_token(self, refresh_token: str) -> TokenSet:
        self._require_oauth_config()
        form = {
            "grant_type": "refresh_token",
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "refresh_token": refresh_token,
        }
        return await self._token_request(
            self.metadata.token_url, form, refresh=True, fallback_refresh=refresh_token
        )

    async def revoke_token(self, token: str) -> None:
        form = {"client_id": self._client_id, "client_secret": self._client_secret, "token": token}
        try:
            await self._request("POST", f"{AUTH_BASE}/revoke", data=form, retry=False)
        except PlatformAdapterError as exc:
            print(f"[ubereats] token revocation failed: {exc.message}")

    async def test_connection(self, credential: str) -> None:
        await self._request("GET", f"{API_BASE}/me", headers=bearer(credential))

    # -- deliveries ---------------------------------------------------------

    async def get_active_deliveries(self, connection: AdapterConnection) -> List[UnifiedDelivery]:
        data = await self._request(
            "GET", f"{API_BASE}/eats/orders", params={"status": "active"}, headers=bearer(connection.credential)
        )
        return [self.normalize_order(order) for order in require_list(self.platform_id, data, "orders")]

    async def get_delivery_details(self, connection: AdapterConnection, delivery_id: str) -> UnifiedDelivery:
        external_id = self.external_id_from(delivery_id)
        order = require_dict(
            self.platform_id,
            await self._request("GET", f"{API_BASE}/eats/orders/{external_id}", headers=bearer(connection.credential)),
            "order",
        )
        tracking = await self._tracking(connection, external_id)
        courier_location = (tracking.get("courier") or {}).get("location") if tracking else None
        if isinstance(order.get("courier"), dict) and isinstance(courier_location, dict):
            order["courier"]["location"] = courier_location
        return self.normalize_order(order)

    async def get_live_tracking(
        self, connection: AdapterConnection, delivery_id: str
    ) -> Optional[Tuple[DriverLocation, Optional[int]]]:
        """Courier position and Uber's own minutes-to-arrival, if a courier is en route."""
        tracking = await self._tracking(connection, self.external_id_from(delivery_id))
        if not tracking:
            return None
        courier = tracking.get("courier") if isinstance(tracking.get("courier"), dict) else {}
        location = self._location(courier.get("location"))
        if location is None:
            return None
        eta = tracking.get("delivery_eta") if isinstance(tracking.get("delivery_eta"), dict) else {}
        return location, coerce_int(eta.get("estimated_minutes"))

    async def _tracking(self, connection: AdapterConnection, external_id: str) -> Optional[Dict[str, Any]]:
        try:
            data = await self._request(
                "GET", f"{API_BASE}/eats/orders/{external_id}/tracking", headers=bearer(connection.credential)
            )
        except PlatformAdapterError as exc:
            print(f"[ubereats] tracking unavailable for {external_id}: {exc.message}")
            return None
        return data if isinstance(data, dict) else None

    # -- webhooks -----------------------------------------------------------

    def normalize_webhook_payload(self, event: WebhookEvent) -> Optional[UnifiedDelivery]:
        body = event.data if isinstance(event.data, dict) else {}
        data = body.get("data")
        if not isinstance(data, dict):
            return None
        if not data.get("order_id"):
            if data.get("status") or data.get("courier"):
                raise PlatformDataError(self.platform_id, "webhook is missing 'order_id'", body)
            return None
        now = utcnow()
        arrival = self._arrival(data.get("delivery_eta"), now, fallback=False)
        driver = self._courier(data.get("courier"))
        location = driver.location if driver else None
        return self._build_delivery(
            external_id=str(data["order_id"]),
            raw_status=data.get("status") or PREPARING,
            status_updated_at=parse_timestamp(body.get("event_time")) or now,
            driver=driver,
            destination=Destination(),
            eta=DeliveryEta(
                estimated_arrival=arrival,
                minutes_remaining=minutes_until(arrival, now),
                confidence="high" if location else "medium",
            ),
            order=OrderSummary(),
            tracking=TrackingInfo(
                map_available=location is not None,
                live_updates=True,
                contact_driver_available=bool(driver and driver.phone),
            ),
            timestamps=DeliveryTimestamps(ordered=now),
            meta=FetchMeta(adapter_id=self.platform_id, fetch_method="webhook", last_fetched_at=now, raw_data=body),
        )

    # -- normalisation ------------------------------------------------------

    def _location(self, raw: Any) -> Optional[DriverLocation]:
        location = build_location(raw, lat_key="latitude", lng_key="longitude", speed_key="speed")
        if location is not None and isinstance(raw, dict) and location.heading is None:
            location.heading = coerce_float(raw.get("bearing"))
        return location

    def _courier(self, raw: Any) -> Optional[DriverInfo]:
        if not isinstance(raw, dict):
            return None
        vehicle = None
        if isinstance(raw.get("vehicle"), dict):
            plate = raw["vehicle"].get("license_plate")
            vehicle = DriverVehicle(
                make=raw["vehicle"].get("make"),
                model=raw["vehicle"].get("model"),
                license_plate=mask_license_plate(plate) if plate else None,
            )
        phone = raw.get("phone_number")
        return DriverInfo(
            name=str(raw.get("name") or ""),
            photo=raw.get("picture_url"),
            phone=mask_phone_number(phone) if phone else None,
            rating=coerce_float(raw.get("rating")),
            vehicle=vehicle,
            location=self._location(raw.get("location")),
        )

    @staticmethod
    def _arrival(raw_eta: Any, now, fallback: bool = True):
        eta = raw_eta if isinstance(raw_eta, dict) else {}
        minutes = coerce_int(eta.get("estimated_minutes"))
        if minutes is None and fallback:
            minutes = DEFAULT_ETA_MINUTES
        return estimated_arrival(
            eta.get("estimated_arrival"),
            default_minutes=minutes,
            now=now,
        )

    def normalize_order(self, order: Dict[str, Any]) -> UnifiedDelivery:
        external_id = require_str(self.platform_id, order, "id")
        status = self.map_status(order.get("status"))
        now = utcnow()
        arrival = self._arrival(order.get("delivery_eta"), now)
        driver = self._courier(order.get("courier"))
        location = driver.location if driver else None

        items = None
        if isinstance(order.get("items"), list):
            items = [
                OrderItem(
                    name=str(item.get("title")),
                    quantity=coerce_float(item.get("quantity")) or 1,
                    unit_price=coerce_int((item.get("price") or {}).get("amount")),
                )
                for item in order["items"]
                if isinstance(item, dict) and item.get("title")
            ]
        address = order.get("delivery_address") if isinstance(order.get("delivery_address"), dict) else {}
        total = order.get("total") if isinstance(order.get("total"), dict) else {}
        updated_at = parse_timestamp(order.get("updated_at"))

        return self._build_delivery(
            external_id=external_id,
            raw_status=order.get("status"),
            status_updated_at=updated_at or now,
            driver=driver,
            destination=Destination(
                address=address.get("formatted_address")
                or format_address(
                    address.get("street_address"),
                    address.get("street_address_2"),
                    city=address.get("city"),
                    state=address.get("state"),
                    postal_code=address.get("postal_code"),
                ),
                address_line1=address.get("street_address"),
                city=address.get("city"),
                state=address.get("state"),
                zip_code=address.get("postal_code"),
                lat=coerce_float(address.get("latitude")) or 0.0,
                lng=coerce_float(address.get("longitude")) or 0.0,
                instructions=order.get("delivery_instructions"),
            ),
            eta=DeliveryEta(
                estimated_arrival=arrival,
                minutes_remaining=minutes_until(arrival, now),
                confidence="high" if location else "medium",
            ),
            order=OrderSummary(
                item_count=len(items) if items else 0,
                total_amount=coerce_int(total.get("amount")),
                currency=str(total.get("currency") or "USD"),
                items=items,
            ),
            tracking=TrackingInfo(
                url=order.get("tracking_url"),
                map_available=location is not None,
                live_updates=status in ACTIVE_STATUSES,
                contact_driver_available=bool(driver and driver.phone),
            ),
            timestamps=DeliveryTimestamps(
                ordered=parse_timestamp(order.get("created_at")) or now,
                confirmed=updated_at if status != PREPARING else None,
                driver_assigned=updated_at if driver else None,
                delivered=parse_timestamp(order.get("delivered_at")),
                cancelled=parse_timestamp(order.get("cancelled_at")),
            ),
            meta=FetchMeta(adapter_id=self.platform_id, fetch_method="api", last_fetched_at=now, raw_data=order),
        )


__all__ = ["UberEatsAdapter", "code_challenge", "generate_code_verifier"]
