"""
Instacart Connect adapter (Direct-API).

OAuth 2.0 authorization-code flow, REST polling against Connect v2 and signed
webhooks. Costco same-day delivery is fulfilled through Instacart, so the
Costco adapter is the same integration under a different platform key; orders
whose retailer is Costco are reported with ``platform="costco"``.

Environment
-----------
``INSTACART_CLIENT_ID`` / ``INSTACART_CLIENT_SECRET`` - OAuth app credentials.
``INSTACART_WEBHOOK_SECRET`` - HMAC-SHA256 webhook secret.
``APP_URL`` - public base URL used to build the OAuth redirect URI.
"""

from __future__ import annotations

import os
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from delivery_models import (
    DeliveryEta,
    DeliveryTimestamps,
    Destination,
    DriverInfo,
    FetchMeta,
    OrderSummary,
    TrackingInfo,
    UnifiedDelivery,
    coerce_float,
    coerce_int,
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
from .common import (
    build_items,
    build_location,
    estimated_arrival,
    format_address,
    require_dict,
    require_list,
    require_str,
)
from .errors import PlatformAdapterError
from .http import bearer

API_BASE = "https://connect.instacart.com/v2"
OAUTH_BASE = "https://connect.instacart.com/oauth"
SCOPES = ("orders:read", "profile:read")


def _capabilities() -> AdapterCapabilities:
    return AdapterCapabilities(
        oauth=True,
        webhooks=True,
        live_location=True,
        driver_contact=True,
        order_items=True,
        eta_updates=True,
    )


class InstacartAdapter(PlatformAdapter):
    metadata = AdapterMetadata(
        platform_id="instacart",
        display_name="Instacart",
        primary_color="#43B02A",
        capabilities=_capabilities(),
        api_base_url=API_BASE,
        authorization_url=f"{OAUTH_BASE}/authorize",
        token_url=f"{OAUTH_BASE}/token",
        min_polling_interval=30,
        max_polling_interval=300,
        default_polling_interval=60,
    )
    webhook_secret_env = "INSTACART_WEBHOOK_SECRET"

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
        self._client_id = client_id if client_id is not None else (os.getenv("INSTACART_CLIENT_ID") or "").strip()
        self._client_secret = (
            client_secret if client_secret is not None else (os.getenv("INSTACART_CLIENT_SECRET") or "").strip()
        )
        app_url = (os.getenv("APP_URL") or "http://localhost:8080").rstrip("/")
        self._redirect_uri = redirect_uri or f"{app_url}/oauth/{self.platform_id}/callback"

    def _require_oauth_config(self) -> None:
        missing: List[str] = []
        if not self._client_id:
            missing.append("INSTACART_CLIENT_ID")
        if not self._client_secret:
            missing.append("INSTACART_CLIENT_SECRET")
        if missing:
            raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")

    def _basic_auth(self) -> httpx.BasicAuth:
        return httpx.BasicAuth(self._client_id, self._client_secret)

    # -- OAuth ---------------------------------------------------------------

    def get_oauth_url(self, user_id: str, state: str, code_verifier: Optional[str] = None) -> str:
        self._require_oauth_config()
        params = {
            "client_id": self._client_id,
            "redirect_uri": self._redirect_uri,
            "response_type": "code",
            "scope": " ".join(SCOPES),
            "state": state,
        }
        return f"{self.metadata.authorization_url}?{urlencode(params)}"

    async def exchange_code(self, code: str, code_verifier: Optional[str] = None) -> TokenSet:
        self._require_oauth_config()
        form = {"grant_type": "authorization_code", "code": code, "redirect_uri": self._redirect_uri}
        return await self._token_request(self.metadata.token_url, form, auth=self._basic_auth())

    async def refresh_token(self, refresh_token: str) -> TokenSet:
        self._require_oauth_config()
        form = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        return await self._token_request(
            self.metadata.token_url,
            form,
            auth=self._basic_auth(),
            refresh=True,
            fallback_refresh=refresh_token,
        )

    async def revoke_token(self, token: str) -> None:
        try:
            await self._request(
                "POST", f"{OAUTH_BASE}/revoke", data={"token": token}, auth=self._basic_auth(), retry=False
            )
        except PlatformAdapterError as exc:
            print(f"[{self.platform_id}] token revocation failed: {exc.message}")

    async def test_connection(self, credential: str) -> None:
        await self._request("GET", f"{API_BASE}/me", headers=bearer(credential))

    # -- deliveries ---------------------------------------------------------

    async def get_active_deliveries(self, connection: AdapterConnection) -> List[UnifiedDelivery]:
        data = await self._request(
            "GET", f"{API_BASE}/orders", params={"status": "active"}, headers=bearer(connection.credential)
        )
        return [self.normalize_order(order) for order in require_list(self.platform_id, data, "orders")]

    async def get_delivery_details(self, connection: AdapterConnection, delivery_id: str) -> UnifiedDelivery:
        external_id = self.external_id_from(delivery_id)
        headers = bearer(connection.credential)
        order = require_dict(
            self.platform_id,
            await self._request("GET", f"{API_BASE}/orders/{external_id}", headers=headers),
            "order",
        )
        shopper = order.get("shopper")
        if isinstance(shopper, dict):
            location = await self._shopper_location(headers, external_id)
            if location:
                shopper["location"] = location
        return self.normalize_order(order)

    async def _shopper_location(self, headers: Dict[str, str], external_id: str) -> Optional[Dict[str, Any]]:
        try:
            data = await self._request("GET", f"{API_BASE}/orders/{external_id}/fulfillment", headers=headers)
        except PlatformAdapterError as exc:
            print(f"[{self.platform_id}] shopper location unavailable for {external_id}: {exc.message}")
            return None
        if isinstance(data, dict) and isinstance(data.get("location"), dict):
            return data["location"]
        return None

    # -- webhooks -----------------------------------------------------------

    def normalize_webhook_payload(self, event: WebhookEvent) -> Optional[UnifiedDelivery]:
        body = event.data if isinstance(event.data, dict) else {}
        data = body.get("data")
        if not isinstance(data, dict):
            return None
        order = data.get("order")
        if order is None:
            # Partial events (location-only pings) carry no order snapshot.
            return None
        delivery = self.normalize_order(require_dict(self.platform_id, order, "order"))
        delivery.meta.fetch_method = "webhook"
        return delivery

    # -- normalisation ------------------------------------------------------

    def _is_costco(self, order: Dict[str, Any]) -> bool:
        retailer = order.get("retailer")
        if not isinstance(retailer, dict):
            return False
        return retailer.get("slug") == "costco" or "costco" in str(retailer.get("name") or "").lower()

    def normalize_order(self, order: Dict[str, Any]) -> UnifiedDelivery:
        platform = self.platform_id
        external_id = require_str(platform, order, "id")
        now = utcnow()
        window = order.get("estimated_delivery") or order.get("delivery_window") or {}
        arrival = estimated_arrival(window.get("end") if isinstance(window, dict) else None)
        status = self.map_status(order.get("status"))

        shopper = order.get("shopper") if isinstance(order.get("shopper"), dict) else None
        location = build_location(shopper.get("location"), speed_key="speed", now=now) if shopper else None
        driver = None
        if shopper:
            phone = shopper.get("phone_number")
            driver = DriverInfo(
                name=str(shopper.get("first_name") or ""),
                photo=shopper.get("photo_url"),
                phone=mask_phone_number(phone) if phone else None,
                rating=coerce_float(shopper.get("rating")),
                location=location,
            )

        address = require_dict(platform, order.get("delivery_address"), "delivery_address")
        items = build_items(order.get("items"), price_key="unit_price")
        updated_at = parse_timestamp(order.get("updated_at"))

        return self._build_delivery(
            platform="costco" if self._is_costco(order) else platform,
            external_id=external_id,
            raw_status=order.get("status"),
            status_updated_at=updated_at or now,
            driver=driver,
            destination=Destination(
                address=format_address(
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
                instructions=address.get("delivery_instructions"),
            ),
            eta=DeliveryEta(
                estimated_arrival=arrival,
                minutes_remaining=minutes_until(arrival, now),
                confidence="high" if location else "medium",
            ),
            order=OrderSummary(
                item_count=coerce_int(order.get("items_count")) or (len(items) if items else 0),
                total_amount=coerce_int(order.get("total")),
                currency=str(order.get("currency") or "USD"),
                items=items,
            ),
            tracking=TrackingInfo(
                url=order.get("tracking_url"),
                map_available=location is not None,
                live_updates=status in ACTIVE_STATUSES,
                contact_driver_available=bool(shopper and shopper.get("phone_number")),
            ),
            timestamps=DeliveryTimestamps(
                ordered=parse_timestamp(order.get("created_at")) or now,
                confirmed=updated_at if status != PREPARING else None,
                driver_assigned=updated_at if shopper else None,
                delivered=parse_timestamp(order.get("delivered_at")),
                cancelled=parse_timestamp(order.get("cancelled_at")),
            ),
            meta=FetchMeta(adapter_id=self.platform_id, fetch_method="api", last_fetched_at=now, raw_data=order),
        )


class CostcoAdapter(InstacartAdapter):
    """Costco deliveries, fulfilled by Instacart under Costco branding."""

    metadata = AdapterMetadata(
        platform_id="costco",
        display_name="Costco",
        primary_color="#E31837",
        capabilities=_capabilities(),
        api_base_url=API_BASE,
        authorization_url=f"{OAUTH_BASE}/authorize",
        token_url=f"{OAUTH_BASE}/token",
        min_polling_interval=30,
        max_polling_interval=300,
        default_polling_interval=60,
    )

    def normalize_order(self, order: Dict[str, Any]) -> UnifiedDelivery:
        delivery = super().normalize_order(order)
        if delivery.platform != "costco":
            # A Costco connection only ever sees Costco orders.
            delivery.platform = "costco"
            delivery.id = self.generate_delivery_id(delivery.external_order_id)
        return delivery


__all__ = ["CostcoAdapter", "InstacartAdapter"]
