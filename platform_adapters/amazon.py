"""
Amazon adapter (Session-proxy).

Login with Amazon supplies the OAuth handshake; order and shipment state
comes from polling the Selling Partner orders API. Amazon pushes nothing, so
``supports_webhooks()`` is False and freshness relies on the delivery cache
TTL. An order with several shipments yields one delivery per shipment.
"""

from __future__ import annotations

import os
from datetime import timedelta
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
    isoformat,
    minutes_until,
    parse_timestamp,
    utcnow,
)
from status_normalizer import ACTIVE_STATUSES

from . import AdapterCapabilities, AdapterConnection, AdapterMetadata, PlatformAdapter, TokenSet
from .common import build_items, build_location, estimated_arrival, format_address, require_dict, require_list, require_str
from .errors import PlatformAdapterError

API_BASE = "https://sellingpartnerapi-na.amazon.com"
ACTIVE_ORDER_STATUSES = ("Pending", "Unshipped", "PartiallyShipped", "Shipped")
SHIPMENT_SEPARATOR = "_shipment_"
DEFAULT_ETA_MINUTES = 24 * 60
LOOKBACK = timedelta(days=30)

CARRIERS = {
    "AMZN_US": "Amazon Logistics",
    "UPS": "UPS",
    "USPS": "USPS",
    "FEDEX": "FedEx",
}


def _headers(token: str) -> Dict[str, str]:
    return {"x-amz-access-token": token, "Accept": "application/json"}


class AmazonAdapter(PlatformAdapter):
    metadata = AdapterMetadata(
        platform_id="amazon",
        display_name="Amazon",
        primary_color="#FF9900",
        capabilities=AdapterCapabilities(
            oauth=True,
            webhooks=False,
            live_location=True,
            order_items=True,
            eta_updates=True,
        ),
        api_base_url=API_BASE,
        authorization_url="https://sellercentral.amazon.com/apps/authorize/consent",
        token_url="https://api.amazon.com/auth/o2/token",
        min_polling_interval=60,
        max_polling_interval=300,
        default_polling_interval=120,
    )

    def __init__(
        self,
        *,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(client=client)
        self._client_id = client_id if client_id is not None else (os.getenv("AMAZON_CLIENT_ID") or "").strip()
        self._client_secret = (
            client_secret if client_secret is not None else (os.getenv("AMAZON_CLIENT_SECRET") or "").strip()
        )
        app_url = (os.getenv("APP_URL") or "http://localhost:8080").rstrip("/")
        self._redirect_uri = redirect_uri or f"{app_url}/oauth/amazon/callback"

    def _require_oauth_config(self) -> None:
        missing = [
            name
            for name, value in (("AMAZON_CLIENT_ID", self._client_id), ("AMAZON_CLIENT_SECRET", self._client_secret))
            if not value
        ]
        if missing:
            raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")

    # -- OAuth ---------------------------------------------------------------

    def get_oauth_url(self, user_id: str, state: str, code_verifier: Optional[str] = None) -> str:
        self._require_oauth_config()
        params = {
            "application_id": self._client_id,
            "redirect_uri": self._redirect_uri,
            "state": state,
            "version": "beta",
        }
        return f"{self.metadata.authorization_url}?{urlencode(params)}"

    async def exchange_code(self, code: str, code_verifier: Optional[str] = None) -> TokenSet:
        self._require_oauth_config()
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self._redirect_uri,
            "client_id": self._client_id,
            "client_secret": self._client_secret,
        }
        return await self._token_request(self.metadata.token_url, form)

    async def refresh_token(self, refresh_token: str) -> TokenSet:
        self._require_oauth_config()
        form = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self._client_id,
            "client_secret": self._client_secret,
        }
        return await self._token_request(
            self.metadata.token_url, form, refresh=True, fallback_refresh=refresh_token
        )

    async def test_connection(self, credential: str) -> None:
        await self._request(
            "GET", f"{API_BASE}/orders/v0/orders", params=self._order_query(limit=1), headers=_headers(credential)
        )

    # -- deliveries ---------------------------------------------------------

    @staticmethod
    def _order_query(limit: Optional[int] = None) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "OrderStatuses": ",".join(ACTIVE_ORDER_STATUSES),
            "CreatedAfter": isoformat(utcnow() - LOOKBACK),
        }
        if limit:
            params["MaxResultsPerPage"] = limit
        return params

    @staticmethod
    def _payload(data: Any) -> Any:
        return data.get("payload", data) if isinstance(data, dict) else data

    async def get_active_deliveries(self, connection: AdapterConnection) -> List[UnifiedDelivery]:
        data = await self._request(
            "GET", f"{API_BASE}/orders/v0/orders", params=self._order_query(), headers=_headers(connection.credential)
        )
        deliveries: List[UnifiedDelivery] = []
        for order in require_list(self.platform_id, self._payload(data), "orders"):
            shipments = [s for s in order.get("shipments") or [] if isinstance(s, dict)]
            if not shipments:
                deliveries.append(self.normalize_order(order))
                continue
            deliveries.extend(self.normalize_order(order, shipment) for shipment in shipments)
        return deliveries

    async def get_delivery_details(self, connection: AdapterConnection, delivery_id: str) -> UnifiedDelivery:
        order_id, _, shipment_id = self.external_id_from(delivery_id).partition(SHIPMENT_SEPARATOR)
        headers = _headers(connection.credential)
        order = require_dict(
            self.platform_id,
            self._payload(await self._request("GET", f"{API_BASE}/orders/v0/orders/{order_id}", headers=headers)),
            "order",
        )
        shipments = [s for s in order.get("shipments") or [] if isinstance(s, dict)]
        shipment = next((s for s in shipments if s.get("shipment_id") == shipment_id), None)
        if shipment is None and shipments:
            shipment = shipments[0]

        if shipment is not None and not shipment.get("items"):
            items = self._payload(
                await self._request("GET", f"{API_BASE}/orders/v0/orders/{order_id}/orderItems", headers=headers)
            )
            if isinstance(items, dict) and isinstance(items.get("items"), list):
                shipment["items"] = items["items"]

        if shipment is not None and shipment.get("tracking_number"):
            await self._attach_live_tracking(headers, shipment)
        return self.normalize_order(order, shipment)

    async def _attach_live_tracking(self, headers: Dict[str, str], shipment: Dict[str, Any]) -> None:
        try:
            tracking = await self._request(
                "GET",
                f"{API_BASE}/shipping/v2/tracking",
                params={"trackingId": shipment["tracking_number"]},
                headers=headers,
                retry=False,
            )
        except PlatformAdapterError as exc:
            print(f"[amazon] live tracking unavailable: {exc.message}")
            return
        tracking = self._payload(tracking)
        if not isinstance(tracking, dict):
            return
        location = tracking.get("lastKnownLocation")
        if isinstance(location, dict):
            shipment["driver_location"] = location
            shipment["stops_remaining"] = tracking.get("stopsRemaining")

    # -- normalisation ------------------------------------------------------

    def normalize_order(self, order: Dict[str, Any], shipment: Optional[Dict[str, Any]] = None) -> UnifiedDelivery:
        order_id = require_str(self.platform_id, order, "order_id")
        external_id = order_id
        if shipment and shipment.get("shipment_id"):
            external_id = f"{order_id}{SHIPMENT_SEPARATOR}{shipment['shipment_id']}"
        shipment = shipment or {}
        raw_status = shipment.get("status") or order.get("order_status")
        status = self.map_status(raw_status)
        now = utcnow()

        window = shipment.get("delivery_window") if isinstance(shipment.get("delivery_window"), dict) else {}
        arrival = estimated_arrival(
            window.get("end_time"),
            shipment.get("promised_delivery_date"),
            default_minutes=DEFAULT_ETA_MINUTES,
            now=now,
        )
        location = build_location(
            shipment.get("driver_location"), lat_key="latitude", lng_key="longitude", time_key="timestamp", now=now
        )
        items = None
        if isinstance(shipment.get("items"), list):
            # SP-API items are keyed by title and flag substitutions separately
            items = build_items([
                dict(
                    item,
                    name=item.get("name") or item.get("title"),
                    substituted=item.get("is_substitution"),
                    substituted_with=(item.get("original_item") or {}).get("title"),
                )
                for item in shipment["items"]
                if isinstance(item, dict)
            ])
        address = order.get("shipping_address") if isinstance(order.get("shipping_address"), dict) else {}
        total = order.get("total") if isinstance(order.get("total"), dict) else {}
        tracking_number = shipment.get("tracking_number")

        return self._build_delivery(
            external_id=external_id,
            raw_status=raw_status,
            status_updated_at=parse_timestamp(order.get("last_update_date")) or now,
            # Amazon never identifies the courier; only the van position.
            driver=DriverInfo(name="", location=location) if location else None,
            destination=Destination(
                address=format_address(
                    address.get("address_line_1"),
                    address.get("address_line_2"),
                    address.get("address_line_3"),
                    city=address.get("city"),
                    state=address.get("state_or_region"),
                    postal_code=address.get("postal_code"),
                ),
                address_line1=address.get("address_line_1"),
                city=address.get("city"),
                state=address.get("state_or_region"),
                zip_code=address.get("postal_code"),
                lat=coerce_float(address.get("latitude")) or 0.0,
                lng=coerce_float(address.get("longitude")) or 0.0,
                instructions=order.get("delivery_instructions"),
            ),
            eta=DeliveryEta(
                estimated_arrival=arrival,
                minutes_remaining=minutes_until(arrival, now),
                stops_remaining=coerce_int(shipment.get("stops_remaining")),
                confidence="high" if location else "medium",
            ),
            order=OrderSummary(
                item_count=int(sum(item.quantity for item in items)) if items else 0,
                total_amount=coerce_int(total.get("amount")),
                currency=str(total.get("currency") or "USD"),
                items=items,
            ),
            tracking=TrackingInfo(
                url=f"https://www.amazon.com/progress-tracker/package?trackingId={tracking_number}"
                if tracking_number
                else None,
                map_available=location is not None,
                live_updates=status in ACTIVE_STATUSES,
                contact_driver_available=False,
            ),
            timestamps=DeliveryTimestamps(
                ordered=parse_timestamp(order.get("purchase_date")) or now,
                delivered=parse_timestamp(shipment.get("actual_delivery_date")),
            ),
            meta=FetchMeta(
                adapter_id=self.platform_id,
                fetch_method="polling",
                last_fetched_at=now,
                raw_data={"order": order, "shipment": shipment or None, "carrier": self.carrier_name(shipment)},
            ),
        )

    @staticmethod
    def carrier_name(shipment: Dict[str, Any]) -> Optional[str]:
        carrier = shipment.get("carrier") if shipment else None
        return CARRIERS.get(carrier, carrier) if carrier else None


__all__ = ["AmazonAdapter"]
