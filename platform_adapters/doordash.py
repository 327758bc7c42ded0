"""
DoorDash Drive adapter (Direct-API).

DoorDash has no per-user OAuth. Every request is signed with an app-level
JWT (HS256, ``dd-ver: DD-JWT-V1``) built from the developer credentials, and
dasher updates arrive through signed webhooks. A user "connects" DoorDash by
recording an app-level connection once the credentials have been checked.

Environment
-----------
``DOORDASH_DEVELOPER_ID`` / ``DOORDASH_KEY_ID`` / ``DOORDASH_SIGNING_SECRET``
``DOORDASH_WEBHOOK_SECRET`` - HMAC-SHA256 secret; signatures may carry a
``sha256=`` prefix.
"""

from __future__ import annotations

import os
import time
from typing import Any, Dict, List, Optional

import httpx
import jwt

from delivery_models import (
    DeliveryEta,
    DeliveryTimestamps,
    Destination,
    DriverInfo,
    DriverLocation,
    DriverVehicle,
    FetchMeta,
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
from eta_engine import haversine_distance
from status_normalizer import ACTIVE_STATUSES

from . import (
    AdapterCapabilities,
    AdapterConnection,
    AdapterMetadata,
    PlatformAdapter,
    TokenSet,
    WebhookEvent,
)
from .common import build_items, build_location, estimated_arrival, format_address, require_list, require_str
from .errors import PlatformAdapterError, PlatformDataError, UpstreamAuthError
from .http import bearer

API_BASE = "https://openapi.doordash.com"
JWT_TTL_S = 300
JWT_REFRESH_MARGIN_S = 30
DEFAULT_ETA_MINUTES = 30
APP_CONNECTION_TOKEN = "doordash-app"


class DoorDashAdapter(PlatformAdapter):
    metadata = AdapterMetadata(
        platform_id="doordash",
        display_name="DoorDash",
        primary_color="#FF3008",
        capabilities=AdapterCapabilities(
            oauth=False,
            webhooks=True,
            live_location=True,
            driver_contact=True,
            order_items=True,
            eta_updates=True,
        ),
        api_base_url=f"{API_BASE}/drive/v2",
        min_polling_interval=30,
        max_polling_interval=120,
        default_polling_interval=60,
    )
    webhook_secret_env = "DOORDASH_WEBHOOK_SECRET"
    webhook_signature_prefix = "sha256="

    def __init__(
        self,
        *,
        developer_id: Optional[str] = None,
        key_id: Optional[str] = None,
        signing_secret: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        webhook_secret: Optional[str] = None,
    ) -> None:
        super().__init__(client=client, webhook_secret=webhook_secret)
        self._developer_id = developer_id or (os.getenv("DOORDASH_DEVELOPER_ID") or "").strip()
        self._key_id = key_id or (os.getenv("DOORDASH_KEY_ID") or "").strip()
        self._signing_secret = signing_secret or (os.getenv("DOORDASH_SIGNING_SECRET") or "").strip()
        self._jwt_cache: Optional[tuple[str, float]] = None

    # -- app-level auth -----------------------------------------------------

    def _require_credentials(self) -> None:
        missing = [
            name
            for name, value in (
                ("DOORDASH_DEVELOPER_ID", self._developer_id),
                ("DOORDASH_KEY_ID", self._key_id),
                ("DOORDASH_SIGNING_SECRET", self._signing_secret),
            )
            if not value
        ]
        if missing:
            raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")

    def generate_jwt(self, now: Optional[float] = None) -> str:
        """Signed Drive API token, reused until 30s before it expires."""
        self._require_credentials()
        now = time.time() if now is None else now
        if self._jwt_cache and self._jwt_cache[1] > now + JWT_REFRESH_MARGIN_S:
            return self._jwt_cache[0]
        issued = int(now)
        claims = {
            "aud": "doordash",
            "iss": self._developer_id,
            "kid": self._key_id,
            "iat": issued,
            "exp": issued + JWT_TTL_S,
        }
        token = jwt.encode(
            claims,
            self._signing_secret,
            algorithm="HS256",
            headers={"dd-ver": "DD-JWT-V1"},
        )
        self._jwt_cache = (token, float(issued + JWT_TTL_S))
        return token

    async def _api(self, path: str, **kwargs: Any) -> Any:
        try:
            return await self._request("GET", f"{API_BASE}{path}", headers=bearer(self.generate_jwt()), **kwargs)
        except UpstreamAuthError:
            self._jwt_cache = None
            raise

    async def test_connection(self, credential: str) -> None:
        await self._api("/drive/v2/deliveries", params={"status": "active"})

    async def connect_session(self, payload: Dict[str, Any]) -> TokenSet:
        await self.test_connection(APP_CONNECTION_TOKEN)
        return TokenSet(access_token=APP_CONNECTION_TOKEN, token_type="app")

    # -- deliveries ---------------------------------------------------------

    async def get_active_deliveries(self, connection: AdapterConnection) -> List[UnifiedDelivery]:
        data = await self._api("/drive/v2/deliveries", params={"status": "active"})
        return [self.normalize_delivery(item) for item in require_list(self.platform_id, data, "deliveries")]

    async def get_delivery_details(self, connection: AdapterConnection, delivery_id: str) -> UnifiedDelivery:
        data = await self._api(f"/drive/v2/deliveries/{self.external_id_from(delivery_id)}")
        if not isinstance(data, dict):
            raise PlatformDataError(self.platform_id, "delivery must be an object", data)
        return self.normalize_delivery(data)

    async def get_dasher_location(self, delivery_id: str) -> Optional[DriverLocation]:
        try:
            data = await self._api(f"/drive/v2/deliveries/{self.external_id_from(delivery_id)}")
        except PlatformAdapterError as exc:
            print(f"[doordash] dasher location lookup failed for {delivery_id}: {exc.message}")
            return None
        dasher = data.get("dasher") if isinstance(data, dict) else None
        if not isinstance(dasher, dict):
            return None
        return self._dasher_location(dasher.get("location"))

    # -- webhooks -----------------------------------------------------------

    def normalize_webhook_payload(self, event: WebhookEvent) -> Optional[UnifiedDelivery]:
        body = event.data if isinstance(event.data, dict) else {}
        raw_status = body.get("delivery_status") or body.get("status")
        external_id = body.get("external_delivery_id")
        if not raw_status and not external_id:
            return None
        if not external_id:
            raise PlatformDataError(self.platform_id, "webhook is missing 'external_delivery_id'", body)
        if not raw_status:
            raise PlatformDataError(self.platform_id, "webhook is missing 'delivery_status'", body)

        now = utcnow()
        arrival = estimated_arrival(body.get("estimated_delivery_time"), now=now)
        driver = self._dasher(body.get("dasher"))
        location = driver.location if driver else None
        # Partial snapshot: the pipeline merges it over the cached delivery.
        return self._build_delivery(
            external_id=str(external_id),
            raw_status=raw_status,
            status_updated_at=parse_timestamp(body.get("timestamp")) or now,
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
            timestamps=DeliveryTimestamps(
                ordered=parse_timestamp(body.get("created_at")) or now,
                picked_up=parse_timestamp(body.get("pickup_time")),
                delivered=parse_timestamp(body.get("dropoff_time")),
            ),
            meta=FetchMeta(adapter_id=self.platform_id, fetch_method="webhook", last_fetched_at=now, raw_data=body),
        )

    # -- normalisation ------------------------------------------------------

    def _dasher_location(self, raw: Any) -> Optional[DriverLocation]:
        return build_location(raw, time_key="timestamp", speed_mph_key="speed_mph")

    def _dasher(self, raw: Any) -> Optional[DriverInfo]:
        if not isinstance(raw, dict):
            return None
        vehicle = None
        vehicle_raw = raw.get("vehicle")
        if isinstance(vehicle_raw, dict):
            plate = vehicle_raw.get("license_plate_last_four")
            vehicle = DriverVehicle(
                make=vehicle_raw.get("make"),
                model=vehicle_raw.get("model"),
                color=vehicle_raw.get("color"),
                license_plate=mask_license_plate(plate) if plate else None,
            )
        phone = raw.get("phone_number")
        return DriverInfo(
            name=str(raw.get("first_name") or ""),
            photo=raw.get("profile_image_url"),
            phone=mask_phone_number(phone) if phone else None,
            rating=coerce_float(raw.get("rating")),
            vehicle=vehicle,
            location=self._dasher_location(raw.get("location")),
        )

    def normalize_delivery(self, delivery: Dict[str, Any]) -> UnifiedDelivery:
        external_id = require_str(self.platform_id, delivery, "external_delivery_id", "delivery")
        raw_status = delivery.get("delivery_status")
        status = self.map_status(raw_status)
        now = utcnow()
        arrival = estimated_arrival(
            delivery.get("estimated_delivery_time"), default_minutes=DEFAULT_ETA_MINUTES, now=now
        )
        driver = self._dasher(delivery.get("dasher"))
        location = driver.location if driver else None

        address = delivery.get("dropoff_address") if isinstance(delivery.get("dropoff_address"), dict) else {}
        lat = coerce_float(address.get("latitude"))
        lng = coerce_float(address.get("longitude"))
        distance = None
        if location and lat is not None and lng is not None:
            distance = round(haversine_distance((location.lat, location.lng), (lat, lng)), 1)

        items = build_items(delivery.get("items"))
        updated_at = parse_timestamp(delivery.get("updated_at"))
        return self._build_delivery(
            external_id=external_id,
            raw_status=raw_status,
            status_updated_at=updated_at or now,
            driver=driver,
            destination=Destination(
                address=format_address(
                    address.get("street"),
                    address.get("unit"),
                    city=address.get("city"),
                    state=address.get("state"),
                    postal_code=address.get("zip_code"),
                ),
                address_line1=address.get("street"),
                city=address.get("city"),
                state=address.get("state"),
                zip_code=address.get("zip_code"),
                lat=lat or 0.0,
                lng=lng or 0.0,
                instructions=delivery.get("dropoff_instructions"),
            ),
            eta=DeliveryEta(
                estimated_arrival=arrival,
                minutes_remaining=minutes_until(arrival, now),
                distance_remaining_miles=distance,
                confidence="high" if location else "medium",
            ),
            order=OrderSummary(
                item_count=len(items) if items else 0,
                total_amount=coerce_int(delivery.get("order_value")),
                currency=str(delivery.get("currency") or "USD"),
                items=items,
            ),
            tracking=TrackingInfo(
                url=delivery.get("tracking_url"),
                map_available=location is not None,
                live_updates=status in ACTIVE_STATUSES,
                contact_driver_available=bool(driver and driver.phone),
            ),
            timestamps=DeliveryTimestamps(
                ordered=parse_timestamp(delivery.get("created_at")) or now,
                confirmed=updated_at if raw_status != "created" else None,
                driver_assigned=updated_at if driver else None,
                picked_up=parse_timestamp(delivery.get("picked_up_at")),
                delivered=parse_timestamp(delivery.get("delivered_at")),
                cancelled=parse_timestamp(delivery.get("cancelled_at")),
            ),
            meta=FetchMeta(adapter_id=self.platform_id, fetch_method="api", last_fetched_at=now, raw_data=delivery),
        )


__all__ = ["DoorDashAdapter"]
