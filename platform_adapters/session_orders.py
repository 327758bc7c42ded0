"""
Shared order handling for the embedded-session retailers.

Walmart, Sam's Club, Shipt and Drizly expose near-identical private order
APIs behind a captured browser session: list active orders, fetch one order,
and (optionally) poll a tracking endpoint for the driver's position. They
differ only in URLs, key names and which part of the session authenticates,
so each concrete adapter is a handful of class attributes on top of
``SessionOrderAdapter``.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

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
from status_normalizer import ACTIVE_STATUSES, PREPARING

from . import AdapterConnection, EmbeddedSessionAdapter
from .common import (
    build_items,
    build_location,
    estimated_arrival,
    first_present,
    format_address,
    require_dict,
    require_list,
    require_str,
)
from .errors import PlatformAdapterError


class SessionOrderAdapter(EmbeddedSessionAdapter):
    api_base: str = ""
    active_orders_path: str = "/orders?status=active"
    order_path: str = "/orders/{order_id}"
    tracking_path: Optional[str] = "/orders/{order_id}/tracking"
    test_path: str = "/orders?status=active"

    order_id_key: str = "id"
    driver_key: str = "driver"
    window_key: str = "delivery_window"
    window_end_key: str = "end"
    address_line_keys: tuple[str, ...] = ("street_address",)

    # -- HTTP ----------------------------------------------------------------

    async def _session_get(self, session_json: str, path: str) -> Any:
        session = self.parse_session(session_json)
        return await self._request("GET", f"{self.api_base}{path}", headers=self.session_headers(session))

    async def test_connection(self, credential: str) -> None:
        await self._session_get(credential, self.test_path)

    async def get_active_deliveries(self, connection: AdapterConnection) -> List[UnifiedDelivery]:
        data = await self._session_get(connection.credential, self.active_orders_path)
        return [self.normalize_order(order) for order in require_list(self.platform_id, data, "orders")]

    async def get_delivery_details(self, connection: AdapterConnection, delivery_id: str) -> UnifiedDelivery:
        order_id = self.external_id_from(delivery_id)
        order = require_dict(
            self.platform_id,
            await self._session_get(connection.credential, self.order_path.format(order_id=order_id)),
            "order",
        )
        if isinstance(order.get(self.driver_key), dict):
            tracking = await self.get_tracking(connection, order_id)
            if tracking:
                if isinstance(tracking.get("location"), dict):
                    order[self.driver_key]["location"] = tracking["location"]
                eta = first_present(tracking, ("eta_minutes", "eta"))
                if eta is not None:
                    order["eta_minutes"] = eta
        return self.normalize_order(order)

    async def get_tracking(self, connection: AdapterConnection, order_id: str) -> Optional[Dict[str, Any]]:
        """Driver position and minutes-to-arrival; ``None`` when unavailable."""
        if not self.tracking_path:
            return None
        try:
            data = await self._session_get(connection.credential, self.tracking_path.format(order_id=order_id))
        except PlatformAdapterError as exc:
            print(f"[{self.platform_id}] tracking unavailable for {order_id}: {exc.message}")
            return None
        return data if isinstance(data, dict) else None

    # -- normalisation ------------------------------------------------------

    def _location(self, raw: Any) -> Optional[DriverLocation]:
        if not isinstance(raw, dict):
            return None
        if "latitude" in raw:
            location = build_location(raw, lat_key="latitude", lng_key="longitude", speed_key="speed")
        else:
            location = build_location(raw, speed_key="speed")
        if location is not None and location.heading is None:
            location.heading = coerce_float(raw.get("bearing"))
        return location

    def _driver(self, raw: Any) -> Optional[DriverInfo]:
        if not isinstance(raw, dict):
            return None
        vehicle = None
        if isinstance(raw.get("vehicle"), dict):
            plate = raw["vehicle"].get("license_plate")
            vehicle = DriverVehicle(
                make=raw["vehicle"].get("make"),
                model=raw["vehicle"].get("model"),
                color=raw["vehicle"].get("color"),
                license_plate=mask_license_plate(plate) if plate else None,
            )
        phone = first_present(raw, ("phone", "phone_number"))
        return DriverInfo(
            name=str(first_present(raw, ("first_name", "name")) or ""),
            photo=raw.get("photo_url"),
            phone=mask_phone_number(str(phone)) if phone else None,
            rating=coerce_float(raw.get("rating")),
            vehicle=vehicle,
            location=self._location(raw.get("location")),
        )

    def normalize_order(self, order: Dict[str, Any]) -> UnifiedDelivery:
        external_id = require_str(self.platform_id, order, self.order_id_key)
        status = self.map_status(order.get("status"))
        now = utcnow()

        window = order.get(self.window_key) if isinstance(order.get(self.window_key), dict) else {}
        eta_minutes = coerce_int(order.get("eta_minutes"))
        if eta_minutes is not None:
            # Live tracking minutes beat the booked window.
            arrival = estimated_arrival(default_minutes=eta_minutes, now=now)
        else:
            arrival = estimated_arrival(window.get(self.window_end_key))
        driver = self._driver(order.get(self.driver_key))
        location = driver.location if driver else None

        address = order.get("delivery_address") if isinstance(order.get("delivery_address"), dict) else {}
        line1 = first_present(address, self.address_line_keys)
        items = build_items(order.get("items"))
        updated_at = parse_timestamp(order.get("updated_at"))

        return self._build_delivery(
            external_id=external_id,
            raw_status=order.get("status"),
            status_updated_at=updated_at or now,
            driver=driver,
            destination=Destination(
                address=format_address(
                    line1,
                    address.get("address_line_2"),
                    city=address.get("city"),
                    state=address.get("state"),
                    postal_code=address.get("postal_code"),
                ),
                address_line1=line1,
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
                item_count=coerce_int(order.get("items_count")) or (len(items) if items else 0),
                total_amount=coerce_int(order.get("total")),
                currency=str(order.get("currency") or "USD"),
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
                picked_up=parse_timestamp(order.get("picked_up_at")),
                delivered=parse_timestamp(order.get("delivered_at")),
                cancelled=parse_timestamp(order.get("cancelled_at")),
            ),
            meta=FetchMeta(adapter_id=self.platform_id, fetch_method="embedded", last_fetched_at=now, raw_data=order),
        )


__all__ = ["SessionOrderAdapter"]
