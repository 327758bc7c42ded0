"""Canonical cross-platform delivery model.

Adapters build ``UnifiedDelivery`` objects from platform payloads; the cache,
history store, realtime events and HTTP API all serialise them with
``to_dict()`` and restore them with ``UnifiedDelivery.from_dict()``.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from status_normalizer import DEFAULT_STATUS, get_status_label

PLATFORMS: tuple[str, ...] = (
    "instacart",
    "doordash",
    "ubereats",
    "amazon",
    "walmart",
    "shipt",
    "drizly",
    "totalwine",
    "costco",
    "samsclub",
)

FETCH_METHODS = ("api", "webhook", "polling", "embedded")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO-8601 strings or epoch seconds/milliseconds into aware UTC datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = float(value)
        if math.isnan(seconds) or math.isinf(seconds):
            return None
        if seconds > 10_000_000_000:
            seconds /= 1000.0
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if text.lower().endswith("z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    return None


def coerce_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def coerce_int(value: Any) -> Optional[int]:
    result = coerce_float(value)
    return None if result is None else int(round(result))


def mask_phone_number(phone: str) -> str:
    digits = re.sub(r"\D", "", phone or "")
    if len(digits) < 4:
        return phone
    return f"***-***-{digits[-4:]}"


def mask_license_plate(plate: str) -> str:
    if not plate or len(plate) < 3:
        return plate
    return f"***{plate[-3:]}"


def generate_delivery_id(platform: str, external_id: str) -> str:
    return f"{platform[:2]}_{external_id}"


def minutes_until(target: Optional[datetime], now: Optional[datetime] = None) -> int:
    if target is None:
        return 0
    now = now or utcnow()
    return max(0, round((target - now).total_seconds() / 60))


def _drop_none(data: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in data.items() if value is not None}


@dataclass
class DriverLocation:
    lat: float
    lng: float
    timestamp: datetime = field(default_factory=utcnow)
    heading: Optional[float] = None
    speed: Optional[float] = None  # km/h
    accuracy: Optional[float] = None  # metres

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none({
            "lat": self.lat,
            "lng": self.lng,
            "heading": self.heading,
            "speed": self.speed,
            "accuracy": self.accuracy,
            "timestamp": isoformat(self.timestamp),
        })

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> Optional["DriverLocation"]:
        if not isinstance(raw, dict):
            return None
        lat = coerce_float(raw.get("lat"))
        lng = coerce_float(raw.get("lng"))
        if lat is None or lng is None:
            return None
        return cls(
            lat=lat,
            lng=lng,
            timestamp=parse_timestamp(raw.get("timestamp")) or utcnow(),
            heading=coerce_float(raw.get("heading")),
            speed=coerce_float(raw.get("speed")),
            accuracy=coerce_float(raw.get("accuracy")),
        )


@dataclass
class DriverVehicle:
    make: Optional[str] = None
    model: Optional[str] = None
    color: Optional[str] = None
    license_plate: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none({
            "make": self.make,
            "model": self.model,
            "color": self.color,
            "licensePlate": self.license_plate,
        })


@dataclass
class DriverInfo:
    name: str
    photo: Optional[str] = None
    phone: Optional[str] = None  # always masked
    rating: Optional[float] = None
    vehicle: Optional[DriverVehicle] = None
    location: Optional[DriverLocation] = None

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none({
            "name": self.name,
            "photo": self.photo,
            "phone": self.phone,
            "rating": self.rating,
            "vehicle": self.vehicle.to_dict() if self.vehicle else None,
            "location": self.location.to_dict() if self.location else None,
        })

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> Optional["DriverInfo"]:
        if not isinstance(raw, dict):
            return None
        vehicle_raw = raw.get("vehicle")
        vehicle = None
        if isinstance(vehicle_raw, dict):
            vehicle = DriverVehicle(
                make=vehicle_raw.get("make"),
                model=vehicle_raw.get("model"),
                color=vehicle_raw.get("color"),
                license_plate=vehicle_raw.get("licensePlate"),
            )
        return cls(
            name=str(raw.get("name") or ""),
            photo=raw.get("photo"),
            phone=raw.get("phone"),
            rating=coerce_float(raw.get("rating")),
            vehicle=vehicle,
            location=DriverLocation.from_dict(raw.get("location")),
        )


@dataclass
class Destination:
    address: str = ""
    lat: float = 0.0
    lng: float = 0.0
    address_line1: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    instructions: Optional[str] = None

    def has_coordinates(self) -> bool:
        return not (self.lat == 0.0 and self.lng == 0.0)

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none({
            "address": self.address,
            "addressLine1": self.address_line1,
            "city": self.city,
            "state": self.state,
            "zipCode": self.zip_code,
            "lat": self.lat,
            "lng": self.lng,
            "instructions": self.instructions,
        })

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "Destination":
        raw = raw if isinstance(raw, dict) else {}
        return cls(
            address=str(raw.get("address") or ""),
            lat=coerce_float(raw.get("lat")) or 0.0,
            lng=coerce_float(raw.get("lng")) or 0.0,
            address_line1=raw.get("addressLine1"),
            city=raw.get("city"),
            state=raw.get("state"),
            zip_code=raw.get("zipCode"),
            instructions=raw.get("instructions"),
        )


@dataclass
class DeliveryEta:
    estimated_arrival: Optional[datetime] = None
    minutes_remaining: int = 0
    distance_remaining_miles: Optional[float] = None
    stops_remaining: Optional[int] = None
    traffic_conditions: Optional[str] = None  # light | moderate | heavy
    confidence: Optional[str] = None  # high | medium | low

    def to_dict(self) -> Dict[str, Any]:
        distance = None
        if self.distance_remaining_miles is not None:
            distance = {"value": self.distance_remaining_miles, "unit": "miles"}
        return _drop_none({
            "estimatedArrival": isoformat(self.estimated_arrival),
            "minutesRemaining": self.minutes_remaining,
            "distanceRemaining": distance,
            "stopsRemaining": self.stops_remaining,
            "trafficConditions": self.traffic_conditions,
            "confidence": self.confidence,
        })

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "DeliveryEta":
        raw = raw if isinstance(raw, dict) else {}
        distance = raw.get("distanceRemaining")
        return cls(
            estimated_arrival=parse_timestamp(raw.get("estimatedArrival")),
            minutes_remaining=coerce_int(raw.get("minutesRemaining")) or 0,
            distance_remaining_miles=coerce_float(distance.get("value")) if isinstance(distance, dict) else None,
            stops_remaining=coerce_int(raw.get("stopsRemaining")),
            traffic_conditions=raw.get("trafficConditions"),
            confidence=raw.get("confidence"),
        )


@dataclass
class OrderItem:
    name: str
    quantity: float = 1
    unit_price: Optional[int] = None  # cents
    image_url: Optional[str] = None
    substituted: Optional[bool] = None
    substituted_with: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none({
            "name": self.name,
            "quantity": self.quantity,
            "unitPrice": self.unit_price,
            "imageUrl": self.image_url,
            "substituted": self.substituted,
            "substitutedWith": self.substituted_with,
        })


@dataclass
class OrderSummary:
    item_count: int = 0
    total_amount: Optional[int] = None  # cents
    currency: str = "USD"
    items: Optional[List[OrderItem]] = None

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none({
            "itemCount": self.item_count,
            "totalAmount": self.total_amount,
            "currency": self.currency,
            "items": [item.to_dict() for item in self.items] if self.items is not None else None,
        })

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "OrderSummary":
        raw = raw if isinstance(raw, dict) else {}
        items_raw = raw.get("items")
        items = None
        if isinstance(items_raw, list):
            items = [
                OrderItem(
                    name=str(item.get("name") or ""),
                    quantity=coerce_float(item.get("quantity")) or 1,
                    unit_price=coerce_int(item.get("unitPrice")),
                    image_url=item.get("imageUrl"),
                    substituted=item.get("substituted"),
                    substituted_with=item.get("substitutedWith"),
                )
                for item in items_raw
                if isinstance(item, dict)
            ]
        return cls(
            item_count=coerce_int(raw.get("itemCount")) or 0,
            total_amount=coerce_int(raw.get("totalAmount")),
            currency=str(raw.get("currency") or "USD"),
            items=items,
        )


@dataclass
class TrackingInfo:
    url: Optional[str] = None
    map_available: bool = False
    live_updates: bool = False
    contact_driver_available: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none({
            "url": self.url,
            "mapAvailable": self.map_available,
            "liveUpdates": self.live_updates,
            "contactDriverAvailable": self.contact_driver_available,
        })


@dataclass
class DeliveryTimestamps:
    ordered: datetime = field(default_factory=utcnow)
    confirmed: Optional[datetime] = None
    driver_assigned: Optional[datetime] = None
    picked_up: Optional[datetime] = None
    delivered: Optional[datetime] = None
    cancelled: Optional[datetime] = None

    _KEYS = (
        ("ordered", "ordered"),
        ("confirmed", "confirmed"),
        ("driver_assigned", "driverAssigned"),
        ("picked_up", "pickedUp"),
        ("delivered", "delivered"),
        ("cancelled", "cancelled"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none({
            wire: isoformat(getattr(self, attr)) for attr, wire in self._KEYS
        })

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "DeliveryTimestamps":
        raw = raw if isinstance(raw, dict) else {}
        values = {attr: parse_timestamp(raw.get(wire)) for attr, wire in cls._KEYS}
        if values["ordered"] is None:
            values["ordered"] = utcnow()
        return cls(**values)


@dataclass
class FetchMeta:
    adapter_id: str
    fetch_method: str = "api"
    last_fetched_at: datetime = field(default_factory=utcnow)
    raw_data: Any = None

    def to_dict(self, include_raw: bool = False) -> Dict[str, Any]:
        data = {
            "lastFetchedAt": isoformat(self.last_fetched_at),
            "fetchMethod": self.fetch_method,
            "adapterId": self.adapter_id,
        }
        if include_raw and self.raw_data is not None:
            data["rawData"] = self.raw_data
        return data


@dataclass
class UnifiedDelivery:
    id: str
    platform: str
    external_order_id: str
    status: str
    status_label: str
    destination: Destination
    eta: DeliveryEta
    order: OrderSummary
    tracking: TrackingInfo
    timestamps: DeliveryTimestamps
    meta: FetchMeta
    status_updated_at: datetime = field(default_factory=utcnow)
    driver: Optional[DriverInfo] = None
    eta_estimate: Optional[Dict[str, Any]] = None

    @property
    def driver_location(self) -> Optional[DriverLocation]:
        return self.driver.location if self.driver else None

    def to_dict(self, include_raw: bool = False) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "platform": self.platform,
            "externalOrderId": self.external_order_id,
            "status": self.status,
            "statusLabel": self.status_label,
            "statusUpdatedAt": isoformat(self.status_updated_at),
            "destination": self.destination.to_dict(),
            "eta": self.eta.to_dict(),
            "order": self.order.to_dict(),
            "tracking": self.tracking.to_dict(),
            "timestamps": self.timestamps.to_dict(),
            "meta": self.meta.to_dict(include_raw=include_raw),
        }
        if self.driver is not None:
            data["driver"] = self.driver.to_dict()
        if self.eta_estimate is not None:
            data["etaEstimate"] = self.eta_estimate
        return data

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "UnifiedDelivery":
        status = raw.get("status") or DEFAULT_STATUS
        tracking_raw = raw.get("tracking") if isinstance(raw.get("tracking"), dict) else {}
        meta_raw = raw.get("meta") if isinstance(raw.get("meta"), dict) else {}
        return cls(
            id=str(raw["id"]),
            platform=str(raw["platform"]),
            external_order_id=str(raw["externalOrderId"]),
            status=status,
            status_label=raw.get("statusLabel") or get_status_label(status),
            status_updated_at=parse_timestamp(raw.get("statusUpdatedAt")) or utcnow(),
            driver=DriverInfo.from_dict(raw.get("driver")),
            destination=Destination.from_dict(raw.get("destination")),
            eta=DeliveryEta.from_dict(raw.get("eta")),
            order=OrderSummary.from_dict(raw.get("order")),
            tracking=TrackingInfo(
                url=tracking_raw.get("url"),
                map_available=bool(tracking_raw.get("mapAvailable")),
                live_updates=bool(tracking_raw.get("liveUpdates")),
                contact_driver_available=bool(tracking_raw.get("contactDriverAvailable")),
            ),
            timestamps=DeliveryTimestamps.from_dict(raw.get("timestamps")),
            meta=FetchMeta(
                adapter_id=str(meta_raw.get("adapterId") or raw["platform"]),
                fetch_method=str(meta_raw.get("fetchMethod") or "api"),
                last_fetched_at=parse_timestamp(meta_raw.get("lastFetchedAt")) or utcnow(),
                raw_data=meta_raw.get("rawData"),
            ),
            eta_estimate=raw.get("etaEstimate"),
        )


__all__ = [
    "DeliveryEta",
    "DeliveryTimestamps",
    "Destination",
    "DriverInfo",
    "DriverLocation",
    "DriverVehicle",
    "FETCH_METHODS",
    "FetchMeta",
    "OrderItem",
    "OrderSummary",
    "PLATFORMS",
    "TrackingInfo",
    "UnifiedDelivery",
    "coerce_float",
    "coerce_int",
    "generate_delivery_id",
    "isoformat",
    "mask_license_plate",
    "mask_phone_number",
    "minutes_until",
    "parse_timestamp",
    "utcnow",
]
