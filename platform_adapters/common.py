"""Payload helpers shared by the per-platform normalisers."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional

from delivery_models import (
    DriverLocation,
    OrderItem,
    coerce_float,
    coerce_int,
    parse_timestamp,
    utcnow,
)

from .errors import PlatformDataError

MPH_TO_KMH = 1.60934


def require_dict(platform: str, raw: Any, what: str) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        raise PlatformDataError(platform, f"{what} must be an object", raw)
    return raw


def require_str(platform: str, raw: Mapping[str, Any], key: str, what: str = "order") -> str:
    value = raw.get(key)
    if value is None or value == "":
        raise PlatformDataError(platform, f"{what} is missing '{key}'", dict(raw))
    return str(value)


def require_list(platform: str, raw: Any, key: str) -> List[Dict[str, Any]]:
    if isinstance(raw, list):
        items = raw
    elif isinstance(raw, dict) and isinstance(raw.get(key), list):
        items = raw[key]
    else:
        raise PlatformDataError(platform, f"response is missing '{key}' list", raw)
    return [require_dict(platform, item, key) for item in items]


def format_address(*parts: Optional[str], city: Optional[str] = None,
                   state: Optional[str] = None, postal_code: Optional[str] = None) -> str:
    pieces = [part for part in parts if part]
    locality = " ".join(p for p in (state, postal_code) if p)
    if city and locality:
        pieces.append(f"{city}, {locality}")
    elif city or locality:
        pieces.append(city or locality)
    return ", ".join(pieces)


def build_location(
    raw: Any,
    *,
    lat_key: str = "lat",
    lng_key: str = "lng",
    time_key: str = "updated_at",
    speed_mph_key: Optional[str] = None,
    speed_key: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[DriverLocation]:
    if not isinstance(raw, dict):
        return None
    lat = coerce_float(raw.get(lat_key))
    lng = coerce_float(raw.get(lng_key))
    if lat is None or lng is None:
        return None
    speed = None
    if speed_mph_key and coerce_float(raw.get(speed_mph_key)) is not None:
        speed = coerce_float(raw.get(speed_mph_key)) * MPH_TO_KMH
    elif speed_key:
        speed = coerce_float(raw.get(speed_key))
    return DriverLocation(
        lat=lat,
        lng=lng,
        heading=coerce_float(raw.get("heading")),
        speed=speed,
        accuracy=coerce_float(raw.get("accuracy")),
        timestamp=parse_timestamp(raw.get(time_key)) or now or utcnow(),
    )


def build_items(
    raw_items: Any,
    *,
    price_key: str = "price",
    image_key: str = "image_url",
) -> Optional[List[OrderItem]]:
    if not isinstance(raw_items, list):
        return None
    items: List[OrderItem] = []
    for raw in raw_items:
        if not isinstance(raw, dict) or not raw.get("name"):
            continue
        replacement = raw.get("replacement_item")
        substituted_with = raw.get("substituted_with")
        if isinstance(replacement, dict):
            substituted_with = replacement.get("name")
        items.append(OrderItem(
            name=str(raw["name"]),
            quantity=coerce_float(raw.get("quantity")) or 1,
            unit_price=coerce_int(raw.get(price_key)),
            image_url=raw.get(image_key),
            substituted=raw.get("substituted", raw.get("replaced")),
            substituted_with=substituted_with,
        ))
    return items


def estimated_arrival(
    *candidates: Any, default_minutes: Optional[int] = None, now: Optional[datetime] = None
) -> Optional[datetime]:
    """First parseable timestamp among ``candidates``; optional fallback offset."""
    for candidate in candidates:
        parsed = parse_timestamp(candidate)
        if parsed is not None:
            return parsed
    if default_minutes is None:
        return None
    return (now or utcnow()) + timedelta(minutes=default_minutes)


def first_present(raw: Mapping[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        value = raw.get(key)
        if value not in (None, ""):
            return value
    return None


__all__ = [
    "build_items",
    "build_location",
    "estimated_arrival",
    "first_present",
    "format_address",
    "require_dict",
    "require_list",
    "require_str",
]
