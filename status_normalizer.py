"""Per-platform delivery status vocabularies mapped onto the canonical set.

Every upstream platform reports order progress in its own words. The tables
below translate those words into the ten canonical statuses used everywhere
else. Lookups normalise the raw value first (lowercase, hyphens and spaces
collapsed to underscores) and never raise: anything unknown falls back to
``preparing`` and is logged so table gaps show up in the logs.
"""

from __future__ import annotations

import re
from typing import Dict, Iterable, List, Optional, Sequence, TypeVar

PREPARING = "preparing"
READY_FOR_PICKUP = "ready_for_pickup"
DRIVER_ASSIGNED = "driver_assigned"
DRIVER_HEADING_TO_STORE = "driver_heading_to_store"
DRIVER_AT_STORE = "driver_at_store"
OUT_FOR_DELIVERY = "out_for_delivery"
ARRIVING = "arriving"
DELIVERED = "delivered"
CANCELLED = "cancelled"
DELAYED = "delayed"

DELIVERY_STATUSES: tuple[str, ...] = (
    PREPARING,
    READY_FOR_PICKUP,
    DRIVER_ASSIGNED,
    DRIVER_HEADING_TO_STORE,
    DRIVER_AT_STORE,
    OUT_FOR_DELIVERY,
    ARRIVING,
    DELIVERED,
    CANCELLED,
    DELAYED,
)

DEFAULT_STATUS = PREPARING
TERMINAL_STATUSES = frozenset({DELIVERED, CANCELLED})
ACTIVE_STATUSES = frozenset({OUT_FOR_DELIVERY, ARRIVING})

STATUS_LABELS: Dict[str, str] = {
    PREPARING: "Preparing",
    READY_FOR_PICKUP: "Ready for Pickup",
    DRIVER_ASSIGNED: "Driver Assigned",
    DRIVER_HEADING_TO_STORE: "Driver Heading to Store",
    DRIVER_AT_STORE: "Driver at Store",
    OUT_FOR_DELIVERY: "Out for Delivery",
    ARRIVING: "Arriving",
    DELIVERED: "Delivered",
    CANCELLED: "Cancelled",
    DELAYED: "Delayed",
}

# Lower sorts first on the dashboard.
STATUS_PRIORITY: Dict[str, int] = {
    ARRIVING: 0,
    OUT_FOR_DELIVERY: 1,
    DRIVER_AT_STORE: 2,
    DRIVER_HEADING_TO_STORE: 3,
    DRIVER_ASSIGNED: 4,
    READY_FOR_PICKUP: 5,
    PREPARING: 6,
    DELAYED: 7,
    DELIVERED: 8,
    CANCELLED: 9,
}

INSTACART_STATUS_MAP: Dict[str, str] = {
    "order_placed": PREPARING,
    "order_acknowledged": PREPARING,
    "shopping": PREPARING,
    "checkout": PREPARING,
    "ready": READY_FOR_PICKUP,
    "shopper_assigned": DRIVER_ASSIGNED,
    "on_the_way": DRIVER_HEADING_TO_STORE,
    "at_store": DRIVER_AT_STORE,
    "delivering": OUT_FOR_DELIVERY,
    "almost_there": ARRIVING,
    "delivered": DELIVERED,
    "cancelled": CANCELLED,
    "delayed": DELAYED,
}

DOORDASH_STATUS_MAP: Dict[str, str] = {
    "created": PREPARING,
    "confirmed": PREPARING,
    "being_prepared": PREPARING,
    "ready_for_pickup": READY_FOR_PICKUP,
    "dasher_confirmed": DRIVER_ASSIGNED,
    "dasher_confirmed_store_arrived": DRIVER_AT_STORE,
    "picking_up": DRIVER_AT_STORE,
    "picked_up": OUT_FOR_DELIVERY,
    "en_route_to_consumer": OUT_FOR_DELIVERY,
    "arriving": ARRIVING,
    "arrived": ARRIVING,
    "delivered": DELIVERED,
    "cancelled": CANCELLED,
    "delayed": DELAYED,
}

UBEREATS_STATUS_MAP: Dict[str, str] = {
    "pending": PREPARING,
    "accepted": PREPARING,
    "preparing": PREPARING,
    "ready_for_pickup": READY_FOR_PICKUP,
    "courier_assigned": DRIVER_ASSIGNED,
    "courier_heading_to_store": DRIVER_HEADING_TO_STORE,
    "courier_at_store": DRIVER_AT_STORE,
    "in_transit": OUT_FOR_DELIVERY,
    "arriving": ARRIVING,
    "delivered": DELIVERED,
    "cancelled": CANCELLED,
}

AMAZON_STATUS_MAP: Dict[str, str] = {
    "pending": PREPARING,
    "processing": PREPARING,
    "shipped": OUT_FOR_DELIVERY,
    "out_for_delivery": OUT_FOR_DELIVERY,
    "arriving_today": ARRIVING,
    "delivered": DELIVERED,
    "cancelled": CANCELLED,
    "delayed": DELAYED,
}

WALMART_STATUS_MAP: Dict[str, str] = {
    "order_placed": PREPARING,
    "order_received": PREPARING,
    "preparing": PREPARING,
    "ready_for_pickup": READY_FOR_PICKUP,
    "driver_assigned": DRIVER_ASSIGNED,
    "driver_heading_to_store": DRIVER_HEADING_TO_STORE,
    "driver_at_store": DRIVER_AT_STORE,
    "on_the_way": OUT_FOR_DELIVERY,
    "arriving": ARRIVING,
    "delivered": DELIVERED,
    "cancelled": CANCELLED,
}

SHIPT_STATUS_MAP: Dict[str, str] = {
    "submitted": PREPARING,
    "processing": PREPARING,
    "shopping": PREPARING,
    "shopper_assigned": DRIVER_ASSIGNED,
    "on_the_way_to_store": DRIVER_HEADING_TO_STORE,
    "at_store": DRIVER_AT_STORE,
    "on_the_way": OUT_FOR_DELIVERY,
    "almost_there": ARRIVING,
    "delivered": DELIVERED,
    "cancelled": CANCELLED,
}

SAMSCLUB_STATUS_MAP: Dict[str, str] = {
    "order_placed": PREPARING,
    "processing": PREPARING,
    "preparing": PREPARING,
    "driver_assigned": DRIVER_ASSIGNED,
    "out_for_delivery": OUT_FOR_DELIVERY,
    "arriving": ARRIVING,
    "delivered": DELIVERED,
    "cancelled": CANCELLED,
}

DRIZLY_STATUS_MAP: Dict[str, str] = {
    "submitted": PREPARING,
    "accepted": PREPARING,
    "preparing": PREPARING,
    "ready_for_pickup": READY_FOR_PICKUP,
    "out_for_delivery": OUT_FOR_DELIVERY,
    "arriving": ARRIVING,
    "delivered": DELIVERED,
    "cancelled": CANCELLED,
}

TOTALWINE_STATUS_MAP: Dict[str, str] = {
    "submitted": PREPARING,
    "processing": PREPARING,
    "ready": READY_FOR_PICKUP,
    "out_for_delivery": OUT_FOR_DELIVERY,
    "arriving": ARRIVING,
    "delivered": DELIVERED,
    "cancelled": CANCELLED,
}

PLATFORM_STATUS_MAPS: Dict[str, Dict[str, str]] = {
    "instacart": INSTACART_STATUS_MAP,
    "costco": INSTACART_STATUS_MAP,  # fulfilled through Instacart
    "doordash": DOORDASH_STATUS_MAP,
    "ubereats": UBEREATS_STATUS_MAP,
    "amazon": AMAZON_STATUS_MAP,
    "walmart": WALMART_STATUS_MAP,
    "shipt": SHIPT_STATUS_MAP,
    "samsclub": SAMSCLUB_STATUS_MAP,
    "drizly": DRIZLY_STATUS_MAP,
    "totalwine": TOTALWINE_STATUS_MAP,
}

_SEPARATOR_RE = re.compile(r"[- ]")


def normalize_status_string(raw: Optional[str]) -> str:
    if raw is None:
        return ""
    return _SEPARATOR_RE.sub("_", str(raw).strip().lower())


def map_platform_status(platform: str, raw_status: Optional[str]) -> str:
    """Translate ``raw_status`` reported by ``platform`` to a canonical status."""
    normalized = normalize_status_string(raw_status)
    table = PLATFORM_STATUS_MAPS.get(platform)
    if table is None:
        print(f"[status_map] no status table for platform {platform!r}; using {DEFAULT_STATUS}")
        return DEFAULT_STATUS
    status = table.get(normalized)
    if status is None:
        print(f"[status_map] unmapped {platform} status {raw_status!r}; using {DEFAULT_STATUS}")
        return DEFAULT_STATUS
    return status


def get_status_label(status: str) -> str:
    return STATUS_LABELS.get(status, status)


def is_terminal_status(status: str) -> bool:
    return status in TERMINAL_STATUSES


def is_active_status(status: str) -> bool:
    return status in ACTIVE_STATUSES


def status_priority(status: str) -> int:
    return STATUS_PRIORITY.get(status, len(STATUS_PRIORITY))


T = TypeVar("T")


def sort_by_status_priority(deliveries: Iterable[T]) -> List[T]:
    """Stable sort of deliveries (objects or dicts) by canonical status priority."""

    def _key(item: T) -> int:
        status = item.get("status") if isinstance(item, dict) else getattr(item, "status", None)
        return status_priority(status or "")

    return sorted(deliveries, key=_key)


def known_raw_statuses(platform: str) -> Sequence[str]:
    return tuple(PLATFORM_STATUS_MAPS.get(platform, {}).keys())


__all__ = [
    "ACTIVE_STATUSES",
    "DEFAULT_STATUS",
    "DELIVERY_STATUSES",
    "PLATFORM_STATUS_MAPS",
    "STATUS_LABELS",
    "STATUS_PRIORITY",
    "TERMINAL_STATUSES",
    "get_status_label",
    "is_active_status",
    "is_terminal_status",
    "known_raw_statuses",
    "map_platform_status",
    "normalize_status_string",
    "sort_by_status_priority",
    "status_priority",
]
