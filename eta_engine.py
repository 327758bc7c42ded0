"""Confidence-scored arrival estimation.

``calculate_eta`` turns a ``UnifiedDelivery`` into an ``ETAEstimate``:

1. use the platform-supplied ETA when there is one (``source="platform"``);
2. otherwise, with a tracked driver, derive minutes from great-circle distance
   at city speed (``source="calculated"``);
3. otherwise fall back to a per-status default (``source="estimated"``);
4. scale minutes by an order-type multiplier;
5. score confidence from the available signals, scaled by how accurate the
   platform's ETAs have historically been, minus a traffic penalty;
6. bucket the score into high/medium/low;
7. attach a +/- range whenever confidence is below "high".

Every adjustment is recorded in ``factors`` so an estimate can be explained.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from delivery_models import UnifiedDelivery, utcnow, isoformat
from status_normalizer import (
    ACTIVE_STATUSES,
    ARRIVING,
    DELIVERED,
    DRIVER_ASSIGNED,
    DRIVER_AT_STORE,
    DRIVER_HEADING_TO_STORE,
    OUT_FOR_DELIVERY,
    PREPARING,
    READY_FOR_PICKUP,
)

EARTH_RADIUS_MILES = 3959.0
EARTH_RADIUS_KM = 6371.0
DEFAULT_SPEED_MPH = 25.0
DEFAULT_PLATFORM_ACCURACY = 70
DEFAULT_STATUS_MINUTES = 30
HIGH_CONFIDENCE = 80
MEDIUM_CONFIDENCE = 50

# Historical accuracy of each platform's own ETAs (0-100).
PLATFORM_ACCURACY: Dict[str, int] = {
    "doordash": 85,
    "ubereats": 82,
    "instacart": 75,
    "amazon": 90,
    "walmart": 78,
    "shipt": 80,
    "drizly": 70,
    "totalwine": 65,
    "costco": 72,
    "samsclub": 73,
}

PLATFORM_ORDER_TYPES: Dict[str, str] = {
    "doordash": "restaurant",
    "ubereats": "restaurant",
    "instacart": "grocery",
    "walmart": "grocery",
    "shipt": "grocery",
    "costco": "grocery",
    "samsclub": "grocery",
    "drizly": "alcohol",
    "totalwine": "alcohol",
    "amazon": "retail",
}

ORDER_TYPE_MODIFIERS: Dict[str, float] = {
    "restaurant": 1.0,
    "grocery": 1.15,
    "alcohol": 1.10,
    "retail": 1.20,
}

TRAFFIC_MULTIPLIERS: Dict[str, float] = {
    "light": 1.0,
    "moderate": 1.2,
    "heavy": 1.5,
}

STATUS_DEFAULT_MINUTES: Dict[str, int] = {
    PREPARING: 35,
    READY_FOR_PICKUP: 25,
    DRIVER_ASSIGNED: 20,
    DRIVER_HEADING_TO_STORE: 18,
    DRIVER_AT_STORE: 15,
    OUT_FOR_DELIVERY: 12,
    ARRIVING: 3,
    DELIVERED: 0,
}


def haversine_distance(
    a: Tuple[float, float], b: Tuple[float, float], unit: str = "miles"
) -> float:
    """Great-circle distance between two (lat, lng) points."""
    radius = EARTH_RADIUS_MILES if unit == "miles" else EARTH_RADIUS_KM
    lat1, lon1 = map(math.radians, a)
    lat2, lon2 = map(math.radians, b)
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * radius * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def eta_from_distance(distance_miles: float, speed_mph: float = DEFAULT_SPEED_MPH) -> int:
    return int(round(distance_miles / speed_mph * 60))


@dataclass
class ETARange:
    min: datetime
    max: datetime
    min_minutes: int
    max_minutes: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "min": isoformat(self.min),
            "max": isoformat(self.max),
            "minMinutes": self.min_minutes,
            "maxMinutes": self.max_minutes,
        }


@dataclass
class ETAEstimate:
    estimated_arrival: datetime
    minutes_remaining: int
    confidence: int
    confidence_level: str
    source: str
    range: Optional[ETARange] = None
    factors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "estimatedArrival": isoformat(self.estimated_arrival),
            "minutesRemaining": self.minutes_remaining,
            "confidence": self.confidence,
            "confidenceLevel": self.confidence_level,
            "range": self.range.to_dict() if self.range else None,
            "source": self.source,
            "factors": list(self.factors),
        }


def get_order_type(platform: str) -> str:
    return PLATFORM_ORDER_TYPES.get(platform, "retail")


def get_confidence_level(confidence: int) -> str:
    if confidence >= HIGH_CONFIDENCE:
        return "high"
    if confidence >= MEDIUM_CONFIDENCE:
        return "medium"
    return "low"


def _confidence_score(
    delivery: UnifiedDelivery,
    has_eta_anchor: bool,
    anchor_factor: str,
    platform_accuracy: int,
    distance_miles: Optional[float],
) -> Tuple[int, List[str]]:
    confidence = 50.0
    factors: List[str] = []

    if has_eta_anchor:
        confidence += 20
        factors.append(anchor_factor)

    if delivery.driver_location is not None:
        confidence += 15
        factors.append("Driver location tracked")

    if distance_miles is not None:
        if distance_miles < 1:
            confidence += 10
            factors.append("Driver nearby (<1 mi)")
        elif distance_miles < 3:
            confidence += 5
            factors.append("Driver approaching (1-3 mi)")

    if delivery.status in ACTIVE_STATUSES:
        confidence += 10
        factors.append("Active delivery status")

    confidence = round(confidence * (platform_accuracy / 100))

    traffic = TRAFFIC_MULTIPLIERS.get(delivery.eta.traffic_conditions or "", 1.0)
    if traffic > 1.3:
        confidence -= 10
        factors.append("Heavy traffic conditions")
    elif traffic > 1.1:
        confidence -= 5
        factors.append("Moderate traffic")

    return int(min(max(confidence, 0), 100)), factors


def _eta_range(base_minutes: int, confidence: int, now: datetime) -> Optional[ETARange]:
    if confidence >= HIGH_CONFIDENCE:
        return None
    variance_factor = (100 - confidence) / 100
    variance = int(round(base_minutes * variance_factor * 0.5))
    min_minutes = max(0, base_minutes - variance)
    max_minutes = base_minutes + variance
    return ETARange(
        min=now + timedelta(minutes=min_minutes),
        max=now + timedelta(minutes=max_minutes),
        min_minutes=min_minutes,
        max_minutes=max_minutes,
    )


def calculate_eta(delivery: UnifiedDelivery, now: Optional[datetime] = None) -> ETAEstimate:
    now = now or utcnow()
    accuracy = PLATFORM_ACCURACY.get(delivery.platform, DEFAULT_PLATFORM_ACCURACY)
    factors: List[str] = []

    distance: Optional[float] = None
    location = delivery.driver_location
    if location is not None and delivery.destination.has_coordinates():
        distance = haversine_distance(
            (location.lat, location.lng),
            (delivery.destination.lat, delivery.destination.lng),
        )

    has_platform_eta = delivery.eta.estimated_arrival is not None
    minutes = delivery.eta.minutes_remaining if has_platform_eta else 0
    source = "platform"
    anchor_factor = "Platform ETA available"

    if not has_platform_eta and distance is not None:
        minutes = eta_from_distance(distance)
        source = "calculated"
        anchor_factor = "Live-distance ETA available"
        factors.append("ETA calculated from distance")

    if minutes <= 0 and source != "calculated":
        minutes = STATUS_DEFAULT_MINUTES.get(delivery.status, DEFAULT_STATUS_MINUTES)
        source = "estimated"
        factors.append("ETA estimated from status")

    order_type = get_order_type(delivery.platform)
    modifier = ORDER_TYPE_MODIFIERS.get(order_type, 1.0)
    if modifier > 1:
        minutes = int(round(minutes * modifier))
        factors.append(f"Order type adjustment: {order_type}")

    confidence, confidence_factors = _confidence_score(
        delivery,
        has_eta_anchor=has_platform_eta or source == "calculated",
        anchor_factor=anchor_factor,
        platform_accuracy=accuracy,
        distance_miles=distance,
    )

    return ETAEstimate(
        estimated_arrival=now + timedelta(minutes=minutes),
        minutes_remaining=minutes,
        confidence=confidence,
        confidence_level=get_confidence_level(confidence),
        source=source,
        range=_eta_range(minutes, confidence, now),
        factors=factors + confidence_factors,
    )


def calculate_batch_etas(
    deliveries: Iterable[UnifiedDelivery], now: Optional[datetime] = None
) -> Dict[str, ETAEstimate]:
    now = now or utcnow()
    return {delivery.id: calculate_eta(delivery, now=now) for delivery in deliveries}


def format_eta_display(minutes: float) -> str:
    if minutes < 1:
        return "Arriving now"
    if minutes < 60:
        return f"{round(minutes)} min"
    hours = int(minutes // 60)
    mins = round(minutes % 60)
    if mins == 0:
        return f"{hours} hr"
    return f"{hours} hr {mins} min"


def format_eta_range(eta_range: Optional[ETARange]) -> Optional[str]:
    if eta_range is None:
        return None
    return f"{eta_range.min_minutes}-{eta_range.max_minutes} min"


def has_significant_eta_change(
    previous_minutes: int, current_minutes: int, threshold: int = 5
) -> Dict[str, Any]:
    """Return ``{changed, type, difference}``; ``type`` is faster/slower/None."""
    difference = current_minutes - previous_minutes
    if abs(difference) < threshold:
        return {"changed": False, "type": None, "difference": 0}
    return {
        "changed": True,
        "type": "faster" if difference < 0 else "slower",
        "difference": abs(difference),
    }


__all__ = [
    "ETAEstimate",
    "ETARange",
    "PLATFORM_ACCURACY",
    "calculate_batch_etas",
    "calculate_eta",
    "eta_from_distance",
    "format_eta_display",
    "format_eta_range",
    "get_confidence_level",
    "get_order_type",
    "has_significant_eta_change",
    "haversine_distance",
]
