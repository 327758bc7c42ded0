import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from delivery_models import (  # noqa: E402
    DeliveryEta,
    DeliveryTimestamps,
    Destination,
    DriverInfo,
    DriverLocation,
    FetchMeta,
    OrderSummary,
    TrackingInfo,
    UnifiedDelivery,
)
from eta_engine import (  # noqa: E402
    calculate_eta,
    format_eta_display,
    format_eta_range,
    get_confidence_level,
    has_significant_eta_change,
    haversine_distance,
)

NOW = datetime(2026, 3, 1, 18, 0, tzinfo=timezone.utc)
HOME = (38.0336, -78.5080)


def _delivery(platform="doordash", status="out_for_delivery", *, driver_at=None, eta=None, traffic=None):
    driver = None
    if driver_at is not None:
        driver = DriverInfo(name="Sam", location=DriverLocation(lat=driver_at[0], lng=driver_at[1], timestamp=NOW))
    return UnifiedDelivery(
        id=f"{platform[:2]}_1",
        platform=platform,
        external_order_id="1",
        status=status,
        status_label=status,
        destination=Destination(address="1 Main St", lat=HOME[0], lng=HOME[1]),
        eta=eta or DeliveryEta(traffic_conditions=traffic),
        order=OrderSummary(),
        tracking=TrackingInfo(),
        timestamps=DeliveryTimestamps(ordered=NOW),
        meta=FetchMeta(adapter_id=platform),
        driver=driver,
    )


def _point_miles_north(origin, miles):
    return (origin[0] + miles / 69.0, origin[1])


def test_haversine_distance_units():
    a = (40.7128, -74.0060)
    b = (34.0522, -118.2437)
    miles = haversine_distance(a, b)
    km = haversine_distance(a, b, unit="km")
    assert 2440 < miles < 2460
    assert abs(km / miles - 6371.0 / 3959.0) < 1e-9
    assert haversine_distance(a, a) == 0


def test_calculated_eta_for_nearby_driver():
    driver_at = _point_miles_north(HOME, 0.4)
    estimate = calculate_eta(_delivery(driver_at=driver_at), now=NOW)
    assert estimate.source == "calculated"
    assert estimate.confidence >= 80
    assert estimate.confidence_level == "high"
    assert estimate.range is None
    assert estimate.minutes_remaining == 1
    assert "Driver nearby (<1 mi)" in estimate.factors


def test_platform_eta_wins_over_distance():
    eta = DeliveryEta(estimated_arrival=NOW + timedelta(minutes=14), minutes_remaining=14)
    estimate = calculate_eta(_delivery(driver_at=_point_miles_north(HOME, 2), eta=eta), now=NOW)
    assert estimate.source == "platform"
    assert estimate.minutes_remaining == 14
    assert "Platform ETA available" in estimate.factors


def test_status_fallback_has_low_confidence_and_a_range():
    estimate = calculate_eta(_delivery(status="preparing"), now=NOW)
    assert estimate.source == "estimated"
    assert estimate.minutes_remaining == 35
    assert estimate.confidence_level == "low"
    assert estimate.range is not None
    assert (estimate.range.min_minutes, estimate.range.max_minutes) == (25, 45)
    assert estimate.estimated_arrival == NOW + timedelta(minutes=35)


def test_grocery_orders_take_longer():
    estimate = calculate_eta(_delivery(platform="instacart", status="driver_assigned"), now=NOW)
    assert estimate.minutes_remaining == 23
    assert "Order type adjustment: grocery" in estimate.factors


def test_confidence_stays_within_bounds():
    for traffic in (None, "light", "moderate", "heavy"):
        for status in ("preparing", "out_for_delivery", "arriving", "delayed"):
            estimate = calculate_eta(_delivery(status=status, traffic=traffic), now=NOW)
            assert 0 <= estimate.confidence <= 100
            assert (estimate.range is None) == (estimate.confidence >= 80)


def test_heavy_traffic_lowers_confidence():
    calm = calculate_eta(_delivery(driver_at=_point_miles_north(HOME, 2)), now=NOW)
    jammed = calculate_eta(_delivery(driver_at=_point_miles_north(HOME, 2), traffic="heavy"), now=NOW)
    assert jammed.confidence == calm.confidence - 10
    assert "Heavy traffic conditions" in jammed.factors


def test_confidence_levels():
    assert get_confidence_level(80) == "high"
    assert get_confidence_level(79) == "medium"
    assert get_confidence_level(50) == "medium"
    assert get_confidence_level(49) == "low"


def test_display_helpers():
    assert format_eta_display(0.5) == "Arriving now"
    assert format_eta_display(12) == "12 min"
    assert format_eta_display(60) == "1 hr"
    assert format_eta_display(95) == "1 hr 35 min"
    assert format_eta_range(None) is None
    assert has_significant_eta_change(20, 12) == {"changed": True, "type": "faster", "difference": 8}
    assert has_significant_eta_change(20, 22)["changed"] is False
