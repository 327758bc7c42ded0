import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from delivery_models import PLATFORMS  # noqa: E402
from status_normalizer import (  # noqa: E402
    DELIVERY_STATUSES,
    PLATFORM_STATUS_MAPS,
    STATUS_LABELS,
    get_status_label,
    is_terminal_status,
    map_platform_status,
    sort_by_status_priority,
    status_priority,
)


def test_every_platform_has_a_status_table():
    assert set(PLATFORM_STATUS_MAPS) == set(PLATFORMS)


def test_every_table_maps_onto_canonical_statuses():
    for platform, table in PLATFORM_STATUS_MAPS.items():
        for raw, status in table.items():
            assert status in DELIVERY_STATUSES, (platform, raw)
            assert map_platform_status(platform, raw) == status


def test_case_and_separator_normalisation():
    assert map_platform_status("doordash", "BEING-PREPARED") == "preparing"
    assert map_platform_status("doordash", "Picked Up") == "out_for_delivery"
    assert map_platform_status("instacart", "  Almost_There ") == "arriving"


def test_unknown_status_and_platform_fall_back_to_preparing():
    assert map_platform_status("doordash", "teleporting") == "preparing"
    assert map_platform_status("doordash", None) == "preparing"
    assert map_platform_status("pigeon_post", "delivered") == "preparing"


def test_costco_reuses_instacart_vocabulary():
    assert map_platform_status("costco", "delivering") == "out_for_delivery"


def test_labels_cover_every_status():
    assert set(STATUS_LABELS) == set(DELIVERY_STATUSES)
    assert get_status_label("driver_at_store") == "Driver at Store"


def test_terminal_statuses():
    assert is_terminal_status("delivered")
    assert is_terminal_status("cancelled")
    assert not is_terminal_status("delayed")


def test_sort_is_monotonic_in_priority():
    statuses = list(reversed(DELIVERY_STATUSES))
    ordered = sort_by_status_priority([{"status": s} for s in statuses])
    priorities = [status_priority(item["status"]) for item in ordered]
    assert priorities == sorted(priorities)
    assert ordered[0]["status"] == "arriving"
    assert ordered[-1]["status"] == "cancelled"
