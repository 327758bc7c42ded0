"""Drizly alcohol delivery tracking using a captured session token."""

from __future__ import annotations

from . import AdapterCapabilities, AdapterMetadata
from .session_orders import SessionOrderAdapter

API_BASE = "https://api.drizly.com/v1"


class DrizlyAdapter(SessionOrderAdapter):
    metadata = AdapterMetadata(
        platform_id="drizly",
        display_name="Drizly",
        primary_color="#3B5EE6",
        capabilities=AdapterCapabilities(
            session_auth=True,
            live_location=True,
            driver_contact=True,
            order_items=True,
            eta_updates=True,
        ),
        api_base_url=API_BASE,
        min_polling_interval=30,
        max_polling_interval=180,
        default_polling_interval=60,
    )
    required_session_keys = ("token",)

    api_base = API_BASE
    active_orders_path = "/orders?status=active"
    order_path = "/orders/{order_id}"
    tracking_path = "/orders/{order_id}/tracking"
    test_path = "/orders?status=active"


__all__ = ["DrizlyAdapter"]
