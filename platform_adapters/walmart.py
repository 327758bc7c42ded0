"""Walmart+ delivery tracking through a captured walmart.com session."""

from __future__ import annotations

from . import AdapterCapabilities, AdapterMetadata
from .session_orders import SessionOrderAdapter

API_BASE = "https://www.walmart.com/api"


class WalmartAdapter(SessionOrderAdapter):
    metadata = AdapterMetadata(
        platform_id="walmart",
        display_name="Walmart",
        primary_color="#0071DC",
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
    required_cookies = ("auth", "vtc", "ACID", "customer")

    api_base = API_BASE
    active_orders_path = "/order/v1/orders?status=active"
    order_path = "/order/v1/orders/{order_id}"
    tracking_path = "/order/v1/orders/{order_id}/tracking"
    test_path = "/order/v1/orders?status=active"

    order_id_key = "order_id"
    window_key = "delivery_slot"
    window_end_key = "end_time"
    address_line_keys = ("address_line_1", "street_address")


__all__ = ["WalmartAdapter"]
