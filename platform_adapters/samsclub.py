"""Sam's Club delivery tracking through a captured samsclub.com session."""

from __future__ import annotations

from . import AdapterCapabilities, AdapterMetadata
from .session_orders import SessionOrderAdapter

API_BASE = "https://www.samsclub.com/api"


class SamsClubAdapter(SessionOrderAdapter):
    metadata = AdapterMetadata(
        platform_id="samsclub",
        display_name="Sam's Club",
        primary_color="#0067A0",
        capabilities=AdapterCapabilities(
            session_auth=True,
            live_location=True,
            order_items=True,
            eta_updates=True,
        ),
        api_base_url=API_BASE,
        min_polling_interval=30,
        max_polling_interval=180,
        default_polling_interval=60,
    )
    required_session_keys = ("cookies",)

    api_base = API_BASE
    active_orders_path = "/order/v1/orders?status=active"
    order_path = "/order/v1/orders/{order_id}"
    tracking_path = "/order/v1/orders/{order_id}/tracking"
    test_path = "/order/v1/orders?limit=1"

    order_id_key = "order_id"


__all__ = ["SamsClubAdapter"]
