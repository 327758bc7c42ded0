"""
Total Wine adapter (Direct-API via Onfleet).

Total Wine dispatches its drivers through Onfleet. The user supplies an
Onfleet API key once (``connect_session({"api_key": ...})``); requests use
HTTP Basic auth with the key as username. Onfleet signs webhooks with
HMAC-SHA512.
"""

from __future__ import annotations

import asyncio
import hashlib
from typing import Any, Dict, List, Optional

import httpx

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
    mask_license_plate,
    mask_phone_number,
    minutes_until,
    parse_timestamp,
    utcnow,
)
from status_normalizer import ACTIVE_STATUSES

from . import (
    AdapterCapabilities,
    AdapterConnection,
    AdapterMetadata,
    PlatformAdapter,
    TokenSet,
    WebhookEvent,
)
from .common import format_address, require_dict, require_list, require_str
from .errors import PlatformAdapterError, UpstreamAuthError

API_BASE = "https://onfleet.com/api/v2"

# Onfleet task.state
UNASSIGNED, ASSIGNED, ACTIVE, COMPLETED = 0, 1, 2, 3


def task_state_to_status(state: Any, completion: Optional[Dict[str, Any]] = None) -> str:
    """Onfleet's numeric task state expressed in Total Wine's status vocabulary."""
    if state == COMPLETED:
        return "delivered" if (completion or {}).get("success") else "cancelled"
    if state == ACTIVE:
        return "out_for_delivery"
    if state == ASSIGNED:
        return "ready"
    return "submitted"


def _lnglat(raw: Any) -> Optional[tuple[float, float]]:
    """Onfleet coordinates are ``[lng, lat]`` pairs."""
    if not isinstance(raw, (list, tuple)) or len(raw) != 2:
        return None
    lng, lat = coerce_float(raw[0]), coerce_float(raw[1])
    if lat is None or lng is None:
        return None
    return lat, lng


class TotalWineAdapter(PlatformAdapter):
    metadata = AdapterMetadata(
        platform_id="totalwine",
        display_name="Total Wine",
        primary_color="#6D2C41",
        capabilities=AdapterCapabilities(
            oauth=False,
            webhooks=True,
            live_location=True,
            eta_updates=True,
        ),
        api_base_url=API_BASE,
        min_polling_interval=30,
        max_polling_interval=180,
        default_polling_interval=60,
    )
    webhook_secret_env = "TOTALWINE_WEBHOOK_SECRET"
    webhook_digest = hashlib.sha512

    def __init__(self, *, client: Optional[httpx.AsyncClient] = None, webhook_secret: Optional[str] = None) -> None:
        super().__init__(client=client, webhook_secret=webhook_secret)

    @staticmethod
    def _auth(api_key: str) -> httpx.BasicAuth:
        return httpx.BasicAuth(api_key, "")

    async def _api(self, api_key: str, path: str) -> Any:
        return await self._request(
            "GET", f"{API_BASE}{path}", auth=self._auth(api_key), headers={"Accept": "application/json"}
        )

    async def test_connection(self, credential: str) -> None:
        await self._api(credential, "/organization")

    async def connect_session(self, payload: Dict[str, Any]) -> TokenSet:
        api_key = str((payload or {}).get("api_key") or "").strip()
        if not api_key:
            raise UpstreamAuthError(self.platform_id, "Onfleet API key required")
        await self.test_connection(api_key)
        return TokenSet(access_token=api_key, token_type="api_key")

    # -- deliveries ---------------------------------------------------------

    async def _worker(self, api_key: str, worker_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not worker_id:
            return None
        try:
            data = await self._api(api_key, f"/workers/{worker_id}")
        except PlatformAdapterError as exc:
            print(f"[totalwine] worker {worker_id} lookup failed: {exc.message}")
            return None
        return data if isinstance(data, dict) else None

    async def get_active_deliveries(self, connection: AdapterConnection) -> List[UnifiedDelivery]:
        api_key = connection.credential
        assigned, active = await asyncio.gather(
            self._api(api_key, f"/tasks?state={ASSIGNED}"),
            self._api(api_key, f"/tasks?state={ACTIVE}"),
        )
        tasks = require_list(self.platform_id, assigned, "tasks") + require_list(self.platform_id, active, "tasks")
        workers = await asyncio.gather(*(self._worker(api_key, task.get("worker")) for task in tasks))
        return [self.normalize_task(task, worker) for task, worker in zip(tasks, workers)]

    async def get_delivery_details(self, connection: AdapterConnection, delivery_id: str) -> UnifiedDelivery:
        api_key = connection.credential
        task = require_dict(
            self.platform_id, await self._api(api_key, f"/tasks/{self.external_id_from(delivery_id)}"), "task"
        )
        return self.normalize_task(task, await self._worker(api_key, task.get("worker")))

    # -- webhooks -----------------------------------------------------------

    def normalize_webhook_payload(self, event: WebhookEvent) -> Optional[UnifiedDelivery]:
        body = event.data if isinstance(event.data, dict) else {}
        data = body.get("data")
        if not isinstance(data, dict) or data.get("task") is None:
            return None
        task = require_dict(self.platform_id, data["task"], "task")
        worker = data.get("worker") if isinstance(data.get("worker"), dict) else None
        delivery = self.normalize_task(task, worker)
        delivery.meta.fetch_method = "webhook"
        return delivery

    # -- normalisation ------------------------------------------------------

    def _driver(self, worker: Optional[Dict[str, Any]]) -> Optional[DriverInfo]:
        if not worker:
            return None
        location = None
        coords = _lnglat(worker.get("location"))
        if coords:
            location = DriverLocation(
                lat=coords[0],
                lng=coords[1],
                timestamp=parse_timestamp(worker.get("timeLastSeen")) or utcnow(),
            )
        vehicle = None
        if isinstance(worker.get("vehicle"), dict):
            plate = worker["vehicle"].get("licensePlate")
            vehicle = DriverVehicle(
                model=worker["vehicle"].get("description"),
                color=worker["vehicle"].get("color"),
                license_plate=mask_license_plate(plate) if plate else None,
            )
        phone = worker.get("phone")
        return DriverInfo(
            name=str(worker.get("name") or ""),
            photo=worker.get("imageUrl"),
            phone=mask_phone_number(phone) if phone else None,
            vehicle=vehicle,
            location=location,
        )

    def normalize_task(self, task: Dict[str, Any], worker: Optional[Dict[str, Any]] = None) -> UnifiedDelivery:
        task_id = require_str(self.platform_id, task, "id", "task")
        completion = task.get("completionDetails") if isinstance(task.get("completionDetails"), dict) else {}
        raw_status = task_state_to_status(task.get("state"), completion)
        status = self.map_status(raw_status)
        now = utcnow()

        arrival = parse_timestamp(task.get("eta")) or parse_timestamp(task.get("completeBefore"))
        driver = self._driver(worker)
        location = driver.location if driver else None

        destination = task.get("destination") if isinstance(task.get("destination"), dict) else {}
        address = destination.get("address") if isinstance(destination.get("address"), dict) else {}
        coords = _lnglat(destination.get("location"))
        completed_at = parse_timestamp(completion.get("time"))

        return self._build_delivery(
            external_id=task_id,
            raw_status=raw_status,
            status_updated_at=parse_timestamp(task.get("timeLastModified")) or now,
            driver=driver,
            destination=Destination(
                address=format_address(
                    address.get("street"),
                    city=address.get("city"),
                    state=address.get("state"),
                    postal_code=address.get("postalCode"),
                ),
                address_line1=address.get("street"),
                city=address.get("city"),
                state=address.get("state"),
                zip_code=address.get("postalCode"),
                lat=coords[0] if coords else 0.0,
                lng=coords[1] if coords else 0.0,
                instructions=destination.get("notes"),
            ),
            eta=DeliveryEta(
                estimated_arrival=arrival,
                minutes_remaining=minutes_until(arrival, now),
                confidence="high" if location else "medium",
            ),
            order=OrderSummary(),
            tracking=TrackingInfo(
                url=task.get("trackingURL"),
                map_available=location is not None,
                live_updates=status in ACTIVE_STATUSES,
                contact_driver_available=False,
            ),
            timestamps=DeliveryTimestamps(
                ordered=parse_timestamp(task.get("timeCreated")) or now,
                driver_assigned=parse_timestamp(task.get("timeLastModified")) if task.get("worker") else None,
                delivered=completed_at if raw_status == "delivered" else None,
                cancelled=completed_at if raw_status == "cancelled" else None,
            ),
            meta=FetchMeta(adapter_id=self.platform_id, fetch_method="api", last_fetched_at=now, raw_data=task),
        )


__all__ = ["TotalWineAdapter", "task_state_to_status"]
