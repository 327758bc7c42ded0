import asyncio
import base64
import hashlib
import hmac
import json
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from urllib.parse import parse_qs, urlparse

import httpx
import jwt
import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from adapter_registry import AdapterRegistry, build_default_registry  # noqa: E402
from delivery_models import PLATFORMS, generate_delivery_id, mask_license_plate, mask_phone_number  # noqa: E402
from platform_adapters import AdapterConnection, WebhookEvent  # noqa: E402
from platform_adapters.amazon import AmazonAdapter  # noqa: E402
from platform_adapters.doordash import DoorDashAdapter  # noqa: E402
from platform_adapters.drizly import DrizlyAdapter  # noqa: E402
from platform_adapters.errors import (  # noqa: E402
    DeliveryNotFoundError,
    PlatformDataError,
    PlatformUnavailableError,
    RateLimitedError,
    TokenExpiredError,
    UnsupportedPlatformError,
    UpstreamAuthError,
)
from platform_adapters.http import raise_for_upstream_status, with_retry  # noqa: E402
from platform_adapters.instacart import CostcoAdapter, InstacartAdapter  # noqa: E402
from platform_adapters.samsclub import SamsClubAdapter  # noqa: E402
from platform_adapters.shipt import ShiptAdapter  # noqa: E402
from platform_adapters.totalwine import TotalWineAdapter, task_state_to_status  # noqa: E402
from platform_adapters.ubereats import UberEatsAdapter, code_challenge, generate_code_verifier  # noqa: E402
from platform_adapters.walmart import WalmartAdapter  # noqa: E402


def _mock_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _connection(platform, credential="tok"):
    return AdapterConnection(connection_id="c1", user_id="u1", platform=platform, access_token=credential)


def _instacart_order(order_id="123", status="delivering", retailer=None):
    order = {
        "id": order_id,
        "status": status,
        "created_at": "2026-03-01T17:00:00Z",
        "updated_at": "2026-03-01T17:30:00Z",
        "delivery_address": {
            "street_address": "1 Main St",
            "city": "Charlottesville",
            "state": "VA",
            "postal_code": "22903",
            "latitude": 38.03,
            "longitude": -78.50,
        },
        "shopper": {"first_name": "Ada", "phone_number": "+1 (555) 867-1234"},
        "items": [{"name": "Milk", "quantity": 2, "unit_price": 399}],
        "total": 1299,
    }
    if retailer:
        order["retailer"] = retailer
    return order


# ---------------------------
# Shared helpers
# ---------------------------

def test_id_and_masking_helpers():
    assert generate_delivery_id("instacart", "123") == "in_123"
    assert generate_delivery_id("doordash", "abc") == "do_abc"
    assert mask_phone_number("+1 (555) 867-1234") == "***-***-1234"
    assert mask_license_plate("7XYZABC") == "***ABC"


def test_with_retry_retries_transient_failures_only():
    delays = []
    calls = {"n": 0}

    async def fake_sleep(delay):
        delays.append(delay)

    async def flaky():
        calls["n"] += 1
        if calls["n"] < 3:
            raise PlatformUnavailableError("instacart")
        return "ok"

    assert asyncio.run(with_retry(flaky, sleep=fake_sleep)) == "ok"
    assert calls["n"] == 3
    assert delays == [30.0, 30.0]

    async def rejected():
        calls["n"] += 1
        raise UpstreamAuthError("instacart")

    calls["n"] = 0
    with pytest.raises(UpstreamAuthError):
        asyncio.run(with_retry(rejected, sleep=fake_sleep))
    assert calls["n"] == 1


def test_upstream_status_mapping():
    request = httpx.Request("GET", "https://connect.instacart.com/v2/orders/9")
    statuses = {
        401: UpstreamAuthError,
        403: UpstreamAuthError,
        404: DeliveryNotFoundError,
        429: RateLimitedError,
        503: PlatformUnavailableError,
        422: PlatformDataError,
    }
    for code, error_cls in statuses.items():
        response = httpx.Response(code, headers={"Retry-After": "7"}, request=request)
        with pytest.raises(error_cls) as excinfo:
            raise_for_upstream_status("instacart", response)
        assert excinfo.value.platform == "instacart"
        if code == 429:
            assert excinfo.value.retry_after == 7
            assert excinfo.value.retryable
    raise_for_upstream_status("instacart", httpx.Response(200, request=request))


def test_auth_failure_is_not_retried():
    calls = []

    def handler(request):
        calls.append(request.url.path)
        return httpx.Response(401, json={})

    adapter = InstacartAdapter(client_id="id", client_secret="secret", client=_mock_client(handler))
    with pytest.raises(UpstreamAuthError):
        asyncio.run(adapter.get_active_deliveries(_connection("instacart")))
    assert len(calls) == 1


# ---------------------------
# Registry
# ---------------------------

def test_default_registry_covers_every_platform_lazily():
    registry = build_default_registry()
    assert registry.platforms() == sorted(PLATFORMS)
    assert not registry.is_loaded("shipt")
    adapter = registry.get("shipt")
    assert isinstance(adapter, ShiptAdapter)
    assert registry.get("shipt") is adapter
    assert registry.is_loaded("shipt")


def test_registry_rejects_unknown_platform():
    registry = AdapterRegistry()
    assert not registry.has("pigeon_post")
    with pytest.raises(UnsupportedPlatformError):
        registry.get("pigeon_post")


def test_capability_flags_by_integration_strategy():
    registry = build_default_registry()
    assert registry.get("instacart").supports_oauth()
    assert registry.get("instacart").supports_webhooks()
    assert registry.get("amazon").supports_oauth()
    assert not registry.get("amazon").supports_webhooks()
    assert not registry.get("doordash").supports_oauth()
    assert not registry.get("walmart").supports_oauth()
    assert registry.get("walmart").capabilities.session_auth


# ---------------------------
# Instacart / Costco
# ---------------------------

def test_instacart_active_deliveries_are_normalised():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers.get("Authorization")
        seen["path"] = request.url.path
        return httpx.Response(200, json={"orders": [_instacart_order()]})

    adapter = InstacartAdapter(client_id="id", client_secret="secret", client=_mock_client(handler))
    deliveries = asyncio.run(adapter.get_active_deliveries(_connection("instacart", "secret-token")))

    assert seen == {"auth": "Bearer secret-token", "path": "/v2/orders"}
    assert len(deliveries) == 1
    delivery = deliveries[0]
    assert delivery.id == "in_123"
    assert delivery.status == "out_for_delivery"
    assert delivery.status_label == "Out for Delivery"
    assert delivery.driver.phone == "***-***-1234"
    assert delivery.destination.address == "1 Main St, Charlottesville, VA 22903"
    assert delivery.order.items[0].unit_price == 399
    assert delivery.tracking.live_updates


def test_instacart_rejects_malformed_orders():
    def handler(request):
        return httpx.Response(200, json={"orders": [{"status": "delivering"}]})

    adapter = InstacartAdapter(client_id="id", client_secret="secret", client=_mock_client(handler))
    with pytest.raises(PlatformDataError):
        asyncio.run(adapter.get_active_deliveries(_connection("instacart")))


def test_costco_orders_are_detected_from_retailer():
    adapter = InstacartAdapter(client_id="id", client_secret="secret")
    delivery = adapter.normalize_order(_instacart_order(retailer={"slug": "costco", "name": "Costco"}))
    assert delivery.platform == "costco"
    assert delivery.id == "co_123"

    plain = adapter.normalize_order(_instacart_order(retailer={"slug": "aldi", "name": "ALDI"}))
    assert plain.platform == "instacart"

    costco = CostcoAdapter(client_id="id", client_secret="secret")
    assert costco.normalize_order(_instacart_order()).id == "co_123"


def test_instacart_oauth_url_and_refresh_failure():
    def handler(request):
        return httpx.Response(400, json={"error": "invalid_grant"})

    adapter = InstacartAdapter(
        client_id="id",
        client_secret="secret",
        redirect_uri="https://dropdeck.test/oauth/instacart/callback",
        client=_mock_client(handler),
    )
    url = urlparse(adapter.get_oauth_url("u1", "state-1"))
    query = parse_qs(url.query)
    assert query["state"] == ["state-1"]
    assert query["redirect_uri"] == ["https://dropdeck.test/oauth/instacart/callback"]
    assert query["response_type"] == ["code"]

    with pytest.raises(TokenExpiredError):
        asyncio.run(adapter.refresh_token("old-refresh"))


def test_instacart_token_exchange_keeps_refresh_token():
    def handler(request):
        assert b"grant_type=authorization_code" in request.content
        return httpx.Response(200, json={"access_token": "a1", "refresh_token": "r1", "expires_in": 3600})

    adapter = InstacartAdapter(client_id="id", client_secret="secret", client=_mock_client(handler))
    tokens = asyncio.run(adapter.exchange_code("code-1"))
    assert tokens.access_token == "a1"
    assert tokens.refresh_token == "r1"
    assert tokens.expires_at > datetime.now(timezone.utc) + timedelta(minutes=59)


def test_instacart_webhook_without_order_snapshot_is_ignored():
    adapter = InstacartAdapter(client_id="id", client_secret="secret")
    event = WebhookEvent(platform="instacart", event_id="e1", event_type="location", data={"data": {"lat": 1}})
    assert adapter.normalize_webhook_payload(event) is None

    event = WebhookEvent(platform="instacart", event_id="e2", event_type="order.updated",
                         data={"data": {"order": _instacart_order(status="almost_there")}})
    delivery = adapter.normalize_webhook_payload(event)
    assert delivery.status == "arriving"
    assert delivery.meta.fetch_method == "webhook"


# ---------------------------
# DoorDash
# ---------------------------

def _doordash(**kwargs):
    return DoorDashAdapter(developer_id="dev-1", key_id="key-1", signing_secret="s3cret", **kwargs)


def test_doordash_jwt_claims_and_reuse():
    adapter = _doordash()
    token = adapter.generate_jwt(now=1_000_000)
    header = jwt.get_unverified_header(token)
    claims = jwt.decode(token, "s3cret", algorithms=["HS256"], audience="doordash",
                        options={"verify_exp": False, "verify_iat": False})
    assert header["dd-ver"] == "DD-JWT-V1"
    assert claims["iss"] == "dev-1"
    assert claims["kid"] == "key-1"
    assert claims["exp"] - claims["iat"] == 300

    assert adapter.generate_jwt(now=1_000_100) == token
    assert adapter.generate_jwt(now=1_000_280) != token


def test_doordash_missing_credentials():
    adapter = DoorDashAdapter(developer_id="", key_id="", signing_secret="")
    adapter._developer_id = adapter._key_id = adapter._signing_secret = ""
    with pytest.raises(RuntimeError, match="DOORDASH_DEVELOPER_ID"):
        adapter.generate_jwt()


def test_doordash_webhook_signature_accepts_prefix():
    adapter = _doordash(webhook_secret="whsec")
    raw = b'{"external_delivery_id":"D-1","delivery_status":"picked_up"}'
    digest = hmac.new(b"whsec", raw, hashlib.sha256).hexdigest()
    assert adapter.verify_webhook(json.loads(raw), f"sha256={digest}", raw_body=raw)
    assert adapter.verify_webhook(json.loads(raw), digest, raw_body=raw)
    assert not adapter.verify_webhook(json.loads(raw), "sha256=deadbeef", raw_body=raw)
    assert not adapter.verify_webhook(json.loads(raw), None, raw_body=raw)


def test_doordash_webhook_without_secret_is_rejected():
    adapter = _doordash(webhook_secret="")
    assert not adapter.verify_webhook({"a": 1}, "sha256=abc")


def test_doordash_webhook_picked_up():
    adapter = _doordash()
    event = WebhookEvent(
        platform="doordash",
        event_id="evt-1",
        event_type="dasher_picked_up",
        data={
            "external_delivery_id": "D-1",
            "delivery_status": "picked_up",
            "dasher": {
                "first_name": "Lee",
                "phone_number": "555-000-4321",
                "location": {"lat": 38.04, "lng": -78.51},
                "vehicle": {"make": "Honda", "license_plate_last_four": "X123"},
            },
        },
    )
    delivery = adapter.normalize_webhook_payload(event)
    assert delivery.id == "do_D-1"
    assert delivery.status == "out_for_delivery"
    assert delivery.driver.phone == "***-***-4321"
    assert delivery.driver.vehicle.license_plate == "***123"
    assert delivery.driver_location.lat == 38.04
    assert delivery.meta.fetch_method == "webhook"
    # the webhook carried no ETA, so none is invented
    assert delivery.eta.estimated_arrival is None
    assert delivery.eta.minutes_remaining == 0


def test_doordash_webhook_shape_errors():
    adapter = _doordash()
    empty = WebhookEvent(platform="doordash", event_id="e", event_type="ping", data={})
    assert adapter.normalize_webhook_payload(empty) is None

    broken = WebhookEvent(platform="doordash", event_id="e", event_type="update",
                          data={"delivery_status": "picked_up"})
    with pytest.raises(PlatformDataError):
        adapter.normalize_webhook_payload(broken)


# ---------------------------
# Uber Eats
# ---------------------------

def test_ubereats_pkce_challenge():
    verifier = generate_code_verifier()
    assert 43 <= len(verifier) <= 128
    assert generate_code_verifier() != verifier
    expected = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).rstrip(b"=").decode()
    assert code_challenge(verifier) == expected
    assert "=" not in code_challenge(verifier)


def test_ubereats_oauth_url_requires_verifier():
    adapter = UberEatsAdapter(client_id="id", client_secret="secret")
    assert adapter.uses_pkce()
    with pytest.raises(UpstreamAuthError):
        adapter.get_oauth_url("u1", "state-1")

    verifier = generate_code_verifier()
    query = parse_qs(urlparse(adapter.get_oauth_url("u1", "state-1", code_verifier=verifier)).query)
    assert query["code_challenge"] == [code_challenge(verifier)]
    assert query["code_challenge_method"] == ["S256"]


def test_ubereats_exchange_sends_verifier():
    seen = {}

    def handler(request):
        seen.update(parse_qs(request.content.decode()))
        return httpx.Response(200, json={"access_token": "a1", "expires_in": 60})

    adapter = UberEatsAdapter(client_id="id", client_secret="secret", client=_mock_client(handler))
    tokens = asyncio.run(adapter.exchange_code("code-1", code_verifier="v" * 43))
    assert tokens.access_token == "a1"
    assert seen["code_verifier"] == ["v" * 43]


def test_ubereats_webhook_without_eta_leaves_it_unset():
    adapter = UberEatsAdapter(client_id="id", client_secret="secret")
    event = WebhookEvent(
        platform="ubereats", event_id="e1", event_type="orders.status_changed",
        data={"data": {"order_id": "U-1", "status": "in_transit"}},
    )
    delivery = adapter.normalize_webhook_payload(event)
    assert delivery.id == "ub_U-1"
    assert delivery.status == "out_for_delivery"
    assert delivery.eta.estimated_arrival is None

    event.data["data"]["delivery_eta"] = {"estimated_minutes": 12}
    assert adapter.normalize_webhook_payload(event).eta.minutes_remaining == 12


# ---------------------------
# Embedded sessions
# ---------------------------

def test_walmart_session_requires_cookies():
    adapter = WalmartAdapter()
    with pytest.raises(UpstreamAuthError, match="cookie:vtc"):
        asyncio.run(adapter.connect_session({"cookies": {"auth": "a", "ACID": "b", "customer": "c"}}))


def test_stale_session_is_rejected():
    adapter = ShiptAdapter()
    captured = (datetime.now(timezone.utc) - timedelta(days=8)).isoformat()
    with pytest.raises(TokenExpiredError):
        asyncio.run(adapter.connect_session({"token": "t", "capturedAt": captured}))


def test_shipt_session_connects_and_polls_with_bearer():
    seen = []

    def handler(request):
        seen.append((request.url.path, request.headers.get("Authorization")))
        return httpx.Response(200, json={"orders": [{
            "id": "S-9",
            "status": "on_the_way",
            "shopper": {"name": "Kim", "phone": "5551112222", "location": {"latitude": 38.0, "longitude": -78.0}},
        }]})

    adapter = ShiptAdapter(client=_mock_client(handler))
    tokens = asyncio.run(adapter.connect_session({"token": "shipt-token"}))
    session = json.loads(tokens.access_token)
    assert session["token"] == "shipt-token"
    assert tokens.expires_at is not None
    assert tokens.expires_at - datetime.fromisoformat(session["capturedAt"]) == timedelta(days=7)

    deliveries = asyncio.run(adapter.get_active_deliveries(_connection("shipt", tokens.access_token)))
    assert seen[-1] == ("/v1/orders/active", "Bearer shipt-token")
    assert deliveries[0].id == "sh_S-9"
    assert deliveries[0].status == "out_for_delivery"
    assert deliveries[0].driver.name == "Kim"
    assert deliveries[0].driver.phone == "***-***-2222"
    assert deliveries[0].meta.fetch_method == "embedded"


def test_drizly_details_merge_live_tracking():
    seen = []

    def handler(request):
        seen.append((request.url.path, request.headers.get("Authorization")))
        if request.url.path == "/v1/orders/D-5/tracking":
            return httpx.Response(200, json={"location": {"latitude": 38.1, "longitude": -78.4}, "eta_minutes": 9})
        return httpx.Response(200, json={
            "id": "D-5",
            "status": "out_for_delivery",
            "items_count": 4,
            "driver": {"first_name": "Jo", "phone": "5550009999"},
        })

    adapter = DrizlyAdapter(client=_mock_client(handler))
    session = json.dumps({"token": "drz"})
    delivery = asyncio.run(adapter.get_delivery_details(_connection("drizly", session), "dr_D-5"))
    assert [path for path, _ in seen] == ["/v1/orders/D-5", "/v1/orders/D-5/tracking"]
    assert all(auth == "Bearer drz" for _, auth in seen)
    assert delivery.id == "dr_D-5"
    assert delivery.status == "out_for_delivery"
    assert delivery.order.item_count == 4
    assert delivery.driver_location.lat == 38.1
    assert delivery.eta.minutes_remaining == 9
    assert delivery.driver.phone == "***-***-9999"


def test_drizly_session_requires_token():
    with pytest.raises(UpstreamAuthError, match="token"):
        asyncio.run(DrizlyAdapter().connect_session({"cookies": {"a": "b"}}))


def test_samsclub_session_sends_cookies_and_reads_order_ids():
    seen = []

    def handler(request):
        seen.append((request.url.path, request.headers.get("Cookie")))
        return httpx.Response(200, json={"orders": [{
            "order_id": "SC-1",
            "status": "driver_assigned",
            "delivery_window": {"end": "2099-01-01T00:00:00Z"},
        }]})

    adapter = SamsClubAdapter(client=_mock_client(handler))
    tokens = asyncio.run(adapter.connect_session({"cookies": {"session": "abc", "auth": "x"}}))
    assert seen[0] == ("/api/order/v1/orders", "auth=x; session=abc")

    deliveries = asyncio.run(adapter.get_active_deliveries(_connection("samsclub", tokens.access_token)))
    assert deliveries[0].id == "sa_SC-1"
    assert deliveries[0].status == "driver_assigned"
    assert deliveries[0].eta.estimated_arrival.year == 2099
    assert deliveries[0].meta.fetch_method == "embedded"

    with pytest.raises(UpstreamAuthError, match="cookies"):
        asyncio.run(adapter.connect_session({}))


def test_samsclub_order_without_id_is_malformed():
    with pytest.raises(PlatformDataError):
        SamsClubAdapter().normalize_order({"id": "wrong-key", "status": "processing"})


# ---------------------------
# Amazon
# ---------------------------

def test_amazon_is_oauth_without_webhooks():
    adapter = AmazonAdapter(client_id="amzn-id", client_secret="amzn-secret", redirect_uri="https://app.test/cb")
    assert adapter.supports_oauth()
    assert not adapter.supports_webhooks()
    raw = b'{"order_id": "1"}'
    digest = hmac.new(b"anything", raw, hashlib.sha256).hexdigest()
    assert not adapter.verify_webhook(None, digest, raw_body=raw)

    query = parse_qs(urlparse(adapter.get_oauth_url("u1", "state-9")).query)
    assert query["application_id"] == ["amzn-id"]
    assert query["state"] == ["state-9"]
    assert query["redirect_uri"] == ["https://app.test/cb"]


def test_amazon_orders_split_into_shipments():
    seen = []

    def handler(request):
        seen.append((request.url.path, request.headers.get("x-amz-access-token"), dict(request.url.params)))
        return httpx.Response(200, json={"payload": {"orders": [{
            "order_id": "111-1",
            "order_status": "Shipped",
            "shipping_address": {"address_line_1": "1 Main St", "city": "Charlottesville", "state_or_region": "VA"},
            "shipments": [
                {"shipment_id": "A", "status": "out_for_delivery", "tracking_number": "TBA1", "carrier": "AMZN_US"},
                {"shipment_id": "B", "status": "delivered"},
            ],
        }]}})

    adapter = AmazonAdapter(client_id="id", client_secret="secret", client=_mock_client(handler))
    deliveries = asyncio.run(adapter.get_active_deliveries(_connection("amazon", "amz-token")))
    path, token, params = seen[0]
    assert path == "/orders/v0/orders"
    assert token == "amz-token"
    assert "Shipped" in params["OrderStatuses"].split(",")

    assert [d.id for d in deliveries] == ["am_111-1_shipment_A", "am_111-1_shipment_B"]
    assert [d.status for d in deliveries] == ["out_for_delivery", "delivered"]
    assert deliveries[0].tracking.url.endswith("trackingId=TBA1")
    assert deliveries[0].meta.raw_data["carrier"] == "Amazon Logistics"
    assert deliveries[0].meta.fetch_method == "polling"
    assert deliveries[0].destination.city == "Charlottesville"


# ---------------------------
# Total Wine (Onfleet)
# ---------------------------

def _onfleet_task(task_id="t1", state=1, **extra):
    task = {
        "id": task_id,
        "state": state,
        "worker": "w1",
        "destination": {
            "address": {"street": "9 Vine St", "city": "Richmond", "state": "VA", "postalCode": "23220"},
            "location": [-77.43, 37.54],
        },
        "trackingURL": "https://onf.lt/abc",
    }
    task.update(extra)
    return task


def test_totalwine_webhook_signature_is_sha512():
    adapter = TotalWineAdapter(webhook_secret="tw-secret")
    raw = json.dumps({"triggerName": "taskCompleted"}).encode()
    sha512 = hmac.new(b"tw-secret", raw, hashlib.sha512).hexdigest()
    sha256 = hmac.new(b"tw-secret", raw, hashlib.sha256).hexdigest()
    assert adapter.verify_webhook(None, sha512, raw_body=raw)
    assert not adapter.verify_webhook(None, sha256, raw_body=raw)
    assert not TotalWineAdapter(webhook_secret="").verify_webhook(None, sha512, raw_body=raw)


def test_totalwine_task_states():
    assert task_state_to_status(0) == "submitted"
    assert task_state_to_status(1) == "ready"
    assert task_state_to_status(2) == "out_for_delivery"
    assert task_state_to_status(3, {"success": True}) == "delivered"
    assert task_state_to_status(3, {"success": False}) == "cancelled"


def test_totalwine_webhook_normalises_completed_task():
    adapter = TotalWineAdapter(webhook_secret="tw-secret")
    task = _onfleet_task(state=3, completionDetails={"success": True, "time": "2026-03-01T18:00:00Z"})
    event = WebhookEvent(
        platform="totalwine", event_id="e1", event_type="taskCompleted",
        data={"data": {"task": task, "worker": {"name": "Ana", "phone": "5551234567", "location": [-77.44, 37.55]}}},
    )
    delivery = adapter.normalize_webhook_payload(event)
    assert delivery.id == "to_t1"
    assert delivery.status == "delivered"
    assert delivery.timestamps.delivered is not None
    assert delivery.destination.lat == 37.54
    assert delivery.destination.lng == -77.43
    assert delivery.driver.name == "Ana"
    assert delivery.driver.phone == "***-***-4567"
    assert delivery.driver_location.lat == 37.55
    assert delivery.meta.fetch_method == "webhook"

    ping = WebhookEvent(platform="totalwine", event_id="e2", event_type="workerDuty", data={"data": {"worker": {}}})
    assert adapter.normalize_webhook_payload(ping) is None
    broken = WebhookEvent(platform="totalwine", event_id="e3", event_type="taskUpdated", data={"data": {"task": "t1"}})
    with pytest.raises(PlatformDataError):
        adapter.normalize_webhook_payload(broken)


def test_totalwine_polls_assigned_and_active_tasks_with_basic_auth():
    seen = []

    def handler(request):
        seen.append((request.url.path, request.url.params.get("state"), request.headers.get("Authorization")))
        if request.url.path == "/api/v2/workers/w1":
            return httpx.Response(200, json={"name": "Ana", "location": [-77.44, 37.55]})
        if request.url.params.get("state") == "1":
            return httpx.Response(200, json=[_onfleet_task()])
        return httpx.Response(200, json=[])

    adapter = TotalWineAdapter(client=_mock_client(handler))
    deliveries = asyncio.run(adapter.get_active_deliveries(_connection("totalwine", "onfleet-key")))
    expected_auth = "Basic " + base64.b64encode(b"onfleet-key:").decode()
    assert {state for path, state, _ in seen if path == "/api/v2/tasks"} == {"1", "2"}
    assert all(auth == expected_auth for _, _, auth in seen)
    assert len(deliveries) == 1
    assert deliveries[0].status == "ready_for_pickup"
    assert deliveries[0].driver.name == "Ana"
    assert deliveries[0].tracking.url == "https://onf.lt/abc"

    with pytest.raises(UpstreamAuthError):
        asyncio.run(adapter.connect_session({}))
