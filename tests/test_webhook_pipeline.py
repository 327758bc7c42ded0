import asyncio
import hashlib
import hmac
import json
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from fakes import FakeAdapter, make_delivery  # noqa: E402

from adapter_registry import AdapterRegistry  # noqa: E402
from delivery_cache import DeliveryCache, DeliveryHistoryStore  # noqa: E402
from platform_adapters.doordash import DoorDashAdapter  # noqa: E402
from rate_limiter import SlidingWindowRateLimiter  # noqa: E402
from realtime import RealtimeHub, user_topic  # noqa: E402
from webhook_pipeline import IdempotencyStore, WebhookPipeline, merge_deliveries  # noqa: E402

SECRET = "whsec"


def _sign(raw: bytes, prefix: str = "") -> str:
    return prefix + hmac.new(SECRET.encode(), raw, hashlib.sha256).hexdigest()


def _pipeline(tmp_path, *adapters, limit=1000):
    registry = AdapterRegistry()
    for adapter in adapters:
        registry.register(adapter)
    hub = RealtimeHub()
    pipeline = WebhookPipeline(
        registry,
        DeliveryCache(tmp_path / "cache.json"),
        DeliveryHistoryStore(tmp_path / "history.json"),
        hub,
        rate_limiter=SlidingWindowRateLimiter(limit, 60),
        dedupe=IdempotencyStore(ttl_s=3600),
    )
    return pipeline, hub


async def _post(pipeline, platform, body, *, signature=None, header="X-Webhook-Signature"):
    raw = json.dumps(body).encode()
    headers = {header: signature if signature is not None else _sign(raw)}
    return await pipeline.handle(platform, None, headers, raw_body=raw)


def _events(q):
    events = []
    while not q.empty():
        events.append(json.loads(q.get_nowait()[len("data: "):]))
    return events


def test_doordash_picked_up_updates_cached_delivery(tmp_path):
    async def scenario():
        pipeline, hub = _pipeline(tmp_path, DoorDashAdapter(
            developer_id="dev", key_id="key", signing_secret="s", webhook_secret=SECRET,
        ))
        q = hub.subscribe(user_topic("u1"))
        await pipeline.cache.upsert("u1", make_delivery("doordash", "D-1", "driver_at_store"))
        await pipeline.history.record_transition("u1", make_delivery("doordash", "D-1", "driver_at_store"))

        body = {
            "event_id": "evt-1",
            "external_delivery_id": "D-1",
            "delivery_status": "picked_up",
            "dasher": {"first_name": "Lee", "location": {"lat": 38.04, "lng": -78.51}},
        }
        raw = json.dumps(body).encode()
        result = await pipeline.handle(
            "doordash", None, {"X-Webhook-Signature": _sign(raw, "sha256=")}, raw_body=raw
        )
        cached = await pipeline.cache.get("u1", "doordash", "D-1")
        timeline = (await pipeline.history.get("u1", "do_D-1")).timeline
        return result, cached, timeline, _events(q)

    result, cached, timeline, events = asyncio.run(scenario())
    assert result.status_code == 200
    assert result.body == {"received": True, "processed": True}
    assert result.headers["X-RateLimit-Limit"] == "1000"

    assert cached.status == "out_for_delivery"
    assert cached.meta.fetch_method == "webhook"
    # fields missing from the webhook keep their cached values
    assert cached.destination.address == "1 Main St"
    assert cached.order.item_count == 3
    assert cached.driver.name == "Lee"
    # no ETA in the webhook or the cache: derived from the dasher's distance
    assert cached.eta_estimate["source"] == "calculated"

    assert [t["status"] for t in timeline] == ["driver_at_store", "out_for_delivery"]
    assert [e["type"] for e in events] == ["delivery_update", "location_update"]
    assert events[0]["payload"]["previousStatus"] == "driver_at_store"
    assert events[0]["payload"]["status"] == "out_for_delivery"


def test_duplicate_event_is_acknowledged_once(tmp_path):
    async def scenario():
        pipeline, hub = _pipeline(tmp_path, FakeAdapter("doordash"))
        await pipeline.cache.upsert("u1", make_delivery("doordash", "7", "preparing"))
        q = hub.subscribe(user_topic("u1"))
        body = {"event_id": "evt-7", "order_id": "7", "status": "dasher_confirmed"}
        first = await _post(pipeline, "doordash", body)
        after_first = (await pipeline.cache.get("u1", "doordash", "7")).to_dict()
        second = await _post(pipeline, "doordash", body)
        after_second = (await pipeline.cache.get("u1", "doordash", "7")).to_dict()
        return first, second, _events(q), after_first, after_second

    first, second, events, after_first, after_second = asyncio.run(scenario())
    assert first.body["processed"] is True
    assert second.status_code == 200
    assert second.body == {"received": True, "duplicate": True}
    assert len(events) == 1
    assert after_second == after_first


def test_unknown_platform_does_not_consume_rate_limit(tmp_path):
    async def scenario():
        pipeline, _ = _pipeline(tmp_path, FakeAdapter("doordash"), limit=1)
        unknown = await _post(pipeline, "pigeon_post", {"order_id": "1"})
        allowed = await _post(pipeline, "doordash", {"ping": True})
        limited = await _post(pipeline, "doordash", {"ping": True})
        return unknown, allowed, limited

    unknown, allowed, limited = asyncio.run(scenario())
    assert unknown.status_code == 400
    assert unknown.body == {"error": "Unknown platform"}
    assert unknown.headers == {}
    assert allowed.status_code == 200
    assert limited.status_code == 429
    assert "Retry-After" in limited.headers


def test_signature_is_required_and_checked(tmp_path):
    async def scenario():
        pipeline, _ = _pipeline(tmp_path, FakeAdapter("doordash"))
        missing = await pipeline.handle("doordash", {"order_id": "1"}, {})
        wrong = await _post(pipeline, "doordash", {"order_id": "1"}, signature="deadbeef")
        alternate = await _post(pipeline, "doordash", {"ping": True}, header="X-Signature")
        return missing, wrong, alternate

    missing, wrong, alternate = asyncio.run(scenario())
    assert missing.status_code == 401
    assert missing.body == {"error": "Missing signature"}
    assert wrong.status_code == 401
    assert wrong.body == {"error": "Invalid signature"}
    assert alternate.status_code == 200


def test_malformed_payload_releases_event_for_redelivery(tmp_path):
    async def scenario():
        pipeline, _ = _pipeline(tmp_path, FakeAdapter("doordash"))
        await pipeline.cache.upsert("u1", make_delivery("doordash", "7", "preparing"))
        broken = await _post(pipeline, "doordash", {"event_id": "evt-9", "status": "picked_up"})
        fixed = await _post(pipeline, "doordash", {"event_id": "evt-9", "order_id": "7", "status": "picked_up"})
        not_json = await pipeline.handle("doordash", None, {"x-signature": _sign(b"{oops")}, raw_body=b"{oops")
        return broken, fixed, not_json

    broken, fixed, not_json = asyncio.run(scenario())
    assert broken.status_code == 400
    assert broken.body == {"error": "Invalid payload"}
    assert fixed.body == {"received": True, "processed": True}
    assert not_json.status_code == 400


def test_ignored_event_stays_marked(tmp_path):
    async def scenario():
        pipeline, _ = _pipeline(tmp_path, FakeAdapter("doordash"))
        first = await _post(pipeline, "doordash", {"event_id": "evt-p", "ping": True})
        second = await _post(pipeline, "doordash", {"event_id": "evt-p", "ping": True})
        return first, second

    first, second = asyncio.run(scenario())
    assert first.body == {"received": True, "processed": False}
    assert second.body["duplicate"] is True


def test_unknown_order_is_acknowledged_but_not_processed(tmp_path):
    async def scenario():
        pipeline, _ = _pipeline(tmp_path, FakeAdapter("doordash"))
        result = await _post(pipeline, "doordash", {"order_id": "never-seen", "status": "picked_up"})
        return result, await pipeline.cache.count()

    result, count = asyncio.run(scenario())
    assert result.status_code == 200
    assert result.body == {"received": True, "processed": False}
    assert count == 0


def test_platform_without_webhooks_is_rejected(tmp_path):
    async def scenario():
        pipeline, _ = _pipeline(tmp_path, FakeAdapter("amazon", webhooks=False))
        return await _post(pipeline, "amazon", {"order_id": "1"})

    result = asyncio.run(scenario())
    assert result.status_code == 400


def test_terminal_status_archives_delivery(tmp_path):
    async def scenario():
        pipeline, _ = _pipeline(tmp_path, FakeAdapter("doordash"))
        await pipeline.cache.upsert("u1", make_delivery("doordash", "7", "arriving"))
        await _post(pipeline, "doordash", {"order_id": "7", "status": "delivered"})
        return await pipeline.history.list_for_user("u1")

    archived = asyncio.run(scenario())
    assert len(archived) == 1
    assert archived[0].final_status == "delivered"
    assert archived[0].delivery["status"] == "delivered"


def test_late_webhook_does_not_reopen_terminal_delivery(tmp_path):
    async def scenario():
        pipeline, hub = _pipeline(tmp_path, FakeAdapter("doordash"))
        delivered = make_delivery("doordash", "9", "delivered")
        await pipeline.cache.upsert("u1", delivered)
        await pipeline.history.archive("u1", delivered)
        q = hub.subscribe(user_topic("u1"))
        result = await _post(pipeline, "doordash", {"event_id": "late", "order_id": "9", "status": "picked_up"})
        cached = await pipeline.cache.get("u1", "doordash", "9")
        archived = await pipeline.history.list_for_user("u1")
        return result, cached, archived, _events(q)

    result, cached, archived, events = asyncio.run(scenario())
    assert result.status_code == 200
    assert result.body == {"received": True, "processed": False}
    assert cached.status == "delivered"
    assert archived[0].final_status == "delivered"
    assert events == []


def test_webhook_without_eta_keeps_cached_platform_eta(tmp_path):
    async def scenario():
        pipeline, _ = _pipeline(tmp_path, DoorDashAdapter(
            developer_id="dev", key_id="key", signing_secret="s", webhook_secret=SECRET,
        ))
        await pipeline.cache.upsert("u1", make_delivery("doordash", "D-2", "driver_at_store", minutes=5))
        body = {"event_id": "evt-2", "external_delivery_id": "D-2", "delivery_status": "picked_up"}
        raw = json.dumps(body).encode()
        await pipeline.handle("doordash", None, {"X-Webhook-Signature": _sign(raw)}, raw_body=raw)
        return await pipeline.cache.get("u1", "doordash", "D-2")

    cached = asyncio.run(scenario())
    assert cached.status == "out_for_delivery"
    assert cached.eta.estimated_arrival is not None
    assert cached.eta.minutes_remaining == 5
    assert cached.eta_estimate["source"] == "platform"


def test_signature_is_checked_before_body_is_decoded(tmp_path):
    async def scenario():
        pipeline, _ = _pipeline(tmp_path, FakeAdapter("doordash"))
        unsigned = await pipeline.handle("doordash", None, {}, raw_body=b"{oops")
        forged = await pipeline.handle("doordash", None, {"X-Signature": "deadbeef"}, raw_body=b"{oops")
        return unsigned, forged

    unsigned, forged = asyncio.run(scenario())
    assert unsigned.status_code == 401
    assert unsigned.body == {"error": "Missing signature"}
    assert forged.status_code == 401
    assert forged.body == {"error": "Invalid signature"}


def test_unexpected_failure_returns_500_and_releases(tmp_path):
    class ExplodingAdapter(FakeAdapter):
        def normalize_webhook_payload(self, event):
            raise RuntimeError("boom")

    async def scenario():
        pipeline, _ = _pipeline(tmp_path, ExplodingAdapter("doordash"))
        result = await _post(pipeline, "doordash", {"event_id": "evt-x", "order_id": "1"})
        return result, await pipeline.dedupe.count()

    result, marked = asyncio.run(scenario())
    assert result.status_code == 500
    assert result.body == {"error": "Internal server error"}
    assert marked == 0


def test_merge_keeps_cached_location_when_webhook_has_none():
    cached = make_delivery("doordash", "1", "driver_assigned", driver_at=(38.0, -78.0), minutes=12)
    incoming = make_delivery("doordash", "1", "out_for_delivery", address="", item_count=0)
    merged = merge_deliveries(cached, incoming)
    assert merged.status == "out_for_delivery"
    assert merged.driver_location.lat == 38.0
    assert merged.eta.minutes_remaining == 12
    assert merged.tracking.url == "https://track.test/1"
    assert merged.meta.fetch_method == "webhook"

