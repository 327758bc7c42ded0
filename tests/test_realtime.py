import asyncio
import json
import sys
import threading
from pathlib import Path
from types import SimpleNamespace

from pywebpush import WebPushException

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from fakes import make_delivery  # noqa: E402

import realtime  # noqa: E402
from push_subscriptions import PushSubscriptionStore  # noqa: E402
from realtime import (  # noqa: E402
    PushNotifier,
    RealtimeHub,
    delivery_location_topic,
    delivery_update_event,
    push_payload_for,
    sse_encode,
    user_topic,
)


def _decode(frame):
    assert frame.startswith("data: ") and frame.endswith("\n\n")
    return json.loads(frame[len("data: "):])


def test_delivery_update_event_shape():
    event = delivery_update_event(make_delivery(status="delivered"), previous_status="arriving")
    assert event["type"] == "delivery_update"
    assert event["timestamp"].endswith("Z")
    assert event["payload"]["deliveryId"] == "do_1"
    assert event["payload"]["previousStatus"] == "arriving"
    assert event["payload"]["isComplete"] is True
    assert _decode(sse_encode(event)) == event


def test_slow_subscriber_drops_updates_without_blocking_others():
    async def scenario():
        hub = RealtimeHub(queue_size=2)
        slow = hub.subscribe(user_topic("u1"))
        fast = hub.subscribe(user_topic("u1"))
        delivered = []
        for _ in range(3):
            delivered.append(hub.publish_delivery_update("u1", make_delivery()))
            if not fast.empty():
                fast.get_nowait()
        return delivered, slow.qsize()

    delivered, slow_size = asyncio.run(scenario())
    assert delivered == [2, 2, 1]
    assert slow_size == 2


def test_location_updates_fan_out_to_delivery_topic():
    async def scenario():
        hub = RealtimeHub()
        user_q = hub.subscribe(user_topic("u1"))
        map_q = hub.subscribe(delivery_location_topic("do_1"))
        sent = hub.publish_location_update("u1", make_delivery(driver_at=(38.0, -78.0)))
        skipped = hub.publish_location_update("u1", make_delivery())
        return sent, skipped, _decode(user_q.get_nowait()), _decode(map_q.get_nowait())

    sent, skipped, user_event, map_event = asyncio.run(scenario())
    assert sent == 2
    assert skipped == 0
    assert user_event == map_event
    assert user_event["payload"]["location"]["lat"] == 38.0


def test_stream_yields_initial_then_events_and_unsubscribes():
    async def scenario():
        hub = RealtimeHub()
        stream = hub.stream(user_topic("u1"), initial={"type": "system_status"})
        first = await stream.__anext__()
        hub.publish_connection_status("u1", "instacart", "expired", "Refresh token expired")
        second = await stream.__anext__()
        await stream.aclose()
        return first, second, hub.subscriber_count()

    first, second, remaining = asyncio.run(scenario())
    assert _decode(first) == {"type": "system_status"}
    assert _decode(second)["payload"] == {"platform": "instacart", "status": "expired", "error": "Refresh token expired"}
    assert remaining == 0


def test_push_payload_mentions_eta():
    payload = push_payload_for(make_delivery(status="arriving", minutes=4))
    assert payload["title"] == "Doordash order update"
    assert "about 4 min away" in payload["body"]
    assert payload["url"] == "/deliveries/do_1"


def test_push_notifier_sends_only_on_notable_transitions(tmp_path, monkeypatch):
    sent = []
    monkeypatch.setattr(realtime, "webpush", lambda **kwargs: sent.append(kwargs))

    async def scenario():
        store = PushSubscriptionStore(tmp_path / "push.json")
        await store.add_subscription("u1", "https://push.test/a", {"p256dh": "k", "auth": "a"})
        notifier = PushNotifier(store, public_key="pub", private_key="priv", subject="mailto:test@dropdeck.test")
        first = await notifier.notify_transition("u1", make_delivery(status="out_for_delivery"), "preparing")
        repeat = await notifier.notify_transition("u1", make_delivery(status="out_for_delivery"), "out_for_delivery")
        quiet = await notifier.notify_transition("u1", make_delivery(status="driver_at_store"), "driver_assigned")
        return first, repeat, quiet

    assert asyncio.run(scenario()) == (1, 0, 0)
    assert len(sent) == 1
    assert sent[0]["vapid_claims"] == {"sub": "mailto:test@dropdeck.test"}
    assert json.loads(sent[0]["data"])["tag"] == "delivery-do_1"


def test_push_notifier_removes_gone_subscriptions(tmp_path, monkeypatch):
    def gone(**kwargs):
        raise WebPushException("gone", response=SimpleNamespace(status_code=410))

    monkeypatch.setattr(realtime, "webpush", gone)

    async def scenario():
        store = PushSubscriptionStore(tmp_path / "push.json")
        await store.add_subscription("u1", "https://push.test/a", {"p256dh": "k", "auth": "a"})
        notifier = PushNotifier(store, public_key="pub", private_key="priv")
        sent = await notifier.send("u1", {"title": "t"})
        return sent, await store.count()

    assert asyncio.run(scenario()) == (0, 0)


def test_unconfigured_notifier_is_silent(tmp_path):
    store = PushSubscriptionStore(tmp_path / "push.json")
    notifier = PushNotifier(store, public_key="", private_key="")
    assert not notifier.configured
    assert asyncio.run(notifier.notify_transition("u1", make_delivery(status="delivered"), "arriving")) == 0


def test_push_sends_run_off_the_event_loop_thread(tmp_path, monkeypatch):
    threads = []
    monkeypatch.setattr(realtime, "webpush", lambda **kwargs: threads.append(threading.get_ident()))

    async def scenario():
        store = PushSubscriptionStore(tmp_path / "push.json")
        await store.add_subscription("u1", "https://push.test/a", {"p256dh": "k", "auth": "a"})
        notifier = PushNotifier(store, public_key="pub", private_key="priv")
        return threading.get_ident(), await notifier.send("u1", {"title": "t"})

    loop_thread, sent = asyncio.run(scenario())
    assert sent == 1
    assert threads and threads[0] != loop_thread
