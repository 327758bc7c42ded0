"""
DropDeck Delivery Engine: HTTP API (FastAPI)

Purpose
=======
Aggregate grocery, food and parcel deliveries from many platforms behind one
account: connect platforms (OAuth or captured sessions), ingest signed
webhooks, and serve a unified, ETA-enriched view of every active delivery.

Surfaces
--------
- ``POST /webhook/{platform}``: signed platform webhooks.
- ``/oauth/{platform}/callback``: OAuth redirect target.
- ``/api/...``: connections, deliveries, history, SSE streams, Web Push.
- ``/health``: liveness and dependency checks.

Run
---
$ uvicorn app:app --reload --port 8080

Environment
-----------
- DATA_DIRS (first entry holds the JSON stores), APP_URL, SESSION_SECRET,
  TOKEN_ENCRYPTION_KEY, VAPID_PUBLIC_KEY / VAPID_PRIVATE_KEY / VAPID_SUBJECT,
  plus the per-platform client credentials read by each adapter.
"""

from __future__ import annotations
from typing import Any, Dict, Optional
from dataclasses import dataclass
import asyncio, hashlib, hmac, os, secrets, time
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import parse_qsl, quote, urlencode

from fastapi import Body, FastAPI, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse, StreamingResponse

from adapter_registry import AdapterRegistry, build_default_registry
from connections_store import ConnectionStore
from delivery_cache import DeliveryCache, DeliveryHistoryStore
from delivery_models import PLATFORMS, isoformat, utcnow
from delivery_service import DeliveryService
from oauth_state import OAuthStateError, OAuthStateStore
from platform_adapters.errors import (
    CapabilityError,
    DeliveryNotFoundError,
    PlatformAdapterError,
    RateLimitedError,
    UnsupportedPlatformError,
    UpstreamAuthError,
)
from push_subscriptions import PushSubscriptionStore
from rate_limiter import (
    SlidingWindowRateLimiter,
    api_rate_limiter,
    auth_rate_limiter,
    rate_limit_headers,
)
from realtime import (
    VAPID_PUBLIC_KEY,
    PushNotifier,
    RealtimeHub,
    delivery_location_topic,
    location_update_event,
    system_status_event,
    user_topic,
)
from token_manager import ConnectionNotFoundError, TokenManager
from token_vault import TokenVaultError, is_encryption_configured
from webhook_pipeline import WebhookPipeline

APP_VERSION = os.getenv("APP_VERSION", "0.1.0")
APP_URL = os.getenv("APP_URL", "").rstrip("/")

DATA_DIRS = [Path(p) for p in os.getenv("DATA_DIRS", "/data").split(":")]
PRIMARY_DATA_DIR = DATA_DIRS[0]

SESSION_COOKIE_NAME = "dropdeck_session"
CONNECTIONS_PAGE = "/settings/connections"

CACHE_PURGE_INTERVAL_S = int(os.getenv("CACHE_PURGE_INTERVAL_S", "300"))
CACHE_RETENTION_S = int(os.getenv("CACHE_RETENTION_S", str(24 * 60 * 60)))

STARTED_AT = time.time()


# ---------------------------
# Engine wiring
# ---------------------------
@dataclass
class Engine:
    registry: AdapterRegistry
    connections: ConnectionStore
    cache: DeliveryCache
    history: DeliveryHistoryStore
    push_store: PushSubscriptionStore
    hub: RealtimeHub
    notifier: PushNotifier
    tokens: TokenManager
    deliveries: DeliveryService
    webhooks: WebhookPipeline
    api_limiter: SlidingWindowRateLimiter
    auth_limiter: SlidingWindowRateLimiter


def build_engine(data_dir: Path, registry: Optional[AdapterRegistry] = None) -> Engine:
    registry = registry or build_default_registry()
    connections = ConnectionStore(data_dir / "connections.json")
    cache = DeliveryCache(data_dir / "delivery_cache.json")
    history = DeliveryHistoryStore(data_dir / "delivery_history.json")
    push_store = PushSubscriptionStore(data_dir / "push_subscriptions.json")
    hub = RealtimeHub()
    notifier = PushNotifier(push_store)
    tokens = TokenManager(connections, registry, cache, hub, OAuthStateStore())
    return Engine(
        registry=registry,
        connections=connections,
        cache=cache,
        history=history,
        push_store=push_store,
        hub=hub,
        notifier=notifier,
        tokens=tokens,
        deliveries=DeliveryService(connections, registry, cache, history, tokens, hub=hub, notifier=notifier),
        webhooks=WebhookPipeline(registry, cache, history, hub, notifier=notifier),
        api_limiter=api_rate_limiter(),
        auth_limiter=auth_rate_limiter(),
    )


app = FastAPI(title="DropDeck Delivery Engine")


def _engine(request: Request) -> Engine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="engine not initialised")
    return engine


@app.on_event("startup")
async def init_engine() -> None:
    if getattr(app.state, "engine", None) is None:
        app.state.engine = build_engine(PRIMARY_DATA_DIR)
    if not is_encryption_configured():
        print("[startup] TOKEN_ENCRYPTION_KEY not configured; connecting platforms will fail")
    if not os.getenv("SESSION_SECRET"):
        print("[startup] SESSION_SECRET not configured; API requests will be rejected")


@app.on_event("startup")
async def start_cache_purger() -> None:
    async def cache_purge_loop():
        while True:
            await asyncio.sleep(CACHE_PURGE_INTERVAL_S)
            try:
                removed = await app.state.engine.cache.purge_expired(CACHE_RETENTION_S)
                if removed:
                    print(f"[cache_purge] removed {removed} expired deliveries")
            except Exception as exc:
                print(f"[cache_purge] error: {exc}")

    app.state.cache_purge_task = asyncio.create_task(cache_purge_loop())


@app.on_event("shutdown")
async def shutdown_engine() -> None:
    task = getattr(app.state, "cache_purge_task", None)
    if task is not None:
        task.cancel()
    engine = getattr(app.state, "engine", None)
    if engine is not None:
        await engine.registry.aclose()


# ---------------------------
# Sessions
# ---------------------------
def _session_secret() -> str:
    return (os.getenv("SESSION_SECRET") or "").strip()


def session_cookie_value(user_id: str) -> Optional[str]:
    secret = _session_secret()
    if not secret or not user_id:
        return None
    digest = hmac.new(secret.encode("utf-8"), user_id.encode("utf-8"), hashlib.sha256).hexdigest()
    return f"{user_id}:{digest}"


def _current_user(request: Request) -> Optional[str]:
    provided = request.cookies.get(SESSION_COOKIE_NAME)
    if not provided:
        return None
    user_id, sep, _digest = provided.rpartition(":")
    if not sep:
        return None
    expected = session_cookie_value(user_id)
    if expected and secrets.compare_digest(provided, expected):
        return user_id
    return None


def _raise_rate_limited(result) -> None:
    raise HTTPException(status_code=429, detail="Too many requests", headers=rate_limit_headers(result))


async def _require_user(request: Request, *, auth_limited: bool = False) -> str:
    user_id = _current_user(request)
    if user_id is None:
        raise HTTPException(status_code=401, detail="authentication required")
    engine = _engine(request)
    limiter = engine.auth_limiter if auth_limited else engine.api_limiter
    result = await limiter.check(user_id)
    if not result.success:
        _raise_rate_limited(result)
    return user_id


def _require_platform(platform: str) -> str:
    if platform not in PLATFORMS:
        raise UnsupportedPlatformError(platform)
    return platform


# ---------------------------
# Error mapping
# ---------------------------
@app.exception_handler(PlatformAdapterError)
async def adapter_error_handler(request: Request, exc: PlatformAdapterError):
    body = exc.to_dict()
    if isinstance(exc, (UnsupportedPlatformError, CapabilityError)):
        return JSONResponse({"detail": exc.message, **body}, status_code=400)
    if isinstance(exc, UpstreamAuthError):
        return JSONResponse({"detail": "reconnect required", **body}, status_code=401)
    if isinstance(exc, RateLimitedError):
        retry_after = str(int(exc.retry_after or 60))
        return JSONResponse({"detail": exc.message, **body}, status_code=429, headers={"Retry-After": retry_after})
    if isinstance(exc, DeliveryNotFoundError):
        return JSONResponse({"detail": exc.message, **body}, status_code=404)
    print(f"[api] {exc.platform} error on {request.url.path}: {exc.code} {exc.message}")
    return JSONResponse({"detail": "Internal server error"}, status_code=500)


@app.exception_handler(ConnectionNotFoundError)
async def connection_not_found_handler(request: Request, exc: ConnectionNotFoundError):
    return JSONResponse({"detail": str(exc), "platform": exc.platform}, status_code=404)


@app.exception_handler(TokenVaultError)
async def token_vault_error_handler(request: Request, exc: TokenVaultError):
    print(f"[api] token vault error on {request.url.path}: {exc}")
    return JSONResponse({"detail": "Internal server error"}, status_code=500)


# ---------------------------
# Webhooks
# ---------------------------
@app.post("/webhook/{platform}")
async def receive_webhook(platform: str, request: Request):
    raw_body = await request.body()
    result = await _engine(request).webhooks.handle(platform, None, request.headers, raw_body=raw_body)
    return JSONResponse(result.body, status_code=result.status_code, headers=result.headers)


@app.get("/webhook/{platform}")
async def webhook_liveness(platform: str):
    if platform not in PLATFORMS:
        return JSONResponse({"error": "Unknown platform"}, status_code=400)
    return {"platform": platform, "status": "ok", "timestamp": isoformat(utcnow())}


# ---------------------------
# OAuth callback
# ---------------------------
def _connections_redirect(platform: str, **params: str) -> RedirectResponse:
    query = urlencode({**params, "platform": platform})
    return RedirectResponse(f"{APP_URL}{CONNECTIONS_PAGE}?{query}", status_code=302)


async def _oauth_callback(request: Request, platform: str, params: Dict[str, str]) -> RedirectResponse:
    tag = f"[oauth:{platform}]"
    engine = _engine(request)
    if not engine.registry.has(platform) or not engine.registry.get(platform).supports_oauth():
        return _connections_redirect(platform, error="invalid_platform")

    error = params.get("error")
    if error:
        print(f"{tag} authorization error: {error}")
        return _connections_redirect(platform, error=error, description=params.get("error_description") or "")

    code = params.get("code")
    state = params.get("state")
    if not code or not state:
        print(f"{tag} missing code or state parameter")
        return _connections_redirect(platform, error="missing_params")

    user_id = _current_user(request)
    if user_id is None:
        print(f"{tag} no authenticated session")
        return RedirectResponse(f"{APP_URL}/login?callbackUrl={quote(CONNECTIONS_PAGE)}", status_code=302)

    try:
        await engine.tokens.handle_oauth_callback(user_id, platform, code, state)
    except OAuthStateError as exc:
        print(f"{tag} {exc}")
        return _connections_redirect(platform, error=exc.code)
    except Exception as exc:
        print(f"{tag} callback error: {exc}")
        return _connections_redirect(platform, error="callback_failed")
    return _connections_redirect(platform, success="true")


@app.get("/oauth/{platform}/callback")
async def oauth_callback(platform: str, request: Request):
    return await _oauth_callback(request, platform, dict(request.query_params))


@app.post("/oauth/{platform}/callback")
async def oauth_callback_form(platform: str, request: Request):
    try:
        params = dict(request.query_params)
        params.update(parse_qsl((await request.body()).decode("utf-8"), keep_blank_values=True))
    except (UnicodeDecodeError, ValueError):
        return _connections_redirect(platform, error="invalid_request")
    return await _oauth_callback(request, platform, params)


# ---------------------------
# Connections API
# ---------------------------
@app.get("/api/connections")
async def list_connections(request: Request):
    user_id = await _require_user(request)
    return {"connections": await _engine(request).tokens.list_connections(user_id)}


@app.get("/api/connections/{platform}")
async def get_connection(platform: str, request: Request):
    user_id = await _require_user(request)
    conn = await _engine(request).tokens.require_connection(user_id, _require_platform(platform))
    return conn.to_public_dict()


@app.post("/api/connections/{platform}/oauth")
async def start_oauth(platform: str, request: Request):
    user_id = await _require_user(request, auth_limited=True)
    result = await _engine(request).tokens.initiate_oauth(user_id, _require_platform(platform))
    return {"authUrl": result["auth_url"], "state": result["state"]}


@app.post("/api/connections/{platform}/session")
async def connect_session(platform: str, request: Request, payload: Optional[Dict[str, Any]] = Body(None)):
    user_id = await _require_user(request, auth_limited=True)
    conn = await _engine(request).tokens.connect_session(user_id, _require_platform(platform), payload or {})
    return {"ok": True, "connection": conn.to_public_dict()}


@app.delete("/api/connections/{platform}")
async def disconnect(platform: str, request: Request):
    user_id = await _require_user(request)
    removed = await _engine(request).tokens.disconnect(user_id, _require_platform(platform))
    if not removed:
        raise ConnectionNotFoundError(platform)
    return {"ok": True}


@app.post("/api/connections/{platform}/refresh")
async def refresh_connection(platform: str, request: Request):
    user_id = await _require_user(request)
    conn = await _engine(request).tokens.force_refresh(user_id, _require_platform(platform))
    return {"ok": True, "connection": conn.to_public_dict()}


@app.get("/api/connections/{platform}/test")
async def test_connection(platform: str, request: Request):
    user_id = await _require_user(request)
    return await _engine(request).tokens.test_connection(user_id, _require_platform(platform))


# ---------------------------
# Deliveries API
# ---------------------------
@app.get("/api/deliveries")
async def list_deliveries(request: Request, platform: Optional[str] = Query(None)):
    user_id = await _require_user(request)
    if platform is not None:
        _require_platform(platform)
    deliveries = await _engine(request).deliveries.get_active_deliveries(user_id, platform)
    return {"deliveries": [d.to_dict() for d in deliveries], "count": len(deliveries)}


@app.get("/api/deliveries/{delivery_id}")
async def get_delivery(delivery_id: str, request: Request):
    user_id = await _require_user(request)
    delivery = await _engine(request).deliveries.get_delivery(user_id, delivery_id)
    return delivery.to_dict()


@app.get("/api/history")
async def delivery_history(
    request: Request,
    platform: Optional[str] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    user_id = await _require_user(request)
    if platform is not None:
        _require_platform(platform)
    entries = await _engine(request).deliveries.get_history(user_id, platform, limit=limit, offset=offset)
    return {"deliveries": [e.to_public_dict() for e in entries], "limit": limit, "offset": offset}


# ---------------------------
# SSE
# ---------------------------
@app.get("/api/stream")
async def stream_user_events(request: Request):
    user_id = await _require_user(request)
    hub = _engine(request).hub
    initial = system_status_event("connected")
    return StreamingResponse(hub.stream(user_topic(user_id), initial), media_type="text/event-stream")


@app.get("/api/stream/deliveries/{delivery_id}/location")
async def stream_delivery_location(delivery_id: str, request: Request):
    user_id = await _require_user(request)
    engine = _engine(request)
    delivery = await engine.deliveries.get_delivery(user_id, delivery_id)
    initial = location_update_event(delivery)
    return StreamingResponse(
        engine.hub.stream(delivery_location_topic(delivery.id), initial),
        media_type="text/event-stream",
    )


# ---------------------------
# Push Notifications API
# ---------------------------
@app.get("/api/push/vapid-public-key")
async def get_vapid_public_key():
    """Return the VAPID public key for push subscription."""
    if not VAPID_PUBLIC_KEY:
        raise HTTPException(status_code=503, detail="Push notifications not configured")
    return {"publicKey": VAPID_PUBLIC_KEY}


@app.post("/api/push/subscribe")
async def push_subscribe(request: Request):
    """Subscribe this browser to delivery notifications."""
    user_id = await _require_user(request)
    engine = _engine(request)
    if not engine.notifier.configured:
        raise HTTPException(status_code=503, detail="Push notifications not configured")
    data = await request.json()
    endpoint = data.get("endpoint")
    keys = data.get("keys", {})
    if not endpoint or not keys.get("p256dh") or not keys.get("auth"):
        raise HTTPException(status_code=400, detail="Invalid subscription data")
    user_agent = request.headers.get("user-agent")
    is_new = await engine.push_store.add_subscription(user_id, endpoint, keys, user_agent)
    return {"status": "subscribed", "new": is_new}


@app.post("/api/push/unsubscribe")
async def push_unsubscribe(request: Request):
    """Unsubscribe from push notifications."""
    user_id = await _require_user(request)
    data = await request.json()
    endpoint = data.get("endpoint")
    if not endpoint:
        raise HTTPException(status_code=400, detail="Missing endpoint")
    removed = await _engine(request).push_store.remove_subscription(endpoint, user_id=user_id)
    return {"status": "unsubscribed", "found": removed}


# ---------------------------
# Health
# ---------------------------
async def _check_store(store) -> Dict[str, Any]:
    start = time.perf_counter()
    try:
        ok = await store.ping()
    except Exception as exc:
        return {"status": "error", "message": str(exc)}
    latency_ms = round((time.perf_counter() - start) * 1000, 1)
    if not ok:
        return {"status": "error", "latencyMs": latency_ms, "message": "data directory unavailable"}
    return {"status": "ok", "latencyMs": latency_ms}


def _check_config() -> Dict[str, Any]:
    missing = []
    if not is_encryption_configured():
        missing.append("TOKEN_ENCRYPTION_KEY")
    if not _session_secret():
        missing.append("SESSION_SECRET")
    if missing:
        return {"status": "error", "message": f"Missing configuration: {', '.join(missing)}"}
    if not VAPID_PUBLIC_KEY:
        return {"status": "degraded", "message": "Optional config missing: VAPID_PUBLIC_KEY"}
    return {"status": "ok"}


def _overall_status(checks: Dict[str, Dict[str, Any]]) -> str:
    statuses = [check["status"] for check in checks.values()]
    if "error" in statuses:
        return "unhealthy"
    if "degraded" in statuses:
        return "degraded"
    return "healthy"


@app.get("/health")
async def health(request: Request):
    engine = _engine(request)
    checks = {
        "database": await _check_store(engine.connections),
        "cache": await _check_store(engine.cache),
        "config": _check_config(),
    }
    status = _overall_status(checks)
    body = {
        "status": status,
        "version": APP_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": round(time.time() - STARTED_AT, 1),
        "checks": checks,
    }
    return JSONResponse(body, status_code=503 if status == "unhealthy" else 200)


@app.head("/health")
async def health_head(request: Request):
    check = await _check_store(_engine(request).connections)
    return Response(status_code=200 if check["status"] == "ok" else 503)
