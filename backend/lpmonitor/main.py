"""LP Position Monitor - Main Application"""
import asyncio
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional
from fastapi import FastAPI, Query, HTTPException, Request
from pydantic import BaseModel, Field

from lpmonitor import tracking
from lpmonitor.chain import build_chain_reader
from lpmonitor.chain.base import ChainReader
from lpmonitor.channels import build_channels
from lpmonitor.channels.base import Channel
from lpmonitor.config import get_settings
from lpmonitor.db import repository
from lpmonitor.db.init_db import init_db
from lpmonitor.dispatcher import AlertDispatcher
from lpmonitor.errors import MalformedEvent
from lpmonitor.ingestion import WebhookIngestor, verify_signature
from lpmonitor.log import log
from lpmonitor.poller import Poller
from lpmonitor.scheduler import init_scheduler, shutdown_scheduler
from lpmonitor.status import MonitoringStatus
from lpmonitor.store import SnapshotStore
from lpmonitor.ttl_store import TTLStore


@dataclass
class MonitorServices:
    settings: object
    reader: ChainReader
    channels: dict[str, Channel]
    dispatcher: AlertDispatcher
    store: SnapshotStore
    status: MonitoringStatus
    seen_events: TTLStore
    ingestor: WebhookIngestor
    poller: Poller
    background: list = field(default_factory=list)


def build_services(settings, reader: ChainReader = None, channels: dict[str, Channel] = None) -> MonitorServices:
    reader = reader or build_chain_reader(settings)
    channels = channels if channels is not None else build_channels(settings)
    dispatcher = AlertDispatcher(settings, channels)
    store = SnapshotStore(settings, on_events=dispatcher.enqueue)
    status = MonitoringStatus()
    status.rebuild(
        positions_tracked=store.count_active(),
        webhook_configured=bool(settings.webhook_secret),
        last_check=repository.get_last_poll_check(),
    )
    seen_events = TTLStore(settings.webhook_dedup_ttl_seconds)
    return MonitorServices(
        settings=settings,
        reader=reader,
        channels=channels,
        dispatcher=dispatcher,
        store=store,
        status=status,
        seen_events=seen_events,
        ingestor=WebhookIngestor(store, status, seen_events),
        poller=Poller(settings, store, reader, status),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    log("========== Starting LP Position Monitor ==========")
    try:
        init_db()
        log("Database initialized")

        settings = get_settings()
        for warning in settings.validate():
            log(f"CONFIG WARNING: {warning}", level="WARN")

        services = build_services(settings)
        app.state.services = services
        log(f"Chain reader: {services.reader.reader_name}")
        log(f"Channels: {', '.join(services.channels) or 'none'}")
        log(f"Tracking {services.status.positions_tracked} active position(s)")
        log(f"Timing: poll={settings.poll_interval_seconds}s, stale after={settings.stale_after_seconds}s, "
            f"deadline={settings.poll_cycle_deadline_seconds}s")

        services.background.append(asyncio.create_task(services.dispatcher.run()))
        init_scheduler(settings, services.poller, services.channels, [services.seen_events])
        log("========== Startup Complete ==========")
    except Exception as e:
        log(f"STARTUP ERROR: {e}", level="ERROR")
        import traceback
        traceback.print_exc()
        raise

    yield

    log("========== Shutting Down ==========")
    shutdown_scheduler()
    services.dispatcher.stop()
    for task in services.background:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    await services.reader.close()


app = FastAPI(title="LP Position Monitor", version="1.0.0", lifespan=lifespan)


def get_services(request: Request) -> MonitorServices:
    return request.app.state.services


def position_to_dict(p) -> dict:
    return {
        "positionRef": p.position_ref,
        "wallet": p.wallet_address,
        "pool": p.pool_address,
        "dex": p.dex,
        "range": [p.lower_bound, p.upper_bound],
        "activeBound": p.active_bound,
        "activePrice": p.active_price,
        "status": p.last_known_status,
        "version": p.version,
        "source": p.source,
        "lastCheckedAt": p.last_checked_at.isoformat() if p.last_checked_at else None,
        "fetchFailures": p.fetch_failures,
        "isActive": p.is_active,
    }


def event_to_dict(e) -> dict:
    return {
        "id": e.id,
        "positionRef": e.position_ref,
        "userId": e.user_id,
        "kind": e.kind,
        "epoch": e.epoch,
        "detectedAt": e.detected_at.isoformat(),
        "deliveredAt": e.delivered_at.isoformat() if e.delivered_at else None,
        "closedAt": e.closed_at.isoformat() if e.closed_at else None,
        "suppressedReason": e.suppressed_reason,
        "payload": e.payload,
    }


class TrackRequest(BaseModel):
    user_id: Optional[str] = None


class PreferenceUpdate(BaseModel):
    alert_on_out_of_range: Optional[bool] = None
    alert_on_back_in_range: Optional[bool] = None
    alert_on_price_move: Optional[bool] = None
    auto_rebalance: Optional[bool] = None
    daily_summary: Optional[bool] = None
    cooldown_seconds: Optional[int] = Field(default=None, ge=0)
    price_move_threshold_pct: Optional[float] = Field(default=None, ge=0)
    quiet_hours_start: Optional[int] = Field(default=None, ge=0, le=23)
    quiet_hours_end: Optional[int] = Field(default=None, ge=0, le=23)


class RecipientUpdate(BaseModel):
    telegram_chat_id: Optional[str] = None
    webhook_url: Optional[str] = None
    webhook_secret: Optional[str] = None


@app.get("/health")
def health():
    return {"status": "ok", "timestamp": datetime.utcnow().isoformat()}


@app.get("/status")
def monitoring_status(request: Request):
    services = get_services(request)
    return {
        **services.status.as_dict(),
        "chainReader": services.reader.reader_name,
        "channels": list(services.channels),
        "pendingDispatch": services.dispatcher.queue.qsize(),
    }


@app.post("/webhook/chain")
async def chain_webhook(request: Request):
    services = get_services(request)
    body = await request.body()
    if not verify_signature(body, request.headers.get("X-Signature"), services.settings.webhook_secret):
        log("[webhook] Rejected request with missing or bad signature", level="WARN")
        raise HTTPException(status_code=401, detail="invalid signature")
    try:
        result = services.ingestor.handle(body)
    except MalformedEvent as e:
        log(f"[webhook] Malformed body: {e}", level="WARN")
        raise HTTPException(status_code=400, detail=str(e))
    return result.as_dict()


@app.post("/tracking/{wallet}")
async def track_wallet(wallet: str, request: Request, body: Optional[TrackRequest] = None):
    services = get_services(request)
    user_id = body.user_id if body else None
    return await tracking.track(
        wallet, services.store, services.reader, services.status,
        user_id=user_id, timeout=services.settings.poll_fetch_timeout_seconds,
    )


@app.delete("/tracking/{wallet}")
def untrack_wallet(wallet: str, request: Request):
    services = get_services(request)
    if repository.get_tracked_wallet(wallet) is None:
        raise HTTPException(status_code=404, detail=f"wallet {wallet} is not tracked")
    return tracking.untrack(wallet, services.store, services.status)


@app.post("/tracking/{wallet}/invalidate")
def invalidate_wallet(wallet: str):
    if not tracking.invalidate(wallet):
        raise HTTPException(status_code=404, detail=f"wallet {wallet} is not tracked")
    return {"wallet": wallet, "invalidated": True}


@app.get("/preferences/{user_id}")
def get_preferences(user_id: str):
    return repository.get_preference(user_id).model_dump(mode="json")


@app.put("/preferences/{user_id}")
def put_preferences(user_id: str, update: PreferenceUpdate):
    pref = repository.upsert_preference(user_id, **update.model_dump(exclude_unset=True))
    log(f"[api] Preferences updated for {user_id}")
    return pref.model_dump(mode="json")


@app.put("/recipients/{user_id}")
def put_recipient(user_id: str, update: RecipientUpdate):
    recipient = repository.upsert_recipient(user_id, **update.model_dump(exclude_unset=True))
    log(f"[api] Recipient channels updated for {user_id}")
    return {
        "userId": recipient.user_id,
        "telegramLinked": bool(recipient.telegram_chat_id),
        "webhookLinked": bool(recipient.webhook_url),
    }


@app.get("/positions")
def positions(wallet: Optional[str] = None, include_inactive: bool = False):
    rows = repository.list_positions(wallet_address=wallet, active_only=not include_inactive)
    return {"count": len(rows), "positions": [position_to_dict(p) for p in rows]}


@app.get("/alerts/recent")
def alerts_recent(limit: int = Query(default=50, ge=1, le=500)):
    events = repository.get_recent_events(limit=limit)
    return {"count": len(events), "events": [event_to_dict(e) for e in events]}


@app.post("/poll/run")
async def run_poll_now(request: Request):
    log("[api] Manual poll trigger")
    services = get_services(request)
    try:
        report = await services.poller.run_cycle()
    except Exception as e:
        log(f"[api] Error: {e}", level="ERROR")
        raise HTTPException(status_code=500, detail=str(e))
    return {
        "status": "ok",
        "due": report.due,
        "updated": report.accepted,
        "stale": report.stale,
        "withdrawn": report.withdrawn,
        "failed": report.failed,
        "abandoned": report.timed_out,
        "divergent": report.divergent,
    }
