"""
Scheduler module - periodic poll cycles, daily summaries and retention purge.

Key behaviours:
- Job coalescing (skip missed runs instead of queuing)
- One poll cycle at a time; the cycle itself enforces its deadline
- Error isolation per user for summaries
"""
import asyncio
from datetime import datetime, timedelta
from typing import Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MISSED

from lpmonitor.channels.base import Channel
from lpmonitor.db import repository
from lpmonitor.log import log
from lpmonitor.poller import Poller
from lpmonitor.risk_engine import format_daily_summary
from lpmonitor.ttl_store import TTLStore

scheduler: Optional[AsyncIOScheduler] = None


def job_error_listener(event):
    log(f"Job {event.job_id} failed: {event.exception}", level="ERROR")


def job_missed_listener(event):
    log(f"Job {event.job_id} missed - will run at next interval", level="WARN")


async def poll_job(poller: Poller):
    start_time = datetime.utcnow()
    await poller.run_cycle()
    elapsed = (datetime.utcnow() - start_time).total_seconds()
    log(f"[poll_job] Finished in {elapsed:.1f}s")


async def purge_job(settings, ttl_stores: list[TTLStore]):
    before = datetime.utcnow() - timedelta(hours=settings.alert_retention_hours)
    purged = repository.purge_events(before)
    evicted = sum(store.evict_expired() for store in ttl_stores)
    log(f"[purge_job] {purged} alert event(s) older than {settings.alert_retention_hours}h removed, "
        f"{evicted} expired key(s) evicted")
    return purged


async def send_summary(user_id: str, channels: dict[str, Channel], timeout: float, now: datetime = None) -> int:
    """Send one user's daily summary on every linked channel. Returns the number of channels that succeeded."""
    positions = repository.list_positions_for_user(user_id)
    if not positions:
        return 0
    recipient = repository.get_recipient(user_id)
    message = format_daily_summary(positions, now)
    payload = {
        "event": "daily_summary",
        "userId": user_id,
        "positions": [
            {"positionRef": p.position_ref, "status": p.last_known_status, "activeBound": p.active_bound}
            for p in positions
        ],
    }

    sent = 0
    for name, channel in channels.items():
        if not channel.is_subscribed(recipient):
            continue
        try:
            if await asyncio.wait_for(channel.send(user_id, message, payload), timeout=timeout):
                sent += 1
        except Exception as e:
            log(f"[summary_job] {name} failed for {user_id}: {e}", level="WARN")
    return sent


async def daily_summary_job(settings, channels: dict[str, Channel]):
    log("[summary_job] ========== Starting ==========")
    user_ids = repository.list_summary_user_ids()
    delivered = 0
    for user_id in user_ids:
        try:
            if await send_summary(user_id, channels, settings.delivery_timeout_seconds):
                delivered += 1
        except Exception as e:
            log(f"[summary_job] Error for {user_id}: {e}", level="ERROR")
    log(f"[summary_job] ========== Complete: {delivered}/{len(user_ids)} user(s) ==========")


def init_scheduler(settings, poller: Poller, channels: dict[str, Channel], ttl_stores: list[TTLStore]):
    global scheduler

    log(f"[scheduler] Init: poll={settings.poll_interval_seconds}s, "
        f"summary={settings.daily_summary_hour_utc:02d}:00 UTC")

    job_defaults = {
        'coalesce': True,
        'max_instances': 1,
        'misfire_grace_time': 30,
    }

    scheduler = AsyncIOScheduler(job_defaults=job_defaults, timezone="UTC")
    scheduler.add_listener(job_error_listener, EVENT_JOB_ERROR)
    scheduler.add_listener(job_missed_listener, EVENT_JOB_MISSED)

    scheduler.add_job(
        poll_job, "interval", seconds=settings.poll_interval_seconds, args=[poller],
        id="poll_job", name="Position Poll", next_run_time=datetime.utcnow(),
    )

    scheduler.add_job(
        daily_summary_job, "cron", hour=settings.daily_summary_hour_utc, minute=0,
        args=[settings, channels], id="daily_summary_job", name="Daily Summary",
    )

    scheduler.add_job(
        purge_job, "interval", hours=1, args=[settings, ttl_stores],
        id="purge_job", name="Retention Purge",
    )

    scheduler.start()
    log("[scheduler] Started")


def shutdown_scheduler():
    global scheduler
    if scheduler:
        scheduler.shutdown(wait=False)
        scheduler = None
        log("[scheduler] Shutdown")
