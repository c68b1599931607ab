"""
Alert dispatcher.

Single consumer of AlertEvents: applies preferences, cooldowns and dedup,
then fans out to every channel the user has linked. Each channel has its own
delivery row, so a failing channel is retried on later drains without
resending on channels that already succeeded.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from lpmonitor.channels.base import Channel
from lpmonitor.db import repository
from lpmonitor.errors import DeliveryFailure
from lpmonitor.log import log
from lpmonitor.risk_engine import (
    OUT_OF_RANGE_ALERT,
    BACK_IN_RANGE_ALERT,
    PRICE_MOVE_ALERT,
    REBALANCE_ALERT,
    in_quiet_hours,
    is_cooldown_passed,
    render_alert,
    suggested_action,
)

DELIVERED = "delivered"
SUPPRESSED = "suppressed"
FAILED = "failed"


@dataclass
class DispatchResult:
    status: str
    reason: Optional[str] = None
    channels: dict = field(default_factory=dict)


def kind_enabled(pref, kind: str) -> bool:
    if kind in (OUT_OF_RANGE_ALERT, REBALANCE_ALERT):
        return pref.alert_on_out_of_range
    if kind == BACK_IN_RANGE_ALERT:
        return pref.alert_on_back_in_range
    if kind == PRICE_MOVE_ALERT:
        return pref.alert_on_price_move and pref.price_move_threshold_pct != 0
    return True


def below_user_threshold(pref, event) -> bool:
    """A price move smaller than the user's own threshold, when they set one."""
    threshold = pref.price_move_threshold_pct
    if event.kind != PRICE_MOVE_ALERT or not threshold:
        return False
    return abs(event.payload.get("magnitude_pct") or 0) < threshold


def build_payload(event, auto_rebalance: bool) -> dict:
    return {
        "event": event.kind,
        "positionRef": event.position_ref,
        "walletAddress": event.wallet_address,
        "epoch": event.epoch,
        "detectedAt": event.detected_at.isoformat(),
        "details": event.payload,
        "action": {"suggested": suggested_action(event.kind, auto_rebalance)},
    }


class AlertDispatcher:
    RETRY_BASE_SECONDS = 2

    def __init__(self, settings, channels: dict[str, Channel]):
        self.settings = settings
        self.channels = channels
        self.queue: asyncio.Queue = asyncio.Queue()
        self._running = False
        self._last_drain: Optional[datetime] = None

    def enqueue(self, event_ids: list[int]):
        for event_id in event_ids:
            self.queue.put_nowait(event_id)

    def channels_for(self, user_id: str) -> list[str]:
        recipient = repository.get_recipient(user_id)
        return [name for name, channel in self.channels.items() if channel.is_subscribed(recipient)]

    def _suppress(self, event, reason: str, now: datetime) -> DispatchResult:
        repository.close_event(event.id, reason=reason, ts=now)
        log(f"[dispatch] Suppressed {event.kind} for {event.position_ref} (epoch {event.epoch}): {reason}")
        return DispatchResult(SUPPRESSED, reason)

    async def _send(self, delivery, user_id: str, message: str, payload: dict):
        channel = self.channels.get(delivery.channel)
        if channel is None:
            return delivery, False, f"channel '{delivery.channel}' not configured"
        try:
            ok = await asyncio.wait_for(
                channel.send(user_id, message, payload),
                timeout=self.settings.delivery_timeout_seconds,
            )
            return delivery, ok, None if ok else "channel reported failure"
        except DeliveryFailure as e:
            return delivery, False, str(e)
        except asyncio.TimeoutError:
            return delivery, False, f"timeout after {self.settings.delivery_timeout_seconds}s"
        except Exception as e:
            return delivery, False, f"{type(e).__name__}: {e}"

    async def dispatch(self, event_id: int, now: datetime = None) -> DispatchResult:
        now = now or datetime.utcnow()
        event = repository.get_alert_event(event_id)
        if event is None:
            return DispatchResult(SUPPRESSED, "purged")
        if event.closed_at is not None:
            reason = "already_delivered" if event.delivered_at else (event.suppressed_reason or "closed")
            return DispatchResult(SUPPRESSED, reason)

        pref = repository.get_preference(event.user_id)

        if event.delivered_at is None:
            if not kind_enabled(pref, event.kind):
                return self._suppress(event, "preference", now)
            if below_user_threshold(pref, event):
                return self._suppress(event, "below_threshold", now)
            if in_quiet_hours(pref.quiet_hours_start, pref.quiet_hours_end, now):
                return self._suppress(event, "quiet_hours", now)

            cooldown = pref.cooldown_seconds if pref.cooldown_seconds is not None else self.settings.cooldown_for(event.kind)
            last = repository.last_delivered_at(event.position_ref, event.kind, exclude_event_id=event.id)
            if not is_cooldown_passed(last, cooldown, now):
                return self._suppress(event, "cooldown", now)

            channel_names = self.channels_for(event.user_id)
            if not channel_names:
                return self._suppress(event, "no_channels", now)
            deliveries = repository.ensure_deliveries(event.id, channel_names, ts=now)
        else:
            deliveries = repository.get_deliveries(event.id)

        due = [
            d for d in deliveries
            if d.delivered_at is None and d.abandoned_at is None and d.next_attempt_at <= now
        ]
        message = render_alert(event.kind, event.position_ref, event.payload, pref.auto_rebalance)
        payload = build_payload(event, pref.auto_rebalance)

        results = await asyncio.gather(*[self._send(d, event.user_id, message, payload) for d in due])

        outcome = {}
        any_success = False
        for delivery, ok, error in results:
            if ok:
                repository.record_delivery_success(delivery.id, ts=now)
                outcome[delivery.channel] = DELIVERED
                any_success = True
                continue

            attempts = delivery.attempts + 1
            abandon = attempts >= self.settings.delivery_max_attempts
            next_attempt = now + timedelta(seconds=self.RETRY_BASE_SECONDS ** attempts)
            repository.record_delivery_failure(delivery.id, error, next_attempt, abandon=abandon, ts=now)
            outcome[delivery.channel] = FAILED
            if abandon:
                log(f"[dispatch] PERMANENT FAILURE: {event.kind} for {event.position_ref} (event {event.id}) "
                    f"on {delivery.channel} after {attempts} attempts: {error}", level="ERROR")
            else:
                log(f"[dispatch] {delivery.channel} failed for event {event.id} "
                    f"(attempt {attempts}/{self.settings.delivery_max_attempts}): {error}", level="WARN")

        if any_success and repository.mark_event_delivered(event.id, ts=now):
            log(f"[dispatch] Delivered {event.kind} for {event.position_ref} via "
                f"{', '.join(c for c, s in outcome.items() if s == DELIVERED)}")

        remaining = [
            d for d in repository.get_deliveries(event.id)
            if d.delivered_at is None and d.abandoned_at is None
        ]
        delivered = event.delivered_at is not None or any_success
        if not remaining:
            repository.close_event(event.id, reason=None if delivered else "delivery_failed", ts=now)
            if not delivered:
                log(f"[dispatch] Dropping {event.kind} for {event.position_ref} (event {event.id}): "
                    f"every channel failed permanently", level="ERROR")

        if delivered:
            return DispatchResult(DELIVERED, channels=outcome)
        return DispatchResult(FAILED, reason="delivery_failed", channels=outcome)

    async def _dispatch_safely(self, event_id: int):
        try:
            await self.dispatch(event_id)
        except Exception as e:
            log(f"[dispatch] Error dispatching event {event_id}: {e}", level="ERROR")

    async def drain_due(self, now: datetime = None) -> int:
        """Dispatch every open event that is new or has a channel due for retry."""
        now = now or datetime.utcnow()
        self._last_drain = now
        event_ids = repository.get_due_event_ids(now)
        for event_id in event_ids:
            await self._dispatch_safely(event_id)
        return len(event_ids)

    async def _drain_safely(self):
        try:
            await self.drain_due()
        except Exception as e:
            self._last_drain = datetime.utcnow()
            log(f"[dispatch] Retry scan failed: {e}", level="ERROR")

    async def run(self):
        self._running = True
        interval = self.settings.dispatch_retry_interval_seconds
        log(f"[dispatch] Loop started (retry scan every {interval}s)")
        await self._drain_safely()

        while self._running:
            try:
                event_id = await asyncio.wait_for(self.queue.get(), timeout=interval)
                await self._dispatch_safely(event_id)
            except asyncio.TimeoutError:
                pass

            if (datetime.utcnow() - self._last_drain).total_seconds() >= interval:
                await self._drain_safely()

    def stop(self):
        self._running = False
