import asyncio
import pytest
from datetime import datetime, timedelta
from unittest.mock import patch
from lpmonitor.channels.base import Channel
from lpmonitor.db import repository
from lpmonitor.dispatcher import AlertDispatcher, DELIVERED, SUPPRESSED, FAILED, kind_enabled

T0 = datetime(2026, 1, 1, 12, 0, 0)


class FakeChannel(Channel):
    def __init__(self, name: str, results=None, delay: float = 0, error: Exception = None):
        self._name = name
        self.results = list(results or [])
        self.delay = delay
        self.error = error
        self.sent = []

    @property
    def name(self) -> str:
        return self._name

    def is_subscribed(self, recipient) -> bool:
        return True

    async def send(self, user_id: str, message: str, payload: dict) -> bool:
        self.sent.append((user_id, payload["event"]))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.results.pop(0) if self.results else True


def create_events(*specs, payload: dict = None) -> list[int]:
    """specs: (kind, epoch) pairs for one position owned by user-1."""
    values = {
        "position_ref": "pos-P",
        "wallet_address": "wallet-1",
        "pool_address": "pool",
        "lower_bound": 100,
        "upper_bound": 110,
        "active_bound": 112,
        "version": 1,
    }
    events = [
        {
            "position_ref": "pos-P",
            "wallet_address": "wallet-1",
            "user_id": "user-1",
            "kind": kind,
            "epoch": epoch,
            "detected_at": T0,
            "payload": payload or {"range": [100, 110], "active_bound": 112, "direction": "above", "distance": 2},
        }
        for kind, epoch in specs
    ]
    if repository.get_position("pos-P") is None:
        return repository.write_position(values, None, events)
    existing = repository.get_position("pos-P")
    values["version"] = existing.version + 1
    return repository.write_position(values, existing.version, events)


def make_dispatcher(settings, *channels) -> AlertDispatcher:
    return AlertDispatcher(settings, {c.name: c for c in channels})


@pytest.mark.asyncio
async def test_one_channel_fails_other_succeeds(settings):
    a = FakeChannel("a", results=[False, True])
    b = FakeChannel("b", results=[True])
    dispatcher = make_dispatcher(settings, a, b)
    [event_id] = create_events(("out_of_range", 1))

    result = await dispatcher.dispatch(event_id, now=T0)
    assert result.status == DELIVERED
    assert result.channels == {"a": FAILED, "b": DELIVERED}

    event = repository.get_alert_event(event_id)
    assert event.delivered_at == T0
    assert event.closed_at is None

    deliveries = {d.channel: d for d in repository.get_deliveries(event_id)}
    assert deliveries["a"].attempts == 1
    assert deliveries["a"].next_attempt_at == T0 + timedelta(seconds=2)
    assert deliveries["b"].delivered_at == T0

    assert repository.get_due_event_ids(T0 + timedelta(seconds=1)) == []
    assert repository.get_due_event_ids(T0 + timedelta(seconds=2)) == [event_id]

    retry = await dispatcher.dispatch(event_id, now=T0 + timedelta(seconds=2))
    assert retry.channels == {"a": DELIVERED}
    assert len(a.sent) == 2
    assert len(b.sent) == 1
    assert repository.get_alert_event(event_id).closed_at is not None


@pytest.mark.asyncio
async def test_closed_event_is_not_resent(settings):
    a = FakeChannel("a")
    dispatcher = make_dispatcher(settings, a)
    [event_id] = create_events(("back_in_range", 2))

    first = await dispatcher.dispatch(event_id, now=T0)
    second = await dispatcher.dispatch(event_id, now=T0)

    assert first.status == DELIVERED
    assert second.status == SUPPRESSED
    assert second.reason == "already_delivered"
    assert len(a.sent) == 1


@pytest.mark.asyncio
async def test_preference_suppresses_kind(settings):
    repository.upsert_preference("user-1", alert_on_price_move=False)
    a = FakeChannel("a")
    dispatcher = make_dispatcher(settings, a)
    [event_id] = create_events(("price_move", 7))

    result = await dispatcher.dispatch(event_id, now=T0)
    assert result.status == SUPPRESSED
    assert result.reason == "preference"
    assert a.sent == []
    assert repository.get_alert_event(event_id).suppressed_reason == "preference"


@pytest.mark.asyncio
async def test_cooldown_suppresses_repeat_kind(settings):
    a = FakeChannel("a")
    dispatcher = make_dispatcher(settings, a)
    first_id, second_id = create_events(("out_of_range", 1), ("out_of_range", 3))

    assert (await dispatcher.dispatch(first_id, now=T0)).status == DELIVERED
    result = await dispatcher.dispatch(second_id, now=T0 + timedelta(seconds=60))
    assert result.status == SUPPRESSED
    assert result.reason == "cooldown"
    assert len(a.sent) == 1


@pytest.mark.asyncio
async def test_user_cooldown_override(settings):
    repository.upsert_preference("user-1", cooldown_seconds=30)
    a = FakeChannel("a")
    dispatcher = make_dispatcher(settings, a)
    first_id, second_id = create_events(("out_of_range", 1), ("out_of_range", 3))

    await dispatcher.dispatch(first_id, now=T0)
    result = await dispatcher.dispatch(second_id, now=T0 + timedelta(seconds=60))
    assert result.status == DELIVERED


@pytest.mark.asyncio
async def test_no_channels_suppresses(settings):
    dispatcher = make_dispatcher(settings)
    [event_id] = create_events(("out_of_range", 1))
    result = await dispatcher.dispatch(event_id, now=T0)
    assert result.status == SUPPRESSED
    assert result.reason == "no_channels"


@pytest.mark.asyncio
async def test_permanent_failure_after_max_attempts(settings):
    settings.delivery_max_attempts = 3
    a = FakeChannel("a", results=[False, False, False, False])
    dispatcher = make_dispatcher(settings, a)
    [event_id] = create_events(("out_of_range", 1))

    now = T0
    for _ in range(3):
        result = await dispatcher.dispatch(event_id, now=now)
        now += timedelta(seconds=60)

    assert result.status == FAILED
    delivery = repository.get_deliveries(event_id)[0]
    assert delivery.attempts == 3
    assert delivery.abandoned_at is not None
    event = repository.get_alert_event(event_id)
    assert event.delivered_at is None
    assert event.suppressed_reason == "delivery_failed"
    assert repository.get_due_event_ids(now) == []

    again = await dispatcher.dispatch(event_id, now=now)
    assert again.status == SUPPRESSED
    assert len(a.sent) == 3


@pytest.mark.asyncio
async def test_slow_or_raising_channel_is_a_failed_attempt(settings):
    settings.delivery_timeout_seconds = 0.05
    slow = FakeChannel("slow", delay=1)
    broken = FakeChannel("broken", error=RuntimeError("boom"))
    ok = FakeChannel("ok")
    dispatcher = make_dispatcher(settings, slow, broken, ok)
    [event_id] = create_events(("out_of_range", 1))

    result = await dispatcher.dispatch(event_id, now=T0)
    assert result.status == DELIVERED
    assert result.channels == {"slow": FAILED, "broken": FAILED, "ok": DELIVERED}
    errors = {d.channel: d.last_error for d in repository.get_deliveries(event_id)}
    assert "timeout" in errors["slow"]
    assert "boom" in errors["broken"]


@pytest.mark.asyncio
async def test_drain_due_dispatches_pending_events(settings):
    a = FakeChannel("a")
    dispatcher = make_dispatcher(settings, a)
    create_events(("out_of_range", 1), ("price_move", 5))

    assert await dispatcher.drain_due(now=T0) == 2
    assert len(a.sent) == 2
    assert await dispatcher.drain_due(now=T0) == 0


def test_kind_enabled_maps_rebalance_to_out_of_range():
    pref = repository.get_preference("user-1")
    pref.alert_on_out_of_range = False
    assert kind_enabled(pref, "rebalance_recommended") is False
    assert kind_enabled(pref, "back_in_range") is True


@pytest.mark.asyncio
async def test_quiet_hours_suppress_delivery(settings):
    repository.upsert_preference("user-1", quiet_hours_start=22, quiet_hours_end=8)
    a = FakeChannel("a")
    dispatcher = make_dispatcher(settings, a)
    night_id, day_id = create_events(("out_of_range", 1), ("back_in_range", 2))

    result = await dispatcher.dispatch(night_id, now=datetime(2026, 1, 1, 23, 30))
    assert result.status == SUPPRESSED
    assert result.reason == "quiet_hours"

    assert (await dispatcher.dispatch(day_id, now=T0)).status == DELIVERED
    assert a.sent == [("user-1", "back_in_range")]


@pytest.mark.asyncio
async def test_user_price_move_threshold(settings):
    repository.upsert_preference("user-1", price_move_threshold_pct=25)
    a = FakeChannel("a")
    dispatcher = make_dispatcher(settings, a)
    move = {"previous_price": 100.0, "price": 112.0}
    [small_id] = create_events(("price_move", 7), payload={**move, "magnitude_pct": 12.0})
    [large_id] = create_events(("price_move", 8), payload={**move, "price": 130.0, "magnitude_pct": 30.0})

    result = await dispatcher.dispatch(small_id, now=T0)
    assert result.status == SUPPRESSED
    assert result.reason == "below_threshold"

    assert (await dispatcher.dispatch(large_id, now=T0)).status == DELIVERED
    assert a.sent == [("user-1", "price_move")]


def test_zero_price_move_threshold_disables_price_alerts():
    pref = repository.get_preference("user-1")
    assert kind_enabled(pref, "price_move") is True
    pref.price_move_threshold_pct = 0
    assert kind_enabled(pref, "price_move") is False
    assert kind_enabled(pref, "out_of_range") is True


@pytest.mark.asyncio
async def test_run_loop_survives_failed_retry_scan(settings):
    settings.dispatch_retry_interval_seconds = 0.05
    a = FakeChannel("a")
    dispatcher = make_dispatcher(settings, a)
    [event_id] = create_events(("out_of_range", 1))
    calls = []

    def flaky_scan(now, limit=100):
        calls.append(now)
        if len(calls) == 1:
            raise RuntimeError("database is locked")
        return []

    with patch("lpmonitor.db.repository.get_due_event_ids", side_effect=flaky_scan):
        task = asyncio.create_task(dispatcher.run())
        await asyncio.sleep(0.2)
        assert not task.done()
        dispatcher.enqueue([event_id])
        await asyncio.sleep(0.2)
        dispatcher.stop()
        await asyncio.wait_for(task, timeout=1)

    assert len(calls) >= 2
    assert a.sent == [("user-1", "out_of_range")]
