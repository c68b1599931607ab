import pytest
from datetime import datetime, timedelta
from lpmonitor.db import repository

WALLET = "wallet-1"

T0 = datetime(2026, 1, 1, 12, 0, 0)


def position_values(ref="pos-P", wallet=WALLET, version=1, checked=T0, **overrides):
    values = {
        "position_ref": ref,
        "wallet_address": wallet,
        "pool_address": "pool",
        "lower_bound": 100,
        "upper_bound": 110,
        "active_bound": 105,
        "last_checked_at": checked,
        "last_known_status": "in_range",
        "settled_status": "in_range",
        "version": version,
    }
    values.update(overrides)
    return values


def event_values(ref="pos-P", kind="out_of_range", epoch=1, detected=T0):
    return {
        "position_ref": ref,
        "wallet_address": WALLET,
        "user_id": "user-1",
        "kind": kind,
        "epoch": epoch,
        "detected_at": detected,
        "payload": {"range": [100, 110]},
    }


def test_write_position_insert_then_cas():
    assert repository.write_position(position_values(version=5), None, []) == []

    assert repository.write_position(position_values(version=7, active_bound=106), 4, []) is None
    assert repository.get_position("pos-P").version == 5

    assert repository.write_position(position_values(version=7, active_bound=106), 5, []) == []
    position = repository.get_position("pos-P")
    assert position.version == 7
    assert position.active_bound == 106


def test_write_position_duplicate_insert_loses():
    repository.write_position(position_values(version=5), None, [])
    assert repository.write_position(position_values(version=6), None, []) is None


def test_write_position_skips_duplicate_event_key():
    ids = repository.write_position(position_values(version=1), None, [event_values()])
    assert len(ids) == 1

    again = repository.write_position(position_values(version=2), 1, [event_values()])
    assert again == []
    assert len(repository.get_recent_events()) == 1


def test_list_positions_due_includes_invalidated_wallets():
    repository.write_position(position_values(ref="old", checked=T0 - timedelta(hours=1)), None, [])
    repository.write_position(position_values(ref="fresh", checked=T0), None, [])
    repository.write_position(position_values(ref="other", wallet="W2", checked=T0), None, [])

    due = repository.list_positions_due(T0 - timedelta(minutes=5))
    assert [p.position_ref for p in due] == ["old"]

    due = repository.list_positions_due(T0 - timedelta(minutes=5), wallets=[WALLET])
    assert {p.position_ref for p in due} == {"old", "fresh"}


def test_mark_unknown_keeps_version_and_settled_status():
    repository.write_position(position_values(version=3), None, [])
    assert repository.mark_position_unknown("pos-P") is True
    position = repository.get_position("pos-P")
    assert position.last_known_status == "unknown"
    assert position.settled_status == "in_range"
    assert position.version == 3
    assert position.fetch_failures == 1
    assert position.is_active is True


def test_invalidation_marker_cleared_only_if_older_than_pickup():
    repository.upsert_tracked_wallet(WALLET, "user-1")
    repository.mark_wallet_invalidated(WALLET, ts=T0)
    assert [w.wallet_address for w in repository.get_invalidated_wallets()] == [WALLET]

    repository.clear_wallet_invalidation([WALLET], picked_up_at=T0 - timedelta(seconds=1))
    assert len(repository.get_invalidated_wallets()) == 1

    repository.clear_wallet_invalidation([WALLET], picked_up_at=T0 + timedelta(seconds=1))
    assert repository.get_invalidated_wallets() == []


def test_invalidate_unknown_wallet_is_noop():
    assert repository.mark_wallet_invalidated("nobody") is False


def test_deactivate_wallet_keeps_events():
    repository.upsert_tracked_wallet(WALLET, "user-1")
    repository.write_position(position_values(), None, [event_values()])

    assert repository.deactivate_wallet(WALLET) == 1
    assert repository.get_tracked_wallet(WALLET).is_active is False
    assert repository.get_position("pos-P").is_active is False
    assert len(repository.get_recent_events()) == 1


def test_due_events_and_delivery_bookkeeping():
    [event_id] = repository.write_position(position_values(), None, [event_values()])
    assert repository.get_due_event_ids(T0) == [event_id]

    deliveries = repository.ensure_deliveries(event_id, ["telegram", "webhook"], ts=T0)
    assert {d.channel for d in deliveries} == {"telegram", "webhook"}
    by_channel = {d.channel: d for d in deliveries}

    repository.record_delivery_success(by_channel["webhook"].id, ts=T0)
    repository.record_delivery_failure(by_channel["telegram"].id, "boom", T0 + timedelta(seconds=2), ts=T0)

    assert repository.get_due_event_ids(T0) == []
    assert repository.get_due_event_ids(T0 + timedelta(seconds=2)) == [event_id]

    assert repository.mark_event_delivered(event_id, ts=T0) is True
    assert repository.mark_event_delivered(event_id, ts=T0) is False
    repository.close_event(event_id, ts=T0)
    assert repository.get_due_event_ids(T0 + timedelta(hours=1)) == []


def test_last_delivered_at_excludes_current_event():
    ids = repository.write_position(
        position_values(), None, [event_values(epoch=1), event_values(epoch=3)]
    )
    repository.mark_event_delivered(ids[0], ts=T0)
    assert repository.last_delivered_at("pos-P", "out_of_range", exclude_event_id=ids[1]) == T0
    assert repository.last_delivered_at("pos-P", "out_of_range", exclude_event_id=ids[0]) is None


def test_purge_events_removes_old_events_and_deliveries():
    old_id, new_id = repository.write_position(
        position_values(), None,
        [event_values(epoch=1, detected=T0 - timedelta(days=10)), event_values(epoch=2, detected=T0)],
    )
    repository.ensure_deliveries(old_id, ["telegram"], ts=T0)

    assert repository.purge_events(T0 - timedelta(days=7)) == 1
    assert repository.get_alert_event(old_id) is None
    assert repository.get_deliveries(old_id) == []
    assert repository.get_alert_event(new_id) is not None


def test_preference_defaults_and_upsert():
    pref = repository.get_preference("user-1")
    assert pref.alert_on_out_of_range is True
    assert pref.daily_summary is False

    repository.upsert_preference("user-1", alert_on_price_move=False, daily_summary=True)
    pref = repository.get_preference("user-1")
    assert pref.alert_on_price_move is False
    assert pref.alert_on_out_of_range is True
    assert repository.list_summary_user_ids() == ["user-1"]


def test_positions_for_user_and_last_poll_check():
    repository.upsert_tracked_wallet(WALLET, "user-1")
    repository.write_position(position_values(ref="a", source="poll", checked=T0), None, [])
    repository.write_position(position_values(ref="b", source="webhook", checked=T0 + timedelta(minutes=1)), None, [])
    repository.write_position(position_values(ref="c", wallet="W2"), None, [])

    assert [p.position_ref for p in repository.list_positions_for_user("user-1")] == ["a", "b"]
    assert repository.get_last_poll_check() == T0
