from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

IN_RANGE = "in_range"
OUT_OF_RANGE = "out_of_range"
UNKNOWN = "unknown"

OUT_OF_RANGE_ALERT = "out_of_range"
BACK_IN_RANGE_ALERT = "back_in_range"
PRICE_MOVE_ALERT = "price_move"
REBALANCE_ALERT = "rebalance_recommended"

ALERT_KINDS = (OUT_OF_RANGE_ALERT, BACK_IN_RANGE_ALERT, PRICE_MOVE_ALERT, REBALANCE_ALERT)


@dataclass
class AlertCandidate:
    kind: str
    epoch: int
    payload: dict


@dataclass
class Evaluation:
    """Result of diffing a stored snapshot against a candidate."""
    status: str
    counters: dict
    events: list[AlertCandidate] = field(default_factory=list)


def range_status(lower: int, upper: int, active: int) -> str:
    return IN_RANGE if lower <= active <= upper else OUT_OF_RANGE


def range_direction(lower: int, upper: int, active: int) -> Optional[str]:
    if active < lower:
        return "below"
    if active > upper:
        return "above"
    return None


def range_distance(lower: int, upper: int, active: int) -> int:
    if active < lower:
        return lower - active
    if active > upper:
        return active - upper
    return 0


def price_reference(state) -> float:
    if state.active_price is not None:
        return float(state.active_price)
    return float(state.active_bound)


def price_move_pct(anchor: Optional[float], current: float) -> Optional[float]:
    if anchor is None or anchor == 0:
        return None
    return abs(current - anchor) / abs(anchor) * 100


def is_cooldown_passed(
    last_triggered: datetime | None,
    cooldown_seconds: int,
    now: datetime | None = None,
) -> bool:
    if last_triggered is None:
        return True
    now = now or datetime.utcnow()
    return (now - last_triggered) >= timedelta(seconds=cooldown_seconds)


def in_quiet_hours(start_hour: int | None, end_hour: int | None, now: datetime | None = None) -> bool:
    """UTC hour window [start, end); wraps past midnight when start > end (22 -> 8)."""
    if start_hour is None or end_hour is None or start_hour == end_hour:
        return False
    hour = (now or datetime.utcnow()).hour
    if start_hour < end_hour:
        return start_hour <= hour < end_hour
    return hour >= start_hour or hour < end_hour


def evaluate(old, new, settings, now: datetime | None = None) -> Evaluation:
    """
    Diff the stored position (or None) against a candidate PositionState.

    Alerts are edge-triggered on the settled range status, which is never
    `unknown`, so a failed fetch between two observations cannot hide or
    repeat a transition. Returns the new status, the rolling counters to
    store with the snapshot, and zero or more alert candidates.
    """
    now = now or datetime.utcnow()
    status = range_status(new.lower_bound, new.upper_bound, new.active_bound)

    previous = old.settled_status if old is not None else None
    episode = old.episode if old is not None else 0
    episode_started_at = old.episode_started_at if old is not None else None
    rebalance_alerted_episode = old.rebalance_alerted_episode if old is not None else None
    price_anchor = old.price_anchor if old is not None else None
    price_alerted_at = old.price_alerted_at if old is not None else None

    base = {
        "pool_address": new.pool_address,
        "dex": new.dex,
        "range": [new.lower_bound, new.upper_bound],
        "active_bound": new.active_bound,
        "active_price": new.active_price,
        "previous_active_bound": old.active_bound if old is not None else None,
        "direction": range_direction(new.lower_bound, new.upper_bound, new.active_bound),
        "distance": range_distance(new.lower_bound, new.upper_bound, new.active_bound),
    }
    events: list[AlertCandidate] = []

    if status != previous:
        episode += 1
        episode_started_at = now
        if status == OUT_OF_RANGE and previous in (None, IN_RANGE):
            events.append(AlertCandidate(OUT_OF_RANGE_ALERT, episode, {**base, "previous_status": previous}))
        elif status == IN_RANGE and previous == OUT_OF_RANGE:
            events.append(AlertCandidate(BACK_IN_RANGE_ALERT, episode, {**base, "previous_status": previous}))

    reference = price_reference(new)
    if price_anchor is None:
        price_anchor = reference
    elif settings.price_move_threshold_pct > 0:
        move = price_move_pct(price_anchor, reference)
        if (
            move is not None
            and move >= settings.price_move_threshold_pct
            and is_cooldown_passed(price_alerted_at, settings.price_move_cooldown_seconds, now)
        ):
            events.append(AlertCandidate(
                PRICE_MOVE_ALERT,
                new.slot,
                {**base, "previous_price": price_anchor, "price": reference, "magnitude_pct": round(move, 4)},
            ))
            price_anchor = reference
            price_alerted_at = now

    if (
        status == OUT_OF_RANGE
        and rebalance_alerted_episode != episode
        and episode_started_at is not None
        and (now - episode_started_at) >= timedelta(seconds=settings.rebalance_after_seconds)
    ):
        out_for = (now - episode_started_at).total_seconds()
        events.append(AlertCandidate(REBALANCE_ALERT, episode, {**base, "out_of_range_seconds": int(out_for)}))
        rebalance_alerted_episode = episode

    counters = {
        "settled_status": status,
        "episode": episode,
        "episode_started_at": episode_started_at,
        "rebalance_alerted_episode": rebalance_alerted_episode,
        "price_anchor": price_anchor,
        "price_alerted_at": price_alerted_at,
    }
    return Evaluation(status=status, counters=counters, events=events)


# ============ Message Formatting ============

def short_address(address: str) -> str:
    if len(address) <= 12:
        return address
    return f"{address[:4]}…{address[-4:]}"


def format_duration(seconds: float) -> str:
    hours = seconds / 3600
    if hours < 1:
        return f"{int(seconds / 60)}m"
    elif hours < 48:
        return f"{hours:.1f}h"
    else:
        return f"{hours / 24:.1f}d"


def format_range(payload: dict) -> str:
    lower, upper = payload.get("range", [None, None])
    return f"[{lower}, {upper}]"


def suggested_action(kind: str, auto_rebalance: bool) -> str:
    if kind in (OUT_OF_RANGE_ALERT, REBALANCE_ALERT):
        return "rebalance" if auto_rebalance else "monitor"
    return "none"


def render_alert(kind: str, position_ref: str, payload: dict, auto_rebalance: bool = False) -> str:
    pos = short_address(position_ref)
    pool = short_address(payload.get("pool_address", ""))
    active = payload.get("active_bound")

    if kind == OUT_OF_RANGE_ALERT:
        lines = [
            "🚨 <b>POSITION OUT OF RANGE</b>",
            f"Position <code>{pos}</code> in pool <code>{pool}</code>",
            f"Active bin {active} is {payload.get('distance')} bins {payload.get('direction')} "
            f"your range {format_range(payload)}",
            "<i>No fees are earned while out of range.</i>",
        ]
    elif kind == BACK_IN_RANGE_ALERT:
        lines = [
            "✅ <b>BACK IN RANGE</b>",
            f"Position <code>{pos}</code> in pool <code>{pool}</code>",
            f"Active bin {active} is inside {format_range(payload)} - earning fees again.",
        ]
    elif kind == PRICE_MOVE_ALERT:
        lines = [
            "📊 <b>SIGNIFICANT PRICE MOVE</b>",
            f"Position <code>{pos}</code> in pool <code>{pool}</code>",
            f"Price moved {payload.get('magnitude_pct', 0):.1f}% "
            f"({payload.get('previous_price')} → {payload.get('price')})",
        ]
    elif kind == REBALANCE_ALERT:
        lines = [
            "♻️ <b>REBALANCE RECOMMENDED</b>",
            f"Position <code>{pos}</code> in pool <code>{pool}</code>",
            f"Out of range for {format_duration(payload.get('out_of_range_seconds', 0))} "
            f"(active bin {active}, range {format_range(payload)})",
        ]
    else:
        lines = [f"ℹ️ <b>{kind}</b>", f"Position <code>{pos}</code>"]

    if suggested_action(kind, auto_rebalance) == "rebalance":
        lines.append("<i>Auto-rebalance is enabled for your account.</i>")
    return "\n".join(lines)


def format_daily_summary(positions: list, now: datetime | None = None) -> str:
    now = now or datetime.utcnow()
    in_range = [p for p in positions if p.last_known_status == IN_RANGE]
    out_of_range = [p for p in positions if p.last_known_status == OUT_OF_RANGE]
    unknown = [p for p in positions if p.last_known_status == UNKNOWN]

    lines = [
        "📋 <b>DAILY POSITION SUMMARY</b>",
        f"🕐 {now.strftime('%Y-%m-%d %H:%M')} UTC",
        "",
        f"{len(positions)} active position(s): {len(in_range)} in range, "
        f"{len(out_of_range)} out of range, {len(unknown)} unknown",
    ]
    for p in positions:
        icon = {"in_range": "🟢", "out_of_range": "🔴"}.get(p.last_known_status, "⚪")
        lines.append(
            f"{icon} <code>{short_address(p.position_ref)}</code> "
            f"bins [{p.lower_bound}, {p.upper_bound}] active {p.active_bound}"
        )
    return "\n".join(lines)
