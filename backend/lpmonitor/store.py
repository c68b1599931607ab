"""
Position snapshot store.

The only write path for position state. Webhook ingestion and the poller both
call `upsert`, which is an optimistic compare-and-set on `version`: a
candidate wins only if its version is strictly greater than the stored one.
The risk evaluator runs against the exact snapshot being replaced and its
alert events commit in the same transaction as the new snapshot.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from lpmonitor import risk_engine
from lpmonitor.chain.base import PositionState
from lpmonitor.db import repository
from lpmonitor.db.models import Position
from lpmonitor.log import log

ACCEPTED = "accepted"
STALE = "stale"
UNKNOWN_POSITION = "unknown_position"
INACTIVE = "inactive"


@dataclass
class UpsertResult:
    outcome: str
    old: Optional[Position] = None
    event_ids: list[int] = field(default_factory=list)
    status: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.outcome == ACCEPTED


class SnapshotStore:
    MAX_CAS_ATTEMPTS = 5

    def __init__(self, settings, on_events: Callable[[list[int]], None] = None):
        self.settings = settings
        self.on_events = on_events

    def _owner(self, old: Position | None, state: PositionState) -> Optional[str]:
        """User id to alert, or None when neither the position nor its wallet is tracked."""
        wallet_address = old.wallet_address if old is not None else state.wallet_address
        wallet = repository.get_tracked_wallet(wallet_address)
        if wallet is None or not wallet.is_active:
            return None
        return wallet.user_id

    def upsert(self, state: PositionState, source: str, now: datetime = None) -> UpsertResult:
        now = now or datetime.utcnow()

        for attempt in range(self.MAX_CAS_ATTEMPTS):
            old = repository.get_position(state.position_ref)

            if old is not None and state.slot <= old.version:
                log(f"[store] Stale {source} write for {state.position_ref}: v{state.slot} <= v{old.version}", level="DEBUG")
                return UpsertResult(STALE, old=old)

            # only re-tracking brings a withdrawn position back
            if old is not None and not old.is_active and source != "track":
                log(f"[store] Ignoring {source} write for inactive position {state.position_ref}", level="DEBUG")
                return UpsertResult(INACTIVE, old=old)

            user_id = self._owner(old, state)
            if user_id is None:
                return UpsertResult(UNKNOWN_POSITION, old=old)

            evaluation = risk_engine.evaluate(old, state, self.settings, now)
            values = {
                "position_ref": state.position_ref,
                "wallet_address": old.wallet_address if old is not None else state.wallet_address,
                "pool_address": state.pool_address,
                "dex": state.dex,
                "lower_bound": state.lower_bound,
                "upper_bound": state.upper_bound,
                "active_bound": state.active_bound,
                "active_price": state.active_price,
                "liquidity_x": state.liquidity_x,
                "liquidity_y": state.liquidity_y,
                "fees_x": state.fees_x,
                "fees_y": state.fees_y,
                "is_active": True,
                "last_checked_at": now,
                "last_known_status": evaluation.status,
                "version": state.slot,
                "source": source,
                "fetch_failures": 0,
                **evaluation.counters,
            }
            events = [
                {
                    "position_ref": state.position_ref,
                    "wallet_address": values["wallet_address"],
                    "user_id": user_id,
                    "kind": candidate.kind,
                    "epoch": candidate.epoch,
                    "detected_at": now,
                    "payload": candidate.payload,
                }
                for candidate in evaluation.events
            ]

            event_ids = repository.write_position(
                values,
                None if old is None else old.version,
                events,
                expected_active=None if old is None else old.is_active,
            )
            if event_ids is None:
                log(f"[store] Lost write race on {state.position_ref} (attempt {attempt + 1}), re-reading", level="DEBUG")
                continue

            if old is None:
                log(f"[store] Tracking new position {state.position_ref} ({evaluation.status}) via {source}")
            elif old.settled_status != evaluation.status:
                log(f"[store] {state.position_ref}: {old.settled_status} -> {evaluation.status} (v{state.slot}, {source})")

            if event_ids:
                log(f"[store] {len(event_ids)} alert event(s) for {state.position_ref}: "
                    f"{', '.join(c.kind for c in evaluation.events)}")
                if self.on_events:
                    self.on_events(event_ids)
            return UpsertResult(ACCEPTED, old=old, event_ids=event_ids, status=evaluation.status)

        log(f"[store] Gave up on {state.position_ref} after {self.MAX_CAS_ATTEMPTS} write races", level="WARN")
        return UpsertResult(STALE, old=repository.get_position(state.position_ref))

    def get(self, position_ref: str) -> Optional[Position]:
        return repository.get_position(position_ref)

    def list_active(self, wallet_address: str = None) -> list[Position]:
        return repository.list_positions(wallet_address=wallet_address, active_only=True)

    def list_due(self, stale_before: datetime, wallets: list[str] = ()) -> list[Position]:
        return repository.list_positions_due(stale_before, wallets)

    def count_active(self) -> int:
        return repository.count_active_positions()

    def deactivate(self, position_ref: str, version: int = None) -> bool:
        changed = repository.deactivate_position(position_ref, version)
        if changed:
            log(f"[store] Position {position_ref} withdrawn - no longer active")
        return changed

    def mark_unknown(self, position_ref: str) -> bool:
        return repository.mark_position_unknown(position_ref)
