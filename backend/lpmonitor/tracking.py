"""Tracking registration: track / untrack / invalidate a wallet."""
import asyncio
from datetime import datetime

from lpmonitor.chain.base import ChainReader
from lpmonitor.db import repository
from lpmonitor.errors import ChainUnavailable
from lpmonitor.log import log
from lpmonitor.status import MonitoringStatus
from lpmonitor.store import SnapshotStore


async def track(
    wallet_address: str,
    store: SnapshotStore,
    reader: ChainReader,
    status: MonitoringStatus,
    user_id: str = None,
    timeout: float = 30,
) -> dict:
    """
    Start monitoring every position owned by `wallet_address`.
    A failed discovery still leaves the wallet tracked; its positions then
    arrive through webhooks or a later invalidate().
    """
    wallet = repository.upsert_tracked_wallet(wallet_address, user_id or wallet_address)
    log(f"[tracking] Tracking wallet {wallet_address} for user {wallet.user_id}")

    discovered, accepted, discovery_error = 0, 0, None
    try:
        states = await asyncio.wait_for(reader.list_wallet_positions(wallet_address), timeout=timeout)
    except (ChainUnavailable, asyncio.TimeoutError) as e:
        discovery_error = str(e) or type(e).__name__
        log(f"[tracking] Position discovery failed for {wallet_address}: {discovery_error}", level="WARN")
        states = []

    for state in states:
        discovered += 1
        if store.upsert(state, source="track").accepted:
            accepted += 1

    status.positions_tracked = store.count_active()
    log(f"[tracking] {wallet_address}: {discovered} position(s) discovered, {accepted} stored")
    return {
        "wallet": wallet_address,
        "userId": wallet.user_id,
        "positionsDiscovered": discovered,
        "positionsStored": accepted,
        "discoveryError": discovery_error,
    }


def untrack(wallet_address: str, store: SnapshotStore, status: MonitoringStatus) -> dict:
    """Stop monitoring a wallet. Positions go inactive; alert history is kept."""
    wallet = repository.get_tracked_wallet(wallet_address)
    if wallet is None:
        return {"wallet": wallet_address, "tracked": False, "positionsDeactivated": 0}
    deactivated = repository.deactivate_wallet(wallet_address)
    status.positions_tracked = store.count_active()
    log(f"[tracking] Untracked wallet {wallet_address} ({deactivated} position(s) deactivated)")
    return {"wallet": wallet_address, "tracked": False, "positionsDeactivated": deactivated}


def invalidate(wallet_address: str, ts: datetime = None) -> bool:
    """Force the next poll cycle to refresh every position of this wallet."""
    marked = repository.mark_wallet_invalidated(wallet_address, ts)
    if marked:
        log(f"[tracking] Invalidated cached state for wallet {wallet_address}")
    return marked
