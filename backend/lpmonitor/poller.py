"""
Poller - periodic refresh of stale positions.

Each cycle fetches the due positions through the chain reader with bounded
concurrency. Every fetch is isolated: it has its own timeout and attempt
budget, and a failure only marks that position `unknown` for the cycle.
The cycle has a hard deadline; fetches still running then are cancelled.
"""
import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta

from lpmonitor.chain.base import ChainReader
from lpmonitor.db import repository
from lpmonitor.db.models import Position
from lpmonitor.errors import ChainUnavailable, PositionNotFound
from lpmonitor.log import log
from lpmonitor.risk_engine import range_status
from lpmonitor.status import MonitoringStatus
from lpmonitor.store import SnapshotStore, ACCEPTED, STALE, INACTIVE

FETCHED = "fetched"
FAILED = "failed"
WITHDRAWN = "withdrawn"


@dataclass
class PollReport:
    due: int = 0
    accepted: int = 0
    stale: int = 0
    withdrawn: int = 0
    failed: int = 0
    timed_out: int = 0
    divergent: int = 0

    @property
    def succeeded(self) -> int:
        return self.accepted + self.stale + self.withdrawn


class Poller:
    def __init__(self, settings, store: SnapshotStore, reader: ChainReader, status: MonitoringStatus):
        self.settings = settings
        self.store = store
        self.reader = reader
        self.status = status

    def _check_divergence(self, position: Position, state, report: PollReport):
        """A losing poll read that disagrees with the stored status is flagged, never applied."""
        current = self.store.get(position.position_ref)
        if current is None or current.settled_status is None:
            return
        observed = range_status(state.lower_bound, state.upper_bound, state.active_bound)
        if observed != current.settled_status:
            report.divergent += 1
            self.status.record_divergence()
            log(f"[poll] Divergence on {position.position_ref}: poll v{state.slot} says {observed}, "
                f"stored v{current.version} ({current.source}) says {current.settled_status}", level="WARN")

    async def _fetch(self, position: Position, report: PollReport, now: datetime) -> str:
        ref = position.position_ref
        attempts = max(1, self.settings.poll_fetch_attempts)
        last_error = None

        for attempt in range(attempts):
            try:
                state = await asyncio.wait_for(
                    self.reader.fetch_position_state(ref),
                    timeout=self.settings.poll_fetch_timeout_seconds,
                )
            except PositionNotFound:
                self.store.deactivate(ref)
                report.withdrawn += 1
                return WITHDRAWN
            except asyncio.TimeoutError:
                last_error = f"timeout after {self.settings.poll_fetch_timeout_seconds}s"
            except ChainUnavailable as e:
                last_error = str(e)
            except Exception as e:
                last_error = f"{type(e).__name__}: {e}"
            else:
                result = self.store.upsert(state, source="poll", now=now)
                if result.outcome == ACCEPTED:
                    report.accepted += 1
                elif result.outcome == STALE:
                    report.stale += 1
                    self._check_divergence(position, state, report)
                elif result.outcome == INACTIVE:
                    report.withdrawn += 1
                    return WITHDRAWN
                else:
                    report.failed += 1
                    log(f"[poll] {ref} no longer belongs to a tracked wallet", level="WARN")
                    return FAILED
                return FETCHED

            log(f"[poll] Fetch {ref} failed (attempt {attempt + 1}/{attempts}): {last_error}", level="WARN")

        self.store.mark_unknown(ref)
        report.failed += 1
        log(f"[poll] {ref} marked unknown for this cycle: {last_error}", level="WARN")
        return FAILED

    async def run_cycle(self, now: datetime = None) -> PollReport:
        picked_up_at = datetime.utcnow()
        now = now or picked_up_at
        settings = self.settings

        invalidated = [w.wallet_address for w in repository.get_invalidated_wallets()]
        stale_before = now - timedelta(seconds=settings.stale_after_seconds)
        due = self.store.list_due(stale_before, invalidated)
        report = PollReport(due=len(due))
        log(f"[poll] ========== Cycle start: {len(due)} due, {len(invalidated)} invalidated wallet(s) ==========")

        if due:
            semaphore = asyncio.Semaphore(max(1, settings.poll_concurrency))

            async def worker(position: Position) -> str:
                async with semaphore:
                    return await self._fetch(position, report, now)

            tasks = {asyncio.create_task(worker(p)): p for p in due}
            done, pending = await asyncio.wait(tasks.keys(), timeout=settings.poll_cycle_deadline_seconds)

            for task in pending:
                task.cancel()
                self.store.mark_unknown(tasks[task].position_ref)
                report.timed_out += 1
            if pending:
                log(f"[poll] Deadline {settings.poll_cycle_deadline_seconds}s hit, "
                    f"abandoned {len(pending)} fetch(es)", level="WARN")

            for task in done:
                if task.exception() is not None:
                    log(f"[poll] Unexpected worker error for {tasks[task].position_ref}: {task.exception()}", level="ERROR")

        repository.clear_wallet_invalidation(invalidated, picked_up_at)

        succeeded = report.succeeded > 0 or not due
        self.status.record_poll_cycle(self.store.count_active(), succeeded, ts=now)
        log(f"[poll] ========== Cycle complete: {report.accepted} updated, {report.stale} stale, "
            f"{report.withdrawn} withdrawn, {report.failed} failed, {report.timed_out} abandoned ==========")
        return report
