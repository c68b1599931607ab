from dataclasses import replace

from lpmonitor.chain.base import ChainReader, PositionState
from lpmonitor.errors import ChainUnavailable, PositionNotFound


class MockChainReader(ChainReader):
    """In-memory chain for local runs and tests. Every read advances the slot."""

    def __init__(self, positions: list[PositionState] | None = None):
        self.slot = 1000
        self.positions: dict[str, PositionState] = {}
        self.failing: set[str] = set()
        self.calls: list[str] = []
        for p in positions or []:
            self.set_position(p)

    @property
    def reader_name(self) -> str:
        return "mock"

    def set_position(self, state: PositionState):
        self.positions[state.position_ref] = state

    def move_active_bound(self, position_ref: str, active_bound: int, active_price: float | None = None):
        state = self.positions[position_ref]
        self.positions[position_ref] = replace(state, active_bound=active_bound, active_price=active_price)

    def close_position(self, position_ref: str):
        self.positions.pop(position_ref, None)

    def _observe(self, state: PositionState) -> PositionState:
        self.slot += 1
        return replace(state, slot=self.slot)

    async def fetch_position_state(self, position_ref: str) -> PositionState:
        self.calls.append(position_ref)
        if position_ref in self.failing:
            raise ChainUnavailable(f"mock outage for {position_ref}")
        if position_ref not in self.positions:
            raise PositionNotFound(position_ref)
        return self._observe(self.positions[position_ref])

    async def list_wallet_positions(self, wallet_address: str) -> list[PositionState]:
        return [self._observe(p) for p in self.positions.values() if p.wallet_address == wallet_address]
