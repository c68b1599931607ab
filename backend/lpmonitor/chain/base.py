from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass
class PositionState:
    """On-chain state of one position as observed at `slot`."""
    position_ref: str
    wallet_address: str
    pool_address: str
    lower_bound: int
    upper_bound: int
    active_bound: int
    slot: int
    dex: str = "meteora_dlmm"
    active_price: Optional[float] = None
    liquidity_x: float = 0.0
    liquidity_y: float = 0.0
    fees_x: float = 0.0
    fees_y: float = 0.0


class ChainReader(ABC):
    """
    Read-only access to position state.
    Implementations own their retries and timeouts and raise
    ChainUnavailable once the retry budget is spent.
    """

    @property
    @abstractmethod
    def reader_name(self) -> str:
        pass

    @abstractmethod
    async def fetch_position_state(self, position_ref: str) -> PositionState:
        """Raises ChainUnavailable or PositionNotFound."""
        pass

    @abstractmethod
    async def list_wallet_positions(self, wallet_address: str) -> list[PositionState]:
        pass

    async def close(self):
        pass
