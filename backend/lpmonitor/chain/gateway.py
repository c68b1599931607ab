"""
HTTP gateway chain reader.

Talks to a DEX gateway service that decodes position accounts and pool state:
- GET /positions/{position_ref}          -> {"slot": 123, "position": {...}}
- GET /wallets/{wallet}/positions        -> {"slot": 123, "positions": [{...}]}

Position objects carry: address, owner, pool, dex, lowerBinId, upperBinId,
activeBinId, activePrice, liquidityX, liquidityY, feesX, feesY.
"""
import asyncio
import httpx

from lpmonitor.chain.base import ChainReader, PositionState
from lpmonitor.errors import ChainUnavailable, PositionNotFound
from lpmonitor.log import log


def parse_position(raw: dict, slot: int) -> PositionState:
    try:
        return PositionState(
            position_ref=str(raw["address"]),
            wallet_address=str(raw["owner"]),
            pool_address=str(raw["pool"]),
            dex=str(raw.get("dex") or "meteora_dlmm"),
            lower_bound=int(raw["lowerBinId"]),
            upper_bound=int(raw["upperBinId"]),
            active_bound=int(raw["activeBinId"]),
            active_price=float(raw["activePrice"]) if raw.get("activePrice") is not None else None,
            liquidity_x=float(raw.get("liquidityX") or 0),
            liquidity_y=float(raw.get("liquidityY") or 0),
            fees_x=float(raw.get("feesX") or 0),
            fees_y=float(raw.get("feesY") or 0),
            slot=int(raw.get("slot", slot)),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ChainUnavailable(f"Unparseable position payload: {e}") from e


class GatewayChainReader(ChainReader):
    BACKOFF_BASE_SECONDS = 0.5

    def __init__(self, base_url: str, timeout: float = 10, max_retries: int = 3):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max(1, max_retries)

    @property
    def reader_name(self) -> str:
        return "gateway"

    async def _get_json(self, path: str) -> dict:
        url = f"{self.base_url}{path}"
        last_error = None

        for attempt in range(self.max_retries):
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.get(url)

                if resp.status_code == 404:
                    raise PositionNotFound(path)

                if resp.status_code == 429:
                    retry_after = float(resp.headers.get("Retry-After", self.BACKOFF_BASE_SECONDS * 2 ** attempt))
                    last_error = "rate limited"
                    log(f"[chain] Rate limited on {path}, waiting {retry_after}s", level="WARN")
                    await asyncio.sleep(retry_after)
                    continue

                if resp.status_code >= 500:
                    last_error = f"HTTP {resp.status_code}"
                elif resp.status_code >= 400:
                    raise ChainUnavailable(f"{path}: HTTP {resp.status_code}")
                else:
                    return resp.json()

            except (httpx.TimeoutException, httpx.NetworkError) as e:
                last_error = f"{type(e).__name__}: {e}"
            except ValueError as e:
                last_error = f"invalid JSON: {e}"

            log(f"[chain] {path} failed (attempt {attempt + 1}/{self.max_retries}): {last_error}", level="WARN")
            if attempt < self.max_retries - 1:
                await asyncio.sleep(self.BACKOFF_BASE_SECONDS * 2 ** attempt)

        raise ChainUnavailable(f"{path}: {last_error}")

    async def fetch_position_state(self, position_ref: str) -> PositionState:
        data = await self._get_json(f"/positions/{position_ref}")
        position = data.get("position")
        if not position:
            raise PositionNotFound(position_ref)
        return parse_position(position, int(data.get("slot", 0)))

    async def list_wallet_positions(self, wallet_address: str) -> list[PositionState]:
        try:
            data = await self._get_json(f"/wallets/{wallet_address}/positions")
        except PositionNotFound:
            return []
        slot = int(data.get("slot", 0))
        return [parse_position(p, slot) for p in data.get("positions", [])]
