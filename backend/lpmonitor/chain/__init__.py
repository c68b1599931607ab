from lpmonitor.chain.base import ChainReader, PositionState
from lpmonitor.chain.gateway import GatewayChainReader
from lpmonitor.chain.mock import MockChainReader

READER_REGISTRY: dict[str, type[ChainReader]] = {
    "gateway": GatewayChainReader,
    "mock": MockChainReader,
}


def build_chain_reader(settings) -> ChainReader:
    name = settings.chain_reader.strip().lower()
    if name not in READER_REGISTRY:
        raise ValueError(f"Unknown CHAIN_READER '{name}' (expected one of {sorted(READER_REGISTRY)})")
    if name == "gateway":
        return GatewayChainReader(
            settings.chain_gateway_url,
            timeout=settings.chain_timeout_seconds,
            max_retries=settings.chain_max_retries,
        )
    return READER_REGISTRY[name]()
