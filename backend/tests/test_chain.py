import httpx
import pytest
from unittest.mock import patch, MagicMock, AsyncMock
from lpmonitor.chain import build_chain_reader, READER_REGISTRY
from lpmonitor.chain.gateway import GatewayChainReader, parse_position
from lpmonitor.chain.mock import MockChainReader
from lpmonitor.errors import ChainUnavailable, PositionNotFound

RAW_POSITION = {
    "address": "pos-P",
    "owner": "wallet-1",
    "pool": "pool-1",
    "lowerBinId": 100,
    "upperBinId": 110,
    "activeBinId": 104,
    "activePrice": "142.5",
    "liquidityX": 1.5,
}


def response(status_code: int, data=None, headers=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.headers = headers or {}
    resp.json.return_value = data
    return resp


def gateway_reader(max_retries: int = 3) -> GatewayChainReader:
    reader = GatewayChainReader("http://gateway.test/", timeout=1, max_retries=max_retries)
    reader.BACKOFF_BASE_SECONDS = 0
    return reader


def test_parse_position():
    state = parse_position(RAW_POSITION, slot=777)
    assert state.position_ref == "pos-P"
    assert state.wallet_address == "wallet-1"
    assert (state.lower_bound, state.upper_bound, state.active_bound) == (100, 110, 104)
    assert state.active_price == 142.5
    assert state.slot == 777
    assert state.dex == "meteora_dlmm"


def test_parse_position_bad_shape():
    with pytest.raises(ChainUnavailable):
        parse_position({"address": "pos-P"}, slot=1)


@pytest.mark.asyncio
async def test_gateway_fetch_success():
    mock_client = AsyncMock()
    mock_client.get.return_value = response(200, {"slot": 900, "position": RAW_POSITION})

    with patch("httpx.AsyncClient") as mock_async_client:
        mock_async_client.return_value.__aenter__.return_value = mock_client
        state = await gateway_reader().fetch_position_state("pos-P")

    assert state.slot == 900
    assert mock_client.get.call_args[0][0] == "http://gateway.test/positions/pos-P"


@pytest.mark.asyncio
async def test_gateway_retries_server_errors_then_succeeds():
    mock_client = AsyncMock()
    mock_client.get.side_effect = [
        response(503),
        httpx.ConnectTimeout("slow"),
        response(200, {"slot": 901, "position": RAW_POSITION}),
    ]

    with patch("httpx.AsyncClient") as mock_async_client:
        mock_async_client.return_value.__aenter__.return_value = mock_client
        state = await gateway_reader(max_retries=3).fetch_position_state("pos-P")

    assert state.slot == 901
    assert mock_client.get.call_count == 3


@pytest.mark.asyncio
async def test_gateway_raises_chain_unavailable_after_budget():
    mock_client = AsyncMock()
    mock_client.get.return_value = response(502)

    with patch("httpx.AsyncClient") as mock_async_client:
        mock_async_client.return_value.__aenter__.return_value = mock_client
        with pytest.raises(ChainUnavailable):
            await gateway_reader(max_retries=2).fetch_position_state("pos-P")

    assert mock_client.get.call_count == 2


@pytest.mark.asyncio
async def test_gateway_not_found():
    mock_client = AsyncMock()
    mock_client.get.return_value = response(404)

    with patch("httpx.AsyncClient") as mock_async_client:
        mock_async_client.return_value.__aenter__.return_value = mock_client
        with pytest.raises(PositionNotFound):
            await gateway_reader().fetch_position_state("pos-gone")

    assert mock_client.get.call_count == 1


@pytest.mark.asyncio
async def test_gateway_lists_wallet_positions():
    mock_client = AsyncMock()
    mock_client.get.return_value = response(200, {"slot": 55, "positions": [RAW_POSITION]})

    with patch("httpx.AsyncClient") as mock_async_client:
        mock_async_client.return_value.__aenter__.return_value = mock_client
        states = await gateway_reader().list_wallet_positions("wallet-1")

    assert [s.position_ref for s in states] == ["pos-P"]
    assert states[0].slot == 55


@pytest.mark.asyncio
async def test_mock_reader_advances_slot(make_state):
    reader = MockChainReader([make_state(slot=1)])
    first = await reader.fetch_position_state("pos-P")
    second = await reader.fetch_position_state("pos-P")
    assert second.slot > first.slot

    reader.failing.add("pos-P")
    with pytest.raises(ChainUnavailable):
        await reader.fetch_position_state("pos-P")
    with pytest.raises(PositionNotFound):
        await reader.fetch_position_state("pos-missing")


def test_reader_registry(settings):
    assert set(READER_REGISTRY) == {"gateway", "mock"}
    settings.chain_reader = "gateway"
    assert build_chain_reader(settings).reader_name == "gateway"
    settings.chain_reader = "nope"
    with pytest.raises(ValueError):
        build_chain_reader(settings)
