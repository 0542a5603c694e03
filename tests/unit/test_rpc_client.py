"""
Unit tests for the ORE RPC client (clients/rpc_client.py)
Tests endpoint failover, error handling and account decoding
"""

import asyncio
import base64
import struct
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest
from solders.pubkey import Pubkey

from ore_learner.clients.rpc_client import OreRpcClient
from ore_learner.core.accounts import board_pda
from ore_learner.core.config import RPCConfig, RPCEndpoint
from ore_learner.core.constants import ORE_PROGRAM
from ore_learner.core.errors import RpcError
from ore_learner.core.metrics import get_metrics


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def rpc_config():
    return RPCConfig(
        endpoints=[
            RPCEndpoint(url="https://backup.example", priority=1, label="backup", timeout_ms=1000),
            RPCEndpoint(url="https://primary.example", priority=0, label="primary", timeout_ms=1000),
        ],
        failover_threshold_errors=2,
    )


def _response(body=None, error=None):
    """post() context manager yielding a response whose json() returns body"""
    response = MagicMock()
    response.json = AsyncMock(return_value=body, side_effect=error)
    ctx = MagicMock()
    ctx.__aenter__ = AsyncMock(return_value=response)
    ctx.__aexit__ = AsyncMock(return_value=False)
    return ctx


def _session(responses_by_url):
    session = MagicMock()
    session.post = MagicMock(side_effect=lambda url, json: responses_by_url[url]())
    return session


# =============================================================================
# FAILOVER
# =============================================================================

@pytest.mark.asyncio
async def test_primary_endpoint_used_first(rpc_config):
    session = _session({
        "https://primary.example": lambda: _response({"jsonrpc": "2.0", "result": 123}),
        "https://backup.example": lambda: _response({"jsonrpc": "2.0", "result": 456}),
    })
    client = OreRpcClient(rpc_config, session=session)

    assert await client.get_slot() == 123
    assert session.post.call_count == 1
    assert get_metrics().get_counter("rpc_success", labels={"endpoint": "primary"}) == 1


@pytest.mark.asyncio
async def test_fails_over_on_rpc_error(rpc_config):
    session = _session({
        "https://primary.example": lambda: _response({"error": {"code": -32005, "message": "busy"}}),
        "https://backup.example": lambda: _response({"result": 456}),
    })
    client = OreRpcClient(rpc_config, session=session)

    assert await client.get_slot() == 456
    assert client.get_endpoint_failures() == {"backup": 0, "primary": 1}
    assert get_metrics().get_counter("rpc_errors", labels={"endpoint": "primary"}) == 1


@pytest.mark.asyncio
async def test_fails_over_on_transport_errors(rpc_config):
    session = _session({
        "https://primary.example": lambda: _response(error=aiohttp.ClientError("refused")),
        "https://backup.example": lambda: _response(error=asyncio.TimeoutError()),
    })
    client = OreRpcClient(rpc_config, session=session)

    with pytest.raises(RpcError, match="All RPC endpoints failed"):
        await client.get_slot()

    assert client.get_endpoint_failures() == {"backup": 1, "primary": 1}


@pytest.mark.asyncio
async def test_success_resets_failure_count(rpc_config):
    bodies = iter([{"error": "down"}, {"result": 1}])
    session = _session({
        "https://primary.example": lambda: _response(next(bodies)),
        "https://backup.example": lambda: _response({"result": 2}),
    })
    client = OreRpcClient(rpc_config, session=session)

    await client.get_slot()
    assert client.get_endpoint_failures()["primary"] == 1

    await client.get_slot()
    assert client.get_endpoint_failures()["primary"] == 0


@pytest.mark.asyncio
async def test_requires_session(rpc_config):
    client = OreRpcClient(rpc_config)

    with pytest.raises(RpcError, match="not initialized"):
        await client.get_slot()


# =============================================================================
# QUERIES
# =============================================================================

@pytest.mark.asyncio
async def test_get_board_decodes_account(rpc_config):
    client = OreRpcClient(rpc_config, session=MagicMock())
    raw = bytes(8) + struct.pack("<QQQ", 9, 100, 250)
    client.call_rpc = AsyncMock(return_value={
        "context": {"slot": 1},
        "value": {"data": [base64.b64encode(raw).decode(), "base64"]},
    })

    board = await client.get_board()

    assert board.round_id == 9
    assert board.end_slot == 250
    method, params = client.call_rpc.call_args.args
    assert method == "getAccountInfo"
    assert params[0] == str(board_pda(ORE_PROGRAM))


@pytest.mark.asyncio
async def test_missing_account_is_none(rpc_config):
    client = OreRpcClient(rpc_config, session=MagicMock())
    client.call_rpc = AsyncMock(return_value={"context": {"slot": 1}, "value": None})

    assert await client.get_round(3) is None
    assert await client.get_miner(Pubkey.new_unique()) is None


@pytest.mark.asyncio
async def test_signature_query_options(rpc_config):
    client = OreRpcClient(rpc_config, session=MagicMock())
    client.call_rpc = AsyncMock(return_value=None)

    records = await client.get_signatures_for_address(limit=10, until="sigX")

    assert records == []
    method, params = client.call_rpc.call_args.args
    assert method == "getSignaturesForAddress"
    assert params[1] == {"limit": 10, "commitment": "confirmed", "until": "sigX"}


@pytest.mark.asyncio
async def test_owned_session_closed():
    config = RPCConfig(endpoints=[RPCEndpoint(url="http://localhost:8899", priority=0, label="local")])

    async with OreRpcClient(config) as client:
        assert client._http_session is not None

    assert client._http_session is None
