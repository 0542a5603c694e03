"""
ORE RPC Client
HTTP JSON-RPC transport with failover across endpoints in priority order
"""

import asyncio
import base64
import time
from typing import Any, Dict, List, Optional

import aiohttp
from solders.pubkey import Pubkey

from ore_learner.core.accounts import (
    BoardAccount,
    MinerAccount,
    RoundAccount,
    TreasuryAccount,
    board_pda,
    miner_pda,
    round_pda,
    treasury_pda,
)
from ore_learner.core.config import RPCConfig
from ore_learner.core.constants import ORE_PROGRAM_ID
from ore_learner.core.errors import RpcError
from ore_learner.core.logger import get_logger
from ore_learner.core.metrics import LatencyTimer, get_metrics


logger = get_logger(__name__)
metrics = get_metrics()


class OreRpcClient:
    """
    JSON-RPC client for the ORE program's accounts and transactions

    Usage:
        async with OreRpcClient(config.rpc_config) as rpc:
            board = await rpc.get_board()
            signatures = await rpc.get_signatures_for_address(limit=100)
    """

    def __init__(
        self,
        config: RPCConfig,
        program_id: str = ORE_PROGRAM_ID,
        session: Optional[aiohttp.ClientSession] = None
    ):
        self.config = config
        self.program_id = program_id
        self.program = Pubkey.from_string(program_id)
        self._http_session = session
        self._owns_session = session is None
        self._failures: Dict[str, int] = {ep.label: 0 for ep in config.endpoints}

        logger.info(
            "rpc_client_initialized",
            endpoint_count=len(config.endpoints),
            endpoints=[ep.label for ep in config.endpoints]
        )

    async def start(self) -> None:
        if self._http_session is None:
            self._http_session = aiohttp.ClientSession()
            self._owns_session = True

    async def close(self) -> None:
        """Close the HTTP session if this client created it"""
        if self._http_session is not None and self._owns_session:
            await self._http_session.close()
        self._http_session = None

    async def __aenter__(self) -> "OreRpcClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def call_rpc(self, method: str, params: List[Any]) -> Any:
        """
        Make a JSON-RPC call, trying endpoints in priority order

        Returns:
            The response's "result" member

        Raises:
            RpcError: If every endpoint failed
        """
        if self._http_session is None:
            raise RpcError("HTTP session not initialized. Call start() first.")

        last_error: Optional[Exception] = None

        for endpoint in sorted(self.config.endpoints, key=lambda ep: ep.priority):
            try:
                with LatencyTimer(metrics, "rpc_call", {"endpoint": endpoint.label, "method": method}):
                    payload = {
                        "jsonrpc": "2.0",
                        "id": int(time.time() * 1000000),
                        "method": method,
                        "params": params
                    }

                    async def _make_request():
                        async with self._http_session.post(endpoint.url, json=payload) as response:
                            return await response.json()

                    body = await asyncio.wait_for(_make_request(), timeout=endpoint.timeout_ms / 1000)

                if "error" in body:
                    error = body["error"]
                    message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
                    raise RpcError(f"RPC error: {message}")

                self._failures[endpoint.label] = 0
                metrics.increment_counter("rpc_success", labels={"endpoint": endpoint.label})
                return body.get("result")

            except (aiohttp.ClientError, asyncio.TimeoutError, RpcError, ValueError) as e:
                logger.warning(
                    "rpc_call_failed",
                    endpoint=endpoint.label,
                    method=method,
                    error=str(e) or type(e).__name__
                )
                self._failures[endpoint.label] = self._failures.get(endpoint.label, 0) + 1
                metrics.increment_counter("rpc_errors", labels={"endpoint": endpoint.label})
                last_error = e

                if self._failures[endpoint.label] >= self.config.failover_threshold_errors:
                    logger.error(
                        "rpc_endpoint_failing_over",
                        endpoint=endpoint.label,
                        failures=self._failures[endpoint.label]
                    )

        raise RpcError(f"All RPC endpoints failed. Last error: {last_error}")

    # -- raw queries -------------------------------------------------------

    async def get_account(self, pubkey: Pubkey) -> Optional[bytes]:
        """Account data, or None when the account does not exist"""
        result = await self.call_rpc(
            "getAccountInfo",
            [str(pubkey), {"encoding": "base64", "commitment": self.config.commitment}]
        )
        value = (result or {}).get("value")
        if not value:
            return None
        data = value.get("data")
        if isinstance(data, list):
            data = data[0]
        return base64.b64decode(data or "")

    async def get_signatures_for_address(
        self,
        address: Optional[str] = None,
        limit: int = 100,
        before: Optional[str] = None,
        until: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Newest-first signature records for the program (or `address`)"""
        options: Dict[str, Any] = {"limit": limit, "commitment": self.config.commitment}
        if before:
            options["before"] = before
        if until:
            options["until"] = until
        result = await self.call_rpc("getSignaturesForAddress", [address or self.program_id, options])
        return result or []

    async def get_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        return await self.call_rpc(
            "getTransaction",
            [signature, {
                "encoding": "json",
                "commitment": self.config.commitment,
                "maxSupportedTransactionVersion": 0,
            }]
        )

    async def get_slot(self) -> int:
        return await self.call_rpc("getSlot", [{"commitment": self.config.commitment}])

    # -- program accounts --------------------------------------------------

    async def get_board(self) -> Optional[BoardAccount]:
        raw = await self.get_account(board_pda(self.program))
        return BoardAccount.from_bytes(raw) if raw else None

    async def get_round(self, round_id: int) -> Optional[RoundAccount]:
        raw = await self.get_account(round_pda(round_id, self.program))
        return RoundAccount.from_bytes(raw) if raw else None

    async def get_treasury(self) -> Optional[TreasuryAccount]:
        raw = await self.get_account(treasury_pda(self.program))
        return TreasuryAccount.from_bytes(raw) if raw else None

    async def get_miner(self, authority: Pubkey) -> Optional[MinerAccount]:
        raw = await self.get_account(miner_pda(authority, self.program))
        return MinerAccount.from_bytes(raw) if raw else None

    def get_endpoint_failures(self) -> Dict[str, int]:
        return dict(self._failures)
