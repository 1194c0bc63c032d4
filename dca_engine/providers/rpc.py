"""Minimal async JSON-RPC client for the execution chain."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from ..config import settings

logger = logging.getLogger(__name__)

ERC20_BALANCE_OF_SELECTOR = "0x70a08231"  # balanceOf(address)


class RpcError(Exception):
    """JSON-RPC call failed (transport error or error object in the response)."""


class ChainRpcClient:
    """Thin wrapper around a single JSON-RPC endpoint."""

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        *,
        timeout_s: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.rpc_url = rpc_url or settings.rpc_url
        self._client = client or httpx.AsyncClient(timeout=timeout_s)
        self._request_id = 0

    async def call(self, method: str, params: List[Any]) -> Any:
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": self._request_id,
        }

        try:
            response = await self._client.post(self.rpc_url, json=payload)
            response.raise_for_status()
            result: Dict[str, Any] = response.json()
        except httpx.HTTPError as exc:
            raise RpcError(f"{method} failed: {exc}") from exc

        if "error" in result:
            raise RpcError(f"RPC error: {result['error']}")

        return result.get("result")

    async def get_erc20_balance(self, token_address: str, account: str) -> int:
        """Raw ``balanceOf(account)`` in token base units."""
        data = ERC20_BALANCE_OF_SELECTOR + account.lower().replace("0x", "").zfill(64)
        raw = await self.call("eth_call", [{"to": token_address, "data": data}, "latest"])
        if not raw or raw == "0x":
            return 0
        return int(raw, 16)

    async def get_transaction_count(self, address: str) -> int:
        raw = await self.call("eth_getTransactionCount", [address, "pending"])
        return int(raw, 16)

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return await self.call("eth_getTransactionReceipt", [tx_hash])

    async def close(self) -> None:
        await self._client.aclose()
