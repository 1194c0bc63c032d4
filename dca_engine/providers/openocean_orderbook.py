"""
Read-only client for OpenOcean's hosted DCA order book.

Orders created on that book execute remotely; this service only mirrors
their status and progress (see ``core.reconciler``).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

import httpx

from ..config import settings
from .base import parse_int

logger = logging.getLogger(__name__)

# Every status the book reports: unfilled, cancelled, filled, pending,
# hash-not-exist, expired
ALL_REMOTE_STATUSES = (1, 3, 4, 5, 6, 7)

DEFAULT_BASE_URL = "https://open-api.openocean.finance"


class OrderBookError(Exception):
    """The remote order book could not be read."""


@dataclass
class RemoteOrder:
    """One order as reported by the remote book, amounts in base units."""
    order_hash: str
    status: int
    execution_count: int = 0
    executed_amount: int = 0
    remaining_amount: int = 0


class RemoteOrderBook(Protocol):
    async def fetch_orders(self, owner_address: str) -> List[RemoteOrder]:
        ...


def _parse_order(item: Dict[str, Any]) -> Optional[RemoteOrder]:
    order_hash = item.get("orderHash")
    if not order_hash:
        return None
    status = item.get("statuses", item.get("status"))
    making = parse_int(item.get("makerAmount") or item.get("makingAmount"))
    remaining = parse_int(item.get("remainingMakerAmount"), default=making)
    return RemoteOrder(
        order_hash=order_hash,
        status=parse_int(status),
        execution_count=parse_int(item.get("have_filled")),
        executed_amount=max(making - remaining, 0),
        remaining_amount=remaining,
    )


class OpenOceanOrderBook:
    """``GET /v1/{chain}/dca/address/{owner}`` across all statuses."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        chain_id: Optional[int] = None,
        timeout_s: float = 10.0,
        page_size: int = 100,
    ) -> None:
        self.base_url = (base_url or settings.openocean_orderbook_base_url or DEFAULT_BASE_URL).rstrip("/")
        self.chain_id = chain_id or settings.chain_id
        self.timeout_s = timeout_s
        self.page_size = page_size

    async def fetch_orders(self, owner_address: str) -> List[RemoteOrder]:
        params = {
            "page": 1,
            "limit": self.page_size,
            "statuses": "[" + ",".join(str(s) for s in ALL_REMOTE_STATUSES) + "]",
            "sortBy": "createDateTime",
        }
        try:
            async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout_s) as client:
                response = await client.get(
                    f"/v1/{self.chain_id}/dca/address/{owner_address}",
                    params=params,
                    headers={"accept": "application/json"},
                )
                response.raise_for_status()
                payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise OrderBookError(f"Could not fetch orders for {owner_address}: {exc}") from exc

        orders: List[RemoteOrder] = []
        for item in payload.get("data") or []:
            parsed = _parse_order(item)
            if parsed is not None:
                orders.append(parsed)
        logger.debug(f"Fetched {len(orders)} remote orders for {owner_address}")
        return orders
