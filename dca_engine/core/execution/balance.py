"""
Balance Verifier

Fail-closed check that the funding account can cover the next cycle.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

from ..orders.errors import InsufficientBalanceError, RecoverableCycleError
from ..orders.models import Order
from ...providers.rpc import RpcError

logger = logging.getLogger(__name__)


class BalanceReader(Protocol):
    async def get_erc20_balance(self, token_address: str, account: str) -> int:
        ...


@dataclass
class BalanceCheck:
    ok: bool
    available: Decimal
    required: Decimal


class BalanceReadError(RecoverableCycleError):
    """Balance could not be read; nothing is advanced."""

    code = "balance_unavailable"


class BalanceVerifier:
    """Compares the on-chain source-asset balance to the per-cycle amount."""

    def __init__(self, reader: BalanceReader):
        self._reader = reader

    async def available(self, order: Order) -> Decimal:
        try:
            raw = await self._reader.get_erc20_balance(
                order.source_asset.address,
                order.funding_account_address,
            )
        except RpcError as exc:
            raise BalanceReadError(f"Could not read balance for {order.funding_account_address}: {exc}") from exc
        return order.source_asset.from_base_units(raw)

    async def verify(self, order: Order) -> BalanceCheck:
        required = order.per_execution_amount
        available = await self.available(order)
        ok = available >= required
        if not ok:
            logger.info(
                f"Order {order.id}: balance {available} {order.source_asset.symbol} "
                f"below required {required}"
            )
        return BalanceCheck(ok=ok, available=available, required=required)

    async def require(self, order: Order) -> BalanceCheck:
        """Like ``verify`` but raises InsufficientBalanceError on shortfall."""
        check = await self.verify(order)
        if not check.ok:
            raise InsufficientBalanceError(
                required=check.required,
                available=check.available,
                token=order.source_asset.symbol,
            )
        return check
