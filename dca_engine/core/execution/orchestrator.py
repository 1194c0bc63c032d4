"""
Execution Orchestrator

Turns an order and its winning quote into the ordered all-or-nothing batch
approve → swap → payout, and owns the dust policy.
"""

from __future__ import annotations

from decimal import Decimal
from typing import List, Optional

from ...config import settings
from ..orders.models import Order, Quote
from .tx_builder import BatchBuilder, SubOperation


class ExecutionOrchestrator:
    """Builds batches; never submits them."""

    def __init__(self, min_execution_amount: Optional[Decimal] = None):
        self.min_execution_amount = (
            min_execution_amount if min_execution_amount is not None else settings.min_execution_amount
        )

    def is_below_minimum(self, amount_in: Decimal) -> bool:
        """Dust cycles skip the swap; the amount rolls into the next cycle."""
        return amount_in < self.min_execution_amount

    def build_batch(self, order: Order, quote: Quote) -> List[SubOperation]:
        """
        Ordered batch for one cycle.

        1. approve the quote's target for exactly ``amount_in``
        2. the swap call from the quote
        3. payout of the guaranteed output when the destination is elsewhere
        """
        if self.is_below_minimum(quote.amount_in):
            raise ValueError(f"Amount {quote.amount_in} is below the minimum; no batch is built")

        source = order.source_asset
        amount_raw = source.to_base_units(quote.amount_in)
        batch = [
            BatchBuilder.approve(source.address, quote.target_contract, amount_raw),
            BatchBuilder.raw_call(
                quote.target_contract,
                quote.call_data,
                value=quote.value,
                description=f"Swap {quote.amount_in} {source.symbol} via {quote.source or 'aggregator'}",
            ),
        ]

        if order.needs_payout:
            payout_raw = order.target_asset.to_base_units(quote.guaranteed_out)
            if payout_raw > 0:
                batch.append(
                    BatchBuilder.transfer(order.target_asset.address, order.destination_address, payout_raw)
                )
        return batch

    def build_sweep_batch(self, order: Order, amount: Decimal, recipient: Optional[str] = None) -> List[SubOperation]:
        """Transfer-only batch returning unspent source asset (used on cancel)."""
        raw = order.source_asset.to_base_units(amount)
        if raw <= 0:
            return []
        return [
            BatchBuilder.transfer(
                order.source_asset.address,
                recipient or order.owner_address,
                raw,
            )
        ]
