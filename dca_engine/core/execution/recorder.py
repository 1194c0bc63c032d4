"""
Execution Recorder

Single writer of order progress. Every cycle, successful or not, appends
exactly one Execution row and writes the order back in the same atomic
repository call. The order write only lands while the cycle still holds its
claim; a cycle overtaken by a later claimant leaves just its row behind.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from ...config import settings
from ...db.repository import OrderRepository
from ..orders.errors import ChainRevertError, DCAEngineError, InsufficientBalanceError
from ..orders.models import REVERT_LIMIT_CODE, Execution, ExecutionStatus, Order, OrderStatus, generate_id
from ..orders.state_machine import transition

logger = logging.getLogger(__name__)


class ExecutionRecorder:
    """Appends Execution rows and advances or parks the order."""

    def __init__(self, repository: OrderRepository, max_consecutive_reverts: Optional[int] = None):
        self._repo = repository
        self.max_consecutive_reverts = (
            max_consecutive_reverts if max_consecutive_reverts is not None else settings.max_consecutive_reverts
        )

    async def record(
        self,
        order: Order,
        execution: Execution,
        now: datetime,
    ) -> Order:
        """
        Record a confirmed cycle (a swap or a dust no-op) and advance progress.

        executions_completed += 1, executed_amount += amount_in,
        last_executed_at = now, next_execution_at = now + interval. The order
        completes when the last execution is recorded.
        """
        if execution.status != ExecutionStatus.CONFIRMED:
            raise ValueError("record() only accepts confirmed executions")
        if order.executions_completed >= order.total_executions:
            raise ValueError(f"Order {order.id} has no executions left")

        completed = order.executions_completed + 1
        next_at = now + timedelta(seconds=order.interval_seconds)
        target = OrderStatus.COMPLETED if completed == order.total_executions else OrderStatus.ACTIVE

        progressed = order.copy(
            executions_completed=completed,
            executed_amount=order.executed_amount + execution.amount_in,
            last_executed_at=now,
            next_execution_at=next_at,
            last_error=None,
            last_error_code=None,
            consecutive_failures=0,
            pending_submission=None,
        )
        updated = transition(progressed, target, now)
        if not await self._repo.record_cycle(execution, updated, claimed_at=order.claimed_at):
            return await self._claim_lost(order, execution)

        logger.info(
            f"Order {order.id}: execution {completed}/{order.total_executions} recorded "
            f"({execution.amount_in} in, {execution.amount_out} out), status={updated.status.value}"
        )
        return updated

    async def record_failure(
        self,
        order: Order,
        error: DCAEngineError,
        now: datetime,
        *,
        amount_in: Decimal = Decimal("0"),
        tx_reference: Optional[str] = None,
        gas_used: Optional[int] = None,
        quote_source: Optional[str] = None,
        restore_status: OrderStatus = OrderStatus.ACTIVE,
    ) -> Order:
        """Record a failed cycle. Progress fields and schedule stay untouched."""
        failures = order.consecutive_failures
        code = error.code
        if isinstance(error, ChainRevertError):
            failures += 1
            if self.max_consecutive_reverts and failures >= self.max_consecutive_reverts:
                code = REVERT_LIMIT_CODE
                logger.warning(
                    f"Order {order.id}: {failures} consecutive reverts, holding for owner review"
                )

        execution = Execution(
            id=generate_id("exec"),
            order_id=order.id,
            status=ExecutionStatus.FAILED,
            executed_at=now,
            amount_in=amount_in,
            amount_out=Decimal("0"),
            tx_reference=tx_reference,
            gas_used=gas_used,
            error_message=error.message,
            error_code=error.code,
            quote_source=quote_source,
        )
        parked = order.copy(
            last_error=error.message,
            last_error_code=code,
            consecutive_failures=failures,
        )
        updated = transition(parked, restore_status, now)
        if not await self._repo.record_cycle(execution, updated, claimed_at=order.claimed_at):
            return await self._claim_lost(order, execution)
        return updated

    async def _claim_lost(self, order: Order, execution: Execution) -> Order:
        """The claim was released and retaken mid-cycle; the newer claimant owns the order."""
        logger.error(
            f"Order {order.id}: claim from {order.claimed_at} was taken over before the cycle finished; "
            f"execution {execution.id} ({execution.status.value}, tx={execution.tx_reference}) "
            f"logged without updating the order"
        )
        current = await self._repo.get_order(order.id)
        return current or order

    async def record_insufficient_balance(
        self,
        order: Order,
        error: InsufficientBalanceError,
        now: datetime,
    ) -> Order:
        """Park the order in insufficient_balance without advancing its schedule."""
        return await self.record_failure(
            order,
            error,
            now,
            restore_status=OrderStatus.INSUFFICIENT_BALANCE,
        )
