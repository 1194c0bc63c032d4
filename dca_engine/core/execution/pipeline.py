"""
Execution Pipeline

Runs one claimed order through a single cycle:

0. A batch from an earlier cycle that was never confirmed is settled first;
   no new quote is fetched until its outcome is known
1. Balance Verifier (fail closed)
2. Credential Validator (validity window)
3. Dust check (below-minimum cycles skip quoting and submission)
4. Quote Aggregator (best price behind the allow-list gate)
5. Execution Orchestrator (approve → swap → payout batch, scope check)
6. Submission & Confirmation
7. Execution Recorder

Every per-cycle error is caught here and turned into a recorded Execution
so one order can never stall a sweep. Only RepositoryError escapes.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

import structlog

from ..orders.errors import (
    ChainRevertError,
    CredentialExpiredError,
    DCAEngineError,
    InsufficientBalanceError,
    QuoteUnavailableError,
    RepositoryError,
    SubmissionTimeoutError,
    UnauthorizedTargetError,
)
from ..orders.models import Execution, ExecutionStatus, Order, OrderStatus, PendingSubmission, generate_id
from ..quotes.aggregator import QuoteAggregator
from ..quotes.allowlist import order_addresses
from .balance import BalanceReadError, BalanceVerifier
from .credentials import CredentialValidator
from .orchestrator import ExecutionOrchestrator
from .recorder import ExecutionRecorder
from .submission import SubmissionService

logger = logging.getLogger(__name__)
_slog = structlog.stdlib.get_logger("dca.pipeline")


class CycleOutcome(str, Enum):
    """How a single order cycle ended."""
    EXECUTED = "executed"
    COMPLETED = "completed"
    BELOW_MINIMUM = "below_minimum_amount"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    CREDENTIAL_EXPIRED = "credential_expired"
    QUOTE_UNAVAILABLE = "quote_unavailable"
    UNAUTHORIZED_TARGET = "unauthorized_target"
    SUBMISSION_TIMEOUT = "submission_timeout"
    CHAIN_REVERT = "chain_revert"
    ERROR = "error"


_OUTCOME_BY_ERROR = (
    (InsufficientBalanceError, CycleOutcome.INSUFFICIENT_BALANCE),
    (CredentialExpiredError, CycleOutcome.CREDENTIAL_EXPIRED),
    (QuoteUnavailableError, CycleOutcome.QUOTE_UNAVAILABLE),
    (UnauthorizedTargetError, CycleOutcome.UNAUTHORIZED_TARGET),
    (SubmissionTimeoutError, CycleOutcome.SUBMISSION_TIMEOUT),
    (ChainRevertError, CycleOutcome.CHAIN_REVERT),
)


class InternalCycleError(DCAEngineError):
    """Wraps an unexpected exception so it can be recorded like any other."""

    code = "internal_error"


@dataclass
class CycleResult:
    """Result of one order cycle."""
    order_id: str
    outcome: CycleOutcome
    success: bool
    order: Optional[Order] = None
    execution_id: Optional[str] = None
    tx_reference: Optional[str] = None
    amount_in: Optional[Decimal] = None
    amount_out: Optional[Decimal] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "orderId": self.order_id,
            "success": self.success,
            "outcome": self.outcome.value,
        }
        if self.tx_reference:
            data["txHash"] = self.tx_reference
        if self.amount_in is not None:
            data["amountIn"] = str(self.amount_in)
        if self.amount_out is not None:
            data["amountOut"] = str(self.amount_out)
        if self.error:
            data["error"] = self.error
            data["errorCode"] = self.error_code
        return data


def outcome_for(error: DCAEngineError) -> CycleOutcome:
    for error_type, outcome in _OUTCOME_BY_ERROR:
        if isinstance(error, error_type):
            return outcome
    return CycleOutcome.ERROR


class ExecutionPipeline:
    """
    Executes one cycle of a claimed order.

    Responsibilities:
    1. Refuse to spend without balance or a valid credential
    2. Pick the best allow-listed quote and build the batch
    3. Submit, confirm, and hand the result to the recorder
    """

    def __init__(
        self,
        balance: BalanceVerifier,
        credentials: CredentialValidator,
        aggregator: QuoteAggregator,
        orchestrator: ExecutionOrchestrator,
        submission: SubmissionService,
        recorder: ExecutionRecorder,
    ):
        self.balance = balance
        self.credentials = credentials
        self.aggregator = aggregator
        self.orchestrator = orchestrator
        self.submission = submission
        self.recorder = recorder

    async def run(
        self,
        order: Order,
        now: datetime,
        pre_claim_status: OrderStatus = OrderStatus.ACTIVE,
    ) -> CycleResult:
        """
        Run one cycle for ``order``, which must already be claimed (executing).

        Args:
            order: The claimed order
            now: Cycle timestamp, used for credential checks and scheduling
            pre_claim_status: Status the order had before the claim; restored
                when the cycle fails before the balance is known

        Returns:
            CycleResult describing what happened

        Raises:
            RepositoryError: the order could not be written back
        """
        if order.status != OrderStatus.EXECUTING:
            raise ValueError(f"Order {order.id} is {order.status.value}, not claimed")

        _start = time.perf_counter()
        execution_number = order.executions_completed + 1
        _slog.info(
            "order_cycle_started",
            order_id=order.id,
            execution_number=execution_number,
            total_executions=order.total_executions,
            pre_claim_status=pre_claim_status.value,
        )

        try:
            result = await self._execute(order, now)
        except RepositoryError:
            raise
        except DCAEngineError as exc:
            restore = OrderStatus.ACTIVE
            if isinstance(exc, BalanceReadError):
                restore = pre_claim_status
            result = await self._record_error(order, exc, now, restore)
        except Exception as exc:  # noqa: BLE001
            logger.exception(f"Unexpected error executing order {order.id}")
            wrapped = InternalCycleError(f"{exc.__class__.__name__}: {exc}")
            result = await self._record_error(order, wrapped, now, pre_claim_status)

        duration_ms = round((time.perf_counter() - _start) * 1000, 1)
        log = _slog.info if result.success else _slog.warning
        log(
            "order_cycle_completed",
            order_id=order.id,
            execution_number=execution_number,
            outcome=result.outcome.value,
            success=result.success,
            tx_reference=result.tx_reference,
            error_code=result.error_code,
            duration_ms=duration_ms,
        )
        return result

    async def _execute(self, order: Order, now: datetime) -> CycleResult:
        if order.pending_submission is not None:
            return await self._settle_pending(order, now)

        await self.balance.require(order)
        credential = self.credentials.validate(order.credential, now)

        amount_in = order.per_execution_amount
        if self.orchestrator.is_below_minimum(amount_in):
            logger.info(
                f"Order {order.id}: {amount_in} {order.source_asset.symbol} is below the "
                f"minimum {self.orchestrator.min_execution_amount}, recording a no-op cycle"
            )
            execution = Execution(
                id=generate_id("exec"),
                order_id=order.id,
                status=ExecutionStatus.CONFIRMED,
                executed_at=now,
                amount_in=Decimal("0"),
                amount_out=Decimal("0"),
                error_code=CycleOutcome.BELOW_MINIMUM.value,
            )
            updated = await self.recorder.record(order, execution, now)
            return CycleResult(
                order_id=order.id,
                outcome=CycleOutcome.BELOW_MINIMUM,
                success=True,
                order=updated,
                execution_id=execution.id,
                amount_in=execution.amount_in,
                amount_out=execution.amount_out,
            )

        quote = await self.aggregator.get_best_quote(
            order.source_asset,
            order.target_asset,
            amount_in,
            order.funding_account_address,
            extra_allowed=order_addresses(order),
        )

        batch = self.orchestrator.build_batch(order, quote)
        self.credentials.check_batch(credential, batch)

        try:
            receipt = await self.submission.submit(batch, credential)
        except ChainRevertError as exc:
            # Keep the quote source and gas on the failed row
            return await self._record_error(
                order,
                exc,
                now,
                OrderStatus.ACTIVE,
                quote_source=quote.source,
            )
        except SubmissionTimeoutError as exc:
            if exc.tx_reference is None:
                raise
            pending = PendingSubmission(
                tx_reference=exc.tx_reference,
                submitted_at=now,
                amount_in=quote.amount_in,
                amount_out=quote.amount_out,
                quote_source=quote.source,
            )
            return await self._record_error(
                order.copy(pending_submission=pending),
                exc,
                now,
                OrderStatus.ACTIVE,
                quote_source=quote.source,
            )

        execution = Execution(
            id=generate_id("exec"),
            order_id=order.id,
            status=ExecutionStatus.CONFIRMED,
            executed_at=now,
            amount_in=quote.amount_in,
            amount_out=quote.amount_out,
            tx_reference=receipt.tx_reference,
            gas_used=receipt.gas_used,
            gas_price=receipt.gas_price,
            quote_source=quote.source,
        )
        return await self._record_confirmed(order, execution, now)

    async def _settle_pending(self, order: Order, now: datetime) -> CycleResult:
        """Look up the unconfirmed batch from an earlier cycle and record what happened to it."""
        pending = order.pending_submission
        receipt = await self.submission.lookup(pending.tx_reference)
        if receipt is None:
            _slog.info("pending_batch_unconfirmed", order_id=order.id, tx_reference=pending.tx_reference)
            error = SubmissionTimeoutError(
                f"Batch {pending.tx_reference} from an earlier cycle is still unconfirmed",
                tx_reference=pending.tx_reference,
            )
            return await self._record_error(order, error, now, OrderStatus.ACTIVE, quote_source=pending.quote_source)

        settled = order.copy(pending_submission=None)
        if not receipt.success:
            error = ChainRevertError(
                f"Batch {pending.tx_reference} reverted"
                + (f": {receipt.revert_reason}" if receipt.revert_reason else ""),
                tx_reference=pending.tx_reference,
                revert_reason=receipt.revert_reason,
                gas_used=receipt.gas_used,
            )
            return await self._record_error(settled, error, now, OrderStatus.ACTIVE, quote_source=pending.quote_source)

        _slog.info("pending_batch_landed", order_id=order.id, tx_reference=receipt.tx_reference)
        execution = Execution(
            id=generate_id("exec"),
            order_id=order.id,
            status=ExecutionStatus.CONFIRMED,
            executed_at=now,
            amount_in=pending.amount_in,
            amount_out=pending.amount_out,
            tx_reference=receipt.tx_reference,
            gas_used=receipt.gas_used,
            gas_price=receipt.gas_price,
            quote_source=pending.quote_source,
        )
        return await self._record_confirmed(settled, execution, now)

    async def _record_confirmed(self, order: Order, execution: Execution, now: datetime) -> CycleResult:
        updated = await self.recorder.record(order, execution, now)
        outcome = CycleOutcome.COMPLETED if updated.status == OrderStatus.COMPLETED else CycleOutcome.EXECUTED
        return CycleResult(
            order_id=order.id,
            outcome=outcome,
            success=True,
            order=updated,
            execution_id=execution.id,
            tx_reference=execution.tx_reference,
            amount_in=execution.amount_in,
            amount_out=execution.amount_out,
        )

    async def _record_error(
        self,
        order: Order,
        error: DCAEngineError,
        now: datetime,
        restore_status: OrderStatus,
        quote_source: Optional[str] = None,
        amount_in: Decimal = Decimal("0"),
    ) -> CycleResult:
        tx_reference = getattr(error, "tx_reference", None)
        if isinstance(error, InsufficientBalanceError):
            updated = await self.recorder.record_insufficient_balance(order, error, now)
        else:
            updated = await self.recorder.record_failure(
                order,
                error,
                now,
                amount_in=amount_in,
                tx_reference=tx_reference,
                gas_used=getattr(error, "gas_used", None),
                quote_source=quote_source,
                restore_status=restore_status,
            )

        if error.retryable:
            logger.warning(f"Order {order.id}: cycle failed ({error.code}): {error.message}")
        else:
            logger.error(f"Order {order.id}: cycle aborted ({error.code}): {error.message}")

        return CycleResult(
            order_id=order.id,
            outcome=outcome_for(error),
            success=False,
            order=updated,
            tx_reference=tx_reference,
            error=error.message,
            error_code=error.code,
        )
