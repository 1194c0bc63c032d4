"""
Due-Order Scheduler

One sweep:
1. roll stale ``executing`` claims back to ``active``
2. expire orders past ``expires_at``
3. select due orders, claim each with a compare-and-set on its status, and
   run the claimed ones through the execution pipeline in a bounded pool

Per-order failures never stop the sweep; a RepositoryError does.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog

from ..config import settings
from ..db.repository import OrderRepository
from .execution.pipeline import CycleOutcome, CycleResult, ExecutionPipeline
from .orders.errors import RepositoryError
from .orders.models import Order, OrderStatus, utc_now
from .orders.state_machine import InvalidTransitionError, transition

logger = logging.getLogger(__name__)
_slog = structlog.stdlib.get_logger("dca.scheduler")


@dataclass
class SweepReport:
    """Outcome of one sweep."""
    started_at: datetime
    results: List[CycleResult] = field(default_factory=list)
    released: List[str] = field(default_factory=list)
    expired: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    duration_ms: float = 0.0

    @property
    def processed(self) -> List[str]:
        return [r.order_id for r in self.results]

    @property
    def successful(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": len(self.results),
            "successful": self.successful,
            "failed": self.failed,
            "results": [r.to_dict() for r in self.results],
            "released": list(self.released),
            "expired": list(self.expired),
            "skipped": list(self.skipped),
            "durationMs": self.duration_ms,
        }


class DueOrderScheduler:
    """Selects due orders and runs each claimed one through the pipeline."""

    def __init__(
        self,
        repository: OrderRepository,
        pipeline: ExecutionPipeline,
        *,
        max_concurrency: Optional[int] = None,
        order_timeout_s: Optional[float] = None,
        inter_batch_delay_s: Optional[float] = None,
        stale_after_s: Optional[int] = None,
    ):
        self.repository = repository
        self.pipeline = pipeline
        self.max_concurrency = max_concurrency or settings.scheduler_max_concurrency
        self.order_timeout_s = order_timeout_s or settings.scheduler_order_timeout_seconds
        self.inter_batch_delay_s = (
            inter_batch_delay_s if inter_batch_delay_s is not None else settings.quote_inter_batch_delay_seconds
        )
        self.stale_after_s = stale_after_s or settings.claim_stale_after_seconds

    async def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """
        Run one sweep.

        Raises:
            RepositoryError: storage failed; the sweep is aborted
        """
        now = now or utc_now()
        _start = time.perf_counter()
        report = SweepReport(started_at=now)

        report.released = await self.repository.release_stale_claims(
            now - timedelta(seconds=self.stale_after_s), now
        )
        if report.released:
            logger.warning(f"Released {len(report.released)} stale claims: {report.released}")

        report.expired = await self._expire_orders(now)

        due = await self.repository.get_due_orders(now)
        if due:
            logger.info(f"Found {len(due)} due orders")

        semaphore = asyncio.Semaphore(self.max_concurrency)
        batches = self._owner_batches(due)
        for index, batch in enumerate(batches):
            if index > 0 and self.inter_batch_delay_s > 0:
                await asyncio.sleep(self.inter_batch_delay_s)

            outcomes = await asyncio.gather(
                *(self._process(order, now, semaphore) for order in batch),
                return_exceptions=True,
            )
            for order, outcome in zip(batch, outcomes):
                if isinstance(outcome, RepositoryError):
                    raise outcome
                if isinstance(outcome, BaseException):
                    # Not recorded by the pipeline; the stale-claim sweep recovers the order
                    logger.error(f"Order {order.id} failed outside the pipeline: {outcome!r}")
                    report.results.append(
                        CycleResult(
                            order_id=order.id,
                            outcome=CycleOutcome.ERROR,
                            success=False,
                            error=str(outcome) or outcome.__class__.__name__,
                            error_code="internal_error",
                        )
                    )
                elif outcome is None:
                    report.skipped.append(order.id)
                else:
                    report.results.append(outcome)

        report.duration_ms = round((time.perf_counter() - _start) * 1000, 1)
        _slog.info(
            "sweep_completed",
            due=len(due),
            processed=len(report.results),
            successful=report.successful,
            failed=report.failed,
            skipped=len(report.skipped),
            expired=len(report.expired),
            released=len(report.released),
            duration_ms=report.duration_ms,
        )
        return report

    async def _process(
        self,
        order: Order,
        now: datetime,
        semaphore: asyncio.Semaphore,
    ) -> Optional[CycleResult]:
        async with semaphore:
            pre_claim_status = order.status
            claimed = await self.repository.claim(order.id, pre_claim_status, now)
            if claimed is None:
                logger.debug(f"Order {order.id} already claimed elsewhere, skipping")
                return None

            try:
                return await asyncio.wait_for(
                    self.pipeline.run(claimed, now, pre_claim_status),
                    timeout=self.order_timeout_s,
                )
            except asyncio.TimeoutError:
                # Left executing on purpose: a batch may still land
                logger.error(
                    f"Order {order.id} cycle exceeded {self.order_timeout_s}s; "
                    f"claim will be released after {self.stale_after_s}s"
                )
                return CycleResult(
                    order_id=order.id,
                    outcome=CycleOutcome.SUBMISSION_TIMEOUT,
                    success=False,
                    error=f"Cycle timed out after {self.order_timeout_s}s",
                    error_code="cycle_timeout",
                )

    async def _expire_orders(self, now: datetime) -> List[str]:
        expired: List[str] = []
        for order in await self.repository.get_expired_orders(now):
            try:
                updated = transition(order, OrderStatus.EXPIRED, now)
            except InvalidTransitionError:
                continue
            if await self.repository.save_if_status(updated, order.status):
                expired.append(order.id)
                logger.info(
                    f"Order {order.id} expired after {order.executions_completed}/"
                    f"{order.total_executions} executions"
                )
        return expired

    def _owner_batches(self, orders: List[Order]) -> List[List[Order]]:
        """Due orders grouped so each batch covers at most ``max_concurrency`` owners."""
        by_owner: "OrderedDict[str, List[Order]]" = OrderedDict()
        for order in orders:
            by_owner.setdefault(order.owner_address.lower(), []).append(order)

        owners = list(by_owner.values())
        batches: List[List[Order]] = []
        for i in range(0, len(owners), self.max_concurrency):
            batches.append([order for group in owners[i:i + self.max_concurrency] for order in group])
        return batches
