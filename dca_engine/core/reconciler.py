"""
Status Reconciler

Mirrors orders whose lifecycle lives on a third-party order book
(``external_order_hash`` set) into the local repository. It only copies
what the remote book reports: status through a fixed lookup table, and
progress by diff. Terminal local orders are left alone.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import structlog

from ..config import settings
from ..db.repository import OrderRepository
from ..providers.openocean_orderbook import OrderBookError, RemoteOrder, RemoteOrderBook
from .orders.models import Order, OrderStatus, utc_now
from .orders.state_machine import can_transition, transition

logger = logging.getLogger(__name__)
_slog = structlog.stdlib.get_logger("dca.reconciler")

REMOTE_STATUS_MAP: Dict[int, OrderStatus] = {
    1: OrderStatus.ACTIVE,      # unfilled
    3: OrderStatus.CANCELLED,
    4: OrderStatus.COMPLETED,   # filled
    5: OrderStatus.ACTIVE,      # pending
    6: OrderStatus.CANCELLED,   # hash does not exist
    7: OrderStatus.EXPIRED,
}
REMOTE_EXPIRED = 7


def map_remote_status(code: int) -> OrderStatus:
    return REMOTE_STATUS_MAP.get(code, OrderStatus.ACTIVE)


@dataclass
class ReconcileReport:
    """What one reconcile pass changed."""
    owners_checked: int = 0
    owners_cached: int = 0
    orders_checked: int = 0
    updated: List[str] = field(default_factory=list)
    expired: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ownersChecked": self.owners_checked,
            "ownersCached": self.owners_cached,
            "ordersChecked": self.orders_checked,
            "updated": list(self.updated),
            "expired": list(self.expired),
            "errors": dict(self.errors),
            "durationMs": self.duration_ms,
        }


class StatusReconciler:
    """Pulls remote order state per owner and diff-updates local orders."""

    def __init__(
        self,
        repository: OrderRepository,
        order_book: RemoteOrderBook,
        *,
        batch_size: Optional[int] = None,
        batch_delay_s: Optional[float] = None,
        cache_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.repository = repository
        self.order_book = order_book
        self.batch_size = batch_size or settings.reconcile_batch_size
        self.batch_delay_s = batch_delay_s if batch_delay_s is not None else settings.reconcile_batch_delay_seconds
        self.cache_seconds = cache_seconds if cache_seconds is not None else settings.reconcile_cache_seconds
        self._clock = clock
        self._last_synced: Dict[str, float] = {}

    async def reconcile(self, force: bool = False, now: Optional[datetime] = None) -> ReconcileReport:
        now = now or utc_now()
        _start = time.perf_counter()
        report = ReconcileReport()

        by_owner: "OrderedDict[str, List[Order]]" = OrderedDict()
        for order in await self.repository.list_orders():
            if order.is_externally_tracked and not order.is_terminal:
                by_owner.setdefault(order.owner_address.lower(), []).append(order)

        owners = []
        for owner in by_owner:
            if not force and self._is_fresh(owner):
                report.owners_cached += 1
                continue
            owners.append(owner)

        for index in range(0, len(owners), self.batch_size):
            if index > 0 and self.batch_delay_s > 0:
                await asyncio.sleep(self.batch_delay_s)
            batch = owners[index:index + self.batch_size]
            await asyncio.gather(*(self._sync_owner(owner, by_owner[owner], now, report) for owner in batch))

        report.duration_ms = round((time.perf_counter() - _start) * 1000, 1)
        _slog.info(
            "reconcile_completed",
            owners_checked=report.owners_checked,
            owners_cached=report.owners_cached,
            orders_checked=report.orders_checked,
            updated=len(report.updated),
            expired=len(report.expired),
            errors=len(report.errors),
            duration_ms=report.duration_ms,
        )
        return report

    def _is_fresh(self, owner: str) -> bool:
        last = self._last_synced.get(owner)
        return last is not None and self._clock() - last < self.cache_seconds

    async def _sync_owner(
        self,
        owner: str,
        orders: List[Order],
        now: datetime,
        report: ReconcileReport,
    ) -> None:
        try:
            remote_orders = await self.order_book.fetch_orders(owner)
        except OrderBookError as exc:
            logger.warning(f"Reconcile skipped owner {owner}: {exc}")
            report.errors[owner] = str(exc)
            return

        report.owners_checked += 1
        remote_by_hash = {r.order_hash.lower(): r for r in remote_orders}
        for order in orders:
            report.orders_checked += 1
            remote = remote_by_hash.get(order.external_order_hash.lower())
            updated = self._apply(order, remote, now)
            if updated is None:
                continue
            if not await self.repository.save_if_status(updated, order.status):
                logger.info(f"Order {order.id} changed during reconcile, will retry next pass")
                continue
            report.updated.append(order.id)
            if updated.status == OrderStatus.EXPIRED:
                report.expired.append(order.id)
            logger.info(
                f"Reconciled order {order.id}: {order.status.value} -> {updated.status.value}, "
                f"executions {order.executions_completed} -> {updated.executions_completed}"
            )
        self._last_synced[owner] = self._clock()

    def _apply(self, order: Order, remote: Optional[RemoteOrder], now: datetime) -> Optional[Order]:
        """The updated order, or None when nothing changed."""
        target = map_remote_status(remote.status) if remote is not None else OrderStatus.EXPIRED
        if not can_transition(order.status, target):
            logger.warning(
                f"Order {order.id}: remote status maps to {target.value}, "
                f"not reachable from {order.status.value}"
            )
            target = order.status

        if remote is None:
            changes: Dict[str, Any] = {"external_status": REMOTE_EXPIRED}
        else:
            executed = max(order.executed_amount, order.source_asset.from_base_units(remote.executed_amount))
            executions = min(max(order.executions_completed, remote.execution_count), order.total_executions)
            if target == OrderStatus.COMPLETED:
                executions = order.total_executions
            elif executions == order.total_executions:
                # Completed is only ever reported by the book itself
                executions = order.total_executions - 1
            changes = {"external_status": remote.status}
            if executed != order.executed_amount:
                changes["executed_amount"] = executed
            if executions > order.executions_completed:
                changes["executions_completed"] = executions

        diff = {k: v for k, v in changes.items() if getattr(order, k) != v}
        if not diff and target == order.status:
            return None
        return transition(order.copy(**diff), target, now)
