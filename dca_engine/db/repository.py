"""
Order Repository

Persistence interface for orders and their execution log, plus the
in-memory implementation used by tests and single-process deployments.

All writes that race with a sweep go through compare-and-set on the order
status (``claim``, ``save_if_status`` and a claimed ``record_cycle``) so at
most one worker owns an order at a time.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from ..core.orders.models import Execution, Order, OrderStatus
from ..core.orders.state_machine import can_transition, transition


class OrderRepository(ABC):
    """Orders and Executions keyed by id, with an owner → order ids index."""

    # ---------------------------
    # Orders
    # ---------------------------
    @abstractmethod
    async def create_order(self, order: Order) -> Order:
        ...

    @abstractmethod
    async def get_order(self, order_id: str) -> Optional[Order]:
        ...

    @abstractmethod
    async def save_order(self, order: Order) -> Order:
        """Unconditionally overwrite an order."""

    @abstractmethod
    async def save_if_status(self, order: Order, expected_status: OrderStatus) -> bool:
        """Overwrite only if the stored status still equals ``expected_status``."""

    @abstractmethod
    async def list_orders(self, status: Optional[OrderStatus] = None) -> List[Order]:
        ...

    @abstractmethod
    async def list_orders_by_owner(self, owner_address: str) -> List[Order]:
        ...

    # ---------------------------
    # Executions
    # ---------------------------
    @abstractmethod
    async def record_cycle(
        self,
        execution: Execution,
        order: Order,
        claimed_at: Optional[datetime] = None,
    ) -> bool:
        """
        Append ``execution`` and save ``order`` as one atomic write.

        With ``claimed_at`` the order is only saved while the stored copy is
        still executing under that claim; the execution is appended either
        way. Returns whether the order was saved.
        """

    @abstractmethod
    async def list_executions(self, order_id: str) -> List[Execution]:
        ...

    # ---------------------------
    # Scheduling
    # ---------------------------
    async def get_due_orders(self, now: datetime, limit: Optional[int] = None) -> List[Order]:
        candidates: List[Order] = []
        for status in (OrderStatus.ACTIVE, OrderStatus.INSUFFICIENT_BALANCE):
            candidates.extend(await self.list_orders(status))
        due = [o for o in candidates if o.is_due(now)]
        due.sort(key=lambda o: o.next_execution_at)
        return due[:limit] if limit else due

    async def get_expired_orders(self, now: datetime) -> List[Order]:
        candidates: List[Order] = []
        for status in (OrderStatus.ACTIVE, OrderStatus.INSUFFICIENT_BALANCE):
            candidates.extend(await self.list_orders(status))
        return [o for o in candidates if o.expires_at <= now and not o.is_externally_tracked]

    @abstractmethod
    async def claim(self, order_id: str, expected_status: OrderStatus, now: datetime) -> Optional[Order]:
        """
        Atomically move a due order from ``expected_status`` to executing.

        Returns the claimed order, or None if another worker got there first,
        the order left ``expected_status``, or it is no longer due at ``now``.
        """

    async def release_stale_claims(self, older_than: datetime, now: datetime) -> List[str]:
        """Roll orders stuck in executing since before ``older_than`` back to active."""
        released: List[str] = []
        for order in await self.list_orders(OrderStatus.EXECUTING):
            if order.claimed_at is not None and order.claimed_at > older_than:
                continue
            restored = transition(order, OrderStatus.ACTIVE, now)
            if await self.save_if_status(restored, OrderStatus.EXECUTING):
                released.append(order.id)
        return released

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class InMemoryOrderRepository(OrderRepository):
    """
    Process-local repository.

    Records are stored serialized so callers never share mutable state with
    the store; a single lock makes every compare-and-set atomic.
    """

    def __init__(self) -> None:
        self._orders: Dict[str, dict] = {}
        self._executions: Dict[str, List[dict]] = {}
        self._owner_index: Dict[str, set] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _owner_key(address: str) -> str:
        return address.lower()

    async def create_order(self, order: Order) -> Order:
        async with self._lock:
            if order.id in self._orders:
                raise ValueError(f"Order {order.id} already exists")
            self._orders[order.id] = order.to_dict()
            self._executions[order.id] = []
            self._owner_index.setdefault(self._owner_key(order.owner_address), set()).add(order.id)
        return order

    async def get_order(self, order_id: str) -> Optional[Order]:
        async with self._lock:
            raw = self._orders.get(order_id)
        return Order.from_dict(raw) if raw else None

    async def save_order(self, order: Order) -> Order:
        async with self._lock:
            self._orders[order.id] = order.to_dict()
        return order

    async def save_if_status(self, order: Order, expected_status: OrderStatus) -> bool:
        async with self._lock:
            current = self._orders.get(order.id)
            if current is None or current["status"] != expected_status.value:
                return False
            self._orders[order.id] = order.to_dict()
            return True

    async def claim(self, order_id: str, expected_status: OrderStatus, now: datetime) -> Optional[Order]:
        async with self._lock:
            raw = self._orders.get(order_id)
            if raw is None or raw["status"] != expected_status.value:
                return None
            order = Order.from_dict(raw)
            if not order.is_due(now) or not can_transition(order.status, OrderStatus.EXECUTING):
                return None
            claimed = transition(order, OrderStatus.EXECUTING, now)
            self._orders[order_id] = claimed.to_dict()
        return claimed

    async def list_orders(self, status: Optional[OrderStatus] = None) -> List[Order]:
        async with self._lock:
            raws = list(self._orders.values())
        orders = [Order.from_dict(r) for r in raws]
        if status is not None:
            orders = [o for o in orders if o.status == status]
        return orders

    async def list_orders_by_owner(self, owner_address: str) -> List[Order]:
        async with self._lock:
            ids: Iterable[str] = list(self._owner_index.get(self._owner_key(owner_address), set()))
            raws = [self._orders[i] for i in ids if i in self._orders]
        orders = [Order.from_dict(r) for r in raws]
        orders.sort(key=lambda o: o.created_at, reverse=True)
        return orders

    async def record_cycle(
        self,
        execution: Execution,
        order: Order,
        claimed_at: Optional[datetime] = None,
    ) -> bool:
        async with self._lock:
            self._executions.setdefault(execution.order_id, []).append(execution.to_dict())
            if claimed_at is not None:
                raw = self._orders.get(order.id)
                if raw is None or not Order.from_dict(raw).holds_claim(claimed_at):
                    return False
            self._orders[order.id] = order.to_dict()
        return True

    async def list_executions(self, order_id: str) -> List[Execution]:
        async with self._lock:
            raws = list(self._executions.get(order_id, []))
        return [Execution.from_dict(r) for r in raws]
