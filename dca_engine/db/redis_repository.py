"""
Redis-backed order repository.

Key layout:
    dca:order:{id}               JSON order document
    dca:order:{id}:executions    list of JSON execution documents (append-only)
    dca:user:{owner}:orders      set of order ids for an owner
    dca:all_orders               set of every order id

Compare-and-set writes use WATCH/MULTI so two sweeps on different hosts can
never both claim the same order.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Callable, List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from ..core.orders.errors import RepositoryError
from ..core.orders.models import Execution, Order, OrderStatus
from ..core.orders.state_machine import can_transition, transition
from .repository import OrderRepository

logger = logging.getLogger(__name__)

ALL_ORDERS_KEY = "dca:all_orders"
_CAS_ATTEMPTS = 3


def _order_key(order_id: str) -> str:
    return f"dca:order:{order_id}"


def _executions_key(order_id: str) -> str:
    return f"dca:order:{order_id}:executions"


def _user_key(owner_address: str) -> str:
    return f"dca:user:{owner_address.lower()}:orders"


class RedisOrderRepository(OrderRepository):
    """Order repository persisted in Redis."""

    def __init__(self, redis_url: Optional[str] = None, client: Optional[redis.Redis] = None) -> None:
        if client is not None:
            self._client = client
        elif redis_url:
            self._client = redis.from_url(redis_url, encoding="utf-8", decode_responses=True)
        else:
            raise ValueError("RedisOrderRepository needs a redis_url or a client")

    async def _load_many(self, ids: List[str]) -> List[Order]:
        if not ids:
            return []
        raws = await self._client.mget([_order_key(i) for i in ids])
        return [Order.from_dict(json.loads(r)) for r in raws if r]

    async def create_order(self, order: Order) -> Order:
        try:
            created = await self._client.set(_order_key(order.id), json.dumps(order.to_dict()), nx=True)
            if not created:
                raise ValueError(f"Order {order.id} already exists")
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.sadd(_user_key(order.owner_address), order.id)
                pipe.sadd(ALL_ORDERS_KEY, order.id)
                await pipe.execute()
        except RedisError as exc:
            raise RepositoryError(f"Failed to create order {order.id}: {exc}") from exc
        return order

    async def get_order(self, order_id: str) -> Optional[Order]:
        try:
            raw = await self._client.get(_order_key(order_id))
        except RedisError as exc:
            raise RepositoryError(f"Failed to read order {order_id}: {exc}") from exc
        return Order.from_dict(json.loads(raw)) if raw else None

    async def save_order(self, order: Order) -> Order:
        try:
            await self._client.set(_order_key(order.id), json.dumps(order.to_dict()))
        except RedisError as exc:
            raise RepositoryError(f"Failed to save order {order.id}: {exc}") from exc
        return order

    async def _compare_and_set(self, order_id: str, update: Callable[[Order], Optional[Order]]) -> Optional[Order]:
        """
        Read, decide and write one order under WATCH.

        ``update`` gets the stored order and returns the replacement, or None
        to leave it alone.
        """
        key = _order_key(order_id)
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                for _ in range(_CAS_ATTEMPTS):
                    try:
                        await pipe.watch(key)
                        raw = await pipe.get(key)
                        updated = update(Order.from_dict(json.loads(raw))) if raw else None
                        if updated is None:
                            await pipe.unwatch()
                            return None
                        pipe.multi()
                        pipe.set(key, json.dumps(updated.to_dict()))
                        await pipe.execute()
                        return updated
                    except WatchError:
                        # Someone else wrote the key; re-read and decide again
                        logger.debug(f"CAS conflict on {key}, retrying")
                        continue
        except RedisError as exc:
            raise RepositoryError(f"Failed to update order {order_id}: {exc}") from exc
        return None

    async def save_if_status(self, order: Order, expected_status: OrderStatus) -> bool:
        def update(current: Order) -> Optional[Order]:
            return order if current.status == expected_status else None

        return await self._compare_and_set(order.id, update) is not None

    async def claim(self, order_id: str, expected_status: OrderStatus, now: datetime) -> Optional[Order]:
        def update(current: Order) -> Optional[Order]:
            if current.status != expected_status or not current.is_due(now):
                return None
            if not can_transition(current.status, OrderStatus.EXECUTING):
                return None
            return transition(current, OrderStatus.EXECUTING, now)

        return await self._compare_and_set(order_id, update)

    async def list_orders(self, status: Optional[OrderStatus] = None) -> List[Order]:
        try:
            ids = sorted(await self._client.smembers(ALL_ORDERS_KEY))
            orders = await self._load_many(ids)
        except RedisError as exc:
            raise RepositoryError(f"Failed to list orders: {exc}") from exc
        if status is not None:
            orders = [o for o in orders if o.status == status]
        return orders

    async def list_orders_by_owner(self, owner_address: str) -> List[Order]:
        try:
            ids = sorted(await self._client.smembers(_user_key(owner_address)))
            orders = await self._load_many(ids)
        except RedisError as exc:
            raise RepositoryError(f"Failed to list orders for {owner_address}: {exc}") from exc
        orders.sort(key=lambda o: o.created_at, reverse=True)
        return orders

    async def record_cycle(
        self,
        execution: Execution,
        order: Order,
        claimed_at: Optional[datetime] = None,
    ) -> bool:
        key = _order_key(order.id)
        row = json.dumps(execution.to_dict())
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                if claimed_at is None:
                    pipe.rpush(_executions_key(execution.order_id), row)
                    pipe.set(key, json.dumps(order.to_dict()))
                    await pipe.execute()
                    return True

                for _ in range(_CAS_ATTEMPTS):
                    try:
                        await pipe.watch(key)
                        raw = await pipe.get(key)
                        owned = raw is not None and Order.from_dict(json.loads(raw)).holds_claim(claimed_at)
                        pipe.multi()
                        pipe.rpush(_executions_key(execution.order_id), row)
                        if owned:
                            pipe.set(key, json.dumps(order.to_dict()))
                        await pipe.execute()
                        return owned
                    except WatchError:
                        logger.debug(f"CAS conflict recording {execution.id} on {key}, retrying")
                        continue
        except RedisError as exc:
            raise RepositoryError(f"Failed to record execution for {order.id}: {exc}") from exc
        raise RepositoryError(f"Could not record execution {execution.id}: {key} kept changing")

    async def list_executions(self, order_id: str) -> List[Execution]:
        try:
            raws = await self._client.lrange(_executions_key(order_id), 0, -1)
        except RedisError as exc:
            raise RepositoryError(f"Failed to read executions for {order_id}: {exc}") from exc
        return [Execution.from_dict(json.loads(r)) for r in raws]

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except RedisError as exc:
            logger.warning(f"Redis ping failed: {exc}")
            return False

    async def close(self) -> None:
        await self._client.aclose()
