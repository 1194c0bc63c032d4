"""
Tests for the status reconciler

Externally tracked orders are mirrored from a scripted remote order book.
"""

from decimal import Decimal

import pytest

from dca_engine.core.orders.models import OrderStatus
from dca_engine.core.reconciler import REMOTE_EXPIRED, StatusReconciler, map_remote_status
from dca_engine.providers.openocean_orderbook import RemoteOrder, _parse_order

from fakes import NOW, OWNER, USDC, FakeOrderBook, make_order, unreachable_book


OTHER_OWNER = "0x7777777777777777777777777777777777777777"


def _reconciler(repository, book, **kwargs) -> StatusReconciler:
    options = dict(batch_size=5, batch_delay_s=0, cache_seconds=30)
    options.update(kwargs)
    return StatusReconciler(repository, book, **options)


async def _external(repository, order_hash: str = "0xhash1", **overrides):
    order = make_order(external_order_hash=order_hash, **overrides)
    await repository.create_order(order)
    return order


def _remote(order_hash: str = "0xhash1", status: int = 1, count: int = 0, executed: Decimal = Decimal("0")):
    raw = USDC.to_base_units(executed)
    total = USDC.to_base_units(Decimal("100"))
    return RemoteOrder(order_hash, status, count, raw, total - raw)


class TestStatusMapping:
    @pytest.mark.parametrize(
        "code,expected",
        [
            (1, OrderStatus.ACTIVE),
            (3, OrderStatus.CANCELLED),
            (4, OrderStatus.COMPLETED),
            (5, OrderStatus.ACTIVE),
            (6, OrderStatus.CANCELLED),
            (7, OrderStatus.EXPIRED),
            (99, OrderStatus.ACTIVE),
        ],
    )
    def test_lookup_table(self, code, expected):
        assert map_remote_status(code) == expected


class TestReconcile:
    @pytest.mark.asyncio
    async def test_progress_is_copied_by_diff(self, repository):
        order = await _external(repository)
        book = FakeOrderBook({OWNER: [_remote(count=2, executed=Decimal("50"))]})

        report = await _reconciler(repository, book).reconcile(now=NOW)

        assert report.updated == [order.id]
        stored = await repository.get_order(order.id)
        assert stored.executions_completed == 2
        assert stored.executed_amount == Decimal("50")
        assert stored.external_status == 1
        assert stored.status == OrderStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_unchanged_order_is_not_written(self, repository):
        await _external(repository, external_status=1)
        book = FakeOrderBook({OWNER: [_remote()]})

        report = await _reconciler(repository, book).reconcile(now=NOW)

        assert report.orders_checked == 1
        assert report.updated == []

    @pytest.mark.asyncio
    async def test_progress_never_goes_backwards(self, repository):
        order = await _external(repository, executions_completed=3, executed_amount=Decimal("75"))
        book = FakeOrderBook({OWNER: [_remote(count=1, executed=Decimal("25"))]})

        await _reconciler(repository, book).reconcile(now=NOW)

        stored = await repository.get_order(order.id)
        assert stored.executions_completed == 3
        assert stored.executed_amount == Decimal("75")

    @pytest.mark.asyncio
    async def test_filled_remote_completes(self, repository):
        order = await _external(repository)
        book = FakeOrderBook({OWNER: [_remote(status=4, count=4, executed=Decimal("100"))]})

        await _reconciler(repository, book).reconcile(now=NOW)

        stored = await repository.get_order(order.id)
        assert stored.status == OrderStatus.COMPLETED
        assert stored.executions_completed == stored.total_executions

    @pytest.mark.asyncio
    async def test_full_count_without_filled_status_stays_active(self, repository):
        order = await _external(repository)
        book = FakeOrderBook({OWNER: [_remote(status=5, count=4, executed=Decimal("100"))]})

        await _reconciler(repository, book).reconcile(now=NOW)

        stored = await repository.get_order(order.id)
        assert stored.status == OrderStatus.ACTIVE
        assert stored.executions_completed == stored.total_executions - 1

    @pytest.mark.asyncio
    async def test_absent_remote_order_expires(self, repository):
        order = await _external(repository)
        book = FakeOrderBook({OWNER: [_remote(order_hash="0xsomethingelse")]})

        report = await _reconciler(repository, book).reconcile(now=NOW)

        assert report.expired == [order.id]
        stored = await repository.get_order(order.id)
        assert stored.status == OrderStatus.EXPIRED
        assert stored.external_status == REMOTE_EXPIRED

    @pytest.mark.asyncio
    async def test_remote_cancel(self, repository):
        order = await _external(repository)
        book = FakeOrderBook({OWNER: [_remote(status=3)]})

        await _reconciler(repository, book).reconcile(now=NOW)

        assert (await repository.get_order(order.id)).status == OrderStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_hash_match_is_case_insensitive(self, repository):
        order = await _external(repository, order_hash="0xABCDEF")
        book = FakeOrderBook({OWNER: [_remote(order_hash="0xabcdef", count=1, executed=Decimal("25"))]})

        await _reconciler(repository, book).reconcile(now=NOW)

        assert (await repository.get_order(order.id)).executions_completed == 1

    @pytest.mark.asyncio
    async def test_local_and_terminal_orders_are_ignored(self, repository):
        await repository.create_order(make_order())
        await _external(repository, status=OrderStatus.CANCELLED)
        book = FakeOrderBook()

        report = await _reconciler(repository, book).reconcile(now=NOW)

        assert book.calls == []
        assert report.orders_checked == 0

    @pytest.mark.asyncio
    async def test_owner_failure_is_isolated(self, repository):
        failing = await _external(repository, owner_address=OTHER_OWNER)
        healthy = await _external(repository, order_hash="0xhash2")
        book = FakeOrderBook({
            OTHER_OWNER: unreachable_book(),
            OWNER: [_remote(order_hash="0xhash2", status=3)],
        })

        report = await _reconciler(repository, book).reconcile(now=NOW)

        assert OTHER_OWNER.lower() in report.errors
        assert report.updated == [healthy.id]
        assert (await repository.get_order(failing.id)).status == OrderStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_owner_cache_and_force(self, repository):
        await _external(repository)
        book = FakeOrderBook({OWNER: [_remote()]})
        clock = [100.0]
        reconciler = _reconciler(repository, book, clock=lambda: clock[0])

        await reconciler.reconcile(now=NOW)
        cached = await reconciler.reconcile(now=NOW)
        assert cached.owners_cached == 1
        assert len(book.calls) == 1

        await reconciler.reconcile(force=True, now=NOW)
        assert len(book.calls) == 2

        clock[0] += 31
        await reconciler.reconcile(now=NOW)
        assert len(book.calls) == 3

    @pytest.mark.asyncio
    async def test_report_dict(self, repository):
        await _external(repository)
        book = FakeOrderBook({OWNER: [_remote(count=1, executed=Decimal("25"))]})

        data = (await _reconciler(repository, book).reconcile(now=NOW)).to_dict()

        assert data["ownersChecked"] == 1
        assert data["ordersChecked"] == 1
        assert len(data["updated"]) == 1


class TestParseRemoteOrder:
    def test_amounts_and_status(self):
        parsed = _parse_order({
            "orderHash": "0xabc",
            "statuses": 1,
            "have_filled": 2,
            "makerAmount": "100000000",
            "remainingMakerAmount": "60000000",
        })
        assert parsed == RemoteOrder("0xabc", 1, 2, 40_000_000, 60_000_000)

    def test_missing_hash_is_skipped(self):
        assert _parse_order({"statuses": 1}) is None

    def test_missing_remaining_means_nothing_executed(self):
        parsed = _parse_order({"orderHash": "0xabc", "status": "4", "makingAmount": "5"})
        assert parsed.status == 4
        assert parsed.executed_amount == 0
