from decimal import Decimal

import pytest

from dca_engine.core.execution.balance import BalanceReadError, BalanceVerifier
from dca_engine.core.orders.errors import InsufficientBalanceError

from fakes import FUNDING, USDC, FakeBalanceReader, failing_reader, funded_reader, make_order


@pytest.mark.asyncio
async def test_available_converts_base_units():
    verifier = BalanceVerifier(FakeBalanceReader({FUNDING: 12_500_000}))
    assert await verifier.available(make_order()) == Decimal("12.5")


@pytest.mark.asyncio
async def test_reads_the_funding_account_and_source_asset():
    reader = funded_reader()
    await BalanceVerifier(reader).verify(make_order())
    assert reader.calls == [(USDC.address, FUNDING)]


@pytest.mark.asyncio
async def test_exact_balance_is_enough():
    verifier = BalanceVerifier(funded_reader(Decimal("25")))
    check = await verifier.verify(make_order())

    assert check.ok is True
    assert check.required == Decimal("25")


@pytest.mark.asyncio
async def test_require_raises_on_shortfall():
    verifier = BalanceVerifier(funded_reader(Decimal("24.99")))

    with pytest.raises(InsufficientBalanceError) as exc_info:
        await verifier.require(make_order())

    error = exc_info.value
    assert error.required == Decimal("25")
    assert error.available == Decimal("24.99")
    assert error.retryable is True
    assert error.context.details["token"] == "USDC"


@pytest.mark.asyncio
async def test_rpc_failure_fails_closed():
    verifier = BalanceVerifier(failing_reader())

    with pytest.raises(BalanceReadError) as exc_info:
        await verifier.require(make_order())
    assert exc_info.value.code == "balance_unavailable"
