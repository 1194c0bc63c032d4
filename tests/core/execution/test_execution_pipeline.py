"""
Tests for the per-order execution pipeline

Each test claims an order, runs one cycle and checks the recorded outcome.
"""

from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from dca_engine.core.execution.pipeline import CycleOutcome, outcome_for
from dca_engine.core.execution.tx_builder import OperationKind
from dca_engine.core.orders.errors import (
    ChainRevertError,
    QuoteUnavailableError,
    RepositoryError,
    SuspiciousQuoteError,
)
from dca_engine.core.orders.models import CredentialScope, ExecutionStatus, OrderStatus

from fakes import (
    BAD_TARGET,
    FUNDING,
    NOW,
    PAYOUT,
    FakeQuoteProvider,
    FakeSigner,
    broken_provider,
    build_pipeline,
    failing_reader,
    funded_reader,
    make_credential,
    make_order,
    swap_call_data,
)


async def _claim(repository, **overrides):
    order = make_order(**overrides)
    await repository.create_order(order)
    pre_claim = order.status
    return await repository.claim(order.id, pre_claim, NOW), pre_claim


class TestSuccessfulCycle:
    @pytest.mark.asyncio
    async def test_scenario_first_of_ten(self, repository):
        signer = FakeSigner()
        pipeline = build_pipeline(
            repository,
            providers=[FakeQuoteProvider("openocean", Decimal("9.98"))],
            signer=signer,
        )
        order, _ = await _claim(repository, total_amount=Decimal("100"), total_executions=10)

        result = await pipeline.run(order, NOW)

        assert result.success is True
        assert result.outcome == CycleOutcome.EXECUTED
        assert result.amount_out == Decimal("9.98")
        stored = await repository.get_order(order.id)
        assert stored.executions_completed == 1
        assert stored.executed_amount == Decimal("10")
        assert stored.status == OrderStatus.ACTIVE
        assert stored.next_execution_at == NOW + timedelta(days=1)

        [execution] = await repository.list_executions(order.id)
        assert execution.status == ExecutionStatus.CONFIRMED
        assert execution.tx_reference == result.tx_reference
        assert execution.quote_source == "openocean"
        assert execution.gas_used == 150_000

    @pytest.mark.asyncio
    async def test_best_quote_wins(self, repository):
        signer = FakeSigner()
        pipeline = build_pipeline(
            repository,
            providers=[
                FakeQuoteProvider("openocean", Decimal("0.010")),
                FakeQuoteProvider("oneinch", Decimal("0.012")),
                FakeQuoteProvider("paraswap", Decimal("0.011")),
            ],
            signer=signer,
        )
        order, _ = await _claim(repository)

        await pipeline.run(order, NOW)

        [execution] = await repository.list_executions(order.id)
        assert execution.quote_source == "oneinch"
        assert execution.amount_out == Decimal("0.012")

    @pytest.mark.asyncio
    async def test_payout_batch_for_other_destination(self, repository):
        signer = FakeSigner()
        pipeline = build_pipeline(repository, signer=signer)
        order, _ = await _claim(repository, destination_address=PAYOUT)

        await pipeline.run(order, NOW)

        batch = signer.submitted[0]["batch"]
        assert [op.kind for op in batch] == [OperationKind.APPROVE, OperationKind.SWAP, OperationKind.TRANSFER]

    @pytest.mark.asyncio
    async def test_final_cycle_completes(self, repository):
        pipeline = build_pipeline(repository)
        order, _ = await _claim(repository, executions_completed=3, executed_amount=Decimal("75"))

        result = await pipeline.run(order, NOW)

        assert result.outcome == CycleOutcome.COMPLETED
        stored = await repository.get_order(order.id)
        assert stored.status == OrderStatus.COMPLETED
        assert stored.executed_amount == Decimal("100")

    @pytest.mark.asyncio
    async def test_unclaimed_order_is_refused(self, repository):
        pipeline = build_pipeline(repository)
        with pytest.raises(ValueError):
            await pipeline.run(make_order(), NOW)


class TestDustCycle:
    @pytest.mark.asyncio
    async def test_below_minimum_is_a_confirmed_no_op(self, repository):
        signer = FakeSigner()
        provider = FakeQuoteProvider("openocean")
        pipeline = build_pipeline(
            repository,
            providers=[provider],
            signer=signer,
            min_execution_amount=Decimal("30"),
        )
        order, _ = await _claim(repository)

        result = await pipeline.run(order, NOW)

        assert result.success is True
        assert result.outcome == CycleOutcome.BELOW_MINIMUM
        assert provider.calls == []
        assert signer.submitted == []

        stored = await repository.get_order(order.id)
        assert stored.executions_completed == 1
        assert stored.executed_amount == Decimal("0")
        assert stored.next_execution_at == NOW + timedelta(seconds=order.interval_seconds)
        [execution] = await repository.list_executions(order.id)
        assert execution.status == ExecutionStatus.CONFIRMED
        assert execution.amount_out == Decimal("0")
        assert execution.error_code == "below_minimum_amount"

    @pytest.mark.asyncio
    async def test_skipped_amount_rolls_forward(self, repository):
        pipeline = build_pipeline(repository, min_execution_amount=Decimal("30"))
        order, _ = await _claim(repository)

        result = await pipeline.run(order, NOW)

        assert result.order.per_execution_amount == Decimal("100") / Decimal(3)


class TestFailedCycles:
    @pytest.mark.asyncio
    async def test_insufficient_balance(self, repository):
        signer = FakeSigner()
        provider = FakeQuoteProvider("openocean")
        pipeline = build_pipeline(
            repository,
            reader=funded_reader(Decimal("10")),
            providers=[provider],
            signer=signer,
        )
        order, _ = await _claim(repository)

        result = await pipeline.run(order, NOW)

        assert result.outcome == CycleOutcome.INSUFFICIENT_BALANCE
        assert provider.calls == []
        assert signer.submitted == []
        stored = await repository.get_order(order.id)
        assert stored.status == OrderStatus.INSUFFICIENT_BALANCE
        assert stored.next_execution_at == order.next_execution_at
        assert stored.executions_completed == 0

    @pytest.mark.asyncio
    async def test_balance_read_failure_restores_previous_status(self, repository):
        pipeline = build_pipeline(repository, reader=failing_reader())
        order, pre_claim = await _claim(repository, status=OrderStatus.INSUFFICIENT_BALANCE)

        result = await pipeline.run(order, NOW, pre_claim)

        assert result.success is False
        assert result.error_code == "balance_unavailable"
        assert (await repository.get_order(order.id)).status == OrderStatus.INSUFFICIENT_BALANCE

    @pytest.mark.asyncio
    async def test_expired_credential_holds_order(self, repository):
        signer = FakeSigner()
        pipeline = build_pipeline(repository, signer=signer)
        order, _ = await _claim(repository, credential=make_credential(valid_for=timedelta(hours=-1)))

        result = await pipeline.run(order, NOW)

        assert result.outcome == CycleOutcome.CREDENTIAL_EXPIRED
        assert signer.submitted == []
        stored = await repository.get_order(order.id)
        assert stored.executions_completed == 0
        assert stored.last_error_code == "credential_expired"
        assert stored.is_held

    @pytest.mark.asyncio
    async def test_credential_scope_violation(self, repository):
        signer = FakeSigner()
        pipeline = build_pipeline(repository, signer=signer)
        scope = CredentialScope(allowed_targets=["0x5555555555555555555555555555555555555555"])
        order, _ = await _claim(repository, credential=make_credential(scope=scope))

        result = await pipeline.run(order, NOW)

        assert result.error_code == "credential_scope"
        assert result.outcome == CycleOutcome.CREDENTIAL_EXPIRED
        assert signer.submitted == []

    @pytest.mark.asyncio
    async def test_no_quotes(self, repository):
        pipeline = build_pipeline(repository, providers=[broken_provider("a"), broken_provider("b")])
        order, _ = await _claim(repository)

        result = await pipeline.run(order, NOW)

        assert result.outcome == CycleOutcome.QUOTE_UNAVAILABLE
        stored = await repository.get_order(order.id)
        assert stored.status == OrderStatus.ACTIVE
        assert stored.next_execution_at == order.next_execution_at

    @pytest.mark.asyncio
    async def test_unlisted_target_is_rejected(self, repository):
        signer = FakeSigner()
        pipeline = build_pipeline(
            repository,
            providers=[FakeQuoteProvider("evil", Decimal("5"), target_contract=BAD_TARGET)],
            signer=signer,
        )
        order, _ = await _claim(repository)

        result = await pipeline.run(order, NOW)

        assert result.outcome == CycleOutcome.UNAUTHORIZED_TARGET
        assert signer.submitted == []
        stored = await repository.get_order(order.id)
        assert stored.executions_completed == 0
        executions = await repository.list_executions(order.id)
        assert all(e.status != ExecutionStatus.CONFIRMED for e in executions)

    @pytest.mark.asyncio
    async def test_order_addresses_in_call_data_are_allowed(self, repository):
        call_data = swap_call_data(FUNDING, PAYOUT)
        pipeline = build_pipeline(repository, providers=[FakeQuoteProvider("openocean", call_data=call_data)])
        order, _ = await _claim(repository, destination_address=PAYOUT)

        result = await pipeline.run(order, NOW)

        assert result.success is True

    @pytest.mark.asyncio
    async def test_chain_revert_keeps_quote_source(self, repository):
        pipeline = build_pipeline(repository, signer=FakeSigner("revert"))
        order, _ = await _claim(repository)

        result = await pipeline.run(order, NOW)

        assert result.outcome == CycleOutcome.CHAIN_REVERT
        assert result.tx_reference is not None
        [execution] = await repository.list_executions(order.id)
        assert execution.quote_source == "openocean"
        assert execution.gas_used == 90_000
        stored = await repository.get_order(order.id)
        assert stored.consecutive_failures == 1
        assert stored.executions_completed == 0

    @pytest.mark.asyncio
    async def test_submission_timeout(self, repository):
        pipeline = build_pipeline(repository, signer=FakeSigner("pending"), submission_timeout_s=0.05)
        order, _ = await _claim(repository)

        result = await pipeline.run(order, NOW)

        assert result.outcome == CycleOutcome.SUBMISSION_TIMEOUT
        assert (await repository.get_order(order.id)).status == OrderStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_unexpected_error_is_recorded(self, repository):
        pipeline = build_pipeline(repository)
        pipeline.aggregator.get_best_quote = AsyncMock(side_effect=KeyError("data"))
        order, pre_claim = await _claim(repository)

        result = await pipeline.run(order, NOW, pre_claim)

        assert result.outcome == CycleOutcome.ERROR
        assert result.error_code == "internal_error"
        assert (await repository.get_order(order.id)).status == OrderStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_repository_error_propagates(self, repository):
        pipeline = build_pipeline(repository)
        order, _ = await _claim(repository)
        repository.record_cycle = AsyncMock(side_effect=RepositoryError("redis down"))

        with pytest.raises(RepositoryError):
            await pipeline.run(order, NOW)

class TestUnconfirmedBatch:
    @pytest.mark.asyncio
    async def test_timeout_keeps_the_batch_reference(self, repository):
        signer = FakeSigner("pending")
        pipeline = build_pipeline(repository, signer=signer, submission_timeout_s=0.05)
        order, _ = await _claim(repository)

        await pipeline.run(order, NOW)

        stored = await repository.get_order(order.id)
        assert stored.pending_submission.tx_reference == signer.submitted[0]["tx"]
        assert stored.pending_submission.amount_in == Decimal("25")
        assert stored.pending_submission.quote_source == "openocean"
        assert stored.executions_completed == 0

    @pytest.mark.asyncio
    async def test_late_landing_is_recorded_without_resubmitting(self, repository):
        signer = FakeSigner("pending")
        provider = FakeQuoteProvider("openocean", Decimal("0.01"))
        pipeline = build_pipeline(repository, providers=[provider], signer=signer, submission_timeout_s=0.05)
        order, _ = await _claim(repository)
        await pipeline.run(order, NOW)
        tx = signer.submitted[0]["tx"]
        signer.land(tx)
        signer.outcome = "success"

        later = NOW + timedelta(minutes=1)
        claimed = await repository.claim(order.id, OrderStatus.ACTIVE, later)
        result = await pipeline.run(claimed, later)

        assert result.outcome == CycleOutcome.EXECUTED
        assert result.tx_reference == tx
        assert len(signer.submitted) == 1
        assert len(provider.calls) == 1
        stored = await repository.get_order(order.id)
        assert stored.executions_completed == 1
        assert stored.executed_amount == Decimal("25")
        assert stored.pending_submission is None
        assert stored.next_execution_at == later + timedelta(days=1)
        executions = await repository.list_executions(order.id)
        assert [e.status for e in executions] == [ExecutionStatus.FAILED, ExecutionStatus.CONFIRMED]
        assert executions[1].amount_out == Decimal("0.01")

    @pytest.mark.asyncio
    async def test_still_unconfirmed_skips_the_cycle(self, repository):
        signer = FakeSigner("pending")
        pipeline = build_pipeline(repository, signer=signer, submission_timeout_s=0.05)
        order, _ = await _claim(repository)
        await pipeline.run(order, NOW)
        signer.outcome = "success"

        later = NOW + timedelta(minutes=1)
        claimed = await repository.claim(order.id, OrderStatus.ACTIVE, later)
        result = await pipeline.run(claimed, later)

        assert result.outcome == CycleOutcome.SUBMISSION_TIMEOUT
        assert len(signer.submitted) == 1
        stored = await repository.get_order(order.id)
        assert stored.status == OrderStatus.ACTIVE
        assert stored.pending_submission.tx_reference == signer.submitted[0]["tx"]

    @pytest.mark.asyncio
    async def test_reverted_batch_is_cleared_then_requoted(self, repository):
        signer = FakeSigner("pending")
        pipeline = build_pipeline(repository, signer=signer, submission_timeout_s=0.05)
        order, _ = await _claim(repository)
        await pipeline.run(order, NOW)
        signer.land(signer.submitted[0]["tx"], success=False)
        signer.outcome = "success"

        later = NOW + timedelta(minutes=1)
        result = await pipeline.run(await repository.claim(order.id, OrderStatus.ACTIVE, later), later)

        assert result.outcome == CycleOutcome.CHAIN_REVERT
        stored = await repository.get_order(order.id)
        assert stored.pending_submission is None
        assert stored.consecutive_failures == 1

        again = NOW + timedelta(minutes=2)
        result = await pipeline.run(await repository.claim(order.id, OrderStatus.ACTIVE, again), again)

        assert result.outcome == CycleOutcome.EXECUTED
        assert len(signer.submitted) == 2



def test_outcome_mapping():
    assert outcome_for(QuoteUnavailableError()) == CycleOutcome.QUOTE_UNAVAILABLE
    assert outcome_for(SuspiciousQuoteError("0x1", "x")) == CycleOutcome.UNAUTHORIZED_TARGET
    assert outcome_for(ChainRevertError()) == CycleOutcome.CHAIN_REVERT
