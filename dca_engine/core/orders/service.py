"""
Order Service

High-level operations behind the order API: creation with the frequency,
fee and validation rules, owner-scoped pause/resume/re-authorization, and
cancellation with an optional sweep of unspent funds.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from eth_utils import is_address, to_checksum_address

from ...config import settings
from ...db.repository import OrderRepository
from ..execution.credentials import CredentialValidator
from .errors import DCAEngineError, OrderNotFoundError, RepositoryError
from .models import (
    FREQUENCY_SECONDS,
    PAUSED_CODE,
    TERMINAL_STATUSES,
    Credential,
    Execution,
    Frequency,
    Order,
    OrderStatus,
    TokenInfo,
    calculate_total_executions,
    expiry_for,
    generate_id,
    utc_now,
)
from .state_machine import transition

logger = logging.getLogger(__name__)

CREDENTIAL_HOLD_CODES = frozenset({"credential_expired", "credential_scope"})


def normalize_address(value: Optional[str], field_name: str) -> str:
    """Checksummed form of ``value`` or ValueError."""
    if not value or not is_address(value):
        raise ValueError(f"{field_name} is not a valid address: {value!r}")
    return to_checksum_address(value)


@dataclass
class CancelResult:
    """Outcome of a cancellation request."""
    order: Order
    funds_swept: bool = False
    sweep_tx_hash: Optional[str] = None
    sweep_amount: Optional[Decimal] = None
    sweep_error: Optional[str] = None


class OrderService:
    """
    Service for managing recurring orders.

    Provides high-level operations for:
    - Creating orders from a frequency and a count or duration
    - Pausing, resuming and re-authorizing
    - Cancelling, optionally sweeping unspent funds back to the owner
    - Viewing orders and their execution log
    """

    def __init__(
        self,
        repository: OrderRepository,
        *,
        orchestrator: Any = None,
        submission: Any = None,
        balance: Any = None,
    ):
        """
        Initialize the order service.

        Args:
            repository: Order storage
            orchestrator: ExecutionOrchestrator, used to build sweep batches
            submission: SubmissionService, used to send sweep batches
            balance: BalanceVerifier, used to size the sweep
        """
        self._repo = repository
        self._orchestrator = orchestrator
        self._submission = submission
        self._balance = balance
        self._credentials = CredentialValidator()

    # =========================================================================
    # Creation
    # =========================================================================

    async def create_order(
        self,
        owner_address: str,
        funding_account_address: str,
        source_asset: TokenInfo,
        target_asset: TokenInfo,
        total_amount: Decimal,
        credential: Credential,
        *,
        destination_address: Optional[str] = None,
        frequency: Optional[Frequency] = None,
        interval_seconds: Optional[int] = None,
        total_executions: Optional[int] = None,
        duration_days: Optional[int] = None,
        platform_fee_percentage: Optional[Decimal] = None,
        external_order_hash: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Order:
        """
        Create a new order in ``active`` status.

        Raises:
            ValueError: If any input is invalid
        """
        now = now or utc_now()

        owner = normalize_address(owner_address, "ownerAddress")
        funding = normalize_address(funding_account_address, "fundingAccountAddress")
        destination = normalize_address(destination_address or funding, "destinationAddress")
        source = TokenInfo(
            symbol=source_asset.symbol,
            address=normalize_address(source_asset.address, "sourceAsset.address"),
            chain_id=source_asset.chain_id,
            decimals=source_asset.decimals,
        )
        target = TokenInfo(
            symbol=target_asset.symbol,
            address=normalize_address(target_asset.address, "targetAsset.address"),
            chain_id=target_asset.chain_id,
            decimals=target_asset.decimals,
        )
        if source.address == target.address:
            raise ValueError("Source and target assets must differ")
        if source.chain_id != target.chain_id:
            raise ValueError("Source and target assets must be on the same chain")

        if total_amount <= 0:
            raise ValueError("Total amount must be positive")

        if interval_seconds is None:
            if frequency is None:
                raise ValueError("Either frequency or intervalSeconds is required")
            interval_seconds = FREQUENCY_SECONDS[frequency]
        if interval_seconds <= 0:
            raise ValueError("Interval must be positive")

        if total_executions is None:
            if not duration_days or frequency is None:
                raise ValueError("Either totalExecutions, or frequency with durationDays, is required")
            total_executions = calculate_total_executions(frequency, duration_days)
        if total_executions < 1:
            raise ValueError("Total executions must be at least 1")

        if credential.valid_until <= credential.valid_after:
            raise ValueError("Credential validity window is empty")
        credential = Credential(
            key_id=credential.key_id,
            bound_account_address=normalize_address(credential.bound_account_address, "credential.boundAccountAddress"),
            scope=credential.scope,
            valid_after=credential.valid_after,
            valid_until=credential.valid_until,
        )
        if credential.bound_account_address != funding:
            raise ValueError("Credential must be bound to the funding account")

        fee_pct = platform_fee_percentage if platform_fee_percentage is not None else settings.platform_fee_percentage
        fee_pct = Decimal(str(fee_pct))
        if fee_pct < 0 or fee_pct >= 100:
            raise ValueError("Platform fee must be between 0 and 100 percent")
        fee = total_amount * fee_pct / Decimal(100)
        net_amount = total_amount - fee

        order = Order(
            id=generate_id("dca"),
            owner_address=owner,
            funding_account_address=funding,
            source_asset=source,
            target_asset=target,
            total_amount=net_amount,
            total_executions=total_executions,
            interval_seconds=interval_seconds,
            next_execution_at=now + timedelta(seconds=settings.first_execution_delay_seconds),
            expires_at=expiry_for(now, interval_seconds, total_executions, duration_days),
            destination_address=destination,
            created_at=now,
            updated_at=now,
            credential=credential,
            frequency=frequency,
            platform_fee_percentage=fee_pct,
            net_investment_amount=net_amount,
            external_order_hash=external_order_hash,
        )
        await self._repo.create_order(order)

        logger.info(
            f"Created order {order.id}: {net_amount} {source.symbol} -> {target.symbol} "
            f"in {total_executions} executions every {interval_seconds}s (fee {fee})"
        )
        return order

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_order(self, order_id: str) -> Order:
        order = await self._repo.get_order(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    async def list_user_orders(self, owner_address: str, status: Optional[OrderStatus] = None) -> List[Order]:
        orders = await self._repo.list_orders_by_owner(owner_address)
        if status is not None:
            orders = [o for o in orders if o.status == status]
        return orders

    async def list_executions(self, order_id: str) -> List[Execution]:
        await self.get_order(order_id)
        executions = await self._repo.list_executions(order_id)
        executions.sort(key=lambda e: e.executed_at, reverse=True)
        return executions

    # =========================================================================
    # Owner actions
    # =========================================================================

    async def _get_owned(self, order_id: str, owner_address: str) -> Order:
        order = await self.get_order(order_id)
        if not owner_address or order.owner_address.lower() != owner_address.lower():
            raise PermissionError(f"Address {owner_address} does not own order {order_id}")
        return order

    async def _save_same_status(self, updated: Order, expected: OrderStatus) -> Order:
        if not await self._repo.save_if_status(updated, expected):
            raise ValueError(f"Order {updated.id} changed concurrently, try again")
        return updated

    async def pause_order(self, order_id: str, owner_address: str, now: Optional[datetime] = None) -> Order:
        """Hold the order out of scheduling until resumed."""
        now = now or utc_now()
        order = await self._get_owned(order_id, owner_address)
        if order.status not in (OrderStatus.ACTIVE, OrderStatus.INSUFFICIENT_BALANCE):
            raise ValueError(f"Cannot pause an order that is {order.status.value}")
        if order.last_error_code == PAUSED_CODE:
            return order

        updated = order.copy(last_error="Paused by owner", last_error_code=PAUSED_CODE, updated_at=now)
        await self._save_same_status(updated, order.status)
        logger.info(f"Paused order {order.id}")
        return updated

    async def resume_order(self, order_id: str, owner_address: str, now: Optional[datetime] = None) -> Order:
        """Clear any hold and return an insufficient-balance order to active."""
        now = now or utc_now()
        order = await self._get_owned(order_id, owner_address)
        if order.status not in (OrderStatus.ACTIVE, OrderStatus.INSUFFICIENT_BALANCE):
            raise ValueError(f"Cannot resume an order that is {order.status.value}")
        if not order.is_held and order.status == OrderStatus.ACTIVE:
            raise ValueError("Order is not paused or held")
        if order.last_error_code in CREDENTIAL_HOLD_CODES and order.credential and not order.credential.is_valid_at(now):
            raise ValueError("Credential has expired; re-authorize before resuming")

        cleared = order.copy(last_error=None, last_error_code=None, consecutive_failures=0)
        updated = transition(cleared, OrderStatus.ACTIVE, now)
        await self._save_same_status(updated, order.status)
        logger.info(f"Resumed order {order.id}")
        return updated

    async def update_credential(
        self,
        order_id: str,
        owner_address: str,
        credential: Credential,
        now: Optional[datetime] = None,
    ) -> Order:
        """Owner re-authorization: replace the credential and lift a credential hold."""
        now = now or utc_now()
        order = await self._get_owned(order_id, owner_address)
        if order.status in TERMINAL_STATUSES or order.status == OrderStatus.EXECUTING:
            raise ValueError(f"Cannot re-authorize an order that is {order.status.value}")
        if credential.valid_until <= credential.valid_after:
            raise ValueError("Credential validity window is empty")
        bound = normalize_address(credential.bound_account_address, "credential.boundAccountAddress")
        if bound.lower() != order.funding_account_address.lower():
            raise ValueError("Credential must be bound to the funding account")

        changes: Dict[str, Any] = {"credential": credential, "updated_at": now}
        if order.last_error_code in CREDENTIAL_HOLD_CODES:
            changes.update(last_error=None, last_error_code=None)
        updated = order.copy(**changes)
        await self._save_same_status(updated, order.status)
        logger.info(f"Order {order.id}: credential replaced with {credential.key_id}")
        return updated

    async def cancel_order(
        self,
        order_id: str,
        owner_address: str,
        sweep_remaining_funds: bool = False,
        now: Optional[datetime] = None,
    ) -> CancelResult:
        """
        Cancel an order, optionally sweeping its unspent budget to the owner.

        The sweep runs after the cancellation is stored; its failure is
        reported but never undoes the cancellation.

        Raises:
            OrderNotFoundError: unknown order
            PermissionError: caller is not the owner
            ValueError: order is terminal or mid-cycle
        """
        now = now or utc_now()
        order = await self._get_owned(order_id, owner_address)
        if order.status in TERMINAL_STATUSES:
            raise ValueError(f"Order is already {order.status.value}")
        if order.status == OrderStatus.EXECUTING:
            raise ValueError("Order is executing a cycle, try again shortly")

        cancelled = transition(order, OrderStatus.CANCELLED, now)
        await self._save_same_status(cancelled, order.status)
        logger.info(f"Cancelled order {order.id} at {order.executions_completed}/{order.total_executions}")

        result = CancelResult(order=cancelled)
        if sweep_remaining_funds and not order.is_externally_tracked:
            await self._sweep(cancelled, result, now)
        return result

    async def _sweep(self, order: Order, result: CancelResult, now: datetime) -> None:
        if not (self._orchestrator and self._submission and self._balance):
            result.sweep_error = "Sweep is not configured"
            return
        try:
            if order.credential is None or not order.credential.is_valid_at(now):
                raise ValueError("Credential is not valid; cannot sign the sweep")
            available = await self._balance.available(order)
            amount = min(available, order.remaining_amount)
            batch = self._orchestrator.build_sweep_batch(order, amount)
            if not batch:
                result.sweep_amount = Decimal("0")
                return
            self._credentials.check_batch(order.credential, batch)
            receipt = await self._submission.submit(batch, order.credential)
        except RepositoryError:
            raise
        except (DCAEngineError, ValueError) as exc:
            message = getattr(exc, "message", None) or str(exc)
            logger.warning(f"Sweep for cancelled order {order.id} failed: {message}")
            result.sweep_error = message
            return

        result.funds_swept = True
        result.sweep_tx_hash = receipt.tx_reference
        result.sweep_amount = amount
        logger.info(f"Swept {amount} {order.source_asset.symbol} from order {order.id} ({receipt.tx_reference})")
