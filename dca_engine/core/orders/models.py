"""
DCA Order Models

Data models for recurring orders, their execution log, the delegated signing
credential that authorizes them, and the per-cycle swap quote.
"""

from __future__ import annotations

import math
import secrets
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from decimal import ROUND_DOWN, Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# Error codes that hold an active order until the owner acts on it
REVERT_LIMIT_CODE = "revert_limit_reached"
PAUSED_CODE = "paused"
HOLD_ERROR_CODES = frozenset({"credential_expired", "credential_scope", REVERT_LIMIT_CODE, PAUSED_CODE})


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_id(prefix: str) -> str:
    return f"{prefix}_{secrets.token_hex(12)}"


def _to_ms(value: Optional[datetime]) -> Optional[int]:
    if value is None:
        return None
    return int(value.timestamp() * 1000)


def _from_ms(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


class OrderStatus(str, Enum):
    """Recurring order status."""
    ACTIVE = "active"
    EXECUTING = "executing"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


TERMINAL_STATUSES = frozenset({
    OrderStatus.COMPLETED,
    OrderStatus.CANCELLED,
    OrderStatus.EXPIRED,
})


class ExecutionStatus(str, Enum):
    """Individual execution status."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class Frequency(str, Enum):
    """Named execution intervals accepted at order creation."""
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


FREQUENCY_SECONDS: Dict[Frequency, int] = {
    Frequency.HOURLY: 60 * 60,
    Frequency.DAILY: 24 * 60 * 60,
    Frequency.WEEKLY: 7 * 24 * 60 * 60,
    Frequency.MONTHLY: 30 * 24 * 60 * 60,
}


def calculate_total_executions(frequency: Frequency, duration_days: int) -> int:
    """Number of cycles that fit in ``duration_days`` at ``frequency``."""
    if duration_days <= 0:
        raise ValueError("Duration must be at least one day")
    if frequency == Frequency.HOURLY:
        return duration_days * 24
    if frequency == Frequency.DAILY:
        return duration_days
    if frequency == Frequency.WEEKLY:
        return math.ceil(duration_days / 7)
    return math.ceil(duration_days / 30)


@dataclass
class TokenInfo:
    """ERC-20 asset on the execution chain."""
    symbol: str
    address: str
    chain_id: int
    decimals: int

    def to_base_units(self, amount: Decimal) -> int:
        """Convert a human amount to integer base units, rounding down."""
        scaled = (amount * (Decimal(10) ** self.decimals)).quantize(Decimal(1), rounding=ROUND_DOWN)
        return int(scaled)

    def from_base_units(self, raw: int) -> Decimal:
        return Decimal(raw) / (Decimal(10) ** self.decimals)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "address": self.address,
            "chainId": self.chain_id,
            "decimals": self.decimals,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> TokenInfo:
        return cls(
            symbol=data["symbol"],
            address=data["address"],
            chain_id=int(data["chainId"]),
            decimals=int(data["decimals"]),
        )


@dataclass
class CredentialScope:
    """What a delegated credential may do. Empty lists and a None ceiling mean unrestricted."""
    allowed_targets: List[str] = field(default_factory=list)
    allowed_selectors: List[str] = field(default_factory=list)
    value_ceiling: Optional[int] = None  # Max native value per sub-operation, in wei

    def is_target_allowed(self, address: str) -> bool:
        if not self.allowed_targets:
            return True
        return address.lower() in {a.lower() for a in self.allowed_targets}

    def is_selector_allowed(self, selector: str) -> bool:
        if not self.allowed_selectors:
            return True
        return selector.lower() in {s.lower() for s in self.allowed_selectors}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowedTargets": list(self.allowed_targets),
            "allowedSelectors": list(self.allowed_selectors),
            "valueCeiling": str(self.value_ceiling) if self.value_ceiling is not None else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> CredentialScope:
        return cls(
            allowed_targets=list(data.get("allowedTargets", [])),
            allowed_selectors=list(data.get("allowedSelectors", [])),
            value_ceiling=int(data["valueCeiling"]) if data.get("valueCeiling") is not None else None,
        )


@dataclass
class Credential:
    """Delegated, scope-limited signing authority bound to one account."""
    key_id: str
    bound_account_address: str
    scope: CredentialScope
    valid_after: datetime
    valid_until: datetime

    def is_valid_at(self, now: datetime) -> bool:
        return self.valid_after <= now <= self.valid_until

    def to_dict(self) -> Dict[str, Any]:
        return {
            "keyId": self.key_id,
            "boundAccountAddress": self.bound_account_address,
            "scope": self.scope.to_dict(),
            "validAfter": _to_ms(self.valid_after),
            "validUntil": _to_ms(self.valid_until),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Credential:
        return cls(
            key_id=data["keyId"],
            bound_account_address=data["boundAccountAddress"],
            scope=CredentialScope.from_dict(data.get("scope", {})),
            valid_after=_from_ms(data["validAfter"]),
            valid_until=_from_ms(data["validUntil"]),
        )


@dataclass
class PendingSubmission:
    """A submitted batch whose inclusion was not confirmed before the deadline."""
    tx_reference: str
    submitted_at: datetime
    amount_in: Decimal
    amount_out: Decimal
    quote_source: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "txReference": self.tx_reference,
            "submittedAt": _to_ms(self.submitted_at),
            "amountIn": str(self.amount_in),
            "amountOut": str(self.amount_out),
            "quoteSource": self.quote_source,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> PendingSubmission:
        return cls(
            tx_reference=data["txReference"],
            submitted_at=_from_ms(data["submittedAt"]),
            amount_in=Decimal(data["amountIn"]),
            amount_out=Decimal(data["amountOut"]),
            quote_source=data.get("quoteSource"),
        )


@dataclass
class Order:
    """A recurring swap of ``source_asset`` into ``target_asset``."""
    id: str
    owner_address: str
    funding_account_address: str
    source_asset: TokenInfo
    target_asset: TokenInfo
    total_amount: Decimal
    total_executions: int
    interval_seconds: int
    next_execution_at: datetime
    expires_at: datetime
    destination_address: str
    status: OrderStatus = OrderStatus.ACTIVE
    executions_completed: int = 0
    executed_amount: Decimal = Decimal("0")
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    last_executed_at: Optional[datetime] = None
    credential: Optional[Credential] = None
    frequency: Optional[Frequency] = None
    platform_fee_percentage: Decimal = Decimal("0")
    net_investment_amount: Optional[Decimal] = None

    # Pipeline bookkeeping
    claimed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    last_error_code: Optional[str] = None
    consecutive_failures: int = 0
    pending_submission: Optional[PendingSubmission] = None

    # Only set for orders whose lifecycle lives on a third-party order book
    external_order_hash: Optional[str] = None
    external_status: Optional[int] = None

    @property
    def remaining_executions(self) -> int:
        return max(self.total_executions - self.executions_completed, 0)

    @property
    def remaining_amount(self) -> Decimal:
        return max(self.total_amount - self.executed_amount, Decimal("0"))

    @property
    def per_execution_amount(self) -> Decimal:
        """Amount for the next cycle; the last cycle absorbs rounding drift."""
        if self.remaining_executions == 0:
            return Decimal("0")
        return self.remaining_amount / Decimal(self.remaining_executions)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_held(self) -> bool:
        return self.last_error_code in HOLD_ERROR_CODES

    @property
    def is_externally_tracked(self) -> bool:
        return bool(self.external_order_hash)

    @property
    def needs_payout(self) -> bool:
        return self.destination_address.lower() != self.funding_account_address.lower()

    def is_due(self, now: datetime) -> bool:
        return (
            self.status in (OrderStatus.ACTIVE, OrderStatus.INSUFFICIENT_BALANCE)
            and self.next_execution_at <= now
            and self.expires_at > now
            and self.executions_completed < self.total_executions
            and not self.is_externally_tracked
            and not self.is_held
        )

    def holds_claim(self, claimed_at: datetime) -> bool:
        """True while this order is still executing under the claim taken at ``claimed_at``."""
        return self.status == OrderStatus.EXECUTING and _to_ms(self.claimed_at) == _to_ms(claimed_at)

    def copy(self, **changes: Any) -> Order:
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "ownerAddress": self.owner_address,
            "fundingAccountAddress": self.funding_account_address,
            "sourceAsset": self.source_asset.to_dict(),
            "targetAsset": self.target_asset.to_dict(),
            "totalAmount": str(self.total_amount),
            "totalExecutions": self.total_executions,
            "executionsCompleted": self.executions_completed,
            "executedAmount": str(self.executed_amount),
            "intervalSeconds": self.interval_seconds,
            "nextExecutionAt": _to_ms(self.next_execution_at),
            "expiresAt": _to_ms(self.expires_at),
            "destinationAddress": self.destination_address,
            "status": self.status.value,
            "createdAt": _to_ms(self.created_at),
            "updatedAt": _to_ms(self.updated_at),
            "lastExecutedAt": _to_ms(self.last_executed_at),
            "credential": self.credential.to_dict() if self.credential else None,
            "frequency": self.frequency.value if self.frequency else None,
            "platformFeePercentage": str(self.platform_fee_percentage),
            "netInvestmentAmount": str(self.net_investment_amount) if self.net_investment_amount is not None else None,
            "claimedAt": _to_ms(self.claimed_at),
            "lastError": self.last_error,
            "lastErrorCode": self.last_error_code,
            "consecutiveFailures": self.consecutive_failures,
            "pendingSubmission": self.pending_submission.to_dict() if self.pending_submission else None,
            "externalOrderHash": self.external_order_hash,
            "externalStatus": self.external_status,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Order:
        return cls(
            id=data["id"],
            owner_address=data["ownerAddress"],
            funding_account_address=data["fundingAccountAddress"],
            source_asset=TokenInfo.from_dict(data["sourceAsset"]),
            target_asset=TokenInfo.from_dict(data["targetAsset"]),
            total_amount=Decimal(data["totalAmount"]),
            total_executions=int(data["totalExecutions"]),
            executions_completed=int(data.get("executionsCompleted", 0)),
            executed_amount=Decimal(data.get("executedAmount", "0")),
            interval_seconds=int(data["intervalSeconds"]),
            next_execution_at=_from_ms(data["nextExecutionAt"]),
            expires_at=_from_ms(data["expiresAt"]),
            destination_address=data["destinationAddress"],
            status=OrderStatus(data.get("status", "active")),
            created_at=_from_ms(data.get("createdAt")) or utc_now(),
            updated_at=_from_ms(data.get("updatedAt")) or utc_now(),
            last_executed_at=_from_ms(data.get("lastExecutedAt")),
            credential=Credential.from_dict(data["credential"]) if data.get("credential") else None,
            frequency=Frequency(data["frequency"]) if data.get("frequency") else None,
            platform_fee_percentage=Decimal(data.get("platformFeePercentage", "0")),
            net_investment_amount=Decimal(data["netInvestmentAmount"]) if data.get("netInvestmentAmount") else None,
            claimed_at=_from_ms(data.get("claimedAt")),
            last_error=data.get("lastError"),
            last_error_code=data.get("lastErrorCode"),
            consecutive_failures=int(data.get("consecutiveFailures", 0)),
            pending_submission=(
                PendingSubmission.from_dict(data["pendingSubmission"]) if data.get("pendingSubmission") else None
            ),
            external_order_hash=data.get("externalOrderHash"),
            external_status=data.get("externalStatus"),
        )


@dataclass
class Execution:
    """Append-only record of one execution cycle."""
    id: str
    order_id: str
    status: ExecutionStatus
    executed_at: datetime
    amount_in: Decimal = Decimal("0")
    amount_out: Decimal = Decimal("0")
    tx_reference: Optional[str] = None
    gas_used: Optional[int] = None
    gas_price: Optional[int] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    quote_source: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "orderId": self.order_id,
            "status": self.status.value,
            "executedAt": _to_ms(self.executed_at),
            "amountIn": str(self.amount_in),
            "amountOut": str(self.amount_out),
            "txReference": self.tx_reference,
            "gasUsed": self.gas_used,
            "gasPrice": self.gas_price,
            "errorMessage": self.error_message,
            "errorCode": self.error_code,
            "quoteSource": self.quote_source,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Execution:
        return cls(
            id=data["id"],
            order_id=data["orderId"],
            status=ExecutionStatus(data["status"]),
            executed_at=_from_ms(data["executedAt"]),
            amount_in=Decimal(data.get("amountIn", "0")),
            amount_out=Decimal(data.get("amountOut", "0")),
            tx_reference=data.get("txReference"),
            gas_used=data.get("gasUsed"),
            gas_price=data.get("gasPrice"),
            error_message=data.get("errorMessage"),
            error_code=data.get("errorCode"),
            quote_source=data.get("quoteSource"),
        )


@dataclass
class Quote:
    """Executable swap quote from one aggregator. Never persisted."""
    source_asset: str
    target_asset: str
    amount_in: Decimal
    amount_out: Decimal
    target_contract: str
    call_data: str
    value: int = 0
    source: str = ""
    min_amount_out: Optional[Decimal] = None
    price_impact: Optional[Decimal] = None  # Percent

    @property
    def guaranteed_out(self) -> Decimal:
        return self.min_amount_out if self.min_amount_out is not None else self.amount_out


def expiry_for(now: datetime, interval_seconds: int, total_executions: int, duration_days: Optional[int]) -> datetime:
    """Order expiry: the requested duration, or one spare interval past the last cycle."""
    if duration_days:
        return now + timedelta(days=duration_days)
    return now + timedelta(seconds=interval_seconds * (total_executions + 1))
