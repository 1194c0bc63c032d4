"""
Sub-operation builder for atomic execution batches.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict


ERC20_APPROVE_SELECTOR = "0x095ea7b3"  # approve(address,uint256)
ERC20_TRANSFER_SELECTOR = "0xa9059cbb"  # transfer(address,uint256)

MAX_UINT256 = 2**256 - 1


def _encode_uint256(value: int) -> str:
    """Encode a uint256 as a 32-byte hex string (without 0x prefix)."""
    if value < 0 or value > MAX_UINT256:
        raise ValueError(f"uint256 out of range: {value}")
    return format(value, "064x")


def _encode_address(address: str) -> str:
    """Encode an address as a 32-byte hex string (without 0x prefix)."""
    addr = address.lower().replace("0x", "")
    return addr.zfill(64)


class OperationKind(str, Enum):
    APPROVE = "approve"
    SWAP = "swap"
    TRANSFER = "transfer"


@dataclass(frozen=True)
class SubOperation:
    """One call inside a batch submitted as a single atomic unit."""
    kind: OperationKind
    to: str
    data: str
    value: int = 0
    description: str = ""

    @property
    def selector(self) -> str:
        return self.data[:10].lower() if len(self.data) >= 10 else ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "to": self.to,
            "data": self.data,
            "value": str(self.value),
            "description": self.description,
        }


class BatchBuilder:
    """Encodes the ERC-20 and raw calls that make up a batch."""

    @staticmethod
    def approve(token_address: str, spender_address: str, amount: int) -> SubOperation:
        """Approve ``spender`` for exactly ``amount`` base units (never unlimited)."""
        if amount >= MAX_UINT256:
            raise ValueError("Unlimited approvals are not allowed")
        calldata = (
            ERC20_APPROVE_SELECTOR +
            _encode_address(spender_address) +
            _encode_uint256(amount)
        )
        return SubOperation(
            kind=OperationKind.APPROVE,
            to=token_address.lower(),
            data=calldata,
            description=f"Approve {spender_address[:10]}... for {amount}",
        )

    @staticmethod
    def transfer(token_address: str, to_address: str, amount: int) -> SubOperation:
        calldata = (
            ERC20_TRANSFER_SELECTOR +
            _encode_address(to_address) +
            _encode_uint256(amount)
        )
        return SubOperation(
            kind=OperationKind.TRANSFER,
            to=token_address.lower(),
            data=calldata,
            description=f"Transfer {amount} to {to_address[:10]}...",
        )

    @staticmethod
    def raw_call(to_address: str, data: str, value: int = 0, description: str = "") -> SubOperation:
        if not data.startswith("0x"):
            data = "0x" + data
        return SubOperation(
            kind=OperationKind.SWAP,
            to=to_address.lower(),
            data=data,
            value=value,
            description=description or f"Call {to_address[:10]}...",
        )
