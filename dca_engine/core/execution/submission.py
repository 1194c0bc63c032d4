"""
Submission & Confirmation

Submits a batch through the Signer bound to the order's credential, waits
for inclusion, and classifies the outcome:

- not confirmed in time, or the network failed → SubmissionTimeoutError
- included but reverted → ChainRevertError
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence

import httpx
import structlog

from ...config import settings
from ..orders.errors import ChainRevertError, SubmissionTimeoutError
from ..orders.models import Credential
from .nonce_manager import NonceManager, get_nonce_manager
from .tx_builder import SubOperation

logger = logging.getLogger(__name__)
_slog = structlog.stdlib.get_logger("dca.submission")


@dataclass
class Receipt:
    """Inclusion result for a submitted batch."""
    tx_reference: str
    success: bool
    gas_used: Optional[int] = None
    gas_price: Optional[int] = None
    block_number: Optional[int] = None
    revert_reason: Optional[str] = None


class SignerRejectedError(Exception):
    """The signer refused the batch because it would revert."""

    def __init__(self, message: str, revert_reason: Optional[str] = None):
        super().__init__(message)
        self.revert_reason = revert_reason


class Signer(Protocol):
    """External capability that signs and broadcasts batches."""

    async def sign_and_submit(self, batch: Sequence[SubOperation], credential: Credential, nonce: int) -> str:
        """Broadcast ``batch`` atomically; return its transaction reference."""
        ...

    async def get_receipt(self, tx_reference: str) -> Optional[Receipt]:
        """Receipt once included, None while pending."""
        ...

    async def get_nonce(self, account: str, chain_id: int) -> int:
        ...


class SubmissionService:
    """Serializes submissions per signing account and waits for receipts."""

    def __init__(
        self,
        signer: Signer,
        nonce_manager: Optional[NonceManager] = None,
        *,
        chain_id: Optional[int] = None,
        timeout_s: Optional[float] = None,
        poll_interval_s: Optional[float] = None,
    ):
        self.signer = signer
        self.nonces = nonce_manager or get_nonce_manager()
        self.chain_id = chain_id or settings.chain_id
        self.timeout_s = timeout_s or settings.submission_timeout_seconds
        self.poll_interval_s = poll_interval_s or settings.submission_poll_interval_seconds

    async def submit(self, batch: List[SubOperation], credential: Credential) -> Receipt:
        """
        Submit ``batch`` and wait for it to land.

        Raises:
            SubmissionTimeoutError: network failure or no receipt in time
            ChainRevertError: included but reverted (nothing landed)
        """
        if not batch:
            raise ValueError("Cannot submit an empty batch")

        account = credential.bound_account_address
        deadline = time.monotonic() + self.timeout_s
        _start = time.perf_counter()

        async with self.nonces.account_lock(account, self.chain_id):
            try:
                nonce = await self.nonces.reserve(account, self.chain_id, self.signer.get_nonce)
            except (httpx.HTTPError, OSError) as exc:
                raise SubmissionTimeoutError(f"Could not read nonce for {account}: {exc}") from exc

            try:
                tx_reference = await asyncio.wait_for(
                    self.signer.sign_and_submit(batch, credential, nonce),
                    timeout=max(deadline - time.monotonic(), 0.01),
                )
            except SignerRejectedError as exc:
                await self.nonces.release(account, self.chain_id, nonce)
                raise ChainRevertError(str(exc), revert_reason=exc.revert_reason) from exc
            except asyncio.TimeoutError as exc:
                await self.nonces.mark_unknown(account, self.chain_id)
                raise SubmissionTimeoutError(f"Signer did not accept batch within {self.timeout_s}s") from exc
            except (httpx.HTTPError, OSError) as exc:
                await self.nonces.mark_unknown(account, self.chain_id)
                raise SubmissionTimeoutError(f"Submission failed: {exc}") from exc

            _slog.info(
                "batch_submitted",
                account=account,
                nonce=nonce,
                tx_reference=tx_reference,
                operations=[op.kind.value for op in batch],
            )

            receipt = await self._wait_for_receipt(tx_reference, deadline)
            if receipt is None:
                await self.nonces.mark_unknown(account, self.chain_id)
                raise SubmissionTimeoutError(
                    f"Batch {tx_reference} not confirmed within {self.timeout_s}s",
                    tx_reference=tx_reference,
                )

            await self.nonces.confirm(account, self.chain_id, nonce)

        duration_ms = round((time.perf_counter() - _start) * 1000, 1)
        if not receipt.success:
            _slog.warning(
                "batch_reverted",
                tx_reference=tx_reference,
                revert_reason=receipt.revert_reason,
                duration_ms=duration_ms,
            )
            raise ChainRevertError(
                f"Batch {tx_reference} reverted" + (f": {receipt.revert_reason}" if receipt.revert_reason else ""),
                tx_reference=tx_reference,
                revert_reason=receipt.revert_reason,
                gas_used=receipt.gas_used,
            )

        _slog.info(
            "batch_confirmed",
            tx_reference=tx_reference,
            block_number=receipt.block_number,
            gas_used=receipt.gas_used,
            duration_ms=duration_ms,
        )
        return receipt

    async def lookup(self, tx_reference: str) -> Optional[Receipt]:
        """Receipt for an earlier submission; None while it is pending or unreachable."""
        try:
            return await self.signer.get_receipt(tx_reference)
        except (httpx.HTTPError, OSError) as exc:
            logger.warning(f"Error checking earlier batch {tx_reference}: {exc}")
            return None

    async def _wait_for_receipt(self, tx_reference: str, deadline: float) -> Optional[Receipt]:
        while True:
            try:
                receipt = await self.signer.get_receipt(tx_reference)
                if receipt is not None:
                    return receipt
            except (httpx.HTTPError, OSError) as exc:
                logger.warning(f"Error checking batch {tx_reference}: {exc}")

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(self.poll_interval_s, remaining))
