"""
HTTP client for the delegated-signing relay.

The relay holds the account-abstraction tooling: it turns a batch plus a
credential key id into a signed user operation and broadcasts it. This
service only ever sees transaction references and receipts.
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Sequence

import httpx

from ..config import settings
from ..core.execution.submission import Receipt, SignerRejectedError
from ..core.execution.tx_builder import SubOperation
from ..core.orders.models import Credential
from .base import parse_int


class RelaySigner:
    """Signer capability backed by ``settings.signer_relay_url``."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        api_key: Optional[str] = None,
        timeout_s: float = 30.0,
    ) -> None:
        self.base_url = (base_url or settings.signer_relay_url).rstrip("/")
        if not self.base_url:
            raise ValueError("SIGNER_RELAY_URL is not configured")
        self.api_key = api_key or settings.signer_relay_api_key
        self.timeout_s = timeout_s

    def _headers(self) -> Dict[str, str]:
        headers = {"accept": "application/json", "content-type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout_s) as client:
            response = await client.request(method, path, headers=self._headers(), **kwargs)
            response.raise_for_status()
            return response

    async def sign_and_submit(self, batch: Sequence[SubOperation], credential: Credential, nonce: int) -> str:
        body = {
            "account": credential.bound_account_address,
            "credentialKeyId": credential.key_id,
            "chainId": settings.chain_id,
            "nonce": nonce,
            "calls": [op.to_dict() for op in batch],
        }
        try:
            resp = await self._request("POST", "/batches", json=body)
        except httpx.HTTPStatusError as exc:
            # 422 means the relay simulated the batch and it would revert
            if exc.response.status_code == 422:
                detail = exc.response.json() if exc.response.content else {}
                raise SignerRejectedError(
                    "Relay rejected batch in simulation",
                    revert_reason=detail.get("revertReason"),
                ) from exc
            raise
        return resp.json()["txReference"]

    async def get_receipt(self, tx_reference: str) -> Optional[Receipt]:
        resp = await self._request("GET", f"/batches/{tx_reference}")
        data = resp.json()
        status = data.get("status")
        if status in (None, "pending", "submitted"):
            return None
        return Receipt(
            tx_reference=data.get("transactionHash") or tx_reference,
            success=status == "success",
            gas_used=parse_int(data.get("gasUsed")) if data.get("gasUsed") is not None else None,
            gas_price=parse_int(data.get("gasPrice")) if data.get("gasPrice") is not None else None,
            block_number=parse_int(data.get("blockNumber")) if data.get("blockNumber") is not None else None,
            revert_reason=data.get("revertReason"),
        )

    async def get_nonce(self, account: str, chain_id: int) -> int:
        resp = await self._request("GET", f"/accounts/{account}/nonce", params={"chainId": chain_id})
        return parse_int(resp.json().get("nonce"))
