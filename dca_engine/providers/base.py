"""Base interface for external swap-quote sources."""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import httpx

from ..config import settings
from ..core.orders.models import Quote, TokenInfo


class QuoteProviderError(Exception):
    """A quote source answered with an error or an unusable payload."""


class QuoteProvider(ABC):
    """Capability: produce an executable swap quote for one account."""

    name: str
    timeout_s: float = 8.0

    @abstractmethod
    async def quote(
        self,
        source_asset: TokenInfo,
        target_asset: TokenInfo,
        amount_in: Decimal,
        account: str,
    ) -> Quote:
        """Return an executable quote or raise QuoteProviderError."""

    async def health_check(self) -> Dict[str, Any]:
        return {"status": "unknown", "provider": self.name}


class HttpQuoteProvider(QuoteProvider):
    """Shared request plumbing with base-URL fallback."""

    default_base_urls: List[str] = []
    base_url_setting: str = ""
    base_url_env: str = ""

    def __init__(self, *, base_url: Optional[str] = None, timeout_s: Optional[float] = None) -> None:
        configured = (
            base_url
            or (getattr(settings, self.base_url_setting, "") if self.base_url_setting else "")
            or (os.environ.get(self.base_url_env, "") if self.base_url_env else "")
        )
        if configured:
            self.base_urls: List[str] = [configured.rstrip("/")]
        else:
            self.base_urls = list(self.default_base_urls)
        self.timeout_s = timeout_s or settings.quote_timeout_seconds
        self.slippage_pct = settings.quote_slippage_pct

    def _headers(self) -> Dict[str, str]:
        return {"accept": "application/json"}

    async def _request(
        self,
        method: str,
        path: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        merged_headers = {**self._headers(), **(headers or {})}
        last_error: Optional[Exception] = None

        for index, base_url in enumerate(self.base_urls):
            try:
                async with httpx.AsyncClient(base_url=base_url, timeout=self.timeout_s) as client:
                    response = await client.request(method, path, headers=merged_headers, **kwargs)
                    response.raise_for_status()
                    return response
            except httpx.HTTPStatusError as exc:
                if exc.response.status_code in (404, 405) and index < len(self.base_urls) - 1:
                    last_error = exc
                    continue
                raise QuoteProviderError(
                    f"{self.name} returned HTTP {exc.response.status_code}"
                ) from exc
            except httpx.RequestError as exc:
                last_error = exc
                continue

        if last_error is not None:
            raise QuoteProviderError(f"{self.name} request failed: {last_error}") from last_error
        raise QuoteProviderError(f"All {self.name} hosts failed without providing an error response")

    def _min_out(self, amount_out: Decimal) -> Decimal:
        return amount_out * (Decimal(1) - self.slippage_pct / Decimal(100))


def parse_decimal(value: Any, default: Optional[Decimal] = None) -> Optional[Decimal]:
    """Parse numbers like ``"12"``, ``0.5`` or ``"-0.12%"`` leniently."""
    if value is None or value == "":
        return default
    text = str(value).strip().rstrip("%")
    try:
        return Decimal(text)
    except InvalidOperation:
        return default


def parse_int(value: Any, default: int = 0) -> int:
    if value is None or value == "":
        return default
    if isinstance(value, str) and value.startswith("0x"):
        return int(value, 16)
    return int(str(value))
