"""Async client for the 1inch v6 swap API."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Optional

from ..config import settings
from ..core.orders.models import ZERO_ADDRESS, Quote, TokenInfo
from .base import HttpQuoteProvider, parse_int


class OneInchProvider(HttpQuoteProvider):
    """Thin wrapper around https://api.1inch.dev/swap/v6.0."""

    name = "1inch"
    default_base_urls = ["https://api.1inch.dev/swap/v6.0"]
    base_url_setting = "oneinch_base_url"
    base_url_env = "ONEINCH_BASE_URL"

    def __init__(self, *, api_key: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.api_key = api_key or settings.oneinch_api_key

    def _headers(self) -> Dict[str, str]:
        headers = {"accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def quote(
        self,
        source_asset: TokenInfo,
        target_asset: TokenInfo,
        amount_in: Decimal,
        account: str,
    ) -> Quote:
        params = {
            "src": source_asset.address,
            "dst": target_asset.address,
            "amount": str(source_asset.to_base_units(amount_in)),
            "from": account,
            "origin": account,
            "slippage": str(self.slippage_pct),
            "disableEstimate": "true",
        }
        resp = await self._request("GET", f"/{source_asset.chain_id}/swap", params=params)
        data: Dict[str, Any] = resp.json()
        tx = data.get("tx") or {}

        amount_out = target_asset.from_base_units(parse_int(data.get("dstAmount")))
        return Quote(
            source_asset=source_asset.address,
            target_asset=target_asset.address,
            amount_in=amount_in,
            amount_out=amount_out,
            target_contract=tx.get("to") or ZERO_ADDRESS,
            call_data=tx.get("data") or "0x",
            value=parse_int(tx.get("value")),
            source=self.name,
            min_amount_out=self._min_out(amount_out),
        )
