"""Async client for OpenOcean's v4 swap API."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict

from ..core.orders.models import ZERO_ADDRESS, Quote, TokenInfo
from .base import HttpQuoteProvider, QuoteProviderError, parse_decimal, parse_int


class OpenOceanProvider(HttpQuoteProvider):
    """Thin wrapper around https://open-api.openocean.finance/v4."""

    name = "openocean"
    default_base_urls = ["https://open-api.openocean.finance/v4"]
    base_url_setting = "openocean_base_url"
    base_url_env = "OPENOCEAN_BASE_URL"

    def _headers(self) -> Dict[str, str]:
        return {
            "accept": "application/json",
            "user-agent": "DcaEngine/1.0",
        }

    async def quote(
        self,
        source_asset: TokenInfo,
        target_asset: TokenInfo,
        amount_in: Decimal,
        account: str,
    ) -> Quote:
        params = {
            "inTokenAddress": source_asset.address,
            "outTokenAddress": target_asset.address,
            "amountDecimals": str(source_asset.to_base_units(amount_in)),
            "account": account,
            "slippage": str(self.slippage_pct),
            "gasPriceDecimals": "1000000000",
        }
        resp = await self._request("GET", f"/{source_asset.chain_id}/swap", params=params)
        payload: Dict[str, Any] = resp.json()

        if payload.get("code") not in (None, 200):
            raise QuoteProviderError(f"OpenOcean error {payload.get('code')}: {payload.get('error') or payload.get('message')}")
        data = payload.get("data") or {}

        out_raw = parse_int(data.get("outAmount"))
        min_raw = parse_int(data.get("minOutAmount"))
        amount_out = target_asset.from_base_units(out_raw)
        impact = parse_decimal(data.get("price_impact"))

        return Quote(
            source_asset=source_asset.address,
            target_asset=target_asset.address,
            amount_in=amount_in,
            amount_out=amount_out,
            target_contract=data.get("to") or ZERO_ADDRESS,
            call_data=data.get("data") or "0x",
            value=parse_int(data.get("value")),
            source=self.name,
            min_amount_out=target_asset.from_base_units(min_raw) if min_raw else self._min_out(amount_out),
            price_impact=abs(impact) if impact is not None else None,
        )
