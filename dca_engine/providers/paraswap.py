"""Async client for the Paraswap (Velora) market API."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict

from ..core.orders.models import ZERO_ADDRESS, Quote, TokenInfo
from .base import HttpQuoteProvider, QuoteProviderError, parse_decimal, parse_int


class ParaswapProvider(HttpQuoteProvider):
    """Uses the combined ``/swap`` endpoint (price route + transaction)."""

    name = "paraswap"
    default_base_urls = ["https://api.paraswap.io", "https://apiv5.paraswap.io"]
    base_url_setting = "paraswap_base_url"
    base_url_env = "PARASWAP_BASE_URL"

    async def quote(
        self,
        source_asset: TokenInfo,
        target_asset: TokenInfo,
        amount_in: Decimal,
        account: str,
    ) -> Quote:
        params = {
            "srcToken": source_asset.address,
            "srcDecimals": source_asset.decimals,
            "destToken": target_asset.address,
            "destDecimals": target_asset.decimals,
            "amount": str(source_asset.to_base_units(amount_in)),
            "side": "SELL",
            "network": source_asset.chain_id,
            "userAddress": account,
            "slippage": int(self.slippage_pct * 100),  # bps
            "version": "6.2",
        }
        resp = await self._request("GET", "/swap", params=params)
        data: Dict[str, Any] = resp.json()
        if data.get("error"):
            raise QuoteProviderError(f"Paraswap error: {data['error']}")

        route = data.get("priceRoute") or {}
        tx = data.get("txParams") or {}
        amount_out = target_asset.from_base_units(parse_int(route.get("destAmount")))

        impact = None
        src_usd = parse_decimal(route.get("srcUSD"))
        dest_usd = parse_decimal(route.get("destUSD"))
        if src_usd and dest_usd is not None and src_usd > 0:
            impact = max((src_usd - dest_usd) / src_usd * Decimal(100), Decimal(0))

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
            price_impact=impact,
        )
