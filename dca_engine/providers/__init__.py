"""External collaborators: quote sources, chain RPC, signing relay, order book."""

from typing import List

from ..config import settings
from .base import QuoteProvider, QuoteProviderError
from .oneinch import OneInchProvider
from .openocean import OpenOceanProvider
from .paraswap import ParaswapProvider


def build_quote_providers() -> List[QuoteProvider]:
    """Quote sources enabled in settings, in priority order."""
    providers: List[QuoteProvider] = []
    if settings.enable_openocean:
        providers.append(OpenOceanProvider())
    if settings.enable_oneinch:
        providers.append(OneInchProvider())
    if settings.enable_paraswap:
        providers.append(ParaswapProvider())
    return providers


__all__ = [
    "QuoteProvider",
    "QuoteProviderError",
    "OpenOceanProvider",
    "OneInchProvider",
    "ParaswapProvider",
    "build_quote_providers",
]
