"""Best-price quote selection behind an allow-list gate."""

from .aggregator import CircuitBreaker, QuoteAggregator, validate_quote
from .allowlist import AllowList, extract_embedded_addresses

__all__ = [
    "AllowList",
    "CircuitBreaker",
    "QuoteAggregator",
    "extract_embedded_addresses",
    "validate_quote",
]
