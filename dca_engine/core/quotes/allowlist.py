"""
Allow-list gate for aggregator quotes.

A quote is only executable if the contract it targets, and every address
its call data references, is known-good. The check ignores price entirely.
"""

from __future__ import annotations

from typing import FrozenSet, Iterable, List, Optional

from ..orders.errors import SuspiciousQuoteError, UnauthorizedTargetError
from ..orders.models import ZERO_ADDRESS, Order, Quote

# Aggregators use this placeholder for the native asset; it is not a contract
NATIVE_TOKEN_PLACEHOLDER = "0xeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeee"

_WORD = 64  # hex chars per ABI word


def extract_embedded_addresses(call_data: str) -> List[str]:
    """
    Find ABI words in ``call_data`` that encode an address.

    A word counts as an address when its top 12 bytes are zero and the top
    4 bytes of the remaining 20 are not, which separates addresses from
    amounts, offsets and flags.
    """
    body = call_data[2:] if call_data.startswith("0x") else call_data
    body = body[8:]  # selector
    found: List[str] = []
    seen = set()
    for start in range(0, len(body) - _WORD + 1, _WORD):
        word = body[start:start + _WORD].lower()
        if word[:24] != "0" * 24:
            continue
        if word[24:32] == "0" * 8:
            continue
        address = "0x" + word[24:]
        if address not in seen:
            seen.add(address)
            found.append(address)
    return found


def order_addresses(order: Order) -> List[str]:
    """The order's own accounts and assets, always allowed for that order."""
    return [
        order.funding_account_address,
        order.destination_address,
        order.owner_address,
        order.source_asset.address,
        order.target_asset.address,
    ]


class AllowList:
    """Case-insensitive set of addresses a batch may touch."""

    def __init__(self, addresses: Iterable[str]):
        self._addresses: FrozenSet[str] = frozenset(a.lower() for a in addresses if a)

    def __contains__(self, address: str) -> bool:
        return self.is_allowed(address)

    def __len__(self) -> int:
        return len(self._addresses)

    def is_allowed(self, address: Optional[str]) -> bool:
        if not address:
            return False
        return address.lower() in self._addresses

    def extended(self, extra: Iterable[str]) -> AllowList:
        return AllowList([*self._addresses, *extra])

    def for_order(self, order: Order) -> AllowList:
        """Static list plus the order's own accounts and assets."""
        return self.extended(order_addresses(order))

    def check_quote(self, quote: Quote) -> None:
        """
        Raise if the quote touches anything outside the list.

        Raises:
            UnauthorizedTargetError: target contract is missing or not listed
            SuspiciousQuoteError: call data embeds a non-listed address
        """
        target = (quote.target_contract or "").lower()
        if not target or target == ZERO_ADDRESS or not self.is_allowed(target):
            raise UnauthorizedTargetError(quote.target_contract or ZERO_ADDRESS, source=quote.source)

        for address in extract_embedded_addresses(quote.call_data or ""):
            if address == NATIVE_TOKEN_PLACEHOLDER:
                continue
            if not self.is_allowed(address):
                raise SuspiciousQuoteError(address, source=quote.source)
