from decimal import Decimal

import pytest

from dca_engine.core.orders.errors import SuspiciousQuoteError, UnauthorizedTargetError
from dca_engine.core.orders.models import ZERO_ADDRESS, Quote
from dca_engine.core.quotes.allowlist import (
    NATIVE_TOKEN_PLACEHOLDER,
    AllowList,
    extract_embedded_addresses,
)

from fakes import BAD_TARGET, FUNDING, PAYOUT, ROUTER, USDC, WETH, make_order, swap_call_data


def _quote(target: str = ROUTER, call_data: str = None) -> Quote:
    return Quote(
        source_asset=USDC.address,
        target_asset=WETH.address,
        amount_in=Decimal("25"),
        amount_out=Decimal("0.01"),
        target_contract=target,
        call_data=call_data if call_data is not None else swap_call_data(),
        source="test",
    )


class TestExtractEmbeddedAddresses:
    def test_finds_address_words(self):
        data = swap_call_data(PAYOUT, USDC.address, amount=10**18)
        assert extract_embedded_addresses(data) == [PAYOUT.lower(), USDC.address.lower()]

    def test_ignores_amounts_and_offsets(self):
        data = "0x12345678" + format(32, "064x") + format(10**24, "064x")
        assert extract_embedded_addresses(data) == []

    def test_deduplicates(self):
        data = swap_call_data(PAYOUT, PAYOUT)
        assert extract_embedded_addresses(data) == [PAYOUT.lower()]


class TestAllowList:
    def test_membership_is_case_insensitive(self):
        allowlist = AllowList([ROUTER.lower()])
        assert ROUTER in allowlist
        assert ROUTER.upper().replace("0X", "0x") in allowlist
        assert not allowlist.is_allowed(None)

    def test_for_order_adds_order_addresses(self):
        allowlist = AllowList([ROUTER]).for_order(make_order(destination_address=PAYOUT))
        for address in (FUNDING, PAYOUT, USDC.address, WETH.address):
            assert allowlist.is_allowed(address)
        assert len(AllowList([ROUTER])) == 1

    def test_listed_target_passes(self):
        AllowList([ROUTER]).check_quote(_quote())

    @pytest.mark.parametrize("target", [BAD_TARGET, ZERO_ADDRESS, ""])
    def test_unlisted_target(self, target):
        with pytest.raises(UnauthorizedTargetError) as exc_info:
            AllowList([ROUTER]).check_quote(_quote(target=target))
        assert exc_info.value.code == "unauthorized_target"
        assert exc_info.value.retryable is False

    def test_embedded_unlisted_address(self):
        with pytest.raises(SuspiciousQuoteError) as exc_info:
            AllowList([ROUTER]).check_quote(_quote(call_data=swap_call_data(BAD_TARGET)))
        assert exc_info.value.address == BAD_TARGET.lower()
        assert exc_info.value.code == "suspicious_quote"

    def test_native_placeholder_is_ignored(self):
        AllowList([ROUTER]).check_quote(_quote(call_data=swap_call_data(NATIVE_TOKEN_PLACEHOLDER)))
