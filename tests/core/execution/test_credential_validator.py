"""
Tests for the credential validator

Validity window checks and batch scope checks.
"""

from datetime import timedelta

import pytest

from dca_engine.core.execution.credentials import CredentialValidator
from dca_engine.core.execution.tx_builder import BatchBuilder
from dca_engine.core.orders.errors import CredentialExpiredError, CredentialScopeError
from dca_engine.core.orders.models import CredentialScope

from fakes import NOW, PAYOUT, ROUTER, USDC, make_credential, swap_call_data


@pytest.fixture
def validator() -> CredentialValidator:
    return CredentialValidator()


@pytest.fixture
def batch():
    return [
        BatchBuilder.approve(USDC.address, ROUTER, 25_000_000),
        BatchBuilder.raw_call(ROUTER, swap_call_data(), value=0),
    ]


class TestValidityWindow:
    def test_valid_credential_passes(self, validator):
        credential = make_credential()
        assert validator.validate(credential, NOW) is credential

    def test_missing_credential(self, validator):
        with pytest.raises(CredentialExpiredError):
            validator.validate(None, NOW)

    def test_expired(self, validator):
        credential = make_credential(valid_for=timedelta(seconds=-1))
        with pytest.raises(CredentialExpiredError) as exc_info:
            validator.validate(credential, NOW)

        assert exc_info.value.retryable is False
        assert exc_info.value.key_id == "key-1"

    def test_not_yet_valid(self, validator):
        credential = make_credential(NOW + timedelta(days=2))
        with pytest.raises(CredentialExpiredError):
            validator.validate(credential, NOW)


class TestBatchScope:
    def test_unrestricted_scope(self, validator, batch):
        validator.check_batch(make_credential(), batch)

    def test_all_targets_listed(self, validator, batch):
        scope = CredentialScope(allowed_targets=[USDC.address, ROUTER])
        validator.check_batch(make_credential(scope=scope), batch)

    def test_target_outside_scope(self, validator, batch):
        scope = CredentialScope(allowed_targets=[USDC.address, PAYOUT])
        with pytest.raises(CredentialScopeError) as exc_info:
            validator.check_batch(make_credential(scope=scope), batch)
        assert exc_info.value.code == "credential_scope"

    def test_selector_outside_scope(self, validator, batch):
        scope = CredentialScope(allowed_selectors=["0x095ea7b3"])
        with pytest.raises(CredentialScopeError):
            validator.check_batch(make_credential(scope=scope), batch)

    def test_value_ceiling(self, validator):
        scope = CredentialScope(value_ceiling=10**15)
        batch = [BatchBuilder.raw_call(ROUTER, swap_call_data(), value=10**16)]
        with pytest.raises(CredentialScopeError):
            validator.check_batch(make_credential(scope=scope), batch)
