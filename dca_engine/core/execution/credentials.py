"""
Credential Validator

Checks a delegated signing credential's validity window and whether a batch
stays inside its scope. Expiry is a hard stop; nothing here extends it.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

from ..orders.errors import CredentialExpiredError, CredentialScopeError
from ..orders.models import Credential
from .tx_builder import SubOperation


class CredentialValidator:
    """Validates delegated credentials before any quote is fetched."""

    def validate(self, credential: Optional[Credential], now: datetime) -> Credential:
        if credential is None:
            raise CredentialExpiredError("Order has no delegated credential")
        if now < credential.valid_after:
            raise CredentialExpiredError(
                f"Credential {credential.key_id} not valid until {credential.valid_after.isoformat()}",
                key_id=credential.key_id,
            )
        if now > credential.valid_until:
            raise CredentialExpiredError(
                f"Credential {credential.key_id} expired at {credential.valid_until.isoformat()}",
                key_id=credential.key_id,
            )
        return credential

    def check_batch(self, credential: Credential, batch: Iterable[SubOperation]) -> None:
        """Raise CredentialScopeError if any sub-operation is outside the scope."""
        scope = credential.scope
        for op in batch:
            if not scope.is_target_allowed(op.to):
                raise CredentialScopeError(
                    f"Credential {credential.key_id} does not cover calls to {op.to}",
                    key_id=credential.key_id,
                )
            if not scope.is_selector_allowed(op.selector):
                raise CredentialScopeError(
                    f"Credential {credential.key_id} does not cover selector {op.selector}",
                    key_id=credential.key_id,
                )
            if scope.value_ceiling is not None and op.value > scope.value_ceiling:
                raise CredentialScopeError(
                    f"Call value {op.value} exceeds credential ceiling {scope.value_ceiling}",
                    key_id=credential.key_id,
                )
