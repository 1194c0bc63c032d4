"""
Quote Aggregator

Fans out to every configured quote source in parallel, drops sources that
fail, time out or return structurally invalid quotes, picks the largest
output, and runs the winner through the allow-list gate.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import structlog

from ...config import settings
from ...providers.base import QuoteProvider
from ..orders.errors import QuoteUnavailableError, UnauthorizedTargetError
from ..orders.models import ZERO_ADDRESS, Quote, TokenInfo
from .allowlist import AllowList

logger = logging.getLogger(__name__)
_slog = structlog.stdlib.get_logger("dca.quotes")


@dataclass
class CircuitState:
    failures: int = 0
    opened_at: Optional[float] = None


class CircuitBreaker:
    """Skips a source after repeated failures until a cool-down passes."""

    def __init__(
        self,
        failure_threshold: Optional[int] = None,
        reset_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold or settings.quote_circuit_failure_threshold
        self.reset_seconds = reset_seconds or settings.quote_circuit_reset_seconds
        self._clock = clock
        self._states: Dict[str, CircuitState] = {}

    def _state(self, name: str) -> CircuitState:
        return self._states.setdefault(name, CircuitState())

    def is_open(self, name: str) -> bool:
        state = self._state(name)
        if state.opened_at is None:
            return False
        if self._clock() - state.opened_at >= self.reset_seconds:
            # Cool-down over: let the source try again from a clean slate
            state.opened_at = None
            state.failures = 0
            return False
        return True

    def record_success(self, name: str) -> None:
        state = self._state(name)
        state.failures = 0
        state.opened_at = None

    def record_failure(self, name: str) -> None:
        state = self._state(name)
        state.failures += 1
        if state.failures >= self.failure_threshold and state.opened_at is None:
            state.opened_at = self._clock()
            logger.warning(f"Circuit opened for quote source {name} after {state.failures} failures")

    def snapshot(self) -> Dict[str, Dict[str, object]]:
        return {
            name: {"failures": s.failures, "open": self.is_open(name)}
            for name, s in self._states.items()
        }


def validate_quote(quote: Quote, max_price_impact_pct: Optional[Decimal] = None) -> Optional[str]:
    """Return why a quote is structurally unusable, or None if it is fine."""
    if not quote.target_contract or quote.target_contract.lower() == ZERO_ADDRESS:
        return "missing target contract"
    if not quote.call_data or quote.call_data in ("0x", "0X"):
        return "empty call data"
    if quote.amount_out is None or quote.amount_out <= 0:
        return "zero output amount"
    if (
        max_price_impact_pct is not None
        and quote.price_impact is not None
        and quote.price_impact > max_price_impact_pct
    ):
        return f"price impact {quote.price_impact}% above {max_price_impact_pct}%"
    return None


class QuoteAggregator:
    """Best-price quote across several sources, gated by an allow-list."""

    def __init__(
        self,
        providers: Sequence[QuoteProvider],
        allowlist: AllowList,
        *,
        timeout_s: Optional[float] = None,
        max_price_impact_pct: Optional[Decimal] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.providers = list(providers)
        self.allowlist = allowlist
        self.timeout_s = timeout_s or settings.quote_timeout_seconds
        self.max_price_impact_pct = (
            max_price_impact_pct if max_price_impact_pct is not None else settings.quote_max_price_impact_pct
        )
        self.breaker = breaker or CircuitBreaker()

    async def _fetch(
        self,
        provider: QuoteProvider,
        source_asset: TokenInfo,
        target_asset: TokenInfo,
        amount_in: Decimal,
        account: str,
    ) -> Tuple[str, Union[Quote, str]]:
        start = time.perf_counter()
        try:
            quote = await asyncio.wait_for(
                provider.quote(source_asset, target_asset, amount_in, account),
                timeout=self.timeout_s,
            )
        except asyncio.TimeoutError:
            self.breaker.record_failure(provider.name)
            return provider.name, f"timed out after {self.timeout_s}s"
        except Exception as exc:  # noqa: BLE001
            self.breaker.record_failure(provider.name)
            return provider.name, str(exc) or exc.__class__.__name__

        reason = validate_quote(quote, self.max_price_impact_pct)
        if reason:
            self.breaker.record_failure(provider.name)
            return provider.name, reason

        self.breaker.record_success(provider.name)
        _slog.debug(
            "quote_source_succeeded",
            source=provider.name,
            amount_out=str(quote.amount_out),
            duration_ms=round((time.perf_counter() - start) * 1000, 1),
        )
        if not quote.source:
            quote.source = provider.name
        return provider.name, quote

    async def get_quotes(
        self,
        source_asset: TokenInfo,
        target_asset: TokenInfo,
        amount_in: Decimal,
        account: str,
    ) -> Tuple[List[Quote], Dict[str, str]]:
        """All valid quotes (best first) plus the failure reason per source."""
        available = [p for p in self.providers if not self.breaker.is_open(p.name)]
        failures: Dict[str, str] = {
            p.name: "circuit open" for p in self.providers if p not in available
        }

        results = await asyncio.gather(
            *(self._fetch(p, source_asset, target_asset, amount_in, account) for p in available)
        )

        quotes: List[Quote] = []
        for name, outcome in results:
            if isinstance(outcome, Quote):
                quotes.append(outcome)
            else:
                failures[name] = outcome
                _slog.warning("quote_source_failed", source=name, error=outcome)

        quotes.sort(key=lambda q: q.amount_out, reverse=True)
        return quotes, failures

    async def get_best_quote(
        self,
        source_asset: TokenInfo,
        target_asset: TokenInfo,
        amount_in: Decimal,
        account: str,
        extra_allowed: Iterable[str] = (),
    ) -> Quote:
        """
        Best executable quote for ``amount_in``.

        Raises:
            QuoteUnavailableError: no source produced a valid quote
            UnauthorizedTargetError / SuspiciousQuoteError: the winning quote
                failed the allow-list gate (no fallback to a runner-up)
        """
        _start = time.perf_counter()
        quotes, failures = await self.get_quotes(source_asset, target_asset, amount_in, account)

        if not quotes:
            raise QuoteUnavailableError(
                f"No valid quote for {amount_in} {source_asset.symbol} -> {target_asset.symbol}",
                failures=failures,
            )

        best = quotes[0]
        if len(quotes) > 1 and quotes[1].amount_out > 0:
            savings = best.amount_out - quotes[1].amount_out
            logger.info(
                f"Best quote {best.source}: {best.amount_out} {target_asset.symbol} "
                f"(+{savings} vs {quotes[1].source}, "
                f"{(savings / quotes[1].amount_out * 100):.4f}%)"
            )

        gate = self.allowlist.extended(extra_allowed)
        try:
            gate.check_quote(best)
        except UnauthorizedTargetError as exc:
            _slog.error(
                "quote_rejected",
                source=best.source,
                code=exc.code,
                address=exc.address,
                amount_out=str(best.amount_out),
            )
            raise

        _slog.info(
            "quote_selected",
            source=best.source,
            amount_in=str(amount_in),
            amount_out=str(best.amount_out),
            sources_ok=len(quotes),
            sources_failed=len(failures),
            duration_ms=round((time.perf_counter() - _start) * 1000, 1),
        )
        return best

    def status(self) -> Dict[str, object]:
        return {
            "providers": [p.name for p in self.providers],
            "circuits": self.breaker.snapshot(),
        }
