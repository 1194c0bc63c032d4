"""
FastAPI dependency providers.

Each ``get_*`` function wires one engine component from settings. Long-lived
pieces (RPC client, aggregator with its circuit breaker, reconciler with its
owner cache) are process singletons; tests swap any of them through
``app.dependency_overrides``.
"""

from __future__ import annotations

from typing import Optional

from fastapi import HTTPException

from ..config import settings
from ..core.execution.balance import BalanceVerifier
from ..core.execution.credentials import CredentialValidator
from ..core.execution.orchestrator import ExecutionOrchestrator
from ..core.execution.pipeline import ExecutionPipeline
from ..core.execution.recorder import ExecutionRecorder
from ..core.execution.submission import SubmissionService
from ..core.orders.service import OrderService
from ..core.quotes.aggregator import CircuitBreaker, QuoteAggregator
from ..core.quotes.allowlist import AllowList
from ..core.reconciler import StatusReconciler
from ..core.scheduler import DueOrderScheduler
from ..db import get_repository
from ..providers import build_quote_providers
from ..providers.openocean_orderbook import OpenOceanOrderBook
from ..providers.rpc import ChainRpcClient
from ..providers.signer_relay import RelaySigner

_rpc_client: Optional[ChainRpcClient] = None
_aggregator: Optional[QuoteAggregator] = None
_reconciler: Optional[StatusReconciler] = None


def get_rpc_client() -> ChainRpcClient:
    global _rpc_client
    if _rpc_client is None:
        _rpc_client = ChainRpcClient(settings.rpc_url)
    return _rpc_client


def get_aggregator() -> QuoteAggregator:
    """Get the singleton aggregator (its circuit breaker spans sweeps)."""
    global _aggregator
    if _aggregator is None:
        _aggregator = QuoteAggregator(
            build_quote_providers(),
            AllowList(settings.allowed_contracts),
            breaker=CircuitBreaker(
                failure_threshold=settings.quote_circuit_failure_threshold,
                reset_seconds=settings.quote_circuit_reset_seconds,
            ),
        )
    return _aggregator


def get_submission_service() -> Optional[SubmissionService]:
    """Submission through the signing relay, or None when it is not configured."""
    if not settings.signer_relay_url:
        return None
    return SubmissionService(RelaySigner(settings.signer_relay_url))


def get_pipeline() -> ExecutionPipeline:
    submission = get_submission_service()
    if submission is None:
        raise HTTPException(status_code=500, detail="SIGNER_RELAY_URL is not configured")
    return ExecutionPipeline(
        balance=BalanceVerifier(get_rpc_client()),
        credentials=CredentialValidator(),
        aggregator=get_aggregator(),
        orchestrator=ExecutionOrchestrator(),
        submission=submission,
        recorder=ExecutionRecorder(get_repository()),
    )


def get_scheduler() -> DueOrderScheduler:
    return DueOrderScheduler(get_repository(), get_pipeline())


def get_reconciler() -> StatusReconciler:
    """Get the singleton reconciler (it keeps the per-owner sync cache)."""
    global _reconciler
    if _reconciler is None:
        _reconciler = StatusReconciler(get_repository(), OpenOceanOrderBook())
    return _reconciler


def get_order_service() -> OrderService:
    return OrderService(
        get_repository(),
        orchestrator=ExecutionOrchestrator(),
        submission=get_submission_service(),
        balance=BalanceVerifier(get_rpc_client()),
    )
