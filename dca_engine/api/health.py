from typing import Any, Dict

from fastapi import APIRouter, Depends

from ..core.quotes.aggregator import QuoteAggregator
from ..db import get_repository
from ..db.repository import OrderRepository
from .dependencies import get_aggregator

router = APIRouter()


@router.get("/healthz")
async def health_check(
    repository: OrderRepository = Depends(get_repository),
    aggregator: QuoteAggregator = Depends(get_aggregator),
) -> Dict[str, Any]:
    """Health check: repository reachability and quote-source circuits"""

    storage_ok = await repository.ping()

    quotes = aggregator.status()
    circuits = quotes["circuits"]
    open_circuits = [name for name, state in circuits.items() if state.get("open")]
    available_providers = len(quotes["providers"]) - len(open_circuits)

    return {
        "status": "healthy" if storage_ok and available_providers > 0 else "degraded",
        "storage": "ok" if storage_ok else "unreachable",
        "providers": quotes["providers"],
        "circuits": circuits,
        "available_providers": available_providers,
        "total_providers": len(quotes["providers"]),
    }
