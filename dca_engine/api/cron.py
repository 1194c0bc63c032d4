"""
Scheduler Trigger Endpoints

An external cron calls ``GET /cron/execute-dca`` with the shared bearer
secret once per period. ``POST /cron/execute-dca`` runs the same sweep
without auth for manual testing and is disabled in production through
``ENABLE_MANUAL_TRIGGER=false``.
"""

import hmac
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from ..config import settings
from ..core.orders.errors import RepositoryError
from ..core.orders.models import utc_now
from ..core.reconciler import StatusReconciler
from ..core.scheduler import DueOrderScheduler
from .dependencies import get_reconciler, get_scheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["Cron"])


# =============================================================================
# Dependencies
# =============================================================================


def verify_cron_secret(authorization: Optional[str] = Header(None)) -> bool:
    """Verify ``Authorization: Bearer <CRON_SECRET_KEY>``."""
    if not settings.has_cron_secret:
        logger.error("CRON_SECRET_KEY is not configured; refusing cron request")
        raise HTTPException(status_code=500, detail="Cron secret is not configured")
    expected = f"Bearer {settings.cron_secret_key}"
    if not authorization or not hmac.compare_digest(authorization, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")
    return True


def require_manual_trigger() -> bool:
    if not settings.enable_manual_trigger:
        raise HTTPException(status_code=404, detail="Not Found")
    return True


# =============================================================================
# Helper Functions
# =============================================================================


async def _run_sweep(scheduler: DueOrderScheduler, trigger: str) -> Dict[str, Any]:
    logger.info(f"Sweep triggered ({trigger})")
    try:
        report = await scheduler.sweep()
    except RepositoryError as e:
        logger.error(f"Sweep aborted by storage failure: {e.message}")
        raise HTTPException(status_code=500, detail=f"Sweep aborted: {e.message}")

    return {
        "success": True,
        **report.to_dict(),
        "timestamp": utc_now().isoformat(),
    }


# =============================================================================
# Endpoints
# =============================================================================


@router.get("/execute-dca")
async def execute_dca(
    _authorized: bool = Depends(verify_cron_secret),
    scheduler: DueOrderScheduler = Depends(get_scheduler),
) -> Dict[str, Any]:
    """Run one sweep over all due orders (cron-triggered)."""
    return await _run_sweep(scheduler, "cron")


@router.post("/execute-dca")
async def execute_dca_manual(
    _enabled: bool = Depends(require_manual_trigger),
    scheduler: DueOrderScheduler = Depends(get_scheduler),
) -> Dict[str, Any]:
    """Run one sweep synchronously (manual testing trigger)."""
    return await _run_sweep(scheduler, "manual")


@router.post("/reconcile")
async def reconcile_orders(
    force: bool = False,
    _authorized: bool = Depends(verify_cron_secret),
    reconciler: StatusReconciler = Depends(get_reconciler),
) -> Dict[str, Any]:
    """Mirror externally tracked orders from their order book."""
    try:
        report = await reconciler.reconcile(force=force)
    except RepositoryError as e:
        raise HTTPException(status_code=500, detail=f"Reconcile aborted: {e.message}")
    return {
        "success": True,
        **report.to_dict(),
        "timestamp": utc_now().isoformat(),
    }
