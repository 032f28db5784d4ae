"""
Admin routes for maintenance jobs and the read cache.

Every route requires the X-Admin-Secret header.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import desc, select
from sqlalchemy.orm import Session

from acceptance_api.cache import get_read_cache
from acceptance_api.database import DecayRun, get_db
from acceptance_api.decay_service import DecayService
from acceptance_api.dependencies import get_decay_service, get_ledger, require_admin
from acceptance_api.models import (
    CacheClearResponse, CacheStatsResponse, CleanupResponse, DecayRunResponse, ExpirationStatsResponse
)
from acceptance_api.scheduler import get_scheduler
from acceptance_api.verification_service import VerificationLedger


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"], dependencies=[Depends(require_admin)])


# =============================================================================
# Confidence Decay
# =============================================================================


@router.post("/recalculate-confidence", response_model=DecayRunResponse)
def recalculate_confidence(
    dry_run: bool = Query(default=False),
    limit: Optional[int] = Query(default=None, ge=1),
    decay_service: DecayService = Depends(get_decay_service),
):
    """
    Recalculate confidence scores for every record with verifications.

    Applies time-based decay so records without fresh submissions still lose
    recency credit. Use dry_run to preview how many scores would change.
    """
    return decay_service.recalculate_all_scores(dry_run=dry_run, limit=limit, trigger="admin")


@router.get("/decay-runs")
def get_decay_runs(
    limit: int = Query(default=10, ge=1, le=100),
    db: Session = Depends(get_db),
):
    """Recent decay runs and scheduler status."""
    runs = db.execute(
        select(DecayRun).order_by(desc(DecayRun.started_at), desc(DecayRun.id)).limit(limit)
    ).scalars().all()

    return {
        "recent_runs": [
            {
                "id": run.id,
                "started_at": run.started_at.isoformat() if run.started_at else None,
                "completed_at": run.completed_at.isoformat() if run.completed_at else None,
                "trigger": run.trigger,
                "dry_run": run.dry_run,
                "success": run.success,
                "processed": run.processed,
                "updated": run.updated,
                "unchanged": run.unchanged,
                "errors": run.errors,
                "duration_seconds": run.duration_seconds,
                "error": run.error_message,
            }
            for run in runs
        ],
        "scheduler": get_scheduler().get_status(),
    }


# =============================================================================
# Retention
# =============================================================================


@router.post("/cleanup-expired", response_model=CleanupResponse)
def cleanup_expired(
    dry_run: bool = Query(default=False),
    batch_size: int = Query(default=1000, ge=1, le=10000),
    ledger: VerificationLedger = Depends(get_ledger),
):
    """Delete verifications and acceptance records past their TTL."""
    return ledger.cleanup_expired(dry_run=dry_run, batch_size=batch_size)


@router.get("/expiration-stats", response_model=ExpirationStatsResponse)
def get_expiration_stats(ledger: VerificationLedger = Depends(get_ledger)):
    return ledger.get_expiration_stats()


# =============================================================================
# Read Cache
# =============================================================================


@router.get("/cache/stats", response_model=CacheStatsResponse)
def get_cache_stats():
    return get_read_cache().stats()


@router.post("/cache/clear", response_model=CacheClearResponse)
def clear_cache():
    """Drop every cached pair summary, e.g. after a bulk data import."""
    logger.info("Admin cache clear requested")
    deleted = get_read_cache().clear()
    return CacheClearResponse(
        message=f"Cache cleared. {deleted} entries removed.",
        deleted_count=deleted,
    )
