"""
API routes for monitoring scoring runs.
"""

from fastapi import APIRouter, Depends
from sqlalchemy import desc, func, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from notes_consensus.config import Settings, get_settings
from notes_consensus.database import get_db, Dispute, Note, Rating, ScoringRun
from notes_consensus.models import DisputeStatus, HealthResponse


router = APIRouter(prefix="/scoring", tags=["Scoring"])


def _run_to_dict(run: ScoringRun) -> dict:
    return {
        "id": run.id,
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "completed_at": run.completed_at.isoformat() if run.completed_at else None,
        "success": run.success,
        "notes_scored": run.notes_scored,
        "ratings_processed": run.ratings_processed,
        "status_changes": run.status_changes,
        "labels_published": run.labels_published,
        "labels_negated": run.labels_negated,
        "label_errors": run.label_errors,
        "disputes_resolved": run.disputes_resolved,
        "duration_seconds": run.duration_seconds,
        "error": run.error_message,
        "algorithm_version": run.algorithm_version,
    }


# =============================================================================
# Scoring Status
# =============================================================================


@router.get("/status")
def get_scoring_status(db: Session = Depends(get_db)):
    """Get the status of recent scoring runs."""
    recent_runs = db.query(ScoringRun).order_by(
        desc(ScoringRun.started_at)
    ).limit(10).all()

    return {"recent_runs": [_run_to_dict(run) for run in recent_runs]}


@router.get("/last-run")
def get_last_scoring_run(db: Session = Depends(get_db)):
    """Get details of the last completed scoring run."""
    last_run = db.query(ScoringRun).filter(
        ScoringRun.completed_at.is_not(None)
    ).order_by(desc(ScoringRun.completed_at)).first()

    if not last_run:
        return {"message": "No scoring runs yet"}

    return _run_to_dict(last_run)


# =============================================================================
# Health Check
# =============================================================================


@router.get("/health", response_model=HealthResponse)
def health_check(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """
    Health check endpoint.

    Returns service health status and basic statistics.
    """
    try:
        db.execute(text("SELECT 1"))
        db_connected = True
    except SQLAlchemyError:
        db_connected = False

    if not db_connected:
        return HealthResponse(status="degraded", version=settings.app_version, database_connected=False)

    notes_count = db.query(func.count(Note.id)).scalar() or 0
    ratings_count = db.query(func.count(Rating.id)).scalar() or 0
    pending_disputes = db.query(func.count(Dispute.id)).filter(
        Dispute.status == DisputeStatus.PENDING.value
    ).scalar() or 0

    last_run = db.query(ScoringRun).filter(
        ScoringRun.completed_at.is_not(None)
    ).order_by(desc(ScoringRun.completed_at)).first()

    return HealthResponse(
        status="healthy",
        version=settings.app_version,
        database_connected=True,
        last_scoring_run=last_run.completed_at if last_run else None,
        notes_count=notes_count,
        ratings_count=ratings_count,
        pending_disputes_count=pending_disputes,
    )
