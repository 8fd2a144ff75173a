"""
Authenticated trigger for a scoring run.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from notes_consensus.config import Settings, get_settings
from notes_consensus.database import get_db
from notes_consensus.exceptions import ScoringRunError
from notes_consensus.labels import OzoneLabelPublisher
from notes_consensus.scoring_service import ScoringService
from notes_consensus.security import verify_bearer_secret


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["Cron"])


def get_label_publisher(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Dependency yielding a label publisher bound to the request's session."""
    publisher = OzoneLabelPublisher(db, settings)
    try:
        yield publisher
    finally:
        publisher.close()


@router.api_route("/score-community-notes", methods=["GET", "POST"])
def score_community_notes(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    publisher=Depends(get_label_publisher),
    authorization: Optional[str] = Header(default=None),
):
    """
    Run one scoring pass and return its summary.

    Requires 'Authorization: Bearer <CN_CRON_SECRET>'. Intended to be hit by
    a periodic job; concurrent invocations are not locked against each other.
    """
    if not settings.cron_secret:
        logger.error("CN_CRON_SECRET not configured")
        return JSONResponse({"error": "Server configuration error"}, status_code=500)
    if not verify_bearer_secret(authorization, settings.cron_secret):
        return JSONResponse({"error": "Unauthorized"}, status_code=401)

    try:
        summary = ScoringService(db, publisher, settings).run_scoring()
    except ScoringRunError:
        logger.exception("Community notes scoring error")
        return JSONResponse({"error": "An error occurred"}, status_code=500)

    return JSONResponse(summary.model_dump(mode="json"))
