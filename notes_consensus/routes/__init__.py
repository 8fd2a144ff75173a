"""
Routes package for the scoring service.
"""

from notes_consensus.routes.cron import router as cron_router
from notes_consensus.routes.scoring import router as scoring_router

__all__ = ["cron_router", "scoring_router"]
