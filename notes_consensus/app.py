"""
Community Notes Scoring Service - FastAPI Application.

Exposes the authenticated batch trigger for consensus scoring and label
publishing, plus read-only monitoring of past runs.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from notes_consensus.config import get_settings
from notes_consensus.database import init_db
from notes_consensus.routes import cron_router, scoring_router
from notes_consensus.scheduler import start_scheduler, stop_scheduler


settings = get_settings()

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info("Starting Community Notes Scoring Service...")
    init_db()
    logger.info("Database initialized")
    if settings.run_scheduler:
        start_scheduler()

    yield

    # Shutdown
    logger.info("Shutting down Community Notes Scoring Service...")
    stop_scheduler()


app = FastAPI(
    title=settings.app_name,
    description="""
## Community Notes Scoring

Turns crowd ratings of community notes into a consensus status and keeps
the moderation label on each annotated post in step with it.

### Run Flow

1. Load every rating and fit the bias/factor model
2. Classify each note as CRH, CRNH or NMR and store the scores
3. Publish or negate labels for notes whose status changed (rate limited)
4. Settle pending disputes whose counter-note reached a consensus

Trigger a run with `GET /api/cron/score-community-notes` and a bearer secret.
    """,
    version=settings.app_version,
    lifespan=lifespan,
)


app.include_router(cron_router, prefix="/api")
app.include_router(scoring_router, prefix="/api")


@app.get("/")
def root():
    """Root endpoint with API information."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "docs_url": "/docs",
        "openapi_url": "/openapi.json",
        "endpoints": {
            "trigger": "/api/cron/score-community-notes",
            "scoring": "/api/scoring",
            "health": "/api/scoring/health",
        }
    }


@app.get("/health")
def root_health():
    """Quick health check."""
    return {"status": "ok", "version": settings.app_version}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "notes_consensus.app:app",
        host="0.0.0.0",
        port=8001,
        reload=settings.debug
    )
