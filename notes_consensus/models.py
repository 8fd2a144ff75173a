"""
Pydantic models and enums shared by the scoring engine and its API.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


# =============================================================================
# Enums
# =============================================================================


class NoteStatus(str, Enum):
    """Consensus status of a note, recomputed on every run."""
    CURRENTLY_RATED_HELPFUL = "CRH"
    CURRENTLY_RATED_NOT_HELPFUL = "CRNH"
    NEEDS_MORE_RATINGS = "NMR"


class HelpfulnessLevel(str, Enum):
    """Rating levels for note helpfulness."""
    HELPFUL = "helpful"
    NEUTRAL = "neutral"
    NOT_HELPFUL = "not_helpful"


class TargetType(str, Enum):
    """What a note annotates."""
    POST = "post"   # Annotates a post directly
    NOTE = "note"   # Counter-note disputing another note


class LabelStatus(str, Enum):
    """Mirror of the last label action taken against a note's post."""
    NONE = "none"
    ANNOTATION = "annotation"
    PROPOSED_ANNOTATION = "proposed-annotation"
    NEGATED = "negated"


class DisputeStatus(str, Enum):
    """Lifecycle of a dispute; leaves PENDING exactly once."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class LabelAction(str, Enum):
    PUBLISH = "publish"
    NEGATE = "negate"


class RunPhase(str, Enum):
    """Ordered phases of a single scoring run."""
    LOADING_RATINGS = "loading ratings"
    SCORING = "scoring"
    PERSISTING_SCORES = "persisting scores"
    PUBLISHING_LABELS = "publishing labels"
    RESOLVING_DISPUTES = "resolving disputes"
    REPORTING = "reporting"


# =============================================================================
# Engine Records
# =============================================================================


class NoteScore(BaseModel):
    """Fitted parameters and derived status for one rated note."""

    note_id: str
    intercept: float
    factor: float
    rating_count: int
    status: NoteStatus


class StatusTransition(BaseModel):
    """A note whose status differs from the one stored by the previous run."""

    note_id: str
    old_status: Optional[NoteStatus] = None
    new_status: NoteStatus


class PendingDispute(BaseModel):
    """A dispute still awaiting a consensus on its disputing note."""

    id: str
    dispute_note_id: str
    target_note_id: str


# =============================================================================
# Response Models
# =============================================================================


class LabelCounts(BaseModel):
    changed: int = 0
    carried_over: int = 0  # Unsynced labels left by earlier runs
    published: int = 0
    negated: int = 0
    errors: int = 0
    deferred: int = 0
    skipped: int = 0


class DisputeCounts(BaseModel):
    pending: int = 0
    resolved: int = 0
    approved: int = 0
    rejected: int = 0
    errors: int = 0


class RunSummary(BaseModel):
    """Aggregate result of one scoring run, returned to the trigger caller."""

    success: bool = True
    scored: int = 0
    ratings: int = 0
    labels: LabelCounts = Field(default_factory=LabelCounts)
    disputes: DisputeCounts = Field(default_factory=DisputeCounts)
    converged: Optional[bool] = None
    duration_ms: int = 0
    scored_at: Optional[datetime] = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "healthy"
    version: str
    database_connected: bool
    last_scoring_run: Optional[datetime] = None
    notes_count: int = 0
    ratings_count: int = 0
    pending_disputes_count: int = 0
