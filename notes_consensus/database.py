"""
Database models and session management for the scoring service.

Uses SQLAlchemy with SQLite for local runs.
Can be configured for PostgreSQL in production.
"""

from datetime import datetime, UTC
from typing import Optional, List

from sqlalchemy import (
    Integer, String, Float, Text, DateTime, Boolean,
    ForeignKey, Index, UniqueConstraint, create_engine
)
from sqlalchemy.orm import (
    DeclarativeBase, relationship, sessionmaker, Mapped, mapped_column
)

from notes_consensus.config import get_settings
from notes_consensus.models import (
    DisputeStatus, HelpfulnessLevel, LabelStatus, TargetType
)


# =============================================================================
# Database Setup
# =============================================================================


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


def _connect_args(database_url: str, timeout_seconds: int) -> dict:
    """Bound every connection and statement by the configured timeout."""
    if database_url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": timeout_seconds}
    if database_url.startswith("postgresql"):
        return {
            "connect_timeout": timeout_seconds,
            "options": f"-c statement_timeout={timeout_seconds * 1000}",
        }
    return {}


def get_engine():
    """Create database engine."""
    settings = get_settings()
    return create_engine(
        settings.database_url,
        connect_args=_connect_args(settings.database_url, settings.database_timeout_seconds),
        echo=settings.debug
    )


engine = get_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Dependency to get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Initialize database tables."""
    Base.metadata.create_all(bind=engine)


def _utcnow() -> datetime:
    return datetime.now(UTC)


# =============================================================================
# Database Models
# =============================================================================


class Note(Base):
    """
    A community note attached to a post.

    A note with target_type "note" is a counter-note disputing another
    note; the link lives in the Dispute table. label_status is only ever
    written by the label publisher.
    """

    __tablename__ = "community_notes"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    post_uri: Mapped[str] = mapped_column(String(500), index=True, nullable=False)
    author_did: Mapped[str] = mapped_column(String(100), index=True, nullable=False)

    summary: Mapped[str] = mapped_column(Text, nullable=False)
    reasons: Mapped[str] = mapped_column(Text, default="[]")  # JSON array of tags

    target_type: Mapped[str] = mapped_column(
        String(20), default=TargetType.POST.value, nullable=False
    )

    # Label mirror
    label_status: Mapped[str] = mapped_column(
        String(20), default=LabelStatus.NONE.value, nullable=False
    )
    label_uri: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    label_published_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=_utcnow, nullable=False
    )

    ratings: Mapped[List["Rating"]] = relationship("Rating", back_populates="note")


class Rating(Base):
    """A rater's helpfulness rating on a note. One per (note, rater)."""

    __tablename__ = "community_note_ratings"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)

    note_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("community_notes.id", ondelete="CASCADE"), index=True
    )
    rater_did: Mapped[str] = mapped_column(String(100), index=True, nullable=False)

    helpfulness: Mapped[str] = mapped_column(
        String(20), default=HelpfulnessLevel.NEUTRAL.value, nullable=False
    )
    reasons: Mapped[str] = mapped_column(Text, default="[]")

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=_utcnow, onupdate=_utcnow
    )

    note: Mapped["Note"] = relationship("Note", back_populates="ratings")

    __table_args__ = (
        UniqueConstraint('note_id', 'rater_did', name='uq_note_rater'),
    )


class Score(Base):
    """
    Latest fitted parameters and status for a note.

    Overwritten by every run; never edited by hand. label_synced is False
    while the post's label still lags behind status, i.e. from a status
    change until a label call for it succeeds.
    """

    __tablename__ = "community_note_scores"

    note_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    intercept: Mapped[float] = mapped_column(Float, nullable=False)
    factor: Mapped[float] = mapped_column(Float, nullable=False)
    rating_count: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(10), index=True, nullable=False)
    label_synced: Mapped[bool] = mapped_column(
        Boolean, default=False, index=True, nullable=False
    )
    scored_at: Mapped[datetime] = mapped_column(
        DateTime, default=_utcnow, nullable=False
    )


class Dispute(Base):
    """A counter-note contesting another note's label."""

    __tablename__ = "community_note_disputes"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    dispute_note_id: Mapped[str] = mapped_column(String(50), nullable=False)
    target_note_id: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=DisputeStatus.PENDING.value, index=True
    )
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=_utcnow, nullable=False
    )

    __table_args__ = (
        Index('community_note_disputes_target_idx', 'target_note_id'),
        Index('community_note_disputes_dispute_idx', 'dispute_note_id'),
    )


class LabelLog(Base):
    """Audit row for every label publish/negate attempt."""

    __tablename__ = "community_note_label_log"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    note_id: Mapped[str] = mapped_column(String(50), index=True, nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    label_val: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, default=False)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=_utcnow, nullable=False
    )


class ScoringRun(Base):
    """
    Log of scoring runs.

    Tracks when scoring was performed and results for monitoring.
    """

    __tablename__ = "scoring_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)

    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Results
    notes_scored: Mapped[int] = mapped_column(Integer, default=0)
    ratings_processed: Mapped[int] = mapped_column(Integer, default=0)
    status_changes: Mapped[int] = mapped_column(Integer, default=0)
    labels_published: Mapped[int] = mapped_column(Integer, default=0)
    labels_negated: Mapped[int] = mapped_column(Integer, default=0)
    label_errors: Mapped[int] = mapped_column(Integer, default=0)
    disputes_resolved: Mapped[int] = mapped_column(Integer, default=0)

    # Performance
    duration_seconds: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Errors
    success: Mapped[bool] = mapped_column(Boolean, default=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Configuration used
    algorithm_version: Mapped[str] = mapped_column(String(20), nullable=False)
    config_snapshot: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # JSON
