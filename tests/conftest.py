"""
Pytest fixtures for scoring tests. Uses an in-memory SQLite DB per test.
"""

from __future__ import annotations

from typing import List, Optional, Tuple

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from notes_consensus.config import Settings
from notes_consensus.database import Base, Dispute, Note, Rating, Score
from notes_consensus.models import NoteStatus

AUTHOR_DID = "did:plc:noteauthor"


class FakePublisher:
    """Records label calls instead of talking to a moderation service."""

    def __init__(self, fail: bool = False, raise_error: bool = False):
        self.fail = fail
        self.raise_error = raise_error
        self.published: List[Tuple[str, str, NoteStatus]] = []
        self.negated: List[Tuple[str, str]] = []

    @property
    def calls(self) -> int:
        return len(self.published) + len(self.negated)

    def publish_label(self, note_id, post_uri, status) -> bool:
        self.published.append((note_id, post_uri, NoteStatus(status)))
        if self.raise_error:
            raise RuntimeError("labeler unreachable")
        return not self.fail

    def negate_label(self, note_id, post_uri) -> bool:
        self.negated.append((note_id, post_uri))
        if self.raise_error:
            raise RuntimeError("labeler unreachable")
        return not self.fail


class SleepRecorder:
    def __init__(self):
        self.delays: List[float] = []

    def __call__(self, seconds: float):
        self.delays.append(seconds)


def post_uri_for(note_id: str) -> str:
    return f"at://did:plc:poster/app.bsky.feed.post/{note_id}"


def add_note(
    db,
    note_id: str,
    author_did: str = AUTHOR_DID,
    post_uri: Optional[str] = None,
    label_status: str = "none",
) -> Note:
    note = Note(
        id=note_id,
        post_uri=post_uri or post_uri_for(note_id),
        author_did=author_did,
        summary=f"Context for {note_id}",
        label_status=label_status,
    )
    db.add(note)
    db.commit()
    return note


def add_ratings(db, note_id: str, ratings: List[Tuple[str, str]]):
    for rater_did, helpfulness in ratings:
        db.add(Rating(
            id=f"{note_id}:{rater_did}",
            note_id=note_id,
            rater_did=rater_did,
            helpfulness=helpfulness,
        ))
    db.commit()


def add_score(db, note_id: str, status: str, label_synced: bool = True):
    """Store a score as if an earlier run had produced (and labelled) it."""
    db.add(Score(
        note_id=note_id,
        intercept=0.0,
        factor=0.0,
        rating_count=5,
        status=status,
        label_synced=label_synced,
    ))
    db.commit()


def add_dispute(db, dispute_id: str, dispute_note_id: str, target_note_id: str, status: str = "pending"):
    dispute = Dispute(
        id=dispute_id,
        dispute_note_id=dispute_note_id,
        target_note_id=target_note_id,
        status=status,
    )
    db.add(dispute)
    db.commit()
    return dispute


def seed_consensus_population(db):
    """
    One note rated [helpful x3, neutral, not_helpful] by five raters, plus four
    background notes each rated not_helpful by five other raters.

    Intercepts are relative to the population's global bias, so the target
    note lands above the helpful threshold and the background below the
    not-helpful one.
    """
    add_note(db, "note-target")
    add_ratings(db, "note-target", [
        ("did:plc:r1", "helpful"),
        ("did:plc:r2", "helpful"),
        ("did:plc:r3", "helpful"),
        ("did:plc:r4", "neutral"),
        ("did:plc:r5", "not_helpful"),
    ])
    for i in range(1, 5):
        note_id = f"note-bg-{i}"
        add_note(db, note_id)
        add_ratings(db, note_id, [(f"did:plc:bg{i}-{j}", "not_helpful") for j in range(5)])


@pytest.fixture
def db_session():
    """Fresh in-memory database with every table created."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    Session = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = Session()
    try:
        yield db
    finally:
        db.close()
        engine.dispose()


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        cron_secret="test-secret",
        max_label_ops_per_run=50,
        label_op_delay_ms=200,
        labeler_handle="labeler.test",
        labeler_password="app-password",
        ozone_url="https://ozone.test",
    )


@pytest.fixture
def publisher():
    return FakePublisher()


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()
