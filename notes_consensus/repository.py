"""
Read/write contracts between a scoring run and the database.
"""

import logging
from datetime import datetime, UTC
from typing import Dict, Iterable, List, Optional

import pandas as pd
from sqlalchemy import case, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from notes_consensus.database import Dispute, Note, Rating, Score
from notes_consensus.models import DisputeStatus, NoteScore, NoteStatus, PendingDispute
from notes_consensus.scorer import helpfulnessKey, noteIdKey, raterDidKey


logger = logging.getLogger(__name__)

# Seven bind parameters per row; keeps each statement under SQLite's variable limit
UPSERT_BATCH_SIZE = 500


class ScoreRepository:
    """Database access used by the run orchestrator and dispute resolver."""

    def __init__(self, db: Session):
        self.db = db

    def load_ratings(self) -> pd.DataFrame:
        """
        Load the full rating snapshot as a noteId/raterDid/helpfulness frame.

        Ratings a rater left on their own note are dropped.
        """
        rows = self.db.execute(
            select(Rating.note_id, Rating.rater_did, Rating.helpfulness, Note.author_did)
            .join(Note, Note.id == Rating.note_id)
        ).all()

        self_ratings = sum(1 for r in rows if r.rater_did == r.author_did)
        if self_ratings:
            logger.warning(f"Ignoring {self_ratings} ratings left by note authors on their own notes")

        return pd.DataFrame(
            [
                {noteIdKey: r.note_id, raterDidKey: r.rater_did, helpfulnessKey: r.helpfulness}
                for r in rows
                if r.rater_did != r.author_did
            ],
            columns=[noteIdKey, raterDidKey, helpfulnessKey],
        )

    def load_previous_status(self, note_ids: Iterable[str]) -> Dict[str, Optional[NoteStatus]]:
        """Stored status for each note id; None where no score row exists yet."""
        note_ids = list(note_ids)
        previous: Dict[str, Optional[NoteStatus]] = {note_id: None for note_id in note_ids}
        if not note_ids:
            return previous

        rows = self.db.execute(
            select(Score.note_id, Score.status).where(Score.note_id.in_(note_ids))
        ).all()
        for row in rows:
            previous[row.note_id] = NoteStatus(row.status)
        return previous

    def load_note_post_uri(self, note_id: str) -> Optional[str]:
        return self.db.execute(
            select(Note.post_uri).where(Note.id == note_id)
        ).scalar_one_or_none()

    def load_note_post_uris(self, note_ids: Iterable[str]) -> Dict[str, str]:
        note_ids = list(note_ids)
        if not note_ids:
            return {}
        rows = self.db.execute(
            select(Note.id, Note.post_uri).where(Note.id.in_(note_ids))
        ).all()
        return {row.id: row.post_uri for row in rows}

    def load_pending_disputes(self) -> List[PendingDispute]:
        disputes = self.db.execute(
            select(Dispute)
            .where(Dispute.status == DisputeStatus.PENDING.value)
            .order_by(Dispute.created_at, Dispute.id)
        ).scalars().all()
        return [
            PendingDispute(
                id=d.id,
                dispute_note_id=d.dispute_note_id,
                target_note_id=d.target_note_id,
            )
            for d in disputes
        ]

    def upsert_scores(self, scores: List[NoteScore]) -> int:
        """
        Write every score as insert-or-update statements keyed by note id.

        Rows go out in batches of UPSERT_BATCH_SIZE and are committed
        together. A new row, or one whose status changes, is marked as
        needing a label sync; otherwise the stored sync flag is kept.
        """
        if not scores:
            return 0

        now = datetime.now(UTC)
        values = [
            {
                "note_id": s.note_id,
                "intercept": s.intercept,
                "factor": s.factor,
                "rating_count": s.rating_count,
                "status": s.status.value,
                "label_synced": False,
                "scored_at": now,
            }
            for s in scores
        ]

        insert = pg_insert if self.db.get_bind().dialect.name == "postgresql" else sqlite_insert
        for start in range(0, len(values), UPSERT_BATCH_SIZE):
            stmt = insert(Score).values(values[start:start + UPSERT_BATCH_SIZE])
            stmt = stmt.on_conflict_do_update(
                index_elements=[Score.note_id],
                set_={
                    "intercept": stmt.excluded.intercept,
                    "factor": stmt.excluded.factor,
                    "rating_count": stmt.excluded.rating_count,
                    "status": stmt.excluded.status,
                    "label_synced": case(
                        (Score.status != stmt.excluded.status, False),
                        else_=Score.label_synced,
                    ),
                    "scored_at": stmt.excluded.scored_at,
                },
            )
            self.db.execute(stmt)
        self.db.commit()
        return len(values)

    def load_unsynced_labels(self) -> Dict[str, NoteStatus]:
        """
        Stored status of every note whose label lags behind it, oldest first.

        Targets of approved disputes are left out: their label was retracted
        on purpose and must not be republished.
        """
        retracted = select(Dispute.target_note_id).where(
            Dispute.status == DisputeStatus.APPROVED.value
        )
        rows = self.db.execute(
            select(Score.note_id, Score.status)
            .where(Score.label_synced.is_(False), Score.note_id.not_in(retracted))
            .order_by(Score.scored_at, Score.note_id)
        ).all()
        return {row.note_id: NoteStatus(row.status) for row in rows}

    def mark_labels_synced(self, note_ids: Iterable[str]) -> int:
        note_ids = list(note_ids)
        if not note_ids:
            return 0
        result = self.db.execute(
            update(Score).where(Score.note_id.in_(note_ids)).values(label_synced=True)
        )
        self.db.commit()
        return result.rowcount

    def update_dispute_status(
        self, dispute_id: str, status: DisputeStatus, resolved_at: datetime
    ) -> bool:
        """
        Move a pending dispute to a terminal status.

        Returns False if the dispute was no longer pending, in which case
        nothing is written.
        """
        result = self.db.execute(
            update(Dispute)
            .where(Dispute.id == dispute_id, Dispute.status == DisputeStatus.PENDING.value)
            .values(status=status.value, resolved_at=resolved_at)
        )
        self.db.commit()
        return result.rowcount > 0
