"""
Dispute resolution.

A dispute links a counter-note to the note it contests. Once the counter-note
itself reaches a consensus, the dispute is settled for good: a helpful
counter-note retracts the target note's label, a not-helpful one is rejected.
"""

import logging
from datetime import datetime, UTC
from typing import List, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError

from notes_consensus.label_queue import LabelOperation, LabelOutcome, LabelQueue
from notes_consensus.models import (
    DisputeCounts, DisputeStatus, LabelAction, NoteStatus, PendingDispute
)
from notes_consensus.repository import ScoreRepository


logger = logging.getLogger(__name__)


class DisputeResolver:
    """Settles pending disputes against this run's freshly computed statuses."""

    def __init__(self, repository: ScoreRepository, label_queue: LabelQueue):
        self.repository = repository
        self.label_queue = label_queue

    def resolve(
        self,
        disputes: List[PendingDispute],
        statuses: Mapping[str, NoteStatus],
    ) -> DisputeCounts:
        counts = DisputeCounts(pending=len(disputes))

        for dispute in disputes:
            status = statuses.get(dispute.dispute_note_id)

            if status == NoteStatus.CURRENTLY_RATED_HELPFUL:
                resolution = self._approve(dispute, counts)
            elif status == NoteStatus.CURRENTLY_RATED_NOT_HELPFUL:
                resolution = DisputeStatus.REJECTED
            else:
                # NMR or not scored yet
                continue

            if resolution is None:
                continue

            try:
                changed = self.repository.update_dispute_status(
                    dispute.id, resolution, datetime.now(UTC)
                )
            except SQLAlchemyError:
                self.repository.db.rollback()
                logger.exception(f"Failed to mark dispute {dispute.id} {resolution.value}")
                counts.errors += 1
                continue

            if not changed:
                logger.info(f"Dispute {dispute.id} was already resolved, leaving it unchanged")
                continue

            counts.resolved += 1
            if resolution == DisputeStatus.APPROVED:
                counts.approved += 1
            else:
                counts.rejected += 1

        logger.info(
            f"Disputes: {counts.pending} pending, {counts.approved} approved, "
            f"{counts.rejected} rejected, {counts.errors} errors"
        )
        return counts

    def _approve(self, dispute: PendingDispute, counts: DisputeCounts) -> Optional[DisputeStatus]:
        """
        Retract the target note's label, then approve.

        A failed retraction still approves the dispute; only a label call
        deferred by the rate limit keeps it pending for the next run.
        """
        post_uri = self.repository.load_note_post_uri(dispute.target_note_id)
        if post_uri is None:
            logger.warning(
                f"Target note {dispute.target_note_id} of dispute {dispute.id} no longer exists"
            )
            return DisputeStatus.APPROVED

        result = self.label_queue.run(LabelOperation(
            note_id=dispute.target_note_id,
            post_uri=post_uri,
            action=LabelAction.NEGATE,
        ))
        if result.outcome == LabelOutcome.DEFERRED:
            return None
        if result.outcome == LabelOutcome.FAILED:
            logger.warning(
                f"Approving dispute {dispute.id} although negating note "
                f"{dispute.target_note_id} failed: {result.error}"
            )
            counts.errors += 1
        return DisputeStatus.APPROVED
