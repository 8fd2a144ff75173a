"""
Run orchestrator for community-note scoring.

One call to ScoringService.run_scoring() is one batch run:

    loading ratings -> scoring -> persisting scores -> publishing labels
        -> resolving disputes -> reporting

Scores are recomputed from the full rating set every time, so a run that dies
halfway is simply redone by the next one. Only the bulk read and the score
write are fatal; label and dispute failures are counted per note.
"""

import json
import logging
import time
from datetime import datetime, UTC
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from notes_consensus.config import Settings, get_settings
from notes_consensus.database import ScoringRun
from notes_consensus.disputes import DisputeResolver
from notes_consensus.exceptions import ScoringRunError
from notes_consensus.label_queue import (
    FixedDelay, LabelOperation, LabelOutcome, LabelQueue, LabelResult
)
from notes_consensus.labels import LabelPublisher
from notes_consensus.models import (
    LabelAction, LabelCounts, NoteStatus, RunPhase, RunSummary,
    StatusTransition
)
from notes_consensus.repository import ScoreRepository
from notes_consensus.scorer import ConsensusScorer
from notes_consensus.status import detect_transitions, status_map


logger = logging.getLogger(__name__)


class ScoringService:
    """
    Batch entry point tying scorer, repository, label queue and disputes together.
    """

    ALGORITHM_VERSION = "1.0.0"

    def __init__(
        self,
        db: Session,
        publisher: LabelPublisher,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db
        self.publisher = publisher
        self.settings = settings or get_settings()
        self.config = self.settings.scoring_config()
        self.repository = ScoreRepository(db)
        self.scorer = ConsensusScorer(self.config)
        self.label_queue = LabelQueue(
            publisher,
            max_operations=self.settings.max_label_ops_per_run,
            delay_policy=FixedDelay(self.settings.label_op_delay_ms / 1000.0),
            sleep=sleep,
        )
        self.phase: Optional[RunPhase] = None

    def run_scoring(self) -> RunSummary:
        """
        Run one full scoring pass.

        Raises:
            ScoringRunError: if ratings cannot be loaded or scores cannot be
                written; nothing downstream of the failure is attempted.
        """
        start_time = time.time()
        scoring_run = self._start_scoring_run()
        summary = RunSummary()

        try:
            self._enter(RunPhase.LOADING_RATINGS)
            ratings = self.repository.load_ratings()
            summary.ratings = len(ratings)

            if ratings.empty:
                logger.info("No ratings found, nothing to score")
                return self._finalize_scoring_run(scoring_run, summary, start_time)

            disputes = self.repository.load_pending_disputes()

            self._enter(RunPhase.SCORING)
            scores, fit = self.scorer.score(ratings)
            summary.scored = len(scores)
            summary.converged = fit.converged

            self._enter(RunPhase.PERSISTING_SCORES)
            # Read old statuses and lagging labels before the upsert overwrites them
            previous = self.repository.load_previous_status(s.note_id for s in scores)
            carried_over = self.repository.load_unsynced_labels()
            self.repository.upsert_scores(scores)

        except SQLAlchemyError as e:
            self.db.rollback()
            logger.exception(f"Scoring run aborted while {self.phase.value}")
            self._fail_scoring_run(scoring_run, str(e))
            raise ScoringRunError(self.phase.value, str(e)) from e

        self._enter(RunPhase.PUBLISHING_LABELS)
        statuses = status_map(scores)
        transitions = detect_transitions(previous, scores)
        summary.labels = self._publish_labels(transitions, carried_over, statuses)

        self._enter(RunPhase.RESOLVING_DISPUTES)
        label_calls_before = len(self.label_queue.results)
        resolver = DisputeResolver(self.repository, self.label_queue)
        summary.disputes = resolver.resolve(disputes, statuses)
        self._tally(self.label_queue.results[label_calls_before:], summary.labels)

        return self._finalize_scoring_run(scoring_run, summary, start_time)

    # -------------------------------------------------------------------------
    # Phases
    # -------------------------------------------------------------------------

    def _enter(self, phase: RunPhase):
        self.phase = phase
        logger.info(f"Scoring run: {phase.value}")

    def _publish_labels(
        self,
        transitions: List[StatusTransition],
        carried_over: Dict[str, NoteStatus],
        statuses: Dict[str, NoteStatus],
    ) -> LabelCounts:
        """
        Queue one label operation per note whose label lags its status and
        drain the queue.

        Notes left unsynced by earlier runs (deferred or failed) go first,
        labelled with their current status; this run's transitions follow.
        Notes whose call succeeds, or that have no post to label, are marked
        synced; everything else is retried next run.
        """
        counts = LabelCounts(changed=len(transitions))

        pending: Dict[str, NoteStatus] = {}
        for note_id, stored_status in carried_over.items():
            pending[note_id] = statuses.get(note_id, stored_status)
        counts.carried_over = len(pending)
        for transition in transitions:
            pending.setdefault(transition.note_id, transition.new_status)

        if not pending:
            return counts

        try:
            post_uris = self.repository.load_note_post_uris(pending)
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Could not load post URIs, deferring all label operations")
            counts.deferred = len(pending)
            return counts

        synced: List[str] = []
        for note_id, status in pending.items():
            post_uri = post_uris.get(note_id)
            if post_uri is None:
                logger.warning(f"Note {note_id} has no post URI, skipping label")
                counts.skipped += 1
                synced.append(note_id)
                continue
            self.label_queue.submit(self._operation_for(note_id, status, post_uri))

        results = self.label_queue.drain()
        self._tally(results, counts)
        synced.extend(
            r.operation.note_id for r in results
            if r.outcome in (LabelOutcome.PUBLISHED, LabelOutcome.NEGATED)
        )
        self._mark_synced(synced)

        logger.info(
            f"Labels: {counts.changed} changed, {counts.carried_over} carried over, "
            f"{counts.published} published, {counts.negated} negated, "
            f"{counts.errors} errors, {counts.deferred} deferred"
        )
        return counts

    def _operation_for(self, note_id: str, status: NoteStatus, post_uri: str) -> LabelOperation:
        if status == NoteStatus.CURRENTLY_RATED_NOT_HELPFUL:
            return LabelOperation(note_id, post_uri, LabelAction.NEGATE)
        return LabelOperation(note_id, post_uri, LabelAction.PUBLISH, status)

    def _mark_synced(self, note_ids: List[str]):
        try:
            self.repository.mark_labels_synced(note_ids)
        except SQLAlchemyError:
            # The labels went out; the next run just repeats the calls
            self.db.rollback()
            logger.exception(f"Could not mark {len(note_ids)} labels as synced")

    @staticmethod
    def _tally(results: List[LabelResult], counts: LabelCounts):
        for result in results:
            if result.outcome == LabelOutcome.PUBLISHED:
                counts.published += 1
            elif result.outcome == LabelOutcome.NEGATED:
                counts.negated += 1
            elif result.outcome == LabelOutcome.FAILED:
                counts.errors += 1
            else:
                counts.deferred += 1

    # -------------------------------------------------------------------------
    # Run log
    # -------------------------------------------------------------------------

    def _start_scoring_run(self) -> ScoringRun:
        scoring_run = ScoringRun(
            started_at=datetime.now(UTC),
            algorithm_version=self.ALGORITHM_VERSION,
            config_snapshot=json.dumps({
                **self.config.model_dump(),
                "max_label_ops_per_run": self.settings.max_label_ops_per_run,
                "label_op_delay_ms": self.settings.label_op_delay_ms,
            })
        )
        try:
            self.db.add(scoring_run)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.exception("Could not record scoring run start")
            raise ScoringRunError(RunPhase.LOADING_RATINGS.value, str(e)) from e
        return scoring_run

    def _fail_scoring_run(self, scoring_run: ScoringRun, error: str):
        try:
            scoring_run.success = False
            scoring_run.error_message = error
            scoring_run.completed_at = datetime.now(UTC)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Could not record scoring run failure")

    def _finalize_scoring_run(
        self,
        scoring_run: ScoringRun,
        summary: RunSummary,
        start_time: float
    ) -> RunSummary:
        """Finalize and log the scoring run."""
        self._enter(RunPhase.REPORTING)
        duration = time.time() - start_time
        now = datetime.now(UTC)

        summary.duration_ms = int(duration * 1000)
        summary.scored_at = now

        try:
            scoring_run.completed_at = now
            scoring_run.notes_scored = summary.scored
            scoring_run.ratings_processed = summary.ratings
            scoring_run.status_changes = summary.labels.changed
            scoring_run.labels_published = summary.labels.published
            scoring_run.labels_negated = summary.labels.negated
            scoring_run.label_errors = summary.labels.errors
            scoring_run.disputes_resolved = summary.disputes.resolved
            scoring_run.duration_seconds = duration
            scoring_run.success = True
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Could not record scoring run result")

        logger.info(
            f"[COMMUNITY NOTES SCORING] scored={summary.scored} ratings={summary.ratings} "
            f"labels_published={summary.labels.published} labels_negated={summary.labels.negated} "
            f"label_errors={summary.labels.errors} label_deferred={summary.labels.deferred} "
            f"disputes_resolved={summary.disputes.resolved} duration={summary.duration_ms}ms"
        )
        return summary
