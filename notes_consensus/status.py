"""
Status classification and transition detection.

Both are pure functions: a status depends only on the fitted intercept and
rating count, and a transition only on the previous and new status.
"""

from typing import Dict, Iterable, List, Mapping, Optional, Union

from notes_consensus.config import ScoringConfig
from notes_consensus.models import NoteScore, NoteStatus, StatusTransition


def classify_status(intercept: float, rating_count: int, config: ScoringConfig) -> NoteStatus:
    """
    Map a note's intercept and rating count to its status.

    The factor plays no part here; it only absorbs viewpoint-aligned
    agreement during the fit.
    """
    if intercept >= config.helpful_threshold and rating_count >= config.min_ratings_for_helpful:
        return NoteStatus.CURRENTLY_RATED_HELPFUL
    if intercept <= config.not_helpful_threshold:
        return NoteStatus.CURRENTLY_RATED_NOT_HELPFUL
    return NoteStatus.NEEDS_MORE_RATINGS


def _as_status(value: Union[NoteStatus, str, None]) -> Optional[NoteStatus]:
    if value is None:
        return None
    return NoteStatus(value)


def detect_transitions(
    previous: Mapping[str, Union[NoteStatus, str, None]],
    scores: Iterable[NoteScore],
) -> List[StatusTransition]:
    """
    Compare freshly computed statuses against the previous run's.

    A note missing from previous counts as having had no status, so its
    first score is always a transition. Output keeps the order of scores.
    """
    transitions: List[StatusTransition] = []
    for score in scores:
        old_status = _as_status(previous.get(score.note_id))
        if old_status != score.status:
            transitions.append(StatusTransition(
                note_id=score.note_id,
                old_status=old_status,
                new_status=score.status,
            ))
    return transitions


def status_map(scores: Iterable[NoteScore]) -> Dict[str, NoteStatus]:
    return {score.note_id: score.status for score in scores}
