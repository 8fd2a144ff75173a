"""
Tests for status classification and transition detection.
"""

from __future__ import annotations

import numpy as np

from notes_consensus.config import ScoringConfig
from notes_consensus.models import NoteScore, NoteStatus
from notes_consensus.status import classify_status, detect_transitions, status_map

CONFIG = ScoringConfig()
CRH = NoteStatus.CURRENTLY_RATED_HELPFUL
CRNH = NoteStatus.CURRENTLY_RATED_NOT_HELPFUL
NMR = NoteStatus.NEEDS_MORE_RATINGS


def _score(note_id, status):
    return NoteScore(note_id=note_id, intercept=0.0, factor=0.0, rating_count=5, status=status)


# --- Classification ---


def test_helpful_threshold_is_inclusive():
    assert classify_status(0.40, 5, CONFIG) == CRH
    assert classify_status(np.nextafter(0.40, 0.0), 5, CONFIG) == NMR


def test_helpful_needs_minimum_ratings():
    assert classify_status(0.9, 4, CONFIG) == NMR
    assert classify_status(0.9, 5, CONFIG) == CRH


def test_not_helpful_threshold_is_inclusive():
    assert classify_status(-0.05, 1, CONFIG) == CRNH
    assert classify_status(-0.5, 100, CONFIG) == CRNH
    assert classify_status(np.nextafter(-0.05, 0.0), 10, CONFIG) == NMR


def test_thresholds_come_from_config():
    strict = ScoringConfig(helpful_threshold=0.6, min_ratings_for_helpful=10)
    assert classify_status(0.5, 20, strict) == NMR
    assert classify_status(0.6, 10, strict) == CRH


# --- Transitions ---


def test_new_note_is_always_a_transition():
    transitions = detect_transitions({}, [_score("n1", NMR)])
    assert len(transitions) == 1
    assert transitions[0].old_status is None
    assert transitions[0].new_status == NMR


def test_unchanged_status_is_not_a_transition():
    transitions = detect_transitions(
        {"n1": CRH, "n2": "CRNH", "n3": None},
        [_score("n1", CRH), _score("n2", CRH), _score("n3", NMR)],
    )
    assert [(t.note_id, t.old_status, t.new_status) for t in transitions] == [
        ("n2", CRNH, CRH),
        ("n3", None, NMR),
    ]


def test_status_map():
    assert status_map([_score("a", CRH), _score("b", NMR)]) == {"a": CRH, "b": NMR}
