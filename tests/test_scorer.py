"""
Tests for the bias/factor consensus scorer.
"""

from __future__ import annotations

import numpy as np
import pandas as pd

from notes_consensus.config import ScoringConfig
from notes_consensus.models import NoteStatus
from notes_consensus.scorer import ConsensusScorer, prepare_ratings, score_notes


def _frame(rows):
    return pd.DataFrame(rows, columns=["noteId", "raterDid", "helpfulness"])


def _population_rows():
    rows = [
        ("note-target", "r1", "helpful"),
        ("note-target", "r2", "helpful"),
        ("note-target", "r3", "helpful"),
        ("note-target", "r4", "neutral"),
        ("note-target", "r5", "not_helpful"),
    ]
    for i in range(1, 5):
        rows += [(f"note-bg-{i}", f"bg{i}-{j}", "not_helpful") for j in range(5)]
    return rows


def _polarized_rows():
    """Two rater camps of five; one note both camps like, three per camp liked by one side only."""
    camp_a = [f"a{i}" for i in range(5)]
    camp_b = [f"b{i}" for i in range(5)]
    rows = [("bridging", r, "helpful") for r in camp_a + camp_b]
    for k in range(3):
        rows += [(f"left-{k}", r, "helpful") for r in camp_a]
        rows += [(f"left-{k}", r, "not_helpful") for r in camp_b]
        rows += [(f"right-{k}", r, "not_helpful") for r in camp_a]
        rows += [(f"right-{k}", r, "helpful") for r in camp_b]
    return rows


# --- Input preparation ---


def test_prepare_ratings_maps_levels_and_drops_duplicates():
    df = prepare_ratings(_frame([
        ("n1", "r1", "helpful"),
        ("n1", "r2", "neutral"),
        ("n1", "r1", "not_helpful"),
    ]))
    assert len(df) == 2
    # Last rating wins for a repeated (note, rater) pair
    assert df.loc[df["raterDid"] == "r1", "helpfulNum"].item() == 0.0
    assert df.loc[df["raterDid"] == "r2", "helpfulNum"].item() == 0.5


def test_duplicate_ratings_count_once():
    scores, _ = score_notes(_frame([
        ("n1", "r1", "helpful"),
        ("n1", "r1", "helpful"),
        ("n1", "r2", "helpful"),
    ]))
    assert len(scores) == 1
    assert scores[0].rating_count == 2


def test_empty_ratings_score_nothing():
    scores, fit = ConsensusScorer().score(_frame([]))
    assert scores == []
    assert fit.note_params.empty
    assert fit.final_loss is None


# --- Fitting ---


def test_fit_is_deterministic():
    ratings = _frame(_polarized_rows())
    first = ConsensusScorer().fit(ratings)
    second = ConsensusScorer().fit(ratings)

    pd.testing.assert_frame_equal(first.note_params, second.note_params)
    pd.testing.assert_frame_equal(first.rater_params, second.rater_params)
    assert first.global_intercept == second.global_intercept


def test_fit_ignores_row_order():
    ratings = _frame(_polarized_rows())
    shuffled = ratings.sample(frac=1.0, random_state=7).reset_index(drop=True)

    first = ConsensusScorer().fit(ratings)
    second = ConsensusScorer().fit(shuffled)

    assert list(first.note_params["noteId"]) == list(second.note_params["noteId"])
    assert np.allclose(first.note_params["intercept"], second.note_params["intercept"], atol=1e-8)
    assert np.allclose(first.note_params["factor"], second.note_params["factor"], atol=1e-8)


def test_fit_converges_and_loss_never_increases():
    fit = ConsensusScorer().fit(_frame(_population_rows()))
    assert fit.converged
    assert fit.iterations < ScoringConfig().max_iterations
    assert np.all(np.diff(fit.loss_history) <= 1e-12)

    fit = ConsensusScorer().fit(_frame(_polarized_rows()))
    losses = np.array(fit.loss_history)
    assert np.all(np.diff(losses) <= 1e-9)


def test_iteration_cap_reports_not_converged():
    config = ScoringConfig(max_iterations=2, convergence_threshold=0.0)
    fit = ConsensusScorer(config).fit(_frame(_polarized_rows()))
    assert not fit.converged
    assert fit.iterations == 2
    # Parameters are still returned for every note
    assert len(fit.note_params) == 7


def test_bridging_note_beats_partisan_notes():
    fit = ConsensusScorer().fit(_frame(_polarized_rows()))
    params = fit.note_params.set_index("noteId")

    bridging = params.loc["bridging"]
    partisan = params.drop(index="bridging")

    assert (bridging["intercept"] > partisan["intercept"]).all()
    assert (partisan["factor"].abs() > abs(bridging["factor"])).all()
    # Opposite camps end up on opposite sides of the viewpoint axis
    assert np.sign(params.loc["left-0", "factor"]) == -np.sign(params.loc["right-0", "factor"])


def test_thin_raters_get_no_factor():
    fit = ConsensusScorer().fit(_frame(_population_rows()))
    assert (fit.rater_params["factor"] == 0.0).all()


def test_population_classification():
    scores, fit = score_notes(_frame(_population_rows()))
    by_id = {s.note_id: s for s in scores}

    target = by_id["note-target"]
    assert target.rating_count == 5
    assert target.intercept >= 0.40
    assert target.status == NoteStatus.CURRENTLY_RATED_HELPFUL

    for i in range(1, 5):
        background = by_id[f"note-bg-{i}"]
        assert background.intercept <= -0.05
        assert background.status == NoteStatus.CURRENTLY_RATED_NOT_HELPFUL

    assert 0.0 < fit.global_intercept < 0.2


def test_same_note_with_fewer_ratings_is_not_helpful_yet():
    rows = [r for r in _population_rows() if r[1] != "r5"]
    scores, _ = score_notes(_frame(rows))
    target = next(s for s in scores if s.note_id == "note-target")
    assert target.rating_count == 4
    assert target.status != NoteStatus.CURRENTLY_RATED_HELPFUL
