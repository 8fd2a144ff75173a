"""
Consensus scorer: a one-factor bias model fit over every rating.

Each rating is predicted as

    mu + noteIntercept[n] + raterIntercept[r] + noteFactor[n] * raterFactor[r]

where mu is the global bias. The note intercept is the part of a note's
helpfulness that the factor term cannot explain, i.e. agreement that holds
across raters regardless of where they sit on the latent viewpoint axis.

Parameters are fit by exact alternating least squares with L2 regularization:
raters are solved with notes fixed, then notes with raters fixed, then the
global bias. Each block has a closed-form 2x2 ridge solution per entity, so
the objective never increases between passes.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from notes_consensus.config import ScoringConfig
from notes_consensus.models import HelpfulnessLevel, NoteScore
from notes_consensus.status import classify_status


logger = logging.getLogger(__name__)


noteIdKey = "noteId"
raterDidKey = "raterDid"
helpfulnessKey = "helpfulness"
helpfulNumKey = "helpfulNum"
interceptKey = "intercept"
factorKey = "factor"
ratingCountKey = "ratingCount"

HELPFULNESS_VALUES: Dict[str, float] = {
    HelpfulnessLevel.HELPFUL.value: 1.0,
    HelpfulnessLevel.NEUTRAL.value: 0.5,
    HelpfulnessLevel.NOT_HELPFUL.value: 0.0,
}


@dataclass
class FitResult:
    """Output of one model fit."""

    note_params: pd.DataFrame
    rater_params: pd.DataFrame
    global_intercept: float
    loss_history: List[float] = field(default_factory=list)
    iterations: int = 0
    converged: bool = True

    @property
    def final_loss(self) -> Optional[float]:
        return self.loss_history[-1] if self.loss_history else None


def _empty_params(id_key: str) -> pd.DataFrame:
    return pd.DataFrame({
        id_key: pd.Series(dtype=object),
        interceptKey: pd.Series(dtype=float),
        factorKey: pd.Series(dtype=float),
        ratingCountKey: pd.Series(dtype=int),
    })


def prepare_ratings(ratings: pd.DataFrame) -> pd.DataFrame:
    """
    Normalize a ratings frame for fitting.

    Helpfulness levels are mapped onto [0, 1] and repeated (note, rater)
    pairs are collapsed to the last one seen, so each rater counts once
    per note.
    """
    if ratings.empty:
        return pd.DataFrame({
            noteIdKey: pd.Series(dtype=object),
            raterDidKey: pd.Series(dtype=object),
            helpfulNumKey: pd.Series(dtype=float),
        })

    df = ratings[[noteIdKey, raterDidKey, helpfulnessKey]].copy()
    if pd.api.types.is_numeric_dtype(df[helpfulnessKey]):
        df[helpfulNumKey] = df[helpfulnessKey].astype(float)
    else:
        df[helpfulNumKey] = df[helpfulnessKey].map(
            lambda v: HELPFULNESS_VALUES.get(getattr(v, "value", v), 0.5)
        )

    before = len(df)
    df = df.drop_duplicates(subset=[noteIdKey, raterDidKey], keep="last")
    if len(df) < before:
        logger.warning(f"Dropped {before - len(df)} duplicate (note, rater) ratings")

    return df[[noteIdKey, raterDidKey, helpfulNumKey]].reset_index(drop=True)


def _solve_block(
    idx: np.ndarray,
    size: int,
    residual: np.ndarray,
    other_factor: np.ndarray,
    intercept_lambda: float,
    factor_lambda: float,
    factor_active: Optional[np.ndarray] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Ridge-solve (intercept, factor) for every entity in one block.

    residual is what is left of each rating once the other block and the
    global bias are removed; other_factor is the other block's factor for
    the same rating. Entities with factor_active False only get an intercept.
    """
    s11 = np.bincount(idx, minlength=size) + intercept_lambda
    s12 = np.bincount(idx, weights=other_factor, minlength=size)
    s22 = np.bincount(idx, weights=other_factor * other_factor, minlength=size) + factor_lambda
    t1 = np.bincount(idx, weights=residual, minlength=size)
    t2 = np.bincount(idx, weights=residual * other_factor, minlength=size)

    det = s11 * s22 - s12 * s12
    intercept = (s22 * t1 - s12 * t2) / det
    factor = (s11 * t2 - s12 * t1) / det

    if factor_active is not None:
        intercept = np.where(factor_active, intercept, t1 / s11)
        factor = np.where(factor_active, factor, 0.0)

    return intercept, factor


class ConsensusScorer:
    """
    Fits the bias/factor model and classifies every rated note.

    Stateless between calls: a fit depends only on the ratings passed in and
    the config, so re-running on an unchanged rating set reproduces the same
    parameters bit for bit.
    """

    def __init__(self, config: Optional[ScoringConfig] = None):
        self.config = config or ScoringConfig()

    def fit(self, ratings: pd.DataFrame) -> FitResult:
        """
        Fit the model to a ratings frame with noteId, raterDid, helpfulness.

        Initialization is fixed: ids are sorted, intercepts start at 0, mu at
        the global mean, and factors are drawn from a generator seeded with
        config.factor_init_seed.
        """
        cfg = self.config
        df = prepare_ratings(ratings)
        if df.empty:
            return FitResult(
                note_params=_empty_params(noteIdKey),
                rater_params=_empty_params(raterDidKey),
                global_intercept=0.0,
            )

        note_index = pd.Index(sorted(df[noteIdKey].unique()))
        rater_index = pd.Index(sorted(df[raterDidKey].unique()))
        n_idx = note_index.get_indexer(df[noteIdKey])
        r_idx = rater_index.get_indexer(df[raterDidKey])
        y = df[helpfulNumKey].to_numpy(dtype=float)

        num_notes = len(note_index)
        num_raters = len(rater_index)
        note_counts = np.bincount(n_idx, minlength=num_notes)
        rater_counts = np.bincount(r_idx, minlength=num_raters)

        # Raters with too few ratings cannot place themselves on the viewpoint axis
        factor_active = rater_counts >= cfg.min_ratings_for_rater_factor

        rng = np.random.default_rng(cfg.factor_init_seed)
        rater_factor = rng.normal(0.0, cfg.factor_init_scale, num_raters) * factor_active
        note_factor = rng.normal(0.0, cfg.factor_init_scale, num_notes)
        rater_intercept = np.zeros(num_raters)
        note_intercept = np.zeros(num_notes)
        mu = float(y.mean())

        logger.info(
            f"Fitting bias/factor model on {len(y)} ratings "
            f"({num_notes} notes, {num_raters} raters, "
            f"{int(factor_active.sum())} raters with factors)"
        )

        loss_history: List[float] = []
        prev_loss = np.inf
        improvement = np.inf
        converged = False
        iteration = 0

        for iteration in range(1, cfg.max_iterations + 1):
            rater_intercept, rater_factor = _solve_block(
                r_idx, num_raters,
                y - mu - note_intercept[n_idx],
                note_factor[n_idx],
                cfg.intercept_lambda, cfg.factor_lambda,
                factor_active,
            )
            note_intercept, note_factor = _solve_block(
                n_idx, num_notes,
                y - mu - rater_intercept[r_idx],
                rater_factor[r_idx],
                cfg.intercept_lambda, cfg.factor_lambda,
            )
            interaction = note_factor[n_idx] * rater_factor[r_idx]
            mu = float(
                (y - note_intercept[n_idx] - rater_intercept[r_idx] - interaction).sum()
                / (len(y) + cfg.global_intercept_lambda)
            )

            loss = self._loss(
                y, n_idx, r_idx, mu,
                note_intercept, note_factor, rater_intercept, rater_factor,
            )
            loss_history.append(loss)

            improvement = prev_loss - loss
            if improvement < cfg.convergence_threshold:
                converged = True
                break
            prev_loss = loss

        if not converged:
            logger.warning(
                f"Model did not converge after {iteration} iterations "
                f"(last improvement {improvement:.3g})"
            )
        else:
            logger.info(f"Model converged after {iteration} iterations, loss {loss_history[-1]:.6f}")

        note_factor, rater_factor = self._flip_factors_for_identification(note_factor, rater_factor)

        note_params = pd.DataFrame({
            noteIdKey: note_index.to_numpy(),
            interceptKey: note_intercept,
            factorKey: note_factor,
            ratingCountKey: note_counts,
        })
        rater_params = pd.DataFrame({
            raterDidKey: rater_index.to_numpy(),
            interceptKey: rater_intercept,
            factorKey: rater_factor,
            ratingCountKey: rater_counts,
        })

        return FitResult(
            note_params=note_params,
            rater_params=rater_params,
            global_intercept=mu,
            loss_history=loss_history,
            iterations=iteration,
            converged=converged,
        )

    def score(self, ratings: pd.DataFrame) -> Tuple[List[NoteScore], FitResult]:
        """Fit the model and classify every note with at least one rating."""
        fit = self.fit(ratings)
        scores = [
            NoteScore(
                note_id=str(row.noteId),
                intercept=float(row.intercept),
                factor=float(row.factor),
                rating_count=int(row.ratingCount),
                status=classify_status(float(row.intercept), int(row.ratingCount), self.config),
            )
            for row in fit.note_params.itertuples(index=False)
        ]
        return scores, fit

    def _loss(
        self,
        y: np.ndarray,
        n_idx: np.ndarray,
        r_idx: np.ndarray,
        mu: float,
        note_intercept: np.ndarray,
        note_factor: np.ndarray,
        rater_intercept: np.ndarray,
        rater_factor: np.ndarray,
    ) -> float:
        """Squared error plus every L2 penalty in the objective."""
        cfg = self.config
        pred = (
            mu
            + note_intercept[n_idx]
            + rater_intercept[r_idx]
            + note_factor[n_idx] * rater_factor[r_idx]
        )
        squared_error = float(((y - pred) ** 2).sum())
        penalty = (
            cfg.intercept_lambda * (float((note_intercept ** 2).sum()) + float((rater_intercept ** 2).sum()))
            + cfg.factor_lambda * (float((note_factor ** 2).sum()) + float((rater_factor ** 2).sum()))
            + cfg.global_intercept_lambda * mu * mu
        )
        return squared_error + penalty

    def _flip_factors_for_identification(
        self, note_factor: np.ndarray, rater_factor: np.ndarray
    ) -> Tuple[np.ndarray, np.ndarray]:
        """Flip factors if needed, so that the larger group of raters gets a negative factor."""
        nonzero = rater_factor[rater_factor != 0]
        if nonzero.size and (nonzero < 0).sum() / nonzero.size < 0.5:
            return -note_factor, -rater_factor
        return note_factor, rater_factor


def score_notes(
    ratings: pd.DataFrame, config: Optional[ScoringConfig] = None
) -> Tuple[List[NoteScore], FitResult]:
    """Convenience wrapper: fit and classify in one call."""
    return ConsensusScorer(config).score(ratings)
