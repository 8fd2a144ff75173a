"""
Configuration settings for the community-note scoring service.
"""

from functools import lru_cache
from typing import Optional

from pydantic import BaseModel, ConfigDict
from pydantic_settings import BaseSettings


class ScoringConfig(BaseModel):
    """
    Immutable parameters for the consensus model and the status classifier.

    Built once per run from Settings and passed explicitly to the scorer and
    classifier, so tests can vary thresholds without touching global state.
    """

    # Status classifier
    helpful_threshold: float = 0.40
    not_helpful_threshold: float = -0.05
    min_ratings_for_helpful: int = 5

    # Bias/factor model
    intercept_lambda: float = 0.15
    factor_lambda: float = 0.03
    global_intercept_lambda: float = 0.15
    convergence_threshold: float = 1e-7
    max_iterations: int = 1000
    min_ratings_for_rater_factor: int = 5
    factor_init_seed: int = 42
    factor_init_scale: float = 0.1

    model_config = ConfigDict(frozen=True)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Settings
    app_name: str = "Community Notes Scoring"
    app_version: str = "0.1.0"
    debug: bool = False

    # Database
    database_url: str = "sqlite:///./community_notes.db"
    database_timeout_seconds: int = 30

    # Run trigger
    cron_secret: Optional[str] = None
    scoring_interval_minutes: int = 30
    run_scheduler: bool = False  # Run scoring in-process instead of via the trigger

    # Status thresholds
    helpful_threshold: float = 0.40
    not_helpful_threshold: float = -0.05
    min_ratings_for_helpful: int = 5

    # Matrix factorization parameters
    mf_intercept_lambda: float = 0.15  # 5x the factor regularization
    mf_factor_lambda: float = 0.03
    mf_global_intercept_lambda: float = 0.15
    mf_convergence_threshold: float = 1e-7
    mf_max_iterations: int = 1000
    min_ratings_for_rater_factor: int = 5
    mf_factor_init_seed: int = 42
    mf_factor_init_scale: float = 0.1

    # Label publishing
    labeler_service_url: str = "https://bsky.social"
    labeler_handle: Optional[str] = None
    labeler_password: Optional[str] = None
    labeler_did: str = "did:plc:7c7tx56n64jhzezlwox5dja6"
    ozone_url: Optional[str] = None
    label_request_timeout_seconds: float = 10.0
    max_label_ops_per_run: int = 50
    label_op_delay_ms: int = 200

    # Logging
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_prefix = "CN_"

    def scoring_config(self) -> ScoringConfig:
        """Snapshot the scoring-related settings into an immutable config."""
        return ScoringConfig(
            helpful_threshold=self.helpful_threshold,
            not_helpful_threshold=self.not_helpful_threshold,
            min_ratings_for_helpful=self.min_ratings_for_helpful,
            intercept_lambda=self.mf_intercept_lambda,
            factor_lambda=self.mf_factor_lambda,
            global_intercept_lambda=self.mf_global_intercept_lambda,
            convergence_threshold=self.mf_convergence_threshold,
            max_iterations=self.mf_max_iterations,
            min_ratings_for_rater_factor=self.min_ratings_for_rater_factor,
            factor_init_seed=self.mf_factor_init_seed,
            factor_init_scale=self.mf_factor_init_scale,
        )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
