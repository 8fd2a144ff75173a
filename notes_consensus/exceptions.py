"""Custom exceptions for scoring runs."""


class ScoringError(Exception):
    """Base exception for scoring-related errors."""


class ConfigurationError(ScoringError):
    """Raised when a required setting is missing or invalid."""


class ScoringRunError(ScoringError):
    """Raised when a run aborts in a phase that cannot be partially completed."""

    def __init__(self, phase: str, message: str) -> None:
        self.phase = phase
        super().__init__(f"Scoring run failed while {phase}: {message}")
