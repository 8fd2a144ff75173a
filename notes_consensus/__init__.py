"""
Community Notes Scoring Service.

Periodically fits a bridging-consensus model over every rating of every
community note, classifies each note as helpful, not helpful or needing
more ratings, and keeps the moderation label on the annotated post in
step with that status. Counter-notes that reach a consensus settle the
disputes they were filed for.
"""

__version__ = "0.1.0"
