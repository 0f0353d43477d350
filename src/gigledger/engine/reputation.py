"""Reputation — running-average rating updates.

The rating is an integer on a 0-5 scale, 0 meaning "never rated". Each
new score is folded in with weight 1 against the ratee's current rating
weighted by the ratee's completed_jobs counter:

    new = floor((old * completed_jobs + score) / (completed_jobs + 1))

completed_jobs counts jobs finished as a freelancer, so it is used as
the weight for ratings received as a client too. That coupling is kept
deliberately. The result is clamped to [MIN_RATING, MAX_RATING]: a first
score folded against the initial 0 would otherwise truncate to 0.
"""

from __future__ import annotations

from gigledger.errors import InvalidRatingError

MIN_RATING = 1
MAX_RATING = 5


def validate_score(score: int) -> None:
    """Raise InvalidRatingError unless score is an int in [1, 5]."""
    if isinstance(score, bool) or not isinstance(score, int):
        raise InvalidRatingError(f"Rating must be an integer, got {score!r}")
    if not MIN_RATING <= score <= MAX_RATING:
        raise InvalidRatingError(
            f"Rating must be between {MIN_RATING} and {MAX_RATING}, got {score}"
        )


def updated_rating(current: int, completed_jobs: int, score: int) -> int:
    """Fold one score into a running average.

    Args:
        current: The ratee's rating before this score.
        completed_jobs: The ratee's completed_jobs counter right now.
        score: The new score, 1-5.

    Returns:
        The new rating, always within [1, 5].
    """
    validate_score(score)
    if completed_jobs < 0:
        raise ValueError(f"completed_jobs cannot be negative: {completed_jobs}")
    averaged = (current * completed_jobs + score) // (completed_jobs + 1)
    return max(MIN_RATING, min(MAX_RATING, averaged))
