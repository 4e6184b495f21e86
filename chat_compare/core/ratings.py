"""
Response ratings and the end-of-session summary.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, Mapping, Optional, Tuple

from .catalog import ProviderCatalog
from .session import Message, MessageStatus

MIN_RATING = 1
MAX_RATING = 5


class InvalidRating(ValueError):
    """Raised when a rating is out of range or targets an unratable message."""


@dataclass(frozen=True)
class ProviderScore:
    """Average rating of one provider's responses."""
    provider_id: str
    display_name: str
    average: float
    rating_count: int


@dataclass(frozen=True)
class SessionSummary:
    """Read-only result of an ended session."""
    ended_at: datetime
    scores: Tuple[ProviderScore, ...]
    message_count: int

    @property
    def winner(self) -> Optional[ProviderScore]:
        """Highest-rated provider, if any response was rated."""
        if not self.scores or self.scores[0].rating_count == 0:
            return None
        return self.scores[0]


class RatingLedger:
    """One 1-5 rating per provider response."""

    def __init__(self):
        self._ratings: Dict[str, int] = {}

    def rate(self, message: Message, value: int) -> None:
        """Rate a completed provider response, replacing any earlier rating.

        Args:
            message: Message being rated
            value: Integer from 1 to 5

        Raises:
            InvalidRating: If the value is out of range, or the message is a
                user message or not complete
        """
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidRating(f"Rating must be an integer, got {value!r}")
        if not MIN_RATING <= value <= MAX_RATING:
            raise InvalidRating(f"Rating must be between {MIN_RATING} and {MAX_RATING}, got {value}")
        if message.is_user:
            raise InvalidRating("User messages cannot be rated")
        if message.status is not MessageStatus.COMPLETE:
            raise InvalidRating(f"Only complete responses can be rated, message is {message.status.value}")

        self._ratings[message.id] = value

    def rating_for(self, message_id: str) -> Optional[int]:
        return self._ratings.get(message_id)

    @property
    def ratings(self) -> Dict[str, int]:
        return dict(self._ratings)


def summarize(
    catalog: ProviderCatalog,
    active_providers: Iterable[str],
    messages: Iterable[Message],
    ratings: Mapping[str, int],
) -> Tuple[ProviderScore, ...]:
    """Rank active providers by their average rating.

    Providers without rated responses average 0. Ties keep catalog order.

    Args:
        catalog: Provider catalog (defines tie order and display names)
        active_providers: Provider ids to score
        messages: Session message log
        ratings: Rating per message id

    Returns:
        Scores sorted by average, highest first
    """
    collected: Dict[str, list] = {provider_id: [] for provider_id in active_providers}
    for message in messages:
        if message.is_user or message.status is not MessageStatus.COMPLETE:
            continue
        if message.provider_id not in collected or message.id not in ratings:
            continue
        collected[message.provider_id].append(ratings[message.id])

    scores = []
    for provider_id in sorted(collected, key=catalog.index):
        values = collected[provider_id]
        scores.append(ProviderScore(
            provider_id=provider_id,
            display_name=catalog.get(provider_id).display_name,
            average=sum(values) / len(values) if values else 0.0,
            rating_count=len(values),
        ))

    # sorted() is stable, so equal averages stay in catalog order.
    return tuple(sorted(scores, key=lambda score: score.average, reverse=True))
