"""
Tests for response ratings and the session summary.
"""

import pytest

from chat_compare.core.ratings import InvalidRating, RatingLedger, summarize
from chat_compare.core.session import USER, MessageStatus, SessionState


@pytest.fixture
def session(catalog, clock):
    state = SessionState(catalog, "a", clock=clock)
    state.add_provider("b")
    state.add_provider("c")
    return state


def reply(session, provider_id, status=MessageStatus.COMPLETE):
    return session.append_message(provider_id, "answer", status)


class TestRatingLedger:
    """Test rating validation."""

    def test_rate_and_overwrite(self, session):
        ratings = RatingLedger()
        message = reply(session, "a")

        ratings.rate(message, 2)
        ratings.rate(message, 5)

        assert ratings.rating_for(message.id) == 5
        assert ratings.ratings == {message.id: 5}

    @pytest.mark.parametrize("value", [0, 6, -1, 3.5, "4", True])
    def test_out_of_range_rejected(self, session, value):
        ratings = RatingLedger()
        message = reply(session, "a")
        with pytest.raises(InvalidRating):
            ratings.rate(message, value)
        assert ratings.ratings == {}

    def test_rejected_rating_keeps_previous(self, session):
        ratings = RatingLedger()
        message = reply(session, "a")
        ratings.rate(message, 4)
        with pytest.raises(InvalidRating):
            ratings.rate(message, 9)
        assert ratings.rating_for(message.id) == 4

    def test_user_message_cannot_be_rated(self, session):
        message = session.append_message(USER, "question", MessageStatus.COMPLETE)
        with pytest.raises(InvalidRating, match="User messages"):
            RatingLedger().rate(message, 3)

    @pytest.mark.parametrize("status", [
        MessageStatus.PENDING,
        MessageStatus.ERROR,
        MessageStatus.BUDGET_EXHAUSTED,
    ])
    def test_incomplete_message_cannot_be_rated(self, session, status):
        with pytest.raises(InvalidRating, match="complete"):
            RatingLedger().rate(reply(session, "a", status), 3)

    def test_invalid_rating_is_value_error(self):
        assert issubclass(InvalidRating, ValueError)


class TestSummarize:
    """Test the end-of-session ranking."""

    def test_ranks_by_average(self, catalog, clock):
        """A rated {4, 5} ranks above B rated {3}."""
        session = SessionState(catalog, "b", clock=clock)
        session.add_provider("a")
        ratings = RatingLedger()
        a1, a2, b1 = reply(session, "a"), reply(session, "a"), reply(session, "b")
        ratings.rate(a1, 4)
        ratings.rate(a2, 5)
        ratings.rate(b1, 3)

        scores = summarize(catalog, session.active_providers(), session.messages, ratings.ratings)

        assert [s.provider_id for s in scores] == ["a", "b"]
        assert scores[0].average == 4.5
        assert scores[0].rating_count == 2
        assert scores[1].average == 3.0
        assert scores[0].display_name == "A"

    def test_ties_keep_catalog_order(self, session):
        ratings = RatingLedger()
        ratings.rate(reply(session, "c"), 4)
        ratings.rate(reply(session, "a"), 4)

        scores = summarize(session.catalog, ["c", "b", "a"], session.messages, ratings.ratings)

        assert [s.provider_id for s in scores] == ["a", "c", "b"]
        assert scores[2].average == 0.0
        assert scores[2].rating_count == 0

    def test_only_active_providers_scored(self, session):
        ratings = RatingLedger()
        ratings.rate(reply(session, "c"), 5)
        scores = summarize(session.catalog, ["a"], session.messages, ratings.ratings)
        assert [s.provider_id for s in scores] == ["a"]
        assert scores[0].average == 0.0

    def test_unrated_messages_do_not_count(self, session):
        ratings = RatingLedger()
        ratings.rate(reply(session, "a"), 2)
        reply(session, "a")
        scores = summarize(session.catalog, ["a"], session.messages, ratings.ratings)
        assert scores[0].average == 2.0
        assert scores[0].rating_count == 1
