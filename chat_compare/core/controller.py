"""
Multi-model session controller.

Wires the session state, token ledger, dispatch engine and ratings into
one object per conversation.
"""

from datetime import datetime
from typing import Callable, List, Mapping, Optional

import structlog

from .catalog import ProviderCatalog
from .dispatch import CompletionCapability, DispatchEngine, DispatchRound
from .ledger import TokenLedger
from .ratings import RatingLedger, SessionSummary, summarize
from .session import MembershipResult, Message, SessionClosed, SessionState

logger = structlog.get_logger(__name__)


class ProviderUnavailable(Exception):
    """Raised when a session cannot start with the selected provider."""


class ChatSession:
    """One conversation compared across several providers."""

    def __init__(
        self,
        catalog: ProviderCatalog,
        ledger: TokenLedger,
        session: SessionState,
        engine: DispatchEngine,
    ):
        self.catalog = catalog
        self.ledger = ledger
        self.state = session
        self.engine = engine
        self.ratings = RatingLedger()
        self.summary: Optional[SessionSummary] = None

    @classmethod
    def start(
        cls,
        catalog: ProviderCatalog,
        ledger: TokenLedger,
        completions: Mapping[str, CompletionCapability],
        initial_provider_id: str,
        clock: Callable[[], datetime] = datetime.now,
    ) -> "ChatSession":
        """Start a session with one selected provider.

        Args:
            catalog: Provider catalog
            ledger: Token ledger built from the same catalog
            completions: Completion capability per provider id
            initial_provider_id: Provider selected to start with
            clock: Source of the current time

        Raises:
            ProviderUnavailable: If the provider is unknown or has no tokens
        """
        if initial_provider_id not in catalog:
            raise ProviderUnavailable(f"Unknown provider: {initial_provider_id}")
        ledger.replenish_if_due(initial_provider_id)
        if ledger.is_depleted(initial_provider_id):
            raise ProviderUnavailable(f"{initial_provider_id} has no available tokens")

        session = SessionState(catalog, initial_provider_id, clock=clock)
        engine = DispatchEngine(session, ledger, completions)
        logger.info("session.started", provider_id=initial_provider_id)
        return cls(catalog, ledger, session, engine)

    @property
    def ended(self) -> bool:
        return self.state.ended

    def add_provider(self, provider_id: str) -> MembershipResult:
        return self.state.add_provider(provider_id)

    def remove_provider(self, provider_id: str) -> MembershipResult:
        return self.state.remove_provider(provider_id)

    def dispatch(self, text: str) -> Optional[DispatchRound]:
        return self.engine.dispatch(text)

    async def send(self, text: str) -> List[Message]:
        """Send text to every eligible active provider and wait for replies."""
        return await self.engine.send_user_message(text)

    def sweep(self, now: Optional[datetime] = None) -> List[str]:
        return self.engine.sweep(now)

    def transcript(self, provider_id: str) -> List[Message]:
        return self.state.visible_messages_for(provider_id)

    def rate(self, message_id: str, value: int) -> None:
        """Rate a provider response.

        Raises:
            SessionClosed: If the session has ended
            KeyError: If the message does not exist
            InvalidRating: If the rating is rejected
        """
        if self.ended:
            raise SessionClosed("Session has ended")
        self.ratings.rate(self.state.get_message(message_id), value)

    def end(self) -> SessionSummary:
        """End the session and derive its summary.

        Outstanding requests keep running and still settle the ledger,
        but no longer change the log.

        Raises:
            SessionClosed: If the session has already ended
        """
        ended_at = self.state.end()
        self.summary = SessionSummary(
            ended_at=ended_at,
            scores=summarize(
                self.catalog,
                self.state.active_providers(),
                self.state.messages,
                self.ratings.ratings,
            ),
            message_count=len(self.state.messages),
        )
        return self.summary
