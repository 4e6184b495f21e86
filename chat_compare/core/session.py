"""
Session state.

Holds the set of active providers, when each one joined, and the ordered
message log shared by all of them.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

import structlog

from .catalog import ProviderCatalog
from .token_counter import TokenUsage

logger = structlog.get_logger(__name__)

USER = "user"


class MessageStatus(Enum):
    """Lifecycle state of a message in the log."""
    COMPLETE = "complete"
    PENDING = "pending"
    ERROR = "error"
    BUDGET_EXHAUSTED = "budget-exhausted"


class MembershipResult(Enum):
    """Outcome of adding or removing a provider."""
    ADDED = "added"
    REMOVED = "removed"
    ALREADY_ACTIVE = "already_active"
    NOT_ACTIVE = "not_active"
    LAST_PROVIDER = "last_provider"
    UNKNOWN_PROVIDER = "unknown_provider"
    SESSION_ENDED = "session_ended"

    @property
    def ok(self) -> bool:
        return self in (MembershipResult.ADDED, MembershipResult.REMOVED)


class SessionClosed(Exception):
    """Raised when a mutation is attempted on an ended session."""


@dataclass
class Message:
    """One entry in the session log.

    Only a pending message changes after it is appended, and only once.
    """
    id: str
    provider_id: str
    content: str
    created_at: datetime
    status: MessageStatus
    seq: int
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def is_user(self) -> bool:
        return self.provider_id == USER

    @property
    def usage(self) -> TokenUsage:
        return TokenUsage(self.prompt_tokens, self.completion_tokens)


@dataclass(frozen=True)
class SessionMember:
    """A provider in the active set."""
    provider_id: str
    joined_at: datetime
    join_seq: int


class SessionState:
    """Active providers and the shared message log."""

    def __init__(
        self,
        catalog: ProviderCatalog,
        initial_provider_id: str,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Start a session with one active provider.

        Args:
            catalog: Provider catalog
            initial_provider_id: Provider selected to start the session
            clock: Source of the current time

        Raises:
            UnknownProvider: If the initial provider is not in the catalog
        """
        catalog.get(initial_provider_id)
        self.catalog = catalog
        self._clock = clock
        self._members: Dict[str, SessionMember] = {}
        self._log: List[Message] = []
        self._by_id: Dict[str, Message] = {}
        self.ended_at: Optional[datetime] = None
        self._join(initial_provider_id)

    @property
    def ended(self) -> bool:
        return self.ended_at is not None

    @property
    def messages(self) -> Tuple[Message, ...]:
        return tuple(self._log)

    def active_providers(self) -> List[str]:
        """Active provider ids in join order."""
        return list(self._members)

    def is_active(self, provider_id: str) -> bool:
        return provider_id in self._members

    def member(self, provider_id: str) -> Optional[SessionMember]:
        return self._members.get(provider_id)

    def add_provider(self, provider_id: str) -> MembershipResult:
        """Add a provider to the active set.

        A provider joining (or re-joining) only sees messages logged from
        this point on.
        """
        if self.ended:
            return MembershipResult.SESSION_ENDED
        if provider_id not in self.catalog:
            return MembershipResult.UNKNOWN_PROVIDER
        if provider_id in self._members:
            return MembershipResult.ALREADY_ACTIVE

        self._join(provider_id)
        return MembershipResult.ADDED

    def remove_provider(self, provider_id: str) -> MembershipResult:
        """Drop a provider from the active set.

        The last active provider cannot be removed.
        """
        if self.ended:
            return MembershipResult.SESSION_ENDED
        if provider_id not in self._members:
            return MembershipResult.NOT_ACTIVE
        if len(self._members) == 1:
            return MembershipResult.LAST_PROVIDER

        del self._members[provider_id]
        logger.info("session.provider_removed", provider_id=provider_id)
        return MembershipResult.REMOVED

    def append_message(
        self,
        provider_id: str,
        content: str,
        status: MessageStatus,
        prompt_tokens: int = 0,
    ) -> Message:
        """Append a new message to the log.

        Raises:
            SessionClosed: If the session has ended
        """
        self._ensure_open()
        message = Message(
            id=uuid.uuid4().hex,
            provider_id=provider_id,
            content=content,
            created_at=self._clock(),
            status=status,
            seq=len(self._log),
            prompt_tokens=prompt_tokens,
        )
        self._log.append(message)
        self._by_id[message.id] = message
        return message

    def resolve_message(
        self,
        message_id: str,
        status: MessageStatus,
        content: str,
        completion_tokens: int = 0,
    ) -> Message:
        """Move a pending message to complete or error, in place.

        Raises:
            SessionClosed: If the session has ended
            KeyError: If the message does not exist
            ValueError: If the message is not pending or the target status
                is not terminal
        """
        self._ensure_open()
        message = self._by_id[message_id]
        if message.status is not MessageStatus.PENDING:
            raise ValueError(f"Message {message_id} is not pending")
        if status not in (MessageStatus.COMPLETE, MessageStatus.ERROR):
            raise ValueError(f"Cannot resolve a message to {status.value}")

        message.status = status
        message.content = content
        message.completion_tokens = completion_tokens
        return message

    def get_message(self, message_id: str) -> Message:
        return self._by_id[message_id]

    def visible_messages_for(self, provider_id: str) -> List[Message]:
        """Transcript of one provider since it joined.

        Returns user messages and the provider's own messages logged at or
        after its join point, in log order. Inactive providers see nothing.
        """
        member = self._members.get(provider_id)
        if member is None:
            return []
        return [
            message for message in self._log[member.join_seq:]
            if message.is_user or message.provider_id == provider_id
        ]

    def end(self) -> datetime:
        """End the session. Further mutation raises SessionClosed.

        Raises:
            SessionClosed: If the session has already ended
        """
        self._ensure_open()
        self.ended_at = self._clock()
        logger.info("session.ended", messages=len(self._log), providers=len(self._members))
        return self.ended_at

    def _join(self, provider_id: str) -> None:
        self._members[provider_id] = SessionMember(
            provider_id=provider_id,
            joined_at=self._clock(),
            join_seq=len(self._log),
        )
        logger.info("session.provider_added", provider_id=provider_id)

    def _ensure_open(self) -> None:
        if self.ended:
            raise SessionClosed("Session has ended")
