"""
Fan-out of user messages to every active provider.

Each provider gets its own asyncio task. The only suspension point in a
provider's pipeline is the completion call itself; the budget check, the
debits and every log update run synchronously, so tasks never observe each
other's half-applied changes.

Per-provider pipeline:
1. Reserve the prompt cost, or log a budget-exhausted message and flag the
   provider until a replenishment sweep clears it
2. Log a pending placeholder and start the completion task
3. On success settle the response cost and complete the placeholder
4. On failure mark the placeholder as an error (no debit, no flag)
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Set

import structlog

from .ledger import InsufficientTokens, TokenLedger
from .session import USER, Message, MessageStatus, SessionState
from .token_counter import count_tokens

logger = structlog.get_logger(__name__)

ERROR_MARKER = "API error"
BUDGET_EXHAUSTED_MARKER = "No available tokens"

DEFAULT_SWEEP_SECONDS = 60.0


class CompletionCapability(Protocol):
    """Anything that can turn a prompt into a reply."""

    async def complete(
        self,
        prompt: str,
        history: Iterable[Mapping[str, str]] = (),
    ) -> str: ...


@dataclass
class DispatchRound:
    """Messages and tasks created by one user message."""
    user_message: Message
    provider_messages: List[Message] = field(default_factory=list)
    tasks: List[asyncio.Task] = field(default_factory=list)

    async def wait(self) -> List[Message]:
        """Wait for every provider in this round to resolve."""
        if self.tasks:
            await asyncio.gather(*self.tasks)
        return self.provider_messages


class DispatchEngine:
    """Sends user messages to active providers and reconciles replies."""

    def __init__(
        self,
        session: SessionState,
        ledger: TokenLedger,
        completions: Mapping[str, CompletionCapability],
    ):
        """Initialize the engine.

        Args:
            session: Session whose active set and log are used
            ledger: Token ledger for the session's catalog
            completions: Completion capability per provider id

        Raises:
            ValueError: If a catalog provider has no completion capability
        """
        missing = [pid for pid in session.catalog.ids() if pid not in completions]
        if missing:
            raise ValueError(f"No completion capability for providers: {missing}")

        self.session = session
        self.ledger = ledger
        self._completions = completions
        self._exhausted: Set[str] = set()
        self._pending: Dict[str, str] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._sweep_task: Optional[asyncio.Task] = None

    def is_exhausted(self, provider_id: str) -> bool:
        return provider_id in self._exhausted

    def exhausted_providers(self) -> Set[str]:
        return set(self._exhausted)

    def pending_providers(self) -> Set[str]:
        return set(self._pending)

    def dispatch(self, text: str) -> Optional[DispatchRound]:
        """Log a user message and start a request for every eligible provider.

        Must be called from a running event loop. Returns immediately; the
        returned round can be awaited for the replies.

        Args:
            text: User input

        Returns:
            The dispatch round, or None for empty/whitespace input

        Raises:
            SessionClosed: If the session has ended
        """
        if not text or not text.strip():
            return None

        prompt_tokens = count_tokens(text)
        user_message = self.session.append_message(
            USER, text, MessageStatus.COMPLETE, prompt_tokens=prompt_tokens
        )
        dispatch_round = DispatchRound(user_message=user_message)

        for provider_id in self.session.active_providers():
            if provider_id in self._exhausted:
                logger.debug("dispatch.skipped_exhausted", provider_id=provider_id)
                continue
            if provider_id in self._pending:
                logger.info("dispatch.skipped_pending", provider_id=provider_id,
                            pending_message_id=self._pending[provider_id])
                continue

            try:
                self.ledger.check_and_reserve(provider_id, prompt_tokens)
            except InsufficientTokens as e:
                logger.info("dispatch.budget_exhausted", provider_id=provider_id,
                            requested=e.requested, available=e.available)
                self._exhausted.add(provider_id)
                dispatch_round.provider_messages.append(self.session.append_message(
                    provider_id, BUDGET_EXHAUSTED_MARKER, MessageStatus.BUDGET_EXHAUSTED,
                ))
                continue

            history = self._history_for(provider_id, exclude=user_message.id)
            placeholder = self.session.append_message(
                provider_id, "", MessageStatus.PENDING, prompt_tokens=prompt_tokens
            )
            self._pending[provider_id] = placeholder.id
            dispatch_round.provider_messages.append(placeholder)

            task = asyncio.create_task(
                self._complete(provider_id, placeholder.id, text, history),
                name=f"completion:{provider_id}",
            )
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            dispatch_round.tasks.append(task)

        logger.debug("dispatch.round_started", message_id=user_message.id,
                     requests=len(dispatch_round.tasks))
        return dispatch_round

    async def send_user_message(self, text: str) -> List[Message]:
        """Dispatch text and wait for every provider to resolve.

        Returns:
            Provider messages created for this input, after resolution
        """
        dispatch_round = self.dispatch(text)
        if dispatch_round is None:
            return []
        return await dispatch_round.wait()

    async def drain(self) -> None:
        """Wait for every outstanding completion task."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    def sweep(self, now: Optional[datetime] = None) -> List[str]:
        """Replenish due budgets of active providers.

        Clears the exhausted flag of every provider that replenished.

        Returns:
            Ids of providers that were replenished
        """
        replenished = []
        for provider_id in self.session.active_providers():
            if self.ledger.replenish_if_due(provider_id, now):
                self._exhausted.discard(provider_id)
                replenished.append(provider_id)
        return replenished

    def start(self, interval: float = DEFAULT_SWEEP_SECONDS) -> None:
        """Start the periodic replenishment sweep."""
        if self._sweep_task is not None and not self._sweep_task.done():
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop(interval), name="replenish-sweep")
        logger.info("dispatch.sweep_started", interval=interval)

    async def stop(self) -> None:
        """Stop the periodic replenishment sweep."""
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        logger.info("dispatch.sweep_stopped")

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            try:
                await asyncio.sleep(interval)
                self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("dispatch.sweep_failed", error=str(e))

    def _history_for(self, provider_id: str, exclude: str) -> List[Dict[str, str]]:
        history = []
        for message in self.session.visible_messages_for(provider_id):
            if message.id == exclude or message.status is not MessageStatus.COMPLETE:
                continue
            role = "user" if message.is_user else "assistant"
            history.append({"role": role, "content": message.content})
        return history

    async def _complete(
        self,
        provider_id: str,
        message_id: str,
        prompt: str,
        history: List[Dict[str, str]],
    ) -> None:
        try:
            try:
                reply = await self._completions[provider_id].complete(prompt, history)
            except Exception as e:
                # Any provider failure stays inside that provider's message.
                logger.warning("dispatch.failed", provider_id=provider_id,
                               message_id=message_id, error=str(e))
                self._apply_failure(provider_id, message_id)
                return
            self._apply_success(provider_id, message_id, reply)
        finally:
            if self._pending.get(provider_id) == message_id:
                del self._pending[provider_id]

    def _apply_success(self, provider_id: str, message_id: str, reply: str) -> None:
        debited = self.ledger.settle(provider_id, count_tokens(reply))
        if self.session.ended:
            logger.info("dispatch.resolved_after_end", provider_id=provider_id,
                        message_id=message_id)
            return
        self.session.resolve_message(
            message_id, MessageStatus.COMPLETE, reply, completion_tokens=debited
        )
        logger.debug("dispatch.completed", provider_id=provider_id, message_id=message_id,
                     completion_tokens=debited)

    def _apply_failure(self, provider_id: str, message_id: str) -> None:
        if self.session.ended:
            return
        self.session.resolve_message(message_id, MessageStatus.ERROR, ERROR_MARKER)
