"""
Per-provider token ledger.

Tracks available and total tokens for every provider in the catalog,
applies time-based replenishment, and flushes durable fields to a store
after every change.

All operations are synchronous. Under a single asyncio event loop each
call runs to completion before any other task resumes, so a check and its
debit can never be observed half-done.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Dict, Mapping, Optional, Protocol

import structlog

from chat_compare.core.catalog import UNLIMITED, Budget, ProviderCatalog, UnknownProvider
from chat_compare.storage.models import PersistedLedgerEntry
from chat_compare.storage.repository import MalformedPersistedState

logger = structlog.get_logger(__name__)


class LedgerStore(Protocol):
    """Durable storage for ledger state."""

    def load(self) -> Mapping[str, PersistedLedgerEntry]: ...

    def save(self, entries: Mapping[str, PersistedLedgerEntry]) -> None: ...


class InsufficientTokens(Exception):
    """Raised when a provider cannot cover the cost of a request."""

    def __init__(self, provider_id: str, requested: int, available: int):
        super().__init__(
            f"{provider_id} needs {requested} tokens but only {available} are available"
        )
        self.provider_id = provider_id
        self.requested = requested
        self.available = available


@dataclass
class LedgerEntry:
    """Mutable token counters for one provider."""
    available: Budget
    total: Budget
    last_replenish_at: Optional[datetime] = None
    replenish_interval_seconds: Optional[int] = None

    @property
    def is_unlimited(self) -> bool:
        return self.total is UNLIMITED


class TokenLedger:
    """Token counters for every provider in a catalog."""

    def __init__(
        self,
        entries: Dict[str, LedgerEntry],
        store: Optional[LedgerStore] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize the ledger.

        Args:
            entries: Ledger entry per provider id
            store: Optional store flushed after every mutation
            clock: Source of the current time
        """
        self._entries = entries
        self._store = store
        self._clock = clock

    @classmethod
    def from_catalog(
        cls,
        catalog: ProviderCatalog,
        store: Optional[LedgerStore] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> "TokenLedger":
        """Build a ledger from catalog defaults overlaid with stored state.

        Stored state that cannot be parsed, or that no longer fits the
        catalog's budget, is discarded in favour of catalog defaults.
        Replenish windows opened at load time are flushed to the store.

        Args:
            catalog: Provider catalog
            store: Optional store to load from and flush to
            clock: Source of the current time

        Returns:
            Ledger with one entry per catalog provider
        """
        entries = {
            provider.id: LedgerEntry(
                available=provider.budget.starting_available,
                total=provider.budget.total,
                replenish_interval_seconds=provider.budget.replenish_interval_seconds,
            )
            for provider in catalog
        }

        persisted: Mapping[str, PersistedLedgerEntry] = {}
        if store is not None:
            try:
                persisted = store.load()
            except MalformedPersistedState as e:
                logger.warning("ledger.persisted_state_discarded", error=str(e))
                persisted = {}

        for provider_id, saved in persisted.items():
            entry = entries.get(provider_id)
            if entry is None or entry.is_unlimited:
                continue
            if not 0 <= saved.available <= entry.total:
                logger.warning(
                    "ledger.persisted_entry_discarded",
                    provider_id=provider_id,
                    available=saved.available,
                    total=entry.total,
                )
                continue
            entry.available = saved.available
            entry.last_replenish_at = saved.last_replenish_at

        ledger = cls(entries, store=store, clock=clock)
        # A budget that starts partly used counts down from now.
        opened = [
            ledger._open_window(entry)
            for entry in entries.values()
            if not entry.is_unlimited and entry.available < entry.total
        ]
        if any(opened):
            ledger._flush()
        return ledger

    def _entry(self, provider_id: str) -> LedgerEntry:
        try:
            return self._entries[provider_id]
        except KeyError:
            raise UnknownProvider(provider_id) from None

    def entry(self, provider_id: str) -> LedgerEntry:
        """Copy of a provider's ledger entry."""
        return replace(self._entry(provider_id))

    def available(self, provider_id: str) -> Budget:
        return self._entry(provider_id).available

    def is_unlimited(self, provider_id: str) -> bool:
        return self._entry(provider_id).is_unlimited

    def is_depleted(self, provider_id: str) -> bool:
        """True when a finite budget has no tokens left."""
        entry = self._entry(provider_id)
        return not entry.is_unlimited and entry.available == 0

    def check_and_reserve(self, provider_id: str, cost: int) -> None:
        """Debit cost if the provider can cover it.

        Args:
            provider_id: Provider to charge
            cost: Estimated tokens for the request

        Raises:
            InsufficientTokens: If available tokens are below cost
            ValueError: If cost is negative
        """
        if cost < 0:
            raise ValueError("cost must be >= 0")

        entry = self._entry(provider_id)
        if entry.is_unlimited:
            return

        if entry.available < cost:
            raise InsufficientTokens(provider_id, cost, entry.available)

        entry.available -= cost
        self._open_window(entry)
        logger.debug("ledger.reserved", provider_id=provider_id, cost=cost,
                     available=entry.available)
        self._flush()

    def settle(self, provider_id: str, amount: int) -> int:
        """Debit a measured cost, clamping at zero.

        Args:
            provider_id: Provider to charge
            amount: Tokens measured after the fact

        Returns:
            Tokens actually debited
        """
        if amount < 0:
            raise ValueError("amount must be >= 0")

        entry = self._entry(provider_id)
        if entry.is_unlimited:
            return 0

        debited = min(amount, entry.available)
        entry.available -= debited
        self._open_window(entry)
        logger.debug("ledger.settled", provider_id=provider_id, requested=amount,
                     debited=debited, available=entry.available)
        self._flush()
        return debited

    def refund(self, provider_id: str, amount: int) -> None:
        """Return tokens after an over-estimate, clamped to [0, total].

        Args:
            provider_id: Provider to credit
            amount: Tokens to return
        """
        entry = self._entry(provider_id)
        if entry.is_unlimited:
            return

        entry.available = max(0, min(entry.total, entry.available + amount))
        logger.debug("ledger.refunded", provider_id=provider_id, amount=amount,
                     available=entry.available)
        self._flush()

    def replenish_if_due(self, provider_id: str, now: Optional[datetime] = None) -> bool:
        """Reset available to total once the replenish interval has elapsed.

        Args:
            provider_id: Provider to check
            now: Current time (defaults to the ledger clock)

        Returns:
            True if the entry was replenished
        """
        entry = self._entry(provider_id)
        if entry.is_unlimited or entry.replenish_interval_seconds is None:
            return False
        if entry.last_replenish_at is None:
            return False

        now = now or self._clock()
        interval = timedelta(seconds=entry.replenish_interval_seconds)
        if now - entry.last_replenish_at < interval:
            return False

        entry.available = entry.total
        entry.last_replenish_at = now
        logger.info("ledger.replenished", provider_id=provider_id, available=entry.available)
        self._flush()
        return True

    def time_until_replenish(
        self, provider_id: str, now: Optional[datetime] = None
    ) -> Optional[timedelta]:
        """Time left before the next replenishment.

        Returns:
            Remaining time (zero when due), or None when the provider does
            not replenish or no window is open
        """
        entry = self._entry(provider_id)
        if entry.is_unlimited or entry.replenish_interval_seconds is None:
            return None
        if entry.last_replenish_at is None:
            return None

        now = now or self._clock()
        due_at = entry.last_replenish_at + timedelta(seconds=entry.replenish_interval_seconds)
        return max(due_at - now, timedelta(0))

    def snapshot(self) -> Dict[str, PersistedLedgerEntry]:
        """Durable fields of every finite entry."""
        return {
            provider_id: PersistedLedgerEntry(
                available=entry.available,
                last_replenish_at=entry.last_replenish_at,
            )
            for provider_id, entry in self._entries.items()
            if not entry.is_unlimited
        }

    def _open_window(self, entry: LedgerEntry) -> bool:
        # The replenish countdown starts with the first debit.
        if entry.replenish_interval_seconds is not None and entry.last_replenish_at is None:
            entry.last_replenish_at = self._clock()
            return True
        return False

    def _flush(self) -> None:
        if self._store is not None:
            self._store.save(self.snapshot())
