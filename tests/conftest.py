"""
Shared fixtures and fakes for the ChatCompare test suite.
"""

from datetime import datetime, timedelta

import pytest

from chat_compare.core.catalog import UNLIMITED, BudgetPolicy, Provider, ProviderCatalog

SIX_HOURS = 6 * 60 * 60


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = datetime(2026, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class ScriptedCompletion:
    """Completion capability with a canned reply or error.

    When a gate (asyncio.Event) is given, the reply waits for it.
    """

    def __init__(self, reply: str = "fine thanks", error: Exception = None, gate=None):
        self.reply = reply
        self.error = error
        self.gate = gate
        self.calls = []

    async def complete(self, prompt, history=()):
        self.calls.append((prompt, list(history)))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.reply


class MemoryStore:
    """In-memory ledger store."""

    def __init__(self, entries=None, error: Exception = None):
        self.entries = dict(entries or {})
        self.error = error
        self.saves = []

    def load(self):
        if self.error is not None:
            raise self.error
        return dict(self.entries)

    def save(self, entries):
        self.entries = dict(entries)
        self.saves.append(dict(entries))


def make_provider(provider_id, total=800, available=None, interval=SIX_HOURS, name=None):
    if total is UNLIMITED:
        budget = BudgetPolicy(total=UNLIMITED)
    else:
        budget = BudgetPolicy(total=total, initial_available=available,
                              replenish_interval_seconds=interval)
    return Provider(
        id=provider_id,
        display_name=name or provider_id.upper(),
        model=f"test/{provider_id}",
        budget=budget,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def catalog():
    """A: 800 tokens every 6h, B: unlimited, C: 100 tokens every 6h."""
    return ProviderCatalog([
        make_provider("a"),
        make_provider("b", total=UNLIMITED),
        make_provider("c", total=100),
    ])
