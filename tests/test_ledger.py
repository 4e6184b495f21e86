"""
Tests for the token ledger.

Covers reservation, settlement, refunds, replenishment and loading of
persisted state.
"""

import random
from datetime import datetime, timedelta

import pytest

from chat_compare.core.catalog import UNLIMITED, ProviderCatalog, UnknownProvider
from chat_compare.core.ledger import InsufficientTokens, LedgerEntry, TokenLedger
from chat_compare.storage.models import PersistedLedgerEntry
from chat_compare.storage.repository import LedgerRepository, MalformedPersistedState
from conftest import SIX_HOURS, FakeClock, MemoryStore, make_provider

T0 = datetime(2026, 3, 1, 8, 0, 0)


def make_ledger(available=800, total=800, last=T0, interval=SIX_HOURS, store=None, clock=None):
    entries = {
        "a": LedgerEntry(available=available, total=total,
                         last_replenish_at=last, replenish_interval_seconds=interval),
        "b": LedgerEntry(available=UNLIMITED, total=UNLIMITED),
    }
    return TokenLedger(entries, store=store, clock=clock or FakeClock(T0))


class TestReserve:
    """Test check_and_reserve."""

    def test_reserve_debits(self):
        ledger = make_ledger()
        ledger.check_and_reserve("a", 2)
        assert ledger.available("a") == 798

    def test_reserve_exact_balance(self):
        ledger = make_ledger(available=2)
        ledger.check_and_reserve("a", 2)
        assert ledger.available("a") == 0
        assert ledger.is_depleted("a")

    def test_insufficient_tokens(self):
        ledger = make_ledger(available=1)
        with pytest.raises(InsufficientTokens) as excinfo:
            ledger.check_and_reserve("a", 2)

        assert excinfo.value.provider_id == "a"
        assert excinfo.value.requested == 2
        assert excinfo.value.available == 1
        assert ledger.available("a") == 1

    def test_unlimited_always_succeeds_without_mutation(self):
        ledger = make_ledger()
        for cost in (0, 1, 10_000, 10 ** 9):
            ledger.check_and_reserve("b", cost)
        assert ledger.available("b") is UNLIMITED
        assert ledger.settle("b", 500) == 0
        ledger.refund("b", 500)
        assert ledger.available("b") is UNLIMITED
        assert not ledger.is_depleted("b")

    def test_negative_cost_rejected(self):
        ledger = make_ledger()
        with pytest.raises(ValueError):
            ledger.check_and_reserve("a", -1)

    def test_unknown_provider(self):
        ledger = make_ledger()
        with pytest.raises(UnknownProvider):
            ledger.check_and_reserve("zzz", 1)


class TestSettleAndRefund:
    """Test post-hoc debits and refunds."""

    def test_settle_clamps_at_zero(self):
        ledger = make_ledger(available=3)
        assert ledger.settle("a", 10) == 3
        assert ledger.available("a") == 0

    def test_settle_full_amount(self):
        ledger = make_ledger()
        assert ledger.settle("a", 10) == 10
        assert ledger.available("a") == 790

    def test_refund_clamps_to_total(self):
        ledger = make_ledger(available=790)
        ledger.refund("a", 50)
        assert ledger.available("a") == 800

    def test_refund_negative_clamps_to_zero(self):
        ledger = make_ledger(available=5)
        ledger.refund("a", -50)
        assert ledger.available("a") == 0

    def test_available_stays_within_bounds(self):
        """Any mix of debits and refunds keeps 0 <= available <= total."""
        rng = random.Random(1234)
        ledger = make_ledger(available=100, total=100)
        for _ in range(500):
            op = rng.choice(("reserve", "settle", "refund"))
            amount = rng.randint(0, 40)
            if op == "reserve":
                try:
                    ledger.check_and_reserve("a", amount)
                except InsufficientTokens:
                    pass
            elif op == "settle":
                ledger.settle("a", amount)
            else:
                ledger.refund("a", rng.randint(-40, 40))
            assert 0 <= ledger.available("a") <= 100


class TestReplenish:
    """Test time-based replenishment."""

    def test_not_due_before_interval(self):
        ledger = make_ledger(available=10)
        assert not ledger.replenish_if_due("a", T0 + timedelta(hours=5, minutes=59))
        assert ledger.available("a") == 10

    def test_due_at_interval(self):
        ledger = make_ledger(available=10)
        now = T0 + timedelta(hours=6)
        assert ledger.replenish_if_due("a", now)
        assert ledger.available("a") == 800
        assert ledger.entry("a").last_replenish_at == now

    def test_idempotent_within_interval(self):
        ledger = make_ledger(available=10)
        now = T0 + timedelta(hours=7)
        assert ledger.replenish_if_due("a", now)
        once = ledger.snapshot()

        assert not ledger.replenish_if_due("a", now)
        assert not ledger.replenish_if_due("a", now + timedelta(hours=5))
        assert ledger.snapshot() == once

    def test_no_window_no_replenish(self):
        ledger = make_ledger(available=10, last=None)
        assert not ledger.replenish_if_due("a", T0 + timedelta(days=30))
        assert ledger.available("a") == 10

    def test_no_interval_no_replenish(self):
        ledger = make_ledger(available=10, interval=None)
        assert not ledger.replenish_if_due("a", T0 + timedelta(days=30))

    def test_unlimited_never_replenishes(self):
        ledger = make_ledger()
        assert not ledger.replenish_if_due("b", T0 + timedelta(days=30))

    def test_first_debit_opens_window(self):
        clock = FakeClock(T0)
        ledger = make_ledger(last=None, clock=clock)
        clock.advance(minutes=30)
        ledger.check_and_reserve("a", 5)
        assert ledger.entry("a").last_replenish_at == T0 + timedelta(minutes=30)

    def test_time_until_replenish(self):
        ledger = make_ledger(available=10)
        remaining = ledger.time_until_replenish("a", T0 + timedelta(hours=1, minutes=8))
        assert remaining == timedelta(hours=4, minutes=52)
        assert ledger.time_until_replenish("a", T0 + timedelta(hours=9)) == timedelta(0)
        assert ledger.time_until_replenish("b") is None

    def test_time_until_replenish_without_window(self):
        ledger = make_ledger(last=None)
        assert ledger.time_until_replenish("a", T0) is None


class TestPersistence:
    """Test loading and flushing ledger state."""

    def _catalog(self):
        return ProviderCatalog([
            make_provider("a"),
            make_provider("b", total=UNLIMITED),
            make_provider("c", total=100, available=40),
        ])

    def test_catalog_defaults_without_store(self):
        clock = FakeClock(T0)
        ledger = TokenLedger.from_catalog(self._catalog(), clock=clock)
        assert ledger.available("a") == 800
        assert ledger.available("b") is UNLIMITED
        assert ledger.available("c") == 40
        # Partly used budgets start counting down immediately.
        assert ledger.entry("c").last_replenish_at == T0
        assert ledger.entry("a").last_replenish_at is None

    def test_stored_state_overrides_defaults(self):
        last = T0 - timedelta(hours=1)
        store = MemoryStore({"a": PersistedLedgerEntry(available=120, last_replenish_at=last)})
        ledger = TokenLedger.from_catalog(self._catalog(), store=store, clock=FakeClock(T0))
        assert ledger.available("a") == 120
        assert ledger.entry("a").last_replenish_at == last

    def test_malformed_store_falls_back_to_defaults(self):
        store = MemoryStore(error=MalformedPersistedState("bad row"))
        ledger = TokenLedger.from_catalog(self._catalog(), store=store, clock=FakeClock(T0))
        assert ledger.available("a") == 800
        assert ledger.available("c") == 40

    def test_out_of_range_entry_discarded(self):
        store = MemoryStore({
            "a": PersistedLedgerEntry(available=5000),
            "c": PersistedLedgerEntry(available=-3),
        })
        ledger = TokenLedger.from_catalog(self._catalog(), store=store, clock=FakeClock(T0))
        assert ledger.available("a") == 800
        assert ledger.available("c") == 40

    def test_unknown_and_unlimited_entries_ignored(self):
        store = MemoryStore({
            "gone": PersistedLedgerEntry(available=1),
            "b": PersistedLedgerEntry(available=3),
        })
        ledger = TokenLedger.from_catalog(self._catalog(), store=store, clock=FakeClock(T0))
        assert ledger.available("b") is UNLIMITED

    def test_every_mutation_is_flushed(self):
        store = MemoryStore()
        ledger = TokenLedger.from_catalog(self._catalog(), store=store, clock=FakeClock(T0))
        store.saves.clear()

        ledger.check_and_reserve("a", 2)
        ledger.settle("a", 3)
        ledger.refund("a", 1)
        assert len(store.saves) == 3
        assert store.entries["a"].available == 796
        assert "b" not in store.entries

    def test_unlimited_operations_do_not_flush(self):
        store = MemoryStore()
        ledger = TokenLedger.from_catalog(self._catalog(), store=store, clock=FakeClock(T0))
        store.saves.clear()
        ledger.check_and_reserve("b", 10)
        ledger.settle("b", 10)
        assert store.saves == []

    def test_failed_reserve_does_not_flush(self):
        store = MemoryStore()
        ledger = TokenLedger.from_catalog(self._catalog(), store=store, clock=FakeClock(T0))
        store.saves.clear()
        with pytest.raises(InsufficientTokens):
            ledger.check_and_reserve("c", 41)
        assert store.saves == []

    def test_window_opened_at_load_is_flushed(self):
        store = MemoryStore()
        TokenLedger.from_catalog(self._catalog(), store=store, clock=FakeClock(T0))
        assert len(store.saves) == 1
        assert store.entries["c"] == PersistedLedgerEntry(available=40, last_replenish_at=T0)

    def test_load_without_new_window_does_not_flush(self):
        store = MemoryStore({"c": PersistedLedgerEntry(available=40, last_replenish_at=T0)})
        TokenLedger.from_catalog(self._catalog(), store=store, clock=FakeClock(T0))
        assert store.saves == []

    def test_countdown_survives_restart(self, tmp_path):
        """A depleted budget refills on a later launch once its interval passes."""
        catalog = ProviderCatalog([make_provider("g", total=300, available=0, interval=3600)])
        db_path = str(tmp_path / "ledger.db")
        clock = FakeClock(T0)

        TokenLedger.from_catalog(catalog, store=LedgerRepository(db_path), clock=clock)
        assert LedgerRepository(db_path).load()["g"].last_replenish_at == T0

        clock.advance(hours=5)
        ledger = TokenLedger.from_catalog(catalog, store=LedgerRepository(db_path), clock=clock)
        assert ledger.time_until_replenish("g") == timedelta(0)
        assert ledger.replenish_if_due("g")
        assert ledger.available("g") == 300
