"""
Repository pattern for data access.

Loads and saves token ledger state in a single local SQLite store.
"""

import sqlite3
from datetime import datetime
from typing import Dict, Mapping

import structlog

from .db import DEFAULT_DB_PATH, get_connection
from .models import PersistedLedgerEntry

logger = structlog.get_logger(__name__)

_CREATE_TABLE = """
    CREATE TABLE IF NOT EXISTS token_ledger (
        provider_id TEXT PRIMARY KEY,
        available INTEGER NOT NULL,
        last_replenish_at TEXT
    )
"""


class MalformedPersistedState(Exception):
    """Raised when stored ledger state cannot be parsed."""


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the token_ledger table if it doesn't exist.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute(_CREATE_TABLE)
        conn.commit()
    finally:
        conn.close()


class LedgerRepository:
    """SQLite-backed store for token ledger state.

    Implements the ``load()`` / ``save(mapping)`` pair the token ledger
    calls on startup and after every mutation.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def load(self) -> Dict[str, PersistedLedgerEntry]:
        """Load stored ledger state.

        Returns:
            Mapping of provider id to persisted entry; empty when nothing
            has been stored yet

        Raises:
            MalformedPersistedState: If stored rows cannot be parsed
        """
        try:
            conn = get_connection(self.db_path)
        except sqlite3.Error as e:
            raise MalformedPersistedState(f"Cannot open ledger store {self.db_path}: {e}") from e

        try:
            rows = conn.execute(
                "SELECT provider_id, available, last_replenish_at FROM token_ledger"
            ).fetchall()
        except sqlite3.OperationalError as e:
            if "no such table" in str(e).lower():
                return {}
            raise MalformedPersistedState(f"Cannot read ledger store {self.db_path}: {e}") from e
        except sqlite3.DatabaseError as e:
            raise MalformedPersistedState(f"Cannot read ledger store {self.db_path}: {e}") from e
        finally:
            conn.close()

        entries = {}
        for provider_id, available, last_replenish_at in rows:
            entries[provider_id] = _parse_row(provider_id, available, last_replenish_at)
        return entries

    def save(self, entries: Mapping[str, PersistedLedgerEntry]) -> None:
        """Store ledger state atomically.

        All entries are written in a single transaction.

        Args:
            entries: Mapping of provider id to entry
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            conn.execute(_CREATE_TABLE)
            for provider_id, entry in entries.items():
                conn.execute("""
                    INSERT INTO token_ledger (provider_id, available, last_replenish_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(provider_id) DO UPDATE SET
                        available = excluded.available,
                        last_replenish_at = excluded.last_replenish_at
                """, (
                    provider_id,
                    entry.available,
                    entry.last_replenish_at.isoformat() if entry.last_replenish_at else None,
                ))
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        logger.debug("ledger_store.saved", db_path=self.db_path, entries=len(entries))


def _parse_row(provider_id, available, last_replenish_at) -> PersistedLedgerEntry:
    """Validate and convert one stored row."""
    if isinstance(available, bool) or not isinstance(available, int):
        raise MalformedPersistedState(
            f"Stored available for {provider_id} is not an integer: {available!r}"
        )

    replenished = None
    if last_replenish_at is not None:
        try:
            replenished = datetime.fromisoformat(last_replenish_at)
        except (TypeError, ValueError) as e:
            raise MalformedPersistedState(
                f"Stored last_replenish_at for {provider_id} is invalid: {last_replenish_at!r}"
            ) from e

    return PersistedLedgerEntry(available=available, last_replenish_at=replenished)
