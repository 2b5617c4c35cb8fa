"""
SQLite-based persistent mirror state store.

Holds the mirror reference (address, identity, cursor, sync state) and
a short log of sync outcomes. Every update runs in one transaction, so
the cursor and state never disagree after a crash.
"""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

from .models import MirrorReference, MirrorState, SyncEvent

logger = logging.getLogger(__name__)


class StateStoreError(Exception):
    """Raised when state store operations fail."""
    pass


class StateStore:
    """
    SQLite-based persistent state store.

    Features:
    - Atomic updates with transactions
    - Automatic schema migration
    - Safe for scheduler-based usage

    Usage:
        store = StateStore(Path("/root/.timemachine/sync_state.db"))

        mirror = store.get_mirror()
        store.save_mirror(mirror.evolve(cursor="abc..."))
    """

    SCHEMA_VERSION = 1
    EVENT_RETENTION = 200

    CREATE_TABLE_SQL = """
        CREATE TABLE IF NOT EXISTS mirror_reference (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            address TEXT,
            identity TEXT,
            cursor TEXT,
            state TEXT NOT NULL DEFAULT 'disabled',
            last_error TEXT,
            resume_state TEXT,
            verified_at TEXT,
            updated_at TEXT
        )
    """

    CREATE_EVENTS_TABLE_SQL = """
        CREATE TABLE IF NOT EXISTS sync_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            operation TEXT NOT NULL,
            outcome TEXT NOT NULL,
            snapshot_id TEXT,
            detail TEXT,
            occurred_at TEXT NOT NULL
        )
    """

    CREATE_METADATA_TABLE_SQL = """
        CREATE TABLE IF NOT EXISTS _metadata (
            key TEXT PRIMARY KEY,
            value TEXT
        )
    """

    def __init__(self, database_path: Path):
        """
        Initialize state store.

        Args:
            database_path: Path to SQLite database file
        """
        self.database_path = Path(database_path)

        # Ensure parent directory exists
        self.database_path.parent.mkdir(parents=True, exist_ok=True)

        self._initialize_database()

        logger.debug(f"State store initialized at {self.database_path}")

    def _initialize_database(self) -> None:
        """Create tables and run migrations."""
        try:
            with self._get_connection() as conn:
                cursor = conn.cursor()

                cursor.execute(self.CREATE_METADATA_TABLE_SQL)

                cursor.execute("SELECT value FROM _metadata WHERE key = 'schema_version'")
                row = cursor.fetchone()
                current_version = int(row[0]) if row else 0

                if current_version < self.SCHEMA_VERSION:
                    logger.info(f"Upgrading schema from v{current_version} to v{self.SCHEMA_VERSION}")
                    cursor.execute(
                        "INSERT OR REPLACE INTO _metadata (key, value) VALUES (?, ?)",
                        ("schema_version", str(self.SCHEMA_VERSION)),
                    )

                cursor.execute(self.CREATE_TABLE_SQL)
                cursor.execute(self.CREATE_EVENTS_TABLE_SQL)

                conn.commit()
        except sqlite3.Error as e:
            raise StateStoreError(f"Cannot open state database {self.database_path}: {e}") from e

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """
        Get a database connection with proper settings.

        Yields:
            SQLite connection in WAL mode
        """
        conn = sqlite3.connect(
            self.database_path,
            timeout=30.0,
            isolation_level="DEFERRED",
        )

        try:
            conn.execute("PRAGMA journal_mode=WAL")
            yield conn
        finally:
            conn.close()

    def get_mirror(self) -> MirrorReference:
        """
        Get the mirror reference.

        Returns:
            Stored reference, or a disabled one if no mirror was set up
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT
                    address,
                    identity,
                    cursor,
                    state,
                    last_error,
                    resume_state,
                    verified_at,
                    updated_at
                FROM mirror_reference
                WHERE id = 1
                """
            )

            row = cursor.fetchone()
            if row:
                return MirrorReference.from_row(row)
            return MirrorReference()

    def save_mirror(self, mirror: MirrorReference) -> MirrorReference:
        """
        Save the mirror reference.

        Uses INSERT OR REPLACE for idempotent upsert.

        Returns:
            Saved reference with updated timestamp
        """
        mirror = mirror.evolve(updated_at=datetime.now(timezone.utc))

        try:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO mirror_reference (
                        id,
                        address,
                        identity,
                        cursor,
                        state,
                        last_error,
                        resume_state,
                        verified_at,
                        updated_at
                    ) VALUES (1, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        mirror.address,
                        mirror.identity,
                        mirror.cursor,
                        mirror.state.value,
                        mirror.last_error,
                        mirror.resume_state.value if mirror.resume_state else None,
                        mirror.verified_at.isoformat() if mirror.verified_at else None,
                        mirror.updated_at.isoformat(),
                    ),
                )
                conn.commit()
        except sqlite3.Error as e:
            raise StateStoreError(f"Failed to save mirror state: {e}") from e

        logger.debug(f"Saved mirror state: {mirror.state.value}, cursor={mirror.cursor}")
        return mirror

    def record_event(
        self,
        operation: str,
        outcome: str,
        snapshot_id: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> None:
        """Append a sync outcome, trimming the log to the retention limit."""
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO sync_events (operation, outcome, snapshot_id, detail, occurred_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (operation, outcome, snapshot_id, detail, datetime.now(timezone.utc).isoformat()),
            )
            conn.execute(
                """
                DELETE FROM sync_events
                WHERE id NOT IN (SELECT id FROM sync_events ORDER BY id DESC LIMIT ?)
                """,
                (self.EVENT_RETENTION,),
            )
            conn.commit()

    def recent_events(self, limit: int = 20) -> list[SyncEvent]:
        """Most recent sync outcomes, newest first."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT operation, outcome, snapshot_id, detail, occurred_at
                FROM sync_events
                ORDER BY id DESC
                LIMIT ?
                """,
                (limit,),
            )
            return [SyncEvent.from_row(row) for row in cursor.fetchall()]

    def clear(self) -> None:
        """
        Forget the mirror and its log.

        WARNING: The cursor is lost; the next push re-checks the remote.
        """
        with self._get_connection() as conn:
            conn.execute("DELETE FROM mirror_reference")
            conn.execute("DELETE FROM sync_events")
            conn.commit()

        logger.warning("Mirror state cleared")
