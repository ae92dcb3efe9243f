"""
SQLite persistence gateway for relgraph.

This module manages a single SQLite database that stores:
- The flattened user projection (one row per user)
- Per-partition checkpoints for resume
- The raw event log used for snapshot backfill and replay

Invariants:
    - raw_events is unique on (topic, partition_id, log_offset); duplicate
      appends are ignored
    - Every bulk write runs in a single transaction
    - Write failures are logged with context and not raised

How to change safely:
    - Schema migrations must be backward compatible
    - Keep load_raw_events() ordered by insertion (rowid); backfill
      resume depends on it

Table schema:
    users:
        - name TEXT PRIMARY KEY
        - created_at TEXT
        - referred_by TEXT
        - referrals_json TEXT (sorted JSON array)
        - friends_json TEXT (sorted JSON array)
        - referral_points INTEGER
        - last_seq INTEGER
        - referrals_count INTEGER
        - friends_count INTEGER
        - updated_at INTEGER (Unix ms)

    checkpoints:
        - topic TEXT
        - partition_id INTEGER
        - log_offset INTEGER
        - updated_at INTEGER
        - PRIMARY KEY (topic, partition_id)

    raw_events:
        - id INTEGER PRIMARY KEY AUTOINCREMENT
        - topic TEXT
        - partition_id INTEGER
        - log_offset INTEGER
        - type TEXT
        - event_timestamp TEXT
        - ingested_at TEXT
        - payload_json TEXT
        - UNIQUE (topic, partition_id, log_offset)
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path

from ..graph.types import PersistableUserNode
from .base import StorageConnectionError, StoredEvent

logger = logging.getLogger(__name__)


class SqliteGateway:
    """SQLite implementation of the PersistenceGateway protocol.

    Thread safety:
        A connection is created per operation. Writes are serialized
        with an asyncio lock; SQLite WAL mode allows concurrent readers
        (for example an API process reading users).

    Example:
        >>> gateway = SqliteGateway("/var/lib/relgraph")
        >>> await gateway.connect()
        >>> await gateway.save_checkpoint("events", 0, 41)
        >>> await gateway.get_checkpoint("events", 0)
        41
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        data_dir: str,
        db_name: str = "relgraph.db",
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the gateway.

        Args:
            data_dir: Directory for the SQLite database file
            db_name: Database file name
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.data_dir = Path(data_dir)
        self.db_path = self.data_dir / db_name
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._lock = asyncio.Lock()
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection to the database."""
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")

            yield conn
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS users (
                name TEXT PRIMARY KEY,
                created_at TEXT,
                referred_by TEXT,
                referrals_json TEXT NOT NULL DEFAULT '[]',
                friends_json TEXT NOT NULL DEFAULT '[]',
                referral_points INTEGER NOT NULL DEFAULT 0,
                last_seq INTEGER NOT NULL DEFAULT -1,
                referrals_count INTEGER NOT NULL DEFAULT 0,
                friends_count INTEGER NOT NULL DEFAULT 0,
                updated_at INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_users_last_seq ON users(last_seq DESC);

            CREATE TABLE IF NOT EXISTS checkpoints (
                topic TEXT NOT NULL,
                partition_id INTEGER NOT NULL,
                log_offset INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                PRIMARY KEY (topic, partition_id)
            );

            CREATE TABLE IF NOT EXISTS raw_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                topic TEXT NOT NULL,
                partition_id INTEGER NOT NULL,
                log_offset INTEGER NOT NULL,
                type TEXT NOT NULL,
                event_timestamp TEXT,
                ingested_at TEXT NOT NULL,
                payload_json TEXT NOT NULL,
                UNIQUE (topic, partition_id, log_offset)
            );

            CREATE INDEX IF NOT EXISTS idx_raw_events_offset ON raw_events(log_offset);

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)

    async def connect(self) -> None:
        """Create the database file and schema if needed.

        Raises:
            StorageConnectionError: If the database cannot be opened
        """
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            async with self._lock:
                with self._get_connection() as conn:
                    self._create_schema(conn)
        except (OSError, sqlite3.Error) as e:
            raise StorageConnectionError(f"Failed to open {self.db_path}: {e}") from e

        self._connected = True
        logger.info("Opened SQLite gateway", extra={"db_path": str(self.db_path)})

    async def close(self) -> None:
        self._connected = False
        logger.info("Closed SQLite gateway", extra={"db_path": str(self.db_path)})

    async def get_checkpoint(self, topic: str, partition: int) -> int | None:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT log_offset FROM checkpoints WHERE topic = ? AND partition_id = ?",
                (topic, partition),
            ).fetchone()
            return row["log_offset"] if row else None

    async def save_checkpoint(self, topic: str, partition: int, offset: int) -> None:
        try:
            async with self._lock:
                with self._get_connection() as conn:
                    conn.execute(
                        """
                        INSERT INTO checkpoints (topic, partition_id, log_offset, updated_at)
                        VALUES (?, ?, ?, ?)
                        ON CONFLICT (topic, partition_id)
                        DO UPDATE SET log_offset = excluded.log_offset,
                                      updated_at = excluded.updated_at
                        """,
                        (topic, partition, offset, int(time.time() * 1000)),
                    )
        except sqlite3.Error as e:
            logger.error(
                f"save_checkpoint failed: {e}",
                extra={"topic": topic, "partition": partition, "offset": offset},
            )

    async def load_all_users(self) -> list[PersistableUserNode]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT * FROM users ORDER BY name").fetchall()
            return [self._row_to_user(row) for row in rows]

    async def get_user(self, name: str) -> PersistableUserNode | None:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM users WHERE name = ?", (name,)).fetchone()
            return self._row_to_user(row) if row else None

    async def count_users(self) -> int:
        with self._get_connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM users").fetchone()[0]

    async def upsert_users(self, nodes: Sequence[PersistableUserNode]) -> None:
        if not nodes:
            return

        now = int(time.time() * 1000)
        rows = [
            (
                n.name,
                n.created_at,
                n.referred_by,
                json.dumps(list(n.referrals)),
                json.dumps(list(n.friends)),
                n.referral_points,
                n.last_seq,
                n.referrals_count,
                n.friends_count,
                now,
            )
            for n in nodes
        ]

        try:
            async with self._lock:
                with self._get_connection() as conn:
                    conn.execute("BEGIN IMMEDIATE")
                    try:
                        conn.executemany(
                            """
                            INSERT INTO users (name, created_at, referred_by, referrals_json,
                                               friends_json, referral_points, last_seq,
                                               referrals_count, friends_count, updated_at)
                            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                            ON CONFLICT (name) DO UPDATE SET
                                created_at = excluded.created_at,
                                referred_by = excluded.referred_by,
                                referrals_json = excluded.referrals_json,
                                friends_json = excluded.friends_json,
                                referral_points = excluded.referral_points,
                                last_seq = excluded.last_seq,
                                referrals_count = excluded.referrals_count,
                                friends_count = excluded.friends_count,
                                updated_at = excluded.updated_at
                            """,
                            rows,
                        )
                        conn.execute("COMMIT")
                    except Exception:
                        conn.execute("ROLLBACK")
                        raise
        except sqlite3.Error as e:
            logger.error(f"upsert_users failed: {e}", extra={"count": len(rows)})

    async def append_raw_events(self, events: Sequence[StoredEvent]) -> int:
        if not events:
            return 0

        rows = [
            (
                e.topic,
                e.partition,
                e.offset,
                e.type,
                e.event_timestamp,
                e.ingested_at,
                json.dumps(e.payload),
            )
            for e in events
        ]

        try:
            async with self._lock:
                with self._get_connection() as conn:
                    conn.execute("BEGIN IMMEDIATE")
                    try:
                        before = conn.total_changes
                        conn.executemany(
                            """
                            INSERT OR IGNORE INTO raw_events (topic, partition_id, log_offset, type,
                                                              event_timestamp, ingested_at, payload_json)
                            VALUES (?, ?, ?, ?, ?, ?, ?)
                            """,
                            rows,
                        )
                        inserted = conn.total_changes - before
                        conn.execute("COMMIT")
                    except Exception:
                        conn.execute("ROLLBACK")
                        raise
        except sqlite3.Error as e:
            logger.error(f"append_raw_events failed: {e}", extra={"count": len(rows)})
            return 0

        if inserted < len(rows):
            logger.debug(
                "Ignored duplicate raw events",
                extra={"duplicates": len(rows) - inserted},
            )
        return inserted

    async def count_raw_events(self) -> int:
        with self._get_connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM raw_events").fetchone()[0]

    async def load_raw_events(self, skip: int, limit: int) -> list[StoredEvent]:
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT topic, partition_id, log_offset, type, event_timestamp,
                       ingested_at, payload_json
                FROM raw_events
                ORDER BY id
                LIMIT ? OFFSET ?
                """,
                (limit, skip),
            ).fetchall()

        return [
            StoredEvent(
                topic=row["topic"],
                partition=row["partition_id"],
                offset=row["log_offset"],
                type=row["type"],
                event_timestamp=row["event_timestamp"],
                ingested_at=row["ingested_at"],
                payload=json.loads(row["payload_json"]),
            )
            for row in rows
        ]

    def _row_to_user(self, row: sqlite3.Row) -> PersistableUserNode:
        return PersistableUserNode(
            name=row["name"],
            created_at=row["created_at"],
            referred_by=row["referred_by"],
            referrals=tuple(json.loads(row["referrals_json"])),
            friends=tuple(json.loads(row["friends_json"])),
            referral_points=row["referral_points"],
            last_seq=row["last_seq"],
            referrals_count=row["referrals_count"],
            friends_count=row["friends_count"],
        )
