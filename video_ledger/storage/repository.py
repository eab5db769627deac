"""
Repository pattern for data access.

Handles database operations and data persistence logic for the ledger.
"""

import json
import sqlite3
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence

from .db import DEFAULT_DB_PATH, get_connection
from .models import CostCategory, CostEvent, VideoLedgerRecord

# Older SQLite builds cap bound parameters at 999
MAX_IN_PARAMS = 500

_COST_EVENT_COLUMNS = """
    id, video_id, channel_id, category, provider, units, unit_label,
    cost_usd, metadata, created_at, source_entry_id, source_seq, price_missing
"""


def to_timestamp(value: datetime) -> str:
    """Serialize a datetime as fixed-width UTC ISO-8601 text.

    A fixed width keeps lexicographic order equal to time order, which the
    window queries rely on. Naive datetimes are taken to be UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the ledger tables if they don't exist.

    ``cost_event`` is an append-only ledger: no UPDATE or DELETE is ever
    issued against it. ``(source_entry_id, source_seq)`` is unique so a
    redelivered log entry cannot be counted twice; rows recorded without a
    source entry carry NULLs, which SQLite never treats as duplicates.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS cost_event (
                id TEXT PRIMARY KEY,
                video_id TEXT NOT NULL,
                channel_id TEXT NOT NULL,
                category TEXT NOT NULL,
                provider TEXT NOT NULL,
                units REAL NOT NULL,
                unit_label TEXT NOT NULL,
                cost_usd REAL NOT NULL,
                metadata TEXT,
                created_at TEXT NOT NULL,
                source_entry_id TEXT,
                source_seq INTEGER,
                price_missing INTEGER NOT NULL DEFAULT 0,
                UNIQUE (source_entry_id, source_seq)
            );
            CREATE INDEX IF NOT EXISTS idx_cost_event_video
                ON cost_event (video_id);
            CREATE INDEX IF NOT EXISTS idx_cost_event_channel_time
                ON cost_event (channel_id, created_at);

            CREATE TABLE IF NOT EXISTS video_ledger (
                video_id TEXT PRIMARY KEY,
                channel_id TEXT NOT NULL,
                revenue_usd REAL,
                views INTEGER,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_video_ledger_channel
                ON video_ledger (channel_id, updated_at);

            CREATE TABLE IF NOT EXISTS budget_alert_state (
                scope_key TEXT NOT NULL,
                period TEXT NOT NULL,
                level INTEGER NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (scope_key, period)
            );
        """)
        conn.commit()
    finally:
        conn.close()


def _row_to_cost_event(row: sqlite3.Row) -> CostEvent:
    return CostEvent(
        id=row["id"],
        video_id=row["video_id"],
        channel_id=row["channel_id"],
        category=CostCategory(row["category"]),
        provider=row["provider"],
        units=row["units"],
        unit_label=row["unit_label"],
        cost_usd=row["cost_usd"],
        metadata=json.loads(row["metadata"]) if row["metadata"] else {},
        created_at=from_timestamp(row["created_at"]),
        source_entry_id=row["source_entry_id"],
        source_seq=row["source_seq"],
        price_missing=bool(row["price_missing"]),
    )


def _row_to_ledger_record(row: sqlite3.Row) -> VideoLedgerRecord:
    return VideoLedgerRecord(
        video_id=row["video_id"],
        channel_id=row["channel_id"],
        revenue_usd=row["revenue_usd"],
        views=row["views"],
        created_at=from_timestamp(row["created_at"]),
        updated_at=from_timestamp(row["updated_at"]),
    )


class LedgerRepository:
    """Repository for reading and writing ledger state.

    Every method opens its own short-lived connection so that a repository
    can be shared freely between the consumer loop and the HTTP layer.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def initialize(self) -> None:
        initialize_schema(self.db_path)

    def append_cost_event(self, event: CostEvent) -> bool:
        """Append a priced cost event and lazily create the video's record.

        Both writes happen in one transaction. The ledger record is only
        inserted when absent, so existing revenue fields are never touched.

        Args:
            event: The cost event to record

        Returns:
            True if the row was written, False if the same source entry and
            sequence number had already been recorded
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(f"""
                INSERT OR IGNORE INTO cost_event ({_COST_EVENT_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                event.id,
                event.video_id,
                event.channel_id,
                event.category.value,
                event.provider,
                event.units,
                event.unit_label,
                event.cost_usd,
                json.dumps(event.metadata) if event.metadata else None,
                to_timestamp(event.created_at),
                event.source_entry_id,
                event.source_seq,
                int(event.price_missing),
            ))
            inserted = cursor.rowcount == 1
            if inserted:
                stamp = to_timestamp(event.created_at)
                conn.execute("""
                    INSERT OR IGNORE INTO video_ledger
                    (video_id, channel_id, revenue_usd, views, created_at, updated_at)
                    VALUES (?, ?, NULL, NULL, ?, ?)
                """, (event.video_id, event.channel_id, stamp, stamp))
            conn.commit()
            return inserted
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def upsert_revenue(
        self,
        video_id: str,
        revenue_usd: Optional[float],
        views: Optional[int],
        updated_at: datetime,
        channel_id: Optional[str] = None,
        default_channel_id: str = "default",
    ) -> VideoLedgerRecord:
        """Overwrite a video's revenue and view counts in one statement.

        Concurrent writers race under last-write-wins; there is no merge.
        The channel is only changed when one is supplied explicitly.
        """
        stamp = to_timestamp(updated_at)
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO video_ledger
                (video_id, channel_id, revenue_usd, views, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (video_id) DO UPDATE SET
                    revenue_usd = excluded.revenue_usd,
                    views = excluded.views,
                    updated_at = excluded.updated_at,
                    channel_id = COALESCE(?, video_ledger.channel_id)
            """, (
                video_id,
                channel_id or default_channel_id,
                revenue_usd,
                views,
                stamp,
                stamp,
                channel_id,
            ))
            conn.commit()
            row = conn.execute(
                "SELECT * FROM video_ledger WHERE video_id = ?", (video_id,)
            ).fetchone()
            return _row_to_ledger_record(row)
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def get_ledger_record(self, video_id: str) -> Optional[VideoLedgerRecord]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT * FROM video_ledger WHERE video_id = ?", (video_id,)
            ).fetchone()
            return _row_to_ledger_record(row) if row else None
        finally:
            conn.close()

    def fetch_cost_events(
        self,
        video_id: Optional[str] = None,
        channel_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        provider: Optional[str] = None,
        categories: Optional[Iterable[CostCategory]] = None,
    ) -> List[CostEvent]:
        """Fetch cost events with optional filtering, oldest first.

        Args:
            video_id: Optional filter for a single video
            channel_id: Optional filter for a channel
            since: Optional inclusive lower bound on ``created_at``
            until: Optional inclusive upper bound on ``created_at``
            provider: Optional filter for a provider
            categories: Optional set of categories to include

        Returns:
            List of cost events ordered by creation time
        """
        query = f"SELECT {_COST_EVENT_COLUMNS} FROM cost_event"
        conditions = []
        params: list = []

        if video_id is not None:
            conditions.append("video_id = ?")
            params.append(video_id)
        if channel_id is not None:
            conditions.append("channel_id = ?")
            params.append(channel_id)
        if since is not None:
            conditions.append("created_at >= ?")
            params.append(to_timestamp(since))
        if until is not None:
            conditions.append("created_at <= ?")
            params.append(to_timestamp(until))
        if provider is not None:
            conditions.append("provider = ?")
            params.append(provider)
        if categories is not None:
            values = [CostCategory(c).value for c in categories]
            if not values:
                return []
            conditions.append(f"category IN ({', '.join('?' for _ in values)})")
            params.extend(values)

        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY created_at ASC, id ASC"

        conn = get_connection(self.db_path)
        try:
            return [_row_to_cost_event(row) for row in conn.execute(query, params)]
        finally:
            conn.close()

    def fetch_ledger_records(
        self,
        channel_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        video_ids: Optional[Sequence[str]] = None,
    ) -> List[VideoLedgerRecord]:
        """Fetch ledger records by channel and update window, or by id.

        Long id lists are queried in chunks to stay under SQLite's bound
        parameter limit.
        """
        if video_ids is not None and len(video_ids) > MAX_IN_PARAMS:
            records: List[VideoLedgerRecord] = []
            for start in range(0, len(video_ids), MAX_IN_PARAMS):
                records.extend(self.fetch_ledger_records(
                    channel_id, since, until, video_ids[start:start + MAX_IN_PARAMS],
                ))
            return sorted(records, key=lambda record: record.video_id)

        query = "SELECT * FROM video_ledger"
        conditions = []
        params: list = []

        if channel_id is not None:
            conditions.append("channel_id = ?")
            params.append(channel_id)
        if since is not None:
            conditions.append("updated_at >= ?")
            params.append(to_timestamp(since))
        if until is not None:
            conditions.append("updated_at <= ?")
            params.append(to_timestamp(until))
        if video_ids is not None:
            if not video_ids:
                return []
            conditions.append(f"video_id IN ({', '.join('?' for _ in video_ids)})")
            params.extend(video_ids)

        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY video_id ASC"

        conn = get_connection(self.db_path)
        try:
            return [_row_to_ledger_record(row) for row in conn.execute(query, params)]
        finally:
            conn.close()

    def get_alert_level(self, scope_key: str, period: str) -> Optional[int]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT level FROM budget_alert_state WHERE scope_key = ? AND period = ?",
                (scope_key, period),
            ).fetchone()
            return row["level"] if row else None
        finally:
            conn.close()

    def set_alert_level(self, scope_key: str, period: str, level: int, updated_at: datetime) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO budget_alert_state (scope_key, period, level, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (scope_key, period) DO UPDATE SET
                    level = excluded.level,
                    updated_at = excluded.updated_at
            """, (scope_key, period, level, to_timestamp(updated_at)))
            conn.commit()
        finally:
            conn.close()
