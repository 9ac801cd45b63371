"""
Repository pattern for data access.

Handles persistence of canonical telemetry events in an append-only ledger.
The unique ``dedup_key`` column makes re-ingesting the same logs a no-op.
"""

from datetime import datetime
from typing import Dict, Iterable, List, Optional

from ..core.dedup import build_dedup_key
from ..core.events import EventType, TelemetryEvent
from .db import DEFAULT_DB_PATH, get_connection
from .models import EVENT_COLUMNS, event_to_row, iso_utc, row_to_event

_INSERT_SQL = "INSERT OR IGNORE INTO telemetry_event ({}) VALUES ({})".format(
    ", ".join(EVENT_COLUMNS),
    ", ".join("?" for _ in EVENT_COLUMNS),
)
_SELECT_COLUMNS = ", ".join(EVENT_COLUMNS[1:])


class EventRepository:
    """Repository for reading the telemetry event ledger."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def fetch_events(
        self,
        since: Optional[datetime] = None,
        agent_name: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100000,
    ) -> List[TelemetryEvent]:
        return fetch_events(since, agent_name, event_type, limit, self.db_path)

    def get_usage_stats(self, since: Optional[datetime] = None) -> Dict[str, Dict[str, float]]:
        """Message usage totals grouped by agent.

        Args:
            since: Optional lower bound on ``occurred_at``

        Returns:
            Agent name to ``{"messages", "total_tokens", "cost_usd"}``
        """
        conn = get_connection(self.db_path)
        try:
            query = """
                SELECT agent_name,
                       COUNT(*),
                       SUM(COALESCE(total_tokens, 0)),
                       SUM(COALESCE(cost_usd, 0))
                FROM telemetry_event
                WHERE event_type = ?
            """
            params = [EventType.MESSAGE_USAGE.value]
            if since is not None:
                query += " AND occurred_at >= ?"
                params.append(iso_utc(since))
            query += " GROUP BY agent_name ORDER BY agent_name"

            cursor = conn.execute(query, params)
            return {
                row[0]: {
                    "messages": row[1] or 0,
                    "total_tokens": row[2] or 0,
                    "cost_usd": float(row[3] or 0),
                }
                for row in cursor.fetchall()
            }
        finally:
            conn.close()


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the telemetry_event table if it doesn't exist.

    This creates an append-only ledger. No UPDATE or DELETE operations are
    performed on this table.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS telemetry_event (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                dedup_key TEXT UNIQUE,
                schema_version TEXT NOT NULL,
                channel TEXT NOT NULL,
                occurred_at TEXT NOT NULL,
                event_type TEXT NOT NULL,
                account_id TEXT NOT NULL DEFAULT '',
                workspace_id TEXT NOT NULL DEFAULT '',
                session_id TEXT NOT NULL DEFAULT '',
                turn_id TEXT NOT NULL DEFAULT '',
                message_id TEXT NOT NULL DEFAULT '',
                request_id TEXT NOT NULL DEFAULT '',
                tool_call_id TEXT NOT NULL DEFAULT '',
                provider_id TEXT NOT NULL DEFAULT '',
                agent_name TEXT NOT NULL DEFAULT '',
                model_raw TEXT NOT NULL DEFAULT '',
                input_tokens INTEGER,
                output_tokens INTEGER,
                reasoning_tokens INTEGER,
                cache_read_tokens INTEGER,
                cache_write_tokens INTEGER,
                total_tokens INTEGER,
                requests INTEGER,
                cost_usd REAL,
                tool_name TEXT NOT NULL DEFAULT '',
                tool_index INTEGER,
                status TEXT NOT NULL,
                payload TEXT NOT NULL DEFAULT '{}'
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_telemetry_event_occurred_at "
            "ON telemetry_event (occurred_at)"
        )
        conn.commit()
    finally:
        conn.close()


def insert_events(events: Iterable[TelemetryEvent], db_path: str = DEFAULT_DB_PATH) -> int:
    """Insert events atomically, skipping any whose dedup key is already stored.

    Args:
        events: Events to record
        db_path: Path to SQLite database file

    Returns:
        Number of rows actually inserted
    """
    rows = [event_to_row(event, build_dedup_key(event)) for event in events]
    if not rows:
        return 0

    conn = get_connection(db_path)
    try:
        inserted = 0
        conn.execute("BEGIN TRANSACTION")
        for row in rows:
            cursor = conn.execute(_INSERT_SQL, row)
            inserted += cursor.rowcount
        conn.commit()
        return inserted
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def fetch_events(
    since: Optional[datetime] = None,
    agent_name: Optional[str] = None,
    event_type: Optional[EventType] = None,
    limit: int = 100000,
    db_path: str = DEFAULT_DB_PATH,
) -> List[TelemetryEvent]:
    """Fetch stored events in chronological order.

    Args:
        since: Optional lower bound on ``occurred_at``
        agent_name: Optional filter for one agent
        event_type: Optional filter for one event type
        limit: Maximum number of events to return
        db_path: Path to SQLite database file

    Returns:
        Events ordered by occurrence time (oldest first)
    """
    conn = get_connection(db_path)
    try:
        query = f"SELECT {_SELECT_COLUMNS} FROM telemetry_event"
        params = []
        conditions = []

        if since is not None:
            conditions.append("occurred_at >= ?")
            params.append(iso_utc(since))
        if agent_name:
            conditions.append("agent_name = ?")
            params.append(agent_name)
        if event_type is not None:
            conditions.append("event_type = ?")
            params.append(event_type.value)

        if conditions:
            query += " WHERE " + " AND ".join(conditions)

        query += " ORDER BY occurred_at ASC, id ASC LIMIT ?"
        params.append(limit)

        cursor = conn.execute(query, params)
        return [row_to_event(row) for row in cursor.fetchall()]
    finally:
        conn.close()
