"""
Connection storage for mail drivers.

A connection is one stored credential record per (user, provider, account).
Drivers only read connections, write back refreshed tokens and delete a
connection whose credentials turned out to be unusable.
"""

import sqlite3
import logging
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

# Columns a token refresh is allowed to write
TOKEN_FIELDS = frozenset({'access_token', 'refresh_token', 'scope', 'expires_at'})


@dataclass
class ConnectionRecord:
    """Stored credentials for one mail account."""
    id: str
    user_id: str
    provider_id: str
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    scope: str = ""
    expires_at: Optional[datetime] = None
    email: str = ""
    name: str = ""
    picture: str = ""

    def with_tokens(self, **token_fields: Any) -> 'ConnectionRecord':
        """Return a copy with refreshed token fields applied."""
        return replace(self, **{k: v for k, v in token_fields.items() if k in TOKEN_FIELDS})


class ConnectionStore(ABC):
    """
    Persistence contract the driver layer relies on.

    Implementations live outside the driver layer; SQLiteConnectionStore is
    the reference implementation used by the service and the tests.
    """

    @abstractmethod
    def find(self, user_id: str, connection_id: str) -> Optional[ConnectionRecord]:
        """Return the user's connection, or None if it does not exist."""
        pass

    @abstractmethod
    def update(self, connection_id: str, **token_fields: Any) -> bool:
        """Write refreshed token fields. Returns True if a row was updated."""
        pass

    @abstractmethod
    def delete(self, connection_id: str) -> bool:
        """
        Delete a connection.

        Deleting a connection that no longer exists is not an error and
        returns False.
        """
        pass


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SQLiteConnectionStore(ConnectionStore):
    """
    SQLite-based storage for mail connections.
    """

    def __init__(self, db_path: str = "mail_connections.db"):
        """
        Initialize connection storage.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self._init_database()

    @contextmanager
    def _get_connection(self):
        """Get a database connection with context management."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_database(self):
        """Initialize database schema."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS mail_connections (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    provider_id TEXT NOT NULL CHECK (provider_id IN ('google', 'microsoft')),
                    email TEXT NOT NULL DEFAULT '',
                    name TEXT DEFAULT '',
                    picture TEXT DEFAULT '',
                    access_token TEXT,
                    refresh_token TEXT,
                    scope TEXT DEFAULT '',
                    expires_at TEXT,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE(user_id, provider_id, email)
                )
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_mail_connections_user
                ON mail_connections(user_id)
            """)
        logger.info(f"Connection database initialized at {self.db_path}")

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> ConnectionRecord:
        return ConnectionRecord(
            id=row['id'],
            user_id=row['user_id'],
            provider_id=row['provider_id'],
            access_token=row['access_token'],
            refresh_token=row['refresh_token'],
            scope=row['scope'] or '',
            expires_at=_from_iso(row['expires_at']),
            email=row['email'] or '',
            name=row['name'] or '',
            picture=row['picture'] or '',
        )

    def add_connection(
        self,
        user_id: str,
        provider_id: str,
        email: str,
        access_token: Optional[str],
        refresh_token: Optional[str],
        scope: str = "",
        expires_at: Optional[datetime] = None,
        name: str = "",
        picture: str = "",
    ) -> ConnectionRecord:
        """
        Store a connection, replacing an existing one for the same account.

        Returns:
            The stored ConnectionRecord
        """
        connection_id = str(uuid.uuid4())
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                INSERT INTO mail_connections
                    (id, user_id, provider_id, email, name, picture,
                     access_token, refresh_token, scope, expires_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, provider_id, email) DO UPDATE SET
                    name = excluded.name,
                    picture = excluded.picture,
                    access_token = excluded.access_token,
                    refresh_token = COALESCE(excluded.refresh_token, mail_connections.refresh_token),
                    scope = excluded.scope,
                    expires_at = excluded.expires_at,
                    updated_at = CURRENT_TIMESTAMP
            """, (
                connection_id, user_id, provider_id, email, name, picture,
                access_token, refresh_token, scope, _to_iso(expires_at),
            ))
            cursor.execute(
                "SELECT * FROM mail_connections WHERE user_id = ? AND provider_id = ? AND email = ?",
                (user_id, provider_id, email)
            )
            return self._row_to_record(cursor.fetchone())

    def find(self, user_id: str, connection_id: str) -> Optional[ConnectionRecord]:
        """Get a user's connection by ID."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT * FROM mail_connections WHERE id = ? AND user_id = ?",
                (connection_id, user_id)
            )
            row = cursor.fetchone()
            return self._row_to_record(row) if row else None

    def get_connections(self, user_id: str) -> List[ConnectionRecord]:
        """Get all connections of a user."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT * FROM mail_connections WHERE user_id = ? ORDER BY created_at",
                (user_id,)
            )
            return [self._row_to_record(row) for row in cursor.fetchall()]

    def update(self, connection_id: str, **token_fields: Any) -> bool:
        """Update token fields of a connection."""
        updates: Dict[str, Any] = {k: v for k, v in token_fields.items() if k in TOKEN_FIELDS}
        if not updates:
            return False

        if 'expires_at' in updates:
            updates['expires_at'] = _to_iso(updates['expires_at'])

        set_clause = ', '.join(f"{k} = ?" for k in updates.keys())
        values = list(updates.values()) + [connection_id]

        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"UPDATE mail_connections SET {set_clause}, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                values
            )
            return cursor.rowcount > 0

    def delete(self, connection_id: str) -> bool:
        """Delete a connection."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM mail_connections WHERE id = ?", (connection_id,))
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info(f"Deleted mail connection {connection_id}")
        return deleted
