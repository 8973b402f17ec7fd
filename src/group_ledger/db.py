"""SQLite key-value record store for Group Ledger.

Each group is stored as one JSON blob under a stable key and replaced whole
on every write.
"""

import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any

from .exceptions import PersistenceError

GROUP_KEY_PREFIX = "group-ledger/groups/"


def group_key(group_id: str) -> str:
    """Stable store key for a group record."""
    return f"{GROUP_KEY_PREFIX}{group_id}"


class Database:
    """SQLite database manager."""

    def __init__(self, db_path: Path | str):
        """Initialize database connection."""
        self.db_path = db_path
        try:
            self.conn = sqlite3.connect(str(db_path))
            self.conn.row_factory = sqlite3.Row
            self._init_schema()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to open database {db_path}: {e}") from e

    def _init_schema(self):
        """Initialize database schema."""
        cursor = self.conn.cursor()

        # Key-value records table
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS records (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """
        )

        self.conn.commit()

    def close(self):
        """Close database connection."""
        self.conn.close()

    # ========================================================================
    # Raw key-value operations
    # ========================================================================

    def get(self, key: str) -> str | None:
        """Get a raw value by key."""
        try:
            cursor = self.conn.cursor()
            cursor.execute("SELECT value FROM records WHERE key = ?", (key,))
            row = cursor.fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to read {key}: {e}") from e
        return str(row["value"]) if row else None

    def set(self, key: str, value: str):
        """Set a raw value, replacing any previous one."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                """
                INSERT INTO records (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (key, value, datetime.now().isoformat()),
            )
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            raise PersistenceError(f"Failed to write {key}: {e}") from e

    def delete(self, key: str):
        """Delete a value by key. Missing keys are ignored."""
        try:
            cursor = self.conn.cursor()
            cursor.execute("DELETE FROM records WHERE key = ?", (key,))
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            raise PersistenceError(f"Failed to delete {key}: {e}") from e

    def keys(self, prefix: str = "") -> list[str]:
        """List keys starting with prefix, oldest write first."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                "SELECT key FROM records WHERE substr(key, 1, ?) = ? "
                "ORDER BY updated_at, key",
                (len(prefix), prefix),
            )
            return [str(row["key"]) for row in cursor.fetchall()]
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to list keys: {e}") from e

    # ========================================================================
    # Group records
    # ========================================================================

    def load_group_records(self) -> list[dict[str, Any]]:
        """Load every stored group record as a decoded dict."""
        records = []
        for key in self.keys(GROUP_KEY_PREFIX):
            raw = self.get(key)
            if raw is None:
                continue
            try:
                records.append(json.loads(raw))
            except json.JSONDecodeError as e:
                raise PersistenceError(f"Corrupt record under {key}: {e}") from e
        return records

    def save_group_record(self, group_id: str, record: dict[str, Any]):
        """Replace the stored record for a group."""
        self.set(group_key(group_id), json.dumps(record))

    def delete_group_record(self, group_id: str):
        """Remove the stored record for a group."""
        self.delete(group_key(group_id))
