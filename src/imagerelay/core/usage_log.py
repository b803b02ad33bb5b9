"""SQLite audit log of billable API calls."""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from typing import Any

from .records import UserIdentity

logger = logging.getLogger(__name__)

# Columns added after the first schema version; migrated in place.
_ADDED_COLUMNS: tuple[str, ...] = ("user_email", "user_name")


class UsageLog:
    """Record API calls per user in SQLite.

    Logging is best-effort: a database failure is logged and reported through
    the return value, never raised into the request that triggered it.
    """

    def __init__(self, db_path: Path):
        """Initialize the usage log database.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_db()
        logger.info(f"Initialized usage log at {self.db_path}")

    def _initialize_db(self) -> None:
        """Create the schema and add columns missing from older databases."""
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS api_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT,
                    endpoint TEXT,
                    method TEXT,
                    status_code INTEGER,
                    request_body TEXT,
                    response_body TEXT,
                    error_message TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
                """)

            cursor.execute("PRAGMA table_info(api_logs)")
            existing = {row[1] for row in cursor.fetchall()}
            for column in _ADDED_COLUMNS:
                if column not in existing:
                    cursor.execute(f"ALTER TABLE api_logs ADD COLUMN {column} TEXT")
                    logger.info(f"Added column api_logs.{column}")

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_api_logs_user
                ON api_logs(user_id, created_at DESC)
                """)

            conn.commit()

    def log_call(
        self,
        user: UserIdentity,
        endpoint: str,
        method: str,
        status_code: int,
        request_body: Any,
        response_body: Any,
        error_message: str | None = None,
    ) -> bool:
        """Insert one usage row.

        Args:
            user: Calling user.
            endpoint: Request path that was billed.
            method: HTTP method.
            status_code: Response status returned to the caller.
            request_body: JSON-serialisable summary of the request.
            response_body: JSON-serialisable summary of the response.
            error_message: Optional error text.

        Returns:
            True if the row was written, False otherwise.
        """
        try:
            with sqlite3.connect(self.db_path) as conn:
                conn.execute(
                    """
                    INSERT INTO api_logs
                    (user_id, user_email, user_name, endpoint, method, status_code,
                     request_body, response_body, error_message)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        user.id,
                        user.email,
                        user.name,
                        endpoint,
                        method,
                        status_code,
                        json.dumps(request_body, default=str),
                        json.dumps(response_body, default=str),
                        error_message,
                    ),
                )
                conn.commit()
            logger.info(f"Logged {method} {endpoint} ({status_code}) for user {user.id}")
            return True

        except (sqlite3.Error, TypeError, ValueError) as e:
            logger.error(f"Error logging API call {method} {endpoint}: {e}")
            return False

    def get_user_logs(self, user_id: str, limit: int = 100) -> list[dict[str, Any]]:
        """Return a user's log rows, newest first.

        Returns:
            List of row dictionaries, empty on database errors.
        """
        try:
            with sqlite3.connect(self.db_path) as conn:
                conn.row_factory = sqlite3.Row
                cursor = conn.execute(
                    """
                    SELECT * FROM api_logs WHERE user_id = ?
                    ORDER BY created_at DESC, id DESC LIMIT ?
                    """,
                    (user_id, limit),
                )
                return [dict(row) for row in cursor.fetchall()]

        except sqlite3.Error as e:
            logger.error(f"Error getting logs for user {user_id}: {e}")
            return []
