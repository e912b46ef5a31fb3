"""
Durable session store for upload records.
Uses SQLite so paused uploads survive a server restart.
"""

import sqlite3
import logging
from datetime import datetime
from pathlib import Path
from typing import Dict

from chunked_uploader.models.upload import PersistedUpload

logger = logging.getLogger(__name__)


class SessionStore:
    """Load/save contract the upload registry mirrors itself into."""

    def load(self) -> Dict[str, PersistedUpload]:
        raise NotImplementedError

    def save(self, records: Dict[str, PersistedUpload]) -> None:
        raise NotImplementedError


class InMemorySessionStore(SessionStore):
    """Keeps the last saved snapshot in memory."""

    def __init__(self):
        self._payloads: Dict[str, str] = {}
        self.save_count = 0

    def load(self) -> Dict[str, PersistedUpload]:
        return {
            upload_id: PersistedUpload.model_validate_json(payload)
            for upload_id, payload in self._payloads.items()
        }

    def save(self, records: Dict[str, PersistedUpload]) -> None:
        self._payloads = {upload_id: record.model_dump_json() for upload_id, record in records.items()}
        self.save_count += 1


class SqliteSessionStore(SessionStore):
    """SQLite-backed store, one JSON payload row per upload."""

    def __init__(self, db_path: str = "chunked_uploader.db"):
        self.db_path = Path(db_path)
        self._init_database()

    def _init_database(self):
        """Initialize the database with required tables."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS upload_sessions (
                    upload_id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    payload TEXT NOT NULL,  -- JSON string
                    updated_at TEXT NOT NULL
                )
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_upload_sessions_status ON upload_sessions(status)
            """)

            conn.commit()
            logger.info(f"Session store initialized at {self.db_path}")

    def load(self) -> Dict[str, PersistedUpload]:
        records: Dict[str, PersistedUpload] = {}
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT upload_id, payload FROM upload_sessions")
            for upload_id, payload in cursor.fetchall():
                try:
                    records[upload_id] = PersistedUpload.model_validate_json(payload)
                except ValueError as e:
                    logger.error(f"Skipping unreadable session {upload_id}: {e}")
        logger.info(f"Loaded {len(records)} upload sessions from {self.db_path}")
        return records

    def save(self, records: Dict[str, PersistedUpload]) -> None:
        """Replace the stored set with ``records`` in a single transaction."""
        now = datetime.now().isoformat()
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.executemany(
                """
                INSERT INTO upload_sessions (upload_id, status, payload, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(upload_id) DO UPDATE SET
                    status = excluded.status,
                    payload = excluded.payload,
                    updated_at = excluded.updated_at
                """,
                [
                    (upload_id, str(record.status), record.model_dump_json(), now)
                    for upload_id, record in records.items()
                ],
            )
            if records:
                placeholders = ",".join("?" for _ in records)
                cursor.execute(
                    f"DELETE FROM upload_sessions WHERE upload_id NOT IN ({placeholders})",
                    list(records.keys()),
                )
            else:
                cursor.execute("DELETE FROM upload_sessions")
            conn.commit()
