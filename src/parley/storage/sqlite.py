import json
import logging
import sqlite3
import threading
from pathlib import Path

from pydantic import ValidationError

from parley.errors import CorruptRecordError, NotFoundError, StorageIOError
from parley.models import Session
from parley.storage.backend import BaseBackend

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    created TEXT NOT NULL,
    updated TEXT NOT NULL,
    config TEXT NOT NULL DEFAULT '{}',
    metadata TEXT NOT NULL DEFAULT '{}',
    parent_id TEXT,
    branch_point INTEGER,
    branch_name TEXT,
    child_ids TEXT NOT NULL DEFAULT '[]',
    model TEXT NOT NULL DEFAULT '',
    provider TEXT NOT NULL DEFAULT '',
    temperature REAL,
    max_tokens INTEGER,
    system_prompt TEXT,
    conversation_created TEXT NOT NULL,
    conversation_updated TEXT NOT NULL,
    conversation_metadata TEXT NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS messages (
    session_id TEXT NOT NULL REFERENCES sessions(id),
    position INTEGER NOT NULL,
    id TEXT NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    attachments TEXT NOT NULL DEFAULT '[]',
    metadata TEXT NOT NULL DEFAULT '{}',
    PRIMARY KEY (session_id, position)
);

CREATE TABLE IF NOT EXISTS tags (
    session_id TEXT NOT NULL REFERENCES sessions(id),
    position INTEGER NOT NULL,
    tag TEXT NOT NULL,
    PRIMARY KEY (session_id, position)
);

CREATE INDEX IF NOT EXISTS idx_sessions_parent ON sessions(parent_id);
CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id);
"""


class SQLiteBackend(BaseBackend):
    """Sessions as rows in an embedded SQLite database."""

    backend_type = "sqlite"

    def __init__(self, db_path: str | Path, **options):
        self.db_path = Path(db_path)
        self.options = options
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._init_db()
        except (OSError, sqlite3.Error) as e:
            logger.error(f"Failed to open session database {self.db_path}: {e}")
            raise StorageIOError(f"Failed to open session database: {e}") from e

    def _init_db(self) -> None:
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")

        cursor = self._conn.cursor()
        cursor.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
        )
        if not cursor.fetchone():
            cursor.executescript(SCHEMA)
            cursor.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
            )
            self._conn.commit()
            logger.info(f"Session database initialized with schema version {SCHEMA_VERSION}")
        else:
            cursor.execute("SELECT version FROM schema_version")
            row = cursor.fetchone()
            if row and row[0] == 1:
                self._migrate_v1()
            elif row and row[0] != SCHEMA_VERSION:
                logger.warning(
                    f"Schema version mismatch: expected {SCHEMA_VERSION}, got {row[0]}"
                )

    def _migrate_v1(self) -> None:
        # Version 1 keyed tags by value, which rejected repeated tags.
        self._conn.executescript(
            f"""
            BEGIN;
            ALTER TABLE tags RENAME TO tags_v1;
            CREATE TABLE tags (
                session_id TEXT NOT NULL REFERENCES sessions(id),
                position INTEGER NOT NULL,
                tag TEXT NOT NULL,
                PRIMARY KEY (session_id, position)
            );
            INSERT INTO tags (session_id, position, tag)
                SELECT session_id, position, tag FROM tags_v1;
            DROP TABLE tags_v1;
            UPDATE schema_version SET version = {SCHEMA_VERSION};
            COMMIT;
            """
        )
        logger.info(f"Migrated session database to schema version {SCHEMA_VERSION}")

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageIOError("Database connection is closed")
        return self._conn

    def close(self) -> None:
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None
                logger.debug("Closed session database")

    def save_session(self, session: Session) -> None:
        previous = session.updated
        session.touch()
        try:
            data = session.model_dump(mode="json")
            conv = data["conversation"]
            with self._lock:
                # The connection context manager commits on success and rolls
                # back on any exception, so a failed save leaves the old rows.
                with self.conn:
                    self.conn.execute(
                        """
                        INSERT OR REPLACE INTO sessions
                        (id, name, created, updated, config, metadata, parent_id,
                         branch_point, branch_name, child_ids, model, provider,
                         temperature, max_tokens, system_prompt,
                         conversation_created, conversation_updated, conversation_metadata)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            data["id"],
                            data["name"],
                            data["created"],
                            data["updated"],
                            json.dumps(data["config"]),
                            json.dumps(data["metadata"]),
                            data["parent_id"],
                            data["branch_point"],
                            data["branch_name"],
                            json.dumps(data["child_ids"]),
                            conv["model"],
                            conv["provider"],
                            conv["temperature"],
                            conv["max_tokens"],
                            conv["system_prompt"],
                            conv["created"],
                            conv["updated"],
                            json.dumps(conv["metadata"]),
                        ),
                    )
                    self.conn.execute("DELETE FROM messages WHERE session_id = ?", (session.id,))
                    self.conn.executemany(
                        """
                        INSERT INTO messages
                        (session_id, position, id, role, content, timestamp, attachments, metadata)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        [
                            (
                                session.id,
                                i,
                                msg["id"],
                                msg["role"],
                                msg["content"],
                                msg["timestamp"],
                                json.dumps(msg["attachments"]),
                                json.dumps(msg["metadata"]),
                            )
                            for i, msg in enumerate(conv["messages"])
                        ],
                    )
                    self.conn.execute("DELETE FROM tags WHERE session_id = ?", (session.id,))
                    self.conn.executemany(
                        "INSERT INTO tags (session_id, position, tag) VALUES (?, ?, ?)",
                        [(session.id, i, tag) for i, tag in enumerate(data["tags"])],
                    )
        except (sqlite3.Error, TypeError, ValueError) as e:
            session.updated = previous
            logger.error(f"Failed to save session {session.id}: {e}")
            raise StorageIOError(
                f"Failed to save session: {e}", operation="save", session_id=session.id
            ) from e
        logger.debug(f"Saved session {session.id} ({len(conv['messages'])} message(s))")

    def load_session(self, session_id: str) -> Session:
        try:
            with self._lock:
                row = self.conn.execute(
                    "SELECT * FROM sessions WHERE id = ?", (session_id,)
                ).fetchone()
                if row is None:
                    raise NotFoundError("Session not found", operation="load", session_id=session_id)
                messages = self.conn.execute(
                    "SELECT * FROM messages WHERE session_id = ? ORDER BY position",
                    (session_id,),
                ).fetchall()
                tags = self.conn.execute(
                    "SELECT tag FROM tags WHERE session_id = ? ORDER BY position",
                    (session_id,),
                ).fetchall()
        except sqlite3.Error as e:
            raise StorageIOError(
                f"Failed to read session: {e}", operation="load", session_id=session_id
            ) from e

        try:
            return Session.model_validate(self._rows_to_dict(row, messages, tags))
        except (json.JSONDecodeError, TypeError, ValidationError) as e:
            raise CorruptRecordError(
                f"Invalid session data: {e}", operation="load", session_id=session_id
            ) from e

    def _rows_to_dict(
        self, row: sqlite3.Row, messages: list[sqlite3.Row], tags: list[sqlite3.Row]
    ) -> dict:
        return {
            "id": row["id"],
            "name": row["name"],
            "created": row["created"],
            "updated": row["updated"],
            "config": json.loads(row["config"]),
            "metadata": json.loads(row["metadata"]),
            "parent_id": row["parent_id"],
            "branch_point": row["branch_point"],
            "branch_name": row["branch_name"],
            "child_ids": json.loads(row["child_ids"]),
            "tags": [t["tag"] for t in tags],
            "conversation": {
                "id": row["id"],
                "model": row["model"],
                "provider": row["provider"],
                "temperature": row["temperature"],
                "max_tokens": row["max_tokens"],
                "system_prompt": row["system_prompt"],
                "created": row["conversation_created"],
                "updated": row["conversation_updated"],
                "metadata": json.loads(row["conversation_metadata"]),
                "messages": [
                    {
                        "id": m["id"],
                        "role": m["role"],
                        "content": m["content"],
                        "timestamp": m["timestamp"],
                        "attachments": json.loads(m["attachments"]),
                        "metadata": json.loads(m["metadata"]),
                    }
                    for m in messages
                ],
            },
        }

    def delete_session(self, session_id: str) -> None:
        try:
            with self._lock:
                with self.conn:
                    cursor = self.conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
                    if cursor.rowcount == 0:
                        raise NotFoundError(
                            "Session not found", operation="delete", session_id=session_id
                        )
                    self.conn.execute("DELETE FROM messages WHERE session_id = ?", (session_id,))
                    self.conn.execute("DELETE FROM tags WHERE session_id = ?", (session_id,))
        except NotFoundError:
            logger.warning(f"Session {session_id} not found for deletion")
            raise
        except sqlite3.Error as e:
            raise StorageIOError(
                f"Failed to delete session: {e}", operation="delete", session_id=session_id
            ) from e
        logger.info(f"Deleted session {session_id}")

    def _session_ids(self) -> list[str]:
        try:
            with self._lock:
                rows = self.conn.execute("SELECT id FROM sessions ORDER BY id").fetchall()
        except sqlite3.Error as e:
            raise StorageIOError(f"Failed to list sessions: {e}", operation="list") from e
        return [row["id"] for row in rows]
