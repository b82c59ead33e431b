import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional
from uuid import uuid4

from db_pool import SQLiteConnectionPool, StoreUnavailableError
from schemas import ActivityLogEntry, Course, User

logger = logging.getLogger(__name__)

DB_PATH = os.getenv("DB_PATH", "signal.db")

_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)


class DuplicateRecordError(ValueError):
    """Raised when an append reuses the id of an existing record."""


# Each record kind is one table of JSON documents. Lookups are exact-match on
# the indexed key columns; writes always replace the whole document.


@contextmanager
def _store() -> Iterator[sqlite3.Connection]:
    try:
        with _pool.get_connection() as con:
            yield con
    except sqlite3.IntegrityError:
        # constraint violations are caller conflicts, not an unreachable store
        raise
    except sqlite3.Error as exc:
        logger.error("Document store operation failed: %s", exc, exc_info=True)
        raise StoreUnavailableError(f"Document store unavailable: {exc}") from exc


def _exec(sql: str, params: Iterable = ()):
    with _store() as con:
        cur = con.execute(sql, tuple(params))
        con.commit()
        return cur


def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _store() as con:
        cur = con.execute(sql, tuple(params))
        return cur.fetchall()


def init() -> None:
    with _store() as con:
        con.executescript(
            """
            CREATE TABLE IF NOT EXISTS users (
              username    TEXT PRIMARY KEY,
              doc         TEXT NOT NULL,
              updated_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );
            CREATE TABLE IF NOT EXISTS courses (
              id          TEXT PRIMARY KEY,
              course_id   TEXT NOT NULL,
              username    TEXT,
              doc         TEXT NOT NULL,
              seq         INTEGER NOT NULL DEFAULT 0,
              updated_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );
            CREATE INDEX IF NOT EXISTS idx_courses_username ON courses(username);
            CREATE INDEX IF NOT EXISTS idx_courses_course_id ON courses(course_id);
            CREATE TABLE IF NOT EXISTS activity_logs (
              id          TEXT PRIMARY KEY,
              event_type  TEXT NOT NULL,
              username    TEXT,
              timestamp   TEXT NOT NULL,
              doc         TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_activity_logs_ts ON activity_logs(timestamp);
            """
        )
        con.commit()


def close() -> None:
    _pool.close_all()


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _load_doc(row: sqlite3.Row) -> Dict[str, Any]:
    try:
        return json.loads(row["doc"])
    except (TypeError, json.JSONDecodeError):
        logger.warning("Skipping undecodable document")
        return {}


# -------------- users --------------
def get_user(username: str) -> Optional[User]:
    rows = _query("SELECT doc FROM users WHERE username = ?", (username,))
    if not rows:
        return None
    return User.model_validate(_load_doc(rows[0]))


def _put_user(user: User) -> None:
    _exec(
        """
        INSERT INTO users (username, doc, updated_at)
        VALUES (?, ?, CURRENT_TIMESTAMP)
        ON CONFLICT(username) DO UPDATE SET
            doc = excluded.doc,
            updated_at = CURRENT_TIMESTAMP
        """,
        (user.username, json_dumps(user.model_dump(mode="json"))),
    )


def get_or_create_user(username: str) -> tuple[User, bool]:
    """Return the stored user, creating an empty profile on first sight."""
    existing = get_user(username)
    if existing is not None:
        return existing, False
    user = User(username=username, about_me="")
    _put_user(user)
    logger.info("Created user %s", username)
    return user, True


def update_user_profile(username: str, about_me: str) -> User:
    user, _ = get_or_create_user(username)
    updated = user.model_copy(update={"about_me": about_me})
    _put_user(updated)
    return updated


# -------------- courses --------------
def save_course(course: Course, username: Optional[str] = None) -> Course:
    """Upsert ``course`` as a full document replace, stamped with its owner."""
    owner = username or course.username
    stored = course.model_copy(update={"username": owner})
    _exec(
        """
        INSERT INTO courses (id, course_id, username, doc, seq, updated_at)
        VALUES (?, ?, ?, ?, (SELECT COALESCE(MAX(seq), 0) + 1 FROM courses), CURRENT_TIMESTAMP)
        ON CONFLICT(id) DO UPDATE SET
            username = excluded.username,
            doc = excluded.doc,
            seq = excluded.seq,
            updated_at = CURRENT_TIMESTAMP
        """,
        (
            stored.course_id,
            stored.course_id,
            owner,
            json_dumps(stored.model_dump(mode="json")),
        ),
    )
    return stored


def get_course(course_id: str) -> Optional[Course]:
    rows = _query("SELECT doc FROM courses WHERE course_id = ? ORDER BY seq DESC", (course_id,))
    if not rows:
        return None
    return Course.model_validate(_load_doc(rows[0]))


def find_course_documents(course_id: str) -> List[Dict[str, Any]]:
    """Raw stored documents matching ``course_id``, newest first."""
    rows = _query(
        "SELECT id, username, doc, seq, updated_at FROM courses WHERE course_id = ? ORDER BY seq DESC",
        (course_id,),
    )
    documents = []
    for row in rows:
        doc = _load_doc(row)
        doc.setdefault("id", row["id"])
        doc["_seq"] = row["seq"]
        doc["_updated_at"] = row["updated_at"]
        documents.append(doc)
    return documents


def list_user_courses(username: str) -> List[Course]:
    rows = _query("SELECT doc FROM courses WHERE username = ? ORDER BY seq ASC", (username,))
    return [Course.model_validate(_load_doc(row)) for row in rows]


def list_recent_courses(limit: int = 80) -> List[Course]:
    rows = _query("SELECT doc FROM courses ORDER BY seq DESC LIMIT ?", (int(limit),))
    return [Course.model_validate(_load_doc(row)) for row in rows]


# -------------- activity log --------------
def log_event(event_type: str, entry: Optional[Mapping[str, Any]] = None) -> ActivityLogEntry:
    """Append an activity event. Entries are never updated afterwards."""
    payload = dict(entry or {})
    payload["event_type"] = event_type
    if not payload.get("id"):
        payload["id"] = str(uuid4())
    if not payload.get("timestamp"):
        payload["timestamp"] = _utc_now()
    record = ActivityLogEntry.model_validate(payload)
    try:
        _exec(
            "INSERT INTO activity_logs (id, event_type, username, timestamp, doc) VALUES (?,?,?,?,?)",
            (
                record.id,
                record.event_type,
                record.user,
                record.timestamp,
                json_dumps(record.model_dump(mode="json", exclude_none=True)),
            ),
        )
    except sqlite3.IntegrityError as exc:
        raise DuplicateRecordError(f"Activity log entry {record.id} already exists") from exc
    return record


def list_recent_logs(limit: int = 80) -> List[ActivityLogEntry]:
    rows = _query(
        "SELECT doc FROM activity_logs ORDER BY timestamp DESC, rowid DESC LIMIT ?",
        (int(limit),),
    )
    return [ActivityLogEntry.model_validate(_load_doc(row)) for row in rows]


def list_user_logs(username: str, limit: int = 100) -> List[ActivityLogEntry]:
    rows = _query(
        "SELECT doc FROM activity_logs WHERE username = ? ORDER BY timestamp DESC, rowid DESC LIMIT ?",
        (username, int(limit)),
    )
    return [ActivityLogEntry.model_validate(_load_doc(row)) for row in rows]
