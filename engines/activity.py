"""Fold activity logs and owned courses into per-user summaries for the admin view.

Log batches come from the store newest-first, but nothing here relies on
that: "most recent" fields are decided by comparing parsed timestamps, so any
permutation of the same batch yields the same summaries.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from engines.knowledge_gaps import compute_knowledge_gaps
from schemas import ActivityLogEntry, Course, UserSummary

logger = logging.getLogger(__name__)

ANONYMOUS_USER = "anonymous"

LogLike = Union[ActivityLogEntry, Mapping[str, Any]]
CourseLike = Union[Course, Mapping[str, Any]]

# (epoch millis, parsed flag, value) -- unparsable timestamps sort below parsed ones
_RecencyKey = Tuple[int, int, str]


def parse_timestamp_ms(value: Optional[str]) -> Optional[int]:
    """Parse an ISO-8601 (or ``YYYY-MM-DD HH:MM:SS``) timestamp into epoch millis."""

    if not value:
        return None
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        try:
            parsed = datetime.strptime(text, "%Y-%m-%d %H:%M:%S")
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


def _as_entry(log: LogLike) -> ActivityLogEntry:
    if isinstance(log, ActivityLogEntry):
        return log
    return ActivityLogEntry.model_validate(dict(log))


def _as_course(course: CourseLike) -> Course:
    if isinstance(course, Course):
        return course
    return Course.model_validate(dict(course))


def _owner(name: Optional[str]) -> str:
    return name or ANONYMOUS_USER


def _non_empty(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return None


def topic_for_entry(entry: ActivityLogEntry) -> Optional[str]:
    """Topic requested by a ``generate_course`` event."""

    request = entry.request or {}
    return _non_empty(request.get("topic")) or _non_empty(request.get("query"))


def search_term_for_entry(entry: ActivityLogEntry) -> Optional[str]:
    request = entry.request or {}
    return _non_empty(entry.query) or _non_empty(request.get("query"))


class _Accumulator:
    def __init__(self, username: str) -> None:
        self.username = username
        self.courses: List[Course] = []
        self.latest: Dict[str, Tuple[_RecencyKey, str]] = {}

    def offer(self, field: str, timestamp: Optional[str], value: str) -> None:
        millis = parse_timestamp_ms(timestamp)
        key: _RecencyKey = (millis or 0, 1 if millis is not None else 0, value)
        current = self.latest.get(field)
        if current is None or key > current[0]:
            self.latest[field] = (key, value)

    def _field(self, field: str) -> Tuple[Optional[str], Optional[int]]:
        item = self.latest.get(field)
        if item is None:
            return None, None
        key, value = item
        return value, key[0]

    def build(self) -> UserSummary:
        # course order must not depend on the input permutation
        courses = sorted(
            self.courses, key=lambda c: (c.created_at or "", c.course_id, c.title)
        )
        last_login, last_login_ms = self._field("login")
        last_topic, last_topic_ms = self._field("topic")
        last_search, last_search_ms = self._field("search")
        return UserSummary(
            username=self.username,
            courses=courses,
            last_login=last_login,
            last_login_ms=last_login_ms,
            last_topic=last_topic,
            last_topic_ms=last_topic_ms,
            last_search=last_search,
            last_search_ms=last_search_ms,
            top_gaps=compute_knowledge_gaps(courses),
        )


def summarize_user_activity(
    logs: Iterable[LogLike],
    courses: Iterable[CourseLike],
) -> List[UserSummary]:
    """Build one :class:`UserSummary` per distinct user, sorted by username.

    Users that own courses but never logged an event still get a summary.
    """

    users: Dict[str, _Accumulator] = {}

    def ensure(name: Optional[str]) -> _Accumulator:
        key = _owner(name)
        if key not in users:
            users[key] = _Accumulator(key)
        return users[key]

    for raw_course in courses:
        course = _as_course(raw_course)
        ensure(course.username).courses.append(course)

    for raw_log in logs:
        entry = _as_entry(raw_log)
        acc = ensure(entry.user)
        if entry.event_type == "login":
            if entry.timestamp:
                acc.offer("login", entry.timestamp, entry.timestamp)
        elif entry.event_type == "generate_course":
            topic = topic_for_entry(entry)
            if topic:
                acc.offer("topic", entry.timestamp, topic)
        elif entry.event_type == "search":
            term = search_term_for_entry(entry)
            if term:
                acc.offer("search", entry.timestamp, term)

    summaries = [users[name].build() for name in sorted(users)]
    logger.debug("Summarized activity for %d users", len(summaries))
    return summaries


def sort_by_recent_login(summaries: Sequence[UserSummary]) -> List[UserSummary]:
    """Most recent login first; users who never logged in go last."""

    return sorted(summaries, key=lambda s: -(s.last_login_ms or 0))


def recent_events(
    logs: Iterable[LogLike],
    event_types: Sequence[str],
    limit: int,
) -> List[ActivityLogEntry]:
    """Newest ``limit`` events of the given types, by parsed timestamp."""

    wanted = set(event_types)
    matching = [entry for entry in map(_as_entry, logs) if entry.event_type in wanted]
    matching.sort(
        key=lambda entry: (parse_timestamp_ms(entry.timestamp) or 0, entry.id or ""),
        reverse=True,
    )
    return matching[: max(0, int(limit))]
