"""Explicit learner session state with pure reducer-style transitions.

The client keeps the current user, the course list, the selected course and
in-flight flags in one serializable :class:`SessionState`. Every interaction
is expressed as an action mapping passed to :func:`reduce`, which returns a
new state and never mutates its input.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Literal, Mapping, Optional, Tuple

from engines.progress import apply_quiz_result
from schemas import Course, User

Phase = Literal["AUTH", "IDLE", "GENERATING", "PLAYING"]

LOADING_STEPS = 5


@dataclass(frozen=True)
class SessionState:
    phase: Phase = "AUTH"
    user: Optional[User] = None
    courses: Tuple[Course, ...] = ()
    current_course_id: Optional[str] = None
    active_chapter_id: Optional[int] = None
    expanded_chapter_ids: Tuple[int, ...] = ()
    query: str = ""
    loading_step: int = 0
    error: Optional[str] = None

    @property
    def current_course(self) -> Optional[Course]:
        for course in self.courses:
            if course.course_id == self.current_course_id:
                return course
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase,
            "user": self.user.model_dump() if self.user else None,
            "courses": [course.model_dump(mode="json") for course in self.courses],
            "current_course_id": self.current_course_id,
            "active_chapter_id": self.active_chapter_id,
            "expanded_chapter_ids": list(self.expanded_chapter_ids),
            "query": self.query,
            "loading_step": self.loading_step,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "SessionState":
        user = payload.get("user")
        return cls(
            phase=payload.get("phase", "AUTH"),
            user=User.model_validate(user) if user else None,
            courses=tuple(Course.model_validate(c) for c in payload.get("courses") or ()),
            current_course_id=payload.get("current_course_id"),
            active_chapter_id=payload.get("active_chapter_id"),
            expanded_chapter_ids=tuple(payload.get("expanded_chapter_ids") or ()),
            query=payload.get("query", ""),
            loading_step=int(payload.get("loading_step", 0)),
            error=payload.get("error"),
        )


def _login(state: SessionState, action: Mapping[str, Any]) -> SessionState:
    username = str(action.get("username") or "").strip()
    if not username:
        return state
    user = User(username=username, about_me=str(action.get("about_me") or ""))
    return replace(state, phase="IDLE", user=user, error=None)


def _logout(state: SessionState, action: Mapping[str, Any]) -> SessionState:
    # courses stay cached on the device, as after a browser reload
    return replace(
        state,
        phase="AUTH",
        user=None,
        current_course_id=None,
        active_chapter_id=None,
        expanded_chapter_ids=(),
    )


def _update_profile(state: SessionState, action: Mapping[str, Any]) -> SessionState:
    if state.user is None:
        return state
    updates: Dict[str, Any] = {}
    if action.get("username"):
        updates["username"] = str(action["username"])
    if "about_me" in action:
        updates["about_me"] = str(action.get("about_me") or "")
    return replace(state, user=state.user.model_copy(update=updates))


def _new_course(state: SessionState, action: Mapping[str, Any]) -> SessionState:
    return replace(
        state,
        phase="IDLE",
        current_course_id=None,
        active_chapter_id=None,
        expanded_chapter_ids=(),
        query="",
    )


def _start_generation(state: SessionState, action: Mapping[str, Any]) -> SessionState:
    topic = str(action.get("topic") or "").strip()
    if not topic:
        return state
    return replace(state, phase="GENERATING", query=topic, loading_step=0, error=None)


def _advance_loading(state: SessionState, action: Mapping[str, Any]) -> SessionState:
    if state.phase != "GENERATING":
        return state
    return replace(state, loading_step=(state.loading_step + 1) % LOADING_STEPS)


def _select(state: SessionState, course: Course) -> SessionState:
    first_chapter = course.chapters[0].id if course.chapters else None
    return replace(
        state,
        phase="PLAYING",
        current_course_id=course.course_id,
        active_chapter_id=first_chapter,
        expanded_chapter_ids=(first_chapter,) if first_chapter is not None else (),
    )


def _generation_succeeded(state: SessionState, action: Mapping[str, Any]) -> SessionState:
    course = action["course"]
    if not isinstance(course, Course):
        course = Course.model_validate(course)
    others = tuple(c for c in state.courses if c.course_id != course.course_id)
    # new courses go to the end of the list
    updated = replace(state, courses=others + (course,), loading_step=0, error=None)
    return _select(updated, course)


def _generation_failed(state: SessionState, action: Mapping[str, Any]) -> SessionState:
    message = str(action.get("error") or "Error generating course.")
    return replace(state, phase="IDLE", loading_step=0, error=message)


def _select_course(state: SessionState, action: Mapping[str, Any]) -> SessionState:
    course_id = action.get("course_id")
    for course in state.courses:
        if course.course_id == course_id:
            return _select(state, course)
    return state


def _set_active_chapter(state: SessionState, action: Mapping[str, Any]) -> SessionState:
    return replace(state, active_chapter_id=action.get("chapter_id"))


def _toggle_chapter(state: SessionState, action: Mapping[str, Any]) -> SessionState:
    chapter_id = action.get("chapter_id")
    if chapter_id in state.expanded_chapter_ids:
        expanded = tuple(cid for cid in state.expanded_chapter_ids if cid != chapter_id)
    else:
        expanded = state.expanded_chapter_ids + (chapter_id,)
    return replace(state, expanded_chapter_ids=expanded)


def _quiz_completed(state: SessionState, action: Mapping[str, Any]) -> SessionState:
    course_id = action.get("course_id", state.current_course_id)
    chapter_id = int(action["chapter_id"])
    score = int(action.get("score", 0))
    mastered = bool(action.get("mastered", False))
    courses = []
    for course in state.courses:
        if course.course_id == course_id:
            progress = apply_quiz_result(course, chapter_id, score, mastered=mastered)
            course = course.model_copy(update={"progress": progress})
        courses.append(course)
    return replace(state, courses=tuple(courses))


_REDUCERS: Dict[str, Callable[[SessionState, Mapping[str, Any]], SessionState]] = {
    "login": _login,
    "logout": _logout,
    "update_profile": _update_profile,
    "new_course": _new_course,
    "start_generation": _start_generation,
    "advance_loading": _advance_loading,
    "generation_succeeded": _generation_succeeded,
    "generation_failed": _generation_failed,
    "select_course": _select_course,
    "set_active_chapter": _set_active_chapter,
    "toggle_chapter": _toggle_chapter,
    "quiz_completed": _quiz_completed,
}


def reduce(state: SessionState, action: Mapping[str, Any]) -> SessionState:
    """Apply ``action`` (a mapping with a ``type`` key) and return the new state."""

    action_type = action.get("type")
    handler = _REDUCERS.get(str(action_type))
    if handler is None:
        raise ValueError(f"Unknown session action: {action_type!r}")
    return handler(state, action)
