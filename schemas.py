"""Pydantic schemas for courses, progress, activity logs and derived views."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Type, TypeVar

from pydantic import BaseModel, Field, ValidationError

__all__ = [
    "QuizQuestion",
    "Flashcard",
    "Chapter",
    "CourseProgress",
    "QuizAnswer",
    "Verification",
    "RemediationPlan",
    "Course",
    "User",
    "ActivityLogEntry",
    "KnowledgeGap",
    "UserSummary",
    "EVENT_TYPES",
    "parse_json_safe",
]

EVENT_TYPES = (
    "login",
    "signup",
    "search",
    "generate_course",
    "quiz_submit",
    "remediation",
    "remediation_mastered",
    "profile_update",
)

VerificationStatus = Literal["VERIFIED", "CAUTION", "FLAGGED"]


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class QuizQuestion(BaseModel):
    question: str
    options: List[str] = Field(default_factory=list)
    correct_answer: int = Field(ge=0, description="Index of the correct entry in ``options``.")


class Flashcard(BaseModel):
    front: str
    back: str


class Chapter(BaseModel):
    """One topic unit of a course: reading content, narration and a quiz."""

    id: int
    title: str
    summary: str = ""
    content_markdown: str = ""
    audio_script: str = ""
    quiz: List[QuizQuestion] = Field(default_factory=list)
    flashcards: List[Flashcard] = Field(default_factory=list)


class CourseProgress(BaseModel):
    total_chapters: int = Field(default=0, ge=0)
    completed_chapter_ids: List[int] = Field(default_factory=list)
    quiz_scores: Dict[int, int] = Field(
        default_factory=dict,
        description="Raw quiz score (correct answers) keyed by chapter id.",
    )
    overall_grade: int = Field(default=0, ge=0, le=100)
    percent_complete: int = Field(default=0, ge=0, le=100)


class QuizAnswer(BaseModel):
    question: QuizQuestion
    selected_option: int | None = None
    is_correct: bool = False


class Verification(BaseModel):
    status: VerificationStatus = "CAUTION"
    score: int = Field(default=0, ge=0, le=100)
    notes: str = ""
    refined: bool = Field(
        default=False,
        description="True when the course went through a refine-and-reverify cycle.",
    )


class RemediationPlan(BaseModel):
    explanation: str
    questions: List[QuizQuestion] = Field(min_length=1)
    created_at: str = Field(default_factory=_utc_now_iso)


class Course(BaseModel):
    course_id: str
    title: str
    style: str = ""
    chapters: List[Chapter] = Field(default_factory=list)
    progress: CourseProgress | None = None
    quiz_history: Dict[int, List[QuizAnswer]] = Field(default_factory=dict)
    verification: Verification | None = None
    remediation: Dict[int, RemediationPlan] = Field(
        default_factory=dict,
        description="Pending remediation quizzes keyed by chapter id.",
    )
    username: str | None = None
    created_at: str | None = None

    model_config = {
        "extra": "allow",
    }

    def chapter(self, chapter_id: int) -> Chapter | None:
        for chapter in self.chapters:
            if chapter.id == chapter_id:
                return chapter
        return None


class User(BaseModel):
    username: str
    about_me: str = ""
    created_at: str = Field(default_factory=_utc_now_iso)


class ActivityLogEntry(BaseModel):
    id: str | None = None
    event_type: str
    timestamp: str | None = None
    user: str | None = None
    session_id: str | None = None
    query: str | None = None
    request: Dict[str, Any] | None = None
    response: Dict[str, Any] | None = None
    client_meta: Dict[str, Any] | None = None

    model_config = {
        "extra": "allow",
    }


class KnowledgeGap(BaseModel):
    course_title: str
    chapter_id: int
    chapter_title: str
    score_percent: int


class UserSummary(BaseModel):
    username: str
    courses: List[Course] = Field(default_factory=list)
    last_login: str | None = None
    last_topic: str | None = None
    last_search: str | None = None
    last_login_ms: int | None = None
    last_topic_ms: int | None = None
    last_search_ms: int | None = None
    top_gaps: List[KnowledgeGap] = Field(default_factory=list)


_T = TypeVar("_T", bound=BaseModel)


def _find_first_json_object(text: str) -> tuple[str, int, int]:
    start = text.find("{")
    while start != -1:
        depth = 0
        for idx in range(start, len(text)):
            char = text[idx]
            if char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    candidate = text[start : idx + 1]
                    try:
                        json.loads(candidate)
                    except ValueError:
                        break
                    return candidate, start, idx + 1
        start = text.find("{", start + 1)
    raise ValueError("No JSON object found in provided text")


def parse_json_safe(text: str, model: Type[_T]) -> _T:
    """Parse ``text`` into ``model``, falling back to the first embedded JSON object.

    Code fences around the object are tolerated; any other trailing prose is
    rejected so partially generated payloads do not validate by accident.
    """

    first_error: Exception | None = None
    try:
        return model.model_validate_json(text)
    except (ValidationError, ValueError, TypeError) as exc:
        first_error = exc

    try:
        snippet, _, end = _find_first_json_object(text)
    except ValueError:
        if first_error:
            raise first_error
        raise

    trailing = text[end:].strip().strip("`").strip()
    if trailing:
        if isinstance(first_error, ValidationError):
            raise first_error
        raise ValueError("Trailing content detected after JSON object")

    return model.model_validate_json(snippet)
