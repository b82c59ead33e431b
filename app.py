# app.py — Signal course API
# - Course generation via an OpenAI-style completions endpoint (tutor.py)
# - Quiz grading, progress aggregation and remediation per chapter
# - Admin insights folded from activity logs and stored courses

import logging
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field, ValidationError

import db
import tutor
from demo_course import build_demo_course, is_demo_topic
from engines.activity import (
    recent_events,
    search_term_for_entry,
    sort_by_recent_login,
    summarize_user_activity,
    topic_for_entry,
)
from engines.progress import (
    apply_quiz_result,
    grade_quiz,
    is_mastery,
    missed_answers,
    passing_score,
)
from env_validation import get_env_int
from schemas import EVENT_TYPES, Chapter, Course

logger = logging.getLogger(__name__)

LOGIN_PREVIEW_LIMIT = 6
TOPIC_PREVIEW_LIMIT = 8


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        from env_validation import validate_environment
        validate_environment()

        db.init()
        logger.info("Signal API ready (model: %s, store: %s)", tutor.MODEL_ID, db.DB_PATH)
        yield
        db.close()
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="Signal", version="1.0.0", lifespan=_lifespan)


@contextmanager
def _store_guard() -> Iterator[None]:
    try:
        yield
    except db.StoreUnavailableError as exc:
        logger.error("Store unavailable: %s", exc)
        raise HTTPException(status_code=503, detail="store unavailable") from exc


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _require_username(value: Optional[str]) -> str:
    username = (value or "").strip()
    if not username:
        raise HTTPException(status_code=400, detail="username is required")
    return username


def _load_course(course_id: str, username: Optional[str] = None) -> Course:
    with _store_guard():
        course = db.get_course(course_id)
    if course is None:
        raise HTTPException(status_code=404, detail="course not found")
    if username and course.username and course.username != username:
        raise HTTPException(status_code=403, detail="course does not belong to user")
    return course


def _load_chapter(course: Course, chapter_id: int) -> Chapter:
    chapter = course.chapter(chapter_id)
    if chapter is None:
        raise HTTPException(status_code=404, detail="chapter not found")
    return chapter


def _dump(course: Course) -> Dict[str, Any]:
    return course.model_dump(mode="json")


# ---------- Bodies ----------
class LoginBody(BaseModel):
    username: Optional[str] = None
    session_id: Optional[str] = None
    client_meta: Optional[Dict[str, Any]] = None


class ProfileBody(BaseModel):
    username: Optional[str] = None
    about_me: str = Field(default="", max_length=2000)


class SaveCourseBody(BaseModel):
    course: Optional[Dict[str, Any]] = None
    username: Optional[str] = None


class GenerateBody(BaseModel):
    username: Optional[str] = None
    topic: Optional[str] = None


class QuizSubmitBody(BaseModel):
    username: Optional[str] = None
    chapter_id: int
    answers: List[Optional[int]] = Field(default_factory=list)


class RemediationBody(BaseModel):
    username: Optional[str] = None
    chapter_id: int


class RemediationCompleteBody(BaseModel):
    username: Optional[str] = None
    chapter_id: int
    answers: List[Optional[int]] = Field(default_factory=list)


class LogBody(BaseModel):
    event_type: Optional[str] = None
    entry: Optional[Dict[str, Any]] = None


# ---------- Auth / profile ----------
@app.post("/auth/login")
def auth_login(body: LoginBody):
    username = _require_username(body.username)
    with _store_guard():
        user, created = db.get_or_create_user(username)
        entry = {"user": username, "session_id": body.session_id, "client_meta": body.client_meta}
        if created:
            db.log_event("signup", entry)
        db.log_event("login", entry)
    return user.model_dump(mode="json")


@app.post("/profile")
def update_profile(body: ProfileBody):
    username = _require_username(body.username)
    with _store_guard():
        user = db.update_user_profile(username, body.about_me)
        db.log_event("profile_update", {"user": username})
    return user.model_dump(mode="json")


# ---------- Courses ----------
@app.get("/courses")
def list_courses(username: Optional[str] = None):
    username = _require_username(username)
    with _store_guard():
        courses = db.list_user_courses(username)
    return {"courses": [_dump(course) for course in courses]}


@app.get("/courses/{course_id}")
def get_course(course_id: str):
    return _dump(_load_course(course_id))


@app.post("/courses")
def save_course(body: SaveCourseBody):
    if not body.course or not (body.username or "").strip():
        raise HTTPException(status_code=400, detail="course and username are required")
    username = body.username.strip()
    try:
        course = Course.model_validate(body.course)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=f"invalid course: {exc.errors()[:3]}") from exc

    with _store_guard():
        db.save_course(course, username)
        if course.quiz_history:
            db.log_event(
                "quiz_submit",
                {
                    "user": username,
                    "request": {"course_id": course.course_id},
                    "response": {"quiz_entries": len(course.quiz_history)},
                },
            )
        else:
            db.log_event(
                "generate_course",
                {
                    "user": username,
                    "request": {"course_id": course.course_id},
                    "response": {"title": course.title, "chapters": len(course.chapters)},
                },
            )
        saved = db.get_course(course.course_id)
    return {"ok": True, "saved": _dump(saved) if saved else None}


@app.post("/courses/generate")
def generate_course(body: GenerateBody):
    username = _require_username(body.username)
    topic = (body.topic or "").strip()
    if not topic:
        raise HTTPException(status_code=400, detail="topic is required")

    with _store_guard():
        user, _ = db.get_or_create_user(username)

    if is_demo_topic(topic):
        course = build_demo_course()
    else:
        try:
            course = tutor.create_course(topic, user.about_me)
        except tutor.GenerationError as exc:
            logger.error("Course generation failed for %r: %s", topic, exc)
            raise HTTPException(status_code=502, detail=tutor.GENERATION_FAILED_MESSAGE) from exc
    if not course.created_at:
        course = course.model_copy(update={"created_at": _utc_now()})

    with _store_guard():
        stored = db.save_course(course, username)
        db.log_event(
            "generate_course",
            {
                "user": username,
                "request": {"topic": topic},
                "response": {
                    "course_id": stored.course_id,
                    "title": stored.title,
                    "chapters": len(stored.chapters),
                    "verification": stored.verification.status if stored.verification else None,
                },
            },
        )
    return _dump(stored)


# ---------- Quiz / remediation ----------
@app.post("/courses/{course_id}/quiz")
def submit_quiz(course_id: str, body: QuizSubmitBody):
    username = _require_username(body.username)
    course = _load_course(course_id, username)
    chapter = _load_chapter(course, body.chapter_id)

    score, answers = grade_quiz(chapter.quiz, body.answers)
    mastery = is_mastery(answers)
    progress = apply_quiz_result(course, chapter.id, score)

    quiz_history = dict(course.quiz_history)
    quiz_history[chapter.id] = answers
    remediation = dict(course.remediation)
    if mastery:
        remediation.pop(chapter.id, None)
    updated = course.model_copy(
        update={"progress": progress, "quiz_history": quiz_history, "remediation": remediation}
    )

    with _store_guard():
        db.save_course(updated, username)
        db.log_event(
            "quiz_submit",
            {
                "user": username,
                "request": {"course_id": course_id, "chapter_id": chapter.id},
                "response": {"score": score, "quiz_length": len(chapter.quiz), "mastery": mastery},
            },
        )
    return {
        "score": score,
        "quiz_length": len(chapter.quiz),
        "mastery": mastery,
        "passed": score >= passing_score(chapter),
        "missed": [answer.model_dump(mode="json") for answer in missed_answers(answers)],
        "course": _dump(updated),
    }


@app.post("/courses/{course_id}/remediation")
def request_remediation(course_id: str, body: RemediationBody):
    username = _require_username(body.username)
    course = _load_course(course_id, username)
    chapter = _load_chapter(course, body.chapter_id)

    history = course.quiz_history.get(chapter.id)
    if not history:
        raise HTTPException(status_code=400, detail="no quiz attempt recorded for chapter")
    missed = missed_answers(history)
    if not missed:
        raise HTTPException(status_code=400, detail="chapter already mastered")

    try:
        plan = tutor.generate_remediation(chapter, missed)
    except tutor.GenerationError as exc:
        logger.error("Remediation failed for %s/%s: %s", course_id, chapter.id, exc)
        raise HTTPException(status_code=502, detail="Failed to generate remediation. Please try again.") from exc

    remediation = dict(course.remediation)
    remediation[chapter.id] = plan
    updated = course.model_copy(update={"remediation": remediation})
    with _store_guard():
        db.save_course(updated, username)
        db.log_event(
            "remediation",
            {
                "user": username,
                "request": {"course_id": course_id, "chapter_id": chapter.id},
                "response": {"missed": len(missed), "questions": len(plan.questions)},
            },
        )
    return plan.model_dump(mode="json")


@app.post("/courses/{course_id}/remediation/complete")
def complete_remediation(course_id: str, body: RemediationCompleteBody):
    username = _require_username(body.username)
    course = _load_course(course_id, username)
    chapter = _load_chapter(course, body.chapter_id)

    plan = course.remediation.get(chapter.id)
    if plan is None:
        raise HTTPException(status_code=404, detail="no remediation pending for chapter")

    score, answers = grade_quiz(plan.questions, body.answers)
    mastered = is_mastery(answers)
    if not mastered:
        return {
            "mastered": False,
            "score": score,
            "total": len(plan.questions),
            "course": _dump(course),
        }

    remediation = dict(course.remediation)
    remediation.pop(chapter.id, None)
    progress = apply_quiz_result(course, chapter.id, len(chapter.quiz), mastered=True)
    updated = course.model_copy(update={"progress": progress, "remediation": remediation})
    with _store_guard():
        db.save_course(updated, username)
        db.log_event(
            "remediation_mastered",
            {
                "user": username,
                "request": {"course_id": course_id, "chapter_id": chapter.id},
                "response": {"overall_grade": progress.overall_grade},
            },
        )
    return {"mastered": True, "score": score, "total": len(plan.questions), "course": _dump(updated)}


# ---------- Activity log ----------
@app.post("/log")
def log_activity(body: LogBody):
    event_type = (body.event_type or "").strip()
    if not event_type:
        raise HTTPException(status_code=400, detail="event_type is required")
    if event_type not in EVENT_TYPES:
        raise HTTPException(status_code=400, detail=f"unknown event_type: {event_type}")
    try:
        with _store_guard():
            saved = db.log_event(event_type, body.entry or {})
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=f"invalid log entry: {exc.errors()[:3]}") from exc
    except db.DuplicateRecordError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {"ok": True, "id": saved.id}


# ---------- Admin ----------
@app.get("/admin/insights")
def admin_insights():
    log_limit = get_env_int("ADMIN_LOG_LIMIT", 80)
    course_limit = get_env_int("ADMIN_COURSE_LIMIT", 80)
    with _store_guard():
        logs = db.list_recent_logs(log_limit)
        courses = db.list_recent_courses(course_limit)

    summaries = sort_by_recent_login(summarize_user_activity(logs, courses))
    logins = recent_events(logs, ["login"], LOGIN_PREVIEW_LIMIT)
    topic_requests = []
    for entry in recent_events(logs, ["generate_course", "search"], TOPIC_PREVIEW_LIMIT):
        topic = topic_for_entry(entry) if entry.event_type == "generate_course" else search_term_for_entry(entry)
        topic_requests.append(
            {
                "id": entry.id,
                "event_type": entry.event_type,
                "user": entry.user or "anonymous",
                "timestamp": entry.timestamp,
                "topic": topic or "–",
            }
        )
    return {
        "users": [summary.model_dump(mode="json") for summary in summaries],
        "logins": [entry.model_dump(mode="json", exclude_none=True) for entry in logins],
        "topic_requests": topic_requests,
    }
