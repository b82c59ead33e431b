import json
import logging
import os
import time
from typing import Any, Dict, List, Optional, Sequence
from uuid import uuid4

import requests
from pydantic import BaseModel, Field, ValidationError

from env_validation import get_env_bool
from schemas import (
    Chapter,
    Course,
    QuizAnswer,
    QuizQuestion,
    RemediationPlan,
    Verification,
    parse_json_safe,
)

logger = logging.getLogger(__name__)

# --------- Model/endpoint from environment ---------
MODEL_ID = os.getenv("MODEL_ID", "gpt-4o-mini")
LLM_URL = os.getenv("LLM_URL", "https://api.openai.com/v1/chat/completions")
LLM_API_KEY = os.getenv("LLM_API_KEY", "")


def _safe_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


LLM_TIMEOUT = _safe_float("LLM_TIMEOUT", 120.0)
LLM_TEMPERATURE = _safe_float("LLM_TEMPERATURE", 0.4)

CHAPTERS_PER_COURSE = 3
QUESTIONS_PER_CHAPTER = 5
OPTIONS_PER_QUESTION = 4
VERIFICATION_PASS_SCORE = 90
REMEDIATION_MIN_QUESTIONS = 3
REMEDIATION_MAX_QUESTIONS = 4

GENERATION_FAILED_MESSAGE = "Failed to generate course. Please try again."
VERIFICATION_FALLBACK_NOTE = "Verification unavailable; manual review needed."


class GenerationError(RuntimeError):
    """Raised when the language model cannot produce usable content."""


COURSE_SYSTEM_PROMPT = f"""You are an expert educational architect for an adaptive learning platform.
Design a structured, multi-modal course for the learner's topic and reply with one JSON object only:

{{
  "title": "String",
  "style": "String (e.g. 'Podcast', 'University Lecture', 'Witty')",
  "chapters": [
    {{
      "id": 1,
      "title": "String",
      "summary": "1-2 sentences",
      "content_markdown": "About 300 words of rich markdown",
      "audio_script": "Conversational podcast-style narration, distinct from the content",
      "quiz": [{{"question": "String", "options": ["A", "B", "C", "D"], "correct_answer": 0}}],
      "flashcards": [{{"front": "String", "back": "String"}}]
    }}
  ]
}}

Rules:
1. Generate exactly {CHAPTERS_PER_COURSE} chapters with ids 1..{CHAPTERS_PER_COURSE}.
2. Every chapter quiz has exactly {QUESTIONS_PER_CHAPTER} questions with {OPTIONS_PER_QUESTION} options each.
3. `correct_answer` is the zero-based index of the correct option.
4. Adapt depth and examples to the learner context when one is given."""

VERIFY_SYSTEM_PROMPT = """You review generated learning material for safety and factual accuracy.
Reply with one JSON object only: {"status": "VERIFIED" | "CAUTION" | "FLAGGED", "score": 0-100, "notes": "String"}.
VERIFIED means accurate and safe, CAUTION means minor issues, FLAGGED means harmful or clearly wrong."""

REFINE_SYSTEM_PROMPT = """You revise a generated course so it addresses the reviewer's notes.
Keep the same JSON structure, chapter ids and number of quiz questions. Reply with the full course JSON only."""

REMEDIATION_SYSTEM_PROMPT = f"""You are a patient tutor. The learner missed some quiz questions.
Write a short explanation of the missed concepts and {REMEDIATION_MIN_QUESTIONS}-{REMEDIATION_MAX_QUESTIONS} NEW multiple-choice
questions that target only those concepts. Reply with one JSON object only:
{{"explanation": "String", "questions": [{{"question": "String", "options": ["A", "B", "C", "D"], "correct_answer": 0}}]}}"""


class _GeneratedCourse(BaseModel):
    title: str
    style: str = ""
    chapters: List[Chapter] = Field(default_factory=list)

    model_config = {
        "extra": "allow",
    }


class _GeneratedRemediation(BaseModel):
    explanation: str
    questions: List[QuizQuestion] = Field(default_factory=list)


def _json_log(event: str, payload: Dict[str, Any]) -> None:
    record = {"event": event, **payload}
    try:
        message = json.dumps(record, ensure_ascii=False, sort_keys=True)
    except (TypeError, ValueError):
        message = json.dumps(
            {"event": event, "error": "serialization_failed", "payload_repr": repr(payload)},
            ensure_ascii=False,
            sort_keys=True,
        )
    logger.info(message)


def _base_params() -> Dict[str, Any]:
    return {"temperature": LLM_TEMPERATURE}


def _llm_call(messages: Sequence[Dict[str, str]], *, max_tokens: Optional[int] = None) -> str:
    """Send an OpenAI-style chat completion request and return the message text."""

    payload: Dict[str, Any] = {
        "model": MODEL_ID,
        "messages": list(messages),
        "response_format": {"type": "json_object"},
        **_base_params(),
    }
    if max_tokens is not None:
        payload["max_tokens"] = int(max_tokens)

    headers = {"Content-Type": "application/json"}
    if LLM_API_KEY:
        headers["Authorization"] = f"Bearer {LLM_API_KEY}"

    start = time.perf_counter()
    try:
        response = requests.post(LLM_URL, json=payload, headers=headers, timeout=LLM_TIMEOUT)
        response.raise_for_status()
        data = response.json()
    except requests.HTTPError as exc:
        status = exc.response.status_code if exc.response is not None else "?"
        raise GenerationError(f"LLM-HTTP {status}") from exc
    except (requests.RequestException, ValueError) as exc:
        raise GenerationError(f"LLM error: {exc}") from exc
    finally:
        logger.debug("LLM call finished in %d ms", int((time.perf_counter() - start) * 1000))

    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as exc:
        raise GenerationError(f"Unexpected LLM response: {str(data)[:300]}") from exc
    if not content or not str(content).strip():
        raise GenerationError("No content generated")
    return str(content)


def validate_course_structure(course: Course) -> None:
    """Enforce the chapter/question/option counts promised to the player."""

    if len(course.chapters) != CHAPTERS_PER_COURSE:
        raise GenerationError(
            f"Expected {CHAPTERS_PER_COURSE} chapters, got {len(course.chapters)}"
        )
    seen_ids = set()
    for chapter in course.chapters:
        if chapter.id in seen_ids:
            raise GenerationError(f"Duplicate chapter id {chapter.id}")
        seen_ids.add(chapter.id)
        if len(chapter.quiz) != QUESTIONS_PER_CHAPTER:
            raise GenerationError(
                f"Chapter {chapter.id} has {len(chapter.quiz)} questions, expected {QUESTIONS_PER_CHAPTER}"
            )
        for question in chapter.quiz:
            _validate_question(question, where=f"chapter {chapter.id}")


def _validate_question(question: QuizQuestion, *, where: str) -> None:
    if len(question.options) != OPTIONS_PER_QUESTION:
        raise GenerationError(f"Question in {where} has {len(question.options)} options")
    if question.correct_answer >= len(question.options):
        raise GenerationError(f"Question in {where} points at a missing option")


def _course_from_text(text: str, *, course_id: Optional[str] = None) -> Course:
    try:
        generated = parse_json_safe(text, _GeneratedCourse)
    except (ValidationError, ValueError) as exc:
        raise GenerationError(f"Invalid course JSON: {exc}") from exc
    course = Course(
        course_id=course_id or str(uuid4()),
        title=generated.title,
        style=generated.style,
        chapters=generated.chapters,
    )
    validate_course_structure(course)
    return course


def _course_prompt_payload(course: Course) -> str:
    return json.dumps(
        course.model_dump(mode="json", include={"title", "style", "chapters"}),
        ensure_ascii=False,
    )


def generate_course(topic: str, learner_context: str = "") -> Course:
    """Single generation attempt for ``topic``; raises :class:`GenerationError` on failure."""

    topic = (topic or "").strip()
    if not topic:
        raise GenerationError("Topic is required")

    user_message = f'Create a course on: "{topic}"'
    if learner_context and learner_context.strip():
        user_message += f"\n\nLearner context: {learner_context.strip()}"

    content = _llm_call(
        [
            {"role": "system", "content": COURSE_SYSTEM_PROMPT},
            {"role": "user", "content": user_message},
        ]
    )
    course = _course_from_text(content)
    _json_log("course_generated", {"topic": topic, "course_id": course.course_id, "model": MODEL_ID})
    return course


def verify_course(course: Course) -> Verification:
    """Safety/accuracy review. Never raises: failures degrade to CAUTION."""

    try:
        content = _llm_call(
            [
                {"role": "system", "content": VERIFY_SYSTEM_PROMPT},
                {"role": "user", "content": _course_prompt_payload(course)},
            ],
            max_tokens=400,
        )
        verification = parse_json_safe(content, Verification)
    except (GenerationError, ValidationError, ValueError) as exc:
        logger.warning("Course verification failed for %s: %s", course.course_id, exc)
        return Verification(status="CAUTION", score=0, notes=VERIFICATION_FALLBACK_NOTE)
    _json_log(
        "course_verified",
        {"course_id": course.course_id, "status": verification.status, "score": verification.score},
    )
    return verification


def refine_course(course: Course, verification: Verification) -> Course:
    """Rewrite ``course`` to address the reviewer's notes, keeping its identity."""

    content = _llm_call(
        [
            {"role": "system", "content": REFINE_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": (
                    f"Reviewer status: {verification.status} ({verification.score}/100)\n"
                    f"Reviewer notes: {verification.notes}\n\n"
                    f"Course:\n{_course_prompt_payload(course)}"
                ),
            },
        ]
    )
    refined = _course_from_text(content, course_id=course.course_id)
    return refined.model_copy(update={"created_at": course.created_at, "username": course.username})


def create_course(topic: str, learner_context: str = "", *, verify: Optional[bool] = None) -> Course:
    """Generate a course and attach its trust signal.

    A verification score below the pass mark triggers one refine-and-reverify
    cycle. A failed refinement keeps the original course and review.
    """

    course = generate_course(topic, learner_context)
    if verify is None:
        verify = get_env_bool("VERIFY_COURSES", True)
    if not verify:
        return course

    verification = verify_course(course)
    if verification.score < VERIFICATION_PASS_SCORE:
        try:
            refined = refine_course(course, verification)
        except GenerationError as exc:
            logger.warning("Course refinement failed for %s: %s", course.course_id, exc)
        else:
            course = refined
            verification = verify_course(course).model_copy(update={"refined": True})
    return course.model_copy(update={"verification": verification})


def generate_remediation(chapter: Chapter, missed: Sequence[QuizAnswer]) -> RemediationPlan:
    """Targeted follow-up quiz for the questions the learner got wrong."""

    if not missed:
        raise GenerationError("Nothing to remediate")

    missed_payload = [
        {
            "question": answer.question.question,
            "options": answer.question.options,
            "correct_answer": answer.question.correct_answer,
            "selected_option": answer.selected_option,
        }
        for answer in missed
    ]
    content = _llm_call(
        [
            {"role": "system", "content": REMEDIATION_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": json.dumps(
                    {
                        "chapter_title": chapter.title,
                        "chapter_summary": chapter.summary,
                        "chapter_content": chapter.content_markdown,
                        "missed_questions": missed_payload,
                    },
                    ensure_ascii=False,
                ),
            },
        ]
    )
    try:
        generated = parse_json_safe(content, _GeneratedRemediation)
    except (ValidationError, ValueError) as exc:
        raise GenerationError(f"Invalid remediation JSON: {exc}") from exc

    questions = generated.questions[:REMEDIATION_MAX_QUESTIONS]
    if len(questions) < REMEDIATION_MIN_QUESTIONS:
        raise GenerationError(f"Remediation returned {len(questions)} questions")
    for question in questions:
        if question.correct_answer >= len(question.options):
            raise GenerationError("Remediation question points at a missing option")
    _json_log("remediation_generated", {"chapter_id": chapter.id, "missed": len(missed)})
    return RemediationPlan(explanation=generated.explanation, questions=questions)
