"""Course progress aggregation for quiz submissions.

Every quiz submission is folded into the course's :class:`CourseProgress`
record. The aggregation is a pure function of the course snapshot and the
submitted result: the caller persists the returned record. Retakes replace
the stored chapter score and resubmissions never grow the completed set, so
applying the same result twice is equivalent to applying it once.

The overall grade is weighted by the quiz length of every completed chapter
rather than assuming a fixed number of questions per chapter.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Sequence, Tuple

from schemas import Chapter, Course, CourseProgress, QuizAnswer, QuizQuestion

logger = logging.getLogger(__name__)


def percent_half_up(numerator: int, denominator: int) -> int:
    """Return ``round(100 * numerator / denominator)`` with halves rounded up.

    Integer arithmetic keeps the result exact; a zero denominator yields 0.
    """

    if denominator <= 0:
        return 0
    scaled = 100 * int(numerator)
    return (2 * scaled + denominator) // (2 * denominator)


def _clamp_percent(value: int) -> int:
    return max(0, min(100, int(value)))


def fresh_progress(course: Course) -> CourseProgress:
    """Zero-state progress for a course that has never been attempted."""

    return CourseProgress(
        total_chapters=len(course.chapters),
        completed_chapter_ids=[],
        quiz_scores={},
        overall_grade=0,
        percent_complete=0,
    )


def chapter_quiz_length(course: Course, chapter_id: int) -> int:
    chapter = course.chapter(chapter_id)
    if chapter is None:
        return 0
    return len(chapter.quiz)


def apply_quiz_result(
    course: Course,
    chapter_id: int,
    score: int,
    *,
    mastered: bool = False,
) -> CourseProgress:
    """Fold one quiz result for ``chapter_id`` into the course progress.

    ``mastered`` records the chapter at full marks, which is how a perfect
    remediation attempt is credited. Scores are clamped to the chapter's quiz
    length; unknown chapters keep their raw (non-negative) score but add
    nothing to the quiz-length total.
    """

    base = course.progress if course.progress is not None else fresh_progress(course)
    progress = base.model_copy(deep=True)

    quiz_length = chapter_quiz_length(course, chapter_id)
    if course.chapter(chapter_id) is None:
        logger.warning(
            "Quiz result for unknown chapter %s in course %s", chapter_id, course.course_id
        )
        stored_score = max(0, int(score))
    elif mastered:
        stored_score = quiz_length
    else:
        stored_score = max(0, min(int(score), quiz_length))

    if chapter_id not in progress.completed_chapter_ids:
        progress.completed_chapter_ids.append(chapter_id)
    progress.quiz_scores[chapter_id] = stored_score

    completed = progress.completed_chapter_ids
    progress.percent_complete = _clamp_percent(
        percent_half_up(len(completed), progress.total_chapters)
    )

    earned = sum(progress.quiz_scores.get(cid, 0) for cid in completed)
    possible = sum(chapter_quiz_length(course, cid) for cid in completed)
    progress.overall_grade = _clamp_percent(percent_half_up(earned, possible))
    return progress


# ----- quiz grading ---------------------------------------------------------

def grade_quiz(
    questions: Sequence[QuizQuestion],
    selections: Sequence[Optional[int]],
) -> Tuple[int, List[QuizAnswer]]:
    """Grade ``selections`` against ``questions``.

    Missing selections count as unanswered. Returns the number of correct
    answers and one :class:`QuizAnswer` per question.
    """

    answers: List[QuizAnswer] = []
    for idx, question in enumerate(questions):
        selected = selections[idx] if idx < len(selections) else None
        answers.append(
            QuizAnswer(
                question=question,
                selected_option=selected,
                is_correct=selected is not None and selected == question.correct_answer,
            )
        )
    score = sum(1 for answer in answers if answer.is_correct)
    return score, answers


def is_mastery(answers: Iterable[QuizAnswer]) -> bool:
    answers = list(answers)
    return bool(answers) and all(answer.is_correct for answer in answers)


def missed_answers(answers: Iterable[QuizAnswer]) -> List[QuizAnswer]:
    return [answer for answer in answers if not answer.is_correct]


def passing_score(chapter: Chapter) -> int:
    """Minimum score for the chapter to count as complete rather than needing review."""

    return (len(chapter.quiz) + 1) // 2
