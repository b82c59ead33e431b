"""Rank the weakest quiz results across a learner's course library."""

from __future__ import annotations

from typing import Iterable, List

from engines.progress import percent_half_up
from schemas import Course, KnowledgeGap

MASTERY_THRESHOLD = 75
MAX_GAPS = 3


def chapter_score_percent(raw_score: int, quiz_length: int) -> int:
    return percent_half_up(raw_score, max(1, quiz_length))


def compute_knowledge_gaps(
    courses: Iterable[Course],
    *,
    limit: int = MAX_GAPS,
    threshold: int = MASTERY_THRESHOLD,
) -> List[KnowledgeGap]:
    """Return up to ``limit`` chapters scoring below ``threshold`` percent, worst first.

    Only chapters with a recorded score are considered. Equal percentages keep
    their input order (course, then chapter). An empty result does not tell
    "no quizzes taken" apart from "nothing below the threshold".
    """

    collector: List[KnowledgeGap] = []
    for course in courses:
        progress = course.progress
        if progress is None or not course.chapters:
            continue
        for chapter in course.chapters:
            raw_score = progress.quiz_scores.get(chapter.id)
            if raw_score is None:
                continue
            score_percent = chapter_score_percent(raw_score, len(chapter.quiz))
            if score_percent >= threshold:
                continue
            collector.append(
                KnowledgeGap(
                    course_title=course.title,
                    chapter_id=chapter.id,
                    chapter_title=chapter.title,
                    score_percent=score_percent,
                )
            )

    # sorted() is stable, ties keep course/chapter order
    ranked = sorted(collector, key=lambda gap: gap.score_percent)
    return ranked[: max(0, int(limit))]
