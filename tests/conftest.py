import sys
from pathlib import Path
from typing import Dict, Optional, Sequence

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture
def temp_db(monkeypatch, tmp_path):
    import db

    db_path = tmp_path / "test.db"
    monkeypatch.setattr(db, "DB_PATH", str(db_path))
    monkeypatch.setattr(db, "_pool", db.SQLiteConnectionPool(str(db_path), max_connections=10))
    db.init()
    return str(db_path)


@pytest.fixture
def make_course():
    """Build a course whose chapters have the given quiz lengths (ids start at 1)."""
    from schemas import Chapter, Course, CourseProgress, QuizQuestion

    def _make(
        quiz_lengths: Sequence[int] = (5, 5),
        *,
        course_id: str = "course-1",
        title: str = "Test Course",
        username: Optional[str] = None,
        scores: Optional[Dict[int, int]] = None,
        created_at: Optional[str] = None,
    ) -> Course:
        chapters = [
            Chapter(
                id=idx,
                title=f"Chapter {idx}",
                summary=f"Summary {idx}",
                quiz=[
                    QuizQuestion(
                        question=f"Q{idx}.{q}",
                        options=["A", "B", "C", "D"],
                        correct_answer=q % 4,
                    )
                    for q in range(length)
                ],
            )
            for idx, length in enumerate(quiz_lengths, start=1)
        ]
        progress = None
        if scores is not None:
            progress = CourseProgress(
                total_chapters=len(chapters),
                completed_chapter_ids=list(scores),
                quiz_scores=dict(scores),
            )
        return Course(
            course_id=course_id,
            title=title,
            style="Lecture",
            chapters=chapters,
            progress=progress,
            username=username,
            created_at=created_at,
        )

    return _make
