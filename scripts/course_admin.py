"""Inspect and repair stored course documents."""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError

import db
from schemas import Course, CourseProgress, QuizAnswer


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--yes", action="store_true", help="Skip the confirmation prompt before writing")
    sub = parser.add_subparsers(dest="command", required=True)

    show = sub.add_parser("show", help="Display course document(s) matching course_id")
    show.add_argument("course_id")

    dupes = sub.add_parser("find-duplicates", help="Print a summary for every document with this course_id")
    dupes.add_argument("course_id")

    set_user = sub.add_parser("set-username", help="Set the owner of a course")
    set_user.add_argument("course_id")
    set_user.add_argument("username")

    fix_user = sub.add_parser("fix-missing-username", help="Set the owner only when it is missing")
    fix_user.add_argument("course_id")
    fix_user.add_argument("username")

    set_quiz = sub.add_parser("set-quiz", help="Load quiz history JSON from a file and upsert")
    set_quiz.add_argument("course_id")
    set_quiz.add_argument("json_path")

    patch = sub.add_parser("patch-progress", help="Load a CourseProgress JSON from a file and upsert")
    patch.add_argument("course_id")
    patch.add_argument("json_path")
    return parser


def _summary_line(doc: Dict[str, Any]) -> str:
    return (
        f"id: {doc.get('id') or doc.get('course_id')}  "
        f"username: {doc.get('username') or '(none)'}  "
        f"has_quiz_history: {bool(doc.get('quiz_history'))}  "
        f"seq: {doc.get('_seq', 'n/a')}  updated_at: {doc.get('_updated_at', 'n/a')}"
    )


def _confirm(prompt: str, assume_yes: bool) -> bool:
    if assume_yes:
        return True
    answer = input(f"{prompt} (y/N): ").strip().lower()
    return answer in {"y", "yes"}


def _read_json(path: str) -> Any:
    return json.loads(Path(path).read_text(encoding="utf-8"))


def _first_course(course_id: str) -> Optional[Course]:
    course = db.get_course(course_id)
    if course is None:
        print(f"No course found with id: {course_id}", file=sys.stderr)
    return course


def _write(course: Course, assume_yes: bool) -> int:
    if not _confirm(f"Upsert course {course.course_id}?", assume_yes):
        print("Aborted.")
        return 1
    db.save_course(course)
    print(f"Upserted course {course.course_id}")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    db.init()

    if args.command in {"show", "find-duplicates"}:
        docs: List[Dict[str, Any]] = db.find_course_documents(args.course_id)
        if not docs:
            print(f"No course found with id: {args.course_id}", file=sys.stderr)
            return 1
        print(f"Found {len(docs)} matching item(s) for course_id {args.course_id}:")
        for idx, doc in enumerate(docs, start=1):
            print(f"--- ITEM {idx} ---")
            print(_summary_line(doc))
            if args.command == "show":
                print(json.dumps(doc, indent=2, ensure_ascii=False))
        return 0

    course = _first_course(args.course_id)
    if course is None:
        return 1

    if args.command == "set-username":
        return _write(course.model_copy(update={"username": args.username}), args.yes)

    if args.command == "fix-missing-username":
        if course.username:
            print(f"Course already owned by {course.username}; nothing to do.")
            return 0
        return _write(course.model_copy(update={"username": args.username}), args.yes)

    try:
        payload = _read_json(args.json_path)
        if args.command == "set-quiz":
            history = {
                int(chapter_id): [QuizAnswer.model_validate(item) for item in answers]
                for chapter_id, answers in dict(payload).items()
            }
            updated = course.model_copy(update={"quiz_history": history})
        else:
            updated = course.model_copy(update={"progress": CourseProgress.model_validate(payload)})
    except (OSError, ValueError, TypeError, ValidationError) as exc:
        print(f"Invalid JSON in {args.json_path}: {exc}", file=sys.stderr)
        return 1
    return _write(updated, args.yes)


if __name__ == "__main__":
    raise SystemExit(main())
