"""Test cases for db operations."""

import pytest

import db
from engines.progress import apply_quiz_result


def test_get_or_create_user_creates_once(temp_db):
    user, created = db.get_or_create_user("ana")
    again, created_again = db.get_or_create_user("ana")

    assert created is True
    assert created_again is False
    assert again.username == user.username
    assert again.about_me == ""


def test_update_user_profile(temp_db):
    db.update_user_profile("ana", "Pediatric nurse")

    assert db.get_user("ana").about_me == "Pediatric nurse"


def test_missing_records_return_none(temp_db):
    assert db.get_user("nobody") is None
    assert db.get_course("missing") is None
    assert db.list_user_courses("nobody") == []
    assert db.find_course_documents("missing") == []


def test_save_course_round_trips_progress(temp_db, make_course):
    course = make_course((5, 5), course_id="c1")
    course = course.model_copy(update={"progress": apply_quiz_result(course, 2, 4)})

    stored = db.save_course(course, "ana")
    loaded = db.get_course("c1")

    assert stored.username == "ana"
    assert loaded.username == "ana"
    assert loaded.progress.quiz_scores == {2: 4}
    assert loaded.progress.percent_complete == 50
    assert loaded.chapters == course.chapters


def test_save_course_replaces_whole_document(temp_db, make_course):
    course = make_course((5, 5), course_id="c1", title="First", scores={1: 2})
    db.save_course(course, "ana")

    db.save_course(course.model_copy(update={"title": "Second", "progress": None}), "ana")

    docs = db.find_course_documents("c1")
    assert len(docs) == 1
    assert docs[0]["title"] == "Second"
    assert docs[0]["progress"] is None


def test_user_courses_are_listed_in_save_order(temp_db, make_course):
    db.save_course(make_course((5,), course_id="c1"), "ana")
    db.save_course(make_course((5,), course_id="c2"), "ana")
    db.save_course(make_course((5,), course_id="c3"), "ben")

    assert [c.course_id for c in db.list_user_courses("ana")] == ["c1", "c2"]
    assert [c.course_id for c in db.list_recent_courses(2)] == ["c3", "c2"]


def test_log_event_assigns_id_and_timestamp(temp_db):
    saved = db.log_event("login", {"user": "ana", "timestamp": None})

    assert saved.id
    assert saved.timestamp
    assert saved.event_type == "login"
    assert db.list_user_logs("ana")[0].id == saved.id


def test_recent_logs_are_newest_first(temp_db):
    db.log_event("login", {"user": "ana", "timestamp": "2024-05-01T09:00:00+00:00"})
    db.log_event("search", {"user": "ana", "timestamp": "2024-05-03T09:00:00+00:00", "query": "tides"})
    db.log_event("login", {"user": "ben", "timestamp": "2024-05-02T09:00:00+00:00"})

    logs = db.list_recent_logs(2)

    assert [(e.event_type, e.user) for e in logs] == [("search", "ana"), ("login", "ben")]
    assert logs[0].query == "tides"


def test_unreachable_store_raises_instead_of_returning_none(monkeypatch, tmp_path):
    missing = tmp_path / "missing" / "signal.db"
    monkeypatch.setattr(db, "_pool", db.SQLiteConnectionPool(str(missing)))

    with pytest.raises(db.StoreUnavailableError):
        db.get_course("c1")


def test_duplicate_log_id_is_a_conflict_not_an_outage(temp_db):
    db.log_event("search", {"id": "x1", "user": "ana"})

    with pytest.raises(db.DuplicateRecordError):
        db.log_event("search", {"id": "x1", "user": "ana"})

    assert [e.id for e in db.list_user_logs("ana")] == ["x1"]


def test_close_releases_pooled_connections(temp_db):
    db.get_or_create_user("ana")

    db.close()

    assert db._pool._created_connections == 0
    assert db.get_user("ana").username == "ana"
