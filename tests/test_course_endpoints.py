import asyncio
import json
from typing import Optional
from urllib.parse import urlencode

import pytest

import app
import db
import tutor
from schemas import QuizQuestion, RemediationPlan


async def _call_app(method: str, path: str, *, payload: Optional[dict] = None, query: Optional[dict] = None):
    body = b""
    headers = [(b"host", b"testserver")]
    if payload is not None:
        body = json.dumps(payload).encode("utf-8")
        headers.extend(
            [
                (b"content-type", b"application/json"),
                (b"content-length", str(len(body)).encode()),
            ]
        )
    query_string = urlencode(query or {}, doseq=True).encode()
    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": method.upper(),
        "path": path,
        "raw_path": path.encode(),
        "root_path": "",
        "scheme": "http",
        "query_string": query_string,
        "headers": headers,
        "client": ("testclient", 12345),
        "server": ("testserver", 80),
        "state": {},
    }

    messages = []

    async def receive():
        nonlocal body
        if body:
            chunk, body = body, b""
            return {"type": "http.request", "body": chunk, "more_body": False}
        return {"type": "http.disconnect"}

    async def send(message):
        messages.append(message)

    await app.app(scope, receive, send)
    status = 500
    body_bytes = b""
    for message in messages:
        if message["type"] == "http.response.start":
            status = message["status"]
        elif message["type"] == "http.response.body":
            body_bytes += message.get("body", b"")
    data = json.loads(body_bytes.decode("utf-8") or "{}")
    return status, data


def _call(method: str, path: str, **kwargs):
    return asyncio.run(_call_app(method, path, **kwargs))


def _demo_course(username="ana"):
    status, course = _call("POST", "/courses/generate", payload={"username": username, "topic": "test"})
    assert status == 200
    return course


def _correct_answers(course, chapter_id):
    chapter = next(c for c in course["chapters"] if c["id"] == chapter_id)
    return [q["correct_answer"] for q in chapter["quiz"]]


def test_login_creates_user_and_logs_signup(temp_db):
    status, user = _call("POST", "/auth/login", payload={"username": "ana", "session_id": "s1"})
    _call("POST", "/auth/login", payload={"username": "ana"})

    assert status == 200
    assert user["username"] == "ana"
    events = [e.event_type for e in db.list_user_logs("ana")]
    assert sorted(events) == ["login", "login", "signup"]


def test_login_requires_username(temp_db):
    status, data = _call("POST", "/auth/login", payload={"username": " "})

    assert status == 400
    assert data["detail"] == "username is required"


def test_profile_update_persists(temp_db):
    status, user = _call("POST", "/profile", payload={"username": "ana", "about_me": "ICU nurse"})

    assert status == 200
    assert user["about_me"] == "ICU nurse"
    assert db.get_user("ana").about_me == "ICU nurse"


def test_demo_topic_generates_without_model(temp_db, monkeypatch):
    def fail(*args, **kwargs):
        raise AssertionError("model should not be called")

    monkeypatch.setattr(tutor, "create_course", fail)

    course = _demo_course()

    assert course["title"] == "Nursing Informatics 101"
    assert course["username"] == "ana"
    assert course["created_at"]
    status, listing = _call("GET", "/courses", query={"username": "ana"})
    assert status == 200
    assert [c["course_id"] for c in listing["courses"]] == [course["course_id"]]
    status, fetched = _call("GET", f"/courses/{course['course_id']}")
    assert status == 200
    assert fetched["title"] == course["title"]
    status, _ = _call("GET", "/courses/missing")
    assert status == 404
    [event] = [e for e in db.list_user_logs("ana") if e.event_type == "generate_course"]
    assert event.request["topic"] == "test"


def test_generation_failure_returns_502(temp_db, monkeypatch):
    def boom(topic, learner_context=""):
        raise tutor.GenerationError("LLM-HTTP 500")

    monkeypatch.setattr(tutor, "create_course", boom)

    status, data = _call("POST", "/courses/generate", payload={"username": "ana", "topic": "Cells"})

    assert status == 502
    assert data["detail"] == tutor.GENERATION_FAILED_MESSAGE
    assert db.list_user_courses("ana") == []


def test_generation_passes_learner_context(temp_db, monkeypatch, make_course):
    seen = {}

    def fake_create(topic, learner_context=""):
        seen["args"] = (topic, learner_context)
        return make_course((5, 5, 5), course_id="gen-1", title="Cells")

    monkeypatch.setattr(tutor, "create_course", fake_create)
    db.update_user_profile("ana", "Biology tutor")

    status, course = _call("POST", "/courses/generate", payload={"username": "ana", "topic": "Cells"})

    assert status == 200
    assert seen["args"] == ("Cells", "Biology tutor")
    assert db.get_course("gen-1").username == "ana"


def test_quiz_submission_updates_progress(temp_db):
    course = _demo_course()
    answers = _correct_answers(course, 1)
    answers[3] = (answers[3] + 1) % 4
    answers[4] = (answers[4] + 1) % 4

    status, result = _call(
        "POST",
        f"/courses/{course['course_id']}/quiz",
        payload={"username": "ana", "chapter_id": 1, "answers": answers},
    )

    assert status == 200
    assert result["score"] == 3
    assert result["mastery"] is False
    assert result["passed"] is True
    assert len(result["missed"]) == 2
    progress = result["course"]["progress"]
    assert progress["percent_complete"] == 50
    assert progress["overall_grade"] == 60

    status, result = _call(
        "POST",
        f"/courses/{course['course_id']}/quiz",
        payload={"username": "ana", "chapter_id": 2, "answers": _correct_answers(course, 2)},
    )
    assert result["mastery"] is True
    assert result["course"]["progress"]["percent_complete"] == 100
    assert result["course"]["progress"]["overall_grade"] == 80
    assert db.get_course(course["course_id"]).progress.overall_grade == 80


def test_quiz_rejects_other_users_and_unknown_chapters(temp_db):
    course = _demo_course()
    path = f"/courses/{course['course_id']}/quiz"

    status, _ = _call("POST", path, payload={"username": "ben", "chapter_id": 1, "answers": []})
    assert status == 403

    status, _ = _call("POST", path, payload={"username": "ana", "chapter_id": 9, "answers": []})
    assert status == 404

    status, _ = _call("POST", "/courses/nope/quiz", payload={"username": "ana", "chapter_id": 1, "answers": []})
    assert status == 404


def test_remediation_cycle_credits_mastery(temp_db, monkeypatch):
    course = _demo_course()
    course_id = course["course_id"]
    answers = _correct_answers(course, 1)
    answers[0] = (answers[0] + 1) % 4
    _call("POST", f"/courses/{course_id}/quiz", payload={"username": "ana", "chapter_id": 1, "answers": answers})

    plan = RemediationPlan(
        explanation="Wisdom means applying knowledge.",
        questions=[
            QuizQuestion(question=f"R{i}", options=["A", "B", "C", "D"], correct_answer=i % 4)
            for i in range(3)
        ],
    )
    received = {}

    def fake_remediation(chapter, missed):
        received["missed"] = [m.question.question for m in missed]
        return plan

    monkeypatch.setattr(tutor, "generate_remediation", fake_remediation)

    status, data = _call("POST", f"/courses/{course_id}/remediation", payload={"username": "ana", "chapter_id": 1})
    assert status == 200
    assert len(data["questions"]) == 3
    assert len(received["missed"]) == 1

    status, data = _call(
        "POST",
        f"/courses/{course_id}/remediation/complete",
        payload={"username": "ana", "chapter_id": 1, "answers": [0, 1, 3]},
    )
    assert status == 200
    assert data["mastered"] is False
    assert db.get_course(course_id).remediation

    status, data = _call(
        "POST",
        f"/courses/{course_id}/remediation/complete",
        payload={"username": "ana", "chapter_id": 1, "answers": [0, 1, 2]},
    )
    assert data["mastered"] is True
    stored = db.get_course(course_id)
    assert stored.remediation == {}
    assert stored.progress.quiz_scores[1] == 5
    assert stored.progress.overall_grade == 100
    events = [e.event_type for e in db.list_user_logs("ana")]
    assert "remediation" in events
    assert "remediation_mastered" in events


def test_remediation_requires_a_missed_attempt(temp_db):
    course = _demo_course()
    course_id = course["course_id"]

    status, data = _call("POST", f"/courses/{course_id}/remediation", payload={"username": "ana", "chapter_id": 1})
    assert status == 400

    _call(
        "POST",
        f"/courses/{course_id}/quiz",
        payload={"username": "ana", "chapter_id": 1, "answers": _correct_answers(course, 1)},
    )
    status, data = _call("POST", f"/courses/{course_id}/remediation", payload={"username": "ana", "chapter_id": 1})
    assert status == 400
    assert data["detail"] == "chapter already mastered"

    status, _ = _call(
        "POST",
        f"/courses/{course_id}/remediation/complete",
        payload={"username": "ana", "chapter_id": 1, "answers": []},
    )
    assert status == 404


def test_save_course_upserts_and_logs(temp_db, make_course):
    course = make_course((5,), course_id="c1").model_dump(mode="json")

    status, data = _call("POST", "/courses", payload={"username": "ana", "course": course})

    assert status == 200
    assert data["ok"] is True
    assert data["saved"]["username"] == "ana"
    assert db.list_user_logs("ana")[0].event_type == "generate_course"

    status, _ = _call("POST", "/courses", payload={"username": "ana", "course": {"title": "no id"}})
    assert status == 400


def test_log_endpoint_validates_entries(temp_db):
    status, data = _call("POST", "/log", payload={"event_type": "search", "entry": {"user": "ana", "query": "tides"}})
    assert status == 200
    assert data["ok"] is True

    status, _ = _call("POST", "/log", payload={"entry": {"user": "ana"}})
    assert status == 400

    status, _ = _call("POST", "/log", payload={"event_type": "search", "entry": {"timestamp": 5}})
    assert status == 400


def test_log_endpoint_rejects_unknown_event_types(temp_db):
    status, data = _call("POST", "/log", payload={"event_type": "teleport", "entry": {"user": "ana"}})

    assert status == 400
    assert data["detail"] == "unknown event_type: teleport"
    assert db.list_user_logs("ana") == []


def test_log_endpoint_reports_duplicate_ids_as_conflict(temp_db):
    payload = {"event_type": "search", "entry": {"id": "x1", "user": "ana", "query": "tides"}}

    first_status, first = _call("POST", "/log", payload=payload)
    second_status, second = _call("POST", "/log", payload=payload)

    assert first_status == 200
    assert first["id"] == "x1"
    assert second_status == 409
    assert "x1" in second["detail"]
    assert len(db.list_user_logs("ana")) == 1


def test_admin_insights_summarizes_activity(temp_db):
    _call("POST", "/auth/login", payload={"username": "ana"})
    _demo_course("ana")
    _call("POST", "/log", payload={"event_type": "search", "entry": {"user": "ben", "query": "tides"}})

    status, data = _call("GET", "/admin/insights")

    assert status == 200
    users = {u["username"]: u for u in data["users"]}
    assert users["ana"]["last_login"]
    assert users["ana"]["last_topic"] == "test"
    assert len(users["ana"]["courses"]) == 1
    assert users["ben"]["last_search"] == "tides"
    assert data["users"][0]["username"] == "ana"
    assert [entry["user"] for entry in data["logins"]] == ["ana"]
    assert {t["topic"] for t in data["topic_requests"]} == {"test", "tides"}


@pytest.mark.parametrize(
    ("method", "path", "kwargs"),
    [
        ("GET", "/courses", {"query": {"username": "ana"}}),
        ("POST", "/auth/login", {"payload": {"username": "ana"}}),
        ("GET", "/admin/insights", {}),
    ],
)
def test_unreachable_store_returns_503(monkeypatch, tmp_path, method, path, kwargs):
    monkeypatch.setattr(db, "_pool", db.SQLiteConnectionPool(str(tmp_path / "missing" / "x.db")))

    status, data = _call(method, path, **kwargs)

    assert status == 503
    assert data["detail"] == "store unavailable"
