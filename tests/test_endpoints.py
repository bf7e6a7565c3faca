import asyncio
import json
import threading
from typing import Optional
from urllib.parse import urlencode

import pytest

import app
import db


async def _call_app(
    method: str,
    path: str,
    *,
    payload: Optional[dict] = None,
    query: Optional[dict] = None,
    token: Optional[str] = None,
):
    body = b""
    headers = [(b"host", b"testserver")]
    if token:
        headers.append((b"authorization", f"Bearer {token}".encode()))
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
    response_headers = {}
    body_bytes = b""
    for message in messages:
        if message["type"] == "http.response.start":
            status = message["status"]
            response_headers = {k.decode().lower(): v.decode() for k, v in message.get("headers", [])}
        elif message["type"] == "http.response.body":
            body_bytes += message.get("body", b"")
    data = json.loads(body_bytes.decode("utf-8") or "{}")
    return status, data, response_headers


def _request(method: str, path: str, **kwargs) -> tuple[int, dict]:
    status, data, _ = asyncio.run(_call_app(method, path, **kwargs))
    return status, data


@pytest.fixture
def api(temp_db, monkeypatch):
    monkeypatch.setattr(app, "ADMIN_USER_IDS", {"admin"})
    app.RATE_LIMITER.reset()
    app.bootstrap()
    yield
    app.RATE_LIMITER.reset()


def _login(user_id: str, password: str = "correct-horse") -> str:
    status, _ = _request("POST", "/auth/register", payload={"user_id": user_id, "password": password})
    assert status == 200
    status, data = _request("POST", "/auth/login", payload={"user_id": user_id, "password": password})
    assert status == 200
    return data["token"]


def test_health_is_public(api):
    assert _request("GET", "/health") == (200, {"status": "ok"})


def test_protected_routes_require_token(api):
    status, data = _request("GET", "/lives")
    assert status == 401
    assert data["code"] == "unauthorized"

    status, _ = _request("GET", "/lives", token="not-a-token")
    assert status == 401


def test_register_login_logout(api):
    token = _login("alice")

    status, data = _request("POST", "/auth/register", payload={"user_id": "alice", "password": "another-pass"})
    assert status == 400
    assert data["code"] == "user_exists"

    status, _ = _request("POST", "/auth/login", payload={"user_id": "alice", "password": "wrong-pass"})
    assert status == 401

    assert _request("GET", "/lives", token=token)[0] == 200
    status, data = _request("POST", "/auth/logout", token=token)
    assert status == 200 and data["revoked"] is True
    assert _request("GET", "/lives", token=token)[0] == 401


def test_token_lookup_runs_off_the_event_loop(api, monkeypatch):
    token = _login("alice")
    lookup_threads = []
    original = db.get_auth_token

    def tracking_lookup(value):
        lookup_threads.append(threading.get_ident())
        return original(value)

    monkeypatch.setattr(db, "get_auth_token", tracking_lookup)

    assert _request("GET", "/lives", token=token)[0] == 200
    assert lookup_threads
    assert threading.get_ident() not in lookup_threads


def test_expired_token_is_rejected(api):
    token = _login("alice")
    db._exec("UPDATE auth_tokens SET expires_at = ? WHERE token = ?", ("2000-01-01T00:00:00+00:00", token))

    assert _request("GET", "/lives", token=token)[0] == 401


def test_lives_endpoints(api):
    token = _login("alice")

    status, data = _request("GET", "/lives", token=token)
    assert status == 200
    assert data["lives_remaining"] == data["max_lives"]

    for _ in range(data["max_lives"]):
        assert _request("POST", "/lives/consume", token=token)[0] == 200

    status, data, headers = asyncio.run(_call_app("POST", "/lives/consume", token=token))
    assert status == 403
    assert data["code"] == "no_lives_remaining"
    assert int(headers["retry-after"]) > 0


def test_reading_flow_over_http(api):
    token = _login("alice")
    chapter = "reading-morning-routine"

    status, data = _request("GET", f"/reading/chapters/{chapter}/quiz", token=token)
    assert status == 409
    assert data["code"] == "precondition_failed"

    status, data = _request("GET", "/reading/chapters/reading-city-market/content", token=token)
    assert status == 403
    assert data["code"] == "chapter_locked"

    assert _request("GET", f"/reading/chapters/{chapter}/content", token=token)[0] == 200
    status, quiz = _request("GET", f"/reading/chapters/{chapter}/quiz", token=token)
    assert status == 200
    assert len(quiz["questions"]) == 3

    answers = {"q-morning-1": "At six o'clock", "q-morning-2": "Her brother", "q-morning-3": "By bus"}
    for question_id, answer in answers.items():
        status, data = _request(
            "POST",
            f"/reading/chapters/{chapter}/answers",
            payload={"question_id": question_id, "answer": answer},
            token=token,
        )
        assert status == 200 and data["correct"] is True

    status, data = _request("POST", f"/reading/chapters/{chapter}/complete", token=token)
    assert status == 200
    assert data["passed"] is True
    assert data["next_chapter_id"] == "reading-city-market"

    status, data = _request("GET", "/reading/chapters", token=token)
    assert data["completed"] == 1


def test_chapters_and_progress(api):
    token = _login("alice")

    status, data = _request("GET", "/chapters", token=token)
    assert status == 200
    assert data["chapters"][0]["id"] == "vocab-greetings"

    assert _request("GET", "/chapters/vocab-greetings", token=token)[0] == 200
    status, data = _request("POST", "/chapters/vocab-greetings/complete", payload={"score": 88}, token=token)
    assert status == 200 and data["status"] == "completed"

    status, data = _request("POST", "/chapters/vocab-travel/complete", payload={"score": 130}, token=token)
    assert status == 422

    status, data = _request("GET", "/progress", token=token)
    assert data["units"]["chapter"]["completed"] == 1


def test_admin_routes_require_admin(api):
    token = _login("alice")
    payload = {"name": "essay-pass", "subject_type": "essay", "min_score": 70}

    status, data = _request("POST", "/admin/approval/rules", payload=payload, token=token)
    assert status == 403

    admin = _login("admin")
    status, rule = _request("POST", "/admin/approval/rules", payload=payload, token=admin)
    assert status == 201
    assert rule["version"] == 1

    status, replaced = _request(
        "POST", f"/admin/approval/rules/{rule['id']}/replace", payload={"min_score": 75}, token=admin
    )
    assert status == 201
    assert replaced["version"] == 2

    status, data = _request(
        "POST", f"/admin/approval/rules/{rule['id']}/replace", payload={"min_score": 80}, token=admin
    )
    assert status == 409


def test_approval_evaluations_and_metrics(api):
    token = _login("alice")
    other = _login("bob")

    status, evaluation = _request(
        "POST",
        "/approval/evaluations",
        payload={"subject_type": "reading_chapter", "subject_id": "essay-1", "score": 72},
        token=token,
    )
    assert status == 201
    assert evaluation["passed"] is True

    status, data = _request(
        "POST",
        "/approval/evaluations",
        payload={"subject_type": "reading_chapter", "subject_id": "essay-1", "score": 250},
        token=token,
    )
    assert status == 400

    assert _request("GET", f"/approval/evaluations/{evaluation['id']}", token=other)[0] == 403
    status, data = _request("GET", "/approval/evaluations", token=other)
    assert data["evaluations"] == []

    status, metrics = _request("GET", f"/approval/rules/{evaluation['rule_id']}/metrics", token=token)
    assert status == 200
    assert metrics["total"] == 1 and metrics["passed"] == 1

    status, data = _request("GET", "/approval/metrics", token=token)
    assert len(data["metrics"]) == 2


def test_interview_endpoints(api):
    token = _login("alice")
    other = _login("bob")

    status, session = _request("POST", "/practices/interview", payload={"interviewType": "job"}, token=token)
    assert status == 201
    path = f"/practices/interview/{session['id']}"

    assert _request("GET", path, token=other)[0] == 403
    assert _request("GET", "/practices/interview/missing", token=token)[0] == 404

    status, data = _request("PUT", path, payload={"notes": "Focus on examples"}, token=token)
    assert status == 200 and data["notes"] == "Focus on examples"

    status, data = _request(
        "POST",
        f"{path}/answer-question",
        payload={"questionIndex": 0, "answer": "I have worked as a nurse for five years in a busy city hospital."},
        token=token,
    )
    assert status == 200 and data["answered_count"] == 1

    status, data = _request(
        "POST",
        f"{path}/update-conversation",
        payload={"turns": [{"speaker": "interviewer", "text": "Thanks for coming."}]},
        token=token,
    )
    assert status == 200 and len(data["conversation"]) == 1

    assert _request("GET", f"{path}/performance-summary", token=token)[0] == 409
    status, result = _request("POST", f"{path}/ai-evaluation", token=token)
    assert status == 200
    assert result["pronunciation_score"] is None

    status, summary = _request("GET", f"{path}/performance-summary", token=token)
    assert status == 200 and summary["overall_score"] == result["overall_score"]

    status, data = _request(
        "GET", "/practices/interview/user/alice/sessions", query={"completed": "true"}, token=token
    )
    assert status == 200 and len(data["sessions"]) == 1
    assert _request("GET", "/practices/interview/user/alice/sessions", token=other)[0] == 403

    status, stats = _request("GET", "/practices/interview/user/alice/stats", query={"timeframe": "all"}, token=token)
    assert status == 200 and stats["completed_sessions"] == 1
    assert _request("GET", "/practices/interview/user/alice/stats", query={"timeframe": "2y"}, token=token)[0] == 400


def test_rate_limit_returns_429(api, monkeypatch):
    monkeypatch.setattr(app, "RATE_LIMITER", app.SlidingWindowRateLimiter(3, 60))

    for _ in range(3):
        assert _request("GET", "/health")[0] == 200
    status, data, headers = asyncio.run(_call_app("GET", "/health"))

    assert status == 429
    assert data["code"] == "rate_limited"
    assert int(headers["retry-after"]) >= 1


def test_translation_endpoints(api):
    token = _login("alice")

    status, data = _request("GET", "/vocabulary/translate", query={"word": "deadline", "language": "de"}, token=token)
    assert status == 200
    assert data["translations"] == {"de": "Frist"}

    status, data = _request("GET", "/vocabulary/translate", query={"word": "spaceship"}, token=token)
    assert status == 404 and data["code"] == "not_found"

    status, data = _request("GET", "/chapters/vocab-travel/translations", query={"language": "es"}, token=token)
    assert status == 200
    assert data["items"][0]["translation"] == "tarjeta de embarque"

    assert _request("GET", "/vocabulary/languages", token=token) == (200, {"languages": ["de", "es"]})


def test_practice_history_endpoints(api):
    token = _login("alice")
    _request("POST", "/chapters/vocab-greetings/complete", payload={"score": 70}, token=token)
    _request("GET", "/reading/chapters/reading-morning-routine/content", token=token)

    status, data = _request("GET", "/practices/history", token=token)
    assert status == 200
    assert {entry["practice_type"] for entry in data["sessions"]} == {"vocabulary", "reading"}

    status, data = _request("GET", "/practices/history", query={"practiceType": "quiz"}, token=token)
    assert status == 200 and data["sessions"] == []
    assert _request("GET", "/practices/history", query={"practiceType": "speaking"}, token=token)[0] == 400

    status, summary = _request("GET", "/practices/summary", token=token)
    assert status == 200
    assert summary["total"] == 2
    assert summary["by_type"]["vocabulary"]["average_score"] == 70
