from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient
from tracker import main as tracker_main
from tracker.main import SESSION_COOKIE_NAME, create_app, hash_password, verify_password

pytestmark = pytest.mark.integration

LEVER_URL = "https://jobs.lever.co/stripe/backend-developer"


@pytest.fixture
def client(tmp_path: Path):
    app = create_app(database_path=str(tmp_path / "tracker.sqlite3"))
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def user(client: TestClient, signup: Callable[..., dict[str, Any]]) -> dict[str, Any]:
    return signup(client, "ada")


def test_health(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "tracker"}


def test_metrics_include_request_totals_and_realtime_stats(client: TestClient) -> None:
    client.get("/health", headers={"x-request-id": "req-42"})
    response = client.get("/metrics")

    assert response.status_code == 200
    payload = response.json()
    assert payload["totals"]["requests"] >= 1
    assert "GET /health" in payload["endpoints"]
    assert payload["realtime"]["open_connections"] == 0
    assert payload["realtime"]["broadcasts"] == 0


def test_metrics_group_requests_by_route_template(
    client: TestClient, user: dict[str, Any]
) -> None:
    ids = [
        client.post(
            "/api/jobs",
            json={"url": f"https://acme.com/jobs/{n}", "title": "Dev", "company": "Acme"},
        ).json()["id"]
        for n in range(2)
    ]
    for job_id in ids:
        client.patch(f"/api/jobs/{job_id}", json={"title": "Senior Dev"})

    endpoints = client.get("/metrics").json()["endpoints"]

    assert endpoints["PATCH /api/jobs/{job_id}"]["count"] == 2
    assert not [key for key in endpoints if any(job_id in key for job_id in ids)]


def test_request_id_is_echoed(client: TestClient) -> None:
    response = client.get("/health", headers={"x-request-id": "req-7"})
    assert response.headers["x-request-id"] == "req-7"


def test_password_hash_round_trip() -> None:
    stored = hash_password("s3cret-pass")
    assert stored != "s3cret-pass"
    assert verify_password("s3cret-pass", stored)
    assert not verify_password("wrong-pass", stored)
    assert not verify_password("s3cret-pass", "not-a-hash")


def test_register_sets_session_cookie(client: TestClient, user: dict[str, Any]) -> None:
    assert set(user) == {"id", "username", "email"}
    assert client.cookies.get(SESSION_COOKIE_NAME)

    check = client.get("/api/auth/check")
    assert check.json() == {"authenticated": True}
    assert check.headers["cache-control"].startswith("no-store")

    me = client.get("/api/auth/me")
    assert me.json() == user


def test_register_rejects_duplicate_email(
    client: TestClient, signup: Callable[..., dict[str, Any]]
) -> None:
    signup(client, "ada")
    response = client.post(
        "/api/auth/register",
        json={
            "username": "ada2",
            "email": "ADA@example.com",
            "phone": "+19998887777",
            "password": "another-pass",
        },
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "Email already exists"


def test_login_accepts_email_or_username(client: TestClient, user: dict[str, Any]) -> None:
    client.post("/api/auth/logout")
    assert client.get("/api/auth/check").json() == {"authenticated": False}
    assert client.get("/api/auth/me").status_code == 401

    by_email = client.post(
        "/api/auth/login", json={"username": "ada@example.com", "password": "correct-horse"}
    )
    assert by_email.status_code == 200
    assert by_email.json()["id"] == user["id"]

    by_name = client.post("/api/auth/login", json={"username": "ada", "password": "correct-horse"})
    assert by_name.status_code == 200

    wrong = client.post("/api/auth/login", json={"username": "ada", "password": "nope-nope"})
    assert wrong.status_code == 401


def test_change_password_requires_current_password(
    client: TestClient, user: dict[str, Any]
) -> None:
    rejected = client.post(
        "/api/auth/change-password",
        json={"current_password": "guess-again", "new_password": "brand-new-pass"},
    )
    assert rejected.status_code == 400

    accepted = client.post(
        "/api/auth/change-password",
        json={"current_password": "correct-horse", "new_password": "brand-new-pass"},
    )
    assert accepted.status_code == 200
    relogin = client.post("/api/auth/login", json={"username": "ada", "password": "brand-new-pass"})
    assert relogin.status_code == 200


def test_password_hashing_runs_off_the_event_loop(
    client: TestClient, user: dict[str, Any], monkeypatch: pytest.MonkeyPatch
) -> None:
    on_loop: list[str] = []

    def tracked(name: str, func: Callable[..., Any]) -> Callable[..., Any]:
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                pass
            else:
                on_loop.append(name)
            return func(*args, **kwargs)

        return wrapper

    monkeypatch.setattr(
        tracker_main, "verify_password", tracked("verify", tracker_main.verify_password)
    )
    monkeypatch.setattr(tracker_main, "hash_password", tracked("hash", tracker_main.hash_password))

    login = client.post("/api/auth/login", json={"username": "ada", "password": "correct-horse"})
    changed = client.post(
        "/api/auth/change-password",
        json={"current_password": "correct-horse", "new_password": "brand-new-pass"},
    )

    assert login.status_code == 200
    assert changed.status_code == 200
    assert on_loop == []


def test_delete_account_removes_user_and_session(client: TestClient, user: dict[str, Any]) -> None:
    client.post("/api/notes", json={"title": "keep", "content": "me"})

    response = client.delete("/api/auth/account")

    assert response.status_code == 200
    assert client.get("/api/auth/check").json() == {"authenticated": False}
    login = client.post("/api/auth/login", json={"username": "ada", "password": "correct-horse"})
    assert login.status_code == 401


def test_protected_routes_require_session(client: TestClient) -> None:
    for path in ("/api/jobs", "/api/tasks", "/api/notes"):
        assert client.get(path).status_code == 401


def test_job_crud(client: TestClient, user: dict[str, Any]) -> None:
    created = client.post(
        "/api/jobs",
        json={"url": "https://acme.com/jobs/1", "title": "Data Scientist", "company": "Acme"},
    )
    assert created.status_code == 200
    job = created.json()
    assert job["user_id"] == user["id"]

    updated = client.patch(f"/api/jobs/{job['id']}", json={"location": "Berlin"})
    assert updated.status_code == 200
    assert updated.json()["location"] == "Berlin"
    assert updated.json()["title"] == "Data Scientist"

    replaced = client.put(f"/api/jobs/{job['id']}", json={"title": "Staff Engineer"})
    assert replaced.json()["title"] == "Staff Engineer"

    listed = client.get("/api/jobs").json()
    assert [item["id"] for item in listed] == [job["id"]]

    deleted = client.delete(f"/api/jobs/{job['id']}")
    assert deleted.status_code == 204
    assert client.get("/api/jobs").json() == []
    assert client.delete(f"/api/jobs/{job['id']}").status_code == 404


def test_create_job_rejects_normalized_duplicate(client: TestClient, user: dict[str, Any]) -> None:
    first = client.post(
        "/api/jobs", json={"url": "https://acme.com/jobs/1", "title": "A", "company": "Acme"}
    )
    assert first.status_code == 200

    second = client.post(
        "/api/jobs", json={"url": " HTTPS://ACME.com/jobs/1/ ", "title": "A", "company": "Acme"}
    )
    assert second.status_code == 409


def test_analyze_job_creates_then_reports_duplicate(
    client: TestClient, user: dict[str, Any]
) -> None:
    created = client.post("/api/jobs/analyze", json={"url": LEVER_URL})
    assert created.status_code == 200
    body = created.json()
    assert body["status"] == "created"
    assert body["job"]["company"] == "Stripe"
    assert body["job"]["title"] == "Backend Developer"
    assert body["job"]["type"] == "Full-time"

    again = client.post("/api/jobs/analyze", json={"url": LEVER_URL.upper() + "/"})
    assert again.status_code == 200
    assert again.json()["status"] == "duplicate"
    assert again.json()["job"] is None
    assert len(client.get("/api/jobs").json()) == 1


@pytest.mark.parametrize(
    ("url", "detail_prefix"),
    [
        ("not a url", "Invalid URL"),
        ("https://com/jobs/1", "Unable to identify company name"),
    ],
)
def test_analyze_job_rejects_unusable_urls(
    client: TestClient, user: dict[str, Any], url: str, detail_prefix: str
) -> None:
    response = client.post("/api/jobs/analyze", json={"url": url})

    assert response.status_code == 400
    assert response.json()["detail"].startswith(detail_prefix)
    assert client.get("/api/jobs").json() == []


def test_task_crud_and_duplicate_url(client: TestClient, user: dict[str, Any]) -> None:
    created = client.post(
        "/api/tasks",
        json={"title": "Apply to Staff Engineer position", "url": "https://acme.com/jobs/9"},
    )
    assert created.status_code == 200
    task = created.json()
    assert task["type"] == "job-application"
    assert task["completed"] is False
    assert task["added_date"] == "just now"

    duplicate = client.post(
        "/api/tasks", json={"title": "Again", "url": "https://ACME.com/jobs/9/"}
    )
    assert duplicate.status_code == 409
    assert duplicate.json()["detail"] == "Task with this URL already exists"

    no_url = client.post("/api/tasks", json={"title": "Update CV", "type": "personal"})
    assert no_url.status_code == 200

    toggled = client.patch(f"/api/tasks/{task['id']}", json={"completed": True})
    assert toggled.json()["completed"] is True

    assert client.delete(f"/api/tasks/{task['id']}").status_code == 204
    assert [item["title"] for item in client.get("/api/tasks").json()] == ["Update CV"]


def test_note_crud(client: TestClient, user: dict[str, Any]) -> None:
    created = client.post("/api/notes", json={"title": "Ideas", "content": "ship it"})
    assert created.status_code == 200
    note = created.json()
    assert note["color"] == "#ffffff"

    bad_color = client.patch(f"/api/notes/{note['id']}", json={"color": "red"})
    assert bad_color.status_code == 422

    updated = client.patch(f"/api/notes/{note['id']}", json={"color": "#FFEE00"})
    assert updated.json()["color"] == "#FFEE00"
    assert updated.json()["content"] == "ship it"

    assert client.delete(f"/api/notes/{note['id']}").status_code == 204
    assert client.patch(f"/api/notes/{note['id']}", json={"title": "x"}).status_code == 404


def test_records_are_scoped_to_their_owner(
    client: TestClient, signup: Callable[..., dict[str, Any]]
) -> None:
    signup(client, "ada")
    job = client.post(
        "/api/jobs", json={"url": "https://acme.com/jobs/1", "title": "A", "company": "Acme"}
    ).json()

    signup(client, "grace")
    assert client.get("/api/jobs").json() == []
    assert client.patch(f"/api/jobs/{job['id']}", json={"title": "B"}).status_code == 404
    assert client.delete(f"/api/jobs/{job['id']}").status_code == 404

    same_url = client.post(
        "/api/jobs", json={"url": "https://acme.com/jobs/1", "title": "A", "company": "Acme"}
    )
    assert same_url.status_code == 200
