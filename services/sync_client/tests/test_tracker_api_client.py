from __future__ import annotations

from typing import Any

import httpx
import pytest
from common.classifier import ClassificationError, InvalidJobUrlError
from sync_client.api import TrackerApiClient, TrackerApiError
from sync_client.cache import QueryCache
from sync_client.router import JOBS_KEY, TASKS_KEY

pytestmark = pytest.mark.unit


class StubResponse:
    def __init__(self, status_code: int, payload: Any = None) -> None:
        self.status_code = status_code
        self._payload = payload

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("no body")
        return self._payload


class StubAsyncClient:
    def __init__(self, routes: dict[tuple[str, str], StubResponse | list[StubResponse]]) -> None:
        self.routes = routes
        self.calls: list[tuple[str, str, Any]] = []
        self.cookies = {"session_id": "abc"}
        self.closed = False

    async def request(self, method: str, url: str, json: Any = None) -> StubResponse:
        self.calls.append((method, url, json))
        response = self.routes[(method, url)]
        if isinstance(response, list):
            return response.pop(0) if len(response) > 1 else response[0]
        return response

    async def aclose(self) -> None:
        self.closed = True


class ErroringAsyncClient(StubAsyncClient):
    async def request(self, method: str, url: str, json: Any = None) -> StubResponse:
        del json
        raise httpx.ConnectError("connection failed", request=httpx.Request(method, url))


JOB = {
    "id": "j-1",
    "url": "https://jobs.lever.co/stripe/backend-developer",
    "title": "Backend Developer",
    "company": "Stripe",
}


def methods(stub: StubAsyncClient) -> list[tuple[str, str]]:
    return [(method, url) for method, url, _ in stub.calls]


@pytest.mark.asyncio
async def test_analyze_job_skips_server_for_cached_duplicate() -> None:
    stub = StubAsyncClient({})
    cache = QueryCache()
    cache.set_data(JOBS_KEY, [JOB])
    api = TrackerApiClient("http://tracker.test", cache, client=stub)

    outcome = await api.analyze_job("HTTPS://jobs.lever.co/stripe/backend-developer/")

    assert outcome.status == "duplicate"
    assert outcome.job is None
    assert stub.calls == []


@pytest.mark.asyncio
async def test_analyze_job_loads_list_once_when_cache_is_empty() -> None:
    stub = StubAsyncClient(
        {
            ("GET", "/api/jobs"): [StubResponse(200, []), StubResponse(200, [JOB])],
            ("POST", "/api/jobs/analyze"): StubResponse(
                200, {"status": "created", "message": "Job added successfully.", "job": JOB}
            ),
        }
    )
    api = TrackerApiClient("http://tracker.test", client=stub)
    api.register_queries()

    outcome = await api.analyze_job(f"  {JOB['url']}  ")

    assert outcome.status == "created"
    assert outcome.job == JOB
    assert methods(stub) == [
        ("GET", "/api/jobs"),
        ("POST", "/api/jobs/analyze"),
        ("GET", "/api/jobs"),
    ]
    assert stub.calls[1][2] == {"url": JOB["url"]}
    assert api.cache.get(JOBS_KEY) == [JOB]


@pytest.mark.asyncio
async def test_analyze_job_rejects_invalid_url_locally() -> None:
    stub = StubAsyncClient({})
    api = TrackerApiClient("http://tracker.test", client=stub)

    with pytest.raises(InvalidJobUrlError):
        await api.analyze_job("example.com/jobs")
    assert stub.calls == []


@pytest.mark.asyncio
async def test_analyze_job_surfaces_classification_errors() -> None:
    stub = StubAsyncClient(
        {
            ("POST", "/api/jobs/analyze"): StubResponse(
                400, {"detail": "Unable to identify company name from this URL."}
            ),
        }
    )
    cache = QueryCache()
    cache.set_data(JOBS_KEY, [])
    api = TrackerApiClient("http://tracker.test", cache, client=stub)

    with pytest.raises(ClassificationError, match="Unable to identify company"):
        await api.analyze_job("https://com/jobs/1")


@pytest.mark.asyncio
async def test_add_job_to_tasks_creates_task_then_deletes_job() -> None:
    task = {"id": "t-1", "title": "Apply to Backend Developer position", "completed": False}
    stub = StubAsyncClient(
        {
            ("POST", "/api/tasks"): StubResponse(200, task),
            ("DELETE", "/api/jobs/j-1"): StubResponse(204),
        }
    )
    api = TrackerApiClient("http://tracker.test", client=stub)

    outcome = await api.add_job_to_tasks(JOB)

    assert outcome.status == "created"
    assert outcome.task == task
    assert methods(stub) == [("POST", "/api/tasks"), ("DELETE", "/api/jobs/j-1")]
    sent = stub.calls[0][2]
    assert sent["title"] == "Apply to Backend Developer position"
    assert sent["type"] == "job-application"
    assert sent["added_date"] == "just now"
    assert sent["url"] == JOB["url"]


@pytest.mark.asyncio
async def test_add_job_to_tasks_keeps_job_when_task_exists() -> None:
    stub = StubAsyncClient(
        {("POST", "/api/tasks"): StubResponse(409, {"detail": "Task with this URL already exists"})}
    )
    api = TrackerApiClient("http://tracker.test", client=stub)

    outcome = await api.add_job_to_tasks(JOB)

    assert outcome.status == "duplicate"
    assert methods(stub) == [("POST", "/api/tasks")]


@pytest.mark.asyncio
async def test_toggle_task_flips_completion_and_refetches_tasks() -> None:
    stub = StubAsyncClient(
        {
            ("PATCH", "/api/tasks/t-1"): StubResponse(200, {"id": "t-1", "completed": True}),
            ("GET", "/api/tasks"): StubResponse(200, [{"id": "t-1", "completed": True}]),
        }
    )
    api = TrackerApiClient("http://tracker.test", client=stub)
    api.cache.register(TASKS_KEY, api.list_tasks)

    updated = await api.toggle_task({"id": "t-1", "completed": False})

    assert updated["completed"] is True
    assert stub.calls[0][2] == {"completed": True}
    assert api.cache.get(TASKS_KEY) == [{"id": "t-1", "completed": True}]


@pytest.mark.asyncio
async def test_errors_carry_status_and_detail() -> None:
    stub = StubAsyncClient(
        {("GET", "/api/auth/me"): StubResponse(401, {"detail": "Not authenticated"})}
    )
    api = TrackerApiClient("http://tracker.test", client=stub)

    with pytest.raises(TrackerApiError) as exc_info:
        await api.me()

    assert exc_info.value.status_code == 401
    assert exc_info.value.detail == "Not authenticated"


@pytest.mark.asyncio
async def test_transport_failures_map_to_502() -> None:
    api = TrackerApiClient("http://tracker.test", client=ErroringAsyncClient({}))

    with pytest.raises(TrackerApiError) as exc_info:
        await api.list_notes()

    assert exc_info.value.status_code == 502


@pytest.mark.asyncio
async def test_context_manager_closes_client_and_exposes_cookies() -> None:
    stub = StubAsyncClient({})

    async with TrackerApiClient("http://tracker.test", client=stub) as api:
        assert api.cookies == {"session_id": "abc"}

    assert stub.closed
