from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

import httpx
from common.classifier import ClassificationError, InvalidJobUrlError, is_duplicate, is_valid_url

from sync_client.cache import QueryCache, QueryKey
from sync_client.router import JOBS_KEY, ME_KEY, NOTES_KEY, TASKS_KEY

DUPLICATE_JOB_MESSAGE = "This job URL has already been analysed and added to your list."
DUPLICATE_TASK_MESSAGE = "This job has already been added to your tasks."
TASK_ADDED_MESSAGE = "Job moved to your tasks."


class TrackerApiError(Exception):
    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(f"{status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


@dataclass(frozen=True)
class AnalyzeOutcome:
    status: Literal["created", "duplicate"]
    message: str
    job: dict[str, Any] | None = None


@dataclass(frozen=True)
class TaskOutcome:
    status: Literal["created", "duplicate"]
    message: str
    task: dict[str, Any] | None = None


class TrackerApiClient:
    """
    Async HTTP client for the tracker API.

    Every mutation settles the affected cache key (invalidate, then refetch
    active observers) so the issuing tab does not wait for its own realtime
    echo.  Session cookies live on the underlying ``httpx.AsyncClient``.
    """

    def __init__(
        self,
        base_url: str,
        cache: QueryCache | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 15,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.cache = cache or QueryCache()
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def __aenter__(self) -> TrackerApiClient:
        return self

    async def __aexit__(self, *_: object) -> bool:
        await self.aclose()
        return False

    async def aclose(self) -> None:
        await self._client.aclose()

    @property
    def cookies(self) -> dict[str, str]:
        return dict(self._client.cookies)

    async def _request(self, method: str, path: str, payload: dict[str, Any] | None = None) -> Any:
        request_kwargs: dict[str, Any] = {}
        if payload is not None:
            request_kwargs["json"] = payload
        try:
            response = await self._client.request(method, path, **request_kwargs)
        except httpx.RequestError as exc:
            raise TrackerApiError(502, "Tracker API is unavailable") from exc

        if response.status_code == 204:
            return None
        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400:
            detail = "Tracker API request failed"
            if isinstance(body, dict):
                detail = body.get("detail", detail)
            raise TrackerApiError(response.status_code, str(detail))
        return body

    async def _settle(self, key: QueryKey) -> None:
        self.cache.invalidate(key)
        await self.cache.refetch_active(key)

    def register_queries(self, cache: QueryCache | None = None) -> QueryCache:
        """Observe the four list views so realtime events refetch them."""
        target = cache or self.cache
        target.register(JOBS_KEY, self.list_jobs)
        target.register(TASKS_KEY, self.list_tasks)
        target.register(NOTES_KEY, self.list_notes)
        target.register(ME_KEY, self.me)
        return target

    # auth

    async def register(self, *, username: str, email: str, phone: str, password: str) -> dict:
        payload = {"username": username, "email": email, "phone": phone, "password": password}
        return await self._request("POST", "/api/auth/register", payload)

    async def login(self, username: str, password: str) -> dict:
        return await self._request(
            "POST", "/api/auth/login", {"username": username, "password": password}
        )

    async def logout(self) -> None:
        await self._request("POST", "/api/auth/logout")

    async def me(self) -> dict:
        return await self._request("GET", "/api/auth/me")

    # jobs

    async def list_jobs(self) -> list[dict]:
        return await self._request("GET", "/api/jobs")

    async def create_job(self, fields: dict[str, Any]) -> dict:
        job = await self._request("POST", "/api/jobs", fields)
        await self._settle(JOBS_KEY)
        return job

    async def update_job(self, job_id: str, patch: dict[str, Any]) -> dict:
        job = await self._request("PATCH", f"/api/jobs/{job_id}", patch)
        await self._settle(JOBS_KEY)
        return job

    async def delete_job(self, job_id: str) -> None:
        await self._request("DELETE", f"/api/jobs/{job_id}")
        await self._settle(JOBS_KEY)

    async def analyze_job(self, url: str) -> AnalyzeOutcome:
        """
        Validate and dedup ``url`` against the cached job list, then ask the
        server to classify and store it.  The cache is only hit over the
        network when it has never been populated.
        """
        if not is_valid_url(url):
            raise InvalidJobUrlError()

        jobs = self.cache.get(JOBS_KEY)
        if jobs is None:
            jobs = await self.list_jobs()
            self.cache.set_data(JOBS_KEY, jobs)
        if is_duplicate(url, [job.get("url") for job in jobs]):
            return AnalyzeOutcome(status="duplicate", message=DUPLICATE_JOB_MESSAGE)

        try:
            body = await self._request("POST", "/api/jobs/analyze", {"url": url.strip()})
        except TrackerApiError as exc:
            if exc.status_code == 400:
                raise ClassificationError(exc.detail) from exc
            raise
        if body["status"] == "created":
            await self._settle(JOBS_KEY)
        return AnalyzeOutcome(status=body["status"], message=body["message"], job=body.get("job"))

    async def add_job_to_tasks(self, job: dict[str, Any]) -> TaskOutcome:
        """Turn an analysed job into an application task and drop it from the job list."""
        try:
            task = await self.create_task(
                {
                    "title": f"Apply to {job['title']} position",
                    "company": job.get("company", ""),
                    "url": job.get("url"),
                    "type": "job-application",
                    "completed": False,
                    "added_date": "just now",
                }
            )
        except TrackerApiError as exc:
            if exc.status_code == 409:
                return TaskOutcome(status="duplicate", message=DUPLICATE_TASK_MESSAGE)
            raise
        await self.delete_job(job["id"])
        return TaskOutcome(status="created", message=TASK_ADDED_MESSAGE, task=task)

    # tasks

    async def list_tasks(self) -> list[dict]:
        return await self._request("GET", "/api/tasks")

    async def create_task(self, fields: dict[str, Any]) -> dict:
        task = await self._request("POST", "/api/tasks", fields)
        await self._settle(TASKS_KEY)
        return task

    async def update_task(self, task_id: str, patch: dict[str, Any]) -> dict:
        task = await self._request("PATCH", f"/api/tasks/{task_id}", patch)
        await self._settle(TASKS_KEY)
        return task

    async def toggle_task(self, task: dict[str, Any]) -> dict:
        return await self.update_task(task["id"], {"completed": not task["completed"]})

    async def delete_task(self, task_id: str) -> None:
        await self._request("DELETE", f"/api/tasks/{task_id}")
        await self._settle(TASKS_KEY)

    # notes

    async def list_notes(self) -> list[dict]:
        return await self._request("GET", "/api/notes")

    async def create_note(self, fields: dict[str, Any]) -> dict:
        note = await self._request("POST", "/api/notes", fields)
        await self._settle(NOTES_KEY)
        return note

    async def update_note(self, note_id: str, patch: dict[str, Any]) -> dict:
        note = await self._request("PATCH", f"/api/notes/{note_id}", patch)
        await self._settle(NOTES_KEY)
        return note

    async def delete_note(self, note_id: str) -> None:
        await self._request("DELETE", f"/api/notes/{note_id}")
        await self._settle(NOTES_KEY)
