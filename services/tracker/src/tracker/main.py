from __future__ import annotations

import hashlib
import hmac
import json
import logging
import os
import secrets
import tempfile
import threading
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any

from common.classifier import ClassificationError, analyze_job_url, is_duplicate
from common.utils import now_utc_iso
from fastapi import FastAPI, HTTPException, Request, Response, WebSocket
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from tracker.broadcaster import Broadcaster
from tracker.models import (
    AnalyzeJobRequest,
    AnalyzeJobResponse,
    ChangePasswordRequest,
    JobCreateRequest,
    JobRecord,
    JobUpdateRequest,
    LoginRequest,
    MetricsSnapshot,
    NoteCreateRequest,
    NoteRecord,
    NoteUpdateRequest,
    PublicUser,
    RegisterRequest,
    TaskCreateRequest,
    TaskRecord,
    TaskUpdateRequest,
    UserRecord,
)
from tracker.repository import DuplicateRecordError, TrackerRepository

DEFAULT_DB_PATH = os.path.join(tempfile.gettempdir(), "daily-tracker", "tracker.sqlite3")
DEFAULT_SESSION_TTL_SECONDS = 7 * 24 * 3600
SESSION_COOKIE_NAME = "session_id"
PASSWORD_HASH_ITERATIONS = 120_000
NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, private",
    "Pragma": "no-cache",
    "Expires": "0",
}
LOGGER = logging.getLogger("dailytracker.tracker")


def hash_password(password: str, *, salt: str | None = None) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode(),
        salt.encode(),
        PASSWORD_HASH_ITERATIONS,
    )
    return f"pbkdf2_sha256${PASSWORD_HASH_ITERATIONS}${salt}${digest.hex()}"


def verify_password(password: str, stored_hash: str) -> bool:
    try:
        _, iterations, salt, expected = stored_hash.split("$")
        rounds = int(iterations)
    except ValueError:
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), rounds)
    return hmac.compare_digest(digest.hex(), expected)


def env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in ("1", "true", "yes")


class MetricsStore:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._totals = {"requests": 0, "errors": 0}
        self._endpoints: dict[str, dict[str, float | int]] = {}

    def observe(self, *, method: str, path: str, status_code: int, duration_ms: float) -> None:
        key = f"{method} {path}"
        bucket = f"{status_code // 100}xx"
        with self._lock:
            self._totals["requests"] += 1
            if status_code >= 400:
                self._totals["errors"] += 1
            endpoint = self._endpoints.setdefault(
                key,
                {
                    "count": 0,
                    "2xx": 0,
                    "4xx": 0,
                    "5xx": 0,
                    "latency_ms_sum": 0.0,
                    "latency_ms_avg": 0.0,
                },
            )
            endpoint["count"] = int(endpoint["count"]) + 1
            if bucket in ("2xx", "4xx", "5xx"):
                endpoint[bucket] = int(endpoint[bucket]) + 1
            endpoint["latency_ms_sum"] = float(endpoint["latency_ms_sum"]) + duration_ms
            endpoint["latency_ms_avg"] = (
                float(endpoint["latency_ms_sum"]) / int(endpoint["count"])
            )

    def snapshot(self, realtime: dict[str, int]) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                generated_at=now_utc_iso(),
                totals=dict(self._totals),
                endpoints={key: dict(value) for key, value in self._endpoints.items()},
                realtime=realtime,
            )


def create_app(
    *,
    database_path: str | None = None,
    session_ttl_seconds: int | None = None,
    secure_cookies: bool | None = None,
) -> FastAPI:
    resolved_path = database_path or os.getenv("TRACKER_DB_PATH", DEFAULT_DB_PATH)
    resolved_ttl = session_ttl_seconds or int(
        os.getenv("TRACKER_SESSION_TTL_SECONDS", str(DEFAULT_SESSION_TTL_SECONDS))
    )
    resolved_secure = (
        env_flag("TRACKER_COOKIE_SECURE") if secure_cookies is None else secure_cookies
    )

    repository = TrackerRepository(database_path=resolved_path)
    broadcaster = Broadcaster()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await run_in_threadpool(repository.connect)
        app.state.repository = repository
        app.state.broadcaster = broadcaster
        app.state.metrics = MetricsStore()
        try:
            yield
        finally:
            await run_in_threadpool(repository.close)

    app = FastAPI(title="DailyTracker API", version="1.0.0", lifespan=lifespan)

    def route_path(request: Request) -> str:
        route = request.scope.get("route")
        return getattr(route, "path", request.url.path)

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (time.perf_counter() - started) * 1000
            request.app.state.metrics.observe(
                method=request.method,
                path=route_path(request),
                status_code=500,
                duration_ms=duration_ms,
            )
            LOGGER.exception(
                json.dumps(
                    {
                        "event": "request_complete",
                        "request_id": request_id,
                        "method": request.method,
                        "path": request.url.path,
                        "status_code": 500,
                        "duration_ms": round(duration_ms, 3),
                        "error": str(exc),
                    }
                )
            )
            return JSONResponse(
                status_code=500,
                content={"detail": "Internal Server Error", "request_id": request_id},
                headers={"x-request-id": request_id},
            )

        duration_ms = (time.perf_counter() - started) * 1000
        request.app.state.metrics.observe(
            method=request.method,
            path=route_path(request),
            status_code=response.status_code,
            duration_ms=duration_ms,
        )
        response.headers["x-request-id"] = request_id
        LOGGER.info(
            json.dumps(
                {
                    "event": "request_complete",
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": round(duration_ms, 3),
                    "source_ip": request.client.host if request.client else None,
                }
            )
        )
        return response

    async def require_user(request: Request) -> UserRecord:
        token = request.cookies.get(SESSION_COOKIE_NAME)
        if not token:
            raise HTTPException(status_code=401, detail="Not authenticated")
        user = await run_in_threadpool(request.app.state.repository.resolve_session, token)
        if user is None:
            raise HTTPException(status_code=401, detail="Not authenticated")
        return user

    async def start_session(request: Request, response: Response, user: UserRecord) -> None:
        token = secrets.token_urlsafe(32)
        await run_in_threadpool(
            request.app.state.repository.create_session,
            user.id,
            token,
            resolved_ttl,
        )
        response.set_cookie(
            key=SESSION_COOKIE_NAME,
            value=token,
            httponly=True,
            max_age=resolved_ttl,
            samesite="lax",
            secure=resolved_secure,
        )

    async def publish(request: Request, topic: str, payload: Any) -> None:
        await request.app.state.broadcaster.broadcast(topic, payload)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": "tracker"}

    @app.get("/metrics", response_model=MetricsSnapshot)
    async def metrics(request: Request) -> MetricsSnapshot:
        return request.app.state.metrics.snapshot(request.app.state.broadcaster.stats())

    @app.websocket("/ws")
    async def realtime_channel(websocket: WebSocket, token: str | None = None) -> None:
        await websocket.app.state.broadcaster.serve(websocket, token)

    # auth

    @app.post("/api/auth/register", response_model=PublicUser)
    async def register(
        payload: RegisterRequest,
        request: Request,
        response: Response,
    ) -> PublicUser:
        repo: TrackerRepository = request.app.state.repository
        if await run_in_threadpool(repo.get_user_by_email, payload.email):
            raise HTTPException(status_code=400, detail="Email already exists")
        if await run_in_threadpool(repo.get_user_by_phone, payload.phone):
            raise HTTPException(status_code=400, detail="Phone number already exists")
        try:
            user = await run_in_threadpool(
                lambda: repo.create_user(
                    username=payload.username,
                    email=str(payload.email),
                    phone=payload.phone,
                    password_hash=hash_password(payload.password),
                )
            )
        except DuplicateRecordError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        await start_session(request, response, user)
        LOGGER.info(json.dumps({"event": "user_registered", "user_id": user.id}))
        return user.public()

    @app.post("/api/auth/login", response_model=PublicUser)
    async def login(payload: LoginRequest, request: Request, response: Response) -> PublicUser:
        repo: TrackerRepository = request.app.state.repository
        user = await run_in_threadpool(repo.get_user_by_email, payload.username)
        if user is None:
            user = await run_in_threadpool(repo.get_user_by_username, payload.username)
        if user is None or not await run_in_threadpool(
            verify_password, payload.password, user.password_hash
        ):
            LOGGER.info(json.dumps({"event": "login_failed", "username": payload.username}))
            raise HTTPException(status_code=401, detail="Invalid username/email or password")
        await start_session(request, response, user)
        return user.public()

    @app.post("/api/auth/logout")
    async def logout(request: Request, response: Response) -> dict[str, bool]:
        token = request.cookies.get(SESSION_COOKIE_NAME)
        if token:
            await run_in_threadpool(request.app.state.repository.delete_session, token)
        response.delete_cookie(SESSION_COOKIE_NAME)
        return {"success": True}

    @app.get("/api/auth/check")
    async def check_session(request: Request, response: Response) -> dict[str, bool]:
        response.headers.update(NO_STORE_HEADERS)
        try:
            await require_user(request)
        except HTTPException:
            return {"authenticated": False}
        return {"authenticated": True}

    @app.get("/api/auth/me", response_model=PublicUser)
    async def me(request: Request, response: Response) -> PublicUser:
        response.headers.update(NO_STORE_HEADERS)
        user = await require_user(request)
        return user.public()

    @app.post("/api/auth/change-password")
    async def change_password(payload: ChangePasswordRequest, request: Request) -> dict[str, Any]:
        user = await require_user(request)
        if not await run_in_threadpool(
            verify_password, payload.current_password, user.password_hash
        ):
            raise HTTPException(status_code=400, detail="Current password is incorrect")
        await run_in_threadpool(
            request.app.state.repository.update_password,
            user.id,
            await run_in_threadpool(hash_password, payload.new_password),
        )
        await publish(request, "user:updated", {"id": user.id})
        return {"success": True, "message": "Password updated successfully"}

    @app.delete("/api/auth/account")
    async def delete_account(request: Request, response: Response) -> dict[str, Any]:
        user = await require_user(request)
        deleted = await run_in_threadpool(request.app.state.repository.delete_user, user.id)
        if not deleted:
            raise HTTPException(status_code=404, detail="User not found")
        response.delete_cookie(SESSION_COOKIE_NAME)
        await publish(request, "user:deleted", {"id": user.id})
        return {"success": True, "message": "Account deleted successfully"}

    # jobs

    @app.get("/api/jobs", response_model=list[JobRecord])
    async def list_jobs(request: Request) -> list[JobRecord]:
        user = await require_user(request)
        return await run_in_threadpool(request.app.state.repository.list_jobs, user.id)

    @app.post("/api/jobs", response_model=JobRecord)
    async def create_job(payload: JobCreateRequest, request: Request) -> JobRecord:
        user = await require_user(request)
        repo: TrackerRepository = request.app.state.repository
        existing_urls = await run_in_threadpool(repo.list_job_urls, user.id)
        if is_duplicate(payload.url, existing_urls):
            raise HTTPException(status_code=409, detail="Job with this URL already exists")
        try:
            job = await run_in_threadpool(repo.create_job, user.id, payload.model_dump())
        except DuplicateRecordError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        await publish(request, "job:created", job.model_dump(mode="json"))
        return job

    @app.post("/api/jobs/analyze", response_model=AnalyzeJobResponse)
    async def analyze_job(payload: AnalyzeJobRequest, request: Request) -> AnalyzeJobResponse:
        user = await require_user(request)
        repo: TrackerRepository = request.app.state.repository
        existing_urls = await run_in_threadpool(repo.list_job_urls, user.id)
        try:
            analysis = analyze_job_url(payload.url, existing_urls)
        except ClassificationError as exc:
            LOGGER.info(
                json.dumps(
                    {"event": "job_analysis_rejected", "url": payload.url, "error": str(exc)}
                )
            )
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        if analysis.duplicate:
            return AnalyzeJobResponse(
                status="duplicate",
                message="This job URL has already been analysed and added to your list.",
            )

        try:
            job = await run_in_threadpool(repo.create_job, user.id, analysis.job_fields())
        except DuplicateRecordError:
            return AnalyzeJobResponse(
                status="duplicate",
                message="This job URL has already been analysed and added to your list.",
            )
        LOGGER.info(
            json.dumps(
                {
                    "event": "job_analyzed",
                    "job_id": job.id,
                    "company": job.company,
                    "title": job.title,
                }
            )
        )
        await publish(request, "job:created", job.model_dump(mode="json"))
        return AnalyzeJobResponse(status="created", message="Job added successfully.", job=job)

    @app.put("/api/jobs/{job_id}", response_model=JobRecord)
    @app.patch("/api/jobs/{job_id}", response_model=JobRecord)
    async def update_job(job_id: str, payload: JobUpdateRequest, request: Request) -> JobRecord:
        user = await require_user(request)
        try:
            job = await run_in_threadpool(
                request.app.state.repository.update_job,
                user.id,
                job_id,
                payload.model_dump(exclude_unset=True),
            )
        except DuplicateRecordError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        if job is None:
            raise HTTPException(status_code=404, detail="Job not found")
        await publish(request, "job:updated", job.model_dump(mode="json"))
        return job

    @app.delete("/api/jobs/{job_id}", status_code=204)
    async def delete_job(job_id: str, request: Request) -> Response:
        user = await require_user(request)
        deleted = await run_in_threadpool(request.app.state.repository.delete_job, user.id, job_id)
        if not deleted:
            raise HTTPException(status_code=404, detail="Job not found")
        await publish(request, "job:deleted", {"id": job_id})
        return Response(status_code=204)

    # tasks

    @app.get("/api/tasks", response_model=list[TaskRecord])
    async def list_tasks(request: Request) -> list[TaskRecord]:
        user = await require_user(request)
        return await run_in_threadpool(request.app.state.repository.list_tasks, user.id)

    @app.post("/api/tasks", response_model=TaskRecord)
    async def create_task(payload: TaskCreateRequest, request: Request) -> TaskRecord:
        user = await require_user(request)
        repo: TrackerRepository = request.app.state.repository
        if payload.url:
            existing = await run_in_threadpool(repo.list_tasks, user.id)
            if is_duplicate(payload.url, [task.url for task in existing]):
                raise HTTPException(status_code=409, detail="Task with this URL already exists")
        task = await run_in_threadpool(repo.create_task, user.id, payload.model_dump())
        await publish(request, "task:created", task.model_dump(mode="json"))
        return task

    @app.put("/api/tasks/{task_id}", response_model=TaskRecord)
    @app.patch("/api/tasks/{task_id}", response_model=TaskRecord)
    async def update_task(task_id: str, payload: TaskUpdateRequest, request: Request) -> TaskRecord:
        user = await require_user(request)
        task = await run_in_threadpool(
            request.app.state.repository.update_task,
            user.id,
            task_id,
            payload.model_dump(exclude_unset=True),
        )
        if task is None:
            raise HTTPException(status_code=404, detail="Task not found")
        await publish(request, "task:updated", task.model_dump(mode="json"))
        return task

    @app.delete("/api/tasks/{task_id}", status_code=204)
    async def delete_task(task_id: str, request: Request) -> Response:
        user = await require_user(request)
        deleted = await run_in_threadpool(
            request.app.state.repository.delete_task,
            user.id,
            task_id,
        )
        if not deleted:
            raise HTTPException(status_code=404, detail="Task not found")
        await publish(request, "task:deleted", {"id": task_id})
        return Response(status_code=204)

    # notes

    @app.get("/api/notes", response_model=list[NoteRecord])
    async def list_notes(request: Request) -> list[NoteRecord]:
        user = await require_user(request)
        return await run_in_threadpool(request.app.state.repository.list_notes, user.id)

    @app.post("/api/notes", response_model=NoteRecord)
    async def create_note(payload: NoteCreateRequest, request: Request) -> NoteRecord:
        user = await require_user(request)
        note = await run_in_threadpool(
            request.app.state.repository.create_note,
            user.id,
            payload.model_dump(),
        )
        await publish(request, "note:created", note.model_dump(mode="json"))
        return note

    @app.patch("/api/notes/{note_id}", response_model=NoteRecord)
    async def update_note(note_id: str, payload: NoteUpdateRequest, request: Request) -> NoteRecord:
        user = await require_user(request)
        note = await run_in_threadpool(
            request.app.state.repository.update_note,
            user.id,
            note_id,
            payload.model_dump(exclude_unset=True),
        )
        if note is None:
            raise HTTPException(status_code=404, detail="Note not found")
        await publish(request, "note:updated", note.model_dump(mode="json"))
        return note

    @app.delete("/api/notes/{note_id}", status_code=204)
    async def delete_note(note_id: str, request: Request) -> Response:
        user = await require_user(request)
        deleted = await run_in_threadpool(
            request.app.state.repository.delete_note,
            user.id,
            note_id,
        )
        if not deleted:
            raise HTTPException(status_code=404, detail="Note not found")
        await publish(request, "note:deleted", {"id": note_id})
        return Response(status_code=204)

    return app


app = create_app()
