from __future__ import annotations

import sqlite3
import threading
import uuid
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from common.classifier import normalize_job_url
from common.utils import now_utc_iso

from tracker.models import JobRecord, NoteRecord, SessionRecord, TaskRecord, UserRecord

JOB_COLUMNS = (
    "url",
    "title",
    "company",
    "location",
    "type",
    "description",
    "posted_date",
    "analyzed_date",
)
TASK_COLUMNS = ("title", "company", "url", "type", "completed", "added_date")
NOTE_COLUMNS = ("title", "content", "color")


class DuplicateRecordError(ValueError):
    """Raised when a write would break a uniqueness rule."""


class TrackerRepository:
    def __init__(self, database_path: str) -> None:
        self.database_path = Path(database_path)
        self._connection: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    @property
    def connection(self) -> sqlite3.Connection:
        if self._connection is None:
            raise RuntimeError("Database connection is not initialized")
        return self._connection

    def connect(self) -> None:
        with self._lock:
            self.database_path.parent.mkdir(parents=True, exist_ok=True)
            self._connection = sqlite3.connect(self.database_path, check_same_thread=False)
            self._connection.row_factory = sqlite3.Row
            self._connection.execute("PRAGMA foreign_keys=ON")
            self._connection.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    username TEXT NOT NULL,
                    email TEXT NOT NULL UNIQUE,
                    phone TEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS sessions (
                    token TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    created_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    url TEXT NOT NULL,
                    normalized_url TEXT NOT NULL,
                    title TEXT NOT NULL,
                    company TEXT NOT NULL,
                    location TEXT NOT NULL DEFAULT '',
                    type TEXT NOT NULL DEFAULT '',
                    description TEXT NOT NULL DEFAULT '',
                    posted_date TEXT NOT NULL DEFAULT '',
                    analyzed_date TEXT NOT NULL DEFAULT '',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (user_id, normalized_url)
                );

                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    title TEXT NOT NULL,
                    company TEXT NOT NULL DEFAULT '',
                    url TEXT,
                    type TEXT NOT NULL,
                    completed INTEGER NOT NULL DEFAULT 0,
                    added_date TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS notes (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    title TEXT NOT NULL DEFAULT '',
                    content TEXT NOT NULL DEFAULT '',
                    color TEXT NOT NULL DEFAULT '#ffffff',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                """
            )
            self._connection.commit()

    def close(self) -> None:
        with self._lock:
            if self._connection is None:
                return
            self._connection.close()
            self._connection = None

    # users

    def create_user(
        self,
        *,
        username: str,
        email: str,
        phone: str,
        password_hash: str,
    ) -> UserRecord:
        with self._lock:
            user_id = str(uuid.uuid4())
            try:
                self.connection.execute(
                    """
                    INSERT INTO users (id, username, email, phone, password_hash, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (user_id, username, email.lower(), phone, password_hash, now_utc_iso()),
                )
            except sqlite3.IntegrityError as exc:
                self.connection.rollback()
                raise DuplicateRecordError("Email or phone number already exists") from exc
            self.connection.commit()
            return self._get_user_by("id", user_id)

    def get_user_by_id(self, user_id: str) -> UserRecord | None:
        return self._get_user_by("id", user_id)

    def get_user_by_email(self, email: str) -> UserRecord | None:
        return self._get_user_by("email", email.lower())

    def get_user_by_username(self, username: str) -> UserRecord | None:
        return self._get_user_by("username", username)

    def get_user_by_phone(self, phone: str) -> UserRecord | None:
        return self._get_user_by("phone", phone)

    def _get_user_by(self, column: str, value: str) -> UserRecord | None:
        with self._lock:
            row = self.connection.execute(
                f"""
                SELECT id, username, email, phone, password_hash, created_at
                FROM users
                WHERE {column} = ?
                ORDER BY created_at
                LIMIT 1
                """,
                (value,),
            ).fetchone()
            return UserRecord(**dict(row)) if row else None

    def update_password(self, user_id: str, password_hash: str) -> bool:
        with self._lock:
            cursor = self.connection.execute(
                "UPDATE users SET password_hash = ? WHERE id = ?",
                (password_hash, user_id),
            )
            self.connection.commit()
            return cursor.rowcount > 0

    def delete_user(self, user_id: str) -> bool:
        with self._lock:
            for table in ("sessions", "jobs", "tasks", "notes"):
                self.connection.execute(f"DELETE FROM {table} WHERE user_id = ?", (user_id,))
            cursor = self.connection.execute("DELETE FROM users WHERE id = ?", (user_id,))
            self.connection.commit()
            return cursor.rowcount > 0

    # sessions

    def create_session(self, user_id: str, token: str, ttl_seconds: int) -> SessionRecord:
        with self._lock:
            created = datetime.now(UTC)
            expires = created + timedelta(seconds=ttl_seconds)
            self.connection.execute(
                """
                INSERT INTO sessions (token, user_id, created_at, expires_at)
                VALUES (?, ?, ?, ?)
                """,
                (token, user_id, created.isoformat(), expires.isoformat()),
            )
            self.connection.commit()
            return SessionRecord(
                token=token,
                user_id=user_id,
                created_at=created.isoformat(),
                expires_at=expires.isoformat(),
            )

    def resolve_session(self, token: str) -> UserRecord | None:
        with self._lock:
            row = self.connection.execute(
                "SELECT user_id, expires_at FROM sessions WHERE token = ?",
                (token,),
            ).fetchone()
            if row is None:
                return None
            if datetime.fromisoformat(row["expires_at"]) <= datetime.now(UTC):
                self.delete_session(token)
                return None
            return self.get_user_by_id(row["user_id"])

    def delete_session(self, token: str) -> None:
        with self._lock:
            self.connection.execute("DELETE FROM sessions WHERE token = ?", (token,))
            self.connection.commit()

    # jobs

    def list_jobs(self, user_id: str) -> list[JobRecord]:
        with self._lock:
            cursor = self.connection.execute(
                """
                SELECT
                    id,
                    user_id,
                    url,
                    title,
                    company,
                    location,
                    type,
                    description,
                    posted_date,
                    analyzed_date,
                    created_at,
                    updated_at
                FROM jobs
                WHERE user_id = ?
                ORDER BY created_at DESC, id
                """,
                (user_id,),
            )
            return [JobRecord(**dict(row)) for row in cursor.fetchall()]

    def list_job_urls(self, user_id: str) -> list[str]:
        with self._lock:
            cursor = self.connection.execute("SELECT url FROM jobs WHERE user_id = ?", (user_id,))
            return [row["url"] for row in cursor.fetchall()]

    def get_job(self, user_id: str, job_id: str) -> JobRecord | None:
        with self._lock:
            row = self.connection.execute(
                """
                SELECT
                    id,
                    user_id,
                    url,
                    title,
                    company,
                    location,
                    type,
                    description,
                    posted_date,
                    analyzed_date,
                    created_at,
                    updated_at
                FROM jobs
                WHERE user_id = ? AND id = ?
                """,
                (user_id, job_id),
            ).fetchone()
            return JobRecord(**dict(row)) if row else None

    def create_job(self, user_id: str, fields: dict[str, Any]) -> JobRecord:
        with self._lock:
            job_id = str(uuid.uuid4())
            now = now_utc_iso()
            values = {column: fields.get(column) or "" for column in JOB_COLUMNS}
            try:
                self.connection.execute(
                    """
                    INSERT INTO jobs (
                        id,
                        user_id,
                        url,
                        normalized_url,
                        title,
                        company,
                        location,
                        type,
                        description,
                        posted_date,
                        analyzed_date,
                        created_at,
                        updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        job_id,
                        user_id,
                        values["url"],
                        normalize_job_url(values["url"]),
                        values["title"],
                        values["company"],
                        values["location"],
                        values["type"],
                        values["description"],
                        values["posted_date"],
                        values["analyzed_date"],
                        now,
                        now,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                self.connection.rollback()
                raise DuplicateRecordError("Job with this URL already exists") from exc
            self.connection.commit()
            return self.get_job(user_id, job_id)

    def update_job(self, user_id: str, job_id: str, patch: dict[str, Any]) -> JobRecord | None:
        changes = {column: patch[column] for column in JOB_COLUMNS if patch.get(column) is not None}
        if "url" in changes:
            changes["normalized_url"] = normalize_job_url(changes["url"])
        try:
            updated = self._update_row("jobs", user_id, job_id, changes)
        except sqlite3.IntegrityError as exc:
            raise DuplicateRecordError("Job with this URL already exists") from exc
        return self.get_job(user_id, job_id) if updated else None

    def delete_job(self, user_id: str, job_id: str) -> bool:
        return self._delete_row("jobs", user_id, job_id)

    # tasks

    def list_tasks(self, user_id: str) -> list[TaskRecord]:
        with self._lock:
            cursor = self.connection.execute(
                """
                SELECT
                    id,
                    user_id,
                    title,
                    company,
                    url,
                    type,
                    completed,
                    added_date,
                    created_at,
                    updated_at
                FROM tasks
                WHERE user_id = ?
                ORDER BY created_at DESC, id
                """,
                (user_id,),
            )
            return [self._to_task(row) for row in cursor.fetchall()]

    def get_task(self, user_id: str, task_id: str) -> TaskRecord | None:
        with self._lock:
            row = self.connection.execute(
                """
                SELECT
                    id,
                    user_id,
                    title,
                    company,
                    url,
                    type,
                    completed,
                    added_date,
                    created_at,
                    updated_at
                FROM tasks
                WHERE user_id = ? AND id = ?
                """,
                (user_id, task_id),
            ).fetchone()
            return self._to_task(row) if row else None

    def create_task(self, user_id: str, fields: dict[str, Any]) -> TaskRecord:
        with self._lock:
            task_id = str(uuid.uuid4())
            now = now_utc_iso()
            self.connection.execute(
                """
                INSERT INTO tasks (
                    id,
                    user_id,
                    title,
                    company,
                    url,
                    type,
                    completed,
                    added_date,
                    created_at,
                    updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    task_id,
                    user_id,
                    fields["title"],
                    fields.get("company") or "",
                    fields.get("url") or None,
                    fields.get("type") or "job-application",
                    int(bool(fields.get("completed"))),
                    fields.get("added_date") or "just now",
                    now,
                    now,
                ),
            )
            self.connection.commit()
            return self.get_task(user_id, task_id)

    def update_task(self, user_id: str, task_id: str, patch: dict[str, Any]) -> TaskRecord | None:
        changes = {
            column: patch[column] for column in TASK_COLUMNS if patch.get(column) is not None
        }
        if "completed" in changes:
            changes["completed"] = int(bool(changes["completed"]))
        updated = self._update_row("tasks", user_id, task_id, changes)
        return self.get_task(user_id, task_id) if updated else None

    def delete_task(self, user_id: str, task_id: str) -> bool:
        return self._delete_row("tasks", user_id, task_id)

    def _to_task(self, row: sqlite3.Row) -> TaskRecord:
        payload = dict(row)
        payload["completed"] = bool(payload["completed"])
        return TaskRecord(**payload)

    # notes

    def list_notes(self, user_id: str) -> list[NoteRecord]:
        with self._lock:
            cursor = self.connection.execute(
                """
                SELECT id, user_id, title, content, color, created_at, updated_at
                FROM notes
                WHERE user_id = ?
                ORDER BY updated_at DESC, id
                """,
                (user_id,),
            )
            return [NoteRecord(**dict(row)) for row in cursor.fetchall()]

    def get_note(self, user_id: str, note_id: str) -> NoteRecord | None:
        with self._lock:
            row = self.connection.execute(
                """
                SELECT id, user_id, title, content, color, created_at, updated_at
                FROM notes
                WHERE user_id = ? AND id = ?
                """,
                (user_id, note_id),
            ).fetchone()
            return NoteRecord(**dict(row)) if row else None

    def create_note(self, user_id: str, fields: dict[str, Any]) -> NoteRecord:
        with self._lock:
            note_id = str(uuid.uuid4())
            now = now_utc_iso()
            self.connection.execute(
                """
                INSERT INTO notes (id, user_id, title, content, color, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    note_id,
                    user_id,
                    fields.get("title") or "",
                    fields.get("content") or "",
                    fields.get("color") or "#ffffff",
                    now,
                    now,
                ),
            )
            self.connection.commit()
            return self.get_note(user_id, note_id)

    def update_note(self, user_id: str, note_id: str, patch: dict[str, Any]) -> NoteRecord | None:
        changes = {
            column: patch[column] for column in NOTE_COLUMNS if patch.get(column) is not None
        }
        updated = self._update_row("notes", user_id, note_id, changes)
        return self.get_note(user_id, note_id) if updated else None

    def delete_note(self, user_id: str, note_id: str) -> bool:
        return self._delete_row("notes", user_id, note_id)

    # shared helpers

    def _update_row(
        self,
        table: str,
        user_id: str,
        record_id: str,
        changes: dict[str, Any],
    ) -> bool:
        with self._lock:
            assignments = [f"{column} = ?" for column in changes]
            assignments.append("updated_at = ?")
            params = [*changes.values(), now_utc_iso(), user_id, record_id]
            try:
                cursor = self.connection.execute(
                    f"UPDATE {table} SET {', '.join(assignments)} WHERE user_id = ? AND id = ?",
                    tuple(params),
                )
            except sqlite3.IntegrityError:
                self.connection.rollback()
                raise
            self.connection.commit()
            return cursor.rowcount > 0

    def _delete_row(self, table: str, user_id: str, record_id: str) -> bool:
        with self._lock:
            cursor = self.connection.execute(
                f"DELETE FROM {table} WHERE user_id = ? AND id = ?",
                (user_id, record_id),
            )
            self.connection.commit()
            return cursor.rowcount > 0
