from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, EmailStr, Field


class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=120)
    email: EmailStr
    phone: str = Field(..., min_length=3, max_length=32)
    password: str = Field(..., min_length=6, max_length=256)


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, description="Username or email address")
    password: str = Field(..., min_length=1)


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=6, max_length=256)


class PublicUser(BaseModel):
    id: str
    username: str
    email: str


class UserRecord(PublicUser):
    phone: str
    password_hash: str
    created_at: str

    def public(self) -> PublicUser:
        return PublicUser(id=self.id, username=self.username, email=self.email)


class JobCreateRequest(BaseModel):
    url: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    company: str = Field(..., min_length=1)
    location: str = ""
    type: str = ""
    description: str = ""
    posted_date: str = ""
    analyzed_date: str = ""


class JobUpdateRequest(BaseModel):
    url: str | None = None
    title: str | None = None
    company: str | None = None
    location: str | None = None
    type: str | None = None
    description: str | None = None
    posted_date: str | None = None
    analyzed_date: str | None = None


class JobRecord(BaseModel):
    id: str
    user_id: str
    url: str
    title: str
    company: str
    location: str
    type: str
    description: str
    posted_date: str
    analyzed_date: str
    created_at: str
    updated_at: str


class AnalyzeJobRequest(BaseModel):
    url: str


class AnalyzeJobResponse(BaseModel):
    status: Literal["created", "duplicate"]
    message: str
    job: JobRecord | None = None


class TaskCreateRequest(BaseModel):
    title: str = Field(..., min_length=1)
    company: str = ""
    url: str | None = None
    type: str = "job-application"
    completed: bool = False
    added_date: str = "just now"


class TaskUpdateRequest(BaseModel):
    title: str | None = None
    company: str | None = None
    url: str | None = None
    type: str | None = None
    completed: bool | None = None
    added_date: str | None = None


class TaskRecord(BaseModel):
    id: str
    user_id: str
    title: str
    company: str
    url: str | None = None
    type: str
    completed: bool
    added_date: str
    created_at: str
    updated_at: str


class NoteCreateRequest(BaseModel):
    title: str = ""
    content: str = ""
    color: str = Field(default="#ffffff", pattern=r"^#[0-9a-fA-F]{6}$")


class NoteUpdateRequest(BaseModel):
    title: str | None = None
    content: str | None = None
    color: str | None = Field(default=None, pattern=r"^#[0-9a-fA-F]{6}$")


class NoteRecord(BaseModel):
    id: str
    user_id: str
    title: str
    content: str
    color: str
    created_at: str
    updated_at: str


class SessionRecord(BaseModel):
    token: str
    user_id: str
    created_at: str
    expires_at: str


class MetricsSnapshot(BaseModel):
    generated_at: str
    totals: dict[str, int]
    endpoints: dict[str, dict[str, float | int]]
    realtime: dict[str, int]
