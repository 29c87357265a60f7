from __future__ import annotations

import itertools
from collections.abc import Callable
from typing import Any

import pytest
from fastapi.testclient import TestClient

DEFAULT_PASSWORD = "correct-horse"
_PHONE_NUMBERS = itertools.count(5_550_000)


def register_user(
    client: TestClient,
    username: str = "ada",
    *,
    email: str | None = None,
    phone: str | None = None,
    password: str = DEFAULT_PASSWORD,
) -> dict[str, Any]:
    response = client.post(
        "/api/auth/register",
        json={
            "username": username,
            "email": email or f"{username}@example.com",
            "phone": phone or f"+1{next(_PHONE_NUMBERS)}",
            "password": password,
        },
    )
    assert response.status_code == 200, response.text
    return response.json()


@pytest.fixture
def signup() -> Callable[..., dict[str, Any]]:
    """Register a user on a TestClient; the session cookie stays on that client."""
    return register_user
