from __future__ import annotations

from datetime import UTC, date, datetime


def now_utc_iso() -> str:
    return datetime.now(UTC).isoformat()


def today_key(today: date | None = None) -> str:
    return (today or datetime.now(UTC).date()).isoformat()


def normalize_whitespace(text: str) -> str:
    return " ".join(text.split())
