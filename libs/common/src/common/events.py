"""
Wire format for the realtime channel.

Two kinds of JSON text frames travel over the channel:

* control frames ``{"type": "ping"}`` / ``{"type": "pong"}`` used only for
  liveness, and
* domain events ``{"event": "<domain>:<action>", "data": <payload>}`` sent
  by the server after a successful mutation.
"""
from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, ValidationError

PING = "ping"
PONG = "pong"

DOMAINS = ("job", "task", "note", "user")
ACTIONS = ("created", "updated", "deleted")


class MessageFormatError(ValueError):
    """Raised when a channel frame is not valid JSON or has the wrong shape."""


class ControlMessage(BaseModel):
    type: str


class DomainEvent(BaseModel):
    event: str | None = None
    data: Any = None

    @property
    def domain(self) -> str | None:
        if not self.event:
            return None
        return topic_domain(self.event)


def build_topic(domain: str, action: str) -> str:
    if domain not in DOMAINS:
        raise ValueError(f"Unknown event domain: {domain}")
    if action not in ACTIONS:
        raise ValueError(f"Unknown event action: {action}")
    return f"{domain}:{action}"


def topic_domain(topic: str) -> str:
    return topic.split(":", 1)[0]


def encode_event(topic: str, payload: Any) -> str:
    if not topic:
        raise ValueError("Event topic must be a non-empty string.")
    return json.dumps({"event": topic, "data": payload}, default=str)


def encode_control(kind: str) -> str:
    return json.dumps({"type": kind})


def decode_message(raw: str | bytes) -> ControlMessage | DomainEvent:
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise MessageFormatError(f"Channel frame is not valid JSON: {exc}") from exc

    if not isinstance(parsed, dict):
        raise MessageFormatError("Channel frame must be a JSON object.")

    try:
        if "type" in parsed and (parsed.get("event") is None or parsed["type"] in (PING, PONG)):
            return ControlMessage.model_validate(parsed)
        return DomainEvent.model_validate(parsed)
    except ValidationError as exc:
        raise MessageFormatError(str(exc)) from exc
