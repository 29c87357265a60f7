"""
Server side of the realtime channel.

The ``Broadcaster`` owns the registry of open WebSocket connections.  Route
handlers call ``broadcast(topic, payload)`` right after a successful write;
the event is fanned out to every open connection in registration order and
then forgotten.  There is no replay and no per-topic subscription: clients
filter by topic prefix themselves.
"""
from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from common.events import (
    PING,
    PONG,
    ControlMessage,
    MessageFormatError,
    decode_message,
    encode_control,
    encode_event,
)
from common.utils import now_utc_iso
from fastapi import WebSocket
from starlette.websockets import WebSocketState

LOGGER = logging.getLogger("dailytracker.realtime")


@dataclass
class ChannelConnection:
    websocket: WebSocket
    token: str | None
    connection_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    connected_at: str = field(default_factory=now_utc_iso)

    @property
    def is_open(self) -> bool:
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )


class Broadcaster:
    def __init__(self) -> None:
        self._connections: list[ChannelConnection] = []
        self._stats = {"broadcasts": 0, "deliveries": 0, "send_failures": 0}

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def stats(self) -> dict[str, int]:
        return {"open_connections": self.connection_count, **self._stats}

    def register(self, websocket: WebSocket, token: str | None = None) -> ChannelConnection:
        connection = ChannelConnection(websocket=websocket, token=token)
        self._connections.append(connection)
        LOGGER.info(
            json.dumps(
                {
                    "event": "channel_open",
                    "connection_id": connection.connection_id,
                    "token": token,
                    "open_connections": self.connection_count,
                }
            )
        )
        return connection

    def unregister(self, connection: ChannelConnection) -> None:
        if connection not in self._connections:
            return
        self._connections.remove(connection)
        LOGGER.info(
            json.dumps(
                {
                    "event": "channel_closed",
                    "connection_id": connection.connection_id,
                    "open_connections": self.connection_count,
                }
            )
        )

    async def broadcast(self, topic: str, payload: Any) -> int:
        """Send one event to every open connection; returns the delivery count."""
        message = encode_event(topic, payload)
        self._stats["broadcasts"] += 1
        delivered = 0
        for connection in list(self._connections):
            if not connection.is_open:
                continue
            try:
                await connection.websocket.send_text(message)
            except Exception as exc:
                self._stats["send_failures"] += 1
                LOGGER.warning(
                    json.dumps(
                        {
                            "event": "broadcast_send_failed",
                            "topic": topic,
                            "connection_id": connection.connection_id,
                            "error": str(exc),
                        }
                    )
                )
                continue
            delivered += 1
        self._stats["deliveries"] += delivered
        LOGGER.info(json.dumps({"event": "broadcast", "topic": topic, "delivered": delivered}))
        return delivered

    async def handle_inbound(self, connection: ChannelConnection, raw: str) -> None:
        try:
            message = decode_message(raw)
        except MessageFormatError as exc:
            LOGGER.warning(
                json.dumps(
                    {
                        "event": "channel_message_rejected",
                        "connection_id": connection.connection_id,
                        "error": str(exc),
                    }
                )
            )
            return
        if isinstance(message, ControlMessage) and message.type == PING:
            await connection.websocket.send_text(encode_control(PONG))

    async def serve(self, websocket: WebSocket, token: str | None = None) -> None:
        """Run one connection from handshake to close."""
        connection = self.register(websocket, token)
        try:
            await websocket.accept()
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None and message.get("bytes") is not None:
                    raw = message["bytes"].decode("utf-8", errors="replace")
                await self.handle_inbound(connection, raw or "")
        except Exception as exc:
            LOGGER.warning(
                json.dumps(
                    {
                        "event": "channel_error",
                        "connection_id": connection.connection_id,
                        "error": str(exc),
                    }
                )
            )
        finally:
            self.unregister(connection)
