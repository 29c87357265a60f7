from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence

from common.events import ControlMessage, MessageFormatError, decode_message, topic_domain

from sync_client.cache import QueryCache, QueryKey

LOGGER = logging.getLogger("dailytracker.sync_client")

JOBS_KEY: QueryKey = ("/api/jobs",)
TASKS_KEY: QueryKey = ("/api/tasks",)
NOTES_KEY: QueryKey = ("/api/notes",)
ME_KEY: QueryKey = ("/api/auth/me",)

DEFAULT_ROUTES: dict[str, tuple[QueryKey, ...]] = {
    "job": (JOBS_KEY,),
    "task": (TASKS_KEY,),
    "note": (NOTES_KEY,),
    "user": (ME_KEY,),
}


class CacheRouter:
    """Turns inbound channel frames into cache invalidation plus an active refetch."""

    def __init__(
        self,
        cache: QueryCache,
        routes: Mapping[str, Sequence[QueryKey]] | None = None,
    ) -> None:
        self.cache = cache
        self.routes = {
            domain: tuple(keys) for domain, keys in (routes or DEFAULT_ROUTES).items()
        }

    def keys_for(self, topic: str) -> tuple[QueryKey, ...]:
        return self.routes.get(topic_domain(topic), ())

    async def handle_text(self, raw: str | bytes) -> list[QueryKey]:
        try:
            message = decode_message(raw)
        except MessageFormatError as exc:
            LOGGER.warning(json.dumps({"event": "channel_message_rejected", "error": str(exc)}))
            return []

        if isinstance(message, ControlMessage) or not message.event:
            return []

        refetched: list[QueryKey] = []
        for key in self.keys_for(message.event):
            self.cache.invalidate(key)
            refetched.extend(await self.cache.refetch_active(key))
        LOGGER.debug(
            json.dumps(
                {
                    "event": "channel_event_routed",
                    "topic": message.event,
                    "refetched": [list(key) for key in refetched],
                }
            )
        )
        return refetched
