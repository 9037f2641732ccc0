from __future__ import annotations

import asyncio
import logging
from typing import Any, List, Tuple

from .db import InMemoryDatabase
from .utils import now_ts

logger = logging.getLogger(__name__)

RoomEvent = Tuple[str, int, dict[str, Any]]


class EventStore:
    """Per-room event log that clients poll and the round driver listens to."""

    def __init__(self, database: InMemoryDatabase | None = None):
        database = database or InMemoryDatabase()
        self.counters_collection = database.room_event_counters
        self.events_collection = database.room_events
        self._subscribers: list[asyncio.Queue[RoomEvent]] = []

    async def append(self, room_code: str, payload: dict[str, Any]) -> int:
        """Store a new event for a room, fan it out to subscribers and return its sequence number."""

        seq = await self.counters_collection.increment({"_id": room_code}, "seq")

        await self.events_collection.insert_one(
            {
                "room_code": room_code,
                "seq": seq,
                "timestamp": now_ts(),
                "payload": payload,
            }
        )

        for queue in list(self._subscribers):
            queue.put_nowait((room_code, seq, payload))
        return seq

    async def list(self, room_code: str, after: int | None = None, limit: int = 200) -> List[dict[str, Any]]:
        """Return events for a room that occur after the given sequence."""

        query: dict[str, Any] = {"room_code": room_code}
        if after is not None:
            query["seq"] = {"$gt": after}

        docs = await self.events_collection.find(query, sort_key="seq", limit=limit)
        return [
            {
                "seq": doc["seq"],
                "timestamp": doc.get("timestamp"),
                "payload": doc.get("payload", {}),
            }
            for doc in docs
        ]

    async def reset(self, room_code: str) -> None:
        """Remove all stored events for a room; sequence numbers keep increasing."""

        await self.events_collection.delete_many({"room_code": room_code})

        # Tell polling clients to drop state derived from the previous game.
        await self.append(room_code, {"type": "room_reset"})

    def subscribe(self) -> asyncio.Queue[RoomEvent]:
        queue: asyncio.Queue[RoomEvent] = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[RoomEvent]) -> None:
        try:
            self._subscribers.remove(queue)
        except ValueError:
            logger.debug("unsubscribe called for an unknown queue")
