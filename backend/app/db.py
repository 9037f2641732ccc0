from __future__ import annotations

import asyncio
import copy
from functools import lru_cache
from typing import Any, Dict, Iterator, List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import Game


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    ROUND_DURATION_SEC: float = 60
    TOTAL_ROUNDS: int = 3
    RESULTS_DURATION_SEC: float = 8
    TICK_INTERVAL_SEC: float = 1.0
    # upper bound for a single analysis/judgment/narration call
    STAGE_TIMEOUT_SEC: float = 45

    GEMINI_API_KEY: str = ""
    ANALYSIS_MODEL: str = "gemini-2.5-flash"
    JUDGMENT_MODEL: str = "gemini-2.5-pro"
    NARRATION_MODEL: str = "gemini-2.5-flash"

    PHOTO_DIR: str = "uploads"
    AZURE_STORAGE_CONNECTION_STRING: Optional[str] = None
    AZURE_STORAGE_CONTAINER: str = "round-photos"

    CORS_ORIGINS: str = "http://localhost:5173,http://localhost:8080"
    CORS_ORIGIN_REGEX: Optional[str] = None


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()


class InMemoryCollection:
    """Tiny document collection supporting the handful of queries the event log needs."""

    def __init__(self):
        self._docs: List[Dict[str, Any]] = []
        self._lock = asyncio.Lock()

    async def find(
        self,
        query: Dict[str, Any],
        sort_key: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        async with self._lock:
            docs = [copy.deepcopy(doc) for doc in self._docs if self._matches(doc, query)]
        if sort_key is not None:
            docs.sort(key=lambda d: d.get(sort_key))
        if limit is not None:
            docs = docs[:limit]
        return docs

    async def insert_one(self, document: Dict[str, Any]):
        async with self._lock:
            self._docs.append(copy.deepcopy(document))

    async def delete_many(self, query: Dict[str, Any]):
        async with self._lock:
            self._docs = [doc for doc in self._docs if not self._matches(doc, query)]

    async def increment(self, query: Dict[str, Any], field: str, amount: int = 1) -> int:
        """Atomically bump ``field`` on the matching document (upserting) and return the new value."""
        async with self._lock:
            for doc in self._docs:
                if self._matches(doc, query):
                    doc[field] = doc.get(field, 0) + amount
                    return doc[field]
            new_doc = copy.deepcopy(query)
            new_doc[field] = amount
            self._docs.append(new_doc)
            return amount

    def _matches(self, doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
        for key, expected in (query or {}).items():
            actual = doc.get(key)
            if isinstance(expected, dict):
                if "$gt" in expected:
                    if actual is None or actual <= expected["$gt"]:
                        return False
                else:  # pragma: no cover - extend as new operators are required
                    raise ValueError(f"Unsupported query operator(s): {expected}")
            elif actual != expected:
                return False
        return True


class InMemoryDatabase:
    def __init__(self):
        self.room_event_counters = InMemoryCollection()
        self.room_events = InMemoryCollection()


class GameStore:
    """Registry of active games keyed by room code.

    Games live only as long as the process.
    """

    def __init__(self):
        self._games: Dict[str, Game] = {}

    def create(self, game: Game) -> Game:
        if game.room_code in self._games:
            raise ValueError(f"A game is already running in room {game.room_code}")
        self._games[game.room_code] = game
        return game

    def get(self, room_code: str) -> Game | None:
        return self._games.get(room_code)

    def remove(self, room_code: str) -> Game | None:
        return self._games.pop(room_code, None)

    def __contains__(self, room_code: object) -> bool:
        return room_code in self._games

    def __len__(self) -> int:
        return len(self._games)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._games))
