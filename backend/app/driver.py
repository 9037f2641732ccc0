from __future__ import annotations

import asyncio
import logging
from typing import Dict, Mapping, Optional, Tuple

from .events import EventStore
from .game import GameController
from .models import Game
from .schemas import (
    build_final_standings,
    build_game_started_view,
    build_riddle_view,
    build_round_result_view,
)
from .storage import PhotoStore

logger = logging.getLogger(__name__)


class RoundDriver:
    """Turns the controller's ``round_end`` signals into judge -> results -> advance.

    Everything clients see (riddles, round results, final standings) is
    published to the event store from here.
    """

    def __init__(
        self,
        controller: GameController,
        events: EventStore,
        photos: PhotoStore,
        results_duration: float = 8,
    ):
        self.controller = controller
        self.events = events
        self.photos = photos
        self.results_duration = results_duration
        # room -> (game being wrapped up, task doing it)
        self._rounds: Dict[str, Tuple[Game, asyncio.Task]] = {}
        self._listener: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._listener is None:
            self._listener = asyncio.create_task(self._listen(self.events.subscribe()))

    async def stop(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        for _game, task in list(self._rounds.values()):
            task.cancel()
        self._rounds.clear()

    async def _listen(self, queue) -> None:
        try:
            while True:
                room_code, _seq, payload = await queue.get()
                if payload.get("type") != "round_end":
                    continue
                game = self.controller.get(room_code)
                if game is None:
                    continue
                running = self._rounds.get(room_code)
                if running is not None:
                    if running[0] is game:
                        logger.warning("[%s] round_end received while a round is still being processed", room_code)
                        continue
                    # left over from a game that was ended in this room
                    running[1].cancel()
                task = asyncio.create_task(self.finish_round(room_code, game))
                self._rounds[room_code] = (game, task)
                task.add_done_callback(lambda t, rc=room_code: self._forget(rc, t))
        finally:
            self.events.unsubscribe(queue)

    def _forget(self, room_code: str, task: asyncio.Task) -> None:
        running = self._rounds.get(room_code)
        if running is not None and running[1] is task:
            del self._rounds[room_code]

    async def start_game(self, room_code: str, players: Mapping[str, str], total_rounds: Optional[int] = None) -> Game:
        game = await self.controller.start(room_code, players, total_rounds)
        view = build_game_started_view(game, self.controller.clock())
        await self.events.append(room_code, {"type": "game_started", **view.model_dump()})
        return game

    async def end_game(self, room_code: str) -> None:
        running = self._rounds.pop(room_code, None)
        if running is not None:
            running[1].cancel()
        await self.controller.end(room_code)

    async def submit_photo(
        self,
        room_code: str,
        player_id: str,
        filename: str,
        content: bytes,
        content_type: Optional[str],
    ) -> bool:
        if not self.controller.accepts_submission(room_code, player_id):
            return False

        game = self.controller.get(room_code)
        ref = await self.photos.save(room_code, player_id, filename, content, content_type)
        accepted = await self.controller.submit(room_code, player_id, ref)
        if not accepted:
            # lost a race with the deadline or a second upload
            await self.photos.delete(ref)
        else:
            await self.events.append(
                room_code,
                {"type": "player_submitted", "player_id": player_id, "player_name": game.players[player_id].name},
            )
        return accepted

    async def finish_round(self, room_code: str, game: Game) -> None:
        await self.controller.judge(room_code)
        if self.controller.get(room_code) is not game or game.status != "results":
            return

        await self.events.append(room_code, {"type": "round_result", **build_round_result_view(game).model_dump()})

        await asyncio.sleep(self.results_duration)

        if self.controller.get(room_code) is not game:
            return
        game = await self.controller.advance(room_code)
        if game is None:
            return
        if game.status == "finished":
            await self.events.append(room_code, {"type": "game_over", **build_final_standings(game).model_dump()})
        else:
            view = build_riddle_view(game, self.controller.clock())
            await self.events.append(room_code, {"type": "riddle", **view.model_dump()})
