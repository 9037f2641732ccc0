from __future__ import annotations

import asyncio
import logging
import random
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from .db import GameStore
from .events import EventStore
from .judge import JudgingOrchestrator
from .models import Game, PlayerGameState, RoundOutcome, Submission
from .storage import PhotoStore, PhotoUnavailable, guess_mime_type
from .utils import now_ts, remaining_seconds

logger = logging.getLogger(__name__)


RIDDLES = [
    "Find me something that keeps time without ticking",
    "Show me a door that leads nowhere",
    "Capture something that is older than the building it lives in",
    "Find a face that was never alive",
    "Show me the smallest sun you can find indoors",
    "Capture something that has been patiently waiting for years",
    "Find a shadow that looks like something else",
    "Show me where the city lets nature win",
    "Find a word hiding in plain sight",
    "Capture something that carries more than it weighs",
]

DEFAULT_ROUND_DURATION = 60
DEFAULT_TOTAL_ROUNDS = 3


class GameController:
    """Owns the round lifecycle of every active game.

    Every mutation of one game happens under that room's lock, so submissions,
    disconnects and countdown ticks for the same room are serialised while
    different rooms run independently. The controller never talks to clients:
    ``tick`` and ``round_end`` events go to the event store and the transport
    decides what to do with them.
    """

    def __init__(
        self,
        store: GameStore,
        orchestrator: JudgingOrchestrator,
        photos: PhotoStore,
        events: EventStore,
        *,
        clock: Callable[[], float] = now_ts,
        round_duration: float = DEFAULT_ROUND_DURATION,
        tick_interval: float = 1.0,
        default_total_rounds: int = DEFAULT_TOTAL_ROUNDS,
        riddles: Sequence[str] = RIDDLES,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.photos = photos
        self.events = events
        self.clock = clock
        self.round_duration = round_duration
        self.tick_interval = tick_interval
        self.default_total_rounds = default_total_rounds
        self.riddles = list(riddles) or RIDDLES
        self.rng = rng or random.Random()
        self.locks: Dict[str, asyncio.Lock] = {}
        self._countdowns: Dict[str, asyncio.Task] = {}

    def _lock(self, room_code: str) -> asyncio.Lock:
        self.locks.setdefault(room_code, asyncio.Lock())
        return self.locks[room_code]

    def _draw_riddle(self) -> str:
        # with replacement: a riddle may come up again later in the same game
        return self.rng.choice(self.riddles)

    def get(self, room_code: str) -> Game | None:
        return self.store.get(room_code)

    async def start(
        self,
        room_code: str,
        players: Mapping[str, str],
        total_rounds: Optional[int] = None,
    ) -> Game:
        if total_rounds is None:
            total_rounds = self.default_total_rounds
        if not players:
            raise ValueError("Cannot start: no players in the lobby")
        if total_rounds < 1:
            raise ValueError("Cannot start: total_rounds must be at least 1")

        async with self._lock(room_code):
            game = Game(
                room_code=room_code,
                players={pid: PlayerGameState(id=pid, name=name) for pid, name in players.items()},
                current_round=1,
                total_rounds=total_rounds,
                current_riddle=self._draw_riddle(),
                round_deadline=self.clock() + self.round_duration,
                status="riddle",
            )
            self.store.create(game)

            await self.events.reset(room_code)
            self._arm_countdown(room_code)

        logger.info("[%s] Game started with %d players, %d rounds", room_code, len(players), total_rounds)
        return game

    # ── countdown ────────────────────────────────────────────────────────────

    def _arm_countdown(self, room_code: str) -> None:
        self._cancel_countdown(room_code)
        self._countdowns[room_code] = asyncio.create_task(self._run_countdown(room_code))

    def _cancel_countdown(self, room_code: str) -> bool:
        """Stop the room's countdown. Returns False when none was running."""
        task = self._countdowns.pop(room_code, None)
        if task is None:
            return False
        if task is not asyncio.current_task():
            task.cancel()
        return True

    async def _run_countdown(self, room_code: str) -> None:
        me = asyncio.current_task()
        while True:
            await asyncio.sleep(self.tick_interval)
            async with self._lock(room_code):
                game = self.store.get(room_code)
                if game is None or game.status != "riddle" or self._countdowns.get(room_code) is not me:
                    if self._countdowns.get(room_code) is me:
                        self._countdowns.pop(room_code)
                    return

                remaining = remaining_seconds(game.round_deadline, self.clock())
                await self.events.append(
                    room_code,
                    {"type": "tick", "round": game.current_round, "remaining_seconds": remaining},
                )
                if remaining <= 0:
                    await self._close_round(room_code, game, "deadline")
                    return

    async def _close_round(self, room_code: str, game: Game, reason: str) -> None:
        # A round ends once; the countdown handle doubles as the "still open" marker.
        if not self._cancel_countdown(room_code):
            return
        logger.info("[%s] Round %d ended (%s)", room_code, game.current_round, reason)
        await self.events.append(
            room_code,
            {"type": "round_end", "round": game.current_round, "reason": reason},
        )

    # ── player actions ───────────────────────────────────────────────────────

    def accepts_submission(self, room_code: str, player_id: str) -> bool:
        """Whether ``submit`` would take a photo from this player right now."""
        game = self.store.get(room_code)
        if not game or game.status != "riddle":
            return False
        player = game.players.get(player_id)
        if not player or player.has_submitted:
            return False
        return game.round_deadline is not None and self.clock() <= game.round_deadline

    async def submit(self, room_code: str, player_id: str, photo_ref: str) -> bool:
        async with self._lock(room_code):
            if not self.accepts_submission(room_code, player_id):
                return False

            game = self.store.get(room_code)
            player = game.players[player_id]
            player.has_submitted = True
            player.photo_path = photo_ref

            if game.all_submitted():
                await self._close_round(room_code, game, "all_submitted")
            return True

    async def disconnect(self, room_code: str, player_id: str) -> None:
        async with self._lock(room_code):
            game = self.store.get(room_code)
            if not game or game.status == "finished":
                return

            player = game.players.get(player_id)
            if player and not player.has_submitted:
                # no photo: they only stop blocking the early end
                player.has_submitted = True
                logger.info("[%s] Player %s disconnected before submitting", room_code, player_id)

            if game.status == "riddle" and game.all_submitted():
                await self._close_round(room_code, game, "disconnect")

    # ── judging ──────────────────────────────────────────────────────────────

    async def _load_submissions(self, room_code: str, refs: List[tuple[str, str]]) -> List[Submission]:
        async def load(player_id: str, ref: str) -> Submission | None:
            try:
                image = await self.photos.read(ref)
            except PhotoUnavailable:
                logger.warning("[%s] Dropping submission from %s: photo %s unreadable", room_code, player_id, ref)
                return None
            except Exception:
                logger.exception("[%s] Dropping submission from %s: reading photo %s failed", room_code, player_id, ref)
                return None
            return Submission(player_id=player_id, photo_ref=ref, image=image, mime_type=guess_mime_type(ref))

        loaded = await asyncio.gather(*(load(pid, ref) for pid, ref in refs))
        return [sub for sub in loaded if sub is not None]

    async def judge(self, room_code: str) -> RoundOutcome | None:
        """Judge the current round and move the game to ``results``.

        Returns the outcome, or None when nobody qualified, judging failed, or
        the game was not waiting to be judged.
        """
        async with self._lock(room_code):
            game = self.store.get(room_code)
            if not game or game.status != "riddle":
                return None

            self._cancel_countdown(room_code)
            game.status = "judging"
            game.round_deadline = None
            riddle = game.current_riddle
            round_no = game.current_round
            refs = [(p.id, p.photo_path) for p in game.players.values() if p.photo_path]

        submissions = await self._load_submissions(room_code, refs)

        outcome: RoundOutcome | None = None
        if not submissions:
            logger.info("[%s] Round %d had no usable submissions, skipping judging", room_code, round_no)
        else:
            try:
                outcome = await self.orchestrator.judge_round(riddle, submissions)
            except Exception:
                # fail open: the round counts as if nobody qualified
                logger.exception("[%s] Judging failed for round %d", room_code, round_no)

        async with self._lock(room_code):
            if self.store.get(room_code) is not game or game.status != "judging":
                return None

            if outcome is not None:
                for entry in outcome.judgment.scoreboard:
                    player = game.players.get(entry.player_id)
                    if player:
                        player.score += entry.score

            game.last_outcome = outcome
            game.status = "results"
            return outcome

    # ── round progression ────────────────────────────────────────────────────

    async def advance(self, room_code: str) -> Game | None:
        async with self._lock(room_code):
            game = self.store.get(room_code)
            if not game or game.status != "results":
                return None

            if game.current_round >= game.total_rounds:
                game.status = "finished"
                self._cancel_countdown(room_code)
                logger.info("[%s] Game finished after %d rounds", room_code, game.current_round)
                return game

            for player in game.players.values():
                player.has_submitted = False
                player.photo_path = None

            game.current_round += 1
            game.current_riddle = self._draw_riddle()
            game.round_deadline = self.clock() + self.round_duration
            game.last_outcome = None
            game.status = "riddle"
            self._arm_countdown(room_code)
            return game

    async def end(self, room_code: str) -> None:
        async with self._lock(room_code):
            self._cancel_countdown(room_code)
            if self.store.remove(room_code) is not None:
                logger.info("[%s] Game ended", room_code)
        self.locks.pop(room_code, None)
