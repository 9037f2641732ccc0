from pydantic import BaseModel, Field
from typing import Dict, List, Optional

from .models import Game
from .utils import remaining_seconds, sort_standings


class StartGameIn(BaseModel):
    room_code: str
    # ordered player id -> display name, as snapshotted from the lobby
    players: Dict[str, str]
    total_rounds: Optional[int] = Field(default=None, ge=1)


class DisconnectIn(BaseModel):
    player_id: str


class PlayerOut(BaseModel):
    id: str
    name: str
    score: int
    has_submitted: bool


class RiddleView(BaseModel):
    round: int
    total_rounds: int
    riddle: str
    deadline: Optional[float]
    remaining_seconds: int


class GameStartedView(BaseModel):
    room_code: str
    players: List[PlayerOut]
    total_rounds: int
    riddle: RiddleView


class WinnerView(BaseModel):
    player_id: str
    player_name: str
    announcement: str


class ScoreboardRow(BaseModel):
    rank: int
    player_id: str
    player_name: str
    score: int
    round_score: int


class RoundResultView(BaseModel):
    round: int
    riddle: str
    grand_winner: Optional[WinnerView] = None
    troll_winner: Optional[WinnerView] = None
    scoreboard: List[ScoreboardRow] = Field(default_factory=list)


class StandingRow(BaseModel):
    rank: int
    player_id: str
    player_name: str
    total_score: int


class FinalStandingsView(BaseModel):
    standings: List[StandingRow]


class PublicGameOut(BaseModel):
    room_code: str
    status: str
    current_round: int
    total_rounds: int
    riddle: RiddleView
    players: List[PlayerOut]


def _player_name(game: Game, player_id: str) -> str:
    player = game.players.get(player_id)
    return player.name if player else "Unknown"


def players_out(game: Game) -> List[PlayerOut]:
    return [
        PlayerOut(id=p.id, name=p.name, score=p.score, has_submitted=p.has_submitted)
        for p in game.players.values()
    ]


def build_riddle_view(game: Game, now: float) -> RiddleView:
    return RiddleView(
        round=game.current_round,
        total_rounds=game.total_rounds,
        riddle=game.current_riddle,
        deadline=game.round_deadline,
        remaining_seconds=remaining_seconds(game.round_deadline, now) if game.status == "riddle" else 0,
    )


def build_game_started_view(game: Game, now: float) -> GameStartedView:
    return GameStartedView(
        room_code=game.room_code,
        players=players_out(game),
        total_rounds=game.total_rounds,
        riddle=build_riddle_view(game, now),
    )


def build_round_result_view(game: Game) -> RoundResultView:
    outcome = game.last_outcome
    view = RoundResultView(round=game.current_round, riddle=game.current_riddle)
    if outcome is None:
        return view

    judgment = outcome.judgment
    view.grand_winner = WinnerView(
        player_id=judgment.grand_winner_id,
        player_name=_player_name(game, judgment.grand_winner_id),
        announcement=outcome.grand_winner_announcement,
    )
    view.troll_winner = WinnerView(
        player_id=judgment.troll_winner_id,
        player_name=_player_name(game, judgment.troll_winner_id),
        announcement=outcome.troll_winner_announcement,
    )
    for entry in judgment.scoreboard:
        player = game.players.get(entry.player_id)
        view.scoreboard.append(
            ScoreboardRow(
                rank=entry.rank,
                player_id=entry.player_id,
                player_name=player.name if player else "Unknown",
                score=player.score if player else 0,
                round_score=entry.score,
            )
        )
    return view


def build_final_standings(game: Game) -> FinalStandingsView:
    return FinalStandingsView(
        standings=[
            StandingRow(rank=idx, player_id=p.id, player_name=p.name, total_score=p.score)
            for idx, p in enumerate(sort_standings(game.players.values()), start=1)
        ]
    )


def build_public_game(game: Game, now: float) -> PublicGameOut:
    return PublicGameOut(
        room_code=game.room_code,
        status=game.status,
        current_round=game.current_round,
        total_rounds=game.total_rounds,
        riddle=build_riddle_view(game, now),
        players=players_out(game),
    )
