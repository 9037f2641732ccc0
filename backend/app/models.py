from typing import Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field

Score = int


# States: riddle -> judging -> results -> riddle ... -> finished
GameStatus = Literal["riddle", "judging", "results", "finished"]


class PlayerGameState(BaseModel):
    id: str
    name: str
    score: Score = 0
    has_submitted: bool = False
    photo_path: Optional[str] = None


class Submission(BaseModel):
    model_config = ConfigDict(frozen=True)

    player_id: str
    photo_ref: str
    image: bytes = Field(repr=False)
    mime_type: str = "image/jpeg"


class AnalysisScores(BaseModel):
    model_config = ConfigDict(frozen=True)

    match: int = Field(ge=0, le=10)
    creativity: int = Field(ge=0, le=10)
    aesthetic: int = Field(ge=0, le=10)


class AnalysisFlags(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_suspicious: bool
    is_uncertain: bool


class Analysis(BaseModel):
    model_config = ConfigDict(frozen=True)

    description: str
    reasoning: str
    scores: AnalysisScores
    flags: AnalysisFlags
    vibe_tag: str


class ScoreboardEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    rank: int
    player_id: str
    score: Score = Field(ge=0)


class Judgment(BaseModel):
    model_config = ConfigDict(frozen=True)

    grand_winner_id: str
    grand_winner_rationale: str
    troll_winner_id: str
    troll_winner_rationale: str
    scoreboard: List[ScoreboardEntry]


class AnalyzedSubmission(BaseModel):
    model_config = ConfigDict(frozen=True)

    submission: Submission
    analysis: Analysis


class RoundOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    riddle: str
    submissions: List[AnalyzedSubmission]
    judgment: Judgment
    grand_winner_announcement: str
    troll_winner_announcement: str


class Game(BaseModel):
    room_code: str
    players: Dict[str, PlayerGameState] = Field(default_factory=dict)
    current_round: int = 1
    total_rounds: int
    current_riddle: str
    round_deadline: Optional[float] = None  # epoch seconds
    status: GameStatus = "riddle"
    last_outcome: Optional[RoundOutcome] = None

    def all_submitted(self) -> bool:
        return all(p.has_submitted for p in self.players.values())


class JudgeEntry(BaseModel):
    """What the judgment stage sees of one submission: the analysis summary, never the photo."""

    model_config = ConfigDict(frozen=True)

    player_id: str
    description: str
    scores: AnalysisScores
    flags: AnalysisFlags
    vibe_tag: str

    @classmethod
    def from_analysis(cls, player_id: str, analysis: Analysis) -> "JudgeEntry":
        return cls(
            player_id=player_id,
            description=analysis.description,
            scores=analysis.scores,
            flags=analysis.flags,
            vibe_tag=analysis.vibe_tag,
        )


class Narration(BaseModel):
    one_liner: str
