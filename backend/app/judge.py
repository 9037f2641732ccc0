from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Dict, Iterable, List, Optional, TypeVar

from .models import (
    AnalyzedSubmission,
    JudgeEntry,
    Judgment,
    RoundOutcome,
    ScoreboardEntry,
    Submission,
)
from .stages import JudgingStages, JudgmentContractError, StageError, StageTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


class JudgingOrchestrator:
    """Runs analysis -> judgment -> narration for one round's submissions.

    Stages run strictly one after another; the calls inside the analysis and
    narration stages run concurrently, and one failing call cancels its
    siblings. There is no retry here: any stage failure aborts the whole round
    with a ``StageError``.
    """

    def __init__(self, stages: JudgingStages, stage_timeout: Optional[float] = None):
        self.stages = stages
        self.stage_timeout = stage_timeout

    async def _call(self, stage: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.stage_timeout)
        except asyncio.TimeoutError as exc:
            raise StageTimeout(f"{stage} stage timed out after {self.stage_timeout}s") from exc
        except StageError:
            raise
        except Exception as exc:
            raise StageError(f"{stage} stage failed: {exc}") from exc

    async def _fan_out(self, stage: str, awaitables: Iterable[Awaitable[T]]) -> List[T]:
        """Run calls concurrently; the first failure cancels the others before it propagates."""
        tasks = [asyncio.ensure_future(self._call(stage, aw)) for aw in awaitables]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def judge_round(self, riddle: str, submissions: List[Submission]) -> RoundOutcome:
        if not submissions:
            raise ValueError("judge_round needs at least one submission")

        analyses = await self._fan_out(
            "analysis",
            (self.stages.analyze(riddle, sub.image, sub.mime_type) for sub in submissions),
        )
        analyzed = [
            AnalyzedSubmission(submission=sub, analysis=analysis)
            for sub, analysis in zip(submissions, analyses)
        ]

        entries = [JudgeEntry.from_analysis(a.submission.player_id, a.analysis) for a in analyzed]
        judgment = await self._call("judgment", self.stages.judge(riddle, entries))

        by_player: Dict[str, Submission] = {sub.player_id: sub for sub in submissions}
        grand = by_player.get(judgment.grand_winner_id)
        troll = by_player.get(judgment.troll_winner_id)
        if grand is None or troll is None:
            raise JudgmentContractError(
                f"judgment named unknown winner(s): grand={judgment.grand_winner_id!r} "
                f"troll={judgment.troll_winner_id!r}"
            )

        judgment = judgment.model_copy(update={"scoreboard": normalise_scoreboard(judgment, by_player)})

        grand_line, troll_line = await self._fan_out(
            "narration",
            [
                self.stages.narrate(
                    riddle, grand.player_id, judgment.grand_winner_rationale, grand.image, grand.mime_type
                ),
                self.stages.narrate(
                    riddle, troll.player_id, judgment.troll_winner_rationale, troll.image, troll.mime_type
                ),
            ],
        )

        return RoundOutcome(
            riddle=riddle,
            submissions=analyzed,
            judgment=judgment,
            grand_winner_announcement=grand_line,
            troll_winner_announcement=troll_line,
        )


def normalise_scoreboard(judgment: Judgment, submitted: Dict[str, Submission]) -> List[ScoreboardEntry]:
    """Restrict the scoreboard to this round's submitters and rank by score.

    The stage's own ordering decides between equal scores.
    """
    seen = set()
    kept: List[ScoreboardEntry] = []
    for entry in sorted(judgment.scoreboard, key=lambda e: e.rank):
        if entry.player_id not in submitted:
            logger.warning("Dropping scoreboard entry for non-submitter %s", entry.player_id)
            continue
        if entry.player_id in seen:
            logger.warning("Dropping duplicate scoreboard entry for %s", entry.player_id)
            continue
        seen.add(entry.player_id)
        kept.append(entry)

    kept.sort(key=lambda e: -e.score)
    return [entry.model_copy(update={"rank": idx}) for idx, entry in enumerate(kept, start=1)]
