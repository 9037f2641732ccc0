from __future__ import annotations

import asyncio
from unittest import IsolatedAsyncioTestCase

from .judge import JudgingOrchestrator
from .models import Analysis, AnalysisFlags, AnalysisScores, Judgment, ScoreboardEntry, Submission
from .stages import JudgmentContractError, StageError, StageOutputError, StageTimeout


def _analysis(tag: str, match: int = 5) -> Analysis:
    return Analysis(
        description=f"photo {tag}",
        reasoning="fits",
        scores=AnalysisScores(match=match, creativity=5, aesthetic=5),
        flags=AnalysisFlags(is_suspicious=False, is_uncertain=False),
        vibe_tag=tag,
    )


def _submission(player_id: str) -> Submission:
    return Submission(player_id=player_id, photo_ref=f"{player_id}.jpg", image=player_id.encode())


class _ScriptedStages:
    def __init__(
        self,
        judgment: Judgment,
        *,
        analysis_delays=None,
        fail_analysis_for=None,
        fail_narration=False,
        narration_delay=0,
    ):
        self.judgment = judgment
        self.analysis_delays = analysis_delays or {}
        self.fail_analysis_for = fail_analysis_for
        self.fail_narration = fail_narration
        self.narration_delay = narration_delay
        self.analyzed: list[bytes] = []
        self.judge_entries = None
        self.narrations: list[tuple] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.narrating = 0
        self.max_narrating = 0

    async def analyze(self, riddle, image, mime_type):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.analysis_delays.get(image, 0))
            if image == self.fail_analysis_for:
                raise StageOutputError("bad analysis")
            self.analyzed.append(image)
            return _analysis(image.decode())
        finally:
            self.in_flight -= 1

    async def judge(self, riddle, entries):
        self.judge_entries = entries
        return self.judgment

    async def narrate(self, riddle, winner_id, rationale, image=None, mime_type="image/jpeg"):
        self.narrating += 1
        self.max_narrating = max(self.max_narrating, self.narrating)
        try:
            await asyncio.sleep(self.narration_delay)
            if self.fail_narration:
                raise RuntimeError("provider down")
            self.narrations.append((winner_id, rationale, image))
            return f"{winner_id} wins!"
        finally:
            self.narrating -= 1


def _judgment(grand="p1", troll="p2", scoreboard=None) -> Judgment:
    if scoreboard is None:
        scoreboard = [
            ScoreboardEntry(rank=1, player_id="p1", score=20),
            ScoreboardEntry(rank=2, player_id="p2", score=12),
        ]
    return Judgment(
        grand_winner_id=grand,
        grand_winner_rationale="best match",
        troll_winner_id=troll,
        troll_winner_rationale="weirdest",
        scoreboard=scoreboard,
    )


class JudgeRoundTests(IsolatedAsyncioTestCase):
    async def test_full_pipeline_produces_outcome(self):
        stages = _ScriptedStages(_judgment())
        orchestrator = JudgingOrchestrator(stages)

        outcome = await orchestrator.judge_round("riddle", [_submission("p1"), _submission("p2")])

        self.assertEqual(outcome.riddle, "riddle")
        self.assertEqual([s.submission.player_id for s in outcome.submissions], ["p1", "p2"])
        self.assertEqual(outcome.grand_winner_announcement, "p1 wins!")
        self.assertEqual(outcome.troll_winner_announcement, "p2 wins!")
        self.assertEqual(sorted(n[0] for n in stages.narrations), ["p1", "p2"])
        self.assertIn(("p1", "best match", b"p1"), stages.narrations)

    async def test_analysis_runs_concurrently_and_keeps_submission_order(self):
        stages = _ScriptedStages(_judgment(), analysis_delays={b"p1": 0.05, b"p2": 0})
        orchestrator = JudgingOrchestrator(stages)

        outcome = await orchestrator.judge_round("riddle", [_submission("p1"), _submission("p2")])

        self.assertEqual(stages.max_in_flight, 2)
        self.assertEqual(stages.analyzed, [b"p2", b"p1"])
        self.assertEqual(outcome.submissions[0].analysis.vibe_tag, "p1")

    async def test_judgment_sees_only_analysis_summaries(self):
        stages = _ScriptedStages(_judgment())
        await JudgingOrchestrator(stages).judge_round("riddle", [_submission("p1"), _submission("p2")])

        entry = stages.judge_entries[0].model_dump()
        self.assertEqual(set(entry), {"player_id", "description", "scores", "flags", "vibe_tag"})

    async def test_any_analysis_failure_fails_the_round(self):
        stages = _ScriptedStages(_judgment(), fail_analysis_for=b"p2")

        with self.assertRaises(StageOutputError):
            await JudgingOrchestrator(stages).judge_round("riddle", [_submission("p1"), _submission("p2")])
        self.assertIsNone(stages.judge_entries)

    async def test_analysis_failure_cancels_the_other_analyses(self):
        stages = _ScriptedStages(_judgment(), analysis_delays={b"p1": 0.2}, fail_analysis_for=b"p2")

        with self.assertRaises(StageOutputError):
            await JudgingOrchestrator(stages).judge_round("riddle", [_submission("p1"), _submission("p2")])

        self.assertEqual(stages.in_flight, 0)
        await asyncio.sleep(0.3)
        self.assertEqual(stages.analyzed, [])

    async def test_both_narrations_run_concurrently(self):
        stages = _ScriptedStages(_judgment(), narration_delay=0.05)

        outcome = await JudgingOrchestrator(stages).judge_round("riddle", [_submission("p1"), _submission("p2")])

        self.assertEqual(stages.max_narrating, 2)
        self.assertEqual(outcome.grand_winner_announcement, "p1 wins!")
        self.assertEqual(outcome.troll_winner_announcement, "p2 wins!")

    async def test_unknown_winner_is_a_contract_violation(self):
        stages = _ScriptedStages(_judgment(troll="ghost"))

        with self.assertRaises(JudgmentContractError):
            await JudgingOrchestrator(stages).judge_round("riddle", [_submission("p1"), _submission("p2")])
        self.assertEqual(stages.narrations, [])

    async def test_narration_failure_is_wrapped_as_stage_error(self):
        stages = _ScriptedStages(_judgment(), fail_narration=True)

        with self.assertRaises(StageError):
            await JudgingOrchestrator(stages).judge_round("riddle", [_submission("p1"), _submission("p2")])

    async def test_slow_stage_times_out(self):
        stages = _ScriptedStages(_judgment(), analysis_delays={b"p1": 1})

        with self.assertRaises(StageTimeout):
            await JudgingOrchestrator(stages, stage_timeout=0.01).judge_round("riddle", [_submission("p1")])

    async def test_scoreboard_is_restricted_to_submitters_and_ranked_by_score(self):
        scoreboard = [
            ScoreboardEntry(rank=1, player_id="p2", score=10),
            ScoreboardEntry(rank=2, player_id="ghost", score=99),
            ScoreboardEntry(rank=3, player_id="p1", score=15),
            ScoreboardEntry(rank=4, player_id="p3", score=10),
            ScoreboardEntry(rank=5, player_id="p1", score=1),
        ]
        stages = _ScriptedStages(_judgment(scoreboard=scoreboard))
        subs = [_submission("p1"), _submission("p2"), _submission("p3")]

        outcome = await JudgingOrchestrator(stages).judge_round("riddle", subs)

        rows = [(e.rank, e.player_id, e.score) for e in outcome.judgment.scoreboard]
        self.assertEqual(rows, [(1, "p1", 15), (2, "p2", 10), (3, "p3", 10)])

    async def test_single_submission_can_win_both_titles(self):
        judgment = _judgment(grand="p1", troll="p1", scoreboard=[ScoreboardEntry(rank=1, player_id="p1", score=8)])
        stages = _ScriptedStages(judgment)

        outcome = await JudgingOrchestrator(stages).judge_round("riddle", [_submission("p1")])

        self.assertEqual(outcome.judgment.grand_winner_id, outcome.judgment.troll_winner_id)
        self.assertEqual(len(stages.narrations), 2)

    async def test_empty_submission_list_is_rejected(self):
        with self.assertRaises(ValueError):
            await JudgingOrchestrator(_ScriptedStages(_judgment())).judge_round("riddle", [])
