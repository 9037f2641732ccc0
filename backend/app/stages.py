"""
Judging stages backed by Gemini.

Three calls make up a round's judging:
  analyze  - one photo against the riddle -> Analysis
  judge    - every analysis summary for the round -> Judgment
  narrate  - one distinguished winner -> short announcement line

Each call is a single request with structured JSON output validated against
the pydantic models in ``models``. Failures surface as ``StageError``.
"""
from __future__ import annotations

import json
import logging
from typing import List, Optional, Protocol, Type, TypeVar

from pydantic import BaseModel, ValidationError

from .db import Settings
from .models import Analysis, JudgeEntry, Judgment, Narration

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class StageError(Exception):
    """A judging stage could not produce a usable result."""


class StageTimeout(StageError):
    pass


class StageOutputError(StageError):
    """The stage answered, but not in the agreed shape."""


class JudgmentContractError(StageError):
    """The judgment named a winner who did not submit this round."""


class JudgingStages(Protocol):
    async def analyze(self, riddle: str, image: bytes, mime_type: str) -> Analysis: ...

    async def judge(self, riddle: str, entries: List[JudgeEntry]) -> Judgment: ...

    async def narrate(
        self,
        riddle: str,
        winner_id: str,
        rationale: str,
        image: Optional[bytes] = None,
        mime_type: str = "image/jpeg",
    ) -> str: ...


_ANALYSIS_INSTRUCTION = """\
You inspect photo submissions for a real-world scavenger hunt.
Describe what is literally in the photo, explain how it answers the riddle,
and score it 0-10 for riddle match, creativity (literal answers score low,
lateral or funny ones high) and aesthetic (framing, drama, composition).
Set is_suspicious when the photo looks like a screenshot, a stock image or a
photo of a screen. Set is_uncertain when you are not confident.
vibe_tag is a two-word label for the photo's mood.
"""

_JUDGMENT_INSTRUCTION = """\
You are the judge of a photo scavenger hunt round. You receive the riddle and
an analysis summary per player. Pick a grand winner (best combined score,
suspicious entries are disqualified) and a troll winner (the most creative
entry that still technically fits; if that is the grand winner, take the
runner-up). Ties: higher creativity, then the funnier vibe tag.
Return a scoreboard covering every player with an integer round score and a
rank, rank 1 being the highest score. Only use the player ids you were given.
"""

_NARRATION_INSTRUCTION = """\
You announce round winners on the scoreboard of a photo scavenger hunt.
Write one punchy, celebratory line of at most 15 words. No hashtags.
"""


def parse_stage_output(model: Type[M], text: Optional[str], stage: str) -> M:
    if not text or not text.strip():
        raise StageOutputError(f"{stage} stage returned an empty response")

    text = text.strip()
    # Strip any accidental markdown fences
    if text.startswith("```"):
        text = text.split("```")[1]
        if text.startswith("json"):
            text = text[len("json"):]
        text = text.strip()

    try:
        return model.model_validate_json(text)
    except ValidationError as exc:
        raise StageOutputError(f"{stage} stage returned malformed output: {exc}") from exc


class GeminiStages:
    def __init__(self, settings: Settings, client=None):
        self.settings = settings
        self._client = client

    def _get_client(self):
        if self._client is None:
            if not self.settings.GEMINI_API_KEY:
                raise StageError("GEMINI_API_KEY is not configured")
            from google import genai

            self._client = genai.Client(api_key=self.settings.GEMINI_API_KEY)
        return self._client

    async def _generate(self, stage: str, model: str, instruction: str, parts: list, schema: Type[M]) -> M:
        from google.genai import types as gtypes

        client = self._get_client()
        try:
            response = await client.aio.models.generate_content(
                model=model,
                contents=[gtypes.Content(role="user", parts=parts)],
                config=gtypes.GenerateContentConfig(
                    system_instruction=instruction,
                    response_mime_type="application/json",
                    response_schema=schema,
                ),
            )
        except Exception as exc:
            raise StageError(f"{stage} stage call failed: {exc}") from exc

        return parse_stage_output(schema, response.text, stage)

    async def analyze(self, riddle: str, image: bytes, mime_type: str) -> Analysis:
        from google.genai import types as gtypes

        parts = [
            gtypes.Part(text=f'RIDDLE: "{riddle}"\n\nAnalyze the following photo submission:'),
            gtypes.Part(inline_data=gtypes.Blob(mime_type=mime_type, data=image)),
        ]
        return await self._generate("analysis", self.settings.ANALYSIS_MODEL, _ANALYSIS_INSTRUCTION, parts, Analysis)

    async def judge(self, riddle: str, entries: List[JudgeEntry]) -> Judgment:
        from google.genai import types as gtypes

        summary = json.dumps([entry.model_dump() for entry in entries], indent=2)
        parts = [gtypes.Part(text=f'RIDDLE: "{riddle}"\n\nPLAYER SUBMISSIONS:\n{summary}')]
        return await self._generate("judgment", self.settings.JUDGMENT_MODEL, _JUDGMENT_INSTRUCTION, parts, Judgment)

    async def narrate(
        self,
        riddle: str,
        winner_id: str,
        rationale: str,
        image: Optional[bytes] = None,
        mime_type: str = "image/jpeg",
    ) -> str:
        from google.genai import types as gtypes

        parts = [
            gtypes.Part(
                text=(
                    f'RIDDLE: "{riddle}"\nWINNER: Player {winner_id}\nCONTEXT: {rationale}\n\n'
                    "Write the one-liner for this winner."
                )
            )
        ]
        if image:
            parts.append(gtypes.Part(inline_data=gtypes.Blob(mime_type=mime_type, data=image)))
        narration = await self._generate(
            "narration", self.settings.NARRATION_MODEL, _NARRATION_INSTRUCTION, parts, Narration
        )
        return narration.one_liner.strip()
