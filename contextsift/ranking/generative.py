"""Relevance judgments from a small instruction-tuned text generation model."""

import logging
import re
from typing import Any

from ..bus import EventBus
from ..errors import MalformedModelOutputError
from .runtime import Loader, ModelService
from .types import CandidateFile, Query, SignalScore

logger = logging.getLogger(__name__)

AFFIRMATIVE_SCORE = 0.9
NEGATIVE_SCORE = 0.1
NEUTRAL_SCORE = 0.5

_AFFIRMATIVE = frozenset({"yes", "relevant", "definitely", "related", "true", "correct"})
_NEGATIVE = frozenset({"no", "not", "irrelevant", "unrelated", "false", "none", "nope"})
_HEDGED = frozenset(
    {"maybe", "possibly", "partially", "somewhat", "might", "perhaps", "unclear", "unsure"}
)
_NEGATIVE_PHRASES = ("not relevant", "not related", "irrelevant", "unrelated")


def _load_text2text_pipeline(model_id: str, device: str | None) -> Any:
    from transformers import pipeline

    return pipeline("text2text-generation", model=model_id, device=device)


def _extract_text(output: Any) -> str:
    """Pull the generated text out of a pipeline result.

    Accepts `[{"generated_text": ...}]`, a single dict, or a plain string.
    """
    if isinstance(output, list):
        if not output:
            raise MalformedModelOutputError("Empty generation result")
        output = output[0]
    if isinstance(output, dict):
        output = output.get("generated_text")
    if not isinstance(output, str):
        raise MalformedModelOutputError(f"Unexpected generation result: {output!r}")
    return output


def _interpret(text: str) -> tuple[float, tuple[str, ...]]:
    words = re.findall(r"[a-z]+", text.lower())
    if not words:
        raise MalformedModelOutputError(f"No verdict in {text!r}")
    evidence = text.strip()[:120]
    lowered = text.lower()

    first = words[0]
    if first in _NEGATIVE:
        return NEGATIVE_SCORE, ()
    if first in _AFFIRMATIVE:
        return AFFIRMATIVE_SCORE, (f"Model judged relevant: {evidence}",)
    if first in _HEDGED:
        return NEUTRAL_SCORE, (f"Model judged possibly relevant: {evidence}",)

    if any(phrase in lowered for phrase in _NEGATIVE_PHRASES):
        return NEGATIVE_SCORE, ()
    if _HEDGED.intersection(words):
        return NEUTRAL_SCORE, (f"Model judged possibly relevant: {evidence}",)
    if _AFFIRMATIVE.intersection(words):
        return AFFIRMATIVE_SCORE, (f"Model judged relevant: {evidence}",)
    raise MalformedModelOutputError(f"No verdict in {text!r}")


def parse_verdict(text: str | None) -> tuple[float, tuple[str, ...]]:
    """Map free-form model output to a score and evidence.

    Affirmative answers score 0.9, negative ones 0.1, hedged ones 0.5 with the
    answer as evidence. Anything else is neutral (0.5, no evidence); this never
    raises.
    """
    try:
        if not isinstance(text, str):
            raise MalformedModelOutputError(f"Expected text, got {type(text).__name__}")
        return _interpret(text)
    except MalformedModelOutputError as e:
        logger.debug(f"MalformedModelOutput: {e}")
        return NEUTRAL_SCORE, ()


class GenerativeScorer(ModelService):
    """Ask a text2text model whether a file is relevant to a query."""

    kind = "generative"

    PROMPT_TEMPLATE = """Question: Is this file relevant to "{query}"?
Answer yes, no, or maybe, then give a short reason.

File: {path}
```
{excerpt}
```"""

    def __init__(
        self,
        model_id: str = "google/flan-t5-small",
        device: str = "auto",
        excerpt_chars: int = 500,
        loader: Loader | None = None,
        bus: EventBus | None = None,
    ):
        super().__init__(model_id, device, loader=loader, bus=bus)
        self.excerpt_chars = excerpt_chars

    default_loader = staticmethod(_load_text2text_pipeline)

    def build_prompt(self, query: str, path: str, content: str) -> str:
        excerpt = content[: self.excerpt_chars]
        if len(content) > self.excerpt_chars:
            excerpt += "\n..."
        return self.PROMPT_TEMPLATE.format(query=query, path=path, excerpt=excerpt)

    @staticmethod
    def _generate(model: Any, prompt: str) -> Any:
        return model(prompt)

    async def judge(self, prompt: str) -> str:
        """Return the model's raw answer, or "" if the output had no text."""
        output = await self._invoke(self._generate, prompt)
        try:
            return _extract_text(output)
        except MalformedModelOutputError as e:
            logger.debug(f"MalformedModelOutput: {e}")
            return ""

    async def score(self, query: Query, file: CandidateFile) -> SignalScore:
        answer = await self.judge(self.build_prompt(query.text, file.path, file.content))
        value, matches = parse_verdict(answer)
        return SignalScore(value=value, matches=matches)
