"""Data model shared by the signal channels and the ranking engine."""

import hashlib
import math
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

from ..errors import InvalidQueryError

Classification = Literal["entry-point", "core-logic", "helper", "config", "unrelated"]
WorkflowPosition = Literal["entry", "upstream", "downstream"]


class Channel(str, Enum):
    """The four independent signal channels."""

    LEXICAL = "lexical"
    STRUCTURAL = "structural"
    EMBEDDING = "embedding"
    GENERATIVE = "generative"


STOP_WORDS = frozenset(
    {
        "a",
        "an",
        "and",
        "are",
        "as",
        "at",
        "be",
        "by",
        "for",
        "from",
        "how",
        "in",
        "is",
        "it",
        "of",
        "on",
        "or",
        "the",
        "this",
        "to",
        "with",
    }
)

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")
_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]+")


def split_words(text: str) -> list[str]:
    """Split text into lowercase words on non-alphanumerics and camelCase.

    "UserAuthService.ts" -> ["user", "auth", "service", "ts"]
    """
    words = []
    for part in _NON_ALNUM.split(text):
        if not part:
            continue
        words.extend(w.lower() for w in _CAMEL_BOUNDARY.split(part) if w)
    return words


def tokenize(text: str) -> tuple[str, ...]:
    """Normalize free text into query tokens, keeping first-occurrence order."""
    tokens = [w for w in split_words(text) if len(w) >= 2 and w not in STOP_WORDS]
    return tuple(dict.fromkeys(tokens))


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8", errors="surrogatepass")).hexdigest()


@dataclass(frozen=True)
class Symbol:
    """An identifier found by pattern-based extraction."""

    name: str
    kind: Literal["class", "function", "export", "import", "imported_name"]
    line: int
    column: int = 0
    source: str | None = None  # module an imported name comes from


@dataclass
class CandidateFile:
    """A (path, content) pair considered during a single search."""

    path: str
    content: str
    content_hash: str = field(init=False)
    symbols: tuple[Symbol, ...] | None = field(default=None, compare=False, repr=False)

    def __post_init__(self):
        self.content_hash = content_hash(self.content)

    @property
    def name(self) -> str:
        return self.path.rsplit("/", 1)[-1]

    @classmethod
    def coerce(cls, item: "CandidateFile | Mapping[str, Any] | tuple[str, str]") -> "CandidateFile":
        if isinstance(item, CandidateFile):
            return cls(item.path, item.content)
        if isinstance(item, Mapping):
            return cls(str(item["path"]), str(item.get("content") or ""))
        path, content = item
        return cls(str(path), str(content or ""))


def coerce_candidates(items: Iterable[Any]) -> list[CandidateFile]:
    """Build fresh CandidateFiles, keeping the last occurrence of a duplicate path."""
    by_path: dict[str, CandidateFile] = {}
    for item in items:
        file = CandidateFile.coerce(item)
        by_path[file.path] = file
    return list(by_path.values())


@dataclass(frozen=True)
class Query:
    """A validated search query."""

    text: str
    tokens: tuple[str, ...]
    entry_point_file: str | None = None

    @classmethod
    def parse(
        cls, text: str, entry_point_file: str | None = None, min_length: int = 2
    ) -> "Query":
        stripped = (text or "").strip()
        if len(stripped) < min_length:
            raise InvalidQueryError(
                f"Query must be at least {min_length} characters, got {stripped!r}"
            )
        tokens = tokenize(stripped)
        if not tokens:
            raise InvalidQueryError(f"Query has no searchable terms: {stripped!r}")
        return cls(text=stripped, tokens=tokens, entry_point_file=entry_point_file)


@dataclass(frozen=True)
class SignalScore:
    """One channel's output for one candidate file."""

    value: float = 0.0
    available: bool = True
    matches: tuple[str, ...] = ()
    reason: str | None = None  # why the channel was unavailable

    def __post_init__(self):
        # clamp into [0, 1]; unavailable channels carry no value
        if self.available and not math.isfinite(float(self.value)):
            object.__setattr__(self, "available", False)
            object.__setattr__(self, "reason", f"non-finite score {self.value}")
        value = min(max(float(self.value), 0.0), 1.0) if self.available else 0.0
        object.__setattr__(self, "value", value)
        object.__setattr__(self, "matches", tuple(self.matches))

    @classmethod
    def unavailable(cls, reason: str) -> "SignalScore":
        return cls(value=0.0, available=False, reason=reason)


@dataclass(frozen=True)
class ScoreVector:
    """Per-file aggregate of the four channels and the fused result."""

    lexical: SignalScore
    structural: SignalScore
    embedding: SignalScore
    generative: SignalScore
    final_score: float
    has_synergy: bool = False
    classification: Classification | None = None
    workflow_position: WorkflowPosition | None = None
    weights: Mapping[str, float] = field(default_factory=dict)

    @property
    def score_percentage(self) -> int:
        return round(self.final_score * 100)

    def channel(self, channel: Channel | str) -> SignalScore:
        return getattr(self, Channel(channel).value)

    @property
    def signals(self) -> dict[str, SignalScore]:
        return {c.value: self.channel(c) for c in Channel}

    @property
    def matches(self) -> list[str]:
        """Evidence from all channels, deduplicated in channel order."""
        seen: dict[str, None] = {}
        for signal in self.signals.values():
            for match in signal.matches:
                seen.setdefault(match, None)
        return list(seen)


@dataclass(frozen=True)
class RankedFile:
    """A file with its scores, as returned by a search."""

    file: str
    score: ScoreVector

    @property
    def final_score(self) -> float:
        return self.score.final_score

    def to_dict(self) -> dict[str, Any]:
        score = self.score
        return {
            "file": self.file,
            "finalScore": score.final_score,
            "scorePercentage": score.score_percentage,
            "subscores": {
                name: (signal.value if signal.available else None)
                for name, signal in score.signals.items()
            },
            "hasSynergy": score.has_synergy,
            "classification": score.classification,
            "workflowPosition": score.workflow_position,
            "matches": score.matches,
        }
