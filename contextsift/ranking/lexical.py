"""Lexical matching of query tokens against file paths, names and content.

Fast, deterministic and without external state. This channel is the fallback
of last resort and never reports itself unavailable.
"""

import logging
from collections.abc import Sequence

from .types import CandidateFile, Query, SignalScore, split_words

logger = logging.getLogger(__name__)


def fuzzy_ratio(token: str, candidate: str) -> float:
    """Score how well `token` appears in order inside `candidate` (0.0-1.0).

    Every character of the token must appear in order; the score is the token
    length divided by the span of the match, so contiguous matches score 1.0
    and scattered ones less.

        fuzzy_ratio("usrctl", "userscontrol") -> 0.5
        fuzzy_ratio("auth", "theme") -> 0.0
    """
    if not token or len(token) > len(candidate):
        return 0.0
    first = -1
    pos = 0
    for char in token:
        pos = candidate.find(char, pos)
        if pos < 0:
            return 0.0
        if first < 0:
            first = pos
        pos += 1
    span = pos - first
    return len(token) / span


class LexicalMatcher:
    """Match query tokens against path segments, the file name and a content snippet.

    Sub-measures, each normalized by the number of query tokens:
    - substring: token contained in the path, or a path segment is a prefix of it
    - fuzzy: best in-order character match of the token against path segments
    - overlap: token equals a path segment
    - content: token found in the first `snippet_chars` characters of the content
    """

    SUBSTRING_WEIGHT = 0.40
    FUZZY_WEIGHT = 0.20
    OVERLAP_WEIGHT = 0.25
    CONTENT_WEIGHT = 0.15

    def __init__(self, snippet_chars: int = 2000):
        self.snippet_chars = snippet_chars

    def score(self, query: Query, file: CandidateFile) -> SignalScore:
        tokens = query.tokens
        if not tokens:
            return SignalScore(0.0)

        path_lower = file.path.lower()
        segments = split_words(file.path)
        segment_set = set(segments)
        stem = file.name.rsplit(".", 1)[0].lower()
        # "user_auth-service" -> "userauthservice", for abbreviations spanning words
        compact_stem = "".join(split_words(stem))
        fuzzy_candidates = [*segments, compact_stem] if compact_stem else segments
        snippet = file.content[: self.snippet_chars].lower()

        substring_hits = 0
        overlap_hits = 0
        content_hits = 0
        fuzzy_total = 0.0
        matches: list[str] = []

        for token in tokens:
            if token in path_lower:
                substring_hits += 1
                matches.append(f"path:{token}")
            else:
                prefix = next(
                    (s for s in segments if len(s) >= 3 and token.startswith(s)),
                    None,
                )
                if prefix:
                    substring_hits += 1
                    matches.append(f"path:{prefix}~{token}")

            if token in segment_set:
                overlap_hits += 1

            best = max((fuzzy_ratio(token, c) for c in fuzzy_candidates), default=0.0)
            fuzzy_total += best
            if 0.0 < best < 1.0:
                matches.append(f"fuzzy:{token}={best:.2f}")

            if token in snippet:
                content_hits += 1
                matches.append(f"content:{token}")

        n = len(tokens)
        value = (
            self.SUBSTRING_WEIGHT * substring_hits / n
            + self.FUZZY_WEIGHT * fuzzy_total / n
            + self.OVERLAP_WEIGHT * overlap_hits / n
            + self.CONTENT_WEIGHT * content_hits / n
        )
        return SignalScore(value=value, matches=tuple(matches))

    def rank(
        self, query: Query, files: Sequence[CandidateFile]
    ) -> list[tuple[CandidateFile, SignalScore]]:
        """Rank files by lexical score alone; ties go to the lower path."""
        scored = [(f, self.score(query, f)) for f in files]
        scored = [(f, s) for f, s in scored if s.value > 0]
        scored.sort(key=lambda fs: (-fs[1].value, fs[0].path))
        logger.debug(f"LexicalMatcher: {len(scored)}/{len(files)} files matched")
        return scored
