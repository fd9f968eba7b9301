"""The ranking engine: runs the signal channels over candidates and fuses them."""

import asyncio
import logging
import time
from collections.abc import Awaitable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any

import numpy as np

from ..bus import EventBus
from ..config import RankingConfig
from ..errors import ContextSiftError, TotalChannelFailureError
from .cache import EmbeddingCache, ResultsStore, SavedSearch
from .embedding import EmbeddingProvider, cosine_similarity
from .fusion import fuse
from .generative import GenerativeScorer
from .lexical import LexicalMatcher
from .symbols import SymbolExtractor, WorkflowLink
from .types import (
    CandidateFile,
    Channel,
    Query,
    RankedFile,
    SignalScore,
    coerce_candidates,
)

logger = logging.getLogger(__name__)


@dataclass
class SearchToken:
    """Cancellation flag of one search."""

    cancelled: bool = False

    def cancel(self) -> None:
        self.cancelled = True


def _sort_key(ranked: RankedFile) -> tuple[float, str]:
    return -ranked.final_score, ranked.file


class RankingEngine:
    """Rank candidate files for a query.

    Lexical and structural scoring run synchronously for every file; embedding
    and generative calls run in batches of `batch_size` with per-call timeouts.
    A channel that fails for a file is marked unavailable for that file and its
    weight is redistributed. Starting a new search cancels the previous one.
    """

    def __init__(
        self,
        config: RankingConfig | None = None,
        *,
        lexical: LexicalMatcher | None = None,
        structural: SymbolExtractor | None = None,
        embedding: EmbeddingProvider | None = None,
        generative: GenerativeScorer | None = None,
        cache: EmbeddingCache | None = None,
        results: ResultsStore | None = None,
        bus: EventBus | None = None,
        project_name: str = "default",
    ):
        self.config = config or RankingConfig()
        self.lexical = lexical or LexicalMatcher()
        self.structural = structural or SymbolExtractor(
            workflow_bonus=self.config.workflow_bonus,
            saturation=self.config.structural_saturation,
        )
        self.embedding = embedding
        self.generative = generative
        self.cache = cache
        self.results = results
        self.bus = bus or EventBus()
        self.project_name = project_name
        self._token: SearchToken | None = None

    def cancel(self) -> None:
        """Cancel the search in progress, if any."""
        if self._token is not None:
            self._token.cancel()

    def _unavailable(
        self, channel: Channel, path: str | None, error: BaseException | str
    ) -> SignalScore:
        reason = error if isinstance(error, str) else (str(error) or type(error).__name__)
        logger.debug(f"{channel.value} unavailable for {path or 'query'}: {reason}")
        self.bus.emit("channel.unavailable", channel=channel.value, file=path, reason=reason)
        return SignalScore.unavailable(reason)

    # --- channels ---

    def _lexical(self, query: Query, file: CandidateFile) -> SignalScore:
        try:
            return self.lexical.score(query, file)
        except Exception as e:
            logger.warning(f"Lexical matching failed for {file.path}: {e}")
            return self._unavailable(Channel.LEXICAL, file.path, e)

    def _structural(
        self, query: Query, file: CandidateFile, workflow: dict[str, WorkflowLink]
    ) -> SignalScore:
        try:
            return self.structural.score(query, file, workflow)
        except Exception as e:
            logger.warning(f"Symbol extraction failed for {file.path}: {e}")
            return self._unavailable(Channel.STRUCTURAL, file.path, e)

    def _workflow(self, query: Query, files: Sequence[CandidateFile]) -> dict[str, WorkflowLink]:
        try:
            return self.structural.workflow_positions(query.entry_point_file, files)
        except Exception as e:
            logger.warning(f"Failed to resolve workflow of {query.entry_point_file}: {e}")
            return {}

    async def _with_timeout(self, call: Awaitable[Any], timeout: float) -> Any:
        return await asyncio.wait_for(call, timeout=timeout)

    async def _embed_query(self, query: Query) -> np.ndarray | str:
        """Query vector, or the reason the embedding channel is unavailable."""
        if self.embedding is None:
            return "embedding disabled"
        try:
            return await self._with_timeout(
                self.embedding.embed(query.text), self.config.embedding_timeout
            )
        except Exception as e:
            self._unavailable(Channel.EMBEDDING, None, e)
            return str(e) or type(e).__name__

    async def _embedding_signal(
        self, query_vector: np.ndarray | str, file: CandidateFile
    ) -> SignalScore:
        if isinstance(query_vector, str):
            return SignalScore.unavailable(query_vector)
        if self.embedding is None:
            return SignalScore.unavailable("embedding disabled")
        try:
            key = EmbeddingCache.generate_key(
                self.project_name, self.embedding.model_id, file.content_hash
            )
            vector = await self.cache.get(key) if self.cache else None
            cached = vector is not None
            if vector is None:
                vector = await self._with_timeout(
                    self.embedding.embed_document(file.path, file.content),
                    self.config.embedding_timeout,
                )
            similarity = cosine_similarity(query_vector, vector)
            if self.cache and not cached:
                await self.cache.put(key, vector)
        except Exception as e:
            return self._unavailable(Channel.EMBEDDING, file.path, e)
        matches = (f"Semantic similarity {similarity:.2f}",) if similarity >= 0.5 else ()
        return SignalScore(similarity, matches=matches)

    async def _generative_signal(
        self, query: Query, file: CandidateFile, judged: set[str], started: float
    ) -> SignalScore:
        if self.generative is None:
            return SignalScore.unavailable("generative disabled")
        if file.path not in judged:
            return SignalScore.unavailable("not among the top candidates")
        if time.monotonic() - started >= self.config.generative_budget:
            return SignalScore.unavailable("generative time budget exhausted")
        try:
            return await self._with_timeout(
                self.generative.score(query, file), self.config.generative_timeout
            )
        except Exception as e:
            return self._unavailable(Channel.GENERATIVE, file.path, e)

    def _select_for_judging(
        self, files: Sequence[CandidateFile], cheap: dict[str, tuple[SignalScore, SignalScore]]
    ) -> set[str]:
        """Top-K files by the mean of lexical and structural scores."""
        if self.generative is None or self.config.generative_top_k <= 0:
            return set()
        ranked = sorted(
            files,
            key=lambda f: (-(cheap[f.path][0].value + cheap[f.path][1].value) / 2, f.path),
        )
        return {f.path for f in ranked[: self.config.generative_top_k]}

    # --- search ---

    async def search(
        self,
        query: str,
        candidates: Iterable[Any],
        entry_point_file: str | None = None,
        batch_size: int | None = None,
    ) -> list[RankedFile]:
        """Rank candidates for a query, most relevant first.

        Raises InvalidQueryError for unusable queries and
        TotalChannelFailureError when no channel produced a score for any file.
        If superseded by a newer search, returns the files finalized so far.
        """
        parsed = Query.parse(query, entry_point_file, self.config.min_query_length)
        batch_size = batch_size or self.config.batch_size
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        files = coerce_candidates(candidates)

        self.cancel()
        token = SearchToken()
        self._token = token
        started = time.monotonic()
        self.bus.emit("search.started", query=parsed.text, candidates=len(files))
        try:
            return await self._search(parsed, files, batch_size, token, started)
        finally:
            if self._token is token:
                self._token = None

    async def _search(
        self,
        query: Query,
        files: list[CandidateFile],
        batch_size: int,
        token: SearchToken,
        started: float,
    ) -> list[RankedFile]:
        if not files:
            self.bus.emit("search.completed", query=query.text, results=0, elapsed=0.0)
            return []

        workflow = self._workflow(query, files)
        cheap = {
            f.path: (self._lexical(query, f), self._structural(query, f, workflow))
            for f in files
        }
        judged = self._select_for_judging(files, cheap)
        query_vector = await self._embed_query(query)

        finalized: list[RankedFile] = []
        for i in range(0, len(files), batch_size):
            if token.cancelled:
                return self._cancelled(query, finalized)
            batch = files[i : i + batch_size]
            embedded, generated = await asyncio.gather(
                asyncio.gather(*(self._embedding_signal(query_vector, f) for f in batch)),
                asyncio.gather(
                    *(self._generative_signal(query, f, judged, started) for f in batch)
                ),
            )
            if token.cancelled:
                return self._cancelled(query, finalized)
            for file, embedding, generative in zip(batch, embedded, generated):
                lexical, structural = cheap[file.path]
                link = workflow.get(file.path)
                vector = fuse(
                    file.path,
                    {
                        "lexical": lexical,
                        "structural": structural,
                        "embedding": embedding,
                        "generative": generative,
                    },
                    self.config,
                    link.position if link else None,
                )
                finalized.append(RankedFile(file.path, vector))

        if not any(
            signal.available for r in finalized for signal in r.score.signals.values()
        ):
            reasons = {
                name: signal.reason or "unavailable"
                for name, signal in finalized[0].score.signals.items()
            }
            raise TotalChannelFailureError(
                "No signal channel produced a score for any file", reasons
            )

        finalized.sort(key=_sort_key)
        elapsed = time.monotonic() - started
        logger.info(
            f"Ranked {len(finalized)} files for {query.text!r} in {elapsed:.2f}s"
        )
        self.bus.emit(
            "search.completed", query=query.text, results=len(finalized), elapsed=elapsed
        )
        return finalized

    def _cancelled(self, query: Query, finalized: list[RankedFile]) -> list[RankedFile]:
        logger.debug(f"Search for {query.text!r} cancelled after {len(finalized)} files")
        self.bus.emit("search.cancelled", query=query.text, finalized=len(finalized))
        return sorted(finalized, key=_sort_key)

    def save_results(
        self,
        keyword: str,
        project_name: str,
        results: Sequence[RankedFile],
        entry_point_file: str | None = None,
    ) -> SavedSearch:
        if self.results is None:
            raise ContextSiftError("No results store configured")
        return self.results.save(keyword, project_name, results, entry_point_file)
