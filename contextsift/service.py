"""Composition root wiring configuration, models, caches and the engine."""

import asyncio
import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from .bus import EventBus
from .config import Config, get_config
from .dirs import get_cache_path
from .ranking.cache import (
    EmbeddingCache,
    KeyValueStore,
    MemoryStore,
    ResultsStore,
    SqliteStore,
)
from .ranking.embedding import EmbeddingProvider
from .ranking.engine import RankingEngine
from .ranking.generative import GenerativeScorer
from .ranking.runtime import Loader, ModelStatus
from .ranking.types import RankedFile

logger = logging.getLogger(__name__)


class RankingService:
    """Owns the shared model services and stores for a process.

    Usage:
        async with RankingService(config) as service:
            results = await service.search("user authentication", files)
    """

    def __init__(
        self,
        config: Config | None = None,
        *,
        bus: EventBus | None = None,
        embedding_loader: Loader | None = None,
        generative_loader: Loader | None = None,
    ):
        self.config = config or get_config()
        self.bus = bus or EventBus()
        models = self.config.models

        self.embedding = (
            EmbeddingProvider(
                models.embedding_model,
                device=models.device,
                chunk_size=models.chunk_size,
                max_chunks=models.max_chunks,
                loader=embedding_loader,
                bus=self.bus,
            )
            if models.enable_embedding
            else None
        )
        self.generative = (
            GenerativeScorer(
                models.generative_model,
                device=models.device,
                excerpt_chars=models.excerpt_chars,
                loader=generative_loader,
                bus=self.bus,
            )
            if models.enable_generative
            else None
        )

        self.cache = EmbeddingCache(self._open_store("embeddings"), bus=self.bus)
        self.results = ResultsStore(self._open_store("results"))
        self.engine = RankingEngine(
            self.config.ranking,
            embedding=self.embedding,
            generative=self.generative,
            cache=self.cache,
            results=self.results,
            bus=self.bus,
            project_name=self.config.project_name,
        )

    def _open_store(self, namespace: str) -> KeyValueStore:
        if self.config.cache.backend == "memory":
            return MemoryStore()
        path = Path(self.config.cache.path) if self.config.cache.path else get_cache_path()
        return SqliteStore(path, namespace=namespace)

    @property
    def models(self) -> list[EmbeddingProvider | GenerativeScorer]:
        return [m for m in (self.embedding, self.generative) if m is not None]

    async def start(self) -> dict[str, ModelStatus]:
        """Load the enabled models. Failed models leave their channel unavailable."""
        statuses = await asyncio.gather(*(m.initialize() for m in self.models))
        for model, status in zip(self.models, statuses):
            if status == ModelStatus.ERROR:
                logger.warning(
                    f"{model.kind} channel unavailable: {model.error}"
                )
        return {m.kind: s for m, s in zip(self.models, statuses)}

    async def close(self) -> None:
        self.engine.cancel()
        await asyncio.gather(*(m.dispose() for m in self.models))

    async def __aenter__(self) -> "RankingService":
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def search(
        self,
        query: str,
        candidates: Iterable[Any],
        entry_point_file: str | None = None,
        batch_size: int | None = None,
    ) -> list[RankedFile]:
        return await self.engine.search(query, candidates, entry_point_file, batch_size)
