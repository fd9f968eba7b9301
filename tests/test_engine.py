"""Tests for the ranking engine."""

import asyncio

import numpy as np
import pytest

from contextsift.bus import EventBus
from contextsift.config import RankingConfig
from contextsift.errors import InvalidQueryError, TotalChannelFailureError
from contextsift.ranking.cache import EmbeddingCache, MemoryStore, ResultsStore
from contextsift.ranking.embedding import EmbeddingProvider
from contextsift.ranking.engine import RankingEngine
from contextsift.ranking.generative import GenerativeScorer
from contextsift.ranking.lexical import LexicalMatcher
from contextsift.ranking.types import CandidateFile, Query


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def events(bus):
    received = []
    bus.subscribe("*", received.append)
    return received


async def _provider(encoder) -> EmbeddingProvider:
    provider = EmbeddingProvider(loader=lambda model_id, device: encoder)
    await provider.initialize()
    return provider


async def _scorer(generator) -> GenerativeScorer:
    scorer = GenerativeScorer(loader=lambda model_id, device: generator)
    await scorer.initialize()
    return scorer


class FailingMatcher(LexicalMatcher):
    def score(self, query, file):
        raise RuntimeError("boom")


class FailingExtractor:
    def workflow_positions(self, entry_point_file, files):
        return {}

    def score(self, query, file, workflow=None):
        raise RuntimeError("boom")


@pytest.mark.asyncio
async def test_auth_scenario(auth_candidates):
    engine = RankingEngine()
    results = await engine.search("user authentication", auth_candidates)

    assert results[0].file == "src/auth/login.ts"
    assert results[0].score.matches
    assert results[-1].file == "styles/theme.css"
    assert results[-1].final_score < 0.05
    assert results[-1].score.classification == "unrelated"


@pytest.mark.asyncio
async def test_auth_scenario_with_models(auth_candidates, fake_encoder, fake_generator):
    engine = RankingEngine(
        embedding=await _provider(fake_encoder),
        generative=await _scorer(fake_generator),
        cache=EmbeddingCache(MemoryStore()),
    )
    results = await engine.search("user authentication", auth_candidates)

    assert results[0].file == "src/auth/login.ts"
    for result in results:
        assert result.score.embedding.available
        assert result.score.generative.available
    assert results[0].score.generative.value == 0.9


@pytest.mark.asyncio
async def test_results_are_sorted_with_path_tie_break():
    engine = RankingEngine()
    candidates = [("b/login.ts", ""), ("a/login.ts", ""), ("c/other.ts", "")]
    results = await engine.search("login", candidates)
    assert [r.file for r in results] == ["a/login.ts", "b/login.ts", "c/other.ts"]
    scores = [r.final_score for r in results]
    assert scores == sorted(scores, reverse=True)


@pytest.mark.asyncio
async def test_search_is_deterministic(auth_candidates, fake_encoder):
    engine = RankingEngine(embedding=await _provider(fake_encoder))
    first = await engine.search("user authentication", auth_candidates)
    second = await engine.search("user authentication", auth_candidates)
    assert [r.to_dict() for r in first] == [r.to_dict() for r in second]


@pytest.mark.asyncio
@pytest.mark.parametrize("query", ["", " ", "a", "the of", "!!"])
async def test_invalid_query(query, auth_candidates, mocker):
    engine = RankingEngine()
    spy = mocker.spy(engine.lexical, "score")
    with pytest.raises(InvalidQueryError):
        await engine.search(query, auth_candidates)
    spy.assert_not_called()


@pytest.mark.asyncio
async def test_no_candidates():
    assert await RankingEngine().search("login", []) == []


@pytest.mark.asyncio
async def test_embedding_error_redistributes_weights(auth_candidates, bus, events):
    def broken(model_id, device):
        raise RuntimeError("no backend")

    provider = EmbeddingProvider(loader=broken, bus=bus)
    await provider.initialize()
    engine = RankingEngine(embedding=provider, bus=bus)

    results = await engine.search("user authentication", auth_candidates)

    assert len(results) == 3
    assert [r.final_score for r in results] == sorted(
        (r.final_score for r in results), reverse=True
    )
    for result in results:
        assert not result.score.embedding.available
        assert result.score.weights["embedding"] == 0.0
        assert sum(result.score.weights.values()) == pytest.approx(1.0)
    assert "channel.unavailable" in [e.type for e in events]


@pytest.mark.asyncio
async def test_lexical_only(auth_candidates):
    config = RankingConfig()
    engine = RankingEngine(config, structural=FailingExtractor())
    results = await engine.search("user authentication", auth_candidates)
    assert results[0].file == "src/auth/login.ts"
    for result in results:
        assert result.score.weights["lexical"] == pytest.approx(1.0)
        assert result.final_score == pytest.approx(result.score.lexical.value)


@pytest.mark.asyncio
async def test_total_channel_failure(auth_candidates):
    engine = RankingEngine(lexical=FailingMatcher(), structural=FailingExtractor())
    with pytest.raises(TotalChannelFailureError) as exc_info:
        await engine.search("user authentication", auth_candidates)
    assert exc_info.value.reasons["lexical"] == "boom"


@pytest.mark.asyncio
async def test_partial_failure_is_silent(auth_candidates):
    engine = RankingEngine(lexical=FailingMatcher())
    results = await engine.search("user authentication", auth_candidates)
    assert results[0].file == "src/auth/login.ts"


@pytest.mark.asyncio
async def test_embedding_cache_reuse(auth_candidates, make_encoder):
    encoder = make_encoder()
    store = MemoryStore()
    engine = RankingEngine(
        embedding=await _provider(encoder), cache=EmbeddingCache(store)
    )

    await engine.search("user authentication", auth_candidates)
    assert store.count() == 3
    calls_after_first = len(encoder.calls)
    assert calls_after_first == 4  # query + three files

    await engine.search("login flow", auth_candidates)
    # only the query is embedded again
    assert len(encoder.calls) == calls_after_first + 1


@pytest.mark.asyncio
async def test_embedding_cache_invalidated_by_content_change(auth_candidates, make_encoder):
    encoder = make_encoder()
    engine = RankingEngine(
        embedding=await _provider(encoder), cache=EmbeddingCache(MemoryStore())
    )
    await engine.search("user authentication", auth_candidates)
    encoder.calls.clear()

    changed = list(auth_candidates)
    changed[2] = ("styles/theme.css", ".button { color: blue; }\n")
    await engine.search("user authentication", changed)

    embedded = [texts for texts in encoder.calls if texts != ["user authentication"]]
    assert embedded == [[".button { color: blue; }\n"]]


@pytest.mark.asyncio
async def test_cache_write_failure_does_not_fail_search(
    auth_candidates, bus, events, make_encoder
):
    engine = RankingEngine(
        embedding=await _provider(make_encoder()),
        cache=EmbeddingCache(MemoryStore(max_entries=1), bus=bus),
        bus=bus,
    )
    results = await engine.search("user authentication", auth_candidates)
    assert all(r.score.embedding.available for r in results)
    assert [e.type for e in events].count("cache.write_failed") == 2


@pytest.mark.asyncio
async def test_generative_only_judges_top_k(auth_candidates, make_generator):
    generator = make_generator()
    engine = RankingEngine(
        RankingConfig(generative_top_k=1), generative=await _scorer(generator)
    )
    results = await engine.search("user authentication", auth_candidates)

    judged = [r for r in results if r.score.generative.available]
    assert [r.file for r in judged] == ["src/auth/login.ts"]
    assert len(generator.prompts) == 1


@pytest.mark.asyncio
async def test_generative_timeout(auth_candidates, make_generator):
    engine = RankingEngine(
        RankingConfig(generative_timeout=0.01),
        generative=await _scorer(make_generator(delay=0.2)),
    )
    results = await engine.search("user authentication", auth_candidates)
    assert results[0].file == "src/auth/login.ts"
    assert not any(r.score.generative.available for r in results)


@pytest.mark.asyncio
async def test_generative_budget(auth_candidates, make_generator):
    generator = make_generator()
    engine = RankingEngine(
        RankingConfig(generative_budget=0.0), generative=await _scorer(generator)
    )
    await engine.search("user authentication", auth_candidates)
    assert generator.prompts == []


@pytest.mark.asyncio
async def test_batches_limit_concurrency(auth_candidates, mocker, make_encoder):
    encoder = make_encoder()
    provider = await _provider(encoder)
    engine = RankingEngine(embedding=provider)

    in_flight = 0
    peak = 0
    original = provider.embed_document

    async def tracked(path, content):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        try:
            return await original(path, content)
        finally:
            in_flight -= 1

    mocker.patch.object(provider, "embed_document", side_effect=tracked)
    await engine.search("user authentication", auth_candidates, batch_size=2)
    assert peak == 2


@pytest.mark.asyncio
async def test_new_search_cancels_previous(bus, events, make_encoder):
    encoder = make_encoder(delay=0.05)
    engine = RankingEngine(embedding=await _provider(encoder), bus=bus)
    candidates = [(f"src/file{i}.ts", f"export const value{i} = {i};") for i in range(10)]

    first = asyncio.create_task(engine.search("value", candidates, batch_size=1))
    await asyncio.sleep(0.12)
    second = await engine.search("value", candidates[:2])

    partial = await asyncio.wait_for(first, timeout=5)
    assert len(partial) < len(candidates)
    assert [r.final_score for r in partial] == sorted(
        (r.final_score for r in partial), reverse=True
    )
    assert len(second) == 2
    assert "search.cancelled" in [e.type for e in events]


@pytest.mark.asyncio
async def test_cancel(auth_candidates, make_encoder):
    engine = RankingEngine(embedding=await _provider(make_encoder(delay=0.05)))
    task = asyncio.create_task(
        engine.search("user authentication", auth_candidates, batch_size=1)
    )
    await asyncio.sleep(0.01)
    engine.cancel()
    assert len(await task) < len(auth_candidates)


@pytest.mark.asyncio
async def test_entry_point_classification():
    candidates = [
        ("src/routes/login.ts", "import { verify } from '../auth/verify';\nexport function login() {}\n"),
        ("src/auth/verify.ts", "export function verify(token) { return token; }\n"),
        ("src/config/login.json", '{"login": {"enabled": true}}'),
    ]
    results = await RankingEngine().search(
        "login", candidates, entry_point_file="src/routes/login.ts"
    )
    by_file = {r.file: r.score for r in results}
    assert by_file["src/routes/login.ts"].classification == "entry-point"
    assert by_file["src/routes/login.ts"].workflow_position == "entry"
    assert by_file["src/auth/verify.ts"].workflow_position == "downstream"
    assert by_file["src/auth/verify.ts"].classification in ("core-logic", "helper")
    assert by_file["src/config/login.json"].classification == "config"


@pytest.mark.asyncio
async def test_events(auth_candidates, bus, events):
    await RankingEngine(bus=bus).search("user authentication", auth_candidates)
    types = [e.type for e in events]
    assert types[0] == "search.started"
    assert types[-1] == "search.completed"
    assert events[-1].data["results"] == 3


@pytest.mark.asyncio
async def test_duplicate_paths_keep_last():
    results = await RankingEngine().search(
        "login", [("a/login.ts", "old"), ("a/login.ts", "login login")]
    )
    assert len(results) == 1
    assert "content:login" in results[0].score.matches


def test_save_results():
    results_store = ResultsStore(MemoryStore())
    engine = RankingEngine(results=results_store)
    record = engine.save_results("login", "webapp", [], "src/main.ts")
    assert results_store.get(record.id).entry_point_file == "src/main.ts"


@pytest.mark.asyncio
async def test_non_finite_embedding_is_unavailable(make_encoder):
    class PartlyBrokenEncoder(make_encoder):
        def encode(self, texts):
            vectors = super().encode(texts)
            for i, text in enumerate(texts):
                if text == "broken":
                    vectors[i] = np.nan
            return vectors

    cache = EmbeddingCache(MemoryStore())
    engine = RankingEngine(embedding=await _provider(PartlyBrokenEncoder()), cache=cache)
    results = await engine.search(
        "login", [("a/login.ts", "broken"), ("b/login.ts", "fine")]
    )

    by_file = {r.file: r for r in results}
    assert not by_file["a/login.ts"].score.embedding.available
    assert by_file["b/login.ts"].score.embedding.available
    for result in results:
        assert 0.0 <= result.final_score <= 1.0
        assert sum(result.score.weights.values()) == pytest.approx(1.0)
    assert cache.stats()["entries"] == 1


@pytest.mark.asyncio
async def test_embedding_timeout(auth_candidates, make_encoder):
    engine = RankingEngine(
        RankingConfig(embedding_timeout=0.01),
        embedding=await _provider(make_encoder(delay=0.2)),
    )
    results = await engine.search("user authentication", auth_candidates)
    assert results[0].file == "src/auth/login.ts"
    for result in results:
        assert not result.score.embedding.available
        assert result.score.weights["embedding"] == 0.0
        assert sum(result.score.weights.values()) == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_lexical_only_order_matches_lexical_rank():
    candidates = [
        CandidateFile("b/login.ts", ""),
        CandidateFile("a/deep/nested/login.ts", ""),
        CandidateFile("styles/theme.css", ""),
    ]
    engine = RankingEngine(structural=FailingExtractor())
    results = await engine.search("login", candidates)

    ranked = LexicalMatcher().rank(Query.parse("login"), candidates)
    assert [f.path for f, _ in ranked] == [r.file for r in results if r.final_score > 0]
    assert [r.file for r in results][:2] == ["a/deep/nested/login.ts", "b/login.ts"]


@pytest.mark.asyncio
async def test_embedding_signal_without_provider():
    engine = RankingEngine()
    signal = await engine._embedding_signal(np.ones(4), CandidateFile("a.ts", "x"))
    assert not signal.available
    assert signal.reason == "embedding disabled"
