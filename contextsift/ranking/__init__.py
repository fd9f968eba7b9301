"""Hybrid relevance ranking of source files.

Four independent channels score each candidate file against a query:

- lexical: token matches against the path, name and a content snippet
- structural: pattern-extracted symbols and the entry point's import graph
- embedding: semantic similarity of sentence embeddings
- generative: a small text2text model's relevance verdict

`RankingEngine` fuses the available channels into one score per file.
"""

from .cache import (
    EmbeddingCache,
    KeyValueStore,
    MemoryStore,
    ResultsStore,
    SavedSearch,
    SqliteStore,
)
from .embedding import EmbeddingProvider, cosine_similarity
from .engine import RankingEngine
from .fusion import classify, detect_synergy, fuse, redistribute_weights
from .generative import GenerativeScorer, parse_verdict
from .lexical import LexicalMatcher
from .runtime import ModelService, ModelStatus
from .symbols import SymbolExtractor, WorkflowLink, is_supported_path
from .types import (
    CandidateFile,
    Channel,
    Query,
    RankedFile,
    ScoreVector,
    SignalScore,
    Symbol,
)

__all__ = [
    "CandidateFile",
    "Channel",
    "EmbeddingCache",
    "EmbeddingProvider",
    "GenerativeScorer",
    "KeyValueStore",
    "LexicalMatcher",
    "MemoryStore",
    "ModelService",
    "ModelStatus",
    "Query",
    "RankedFile",
    "RankingEngine",
    "ResultsStore",
    "SavedSearch",
    "ScoreVector",
    "SignalScore",
    "SqliteStore",
    "Symbol",
    "SymbolExtractor",
    "WorkflowLink",
    "classify",
    "cosine_similarity",
    "detect_synergy",
    "fuse",
    "is_supported_path",
    "parse_verdict",
    "redistribute_weights",
]
