from .__version__ import __version__
from .config import Config, get_config, load_config
from .errors import (
    ContextSiftError,
    InvalidQueryError,
    TotalChannelFailureError,
)
from .ranking import RankedFile, RankingEngine
from .service import RankingService

__all__ = [
    "__version__",
    "Config",
    "ContextSiftError",
    "InvalidQueryError",
    "RankedFile",
    "RankingEngine",
    "RankingService",
    "TotalChannelFailureError",
    "get_config",
    "load_config",
]
