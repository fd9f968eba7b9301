import logging
import os
from contextvars import ContextVar
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Literal

import tomlkit
from tomlkit.exceptions import TOMLKitError
from typing_extensions import Self

from .dirs import PROJECT_CONFIG_FILENAME, get_config_dir, get_project_dir

logger = logging.getLogger(__name__)

CHANNELS = ("lexical", "structural", "embedding", "generative")


@dataclass
class FusionWeights:
    """Static weight per signal channel.

    Weights of unavailable channels are redistributed proportionally over the
    available ones, so only the ratios matter.
    """

    lexical: float = 0.25
    structural: float = 0.30
    embedding: float = 0.30
    generative: float = 0.15  # slowest channel, lowest weight

    def __post_init__(self):
        for name in CHANNELS:
            if getattr(self, name) < 0:
                raise ValueError(f"Weight for {name} must be non-negative")
        if sum(self.as_dict().values()) <= 0:
            raise ValueError("At least one fusion weight must be positive")

    def as_dict(self) -> dict[str, float]:
        return {name: float(getattr(self, name)) for name in CHANNELS}


@dataclass
class RankingConfig:
    """Tunable parameters of the score fusion and ranking engine."""

    weights: FusionWeights = field(default_factory=FusionWeights)

    # Synergy: bonus when independent channels agree
    synergy_threshold: float = 0.6
    synergy_bonus: float = 1.15
    synergy_min_channels: int = 2

    # Classification
    core_logic_threshold: float = 0.5
    unrelated_threshold: float = 0.15

    # Structural scoring
    workflow_bonus: float = 0.75
    structural_saturation: float = 2.0

    # Scheduling
    batch_size: int = 8
    generative_top_k: int = 10
    embedding_timeout: float = 30.0  # seconds, per call
    generative_timeout: float = 60.0  # seconds, per call
    generative_budget: float = 120.0  # seconds of a search after which judging stops

    min_query_length: int = 2

    def __post_init__(self):
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.synergy_bonus < 1.0:
            raise ValueError("synergy_bonus must be >= 1.0")
        if not 0.0 <= self.synergy_threshold <= 1.0:
            raise ValueError("synergy_threshold must be between 0.0 and 1.0")

    @classmethod
    def from_dict(cls, config_dict: dict) -> Self:
        """Create config from dictionary (typically the [ranking] table)."""
        config_dict = dict(config_dict)
        weights = FusionWeights(**config_dict.pop("weights", {}))
        unknown = set(config_dict) - set(cls.__dataclass_fields__)
        if unknown:
            logger.warning(f"Unknown keys in ranking config: {sorted(unknown)}")
        return cls(
            weights=weights,
            **{k: v for k, v in config_dict.items() if k in cls.__dataclass_fields__},
        )


@dataclass
class ModelsConfig:
    """Configuration of the embedding and generative models."""

    embedding_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    generative_model: str = "google/flan-t5-small"
    # "auto" lets the library pick; on failure we retry on "cpu"
    device: str = "auto"
    enable_embedding: bool = True
    enable_generative: bool = True

    # Content larger than chunk_size characters is chunked and mean-pooled
    chunk_size: int = 2000
    max_chunks: int = 8
    # Characters of file content included in the generative prompt
    excerpt_chars: int = 500

    @classmethod
    def from_dict(cls, config_dict: dict) -> Self:
        unknown = set(config_dict) - set(cls.__dataclass_fields__)
        if unknown:
            logger.warning(f"Unknown keys in models config: {sorted(unknown)}")
        return cls(
            **{k: v for k, v in config_dict.items() if k in cls.__dataclass_fields__}
        )


@dataclass
class CacheConfig:
    """Configuration of the embedding cache and saved search results."""

    backend: Literal["sqlite", "memory"] = "sqlite"
    path: str | None = None  # defaults to the user data dir
    max_age_days: int = 30

    @classmethod
    def from_dict(cls, config_dict: dict) -> Self:
        unknown = set(config_dict) - set(cls.__dataclass_fields__)
        if unknown:
            logger.warning(f"Unknown keys in cache config: {sorted(unknown)}")
        return cls(
            **{k: v for k, v in config_dict.items() if k in cls.__dataclass_fields__}
        )


@dataclass
class Config:
    """
    A complete configuration object, merged from the user config file and the
    project's `contextsift.toml`.
    """

    project_name: str = "default"
    ranking: RankingConfig = field(default_factory=RankingConfig)
    models: ModelsConfig = field(default_factory=ModelsConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)

    @classmethod
    def from_dict(cls, config_dict: dict) -> Self:
        """Create a Config from a (merged) TOML document.

        Example:
            config = Config.from_dict({
                "project_name": "webapp",
                "ranking": {"batch_size": 4, "weights": {"generative": 0.0}},
                "models": {"device": "cpu"},
            })
        """
        config_dict = dict(config_dict)
        ranking = RankingConfig.from_dict(config_dict.pop("ranking", {}))
        models = ModelsConfig.from_dict(config_dict.pop("models", {}))
        cache = CacheConfig.from_dict(config_dict.pop("cache", {}))
        project_name = config_dict.pop("project_name", "default")
        if config_dict:
            logger.warning(f"Unknown keys in config: {sorted(config_dict)}")

        config = cls(
            project_name=project_name, ranking=ranking, models=models, cache=cache
        )
        config._apply_env()
        return config

    def _apply_env(self) -> None:
        if device := os.environ.get("CONTEXTSIFT_DEVICE"):
            self.models.device = device
        if cache_path := os.environ.get("CONTEXTSIFT_CACHE_PATH"):
            self.cache.path = cache_path

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}


def _load_toml(path: Path) -> dict:
    try:
        with open(path) as f:
            return tomlkit.load(f).unwrap()
    except (OSError, TOMLKitError) as e:
        logger.warning(f"Failed to load config from {path}: {e}")
        return {}


def _merge_config_data(main_config: dict, local_config: dict) -> dict:
    """Merge local configuration into main configuration, recursing into tables."""
    merged = dict(main_config)
    for key, value in local_config.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge_config_data(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(path: str | Path | None = None, workspace: Path | None = None) -> Config:
    """Load the configuration.

    If `path` is given only that file is read. Otherwise the user config file is
    read and the project `contextsift.toml` (if any) is merged on top of it.
    """
    if path is not None:
        return Config.from_dict(_load_toml(Path(path)))

    data: dict = {}
    user_config = get_config_dir() / "config.toml"
    if user_config.exists():
        data = _load_toml(user_config)

    project_dir = get_project_dir(workspace)
    if project_dir and (project_dir / PROJECT_CONFIG_FILENAME).exists():
        project_data = _load_toml(project_dir / PROJECT_CONFIG_FILENAME)
        data = _merge_config_data(data, project_data)
        data.setdefault("project_name", project_dir.name)
    elif project_dir:
        data.setdefault("project_name", project_dir.name)

    return Config.from_dict(data)


# Context-local storage for config
_config_var: ContextVar[Config | None] = ContextVar("config", default=None)


def get_config() -> Config:
    """Get the current configuration."""
    config = _config_var.get()
    if config is None:
        config = load_config()
        _config_var.set(config)
    return config


def set_config(config: Config):
    """Set the configuration."""
    _config_var.set(config)
