"""Fusion of per-channel signals into a single score and classification."""

import logging
from collections.abc import Iterable, Mapping

from ..config import CHANNELS, RankingConfig
from .types import Classification, ScoreVector, SignalScore, WorkflowPosition

logger = logging.getLogger(__name__)

CONFIG_EXTENSIONS = (".json", ".yaml", ".yml", ".toml", ".ini", ".env", ".cfg", ".conf")


def is_config_path(path: str) -> bool:
    lowered = "/" + path.lower().lstrip("/")
    name = lowered.rsplit("/", 1)[-1]
    return (
        lowered.endswith(CONFIG_EXTENSIONS)
        or name.startswith(".env")
        or ".config." in name
        or "/config/" in lowered
    )


def redistribute_weights(
    weights: Mapping[str, float], available: Iterable[str]
) -> dict[str, float]:
    """Spread the weight of unavailable channels proportionally over the rest.

    The result sums to 1 whenever any channel is available, and to 0 otherwise.
    """
    available = set(available)
    total = sum(w for c, w in weights.items() if c in available)
    if not available:
        return {c: 0.0 for c in weights}
    if total <= 0:
        # every available channel has zero static weight: weigh them equally
        return {c: (1.0 / len(available) if c in available else 0.0) for c in weights}
    return {c: (w / total if c in available else 0.0) for c, w in weights.items()}


def detect_synergy(
    signals: Mapping[str, SignalScore], threshold: float, min_channels: int = 2
) -> list[str]:
    """Channels agreeing on relevance, or [] when too few agree."""
    agreeing = [
        name
        for name, signal in signals.items()
        if signal.available and signal.value >= threshold
    ]
    return agreeing if len(agreeing) >= min_channels else []


def classify(
    path: str,
    final_score: float,
    workflow_position: WorkflowPosition | None,
    config: RankingConfig,
) -> Classification:
    if workflow_position == "entry":
        return "entry-point"
    if final_score < config.unrelated_threshold:
        return "unrelated"
    if is_config_path(path):
        return "config"
    if workflow_position in ("downstream", "upstream"):
        return "core-logic" if final_score >= config.core_logic_threshold else "helper"
    if final_score >= config.core_logic_threshold:
        return "core-logic"
    return "helper"


def fuse(
    path: str,
    signals: Mapping[str, SignalScore],
    config: RankingConfig,
    workflow_position: WorkflowPosition | None = None,
) -> ScoreVector:
    """Combine channel signals for one file into a ScoreVector."""
    signals = {c: signals.get(c) or SignalScore.unavailable("missing") for c in CHANNELS}
    weights = redistribute_weights(
        config.weights.as_dict(), [c for c, s in signals.items() if s.available]
    )
    final = sum(weights[c] * signals[c].value for c in CHANNELS)

    agreeing = detect_synergy(
        signals, config.synergy_threshold, config.synergy_min_channels
    )
    if agreeing:
        strongest = max(signals[c].value for c in agreeing)
        final = max(final, strongest) * config.synergy_bonus
    final = min(max(final, 0.0), 1.0)

    return ScoreVector(
        lexical=signals["lexical"],
        structural=signals["structural"],
        embedding=signals["embedding"],
        generative=signals["generative"],
        final_score=final,
        has_synergy=bool(agreeing),
        classification=classify(path, final, workflow_position, config),
        workflow_position=workflow_position,
        weights=weights,
    )
