"""
Layered context configuration.

Values are normalized into safe ranges on construction through
``normalize_layered_config``; per-call overrides go through
``LayeredContextConfig.with_overrides`` and are normalized again.
"""

import dataclasses
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from .errors import ConfigurationError


@dataclass(frozen=True)
class RetrievalEscalationThresholds:
    score_threshold_high: float = 0.64
    top1_top2_margin: float = 0.08
    max_items_for_l1: int = 4
    max_items_for_l2: int = 2

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass(frozen=True)
class LayeredContextConfig:
    l0_target_tokens: int = 120
    l1_target_tokens: int = 1200
    max_prompt_tokens: int = 32000
    max_archives: int = 12
    max_recent_messages: int = 24
    archive_chunk_size: int = 8
    enable_session_compression: bool = True
    retrieval_escalation_thresholds: RetrievalEscalationThresholds = field(
        default_factory=RetrievalEscalationThresholds
    )

    def with_overrides(self, **overrides: Any) -> "LayeredContextConfig":
        """
        Return a normalized copy with the given fields replaced.

        ``retrieval_escalation_thresholds`` may be passed as a mapping holding
        only the threshold fields to change.
        """
        return merge_layered_config(self, overrides)

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


DEFAULT_LAYERED_CONTEXT_CONFIG = LayeredContextConfig()

_INT_RANGES = {
    "l0_target_tokens": (40, 300),
    "l1_target_tokens": (300, 4000),
    "max_prompt_tokens": (4000, 160000),
    "max_archives": (1, 60),
    "max_recent_messages": (2, 120),
    "archive_chunk_size": (2, 30),
}

_THRESHOLD_RANGES = {
    "score_threshold_high": (0.1, 0.99),
    "top1_top2_margin": (0.01, 0.8),
    "max_items_for_l1": (1, 12),
    "max_items_for_l2": (1, 6),
}


def _clamp_int(value: Any, low: int, high: int, fallback: int) -> int:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(number):
        return fallback
    return int(max(low, min(high, math.floor(number))))


def _clamp_float(value: Any, low: float, high: float, fallback: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(number):
        return fallback
    return max(low, min(high, number))


def normalize_layered_config(config: Optional[LayeredContextConfig] = None) -> LayeredContextConfig:
    """Clamp every numeric field of ``config`` into its supported range."""
    config = config or DEFAULT_LAYERED_CONTEXT_CONFIG
    defaults = DEFAULT_LAYERED_CONTEXT_CONFIG

    int_values = {
        name: _clamp_int(getattr(config, name), low, high, getattr(defaults, name))
        for name, (low, high) in _INT_RANGES.items()
    }

    thresholds = config.retrieval_escalation_thresholds
    default_thresholds = defaults.retrieval_escalation_thresholds
    normalized_thresholds = RetrievalEscalationThresholds(
        score_threshold_high=_clamp_float(
            thresholds.score_threshold_high, *_THRESHOLD_RANGES["score_threshold_high"],
            default_thresholds.score_threshold_high,
        ),
        top1_top2_margin=_clamp_float(
            thresholds.top1_top2_margin, *_THRESHOLD_RANGES["top1_top2_margin"],
            default_thresholds.top1_top2_margin,
        ),
        max_items_for_l1=_clamp_int(
            thresholds.max_items_for_l1, *_THRESHOLD_RANGES["max_items_for_l1"],
            default_thresholds.max_items_for_l1,
        ),
        max_items_for_l2=_clamp_int(
            thresholds.max_items_for_l2, *_THRESHOLD_RANGES["max_items_for_l2"],
            default_thresholds.max_items_for_l2,
        ),
    )

    return LayeredContextConfig(
        enable_session_compression=bool(config.enable_session_compression),
        retrieval_escalation_thresholds=normalized_thresholds,
        **int_values,
    )


def merge_layered_config(base: Optional[LayeredContextConfig],
                         overrides: Optional[Mapping[str, Any]] = None) -> LayeredContextConfig:
    """
    Apply ``overrides`` on top of ``base`` and normalize the result.

    Raises:
        ConfigurationError: If an override names an unknown field.
    """
    base = base or DEFAULT_LAYERED_CONTEXT_CONFIG
    if not overrides:
        return normalize_layered_config(base)

    known_fields = {f.name for f in dataclasses.fields(LayeredContextConfig)}
    unknown = set(overrides) - known_fields
    if unknown:
        raise ConfigurationError(f"Unknown layered context config fields: {sorted(unknown)}")

    values = dict(overrides)
    threshold_override = values.pop("retrieval_escalation_thresholds", None)
    merged = dataclasses.replace(base, **values)

    if threshold_override is not None:
        if isinstance(threshold_override, RetrievalEscalationThresholds):
            thresholds = threshold_override
        elif isinstance(threshold_override, Mapping):
            known_threshold_fields = {f.name for f in dataclasses.fields(RetrievalEscalationThresholds)}
            unknown_thresholds = set(threshold_override) - known_threshold_fields
            if unknown_thresholds:
                raise ConfigurationError(
                    f"Unknown retrieval threshold fields: {sorted(unknown_thresholds)}"
                )
            thresholds = dataclasses.replace(base.retrieval_escalation_thresholds, **threshold_override)
        else:
            raise ConfigurationError(
                "retrieval_escalation_thresholds must be a mapping or RetrievalEscalationThresholds"
            )
        merged = dataclasses.replace(merged, retrieval_escalation_thresholds=thresholds)

    return normalize_layered_config(merged)
