"""Training cost estimator.

Pure and deterministic: identical inputs give bit-identical output.

Example:
    >>> est = estimate("text_classification", "bert-base", {"epochs": 3}, 24, "RTX 3090")
    >>> est.estimated_hours, est.tokens
    (2.0, 180)
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from typing import Any

from trainyard.types import CostEstimate

# USD per hour for a small model on the reference GPU
BASE_COST_PER_HOUR: dict[str, float] = {
    "text_classification": 0.5,
    "text_generation": 1.2,
    "question_answering": 0.8,
    "named_entity_recognition": 0.6,
    "sentiment_analysis": 0.4,
    "translation": 1.0,
    "summarization": 1.0,
    "image_classification": 0.7,
    "object_detection": 1.5,
    "custom": 1.0,
}

MODEL_SIZE_MULTIPLIERS: dict[str, float] = {
    "small": 1.0,
    "base": 1.2,
    "large": 1.8,
    "7b": 2.5,
    "13b": 4.0,
    "70b": 8.0,
}

# Checked in order: "70b" must win over "7b"
_SIZE_TOKENS = ("70b", "13b", "7b", "large", "base", "small")

GPU_MULTIPLIERS: dict[str, float] = {
    "RTX 3090": 1.0,
    "RTX 4090": 1.3,
    "A100": 2.5,
    "V100": 2.0,
    "T4": 0.6,
    "RTX 3080": 0.8,
}

BASE_HOURS: dict[str, float] = {
    "text_classification": 2.0,
    "text_generation": 8.0,
    "question_answering": 4.0,
    "named_entity_recognition": 3.0,
    "sentiment_analysis": 1.5,
    "translation": 6.0,
    "summarization": 5.0,
    "image_classification": 3.0,
    "object_detection": 6.0,
    "custom": 4.0,
}

BASELINE_EPOCHS = 3
MIN_HOURS = 0.5
MAX_HOURS = 48.0
DEFAULT_GPU = "RTX 3090"
PLATFORM_FEE_RATE = 0.5
TOKENS_PER_USD = 100


def model_size(base_model: str) -> str:
    name = base_model.lower()
    return next((token for token in _SIZE_TOKENS if token in name), "base")


def base_cost_per_hour(task_type: str, base_model: str) -> float:
    return BASE_COST_PER_HOUR.get(task_type, 1.0) * MODEL_SIZE_MULTIPLIERS[model_size(base_model)]


def gpu_multiplier(gpu_type: str | None) -> float:
    return GPU_MULTIPLIERS.get(gpu_type or DEFAULT_GPU, 1.0)


def training_hours(task_type: str, config: Mapping[str, Any]) -> float:
    """Expected duration, scaled by epochs against a 3-epoch baseline, clamped to [0.5, 48]."""
    hours = BASE_HOURS.get(task_type, 4.0)
    if epochs := config.get("epochs"):
        hours = hours * (float(epochs) / BASELINE_EPOCHS)
    return max(MIN_HOURS, min(hours, MAX_HOURS))


def estimate(
    task_type: str,
    base_model: str,
    config: Mapping[str, Any] | None = None,
    max_runtime_hours: float = 24.0,
    gpu_type: str | None = DEFAULT_GPU,
    *,
    platform_fee_rate: float = PLATFORM_FEE_RATE,
    tokens_per_usd: int = TOKENS_PER_USD,
) -> CostEstimate:
    """Estimate monetary and token cost of a training run.

    Args:
        task_type: Training task (``text_classification``, ``text_generation``, ...).
            Unknown types use the ``custom`` rates.
        base_model: Model name; its size is inferred from the name.
        config: Training config. Only ``epochs`` is consulted.
        max_runtime_hours: Upper bound on billed hours.
        gpu_type: GPU class; unknown classes use multiplier 1.0.
        platform_fee_rate: Markup on the marketplace cost.
        tokens_per_usd: Token exchange rate.

    Raises:
        ValueError: If ``max_runtime_hours`` is not positive.
    """
    if max_runtime_hours <= 0:
        raise ValueError(f"max_runtime_hours must be positive, got {max_runtime_hours}")

    vast_cost_per_hour = base_cost_per_hour(task_type, base_model) * gpu_multiplier(gpu_type)
    hours = min(training_hours(task_type, config or {}), max_runtime_hours)

    vast_cost = vast_cost_per_hour * hours
    platform_fee = vast_cost * platform_fee_rate
    total = vast_cost + platform_fee

    return CostEstimate(
        cost=total,
        vast_cost=vast_cost,
        platform_fee=platform_fee,
        tokens=math.ceil(round(total * tokens_per_usd, 6)),
        estimated_hours=hours,
        cost_per_hour=vast_cost_per_hour + platform_fee / hours,
    )


__all__ = [
    "BASE_COST_PER_HOUR",
    "BASE_HOURS",
    "GPU_MULTIPLIERS",
    "MODEL_SIZE_MULTIPLIERS",
    "base_cost_per_hour",
    "estimate",
    "gpu_multiplier",
    "model_size",
    "training_hours",
]
