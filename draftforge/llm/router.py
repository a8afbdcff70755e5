from __future__ import annotations

import logging

from draftforge.llm.task_types import TASK_REQUIREMENTS, TaskType
from draftforge.schemas import CostTier, ModelConfig

logger = logging.getLogger(__name__)

_COST_TIER_MAP: dict[str, CostTier] = {
    "low": CostTier.LOW,
    "medium": CostTier.MEDIUM,
    "high": CostTier.HIGH,
}


def _cost_allowed(model_cost: CostTier, max_cost: str) -> bool:
    return model_cost <= _COST_TIER_MAP[max_cost]


def _score_model(model: ModelConfig, task_type: TaskType) -> float:
    req = TASK_REQUIREMENTS[task_type]
    score = 0.0

    if req.needs_reasoning:
        score += model.reasoning_score * 2.0
    if req.prefers_creativity:
        score += model.creativity_score * 1.5

    score += (4 - int(model.cost_tier)) * 0.8
    return score


def select_model(
    task_type: TaskType,
    available_models: dict[str, ModelConfig],
    override_model_id: str | None = None,
) -> str | None:
    """Best enabled model for a task, or None to use the default model."""
    if override_model_id and override_model_id in available_models:
        return override_model_id

    req = TASK_REQUIREMENTS[task_type]
    candidates = [
        model
        for model in available_models.values()
        if model.enabled
        and (model.supports_structured_output or not req.needs_structured_output)
        and (model.supports_long_context or not req.needs_long_context)
        and _cost_allowed(model.cost_tier, req.max_cost_tier)
    ]

    if not candidates:
        logger.warning(
            "No eligible models for task=%s, returning None (will use default)",
            task_type,
        )
        return None

    chosen = max(candidates, key=lambda m: _score_model(m, task_type))
    logger.info(
        "Router: task=%s -> model=%s (score=%.1f, %d candidates)",
        task_type,
        chosen.id,
        _score_model(chosen, task_type),
        len(candidates),
    )
    return chosen.id
