from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Literal

CostTierName = Literal["low", "medium", "high"]


class TaskType(StrEnum):
    PLANNING = "planning"
    WRITING = "writing"
    CRITIQUE = "critique"
    REVISION = "revision"


@dataclass(frozen=True)
class TaskRequirement:
    needs_reasoning: bool = False
    needs_structured_output: bool = False
    needs_long_context: bool = False
    prefers_creativity: bool = False
    max_cost_tier: CostTierName = "high"


TASK_REQUIREMENTS: dict[TaskType, TaskRequirement] = {
    TaskType.PLANNING: TaskRequirement(
        needs_reasoning=True,
        needs_structured_output=True,
        max_cost_tier="high",
    ),
    TaskType.WRITING: TaskRequirement(
        needs_long_context=True,
        prefers_creativity=True,
        max_cost_tier="high",
    ),
    TaskType.CRITIQUE: TaskRequirement(
        needs_reasoning=True,
        needs_structured_output=True,
        max_cost_tier="medium",
    ),
    TaskType.REVISION: TaskRequirement(
        needs_long_context=True,
        prefers_creativity=True,
        max_cost_tier="medium",
    ),
}
