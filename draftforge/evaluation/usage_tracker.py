import time
from contextvars import ContextVar
from typing import Any

from draftforge.schemas import TaskUsage, UsageSummary

# USD per 1M tokens (input, output). Updated 2025-02.
PRICING_TABLE: dict[str, tuple[float, float]] = {
    "gpt-4o": (2.50, 10.00),
    "gpt-4o-mini": (0.15, 0.60),
    "gpt-4-turbo": (10.00, 30.00),
    "gpt-4": (30.00, 60.00),
    "gpt-3.5-turbo": (0.50, 1.50),
    "o1": (15.00, 60.00),
    "o1-mini": (3.00, 12.00),
    "o3-mini": (1.10, 4.40),
    "deepseek-chat": (0.14, 0.28),
    "deepseek-reasoner": (0.55, 2.19),
}

_DEFAULT_PRICE: tuple[float, float] = (2.50, 10.00)


def estimate_cost_usd(prompt_tokens: int, completion_tokens: int, model: str) -> float:
    model_lower = model.lower()
    price = PRICING_TABLE.get(model_lower)
    if not price:
        best_key = ""
        for key, val in PRICING_TABLE.items():
            if key in model_lower and len(key) > len(best_key):
                best_key = key
                price = val
    if not price:
        price = _DEFAULT_PRICE
    input_cost = (prompt_tokens / 1_000_000) * price[0]
    output_cost = (completion_tokens / 1_000_000) * price[1]
    return round(input_cost + output_cost, 6)


class UsageTracker:
    """Tool-call bookkeeping for one generation job."""

    def __init__(self, job_id: str = "") -> None:
        self.job_id = job_id
        self.usage_records: list[dict[str, Any]] = []
        self.timing_records: list[dict[str, Any]] = []
        self.index_queries = 0

    def record_llm_usage(
        self,
        prompt_tokens: int,
        completion_tokens: int,
        model: str = "",
        task_type: str = "",
    ) -> dict[str, Any]:
        record = {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "model": model,
            "task_type": task_type,
            "cost_usd": estimate_cost_usd(prompt_tokens, completion_tokens, model),
            "timestamp": time.time(),
        }
        self.usage_records.append(record)
        return record

    def record_index_query(self) -> None:
        self.index_queries += 1

    def record_stage_timing(self, stage: str, duration_ms: float) -> None:
        self.timing_records.append(
            {"stage": stage, "duration_ms": duration_ms, "timestamp": time.time()}
        )

    @property
    def total_cost_usd(self) -> float:
        return round(sum(r["cost_usd"] for r in self.usage_records), 6)

    def summary(self) -> UsageSummary:
        stage_timings: dict[str, float] = {}
        for r in self.timing_records:
            stage_timings[r["stage"]] = stage_timings.get(r["stage"], 0) + r["duration_ms"]

        task_agg: dict[str, TaskUsage] = {}
        for r in self.usage_records:
            tt = r["task_type"] or "unknown"
            agg = task_agg.setdefault(tt, TaskUsage(task_type=tt))
            agg.prompt_tokens += r["prompt_tokens"]
            agg.completion_tokens += r["completion_tokens"]
            agg.llm_calls += 1
            agg.cost_usd = round(agg.cost_usd + r["cost_usd"], 6)

        return UsageSummary(
            prompt_tokens=sum(r["prompt_tokens"] for r in self.usage_records),
            completion_tokens=sum(r["completion_tokens"] for r in self.usage_records),
            total_llm_calls=len(self.usage_records),
            total_index_queries=self.index_queries,
            total_cost_usd=self.total_cost_usd,
            stage_timings_ms=stage_timings,
            task_breakdown=[task_agg[tt] for tt in sorted(task_agg)],
        )


_process_tracker = UsageTracker(job_id="process")

current_tracker_var: ContextVar[UsageTracker | None] = ContextVar(
    "current_tracker_var", default=None
)


def current_tracker() -> UsageTracker:
    """The tracker bound to the running job, or the process-wide fallback."""
    return current_tracker_var.get() or _process_tracker


def record_llm_usage(
    prompt_tokens: int,
    completion_tokens: int,
    model: str = "",
    task_type: str = "",
) -> dict[str, Any]:
    return current_tracker().record_llm_usage(prompt_tokens, completion_tokens, model, task_type)


def record_index_query() -> None:
    current_tracker().record_index_query()


def record_stage_timing(stage: str, duration_ms: float) -> None:
    current_tracker().record_stage_timing(stage, duration_ms)
