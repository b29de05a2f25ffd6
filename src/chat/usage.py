from __future__ import annotations
from typing import Any, Dict, Iterable

from domain.schemas import UsageRecord


def summarize_usage(records: Iterable[UsageRecord]) -> Dict[str, Any]:
    """Tổng hợp usage record theo model (cho /chat/usage/stats)."""
    total = {"requests": 0, "success": 0, "errors": 0, "total_tokens": 0, "cost_estimate": 0.0}
    by_model: Dict[str, Dict[str, Any]] = {}
    latencies = []

    for r in records:
        m = by_model.setdefault(
            r.model_name,
            {"requests": 0, "errors": 0, "prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0, "cost_estimate": 0.0},
        )
        m["requests"] += 1
        m["prompt_tokens"] += r.prompt_tokens
        m["completion_tokens"] += r.completion_tokens
        m["total_tokens"] += r.total_tokens
        m["cost_estimate"] += r.cost_estimate

        total["requests"] += 1
        total["total_tokens"] += r.total_tokens
        total["cost_estimate"] += r.cost_estimate
        if r.status == "success":
            total["success"] += 1
        else:
            total["errors"] += 1
            m["errors"] += 1
        if r.response_time_ms is not None:
            latencies.append(r.response_time_ms)

    for m in by_model.values():
        m["cost_estimate"] = round(m["cost_estimate"], 6)
    total["cost_estimate"] = round(total["cost_estimate"], 6)
    total["avg_response_time_ms"] = int(sum(latencies) / len(latencies)) if latencies else None
    return {**total, "by_model": by_model}
