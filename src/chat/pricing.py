# src/chat/pricing.py
from __future__ import annotations
from typing import Dict, Mapping


def estimate_cost(
    model: str,
    prompt_tokens: int,
    completion_tokens: int,
    pricing: Mapping[str, Dict[str, float]],
    default_model: str,
) -> float:
    """Chi phí ước tính (USD). Giá trong bảng tính theo 1K token; model lạ dùng dòng mặc định."""
    row = pricing.get(model) or pricing.get(default_model)
    if not row:
        return 0.0
    input_cost = (max(0, prompt_tokens) / 1000) * float(row.get("input", 0.0))
    output_cost = (max(0, completion_tokens) / 1000) * float(row.get("output", 0.0))
    return input_cost + output_cost
