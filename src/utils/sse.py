# src/utils/sse.py
from __future__ import annotations
from typing import Optional, Dict, Any
import json

def format_sse(event: str, data: Dict[str, Any], id: Optional[str] = None) -> str:
    lines = []
    if id is not None:
        lines.append(f"id: {id}")
    lines.append(f"event: {event}")
    # JSON không chứa newline thô nên 1 dòng data là đủ
    lines.append("data: " + json.dumps(data, ensure_ascii=False, default=str))
    return "\n".join(lines) + "\n\n"

def format_comment(text: str = "keepalive") -> str:
    return f":{text}\n\n"

def format_retry(ms: int) -> str:
    return f"retry: {int(ms)}\n\n"
