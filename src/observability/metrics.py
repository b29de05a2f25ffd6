from __future__ import annotations

import time
from typing import Callable

from fastapi import Request, Response
from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    generate_latest,
    CONTENT_TYPE_LATEST,
)

# HTTP metrics
HTTP_REQS = Counter(
    "http_requests_total",
    "HTTP requests",
    ["method", "path", "code"],
)
HTTP_LAT = Histogram(
    "http_request_latency_seconds",
    "HTTP request latency",
    ["method", "path"],
)

# LLM metrics
LLM_LAT = Histogram(
    "llm_latency_seconds",
    "LLM request latency (including retries)",
    ["provider", "model", "mode"],  # mode: generate / stream
)

LLM_ERRORS = Counter(
    "llm_errors_total",
    "LLM request errors",
    ["provider", "model", "mode", "code"],  # code: HTTP status code hoặc 'unknown'
)

LLM_CIRCUIT_OPEN = Counter(
    "llm_circuit_open_total",
    "Number of times the LLM circuit breaker opened",
    ["provider", "model"],
)

# Chat pipeline outcomes
CHAT_OUTCOMES = Counter(
    "chat_outcomes_total",
    "Chat generations by final state",
    ["kind", "status"],  # kind: rest/sse/ws, status: success/error/rejected
)

CITATIONS_ADDED = Counter(
    "chat_citation_sources_total",
    "Grounding source chunks attached to finalized answers",
    ["kind"],
)

# Active streams (SSE + WebSocket)
ACTIVE_STREAMS = Gauge(
    "chat_active_streams",
    "Number of in-flight streaming generations",
    ["transport"],
)

# Notification delivery
NOTIFY_ATTEMPTS = Counter(
    "notify_attempts_total",
    "Webhook delivery attempts",
    ["type", "outcome"],  # outcome: ok / failed
)

NOTIFY_FAILED_QUEUE = Counter(
    "notify_failed_queue_total",
    "Notifications appended to the failed queue after exhausting retries",
    ["type"],
)


def safe_inc(counter, *labels: str, amount: float = 1.0) -> None:
    # không để lỗi metrics làm hỏng flow chính
    try:
        counter.labels(*labels).inc(amount)
    except Exception:
        pass


def metrics_endpoint():
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)


async def metrics_middleware(request: Request, call_next: Callable):
    start = time.perf_counter()
    response = await call_next(request)
    dt = time.perf_counter() - start
    route = request.scope.get("route")
    # dùng path template để tránh label cardinality cao
    path = getattr(route, "path", request.url.path)
    HTTP_REQS.labels(request.method, path, str(response.status_code)).inc()
    HTTP_LAT.labels(request.method, path).observe(dt)
    return response
