# src/observability/tracing.py
from __future__ import annotations
import contextlib, time
from typing import Any, Dict, Iterator
from observability.logging import get_logger

log = get_logger("trace")

@contextlib.contextmanager
def start_span(name: str, **fields) -> Iterator[Dict[str, Any]]:
    """Span đo thời gian một stage; caller có thể gắn thêm field vào dict yield ra."""
    t0 = time.perf_counter()
    attrs: Dict[str, Any] = dict(fields)
    log.debug("span.start", extra={"span": name, **fields})
    try:
        yield attrs
        dt = (time.perf_counter() - t0) * 1000
        log.info("span.end", extra={"span": name, "ms": round(dt, 2), **attrs})
    except Exception as e:
        dt = (time.perf_counter() - t0) * 1000
        log.error("span.err", extra={"span": name, "ms": round(dt, 2), "err": str(e), **attrs})
        raise
