# src/llm/base.py
from __future__ import annotations
import asyncio, threading, time
from typing import AsyncIterator, Awaitable, Callable, Optional, TypeVar

from domain.schemas import GenerationRequest, GenerationResult, StreamChunk
from observability.logging import get_logger
from observability.metrics import LLM_CIRCUIT_OPEN, LLM_ERRORS, LLM_LAT

log = get_logger("llm")

TRANSIENT_CODES = {408, 409, 429, 500, 502, 503, 504}

T = TypeVar("T")


def status_of(e: Exception) -> Optional[int]:
    # openai: status_code; google-genai: code
    for attr in ("status_code", "code", "status"):
        v = getattr(e, attr, None)
        if isinstance(v, int):
            return v
    return None


class CircuitBreaker:
    """Circuit breaker theo instance provider (không còn state process-wide)."""

    def __init__(self, provider: str, model: str, enabled: bool, fail_threshold: int, open_sec: float):
        self.provider = provider
        self.model = model
        self.enabled = enabled
        self.fail_threshold = max(1, fail_threshold)
        self.open_sec = open_sec
        self._lock = threading.Lock()
        self._open_until = 0.0
        self._fail_count = 0

    def is_open(self, mode: str) -> bool:
        """True nếu circuit đang mở và chưa hết thời gian cooldown."""
        if not self.enabled:
            return False
        now = time.time()
        with self._lock:
            if self._open_until > now:
                log.warning("llm.circuit.block", extra={"mode": mode, "open_until": int(self._open_until)})
                return True
            if self._open_until:
                # hết thời gian open -> reset về closed
                self._open_until = 0.0
                self._fail_count = 0
        return False

    def on_success(self) -> None:
        if not self.enabled:
            return
        with self._lock:
            self._fail_count = 0
            self._open_until = 0.0

    def on_error(self, e: Exception, mode: str) -> None:
        """Chỉ lỗi transient (hoặc không rõ status) mới tính vào ngưỡng mở circuit."""
        if not self.enabled:
            return
        status = status_of(e)
        if status is not None and status not in TRANSIENT_CODES:
            return
        with self._lock:
            self._fail_count += 1
            if self._fail_count < self.fail_threshold:
                return
            self._open_until = time.time() + self.open_sec
            fail_count = self._fail_count
        try:
            LLM_CIRCUIT_OPEN.labels(self.provider, self.model).inc()
        except Exception:
            pass
        log.error(
            "llm.circuit.open",
            extra={
                "provider": self.provider,
                "model": self.model,
                "mode": mode,
                "fail_count": fail_count,
                "open_sec": self.open_sec,
            },
        )


class GenerationProvider:
    """Collaborator sinh text. generate() blocking, generate_stream() tăng dần.

    Chunk cuối của stream có is_final=True và mang grounding + usage.
    """

    name: str = "unknown"

    def __init__(self, max_retries: int = 2, base_delay: float = 0.6, breaker: Optional[CircuitBreaker] = None):
        self.max_retries = max(0, max_retries)
        self.base_delay = base_delay
        self.breaker = breaker

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        raise NotImplementedError

    def generate_stream(self, request: GenerationRequest) -> AsyncIterator[StreamChunk]:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None

    # ----- metrics helpers -----
    def _observe_latency(self, model: str, mode: str, start: float) -> None:
        try:
            LLM_LAT.labels(self.name, model, mode).observe(time.perf_counter() - start)
        except Exception:
            # không để lỗi metrics làm hỏng request LLM
            pass

    def _record_error(self, model: str, mode: str, e: Exception) -> None:
        code = status_of(e) or "unknown"
        try:
            LLM_ERRORS.labels(self.name, model, mode, str(code)).inc()
        except Exception:
            pass

    def _check_circuit(self, mode: str) -> None:
        if self.breaker is not None and self.breaker.is_open(mode):
            # circuit đang open -> không gọi provider, fail nhanh
            raise RuntimeError("llm_circuit_open")

    async def _with_retries(self, fn: Callable[[], Awaitable[T]], model: str, mode: str) -> T:
        """Retry lỗi transient với exponential backoff. Chỉ bọc phần mở request,
        không bao giờ retry giữa chừng một stream đã phát chunk."""
        attempt = 0
        while True:
            try:
                result = await fn()
                if self.breaker is not None:
                    self.breaker.on_success()
                return result
            except Exception as e:
                self._record_error(model, mode, e)
                if self.breaker is not None:
                    self.breaker.on_error(e, mode)
                status = status_of(e)
                if attempt >= self.max_retries or (status is not None and status not in TRANSIENT_CODES):
                    raise
                log.warning(
                    "llm.retry",
                    extra={"provider": self.name, "mode": mode, "attempt": attempt + 1, "status": status, "err": str(e)},
                )
                await asyncio.sleep(self.base_delay * (2 ** attempt))
                attempt += 1
