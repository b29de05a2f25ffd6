from __future__ import annotations
import time
from typing import Any, AsyncIterator, Dict, List, Optional

from domain.schemas import (
    ConversationTurn,
    GenerationRequest,
    GenerationResult,
    StreamChunk,
    UsageCounts,
)
from llm.base import CircuitBreaker, GenerationProvider
from observability.logging import get_logger

log = get_logger("llm.openai")


def _turn_text(turn: ConversationTurn) -> str:
    return "\n".join(p.text for p in turn.parts if p.text)


def to_openai_messages(request: GenerationRequest) -> List[Dict[str, Any]]:
    """Chat Completions chỉ nhận text: file part bị bỏ, không có grounding."""
    out: List[Dict[str, Any]] = []
    if request.system_instruction:
        out.append({"role": "system", "content": request.system_instruction})
    for t in [*request.history, request.current_message]:
        role = "assistant" if t.role == "model" else "user"
        out.append({"role": role, "content": _turn_text(t)})
    return out


def _usage(u: Any) -> UsageCounts:
    if u is None:
        return UsageCounts()
    return UsageCounts(
        prompt_tokens=getattr(u, "prompt_tokens", None) or 0,
        completion_tokens=getattr(u, "completion_tokens", None) or 0,
        total_tokens=getattr(u, "total_tokens", None) or 0,
    )


class OpenAICompatProvider(GenerationProvider):
    name = "openai_compatible"

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        timeout: float = 60.0,
        max_retries: int = 2,
        base_delay: float = 0.6,
        breaker: Optional[CircuitBreaker] = None,
        client: Any = None,
    ) -> None:
        super().__init__(max_retries=max_retries, base_delay=base_delay, breaker=breaker)
        if client is None:
            from openai import AsyncOpenAI

            client = AsyncOpenAI(base_url=base_url, api_key=api_key or "lm-studio", timeout=timeout)
        self._async = client

    def _payload(self, request: GenerationRequest, stream: bool) -> Dict[str, Any]:
        dropped = sum(1 for p in request.current_message.parts if p.file_data is not None)
        if dropped:
            log.warning("llm.openai.file_parts_dropped", extra={"count": dropped})
        payload: Dict[str, Any] = {
            "model": request.model,
            "messages": to_openai_messages(request),
            "max_tokens": request.max_output_tokens,
            "temperature": request.temperature,
        }
        if stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
        return payload

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        mode = "generate"
        self._check_circuit(mode)
        payload = self._payload(request, stream=False)

        start = time.perf_counter()
        resp = await self._with_retries(
            lambda: self._async.chat.completions.create(**payload),
            request.model,
            mode,
        )
        self._observe_latency(request.model, mode, start)
        return GenerationResult(
            text=resp.choices[0].message.content or "",
            usage=_usage(getattr(resp, "usage", None)),
        )

    async def generate_stream(self, request: GenerationRequest) -> AsyncIterator[StreamChunk]:
        mode = "stream"
        self._check_circuit(mode)
        payload = self._payload(request, stream=True)

        start = time.perf_counter()
        resp = await self._with_retries(
            lambda: self._async.chat.completions.create(**payload),
            request.model,
            mode,
        )

        usage = UsageCounts()
        try:
            async for chunk in resp:
                if getattr(chunk, "usage", None) is not None:
                    usage = _usage(chunk.usage)
                # chunk usage cuối cùng có choices rỗng
                if not chunk.choices:
                    continue
                content = getattr(chunk.choices[0].delta, "content", None)
                if content:
                    yield StreamChunk(text=content)
        except Exception as e:
            self._record_error(request.model, mode, e)
            if self.breaker is not None:
                self.breaker.on_error(e, mode)
            raise

        self._observe_latency(request.model, mode, start)
        yield StreamChunk(is_final=True, usage=usage)

    async def aclose(self) -> None:
        await self._async.close()
