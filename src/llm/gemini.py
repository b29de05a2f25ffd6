# src/llm/gemini.py
from __future__ import annotations
import time
from typing import Any, AsyncIterator, List, Optional

from google import genai
from google.genai import types

from domain.schemas import (
    ConversationTurn,
    GenerationRequest,
    GenerationResult,
    GroundingMetadata,
    GroundingSupport,
    Part,
    SourceChunk,
    StreamChunk,
    UsageCounts,
)
from llm.base import CircuitBreaker, GenerationProvider
from observability.logging import get_logger

log = get_logger("llm.gemini")

SAFETY_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)


def _to_part(p: Part) -> types.Part:
    if p.file_data is not None:
        return types.Part(
            file_data=types.FileData(file_uri=p.file_data.file_uri, mime_type=p.file_data.mime_type)
        )
    return types.Part(text=p.text)


def to_contents(request: GenerationRequest) -> List[types.Content]:
    turns: List[ConversationTurn] = [*request.history, request.current_message]
    return [types.Content(role=t.role, parts=[_to_part(p) for p in t.parts]) for t in turns]


def build_config(
    request: GenerationRequest,
    safety_threshold: str,
    thinking_budget: Optional[int],
) -> types.GenerateContentConfig:
    tools: List[types.Tool] = []
    if request.tools.url_context:
        tools.append(types.Tool(url_context=types.UrlContext()))
    if request.tools.web_search:
        tools.append(types.Tool(google_search=types.GoogleSearch()))

    kwargs: dict = {
        "temperature": request.temperature,
        "max_output_tokens": request.max_output_tokens,
        "safety_settings": [
            types.SafetySetting(category=c, threshold=safety_threshold) for c in SAFETY_CATEGORIES
        ],
        "tools": tools,
    }
    # system_instruction phải nằm trong config, không phải trong contents
    if request.system_instruction:
        kwargs["system_instruction"] = request.system_instruction
    if thinking_budget is not None:
        kwargs["thinking_config"] = types.ThinkingConfig(thinking_budget=thinking_budget)
    return types.GenerateContentConfig(**kwargs)


def parse_grounding(response: Any) -> Optional[GroundingMetadata]:
    """grounding_metadata của candidate đầu tiên -> GroundingMetadata (None nếu không có)."""
    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        return None
    gm = getattr(candidates[0], "grounding_metadata", None)
    if gm is None:
        return None

    chunks: List[SourceChunk] = []
    for i, ch in enumerate(getattr(gm, "grounding_chunks", None) or []):
        web = getattr(ch, "web", None)
        chunks.append(
            SourceChunk(
                index=i,
                uri=getattr(web, "uri", None) if web is not None else None,
                title=getattr(web, "title", None) if web is not None else None,
            )
        )

    supports: List[GroundingSupport] = []
    for s in getattr(gm, "grounding_supports", None) or []:
        seg = getattr(s, "segment", None)
        indices = getattr(s, "grounding_chunk_indices", None)
        end = getattr(seg, "end_index", None) if seg is not None else None
        if end is None or not indices:
            continue
        supports.append(GroundingSupport(segment_end_byte=int(end), chunk_indices=[int(i) for i in indices]))

    if not chunks and not supports:
        return None
    return GroundingMetadata(supports=supports, chunks=chunks)


def parse_usage(response: Any) -> Optional[UsageCounts]:
    um = getattr(response, "usage_metadata", None)
    if um is None:
        return None
    return UsageCounts(
        prompt_tokens=getattr(um, "prompt_token_count", None) or 0,
        completion_tokens=getattr(um, "candidates_token_count", None) or 0,
        total_tokens=getattr(um, "total_token_count", None) or 0,
    )


class GeminiProvider(GenerationProvider):
    name = "google_gemini"

    def __init__(
        self,
        api_key: Optional[str],
        safety_threshold: str = "BLOCK_MEDIUM_AND_ABOVE",
        thinking_budget: Optional[int] = -1,
        max_retries: int = 2,
        base_delay: float = 0.6,
        breaker: Optional[CircuitBreaker] = None,
        client: Any = None,
    ):
        super().__init__(max_retries=max_retries, base_delay=base_delay, breaker=breaker)
        self.safety_threshold = safety_threshold
        self.thinking_budget = thinking_budget
        self._client = client if client is not None else genai.Client(api_key=api_key)

    def _config(self, request: GenerationRequest) -> types.GenerateContentConfig:
        return build_config(request, self.safety_threshold, self.thinking_budget)

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        mode = "generate"
        self._check_circuit(mode)
        contents = to_contents(request)
        config = self._config(request)
        log.info(
            "llm.request",
            extra={
                "provider": self.name,
                "model": request.model,
                "mode": mode,
                "history_len": len(request.history),
                "parts": len(request.current_message.parts),
                "url_context": request.tools.url_context,
                "has_system_instruction": bool(request.system_instruction),
            },
        )

        start = time.perf_counter()
        resp = await self._with_retries(
            lambda: self._client.aio.models.generate_content(model=request.model, contents=contents, config=config),
            request.model,
            mode,
        )
        self._observe_latency(request.model, mode, start)
        return GenerationResult(
            text=resp.text or "",
            usage=parse_usage(resp) or UsageCounts(),
            grounding=parse_grounding(resp),
        )

    async def generate_stream(self, request: GenerationRequest) -> AsyncIterator[StreamChunk]:
        mode = "stream"
        self._check_circuit(mode)
        contents = to_contents(request)
        config = self._config(request)
        log.info(
            "llm.request",
            extra={
                "provider": self.name,
                "model": request.model,
                "mode": mode,
                "history_len": len(request.history),
                "parts": len(request.current_message.parts),
                "url_context": request.tools.url_context,
                "has_system_instruction": bool(request.system_instruction),
            },
        )

        start = time.perf_counter()
        stream = await self._with_retries(
            lambda: self._client.aio.models.generate_content_stream(
                model=request.model, contents=contents, config=config
            ),
            request.model,
            mode,
        )

        grounding: Optional[GroundingMetadata] = None
        usage: Optional[UsageCounts] = None
        try:
            async for chunk in stream:
                # grounding + usage thường chỉ có ở chunk cuối; giữ bản mới nhất
                gm = parse_grounding(chunk)
                if gm is not None:
                    grounding = gm
                u = parse_usage(chunk)
                if u is not None:
                    usage = u
                text = chunk.text
                if text:
                    yield StreamChunk(text=text)
        except Exception as e:
            self._record_error(request.model, mode, e)
            if self.breaker is not None:
                self.breaker.on_error(e, mode)
            raise
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception:
                    pass

        self._observe_latency(request.model, mode, start)
        yield StreamChunk(is_final=True, grounding=grounding, usage=usage or UsageCounts())

    async def aclose(self) -> None:
        aio = getattr(self._client, "aio", None)
        close = getattr(aio, "aclose", None)
        if close is not None:
            await close()
