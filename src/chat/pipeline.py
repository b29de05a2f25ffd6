from __future__ import annotations

import asyncio
import hashlib
import time
from contextlib import suppress
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Dict, List, Mapping, Optional

from chat.pricing import estimate_cost
from chat.transport import Transport
from citations.engine import annotate
from domain.errors import (
    ChatError,
    ConversationNotFound,
    ProviderError,
    ProviderTimeout,
    TransportClosed,
)
from domain.schemas import (
    ChatInput,
    Conversation,
    GenerationResult,
    GroundingMetadata,
    StoredMessage,
    StreamChunk,
    UsageCounts,
    UsageRecord,
)
from llm.base import GenerationProvider
from observability.logging import get_logger
from observability.metrics import CHAT_OUTCOMES, CITATIONS_ADDED, safe_inc
from observability.tracing import start_span
from prompt.context import AssembledContext, ContextAssembler
from storage.base import Storage

log = get_logger("pipeline")

ERROR_NOTICE = "⚠️ Xin lỗi, không thể tạo câu trả lời lúc này. Vui lòng thử lại sau. (Chi tiết: {reason})"
DISCONNECT_NOTICE = "⚠️ Câu trả lời bị gián đoạn do kết nối tới client đã đóng."
CANCELLED_NOTICE = "⚠️ Câu trả lời bị gián đoạn do máy chủ dừng xử lý yêu cầu."


class State(str, Enum):
    ASSEMBLING = "assembling"
    REQUESTED = "requested"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    COMPLETE = "complete"
    FAILED = "failed"


def _hash_user_id(user_id: str | None) -> str:
    if not user_id:
        return "anon"
    return hashlib.sha256(user_id.encode("utf-8")).hexdigest()[:12]


@dataclass
class PipelineConfig:
    default_model: str = "gemini-2.5-flash"
    default_temperature: float = 0.7
    default_max_tokens: int = 2048
    # <=0: không giới hạn
    timeout_sec: float = 120.0
    pricing: Mapping[str, Dict[str, float]] = field(default_factory=dict)
    default_pricing_model: str = "gemini-2.5-flash"
    sources_header: str = "**Sources:**"


@dataclass
class ChatOutcome:
    """Kết quả một lần generate. status: success / error / rejected (lỗi validation)."""

    status: str
    state: State
    user_message: Optional[StoredMessage] = None
    assistant_message: Optional[StoredMessage] = None
    usage: UsageCounts = field(default_factory=UsageCounts)
    cost_estimate: float = 0.0
    error: Optional[ChatError] = None


@dataclass
class _Run:
    kind: str
    streaming: bool
    user_id: str
    conversation_id: str
    model: str
    temperature: float
    max_tokens: int
    state: State = State.ASSEMBLING
    started: float = 0.0
    context: Optional[AssembledContext] = None
    user_message: Optional[StoredMessage] = None
    assistant_message: Optional[StoredMessage] = None
    usage_recorded: bool = False

    def to(self, state: State) -> None:
        log.debug(
            "chat.state",
            extra={"kind": self.kind, "conversation_id": self.conversation_id, "from": self.state.value, "to": state.value},
        )
        self.state = state

    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self.started) * 1000) if self.started else 0

    def usage_metadata(self) -> Dict[str, object]:
        ctx = self.context
        return {
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "file_count": ctx.file_count if ctx else 0,
            "url_count": ctx.url_count if ctx else 0,
            "streaming": self.streaming,
        }


class ChatPipeline:
    """
    ASSEMBLING -> REQUESTED -> STREAMING -> FINALIZING -> COMPLETE | FAILED

    - Lỗi validation ở ASSEMBLING: không gọi provider, không persist gì.
    - Từ REQUESTED trở đi: user message đã persist, nên mọi kết cục đều phải
      có 1 bản ghi phía assistant (câu trả lời thật hoặc thông báo lỗi) và
      đúng 1 usage record.
    """

    def __init__(
        self,
        storage: Storage,
        provider: GenerationProvider,
        assembler: ContextAssembler,
        config: Optional[PipelineConfig] = None,
    ):
        self.storage = storage
        self.provider = provider
        self.assembler = assembler
        self.config = config or PipelineConfig()

    # ----------- helpers -----------
    def _new_run(self, kind: str, streaming: bool, user_id: str, ci: ChatInput) -> _Run:
        return _Run(
            kind=kind,
            streaming=streaming,
            user_id=user_id,
            conversation_id=ci.conversation_id,
            model=ci.model or self.config.default_model,
            temperature=ci.temperature if ci.temperature is not None else self.config.default_temperature,
            max_tokens=ci.max_tokens or self.config.default_max_tokens,
        )

    async def _assemble(self, run: _Run, ci: ChatInput) -> Conversation:
        with start_span("chat.assemble", kind=run.kind):
            conversation = await self.storage.load_conversation(ci.conversation_id, run.user_id)
            if conversation is None:
                raise ConversationNotFound(ci.conversation_id)
            run.context = await self.assembler.assemble(
                conversation,
                run.user_id,
                ci.message,
                ci.resource_ids,
                model=run.model,
                temperature=run.temperature,
                max_output_tokens=run.max_tokens,
            )
        return conversation

    async def _persist_user(self, run: _Run, ci: ChatInput) -> StoredMessage:
        run.to(State.REQUESTED)
        run.started = time.perf_counter()
        with start_span("chat.persist_user", kind=run.kind):
            run.user_message = await self.storage.persist_message(
                run.conversation_id,
                "user",
                ci.message,
                run.context.user_metadata if run.context else {},
            )
        return run.user_message

    def _timeout(self) -> Optional[float]:
        return self.config.timeout_sec if self.config.timeout_sec > 0 else None

    def _finalize_text(self, run: _Run, text: str, grounding: Optional[GroundingMetadata]) -> str:
        if grounding is not None and grounding.chunks:
            safe_inc(CITATIONS_ADDED, run.kind, amount=sum(1 for c in grounding.chunks if c.uri))
        return annotate(text, grounding, self.config.sources_header)

    async def _finalize(
        self,
        run: _Run,
        text: str,
        grounding: Optional[GroundingMetadata],
        usage: UsageCounts,
    ) -> ChatOutcome:
        run.to(State.FINALIZING)
        final_text = self._finalize_text(run, text, grounding)
        with start_span("chat.persist_assistant", kind=run.kind):
            run.assistant_message = await self.storage.persist_message(
                run.conversation_id,
                "assistant",
                final_text,
                {"model": run.model, "sources": len([c for c in (grounding.chunks if grounding else []) if c.uri])},
            )
            await self.storage.touch_conversation(run.conversation_id)

        cost = estimate_cost(
            run.model,
            usage.prompt_tokens,
            usage.completion_tokens,
            self.config.pricing,
            self.config.default_pricing_model,
        )
        await self.storage.record_usage(
            UsageRecord(
                user_id=run.user_id,
                conversation_id=run.conversation_id,
                message_id=run.assistant_message.message_id,
                provider=self.provider.name,
                model_name=run.model,
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
                total_tokens=usage.total_tokens,
                cost_estimate=cost,
                response_time_ms=run.elapsed_ms(),
                status="success",
                metadata=run.usage_metadata(),
            )
        )
        run.usage_recorded = True
        run.to(State.COMPLETE)
        safe_inc(CHAT_OUTCOMES, run.kind, "success")
        self._log_completed(run, "success", len(text), len(final_text))
        return ChatOutcome(
            status="success",
            state=run.state,
            user_message=run.user_message,
            assistant_message=run.assistant_message,
            usage=usage,
            cost_estimate=cost,
        )

    async def _fail(self, run: _Run, error: ChatError, notice: str) -> ChatOutcome:
        """Giữ transcript nhất quán: thông báo lỗi phía assistant + usage status=error.

        Không bao giờ persist text trả lời dở dang.
        """
        run.to(State.FAILED)
        log.error(
            "chat.failed",
            extra={
                "kind": run.kind,
                "conversation_id": run.conversation_id,
                "code": error.code,
                "err": error.message,
                "ms": run.elapsed_ms(),
            },
        )

        if run.user_message is not None and run.assistant_message is None:
            try:
                run.assistant_message = await self.storage.persist_message(
                    run.conversation_id,
                    "assistant",
                    notice,
                    {"error": True, "error_code": error.code},
                )
            except Exception as e:
                log.error("chat.failed.persist_notice_failed", extra={"conversation_id": run.conversation_id, "err": str(e)})

        if not run.usage_recorded:
            try:
                await self.storage.record_usage(
                    UsageRecord(
                        user_id=run.user_id,
                        conversation_id=run.conversation_id,
                        message_id=run.assistant_message.message_id if run.assistant_message else None,
                        provider=self.provider.name,
                        model_name=run.model,
                        response_time_ms=run.elapsed_ms(),
                        status="error",
                        error_message=error.message,
                        metadata={**run.usage_metadata(), "error_code": error.code},
                    )
                )
                run.usage_recorded = True
            except Exception as e:
                log.error("chat.failed.usage_failed", extra={"conversation_id": run.conversation_id, "err": str(e)})

        safe_inc(CHAT_OUTCOMES, run.kind, "error")
        return ChatOutcome(
            status="error",
            state=run.state,
            user_message=run.user_message,
            assistant_message=run.assistant_message,
            error=error,
        )

    async def _fail_cancelled(self, run: _Run) -> None:
        # task bị cancel (shutdown): vẫn ghi notice + usage trước khi re-raise
        if run.state in (State.COMPLETE, State.FAILED):
            return
        err = ChatError("cancelled", "Response generation was cancelled")
        await asyncio.shield(self._fail(run, err, CANCELLED_NOTICE))

    def _reject(self, run: _Run, error: ChatError) -> ChatOutcome:
        run.to(State.FAILED)
        log.warning(
            "chat.rejected",
            extra={"kind": run.kind, "conversation_id": run.conversation_id, "code": error.code, "err": error.message},
        )
        safe_inc(CHAT_OUTCOMES, run.kind, "rejected")
        return ChatOutcome(status="rejected", state=run.state, error=error)

    def _log_completed(self, run: _Run, status: str, raw_len: int, final_len: int) -> None:
        """Business event cho REST/SSE/WS: chỉ log độ dài & trạng thái, không log nội dung."""
        ctx = run.context
        log.info(
            "chat.completed",
            extra={
                "kind": run.kind,
                "user_hash": _hash_user_id(run.user_id),
                "conversation_id": run.conversation_id,
                "model": run.model,
                "status": status,
                "answer_len": raw_len,
                "final_len": final_len,
                "file_count": ctx.file_count if ctx else 0,
                "url_count": ctx.url_count if ctx else 0,
                "ms": run.elapsed_ms(),
            },
        )

    @staticmethod
    def _as_failure(run: _Run, e: Exception) -> ChatError:
        if isinstance(e, ChatError):
            return e
        if run.state == State.STREAMING:
            return ProviderError("provider_error", f"Failed to generate response: {e}")
        return ChatError("storage_error", f"Failed to save conversation state: {e}")

    # ----------- non-streaming -----------
    async def send(self, user_id: str, ci: ChatInput, kind: str = "rest") -> ChatOutcome:
        """Cùng state machine, STREAMING là 1 call blocking. Lỗi validation -> outcome 'rejected'."""
        run = self._new_run(kind, False, user_id, ci)
        try:
            await self._assemble(run, ci)
        except ChatError as e:
            return self._reject(run, e)

        try:
            await self._persist_user(run, ci)
            run.to(State.STREAMING)
            try:
                with start_span("llm.generate", kind=kind, model=run.model):
                    result: GenerationResult = await asyncio.wait_for(
                        self.provider.generate(run.context.request), timeout=self._timeout()
                    )
            except asyncio.TimeoutError:
                raise ProviderTimeout(self.config.timeout_sec)
            return await self._finalize(run, result.text, result.grounding, result.usage)
        except asyncio.CancelledError:
            await self._fail_cancelled(run)
            raise
        except Exception as e:
            err = self._as_failure(run, e)
            return await self._fail(run, err, ERROR_NOTICE.format(reason=err.message))

    # ----------- streaming -----------
    async def _next_chunk(self, agen: AsyncIterator[StreamChunk], deadline: Optional[float]) -> StreamChunk:
        if deadline is None:
            return await agen.__anext__()
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise ProviderTimeout(self.config.timeout_sec)
        try:
            return await asyncio.wait_for(agen.__anext__(), timeout=remaining)
        except asyncio.TimeoutError:
            raise ProviderTimeout(self.config.timeout_sec)

    async def stream(self, user_id: str, ci: ChatInput, transport: Transport, kind: str = "sse") -> ChatOutcome:
        """
        Relay từng chunk của provider tới transport theo đúng thứ tự, 1-1.
        Chunk kế tiếp chỉ được đọc sau khi transport nhận xong chunk trước.
        Event: message_saved, stream_start, stream_chunk*, stream_end, message_complete | error.
        """
        run = self._new_run(kind, True, user_id, ci)
        try:
            await self._assemble(run, ci)
        except ChatError as e:
            outcome = self._reject(run, e)
            with suppress(TransportClosed):
                await transport.send("error", {"error": e.message, "code": e.code})
            return outcome

        parts: List[str] = []
        try:
            user_msg = await self._persist_user(run, ci)
            await transport.send("message_saved", {"message": user_msg.model_dump(mode="json")})
            await transport.send("stream_start", {})

            run.to(State.STREAMING)
            timeout = self._timeout()
            deadline = time.monotonic() + timeout if timeout is not None else None
            final: Optional[StreamChunk] = None
            agen = self.provider.generate_stream(run.context.request)
            try:
                with start_span("llm.stream", kind=kind, model=run.model) as span:
                    while True:
                        try:
                            chunk = await self._next_chunk(agen, deadline)
                        except StopAsyncIteration:
                            break
                        if chunk.is_final:
                            final = chunk
                            break
                        if not chunk.text:
                            continue
                        parts.append(chunk.text)
                        await transport.send("stream_chunk", {"chunk": chunk.text})
                    span["chunks"] = len(parts)
            finally:
                # dừng đọc provider ngay khi client đi / lỗi / xong
                with suppress(Exception):
                    await agen.aclose()

            usage = (final.usage if final and final.usage else None) or UsageCounts()
            grounding = final.grounding if final else None
            outcome = await self._finalize(run, "".join(parts), grounding, usage)
        except TransportClosed:
            log.info(
                "chat.stream.client_disconnected",
                extra={"conversation_id": run.conversation_id, "chunks": len(parts), "state": run.state.value},
            )
            if run.state == State.COMPLETE:
                return ChatOutcome(
                    status="success",
                    state=run.state,
                    user_message=run.user_message,
                    assistant_message=run.assistant_message,
                )
            err = ChatError("client_disconnected", "Client disconnected before the response completed")
            return await self._fail(run, err, DISCONNECT_NOTICE)
        except asyncio.CancelledError:
            await self._fail_cancelled(run)
            raise
        except Exception as e:
            err = self._as_failure(run, e)
            outcome = await self._fail(run, err, ERROR_NOTICE.format(reason=err.message))
            with suppress(TransportClosed):
                await transport.send("error", {"error": err.message, "code": err.code})
            return outcome

        # chỉ báo hoàn tất sau khi đã persist xong
        with suppress(TransportClosed):
            await transport.send("stream_end", {"usage": outcome.usage.model_dump()})
            await transport.send(
                "message_complete",
                {
                    "message": outcome.assistant_message.model_dump(mode="json"),
                    "usage": outcome.usage.model_dump(),
                    "cost_estimate": outcome.cost_estimate,
                },
            )
        return outcome
