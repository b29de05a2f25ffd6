import asyncio
import sys
from pathlib import Path
from typing import List, Optional, Sequence

import pytest

ROOT = Path(__file__).resolve().parents[1]
src_str = str(ROOT / "src")
if src_str not in sys.path:
    sys.path.insert(0, src_str)

from chat.pipeline import ChatPipeline, PipelineConfig  # noqa: E402
from chat.transport import Transport  # noqa: E402
from domain.errors import TransportClosed  # noqa: E402
from domain.schemas import (  # noqa: E402
    Conversation,
    GenerationResult,
    GroundingMetadata,
    StreamChunk,
    UsageCounts,
)
from llm.base import GenerationProvider  # noqa: E402
from prompt.context import ContextAssembler  # noqa: E402
from storage.memory import InMemoryStorage  # noqa: E402

MODE_DEFAULTS = {
    "assistant": "default prompt",
    "custom_prompt": "default prompt",
    "url_context": "url prompt",
}

PRICING = {
    "gemini-2.5-flash": {"input": 0.000075, "output": 0.0003},
    "gemini-1.5-pro": {"input": 0.00025, "output": 0.00125},
}


class FakeProvider(GenerationProvider):
    """Provider giả: phát lần lượt `chunks`, có thể lỗi sau `fail_after` chunk."""

    name = "fake"

    def __init__(
        self,
        chunks: Sequence[str] = ("Hello", " ", "world"),
        grounding: Optional[GroundingMetadata] = None,
        usage: Optional[UsageCounts] = None,
        fail_after: Optional[int] = None,
        error: Optional[Exception] = None,
        delay: float = 0.0,
    ):
        super().__init__(max_retries=0)
        self.chunks = list(chunks)
        self.grounding = grounding
        self.usage = usage or UsageCounts(prompt_tokens=10, completion_tokens=5, total_tokens=15)
        self.fail_after = fail_after
        self.error = error or RuntimeError("upstream exploded")
        self.delay = delay
        self.requests: List = []
        self.yielded = 0
        self.stream_closed = False

    async def generate(self, request):
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_after is not None:
            raise self.error
        return GenerationResult(text="".join(self.chunks), usage=self.usage, grounding=self.grounding)

    async def generate_stream(self, request):
        self.requests.append(request)
        try:
            for i, text in enumerate(self.chunks):
                if self.fail_after is not None and i >= self.fail_after:
                    raise self.error
                if self.delay:
                    await asyncio.sleep(self.delay)
                self.yielded += 1
                yield StreamChunk(text=text)
            if self.fail_after is not None:
                raise self.error
            yield StreamChunk(is_final=True, grounding=self.grounding, usage=self.usage)
        finally:
            self.stream_closed = True


class RecordingTransport(Transport):
    """Ghi lại event; close_after=n -> chấp nhận n event rồi coi như client đã đi."""

    def __init__(self, close_after: Optional[int] = None, provider: Optional[FakeProvider] = None):
        self.events: List = []
        self.close_after = close_after
        self.provider = provider
        # số chunk provider đã phát tại thời điểm mỗi event được gửi
        self.yielded_at_send: List[int] = []
        self.closed = False

    async def send(self, event, data):
        if self.closed:
            raise TransportClosed()
        if self.close_after is not None and len(self.events) >= self.close_after:
            self.closed = True
            raise TransportClosed()
        self.events.append((event, data))
        if self.provider is not None:
            self.yielded_at_send.append(self.provider.yielded)

    def names(self) -> List[str]:
        return [e for e, _ in self.events]


@pytest.fixture
def storage():
    s = InMemoryStorage()
    s.add_conversation(Conversation(conversation_id="c1", user_id="u1", chat_mode="assistant"))
    return s


def make_pipeline(storage, provider, timeout_sec: float = 5.0, window: int = 10) -> ChatPipeline:
    assembler = ContextAssembler(storage, MODE_DEFAULTS, window=window, max_urls=20)
    config = PipelineConfig(
        default_model="gemini-2.5-flash",
        timeout_sec=timeout_sec,
        pricing=PRICING,
        default_pricing_model="gemini-2.5-flash",
        sources_header="**Sources:**",
    )
    return ChatPipeline(storage, provider, assembler, config)
