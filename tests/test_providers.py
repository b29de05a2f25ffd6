import asyncio
from types import SimpleNamespace

import pytest

from domain.schemas import ConversationTurn, FileData, GenerationRequest, Part, ToolsConfig
from llm.base import CircuitBreaker
from llm.gemini import GeminiProvider, build_config, parse_grounding, parse_usage, to_contents
from llm.openai_compatible import OpenAICompatProvider, to_openai_messages


def _request(tools=None, system="sys"):
    return GenerationRequest(
        model="gemini-2.5-flash",
        history=[
            ConversationTurn(role="user", parts=[Part(text="q1")]),
            ConversationTurn(role="model", parts=[Part(text="a1")]),
        ],
        current_message=ConversationTurn(
            role="user",
            parts=[Part(text="q2"), Part(file_data=FileData(file_uri="files/1", mime_type="application/pdf"))],
        ),
        system_instruction=system,
        tools=tools or ToolsConfig(),
    )


def _gemini_response(text="", chunks=None, supports=None, usage=None):
    gm = None
    if chunks is not None or supports is not None:
        gm = SimpleNamespace(grounding_chunks=chunks, grounding_supports=supports)
    return SimpleNamespace(
        text=text,
        candidates=[SimpleNamespace(grounding_metadata=gm)],
        usage_metadata=usage,
    )


class Status(Exception):
    def __init__(self, code):
        super().__init__(f"status {code}")
        self.status_code = code


def test_to_contents_keeps_roles_and_file_parts():
    contents = to_contents(_request())
    assert [c.role for c in contents] == ["user", "model", "user"]
    last = contents[-1].parts
    assert last[0].text == "q2"
    assert last[1].file_data.file_uri == "files/1"
    assert last[1].file_data.mime_type == "application/pdf"


def test_build_config_tools_and_safety():
    cfg = build_config(_request(ToolsConfig(url_context=True, web_search=True)), "BLOCK_NONE", -1)
    assert cfg.tools[0].url_context is not None
    assert cfg.tools[1].google_search is not None
    assert len(cfg.safety_settings) == 4
    assert cfg.thinking_config.thinking_budget == -1

    cfg = build_config(_request(ToolsConfig(url_context=False, web_search=True), system=None), "BLOCK_NONE", None)
    assert len(cfg.tools) == 1 and cfg.tools[0].google_search is not None
    assert cfg.system_instruction is None
    assert cfg.thinking_config is None


def test_parse_grounding_skips_incomplete_supports():
    resp = _gemini_response(
        chunks=[
            SimpleNamespace(web=SimpleNamespace(uri="https://a", title="A")),
            SimpleNamespace(web=None),
        ],
        supports=[
            SimpleNamespace(segment=SimpleNamespace(end_index=12), grounding_chunk_indices=[0]),
            SimpleNamespace(segment=SimpleNamespace(end_index=None), grounding_chunk_indices=[0]),
            SimpleNamespace(segment=SimpleNamespace(end_index=5), grounding_chunk_indices=[]),
        ],
    )
    g = parse_grounding(resp)
    assert [(c.index, c.uri, c.title) for c in g.chunks] == [(0, "https://a", "A"), (1, None, None)]
    assert [(s.segment_end_byte, s.chunk_indices) for s in g.supports] == [(12, [0])]

    assert parse_grounding(_gemini_response()) is None


def test_parse_usage():
    u = parse_usage(
        _gemini_response(usage=SimpleNamespace(prompt_token_count=7, candidates_token_count=3, total_token_count=10))
    )
    assert (u.prompt_tokens, u.completion_tokens, u.total_tokens) == (7, 3, 10)
    assert parse_usage(_gemini_response()) is None


class FakeModels:
    def __init__(self, stream_items=(), errors=()):
        self.stream_items = list(stream_items)
        self.errors = list(errors)
        self.calls = 0

    async def generate_content(self, model, contents, config):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return _gemini_response(text="answer", usage=SimpleNamespace(prompt_token_count=1, candidates_token_count=2, total_token_count=3))

    async def generate_content_stream(self, model, contents, config):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        items = self.stream_items

        async def gen():
            for item in items:
                yield item

        return gen()


def _gemini(models, **kw):
    client = SimpleNamespace(aio=SimpleNamespace(models=models))
    return GeminiProvider(api_key=None, client=client, base_delay=0, **kw)


def test_gemini_stream_emits_text_then_final_with_grounding():
    items = [
        _gemini_response(text="Xin "),
        _gemini_response(text="chào"),
        _gemini_response(
            text="",
            chunks=[SimpleNamespace(web=SimpleNamespace(uri="https://a", title="A"))],
            supports=[SimpleNamespace(segment=SimpleNamespace(end_index=9), grounding_chunk_indices=[0])],
            usage=SimpleNamespace(prompt_token_count=4, candidates_token_count=2, total_token_count=6),
        ),
    ]
    provider = _gemini(FakeModels(stream_items=items))

    async def collect():
        return [c async for c in provider.generate_stream(_request())]

    out = asyncio.run(collect())
    assert [c.text for c in out if not c.is_final] == ["Xin ", "chào"]
    final = out[-1]
    assert final.is_final
    assert final.grounding.chunks[0].uri == "https://a"
    assert final.usage.total_tokens == 6


def test_gemini_retries_transient_errors_only():
    models = FakeModels(errors=[Status(503)])
    result = asyncio.run(_gemini(models).generate(_request()))
    assert result.text == "answer"
    assert models.calls == 2

    models = FakeModels(errors=[Status(400)])
    with pytest.raises(Status):
        asyncio.run(_gemini(models).generate(_request()))
    assert models.calls == 1


def test_circuit_breaker_opens_and_blocks():
    breaker = CircuitBreaker("gemini", "m", enabled=True, fail_threshold=2, open_sec=60)
    models = FakeModels(errors=[Status(503), Status(503)])
    provider = _gemini(models, max_retries=0, breaker=breaker)

    for _ in range(2):
        with pytest.raises(Status):
            asyncio.run(provider.generate(_request()))

    with pytest.raises(RuntimeError, match="llm_circuit_open"):
        asyncio.run(provider.generate(_request()))
    assert models.calls == 2


def test_openai_messages_are_text_only():
    msgs = to_openai_messages(_request())
    assert msgs[0] == {"role": "system", "content": "sys"}
    assert [m["role"] for m in msgs[1:]] == ["user", "assistant", "user"]
    assert msgs[-1]["content"] == "q2"


def test_openai_stream_collects_usage():
    chunks = [
        SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content="hi"))], usage=None),
        SimpleNamespace(choices=[], usage=SimpleNamespace(prompt_tokens=3, completion_tokens=1, total_tokens=4)),
    ]

    class Completions:
        async def create(self, **payload):
            assert payload["stream_options"] == {"include_usage": True}

            async def gen():
                for c in chunks:
                    yield c

            return gen()

    client = SimpleNamespace(chat=SimpleNamespace(completions=Completions()))
    provider = OpenAICompatProvider(base_url="http://x", api_key="k", client=client, base_delay=0)

    async def collect():
        return [c async for c in provider.generate_stream(_request())]

    out = asyncio.run(collect())
    assert [c.text for c in out if not c.is_final] == ["hi"]
    assert out[-1].usage.total_tokens == 4
