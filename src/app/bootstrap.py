# src/app/bootstrap.py
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from app.settings import Settings
from chat.pipeline import ChatPipeline, PipelineConfig
from llm.base import CircuitBreaker, GenerationProvider
from notify.failed_queue import FailedQueue
from notify.queue import NotificationQueue
from observability.logging import get_logger
from prompt.context import ContextAssembler
from storage.base import Storage

log = get_logger("bootstrap")


@dataclass
class Services:
    """Các collaborator dựng 1 lần lúc startup, gắn vào app.state.services."""

    storage: Storage
    provider: GenerationProvider
    assembler: ContextAssembler
    pipeline: ChatPipeline
    notifier: NotificationQueue
    failed_queue: FailedQueue
    redis: Any = None

    async def aclose(self) -> None:
        await self.notifier.shutdown()
        try:
            await self.provider.aclose()
        except Exception as e:
            log.error("provider.close.failed", extra={"err": str(e)})
        # RedisStorage đóng luôn redis client
        await self.storage.aclose()


def mode_defaults(settings: Settings) -> Dict[str, str]:
    return {
        "assistant": settings.DEFAULT_SYSTEM_PROMPT,
        "custom_prompt": settings.DEFAULT_SYSTEM_PROMPT,
        "url_context": settings.URL_CONTEXT_SYSTEM_PROMPT,
    }


def build_storage(settings: Settings):
    """-> (storage, redis_client | None)"""
    if settings.STORAGE_BACKEND == "redis":
        from adapters.redis_client import create_redis
        from storage.redis_store import RedisStorage

        client = create_redis(settings)
        log.info("storage.ready", extra={"backend": "redis"})
        return RedisStorage(client), client

    from storage.memory import InMemoryStorage

    if settings.ENV == "prod":
        log.warning("storage.memory.in_prod", extra={"note": "Data is lost on restart"})
    log.info("storage.ready", extra={"backend": "memory"})
    return InMemoryStorage(), None


def build_provider(settings: Settings) -> GenerationProvider:
    # bắt lỗi thiếu package hoặc config ngay khi khởi động
    breaker = CircuitBreaker(
        provider=settings.LLM_PROVIDER,
        model=settings.LLM_MODEL,
        enabled=settings.LLM_CB_ENABLED,
        fail_threshold=settings.LLM_CB_FAIL_THRESHOLD,
        open_sec=settings.LLM_CB_OPEN_SEC,
    )
    if settings.LLM_PROVIDER == "openai":
        from llm.openai_compatible import OpenAICompatProvider

        if not settings.OPENAI_API_KEY:
            log.warning("openai.key.missing", extra={"note": "Set OPENAI_API_KEY in .env for production"})
        provider: GenerationProvider = OpenAICompatProvider(
            base_url=str(settings.OPENAI_BASE_URL),
            api_key=settings.OPENAI_API_KEY,
            timeout=settings.LLM_REQUEST_TIMEOUT_SEC if settings.LLM_REQUEST_TIMEOUT_SEC > 0 else 600.0,
            max_retries=settings.LLM_MAX_RETRIES,
            base_delay=settings.LLM_RETRY_BASE_DELAY_SEC,
            breaker=breaker,
        )
    else:
        from llm.gemini import GeminiProvider

        if not settings.GOOGLE_API_KEY:
            log.warning("gemini.key.missing", extra={"note": "Set GOOGLE_API_KEY in .env"})
        provider = GeminiProvider(
            api_key=settings.GOOGLE_API_KEY,
            safety_threshold=settings.GEMINI_SAFETY_THRESHOLD,
            thinking_budget=settings.GEMINI_THINKING_BUDGET,
            max_retries=settings.LLM_MAX_RETRIES,
            base_delay=settings.LLM_RETRY_BASE_DELAY_SEC,
            breaker=breaker,
        )
    log.info("llm.ready", extra={"provider": provider.name, "model": settings.LLM_MODEL})
    return provider


def build_notifier(
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> NotificationQueue:
    if not settings.WEBHOOK_URL:
        log.warning("notify.webhook.missing", extra={"note": "Notifications will go to the failed queue"})
    failed = FailedQueue(settings.FAILED_QUEUE_PATH)
    return NotificationQueue(
        webhook_url=settings.WEBHOOK_URL,
        failed_queue=failed,
        retry_delay_sec=settings.NOTIFY_RETRY_DELAY_SEC,
        max_retries=settings.NOTIFY_MAX_RETRIES,
        timeout_sec=settings.NOTIFY_TIMEOUT_SEC,
        transport=transport,
        logger=get_logger("notify", log_file=settings.NOTIFY_LOG_FILE),
    )


def build_pipeline(
    settings: Settings,
    storage: Storage,
    provider: GenerationProvider,
) -> ChatPipeline:
    assembler = ContextAssembler(
        storage,
        mode_defaults(settings),
        window=settings.CONTEXT_WINDOW_MESSAGES,
        max_urls=settings.MAX_URLS_PER_REQUEST,
    )
    config = PipelineConfig(
        default_model=settings.LLM_MODEL,
        default_temperature=settings.LLM_TEMPERATURE,
        default_max_tokens=settings.LLM_MAX_TOKENS,
        timeout_sec=settings.LLM_REQUEST_TIMEOUT_SEC,
        pricing=settings.MODEL_PRICING,
        default_pricing_model=settings.DEFAULT_PRICING_MODEL,
        sources_header=settings.CITATION_SOURCES_HEADER,
    )
    return ChatPipeline(storage, provider, assembler, config)


def build_services(
    settings: Settings,
    storage: Optional[Storage] = None,
    provider: Optional[GenerationProvider] = None,
    notifier: Optional[NotificationQueue] = None,
) -> Services:
    redis_client = None
    if storage is None:
        storage, redis_client = build_storage(settings)
    if provider is None:
        provider = build_provider(settings)
    if notifier is None:
        notifier = build_notifier(settings)
    pipeline = build_pipeline(settings, storage, provider)
    return Services(
        storage=storage,
        provider=provider,
        assembler=pipeline.assembler,
        pipeline=pipeline,
        notifier=notifier,
        failed_queue=notifier.failed_queue,
        redis=redis_client,
    )
