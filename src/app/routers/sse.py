from __future__ import annotations

import asyncio
from contextlib import suppress
from typing import AsyncIterator

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from app.dependencies import get_pipeline
from app.settings import SETTINGS
from chat.pipeline import ChatPipeline
from chat.transport import ChannelTransport
from domain.errors import TransportClosed
from domain.schemas import ChatInput
from observability.logging import get_logger
from observability.metrics import ACTIVE_STREAMS
from security.auth import Identity, require_role
from utils.sse import format_comment, format_retry, format_sse

router = APIRouter(prefix="/chat", tags=["sse"])

log = get_logger("sse")


def _track(request: Request, task: asyncio.Task) -> None:
    # giữ reference tới task pipeline cho tới khi nó xong
    tasks = request.app.state.bg_tasks
    tasks.add(task)
    task.add_done_callback(tasks.discard)


@router.post("/stream", response_class=StreamingResponse)
async def stream_message(
    body: ChatInput,
    request: Request,
    pipeline: ChatPipeline = Depends(get_pipeline),
    idt: Identity = Depends(require_role("user")),
):
    stream_sem: asyncio.Semaphore = request.app.state.stream_sem

    async def produce(channel: ChannelTransport) -> None:
        try:
            await pipeline.stream(idt.user_id, body, channel, kind="sse")
        except Exception as e:
            log.error(
                "chat.stream.failed",
                extra={"conversation_id": body.conversation_id, "err": str(e)},
            )
            with suppress(TransportClosed):
                await channel.send("error", {"error": "Internal error", "code": "internal_error"})
        finally:
            channel.finish()

    async def event_gen() -> AsyncIterator[str]:
        # Hạn chế số stream song song (stream_sem)
        async with stream_sem:
            ACTIVE_STREAMS.labels("sse").inc()
            channel = ChannelTransport(maxsize=1)
            # pipeline chạy ngoài cancel scope của response: client đi giữa chừng
            # thì pipeline vẫn kịp ghi thông báo lỗi + usage record
            _track(request, asyncio.create_task(produce(channel)))
            eid = 0
            try:
                if SETTINGS.SSE_RETRY_MS > 0:
                    yield format_retry(SETTINGS.SSE_RETRY_MS)
                async for item in channel.events(poll_timeout=max(5, SETTINGS.SSE_HEARTBEAT_SEC)):
                    if item is None:
                        # Heartbeat để giữ connection sống
                        yield format_comment("keepalive")
                        continue
                    event, data = item
                    eid += 1
                    yield format_sse(event, data, id=str(eid))
            finally:
                if not channel.closed:
                    channel.close()
                ACTIVE_STREAMS.labels("sse").dec()

    headers = {
        "Cache-Control": "no-cache",
        "X-Accel-Buffering": "no",
        "Connection": "keep-alive",
    }
    return StreamingResponse(event_gen(), media_type="text/event-stream", headers=headers)
