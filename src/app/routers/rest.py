from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from app.dependencies import get_pipeline, get_storage
from chat.pipeline import ChatPipeline
from chat.usage import summarize_usage
from domain.schemas import ChatInput, ChatReply
from observability.logging import get_request_id
from security.auth import Identity, require_role
from storage.base import Storage

router = APIRouter(prefix="/chat", tags=["chat"])


@router.post("/send", response_model=ChatReply)
async def send_message(
    body: ChatInput,
    pipeline: ChatPipeline = Depends(get_pipeline),
    idt: Identity = Depends(require_role("user")),
):
    outcome = await pipeline.send(idt.user_id, body, kind="rest")

    if outcome.status == "rejected":
        # exception handler ChatError -> {error, code, rid}
        raise outcome.error

    if outcome.status == "error":
        err = outcome.error
        return JSONResponse(
            status_code=err.http_status,
            content={
                "error": err.message,
                "code": err.code,
                "rid": get_request_id(),
                # thông báo lỗi đã persist, client hiển thị như 1 message
                "assistant_message": (
                    outcome.assistant_message.model_dump(mode="json") if outcome.assistant_message else None
                ),
            },
        )

    return ChatReply(
        assistant_message=outcome.assistant_message,
        usage=outcome.usage,
        cost_estimate=outcome.cost_estimate,
    )


@router.get("/usage/history")
async def usage_history(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    storage: Storage = Depends(get_storage),
    idt: Identity = Depends(require_role("user")),
):
    records = await storage.list_usage(idt.user_id, limit=limit, offset=offset)
    return {
        "items": [r.model_dump(mode="json") for r in records],
        "limit": limit,
        "offset": offset,
    }


@router.get("/usage/stats")
async def usage_stats(
    limit: int = Query(1000, ge=1, le=10000),
    storage: Storage = Depends(get_storage),
    idt: Identity = Depends(require_role("user")),
):
    records = await storage.list_usage(idt.user_id, limit=limit, offset=0)
    return summarize_usage(records)
