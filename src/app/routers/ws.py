from __future__ import annotations

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError

from chat.transport import WebSocketTransport
from domain.errors import TransportClosed
from domain.schemas import ChatInput
from observability.logging import get_logger
from observability.metrics import ACTIVE_STREAMS
from security.auth import get_identity

router = APIRouter(prefix="/chat", tags=["ws"])

log = get_logger("ws")


@router.websocket("/ws")
async def chat_ws(websocket: WebSocket):
    """
    Client gửi frame JSON {"event": "send_message", "conversation_id": ..., "message": ...}.
    Server trả event: message_saved, stream_start, stream_chunk, stream_end,
    message_complete hoặc error. Mỗi connection xử lý tuần tự từng message.
    """
    try:
        idt = get_identity(websocket)
    except HTTPException as e:
        log.warning("ws.auth.rejected", extra={"err": e.detail})
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    services = websocket.app.state.services
    stream_sem = websocket.app.state.stream_sem
    transport = WebSocketTransport(websocket)
    log.info("ws.connected", extra={"user_id": idt.user_id})

    try:
        while not transport.closed:
            try:
                frame = await websocket.receive_json()
            except ValueError:
                await transport.send("error", {"error": "Invalid JSON frame", "code": "invalid_frame"})
                continue
            if not isinstance(frame, dict) or frame.get("event") != "send_message":
                await transport.send("error", {"error": "Unknown event", "code": "unknown_event"})
                continue

            try:
                ci = ChatInput.model_validate({k: v for k, v in frame.items() if k != "event"})
            except ValidationError as e:
                await transport.send(
                    "error",
                    {"error": "ValidationError", "code": "validation_error", "details": e.errors(include_url=False, include_context=False, include_input=False)},
                )
                continue

            async with stream_sem:
                ACTIVE_STREAMS.labels("ws").inc()
                try:
                    await services.pipeline.stream(idt.user_id, ci, transport, kind="ws")
                finally:
                    ACTIVE_STREAMS.labels("ws").dec()
    except (WebSocketDisconnect, TransportClosed):
        pass
    log.info("ws.disconnected", extra={"user_id": idt.user_id})
