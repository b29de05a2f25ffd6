# src/chat/transport.py
"""Transport giữa pipeline và đúng một client.

send() được await cho từng event: pipeline không đọc chunk tiếp theo từ
provider khi transport chưa nhận xong chunk trước (backpressure). Client
ngắt kết nối -> transport đóng, send() raise TransportClosed.
"""
from __future__ import annotations
import asyncio
from typing import Any, AsyncIterator, Dict, Optional, Tuple

from domain.errors import TransportClosed
from observability.logging import get_logger

log = get_logger("transport")

Event = Tuple[str, Dict[str, Any]]


class Transport:
    closed: bool = False

    async def send(self, event: str, data: Dict[str, Any]) -> None:
        raise NotImplementedError

    def close(self) -> None:
        self.closed = True


class ChannelTransport(Transport):
    """Kênh bounded (mặc định 1 event in-flight) nối pipeline -> response generator.

    Pipeline chạy trong task riêng và put vào queue; StreamingResponse kéo ra
    bằng events(). close() từ phía consumer (client disconnect) đánh thức
    producer đang chờ.
    """

    _EOF = object()

    def __init__(self, maxsize: int = 1):
        self._q: asyncio.Queue = asyncio.Queue(maxsize=max(1, maxsize))
        self._closed_evt = asyncio.Event()
        self.closed = False

    async def send(self, event: str, data: Dict[str, Any]) -> None:
        if self.closed:
            raise TransportClosed()
        put = asyncio.ensure_future(self._q.put((event, data)))
        closed = asyncio.ensure_future(self._closed_evt.wait())
        try:
            done, _ = await asyncio.wait({put, closed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closed.cancel()
        if put not in done:
            put.cancel()
            raise TransportClosed()

    def finish(self) -> None:
        """Producer báo hết event (không chặn; bỏ qua nếu consumer đã đi)."""
        try:
            self._q.put_nowait(self._EOF)
        except asyncio.QueueFull:
            asyncio.ensure_future(self._put_eof())

    async def _put_eof(self) -> None:
        if not self.closed:
            await self._q.put(self._EOF)

    def close(self) -> None:
        self.closed = True
        self._closed_evt.set()

    async def events(self, poll_timeout: Optional[float] = None) -> AsyncIterator[Optional[Event]]:
        """Yield event theo đúng thứ tự; None = không có gì trong poll_timeout (để gửi heartbeat)."""
        while True:
            try:
                if poll_timeout is None:
                    item = await self._q.get()
                else:
                    item = await asyncio.wait_for(self._q.get(), timeout=poll_timeout)
            except asyncio.TimeoutError:
                yield None
                continue
            if item is self._EOF:
                return
            yield item


class WebSocketTransport(Transport):
    """Ghi thẳng ra WebSocket; send_json tự áp backpressure của socket."""

    def __init__(self, websocket):
        self._ws = websocket
        self.closed = False

    async def send(self, event: str, data: Dict[str, Any]) -> None:
        if self.closed:
            raise TransportClosed()
        try:
            await self._ws.send_json({"event": event, **data})
        except Exception as e:
            # WebSocketDisconnect / RuntimeError khi socket đã đóng
            log.info("transport.ws.closed", extra={"err": str(e) or type(e).__name__})
            self.closed = True
            raise TransportClosed() from e
