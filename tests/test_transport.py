import asyncio

import pytest

from chat.transport import ChannelTransport, WebSocketTransport
from domain.errors import TransportClosed


def test_channel_preserves_order_and_finishes():
    async def run():
        ch = ChannelTransport(maxsize=1)

        async def produce():
            for i in range(5):
                await ch.send("stream_chunk", {"chunk": str(i)})
            ch.finish()

        task = asyncio.create_task(produce())
        got = [item async for item in ch.events()]
        await task
        return got

    got = asyncio.run(run())
    assert [d["chunk"] for _, d in got] == ["0", "1", "2", "3", "4"]


def test_channel_send_blocks_until_consumed_then_close_unblocks():
    async def run():
        ch = ChannelTransport(maxsize=1)
        await ch.send("a", {})
        blocked = asyncio.create_task(ch.send("b", {}))
        await asyncio.sleep(0.01)
        assert not blocked.done()
        ch.close()
        with pytest.raises(TransportClosed):
            await blocked
        with pytest.raises(TransportClosed):
            await ch.send("c", {})

    asyncio.run(run())


def test_channel_events_yield_none_on_idle():
    async def run():
        ch = ChannelTransport()
        agen = ch.events(poll_timeout=0.01)
        first = await agen.__anext__()
        await agen.aclose()
        return first

    assert asyncio.run(run()) is None


def test_websocket_transport_wraps_errors():
    class DeadSocket:
        async def send_json(self, data):
            raise RuntimeError("socket closed")

    class LiveSocket:
        def __init__(self):
            self.sent = []

        async def send_json(self, data):
            self.sent.append(data)

    live = LiveSocket()
    asyncio.run(WebSocketTransport(live).send("stream_chunk", {"chunk": "x"}))
    assert live.sent == [{"event": "stream_chunk", "chunk": "x"}]

    t = WebSocketTransport(DeadSocket())
    with pytest.raises(TransportClosed):
        asyncio.run(t.send("stream_chunk", {"chunk": "x"}))
    assert t.closed
