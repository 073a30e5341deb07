"""Tests for the proxy socket channel."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from websockets.exceptions import ConnectionClosedError

from kafka_proxy_client.channel import ChannelState, ProxyChannel, run_keepalive
from kafka_proxy_client.config import ProxyConfig
from kafka_proxy_client.errors import (
    ProxyChannelClosedError,
    ProxyClientError,
    ProxyConfigurationError,
    ProxyConnectionError,
    ProxyHandshakeError,
    ProxyTimeout,
)
from kafka_proxy_client.tokens import AccessToken

from .conftest import FakeConnection

CONNECT = "kafka_proxy_client.channel.connect_websocket"


async def _open_channel(conn: FakeConnection, **kwargs) -> ProxyChannel:
    channel = ProxyChannel("wss://proxy/ws", **kwargs)
    with patch(CONNECT, new=AsyncMock(return_value=conn)):
        await channel.connect("abc")
    return channel


def _sent(conn: FakeConnection) -> list[dict]:
    return [json.loads(frame) for frame in conn.sent]


class TestConnect:
    """Tests for connect and the state machine."""

    @pytest.mark.asyncio
    async def test_connect_sends_bearer_header(self, fake_ws: FakeConnection) -> None:
        """The upgrade request carries the bearer token."""
        channel = ProxyChannel("wss://proxy/ws", connect_timeout=3.0)
        token = AccessToken.static("abc")

        with patch(CONNECT, new=AsyncMock(return_value=fake_ws)) as mock_connect:
            await channel.connect(token)

        kwargs = mock_connect.call_args.kwargs
        assert kwargs["headers"] == {"Authorization": "Bearer abc"}
        assert kwargs["timeout"] == 3.0
        assert channel.state is ChannelState.OPEN
        assert channel.is_open

    @pytest.mark.asyncio
    async def test_state_transitions_reported(self, fake_ws: FakeConnection) -> None:
        """Every state change is reported to the callback."""
        channel = ProxyChannel("wss://proxy/ws")
        states: list[ChannelState] = []
        channel.on_state_changed(states.append)

        with patch(CONNECT, new=AsyncMock(return_value=fake_ws)):
            await channel.connect("abc")
        await channel.close()

        assert states == [
            ChannelState.CONNECTING,
            ChannelState.OPEN,
            ChannelState.CLOSING,
            ChannelState.CLOSED,
        ]

    @pytest.mark.asyncio
    async def test_failed_connect_closes(self) -> None:
        """A failed handshake leaves the channel closed."""
        channel = ProxyChannel("wss://proxy/ws")
        error = ProxyHandshakeError("401")

        with patch(CONNECT, new=AsyncMock(side_effect=error)):
            with pytest.raises(ProxyHandshakeError):
                await channel.connect("abc")

        assert channel.state is ChannelState.CLOSED

    @pytest.mark.asyncio
    async def test_connect_twice_rejected(self, fake_ws: FakeConnection) -> None:
        """A channel connects only once."""
        channel = await _open_channel(fake_ws)

        with pytest.raises(ProxyChannelClosedError):
            await channel.connect("abc")

    @pytest.mark.asyncio
    async def test_close_during_connect_releases_socket(
        self, fake_ws: FakeConnection
    ) -> None:
        """Closing mid-handshake releases the new socket."""
        channel = ProxyChannel("wss://proxy/ws")
        gate = asyncio.Event()

        async def slow_connect(*args, **kwargs):
            await gate.wait()
            return fake_ws

        with patch(CONNECT, new=slow_connect):
            task = asyncio.create_task(channel.connect("abc"))
            await asyncio.sleep(0)
            await channel.close()
            gate.set()
            with pytest.raises(ProxyChannelClosedError):
                await task

        assert channel.state is ChannelState.CLOSED
        assert fake_ws.close_calls

    def test_plain_ws_rejected(self) -> None:
        """Plaintext ws:// is refused unless allow_http is set."""
        with pytest.raises(ProxyConfigurationError):
            ProxyChannel("ws://proxy/ws")

    def test_plain_ws_allowed_when_opted_in(self) -> None:
        """allow_http permits a plaintext socket URL."""
        channel = ProxyChannel("ws://proxy/ws", allow_http=True)
        assert channel.state is ChannelState.UNOPENED

    def test_from_config(self) -> None:
        """Channel settings are taken from ProxyConfig."""
        config = ProxyConfig(
            ws_url="wss://proxy/ws", send_timeout=2.0, receive_buffer_bytes=512
        )
        channel = ProxyChannel.from_config(config)
        assert channel.url == "wss://proxy/ws"
        assert channel._send_timeout == 2.0
        assert channel._max_message_size == 512


class TestClose:
    """Tests for close."""

    @pytest.mark.asyncio
    async def test_close_sends_normal_closure(self, fake_ws: FakeConnection) -> None:
        """Close uses code 1000 and the given reason."""
        channel = await _open_channel(fake_ws)

        await channel.close("done")

        assert fake_ws.close_calls == [(1000, "done")]
        assert channel.state is ChannelState.CLOSED

    @pytest.mark.asyncio
    async def test_double_close_is_noop(self, fake_ws: FakeConnection) -> None:
        """Closing twice performs the close handshake once."""
        channel = await _open_channel(fake_ws)

        await channel.close()
        await channel.close()

        assert len(fake_ws.close_calls) == 1
        assert channel.state is ChannelState.CLOSED

    @pytest.mark.asyncio
    async def test_close_unopened(self) -> None:
        """Closing an unopened channel needs no I/O."""
        channel = ProxyChannel("wss://proxy/ws")
        await channel.close()
        assert channel.state is ChannelState.CLOSED

    @pytest.mark.asyncio
    async def test_failed_close_aborts_transport(
        self, fake_ws: FakeConnection
    ) -> None:
        """A failed close handshake still aborts the transport."""
        fake_ws.close_error = OSError("reset")
        channel = await _open_channel(fake_ws)

        await channel.close()

        fake_ws.transport.abort.assert_called_once()
        assert channel.state is ChannelState.CLOSED

    @pytest.mark.asyncio
    async def test_close_timeout_aborts_transport(self) -> None:
        """A timed out close handshake still aborts the transport."""
        conn = FakeConnection()
        conn.close = AsyncMock(side_effect=TimeoutError())
        channel = await _open_channel(conn)

        await channel.close()

        conn.transport.abort.assert_called_once()
        assert channel.state is ChannelState.CLOSED

    @pytest.mark.asyncio
    async def test_clean_close_keeps_transport(self, fake_ws: FakeConnection) -> None:
        """A clean close does not abort the transport."""
        channel = await _open_channel(fake_ws)
        await channel.close()
        fake_ws.transport.abort.assert_not_called()

    @pytest.mark.asyncio
    async def test_context_manager_closes(self, fake_ws: FakeConnection) -> None:
        """Leaving the context manager closes the channel."""
        async with ProxyChannel("wss://proxy/ws") as channel:
            with patch(CONNECT, new=AsyncMock(return_value=fake_ws)):
                await channel.connect("abc")

        assert channel.state is ChannelState.CLOSED
        assert fake_ws.close_calls


class TestSend:
    """Tests for send and the envelope helpers."""

    @pytest.mark.asyncio
    async def test_send_before_open(self) -> None:
        """Sending on an unopened channel raises."""
        channel = ProxyChannel("wss://proxy/ws")
        with pytest.raises(ProxyChannelClosedError):
            await channel.send({"type": "ping"})

    @pytest.mark.asyncio
    async def test_send_after_close(self, fake_ws: FakeConnection) -> None:
        """Sending on a closed channel raises."""
        channel = await _open_channel(fake_ws)
        await channel.close()

        with pytest.raises(ProxyChannelClosedError):
            await channel.send({"type": "ping"})

    @pytest.mark.asyncio
    async def test_sequential_sends_keep_order(self, fake_ws: FakeConnection) -> None:
        """Frames reach the wire in send order."""
        channel = await _open_channel(fake_ws)

        await channel.send({"n": 1})
        await channel.send({"n": 2})

        assert _sent(fake_ws) == [{"n": 1}, {"n": 2}]

    @pytest.mark.asyncio
    async def test_concurrent_sends_do_not_overlap(self) -> None:
        """Concurrent sends are written one at a time in call order."""
        conn = FakeConnection(send_delay=0.001)
        channel = await _open_channel(conn)

        await asyncio.gather(*(channel.send({"n": i}) for i in range(20)))

        assert conn.overlapping_writes == 0
        assert [frame["n"] for frame in _sent(conn)] == list(range(20))

    @pytest.mark.asyncio
    async def test_send_timeout_leaves_channel_open(self) -> None:
        """A send timeout does not close the channel."""
        conn = FakeConnection(send_delay=1.0)
        channel = await _open_channel(conn)

        with pytest.raises(ProxyTimeout):
            await channel.send({"n": 1}, timeout=0.01)

        assert channel.is_open

    @pytest.mark.asyncio
    async def test_send_on_lost_connection(self, fake_ws: FakeConnection) -> None:
        """A send on a dropped connection closes the channel."""
        fake_ws.send = AsyncMock(side_effect=ConnectionClosedError(None, None))
        channel = await _open_channel(fake_ws)

        with pytest.raises(ProxyChannelClosedError):
            await channel.send({"n": 1})

        assert channel.state is ChannelState.CLOSED
        assert await channel.send_keepalive() is False

    @pytest.mark.asyncio
    async def test_send_transport_error(self, fake_ws: FakeConnection) -> None:
        """A socket error during send raises ProxyConnectionError."""
        fake_ws.send = AsyncMock(side_effect=OSError("broken pipe"))
        channel = await _open_channel(fake_ws)

        with pytest.raises(ProxyConnectionError):
            await channel.send({"n": 1})

    @pytest.mark.asyncio
    async def test_subscribe(self, fake_ws: FakeConnection) -> None:
        """Subscribe frame lists topics and replay position."""
        channel = await _open_channel(fake_ws)

        await channel.subscribe(["ai-responses"], from_="beginning")

        assert _sent(fake_ws) == [
            {"type": "subscribe", "topics": ["ai-responses"], "from": "beginning"}
        ]

    @pytest.mark.asyncio
    async def test_produce_uses_configured_defaults(
        self, fake_ws: FakeConnection
    ) -> None:
        """Produce falls back to the configured topic, key and headers."""
        channel = await _open_channel(
            fake_ws,
            produce_topic="ai-requests",
            produce_key="k1",
            produce_headers={"source": "cli"},
        )

        await channel.produce({"hello": "world"})

        assert _sent(fake_ws) == [
            {
                "type": "produce",
                "topic": "ai-requests",
                "key": "k1",
                "headers": {"source": "cli"},
                "value": {"hello": "world"},
            }
        ]

    @pytest.mark.asyncio
    async def test_produce_explicit_topic(self, fake_ws: FakeConnection) -> None:
        """An explicit topic overrides the configured one."""
        channel = await _open_channel(fake_ws, produce_topic="default")

        await channel.produce("v", topic="other")

        assert _sent(fake_ws)[0]["topic"] == "other"

    @pytest.mark.asyncio
    async def test_produce_without_topic(self, fake_ws: FakeConnection) -> None:
        """Produce without any topic raises before sending."""
        channel = await _open_channel(fake_ws)

        with pytest.raises(ProxyConfigurationError):
            await channel.produce("v")

        assert fake_ws.sent == []

    @pytest.mark.asyncio
    async def test_send_chat_message(self, fake_ws: FakeConnection) -> None:
        """Chat frames carry chatId and message."""
        channel = await _open_channel(fake_ws)

        await channel.send_chat_message("42", "hi")

        assert _sent(fake_ws) == [{"chatId": "42", "message": "hi"}]

    @pytest.mark.asyncio
    async def test_send_chat_message_requires_chat_id(
        self, fake_ws: FakeConnection
    ) -> None:
        """A blank chat id is rejected."""
        channel = await _open_channel(fake_ws)
        with pytest.raises(ProxyConfigurationError):
            await channel.send_chat_message(" ", "hi")


class TestKeepalive:
    """Tests for keepalive pings."""

    @pytest.mark.asyncio
    async def test_keepalive_sends_ping(self, fake_ws: FakeConnection) -> None:
        """Keepalive sends a ping stamped in milliseconds."""
        channel = await _open_channel(fake_ws)

        assert await channel.send_keepalive() is True

        frame = _sent(fake_ws)[0]
        assert frame["type"] == "ping"
        assert isinstance(frame["ts"], int)

    @pytest.mark.asyncio
    async def test_keepalive_on_closed_channel(self) -> None:
        """Keepalive on a closed channel reports failure."""
        channel = ProxyChannel("wss://proxy/ws")
        assert await channel.send_keepalive() is False

    @pytest.mark.asyncio
    async def test_run_keepalive_stops_after_close(
        self, fake_ws: FakeConnection
    ) -> None:
        """The keepalive task pings until the channel closes."""
        channel = await _open_channel(fake_ws)

        task = asyncio.create_task(run_keepalive(channel, interval=0.01))
        await asyncio.sleep(0.05)
        await channel.close()
        await asyncio.wait_for(task, timeout=1.0)

        assert any(frame["type"] == "ping" for frame in _sent(fake_ws))


class TestReceiveLoop:
    """Tests for the receive loop."""

    @pytest.mark.asyncio
    async def test_delivers_in_arrival_order(self, fake_ws: FakeConnection) -> None:
        """Frames are delivered in arrival order."""
        channel = await _open_channel(fake_ws)
        received: list[dict] = []
        fake_ws.feed('{"type": "message", "n": 1}')
        fake_ws.feed('{"type": "message", "n": 2}')
        fake_ws.finish()

        await channel.receive_loop(received.append)

        assert [msg["n"] for msg in received] == [1, 2]

    @pytest.mark.asyncio
    async def test_non_json_delivered_raw(self, fake_ws: FakeConnection) -> None:
        """Non-JSON frames are delivered as raw envelopes."""
        channel = await _open_channel(fake_ws)
        received: list[dict] = []
        fake_ws.feed("hello")
        fake_ws.feed(b'{"type": "ack"}')
        fake_ws.finish()

        await channel.receive_loop(received.append)

        assert received == [{"type": "raw", "data": "hello"}, {"type": "ack"}]

    @pytest.mark.asyncio
    async def test_awaits_async_callback(self, fake_ws: FakeConnection) -> None:
        """Coroutine callbacks are awaited one frame at a time."""
        channel = await _open_channel(fake_ws)
        handled: list[int] = []

        async def on_message(envelope: dict) -> None:
            await asyncio.sleep(0)
            handled.append(envelope["n"])

        for n in range(3):
            fake_ws.feed(json.dumps({"n": n}))
        fake_ws.finish()

        await channel.receive_loop(on_message)

        assert handled == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_callback_error_does_not_stop_loop(
        self, fake_ws: FakeConnection
    ) -> None:
        """A failing callback does not end the loop."""
        channel = await _open_channel(fake_ws)
        received: list[dict] = []

        def on_message(envelope: dict) -> None:
            if envelope["n"] == 1:
                raise ValueError("boom")
            received.append(envelope)

        fake_ws.feed('{"n": 1}')
        fake_ws.feed('{"n": 2}')
        fake_ws.finish()

        await channel.receive_loop(on_message)

        assert received == [{"n": 2}]

    @pytest.mark.asyncio
    async def test_peer_close_ends_loop(self, fake_ws: FakeConnection) -> None:
        """A close from the peer ends the loop normally."""
        channel = await _open_channel(fake_ws)
        fake_ws.finish()

        await channel.receive_loop(MagicMock())

        assert channel.state is ChannelState.CLOSED

    @pytest.mark.asyncio
    async def test_local_close_ends_loop(self, fake_ws: FakeConnection) -> None:
        """A local close ends the loop normally."""
        channel = await _open_channel(fake_ws)
        reader = asyncio.create_task(channel.receive_loop(MagicMock()))
        await asyncio.sleep(0)

        await channel.close()
        await asyncio.wait_for(reader, timeout=1.0)

        assert channel.state is ChannelState.CLOSED

    @pytest.mark.asyncio
    async def test_abnormal_closure_raises(self, fake_ws: FakeConnection) -> None:
        """An abnormal closure raises ProxyConnectionError."""
        channel = await _open_channel(fake_ws)
        fake_ws.fail(ConnectionClosedError(None, None))

        with pytest.raises(ProxyConnectionError):
            await channel.receive_loop(MagicMock())

        assert channel.state is ChannelState.CLOSED

    @pytest.mark.asyncio
    async def test_cancel_stops_loop(self, fake_ws: FakeConnection) -> None:
        """Cancelling the loop leaves the channel open."""
        channel = await _open_channel(fake_ws)
        reader = asyncio.create_task(channel.receive_loop(MagicMock()))
        await asyncio.sleep(0)

        reader.cancel()
        with pytest.raises(asyncio.CancelledError):
            await reader

        assert channel.is_open

    @pytest.mark.asyncio
    async def test_second_loop_rejected(self, fake_ws: FakeConnection) -> None:
        """Only one receive loop may run at a time."""
        channel = await _open_channel(fake_ws)
        reader = asyncio.create_task(channel.receive_loop(MagicMock()))
        await asyncio.sleep(0)

        with pytest.raises(ProxyClientError):
            await channel.receive_loop(MagicMock())

        await channel.close()
        await reader

    @pytest.mark.asyncio
    async def test_receive_before_open(self) -> None:
        """Receiving on an unopened channel raises."""
        channel = ProxyChannel("wss://proxy/ws")
        with pytest.raises(ProxyChannelClosedError):
            await channel.receive_loop(MagicMock())

    @pytest.mark.asyncio
    async def test_sends_interleaved_with_receives(
        self, fake_ws: FakeConnection
    ) -> None:
        """Concurrent sends and receives both keep their order."""
        channel = await _open_channel(fake_ws)
        received: list[dict] = []
        reader = asyncio.create_task(channel.receive_loop(received.append))

        async def feed_inbound() -> None:
            for n in range(10):
                fake_ws.feed(json.dumps({"in": n}))
                await asyncio.sleep(0)

        await asyncio.gather(
            feed_inbound(),
            *(channel.send({"out": n}) for n in range(10)),
        )
        fake_ws.finish()
        await asyncio.wait_for(reader, timeout=1.0)

        assert [msg["in"] for msg in received] == list(range(10))
        assert [frame["out"] for frame in _sent(fake_ws)] == list(range(10))
        assert fake_ws.overlapping_writes == 0
