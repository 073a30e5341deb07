"""Bidirectional socket channel to the Kafka proxy.

One ProxyChannel owns one WebSocket connection. A receive loop, caller sends
and a keepalive ticker may run as separate tasks against the same channel;
writes are serialized internally so frames never interleave on the wire.

Usage:
    async with ProxyChannel("wss://proxy/ws") as channel:
        await channel.connect(token)
        reader = asyncio.create_task(channel.receive_loop(handle_message))
        await channel.subscribe(["ai-responses"])
        await channel.produce({"hello": "world"}, topic="ai-requests")
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from enum import Enum
from typing import TYPE_CHECKING, Any

from websockets.exceptions import (
    ConnectionClosed,
    ConnectionClosedError,
    WebSocketException,
)

from .codec import MessageEnvelope, decode_frame, encode_frame
from .errors import (
    ProxyChannelClosedError,
    ProxyClientError,
    ProxyConfigurationError,
    ProxyConnectionError,
    ProxyTimeout,
)
from .protocol import (
    REPLAY_LATEST,
    build_chat_message,
    build_ping,
    build_produce,
    build_subscribe,
)
from .tokens import AccessToken, bearer_header
from .ws import connect_websocket

if TYPE_CHECKING:
    from websockets.asyncio.client import ClientConnection

    from .config import ProxyConfig

_LOGGER = logging.getLogger(__name__)

NORMAL_CLOSURE = 1000

MessageCallback = Callable[[MessageEnvelope], Awaitable[None] | None]


class ChannelState(Enum):
    """Socket channel lifecycle states."""

    UNOPENED = "unopened"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class ProxyChannel:
    """Authenticated WebSocket channel carrying JSON envelopes.

    A channel connects once. After it reaches CLOSED a new instance is
    required to reconnect.
    """

    def __init__(
        self,
        url: str,
        *,
        connect_timeout: float = 20.0,
        send_timeout: float = 15.0,
        close_timeout: float = 5.0,
        max_message_size: int | None = 1_048_576,
        ping_interval: float | None = 20,
        allow_http: bool = False,
        skip_tls_verify: bool = False,
        produce_topic: str | None = None,
        produce_key: str | None = None,
        produce_headers: Mapping[str, str] | None = None,
    ) -> None:
        if not allow_http and url.lower().startswith("ws://"):
            raise ProxyConfigurationError(
                "WSS required for the proxy channel (set allow_http to override)"
            )
        self.url = url
        self._connect_timeout = connect_timeout
        self._send_timeout = send_timeout
        self._close_timeout = close_timeout
        self._max_message_size = max_message_size
        self._ping_interval = ping_interval
        self._skip_tls_verify = skip_tls_verify

        self._produce_topic = produce_topic
        self._produce_key = produce_key
        self._produce_headers = dict(produce_headers or {})

        self._ws: ClientConnection | None = None
        self._state = ChannelState.UNOPENED
        self._send_lock = asyncio.Lock()
        self._receiving = False
        self._state_callback: Callable[[ChannelState], None] | None = None

    @classmethod
    def from_config(
        cls,
        config: ProxyConfig,
        *,
        allow_http: bool = False,
        skip_tls_verify: bool = False,
    ) -> ProxyChannel:
        """Create a channel from proxy settings."""
        return cls(
            config.ws_url,
            connect_timeout=config.connect_timeout,
            send_timeout=config.send_timeout,
            max_message_size=config.receive_buffer_bytes,
            allow_http=allow_http,
            skip_tls_verify=skip_tls_verify,
            produce_topic=config.produce_topic,
            produce_key=config.produce_key,
            produce_headers=config.produce_headers,
        )

    async def __aenter__(self) -> ProxyChannel:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is ChannelState.OPEN

    def on_state_changed(self, callback: Callable[[ChannelState], None]) -> None:
        """Register callback invoked with the new state on every transition."""
        self._state_callback = callback

    def _set_state(self, state: ChannelState) -> None:
        if self._state is state:
            return
        _LOGGER.debug("State: %s → %s", self._state.value, state.value)
        self._state = state
        if self._state_callback:
            try:
                self._state_callback(state)
            except Exception as err:
                _LOGGER.exception("State callback error: %s", err)

    def _require_open(self) -> ClientConnection:
        if self._state is not ChannelState.OPEN or self._ws is None:
            raise ProxyChannelClosedError(f"Channel is {self._state.value}, not open")
        return self._ws

    # -------------------------------------------------------------------------
    # Connect / close
    # -------------------------------------------------------------------------

    async def connect(
        self, token: AccessToken | str, *, timeout: float | None = None
    ) -> None:
        """Open the connection, presenting the bearer token in the upgrade.

        Raises:
            ProxyChannelClosedError: If the channel was already used, or was
                closed while connecting.
            ProxyHandshakeError: If the handshake is rejected or times out.
            ProxyConnectionError: If the transport connection fails.
        """
        if self._state is not ChannelState.UNOPENED:
            raise ProxyChannelClosedError(
                f"Cannot connect a channel that is {self._state.value}"
            )
        if isinstance(token, AccessToken) and token.is_expired():
            _LOGGER.warning("Connecting with an expired access token")

        self._set_state(ChannelState.CONNECTING)
        _LOGGER.info("Connecting to %s", self.url)
        try:
            ws = await connect_websocket(
                self.url,
                headers=bearer_header(token),
                ping_interval=self._ping_interval,
                max_size=self._max_message_size,
                timeout=timeout if timeout is not None else self._connect_timeout,
                skip_tls_verify=self._skip_tls_verify,
            )
        except BaseException:
            self._set_state(ChannelState.CLOSED)
            raise

        if self._state is not ChannelState.CONNECTING:
            # close() ran while the handshake was in flight
            await self._release(ws, "closed during connect")
            raise ProxyChannelClosedError("Channel closed while connecting")

        self._ws = ws
        self._set_state(ChannelState.OPEN)
        _LOGGER.info("Channel open: %s", self.url)

    async def close(self, reason: str = "bye") -> None:
        """Close the channel. Closing a closed channel is a no-op.

        The underlying transport is always released, even if the close
        handshake fails or times out.
        """
        if self._state in (ChannelState.CLOSING, ChannelState.CLOSED):
            return
        if self._state is ChannelState.UNOPENED:
            self._set_state(ChannelState.CLOSED)
            return

        _LOGGER.info("Closing channel: %s", reason)
        self._set_state(ChannelState.CLOSING)
        ws, self._ws = self._ws, None
        try:
            if ws is not None:
                await self._release(ws, reason)
        finally:
            self._set_state(ChannelState.CLOSED)

    async def _release(self, ws: ClientConnection, reason: str) -> None:
        """Best-effort close handshake followed by a guaranteed abort."""
        clean = False
        try:
            await asyncio.wait_for(
                ws.close(code=NORMAL_CLOSURE, reason=reason),
                timeout=self._close_timeout,
            )
            clean = True
        except TimeoutError:
            _LOGGER.warning("WebSocket close timed out")
        except (WebSocketException, OSError) as err:
            _LOGGER.warning("WebSocket close failed: %s", err)
        finally:
            if not clean:
                transport = getattr(ws, "transport", None)
                if transport is not None:
                    transport.abort()

    def _mark_transport_closed(self) -> None:
        if self._state is ChannelState.OPEN:
            self._set_state(ChannelState.CLOSING)
        self._ws = None
        self._set_state(ChannelState.CLOSED)

    # -------------------------------------------------------------------------
    # Send
    # -------------------------------------------------------------------------

    async def send(
        self, envelope: Mapping[str, Any], *, timeout: float | None = None
    ) -> None:
        """Send one envelope as a single text frame.

        A timeout does not close the channel; the caller decides whether to
        abandon it.

        Raises:
            ProxyChannelClosedError: If the channel is not open.
            ProxyTimeout: If the write does not finish within the send timeout.
            ProxyConnectionError: If the transport fails.
        """
        ws = self._require_open()
        frame = encode_frame(envelope)
        try:
            await asyncio.wait_for(
                self._write(ws, frame),
                timeout=timeout if timeout is not None else self._send_timeout,
            )
        except TimeoutError as err:
            raise ProxyTimeout("Send timed out") from err
        except ConnectionClosed as err:
            self._mark_transport_closed()
            raise ProxyChannelClosedError(
                f"Channel closed during send: {err}"
            ) from err
        except (WebSocketException, OSError) as err:
            raise ProxyConnectionError(f"Send failed: {err}") from err

    async def _write(self, ws: ClientConnection, frame: str) -> None:
        async with self._send_lock:
            await ws.send(frame)
        _LOGGER.debug("Sent frame (%d chars)", len(frame))

    async def send_keepalive(self) -> bool:
        """Send a ping envelope carrying the current time.

        Failures are logged, never raised.

        Returns:
            True if sent successfully, False otherwise
        """
        try:
            await self.send(build_ping())
            return True
        except ProxyClientError as err:
            _LOGGER.warning("Keepalive failed: %s", err)
            return False

    async def subscribe(
        self, topics: Iterable[str], *, from_: str = REPLAY_LATEST
    ) -> None:
        """Subscribe to topics starting at a replay position."""
        await self.send(build_subscribe(topics, from_=from_))

    async def produce(
        self,
        value: Any,
        *,
        topic: str | None = None,
        key: str | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        """Produce a value, defaulting to the configured topic, key and headers."""
        target = topic or self._produce_topic
        if not target:
            raise ProxyConfigurationError(
                "No topic given and no produce topic configured"
            )
        await self.send(
            build_produce(
                target,
                value,
                key=key if key is not None else self._produce_key,
                headers=headers if headers is not None else self._produce_headers,
            )
        )

    async def send_chat_message(self, chat_id: str, message: str, **extra: Any) -> None:
        """Send a chat-style frame to a chat identifier."""
        if not chat_id.strip():
            raise ProxyConfigurationError("chat_id is required")
        await self.send(build_chat_message(chat_id, message, **extra))

    # -------------------------------------------------------------------------
    # Receive
    # -------------------------------------------------------------------------

    async def receive_loop(self, on_message: MessageCallback) -> None:
        """Deliver inbound envelopes to on_message until the channel ends.

        Returns normally when the channel is closed by either side. Frames
        that are not JSON objects are delivered as {"type": "raw", "data": ...}.

        Raises:
            ProxyChannelClosedError: If the channel is not open.
            ProxyClientError: If another receive loop is already running.
            ProxyConnectionError: If the connection is lost abnormally.
        """
        ws = self._require_open()
        if self._receiving:
            raise ProxyClientError("A receive loop is already running on this channel")

        self._receiving = True
        frame_count = 0
        try:
            async for raw in ws:
                frame_count += 1
                await self._dispatch(on_message, decode_frame(raw))
        except asyncio.CancelledError:
            _LOGGER.debug("Receive loop cancelled (%d frames)", frame_count)
            raise
        except ConnectionClosedError as err:
            local_close = self._state is not ChannelState.OPEN
            self._mark_transport_closed()
            if local_close:
                return
            raise ProxyConnectionError(f"Connection lost: {err}") from err
        except (WebSocketException, OSError) as err:
            self._mark_transport_closed()
            raise ProxyConnectionError(f"Receive failed: {err}") from err
        finally:
            self._receiving = False

        if self._state is ChannelState.OPEN:
            _LOGGER.info("Channel closed by peer (%d frames)", frame_count)
            self._mark_transport_closed()

    @staticmethod
    async def _dispatch(callback: MessageCallback, envelope: MessageEnvelope) -> None:
        try:
            result = callback(envelope)
            if inspect.isawaitable(result):
                await result
        except Exception as err:
            _LOGGER.exception("Message callback error: %s", err)


async def run_keepalive(channel: ProxyChannel, interval: float = 20.0) -> None:
    """Send a keepalive on a fixed interval while the channel stays open.

    Meant to be run by the caller as its own task; cancel it to stop.
    """
    while channel.is_open:
        await asyncio.sleep(interval)
        if not channel.is_open:
            break
        if not await channel.send_keepalive():
            _LOGGER.warning("Channel may be unhealthy: keepalive not sent")
