"""Authenticated WebSocket / SSE client for the Kafka messaging proxy."""

__version__ = "0.1.0"

from .auth import ProxyAuthClient, build_token_url
from .channel import ChannelState, ProxyChannel, run_keepalive
from .codec import MessageEnvelope, decode_frame, decode_frame_strict, encode_frame
from .config import AuthConfig, ProxyConfig, RootConfig, load_config
from .errors import (
    ProxyAuthenticationError,
    ProxyChannelClosedError,
    ProxyClientError,
    ProxyConfigurationError,
    ProxyConnectionError,
    ProxyFrameDecodeError,
    ProxyHandshakeError,
    ProxyResponseError,
    ProxySubscriptionError,
    ProxyTimeout,
)
from .protocol import (
    build_chat_message,
    build_ping,
    build_produce,
    build_subscribe,
)
from .sse import ProxyStreamReader, SseEventParser, StreamEvent
from .tokens import AccessToken, TokenCache
from .ws import connect_websocket

__all__ = [
    "AccessToken",
    "AuthConfig",
    "ChannelState",
    "MessageEnvelope",
    "ProxyAuthClient",
    "ProxyAuthenticationError",
    "ProxyChannel",
    "ProxyChannelClosedError",
    "ProxyClientError",
    "ProxyConfig",
    "ProxyConfigurationError",
    "ProxyConnectionError",
    "ProxyFrameDecodeError",
    "ProxyHandshakeError",
    "ProxyResponseError",
    "ProxyStreamReader",
    "ProxySubscriptionError",
    "ProxyTimeout",
    "RootConfig",
    "SseEventParser",
    "StreamEvent",
    "TokenCache",
    "__version__",
    "build_chat_message",
    "build_ping",
    "build_produce",
    "build_subscribe",
    "build_token_url",
    "connect_websocket",
    "decode_frame",
    "decode_frame_strict",
    "encode_frame",
    "load_config",
    "run_keepalive",
]
