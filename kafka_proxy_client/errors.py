"""Client error types for Kafka proxy interactions."""

from __future__ import annotations


class ProxyClientError(Exception):
    """Base error for Kafka proxy client failures."""


class ProxyConfigurationError(ProxyClientError):
    """Required credential or security policy field is missing or invalid."""


class ProxyTimeout(ProxyClientError):
    """Timeout while communicating with the proxy."""


class ProxyConnectionError(ProxyClientError):
    """Network connection to the proxy failed."""


class ProxyHandshakeError(ProxyClientError):
    """WebSocket handshake failed or did not complete in time."""


class ProxyChannelClosedError(ProxyClientError):
    """Operation attempted on a channel that is not open."""


class ProxyResponseError(ProxyClientError):
    """HTTP response error from the proxy or the auth authority."""

    def __init__(self, status: int, message: str, body: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class ProxyAuthenticationError(ProxyResponseError):
    """Token endpoint rejected the request or returned a malformed body."""


class ProxySubscriptionError(ProxyResponseError):
    """Event stream subscription was rejected."""


class ProxyFrameDecodeError(ProxyClientError):
    """Inbound frame is not a JSON object."""

    def __init__(self, message: str, text: str) -> None:
        super().__init__(message)
        self.text = text
