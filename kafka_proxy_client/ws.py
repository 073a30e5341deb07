"""WebSocket connect helper for the Kafka proxy socket channel."""

from __future__ import annotations

import asyncio
import ssl
from collections.abc import Mapping
from typing import Any

import websockets
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import (
    InvalidHandshake,
    InvalidURI,
    WebSocketException,
)

from .errors import ProxyConnectionError, ProxyHandshakeError


def _insecure_ssl_context() -> ssl.SSLContext:
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


async def connect_websocket(
    url: str,
    *,
    headers: Mapping[str, str] | None = None,
    ping_interval: float | None = 20,
    max_size: int | None = 1_048_576,
    timeout: float = 20.0,
    skip_tls_verify: bool = False,
) -> ClientConnection:
    """Connect to a WebSocket endpoint.

    Headers are sent with the upgrade request only; they cannot be changed
    for the lifetime of the connection.

    Args:
        url: ws:// or wss:// endpoint
        headers: Extra upgrade request headers (e.g. Authorization)
        ping_interval: Protocol-level ping interval, None to disable
        max_size: Maximum size of an inbound message in bytes
        timeout: Time allowed for the connection to reach the open state
        skip_tls_verify: Disable certificate verification for wss:// URLs

    Raises:
        ProxyHandshakeError: If the upgrade is rejected or times out.
        ProxyConnectionError: If the transport connection fails.
    """
    kwargs: dict[str, Any] = {}
    if skip_tls_verify and url.lower().startswith("wss://"):
        kwargs["ssl"] = _insecure_ssl_context()
    try:
        return await asyncio.wait_for(
            websockets.connect(
                url,
                additional_headers=dict(headers) if headers else None,
                ping_interval=ping_interval,
                open_timeout=None,
                close_timeout=5,
                max_size=max_size,
                **kwargs,
            ),
            timeout=timeout,
        )
    except TimeoutError as err:
        raise ProxyHandshakeError("WebSocket handshake timed out") from err
    except (InvalidHandshake, InvalidURI) as err:
        raise ProxyHandshakeError(f"WebSocket handshake failed: {err}") from err
    except (OSError, WebSocketException) as err:
        raise ProxyConnectionError(f"WebSocket connection failed: {err}") from err
