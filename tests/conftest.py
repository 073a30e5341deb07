"""Pytest configuration and fixtures for kafka_proxy_client tests."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterable
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

_END = object()


@pytest.fixture
def mock_session() -> MagicMock:
    """Create a mock aiohttp ClientSession."""
    import aiohttp

    return MagicMock(spec=aiohttp.ClientSession)


def create_mock_response(
    status: int = 200,
    text_data: str | None = None,
    chunks: Iterable[bytes] | None = None,
) -> AsyncMock:
    """Create a configured mock response.

    Args:
        status: HTTP status code
        text_data: Data to return from text() call
        chunks: Body chunks yielded by content.iter_any()

    Returns:
        Configured AsyncMock response
    """
    response = AsyncMock()
    response.status = status

    if text_data is not None:
        response.text.return_value = text_data
    if chunks is not None:
        response.content = MagicMock()
        response.content.iter_any = MagicMock(return_value=aiter_chunks(chunks))

    response.__aenter__.return_value = response
    response.__aexit__.return_value = None

    return response


async def aiter_chunks(
    chunks: Iterable[bytes], *, error: Exception | None = None
) -> AsyncIterator[bytes]:
    """Yield body chunks, optionally failing once they run out."""
    for chunk in chunks:
        await asyncio.sleep(0)
        yield chunk
    if error is not None:
        raise error


class FakeConnection:
    """In-memory stand-in for a websockets ClientConnection.

    Inbound frames are queued with feed(); finish() ends iteration the way a
    received close frame does. Overlapping send() calls are counted so tests
    can prove writes are serialized.
    """

    def __init__(self, *, send_delay: float = 0.0) -> None:
        self.sent: list[str] = []
        self.close_calls: list[tuple[int, str]] = []
        self.transport = MagicMock()
        self.send_delay = send_delay
        self.overlapping_writes = 0
        self.close_error: BaseException | None = None
        self._writing = False
        self._inbound: asyncio.Queue[Any] = asyncio.Queue()

    def feed(self, frame: str | bytes) -> None:
        self._inbound.put_nowait(frame)

    def fail(self, error: BaseException) -> None:
        self._inbound.put_nowait(error)

    def finish(self) -> None:
        self._inbound.put_nowait(_END)

    async def send(self, frame: str) -> None:
        if self._writing:
            self.overlapping_writes += 1
        self._writing = True
        try:
            await asyncio.sleep(self.send_delay)
            self.sent.append(frame)
        finally:
            self._writing = False

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.close_calls.append((code, reason))
        if self.close_error is not None:
            raise self.close_error
        self.finish()

    def __aiter__(self) -> FakeConnection:
        return self

    async def __anext__(self) -> Any:
        item = await self._inbound.get()
        if item is _END:
            self._inbound.put_nowait(_END)
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item


@pytest.fixture
def fake_ws() -> FakeConnection:
    return FakeConnection()
