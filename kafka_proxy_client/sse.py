"""Server-Sent Events reader for the Kafka proxy push stream.

Handles:
- Incremental line framing over a slow or chunked response body
- ``event:``/``data:``/blank-line event parsing
- Sequential delivery to a per-event callback

Reconnection is left to the caller.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import aiohttp
from yarl import URL

from .errors import (
    ProxyConfigurationError,
    ProxyConnectionError,
    ProxySubscriptionError,
    ProxyTimeout,
)
from .protocol import REPLAY_LATEST
from .tokens import AccessToken, bearer_header

if TYPE_CHECKING:
    from .config import ProxyConfig

_LOGGER = logging.getLogger(__name__)

DEFAULT_EVENT_NAME = "message"


@dataclass(frozen=True)
class StreamEvent:
    """One dispatched push-stream event."""

    data: str
    name: str = DEFAULT_EVENT_NAME


EventCallback = Callable[[StreamEvent], Awaitable[None] | None]


class SseEventParser:
    """Incremental ``text/event-stream`` parser.

    Feed it raw body chunks with ``feed`` or decoded lines with
    ``feed_line``. An event is only emitted on its terminating blank line;
    data left over when the stream ends is never emitted.
    """

    def __init__(self) -> None:
        self._data = ""
        self._event_name: str | None = None
        self._partial = b""

    @property
    def pending(self) -> bool:
        """True when data has been buffered but not yet terminated."""
        return bool(self._data) or bool(self._partial)

    def feed_line(self, line: str) -> StreamEvent | None:
        """Process one line (without its terminator) and maybe emit an event."""
        line = line.rstrip("\r\n")

        if not line:
            event = None
            if self._data:
                event = StreamEvent(
                    data=self._data, name=self._event_name or DEFAULT_EVENT_NAME
                )
            self._data = ""
            self._event_name = None
            return event

        if line.startswith(":"):
            return None

        if line.startswith("event:"):
            self._event_name = line[len("event:") :].strip()
            return None

        if line.startswith("data:"):
            if self._data:
                self._data += "\n"
            self._data += line[len("data:") :].lstrip()
            return None

        # id:, retry: and unknown fields are ignored
        return None

    def feed(self, chunk: bytes) -> list[StreamEvent]:
        """Process a raw body chunk; a trailing partial line is kept for later."""
        buffer = self._partial + chunk
        *lines, self._partial = buffer.split(b"\n")
        events: list[StreamEvent] = []
        for raw in lines:
            event = self.feed_line(raw.decode("utf-8", errors="replace"))
            if event is not None:
                events.append(event)
        return events


def parse_lines(lines: Iterable[str]) -> Iterator[StreamEvent]:
    """Parse already-split lines into events."""
    parser = SseEventParser()
    for line in lines:
        event = parser.feed_line(line)
        if event is not None:
            yield event


class ProxyStreamReader:
    """Long-lived GET subscription to the proxy's event stream.

    The aiohttp session is owned by the caller.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        stream_url: str,
        *,
        connect_timeout: float = 20.0,
        read_timeout: float | None = None,
        allow_http: bool = False,
        skip_tls_verify: bool = False,
    ) -> None:
        if not allow_http and stream_url.lower().startswith("http://"):
            raise ProxyConfigurationError(
                "HTTPS required for the event stream (set allow_http to override)"
            )
        self._session = session
        self._url = URL(stream_url)
        self._connect_timeout = connect_timeout
        self._read_timeout = read_timeout
        self._skip_tls_verify = skip_tls_verify

    @classmethod
    def from_config(
        cls,
        session: aiohttp.ClientSession,
        config: ProxyConfig,
        *,
        allow_http: bool = False,
        skip_tls_verify: bool = False,
    ) -> ProxyStreamReader:
        """Create a reader from proxy settings."""
        return cls(
            session,
            config.sse_url,
            connect_timeout=config.connect_timeout,
            allow_http=allow_http,
            skip_tls_verify=skip_tls_verify,
        )

    def build_url(self, params: Mapping[str, str] | None = None) -> URL:
        """Merge stream parameters into the base URL's query string."""
        if not params:
            return self._url
        return self._url.update_query(params)

    def _request_kwargs(self, token: AccessToken | str) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "headers": {
                "Accept": "text/event-stream",
                "Cache-Control": "no-cache",
                **bearer_header(token),
            },
            # No total timeout: the body stays open for the life of the stream
            "timeout": aiohttp.ClientTimeout(
                total=None,
                sock_connect=self._connect_timeout,
                sock_read=self._read_timeout,
            ),
        }
        if self._skip_tls_verify:
            kwargs["ssl"] = False
        return kwargs

    async def subscribe(
        self,
        token: AccessToken | str,
        params: Mapping[str, str] | None,
        on_event: EventCallback,
    ) -> None:
        """Stream events to on_event until the body ends or the task is cancelled.

        Each callback completes before the next line is parsed.

        Raises:
            ProxySubscriptionError: If the response status is not 2xx.
            ProxyTimeout: If connecting or reading exceeds its timeout.
            ProxyConnectionError: If the transport fails.
        """
        url = self.build_url(params)
        parser = SseEventParser()
        delivered = 0
        try:
            async with self._session.get(url, **self._request_kwargs(token)) as resp:
                if not 200 <= resp.status < 300:
                    body = await resp.text()
                    raise ProxySubscriptionError(
                        resp.status,
                        f"Stream subscription failed {resp.status}: {body}",
                        body,
                    )
                _LOGGER.info("Subscribed to %s", url)
                async for chunk in resp.content.iter_any():
                    for event in parser.feed(chunk):
                        delivered += 1
                        await self._dispatch(on_event, event)
        except TimeoutError as err:
            raise ProxyTimeout("Event stream timed out") from err
        except aiohttp.ClientError as err:
            raise ProxyConnectionError(f"Event stream failed: {err}") from err

        if parser.pending:
            _LOGGER.debug("Discarding unterminated event at end of stream")
        _LOGGER.info("Event stream ended (%d events)", delivered)

    async def subscribe_chat(
        self,
        token: AccessToken | str,
        chat_id: str,
        on_event: EventCallback,
        *,
        from_: str = REPLAY_LATEST,
    ) -> None:
        """Subscribe to one chat's events from a replay position."""
        if not chat_id.strip():
            raise ProxyConfigurationError("chat_id is required")
        params = {"chatId": chat_id}
        if from_:
            params["from"] = from_
        await self.subscribe(token, params, on_event)

    async def subscribe_topics(
        self,
        token: AccessToken | str,
        topics: Iterable[str],
        on_event: EventCallback,
        *,
        from_: str = REPLAY_LATEST,
    ) -> None:
        """Subscribe to topic events from a replay position."""
        names = [topic for topic in topics if topic]
        if not names:
            raise ProxyConfigurationError("At least one topic is required")
        params = {"topics": ",".join(names)}
        if from_:
            params["from"] = from_
        await self.subscribe(token, params, on_event)

    @staticmethod
    async def _dispatch(callback: EventCallback, event: StreamEvent) -> None:
        try:
            result = callback(event)
            if inspect.isawaitable(result):
                await result
        except Exception as err:
            _LOGGER.exception("Event callback error: %s", err)
