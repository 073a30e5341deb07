"""Envelope builders for Kafka proxy socket frames."""

from __future__ import annotations

import time
from collections.abc import Iterable, Mapping
from typing import Any

from .codec import MessageEnvelope

DISPLAY_TYPES: frozenset[str] = frozenset({"message", "ack"})

REPLAY_LATEST = "latest"
REPLAY_BEGINNING = "beginning"


def now_ms() -> int:
    return int(time.time() * 1000)


def build_subscribe(
    topics: Iterable[str], *, from_: str = REPLAY_LATEST
) -> MessageEnvelope:
    """Build a topic subscription frame.

    Args:
        topics: Topic names to subscribe to.
        from_: Replay position ("latest", "beginning" or an explicit cursor).
    """
    return {"type": "subscribe", "topics": list(topics), "from": from_}


def build_produce(
    topic: str,
    value: Any,
    *,
    key: str | None = None,
    headers: Mapping[str, str] | None = None,
) -> MessageEnvelope:
    """Build a produce frame; key and headers are omitted when empty."""
    envelope: MessageEnvelope = {"type": "produce", "topic": topic}
    if key:
        envelope["key"] = key
    if headers:
        envelope["headers"] = dict(headers)
    envelope["value"] = value
    return envelope


def build_ping(timestamp_ms: int | None = None) -> MessageEnvelope:
    return {
        "type": "ping",
        "ts": timestamp_ms if timestamp_ms is not None else now_ms(),
    }


def build_chat_message(chat_id: str, message: str, **extra: Any) -> MessageEnvelope:
    """Build a chat-channel frame. Extra fields are carried alongside."""
    return {"chatId": chat_id, "message": message, **extra}


def envelope_type(envelope: Mapping[str, Any]) -> str | None:
    """Return the type discriminator when it is a string."""
    value = envelope.get("type")
    return value if isinstance(value, str) else None


def is_display_type(envelope: Mapping[str, Any]) -> bool:
    return envelope_type(envelope) in DISPLAY_TYPES
