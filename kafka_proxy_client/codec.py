"""JSON text frame codec shared by the socket channel.

Envelopes are plain dicts. The codec only cares that a frame holds a JSON
object; payload fields are passed through untouched.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any

from .errors import ProxyClientError, ProxyFrameDecodeError

_LOGGER = logging.getLogger(__name__)

MessageEnvelope = dict[str, Any]

RAW_TYPE = "raw"


def encode_frame(envelope: Mapping[str, Any]) -> str:
    """Serialize an envelope to a UTF-8 JSON text frame."""
    try:
        return json.dumps(envelope, ensure_ascii=False)
    except (TypeError, ValueError) as err:
        raise ProxyClientError(f"Envelope is not JSON serializable: {err}") from err


def _as_text(data: str | bytes) -> str:
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


def decode_frame_strict(data: str | bytes) -> MessageEnvelope:
    """Parse a frame into an envelope.

    Raises:
        ProxyFrameDecodeError: If the frame is not a JSON object.
    """
    text = _as_text(data)
    try:
        result = json.loads(text)
    except json.JSONDecodeError as err:
        raise ProxyFrameDecodeError(f"Frame is not valid JSON: {err}", text) from err
    if not isinstance(result, dict):
        raise ProxyFrameDecodeError("Frame is not a JSON object", text)
    return result


def raw_envelope(text: str) -> MessageEnvelope:
    """Wrap undecodable frame text so it can still be delivered."""
    return {"type": RAW_TYPE, "data": text}


def decode_frame(data: str | bytes) -> MessageEnvelope:
    """Parse a frame, falling back to a raw envelope instead of failing."""
    try:
        return decode_frame_strict(data)
    except ProxyFrameDecodeError as err:
        _LOGGER.warning("Delivering frame as raw: %s", err)
        return raw_envelope(err.text)
