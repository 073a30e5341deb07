"""Configuration for the Kafka proxy client.

Settings come from an optional YAML file (a JSON ``appsettings.json`` is valid
YAML) with ``auth`` and ``proxy`` sections, followed by environment variable
overrides. Keys in the file are matched case-insensitively and ignore ``_``
and ``-``, so ``tokenEndpointPath`` and ``token_endpoint_path`` are the same.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from .errors import ProxyConfigurationError

_LOGGER = logging.getLogger(__name__)

_TRUE_VALUES = {"true", "1", "yes", "on"}
_FALSE_VALUES = {"false", "0", "no", "off"}


@dataclass
class AuthConfig:
    """Password-grant settings for the token authority."""

    authority: str = "https://localhost/api/auth"
    token_endpoint_path: str = "/connect/token"
    grant_type: str = "password"
    username: str = ""
    password: str = field(default="", repr=False)
    client_id: str = "api_gateway"
    client_secret: str | None = field(default=None, repr=False)
    scope: str | None = None
    allow_http: bool = False
    skip_tls_verify: bool = False
    request_timeout: float = 30.0


@dataclass
class ProxyConfig:
    """Endpoints and limits for the messaging proxy."""

    ws_url: str = "wss://localhost/ws"
    sse_url: str = "https://localhost/stream"
    topics: tuple[str, ...] = ("ai-requests", "ai-responses")
    produce_topic: str = "ai-requests"
    produce_key: str | None = None
    produce_headers: dict[str, str] = field(default_factory=dict)
    connect_timeout: float = 20.0
    send_timeout: float = 15.0
    receive_buffer_bytes: int = 1_048_576
    keepalive_interval: float = 20.0


@dataclass
class RootConfig:
    """Top-level configuration."""

    auth: AuthConfig = field(default_factory=AuthConfig)
    proxy: ProxyConfig = field(default_factory=ProxyConfig)


# File keys that differ from the dataclass field names.
_ALIASES: dict[str, str] = {
    "connecttimeoutseconds": "connect_timeout",
    "sendtimeoutseconds": "send_timeout",
    "requesttimeoutseconds": "request_timeout",
    "keepaliveintervalseconds": "keepalive_interval",
    "allowinsecurehttp": "allow_http",
}


def _normalize_key(key: str) -> str:
    return key.replace("_", "").replace("-", "").lower()


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load YAML file with error handling."""
    if not path.exists():
        raise ProxyConfigurationError(f"Config file not found: {path}")
    try:
        with path.open(encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as err:
        raise ProxyConfigurationError(f"Invalid config file {path}: {err}") from err
    if not isinstance(data, dict):
        raise ProxyConfigurationError(f"Config file {path} must contain a mapping")
    return data


def _coerce(name: str, current: Any, value: Any) -> Any:
    """Convert a raw file value to the type of the field's default."""
    if value is None:
        return current
    if isinstance(current, bool):
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE_VALUES:
            return True
        if text in _FALSE_VALUES:
            return False
        raise ProxyConfigurationError(f"{name} must be a boolean, got {value!r}")
    if isinstance(current, (int, float)):
        try:
            return type(current)(value)
        except (TypeError, ValueError) as err:
            raise ProxyConfigurationError(
                f"{name} must be a number, got {value!r}"
            ) from err
    if isinstance(current, tuple):
        if isinstance(value, str):
            return _split_csv(value)
        if not isinstance(value, (list, tuple)):
            raise ProxyConfigurationError(f"{name} must be a list or comma string")
        return tuple(str(item) for item in value)
    if isinstance(current, dict):
        if not isinstance(value, Mapping):
            raise ProxyConfigurationError(f"{name} must be a mapping")
        return {str(k): str(v) for k, v in value.items()}
    return str(value)


def _apply_section(target: Any, section: Mapping[str, Any] | None) -> None:
    if not section:
        return
    if not isinstance(section, Mapping):
        raise ProxyConfigurationError(
            f"{type(target).__name__} section must be a mapping"
        )
    by_key = {_normalize_key(f.name): f.name for f in fields(target)}
    for raw_key, value in section.items():
        key = _normalize_key(str(raw_key))
        name = _ALIASES.get(key) or by_key.get(key)
        if name is None:
            _LOGGER.debug("Ignoring unknown config key: %s", raw_key)
            continue
        setattr(target, name, _coerce(name, getattr(target, name), value))


def _split_csv(value: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in value.split(",") if part.strip())


def _parse_headers(value: str) -> dict[str, str]:
    """Parse ``k=v,k2=v2`` pairs, skipping entries without a key."""
    headers: dict[str, str] = {}
    for pair in _split_csv(value):
        key, sep, val = pair.partition("=")
        if sep and key:
            headers[key] = val
    return headers


class _EnvReader:
    """Typed lookups with fallback names; unparsable values keep the default."""

    def __init__(self, env: Mapping[str, str]) -> None:
        self._env = env

    def text(self, *names: str, default: Any) -> Any:
        for name in names:
            value = self._env.get(name)
            if value is not None:
                return value
        return default

    def flag(self, name: str, default: bool) -> bool:
        value = self._env.get(name, "").strip().lower()
        if value in _TRUE_VALUES:
            return True
        if value in _FALSE_VALUES:
            return False
        return default

    def number(self, name: str, default: Any) -> Any:
        value = self._env.get(name)
        if value is None:
            return default
        try:
            return type(default)(value)
        except ValueError:
            _LOGGER.warning("Ignoring invalid %s=%r", name, value)
            return default


def apply_env_overrides(config: RootConfig, env: Mapping[str, str]) -> None:
    """Apply environment variable overrides in place."""
    read = _EnvReader(env)
    auth = config.auth
    auth.authority = read.text("AUTH_AUTHORITY", default=auth.authority)
    auth.token_endpoint_path = read.text(
        "AUTH_TOKEN_PATH", default=auth.token_endpoint_path
    )
    auth.allow_http = read.flag("AUTH_ALLOW_HTTP", auth.allow_http)
    auth.skip_tls_verify = read.flag("AUTH_SKIP_TLS", auth.skip_tls_verify)
    auth.username = read.text("AUTH_USERNAME", "USERNAME", default=auth.username)
    auth.password = read.text("AUTH_PASSWORD", "PASSWORD", default=auth.password)
    auth.client_id = read.text("AUTH_CLIENT_ID", "CLIENT_ID", default=auth.client_id)
    auth.client_secret = read.text(
        "AUTH_CLIENT_SECRET", "CLIENT_SECRET", default=auth.client_secret
    )
    auth.scope = read.text("AUTH_SCOPE", "SCOPE", default=auth.scope)

    proxy = config.proxy
    proxy.ws_url = read.text("PROXY_WS_URL", default=proxy.ws_url)
    proxy.sse_url = read.text("PROXY_SSE_URL", default=proxy.sse_url)
    topics = read.text("TOPICS", default=None)
    if topics is not None:
        proxy.topics = _split_csv(topics)
    proxy.produce_topic = read.text("PRODUCE_TOPIC", default=proxy.produce_topic)
    proxy.produce_key = read.text("PRODUCE_KEY", default=proxy.produce_key) or None
    proxy.connect_timeout = read.number("CONNECT_TIMEOUT", proxy.connect_timeout)
    proxy.send_timeout = read.number("SEND_TIMEOUT", proxy.send_timeout)
    proxy.receive_buffer_bytes = read.number(
        "RECV_BUFFER", proxy.receive_buffer_bytes
    )
    headers = read.text("PRODUCE_HEADERS", default="")
    if headers.strip():
        proxy.produce_headers.update(_parse_headers(headers))


def load_config(
    path: Path | str | None = None,
    env: Mapping[str, str] | None = None,
) -> RootConfig:
    """Load configuration from an optional file plus environment overrides.

    Args:
        path: YAML/JSON config file. Missing file is an error only when a
            path is given explicitly.
        env: Environment mapping (defaults to ``os.environ``).

    Raises:
        ProxyConfigurationError: If the file is missing, malformed, or holds
            values of the wrong type.
    """
    config = RootConfig()
    if path is not None:
        data = _load_yaml(Path(path))
        sections = {_normalize_key(str(k)): v for k, v in data.items()}
        _apply_section(config.auth, sections.get("auth"))
        _apply_section(config.proxy, sections.get("proxy"))

    apply_env_overrides(config, os.environ if env is None else env)
    return config
