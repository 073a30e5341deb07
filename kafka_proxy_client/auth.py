"""Password-grant token client for the proxy's auth authority."""

from __future__ import annotations

import json
import logging
from typing import Any

import aiohttp

from .config import AuthConfig
from .errors import (
    ProxyAuthenticationError,
    ProxyConfigurationError,
    ProxyConnectionError,
    ProxyTimeout,
)
from .tokens import DEFAULT_EXPIRES_IN, AccessToken

_LOGGER = logging.getLogger(__name__)


def build_token_url(authority: str, path: str) -> str:
    """Join authority and endpoint path with exactly one slash between them."""
    return f"{authority.rstrip('/')}/{path.lstrip('/')}"


def _is_plain_http(url: str) -> bool:
    return url.lower().startswith("http://")


class ProxyAuthClient:
    """OAuth password-grant client producing AccessToken values.

    The aiohttp session is owned by the caller. No retries are attempted.
    """

    def __init__(self, session: aiohttp.ClientSession, config: AuthConfig) -> None:
        if not config.allow_http and _is_plain_http(config.authority):
            raise ProxyConfigurationError(
                "HTTPS required for the auth authority (set allow_http to override)"
            )
        self._session = session
        self._config = config

    @property
    def token_url(self) -> str:
        return build_token_url(self._config.authority, self._config.token_endpoint_path)

    def _validate(self) -> None:
        cfg = self._config
        if not cfg.username.strip() or not cfg.password.strip():
            raise ProxyConfigurationError("Username/Password are required")
        if not cfg.client_id.strip():
            raise ProxyConfigurationError("Client id is required")

    def _form(self) -> dict[str, str]:
        cfg = self._config
        form = {
            "grant_type": cfg.grant_type or "password",
            "username": cfg.username,
            "password": cfg.password,
            "client_id": cfg.client_id,
        }
        if cfg.client_secret:
            form["client_secret"] = cfg.client_secret
        if cfg.scope:
            form["scope"] = cfg.scope
        return form

    def _request_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "data": self._form(),
            "headers": {"Accept": "application/json"},
            "timeout": aiohttp.ClientTimeout(total=self._config.request_timeout),
        }
        if self._config.skip_tls_verify:
            kwargs["ssl"] = False
        return kwargs

    async def acquire_token(self) -> AccessToken:
        """Request a new access token with the password grant.

        Raises:
            ProxyConfigurationError: If credentials or client id are blank.
            ProxyAuthenticationError: If the authority returns non-2xx or a
                body without a usable access_token.
            ProxyTimeout: If the request exceeds the request timeout.
            ProxyConnectionError: If the network request fails.
        """
        self._validate()
        url = self.token_url
        _LOGGER.debug("Requesting token from %s", url)
        try:
            async with self._session.post(url, **self._request_kwargs()) as resp:
                status = resp.status
                body = await resp.text()
        except TimeoutError as err:
            raise ProxyTimeout("Token request timed out") from err
        except aiohttp.ClientError as err:
            raise ProxyConnectionError(f"Token request failed: {err}") from err

        if not 200 <= status < 300:
            raise ProxyAuthenticationError(
                status, f"Token request failed {status}: {body}", body
            )
        token = parse_token_response(status, body)
        _LOGGER.info("Access token acquired, expires at %s", token.expires_at)
        return token


def parse_token_response(status: int, body: str) -> AccessToken:
    """Build an AccessToken from a token endpoint JSON body.

    Raises:
        ProxyAuthenticationError: If the body is not JSON, lacks access_token,
            or carries a non-integer expires_in.
    """
    try:
        data = json.loads(body)
    except json.JSONDecodeError as err:
        raise ProxyAuthenticationError(
            status, "Token response is not valid JSON", body
        ) from err
    if not isinstance(data, dict):
        raise ProxyAuthenticationError(status, "Token response is not an object", body)

    access_token = data.get("access_token")
    if not isinstance(access_token, str) or not access_token:
        raise ProxyAuthenticationError(
            status, "Token response has no access_token", body
        )

    expires_in = data.get("expires_in", DEFAULT_EXPIRES_IN)
    if expires_in is None:
        expires_in = DEFAULT_EXPIRES_IN
    try:
        lifetime = int(expires_in)
    except (TypeError, ValueError) as err:
        raise ProxyAuthenticationError(
            status, f"Token response has invalid expires_in: {expires_in!r}", body
        ) from err
    return AccessToken.from_lifetime(access_token, lifetime)
