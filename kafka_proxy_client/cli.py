"""Kafka proxy client CLI.

Usage:
    kafka-proxy-client                          # WebSocket mode, interactive
    kafka-proxy-client --once                   # Send one produce and exit
    kafka-proxy-client --mode sse               # Stream topic events
    kafka-proxy-client --mode sse --chat-id 42  # Stream one chat's events

The access token is taken from ACCESS_TOKEN when set, otherwise requested
with the password grant configured in appsettings.json / environment.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import threading
from pathlib import Path
from typing import Any

import aiohttp
import click

from .auth import ProxyAuthClient
from .channel import ProxyChannel, run_keepalive
from .codec import MessageEnvelope
from .config import RootConfig, load_config
from .errors import ProxyClientError, ProxyConfigurationError, ProxyTimeout
from .protocol import is_display_type, now_ms
from .sse import ProxyStreamReader, StreamEvent
from .tokens import AccessToken

_LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = Path("appsettings.json")
ONCE_WAIT_SECONDS = 5.0


def print_envelope(envelope: MessageEnvelope) -> None:
    """Print an inbound envelope; message/ack envelopes are shown indented."""
    if is_display_type(envelope):
        pretty = json.dumps(envelope, indent=2, ensure_ascii=False)
        click.echo(f"← {envelope['type']}: {pretty}")
        return
    click.echo(f"← {json.dumps(envelope, ensure_ascii=False)}")


def print_event(event: StreamEvent) -> None:
    click.echo(f"← [{event.name}] {event.data}")


async def obtain_token(
    session: aiohttp.ClientSession, config: RootConfig, env: dict[str, str]
) -> AccessToken:
    """Use ACCESS_TOKEN when present, otherwise run the password grant."""
    supplied = env.get("ACCESS_TOKEN", "").strip()
    if supplied:
        click.echo("↪ Using ACCESS_TOKEN from environment")
        return AccessToken.static(supplied)

    click.echo("→ Requesting access_token...")
    token = await ProxyAuthClient(session, config.auth).acquire_token()
    click.echo("✓ Token acquired")
    return token


def _start_stdin_pump(
    loop: asyncio.AbstractEventLoop, queue: asyncio.Queue[str | None]
) -> None:
    """Feed stdin lines into the queue from a daemon thread; None marks EOF."""

    def pump() -> None:
        for line in sys.stdin:
            loop.call_soon_threadsafe(queue.put_nowait, line)
        loop.call_soon_threadsafe(queue.put_nowait, None)

    threading.Thread(target=pump, name="stdin-pump", daemon=True).start()


async def produce_from_stdin(channel: ProxyChannel, reader: asyncio.Task[None]) -> None:
    """Produce each JSON line typed on stdin until EOF or the channel ends."""
    queue: asyncio.Queue[str | None] = asyncio.Queue()
    _start_stdin_pump(asyncio.get_running_loop(), queue)
    click.echo("Enter JSON to send. Empty line skips. Ctrl+C exits.")

    while not reader.done():
        line = await queue.get()
        if line is None:
            break
        line = line.strip()
        if not line:
            continue
        try:
            value: Any = json.loads(line)
        except json.JSONDecodeError as err:
            click.echo(f"! Invalid JSON: {err}")
            continue
        try:
            await channel.produce(value)
        except ProxyTimeout as err:
            click.echo(f"! {err}")
            continue
        click.echo("✓ Sent")


async def run_socket(
    config: RootConfig, token: AccessToken, *, once: bool, from_: str
) -> None:
    channel = ProxyChannel.from_config(
        config.proxy,
        allow_http=config.auth.allow_http,
        skip_tls_verify=config.auth.skip_tls_verify,
    )
    async with channel:
        click.echo("→ Connecting WebSocket...")
        await channel.connect(token)
        await channel.subscribe(config.proxy.topics, from_=from_)

        await channel.produce({"hello": "world", "ts": now_ms()})
        click.echo(f"✓ Sent to {config.proxy.produce_topic}")

        reader = asyncio.create_task(channel.receive_loop(print_envelope))
        keepalive = asyncio.create_task(
            run_keepalive(channel, config.proxy.keepalive_interval)
        )
        try:
            if once:
                await asyncio.sleep(ONCE_WAIT_SECONDS)
            else:
                await produce_from_stdin(channel, reader)
        finally:
            keepalive.cancel()
            await channel.close()
            results = await asyncio.gather(reader, keepalive, return_exceptions=True)

        if isinstance(results[0], ProxyClientError):
            raise results[0]


async def run_stream(
    config: RootConfig,
    session: aiohttp.ClientSession,
    token: AccessToken,
    *,
    chat_id: str | None,
    from_: str,
) -> None:
    reader = ProxyStreamReader.from_config(
        session,
        config.proxy,
        allow_http=config.auth.allow_http,
        skip_tls_verify=config.auth.skip_tls_verify,
    )
    if chat_id:
        click.echo(f"→ SSE subscription to chat {chat_id}")
        await reader.subscribe_chat(token, chat_id, print_event, from_=from_)
    else:
        click.echo(f"→ SSE subscription to [{','.join(config.proxy.topics)}]")
        await reader.subscribe_topics(
            token, config.proxy.topics, print_event, from_=from_
        )


async def run(
    config: RootConfig,
    *,
    mode: str,
    once: bool,
    chat_id: str | None,
    from_: str,
    env: dict[str, str],
) -> None:
    async with aiohttp.ClientSession() as session:
        token = await obtain_token(session, config, env)
        if mode == "sse":
            await run_stream(config, session, token, chat_id=chat_id, from_=from_)
        else:
            await run_socket(config, token, once=once, from_=from_)


@click.command()
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="YAML/JSON settings file (default: ./appsettings.json if present)",
)
@click.option(
    "--mode",
    type=click.Choice(["ws", "sse"], case_sensitive=False),
    default="ws",
    show_default=True,
    help="Transport to use",
)
@click.option("--once", is_flag=True, help="Send one produce, wait briefly, and exit")
@click.option("--chat-id", help="Chat identifier to stream (sse mode)")
@click.option(
    "--from",
    "from_",
    default="latest",
    show_default=True,
    help="Replay position: latest, beginning or an explicit cursor",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
)
def main(
    config_path: Path | None,
    mode: str,
    once: bool,
    chat_id: str | None,
    from_: str,
    log_level: str,
) -> None:
    """Authenticated WebSocket / SSE client for the Kafka proxy."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if config_path is None and DEFAULT_CONFIG_FILE.exists():
        config_path = DEFAULT_CONFIG_FILE

    env = dict(os.environ)
    try:
        config = load_config(config_path, env)
    except ProxyConfigurationError as err:
        raise click.ClickException(str(err)) from err

    mode = mode.lower()
    click.echo(f"Mode={mode} Once={once}")
    click.echo(
        f"Auth={config.auth.authority}  WS={config.proxy.ws_url}  SSE={config.proxy.sse_url}"
    )

    try:
        asyncio.run(
            run(config, mode=mode, once=once, chat_id=chat_id, from_=from_, env=env)
        )
    except KeyboardInterrupt:
        sys.exit(0)
    except ProxyClientError as err:
        _LOGGER.debug("Fatal error", exc_info=True)
        click.echo(f"Fatal: {err}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
