"""chatcast CLI — run the server, mint dev tokens, publish, inspect.

Usage:
    chatcast serve                                  # Run the API + WebSocket server
    chatcast token 7                                # Mint a JWT for user 7
    chatcast publish --id 1 --user-id 7 "hi"        # Announce a stored message
    chatcast stats                                  # Connection / fan-out counters
    chatcast channel everyone                       # Members + last sequence
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import os
import sys
from datetime import datetime, timezone
from typing import Optional

import click
import httpx

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

DEFAULT_API_URL = "http://localhost:8000"


def _api_url() -> str:
    return os.environ.get("CHATCAST_API_URL", DEFAULT_API_URL).rstrip("/")


def _auth_headers() -> dict:
    token = os.environ.get("CHATCAST_TOKEN")
    if not token:
        from chatcast.auth.jwt import create_access_token

        token = create_access_token(os.environ.get("CHATCAST_CLI_USER", "cli"))
    return {"Authorization": f"Bearer {token}"}


def _client() -> httpx.AsyncClient:
    """Build an async HTTP client pointed at the chatcast server."""
    return httpx.AsyncClient(base_url=_api_url(), headers=_auth_headers(), timeout=30.0)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from synchronous Click handler.

    Handles nested event loops (e.g. when invoked via Click CliRunner
    inside an existing async context like tests) by offloading to a thread.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()


def _pretty_json(data: dict | list) -> str:
    return json.dumps(data, indent=2, default=str)


def _fail(r: httpx.Response):
    click.secho(f"Error {r.status_code}: {r.text}", fg="red", err=True)
    sys.exit(1)


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version="0.1.0", prog_name="chatcast")
def main():
    """chatcast — real-time fan-out of chat messages."""


# ---------------------------------------------------------------------------
# chatcast serve
# ---------------------------------------------------------------------------


@main.command()
@click.option("--host", default=None, help="Bind address (default: CHATCAST_HOST)")
@click.option("--port", type=int, default=None, help="Port (default: CHATCAST_PORT)")
@click.option("--reload", is_flag=True, help="Auto-reload on code changes")
def serve(host: Optional[str], port: Optional[int], reload: bool):
    """Run the HTTP + WebSocket server."""
    import uvicorn

    from chatcast.config import settings

    uvicorn.run(
        "chatcast.main:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


# ---------------------------------------------------------------------------
# chatcast token
# ---------------------------------------------------------------------------


@main.command()
@click.argument("user_id")
@click.option("--minutes", type=int, default=None, help="Lifetime in minutes")
def token(user_id: str, minutes: Optional[int]):
    """Mint a JWT for USER_ID (signed with CHATCAST_JWT_SECRET)."""
    from chatcast.auth.jwt import create_access_token

    click.echo(create_access_token(user_id, expires_minutes=minutes))


# ---------------------------------------------------------------------------
# chatcast publish
# ---------------------------------------------------------------------------


@main.command()
@click.argument("text")
@click.option("--id", "message_id", type=int, required=True, help="Stored message id")
@click.option("--user-id", type=int, required=True, help="Author user id")
@click.option("--channel", "-c", default=None, help="Target channel (default: everyone)")
def publish(text: str, message_id: int, user_id: int, channel: Optional[str]):
    """Announce a stored message to its channel's subscribers."""
    _run(_publish_impl(text, message_id, user_id, channel))


async def _publish_impl(text: str, message_id: int, user_id: int, channel: Optional[str]):
    body = {
        "id": message_id,
        "user_id": user_id,
        "text": text,
        "created_at": datetime.now(timezone.utc).isoformat(),
    }
    if channel:
        body["channel"] = channel

    async with _client() as c:
        r = await c.post("/api/v1/messages", json=body)
        if r.status_code == 503:
            click.secho(
                "Server busy: message stored, live notification delayed.",
                fg="yellow",
            )
            sys.exit(2)
        if r.status_code != 202:
            _fail(r)
        data = r.json()
        click.secho(
            f"Published to {data['channel']} (seq={data['seq']})",
            fg="green",
        )


# ---------------------------------------------------------------------------
# chatcast stats
# ---------------------------------------------------------------------------


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Raw JSON output")
def stats(as_json: bool):
    """Show connection and fan-out counters."""
    _run(_stats_impl(as_json))


async def _stats_impl(as_json: bool):
    async with _client() as c:
        r = await c.get("/api/v1/broadcast/stats")
        if r.status_code != 200:
            _fail(r)
        data = r.json()

    if as_json:
        click.echo(_pretty_json(data))
        return

    click.secho("Broadcast", bold=True)
    click.echo(f"  connections  {data['connections']}")
    click.echo(f"  channels     {data['channels']}")
    click.echo(f"  pending      {data['pending']}")
    click.echo()
    click.secho("Dispatcher", bold=True)
    for key, value in data["dispatcher"].items():
        color = "red" if key in ("dropped", "evicted", "rejected", "errors") and value else None
        click.echo(f"  {key:12s} " + click.style(str(value), fg=color))


# ---------------------------------------------------------------------------
# chatcast channel
# ---------------------------------------------------------------------------


@main.command()
@click.argument("name")
def channel(name: str):
    """Show member count and last sequence of channel NAME."""
    _run(_channel_impl(name))


async def _channel_impl(name: str):
    async with _client() as c:
        r = await c.get(f"/api/v1/channels/{name}")
        if r.status_code == 404:
            click.echo(f"No channel named {name!r} (no subscribers, nothing published).")
            return
        if r.status_code != 200:
            _fail(r)
        data = r.json()
    click.echo(
        f"{data['name']}  policy={data['policy']}  "
        f"members={data['members']}  last_seq={data['last_seq']}"
    )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    main()
