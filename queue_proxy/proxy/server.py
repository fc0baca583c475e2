"""HTTP front end for the queued forwarding proxy.

Every call to the proxy route, whatever its method, is queued and forwarded
to the configured downstream endpoint one at a time, in arrival order.

Usage:
    queue-proxy serve --upstream https://api.openai.com/v1/chat/completions
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.types import Receive, Scope, Send

from ..config import load_config
from ..types import PendingRequest, QueueProxyConfig, SchedulerClosed
from .channel import ResponseChannel
from .dispatcher import DownstreamDispatcher
from .metrics import ProxyMetrics
from .scheduler import DispatchScheduler

logger = logging.getLogger(__name__)

_ALL_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS", "HEAD"]

# Seconds between client-disconnect checks while a request waits in the queue.
DISCONNECT_POLL_INTERVAL = 0.5


class ChannelResponse(StreamingResponse):
    """StreamingResponse over a ResponseChannel.

    Closes the channel however the response ends, including when the caller
    disconnects before the body iterator ever starts.
    """

    def __init__(
        self,
        channel: ResponseChannel,
        status_code: int,
        headers: dict[str, str],
    ) -> None:
        super().__init__(channel.body(), status_code=status_code, headers=headers)
        self.channel = channel

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            self.channel.close()


async def _read_json_body(request: Request) -> Any:
    """Parsed JSON body, or None when the body is empty or not JSON-typed.

    Raises ValueError on malformed JSON.
    """
    raw = await request.body()
    if not raw:
        return None
    if "json" not in request.headers.get("content-type", "").lower():
        return None
    return json.loads(raw)


async def _await_head(
    request: Request,
    channel: ResponseChannel,
    poll: float = DISCONNECT_POLL_INTERVAL,
) -> tuple[int, dict[str, str]] | None:
    """Wait for the response head, checking every *poll* seconds whether the
    caller is still there.

    Returns None (and closes *channel*, so the scheduler skips the request)
    if the caller disconnects first.
    """
    head = asyncio.ensure_future(channel.head())
    try:
        while True:
            done, _ = await asyncio.wait({head}, timeout=poll)
            if done:
                return head.result()
            if await request.is_disconnected():
                channel.close()
                return None
    finally:
        head.cancel()


def build_client(config: QueueProxyConfig) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(config.upstream.timeout, connect=config.upstream.connect_timeout),
        follow_redirects=config.upstream.follow_redirects,
    )


def create_app(
    config: QueueProxyConfig | None = None,
    config_path: str | None = None,
    *,
    client: httpx.AsyncClient | None = None,
    metrics: ProxyMetrics | None = None,
) -> FastAPI:
    """Create the FastAPI proxy application.

    Args:
        config: Loaded config.  Loaded from *config_path* (or discovered)
            when omitted.
        config_path: Path to a queue-proxy config file.
        client: Downstream HTTP client.  Owned (and closed) by the app only
            when created here.
        metrics: Shared metrics collector.
    """
    if config is None:
        config = load_config(config_path)

    owns_client = client is None
    if client is None:
        client = build_client(config)
    if metrics is None:
        metrics = ProxyMetrics()

    dispatcher = DownstreamDispatcher(
        client, config.upstream.endpoint, relay_mode=config.relay_mode,
    )
    scheduler = DispatchScheduler(dispatcher, config, metrics=metrics)

    logger.info(
        "Proxy ready: %s -> %s (relay_mode=%s)",
        config.server.route, config.upstream.endpoint, config.relay_mode,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
        yield
        await scheduler.shutdown()
        if owns_client:
            await client.aclose()

    app = FastAPI(title="queue-proxy", lifespan=lifespan)
    app.state.config = config
    app.state.scheduler = scheduler
    app.state.metrics = metrics

    @app.get(config.server.status_route)
    async def status(since: int | None = None):
        """Queue state and aggregate metrics; ``?since=<seq>`` adds the raw
        events recorded after that sequence number."""
        data = {
            "state": scheduler.state.value,
            "queue_depth": scheduler.depth,
            "in_flight": scheduler.in_flight,
            "upstream": config.upstream.endpoint,
            "relay_mode": config.relay_mode,
            **metrics.snapshot(),
        }
        if since is not None:
            data["events"] = metrics.events_since(since)
        return data

    @app.api_route(config.server.route, methods=_ALL_METHODS)
    async def proxy_endpoint(request: Request):
        peer = request.client.host if request.client else "?"
        logger.info("Received %s from %s", request.method, peer)
        try:
            body = await _read_json_body(request)
        except ValueError as e:
            return JSONResponse({"error": f"invalid JSON body: {e}"}, status_code=400)

        channel = ResponseChannel()
        pending = PendingRequest(
            method=request.method,
            headers=dict(request.headers),
            body=body,
            channel=channel,
        )
        try:
            scheduler.enqueue(pending)
        except SchedulerClosed:
            return JSONResponse({"error": "proxy is shutting down"}, status_code=503)

        try:
            head = await _await_head(request, channel)
        except BaseException:
            channel.close()
            raise
        if head is None:
            logger.info("Request #%d: client disconnected while queued", pending.index)
            return Response(status_code=499)
        status_code, headers = head
        return ChannelResponse(channel, status_code, headers)

    return app
