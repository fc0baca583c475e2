"""Shared fixtures for queue-proxy tests."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from queue_proxy.config import load_config
from queue_proxy.proxy.channel import ResponseChannel
from queue_proxy.types import QueueProxyConfig

ENDPOINT = "http://downstream.test/v1/chat/completions"


def json_response(data, status: int = 200, headers: dict | None = None):
    """Responder result for DownstreamStub: a JSON body in one chunk."""
    hdrs = {"content-type": "application/json"}
    hdrs.update(headers or {})
    return status, hdrs, [json.dumps(data).encode()]


class DownstreamStub:
    """Instrumented downstream for ``httpx.MockTransport``.

    Counts calls that are active at the same time (from request receipt to
    the end of the response body) and keeps a timeline of start/end events.
    ``responder(request)`` returns ``(status, headers, chunks)`` or raises
    an ``httpx`` transport error.
    """

    def __init__(self, responder=None, delay: float = 0.01) -> None:
        self.responder = responder or (lambda request: json_response({"result": "ok"}))
        self.delay = delay
        self.active = 0
        self.max_active = 0
        self.calls: list[httpx.Request] = []
        self.timeline: list[tuple[str, int]] = []

    def _tag(self, request: httpx.Request) -> int:
        try:
            return json.loads(request.content).get("n", -1)
        except (ValueError, AttributeError):
            return -1

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.calls.append(request)
        tag = self._tag(request)
        self.timeline.append(("start", tag))
        await asyncio.sleep(self.delay)
        try:
            status, headers, chunks = self.responder(request)
        except Exception:
            self.active -= 1
            self.timeline.append(("end", tag))
            raise
        return httpx.Response(status, headers=headers, content=self._body(chunks, tag))

    async def _body(self, chunks, tag: int):
        try:
            for chunk in chunks:
                await asyncio.sleep(0)
                yield chunk
        finally:
            self.active -= 1
            self.timeline.append(("end", tag))

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


async def read_channel(channel: ResponseChannel) -> tuple[int, dict[str, str], bytes]:
    """Consume a channel the way the ASGI response does."""
    status, headers = await channel.head()
    chunks = [chunk async for chunk in channel.body()]
    return status, headers, b"".join(chunks)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    monkeypatch.delenv("MODEL_API_ENDPOINT", raising=False)
    monkeypatch.delenv("PORT", raising=False)


@pytest.fixture
def proxy_config() -> QueueProxyConfig:
    return load_config(config_dict={"upstream": {"endpoint": ENDPOINT}}, env={})


@pytest.fixture
def text_config() -> QueueProxyConfig:
    return load_config(config_dict={
        "relay_mode": "text",
        "upstream": {"endpoint": ENDPOINT},
        "heartbeat": {"interval": 0.02, "min_hold": 0.05},
    }, env={})
