"""Downstream dispatch: forward one request and relay its outcome to the caller."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from typing import Any

import httpx

from ..types import (
    ClientDisconnected,
    DownstreamFailure,
    DownstreamOutcome,
    DownstreamSuccess,
    ForwardedRequest,
)
from .channel import TEXT_HEADERS, ResponseChannel
from .filters import sanitize_response_headers

logger = logging.getLogger(__name__)

STREAM_PREFIX = "--- stream ---\n"


def describe_error(exc: BaseException) -> str:
    """One-line description of a failure, e.g. ``ConnectError: connection refused``."""
    text = str(exc)
    name = type(exc).__name__
    return f"{name}: {text}" if text else name


def inline_error(detail: str, status: int | None = None) -> str:
    """Error marker appended to a response whose status line is already sent."""
    if status is None:
        return f"\n[proxy error] {detail}\n"
    return f"\n[proxy error] upstream returned {status}: {detail}\n"


def format_body(content: bytes, headers: Mapping[str, str]) -> bytes:
    """Pretty-print structured (JSON) bodies; return anything else verbatim."""
    if "json" not in headers.get("content-type", "").lower():
        return content
    try:
        data = json.loads(content)
    except ValueError:
        return content
    return json.dumps(data, indent=2, ensure_ascii=False).encode("utf-8")


def _body_kwargs(body: Any) -> dict[str, Any]:
    if body is None:
        return {}
    return {"json": body}


class DownstreamDispatcher:
    """Issues the forwarded call and writes the outcome to a ResponseChannel.

    ``relay_mode`` is ``"passthrough"`` (downstream status and headers are
    relayed) or ``"text"`` (the channel already carries a ``200 text/plain``
    head, so every outcome is written into the body).
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        endpoint: str,
        relay_mode: str = "passthrough",
    ) -> None:
        self.client = client
        self.endpoint = endpoint
        self.relay_mode = relay_mode

    @property
    def text_mode(self) -> bool:
        return self.relay_mode == "text"

    async def dispatch(
        self,
        forwarded: ForwardedRequest,
        channel: ResponseChannel,
        on_complete: Callable[[], object],
    ) -> DownstreamOutcome | None:
        """Forward *forwarded* and relay the result into *channel*.

        Always finalizes the channel and then calls *on_complete* exactly
        once, whatever happens.  Returns None when the caller disconnected
        before the outcome could be relayed.
        """
        outcome: DownstreamOutcome | None = None
        try:
            if forwarded.stream:
                outcome = await self._dispatch_streaming(forwarded, channel)
            else:
                outcome = await self._dispatch_buffered(forwarded, channel)
        except ClientDisconnected as e:
            logger.warning("Client went away during %s dispatch: %s", forwarded.method, e)
        except Exception as e:
            logger.error("Dispatch failed: %s", e, exc_info=True)
            outcome = DownstreamFailure(None, describe_error(e).encode("utf-8"))
            try:
                await self.relay_failure(channel, outcome)
            except ClientDisconnected:
                logger.debug("Client gone, dispatch error not relayed")
        finally:
            try:
                await channel.end()
            finally:
                on_complete()
        return outcome

    # -- streaming ----------------------------------------------------------

    async def _dispatch_streaming(
        self, forwarded: ForwardedRequest, channel: ResponseChannel,
    ) -> DownstreamOutcome:
        request = self.client.build_request(
            forwarded.method, self.endpoint,
            headers=forwarded.headers, **_body_kwargs(forwarded.body),
        )
        try:
            upstream = await self.client.send(request, stream=True)
        except httpx.RequestError as e:
            return await self._transport_failure(channel, e)

        try:
            if upstream.is_error:
                try:
                    detail = await upstream.aread()
                except httpx.HTTPError as e:
                    return await self._transport_failure(channel, e)
                failure = DownstreamFailure(
                    upstream.status_code, detail,
                    sanitize_response_headers(upstream.headers),
                )
                logger.warning(
                    "Upstream error %d (stream): %s",
                    upstream.status_code, detail[:200].decode("utf-8", errors="replace"),
                )
                await self.relay_failure(channel, failure)
                return failure

            resp_headers = sanitize_response_headers(upstream.headers)
            if self.text_mode:
                await channel.write(STREAM_PREFIX)
            else:
                relayed = dict(resp_headers)
                relayed.setdefault("cache-control", "no-cache")
                relayed.setdefault("x-accel-buffering", "no")
                channel.start(upstream.status_code, relayed)

            try:
                async for chunk in upstream.aiter_bytes():
                    await channel.write(chunk)
            except httpx.HTTPError as e:
                detail = describe_error(e)
                logger.warning("Upstream stream interrupted: %s", detail)
                await channel.write(inline_error(detail))
                return DownstreamFailure(upstream.status_code, detail.encode("utf-8"), resp_headers)

            logger.info(
                "Stream relayed: status=%d bytes=%d",
                upstream.status_code, channel.bytes_written,
            )
            return DownstreamSuccess(upstream.status_code, resp_headers)
        finally:
            await upstream.aclose()

    # -- buffered -----------------------------------------------------------

    async def _dispatch_buffered(
        self, forwarded: ForwardedRequest, channel: ResponseChannel,
    ) -> DownstreamOutcome:
        try:
            resp = await self.client.request(
                forwarded.method, self.endpoint,
                headers=forwarded.headers, **_body_kwargs(forwarded.body),
            )
        except httpx.RequestError as e:
            return await self._transport_failure(channel, e)

        resp_headers = sanitize_response_headers(resp.headers)
        if resp.is_error:
            failure = DownstreamFailure(resp.status_code, resp.content, resp_headers)
            logger.warning(
                "Upstream error %d: %s",
                resp.status_code, resp.content[:200].decode("utf-8", errors="replace"),
            )
            await self.relay_failure(channel, failure)
            return failure

        body = format_body(resp.content, resp.headers)
        if not self.text_mode:
            channel.start(resp.status_code, resp_headers)
        await channel.write(body)
        logger.info("Response relayed: status=%d bytes=%d", resp.status_code, len(body))
        return DownstreamSuccess(resp.status_code, resp_headers, body)

    # -- failures -----------------------------------------------------------

    async def _transport_failure(
        self, channel: ResponseChannel, exc: httpx.HTTPError,
    ) -> DownstreamFailure:
        detail = describe_error(exc)
        logger.warning("Upstream unreachable (%s): %s", self.endpoint, detail)
        failure = DownstreamFailure(None, detail.encode("utf-8"))
        await self.relay_failure(channel, failure)
        return failure

    async def relay_failure(self, channel: ResponseChannel, failure: DownstreamFailure) -> None:
        """Write *failure* to the caller: as status + body while the head is
        still open, inline once it has been committed."""
        status = failure.status if failure.status is not None else 500
        if not channel.committed:
            headers = dict(failure.headers)
            if not any(k.lower() == "content-type" for k in headers):
                headers.update(TEXT_HEADERS)
            channel.start(status, headers)
            await channel.write(failure.detail)
            return
        detail = failure.detail.decode("utf-8", errors="replace")
        await channel.write(inline_error(detail, failure.status))
