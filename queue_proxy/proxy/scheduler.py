"""Admission queue and single-flight scheduler.

All requests arriving at the proxy route are appended to one FIFO queue.
Exactly one request is transformed and dispatched at a time; the next one is
popped only after the previous dispatch has signalled completion.

The queue and the busy flag are owned by ``DispatchScheduler``.  Nothing
else reads or writes them, which is what lets the asyncio event loop stand in
for a lock: ``enqueue`` and ``_on_dispatch_complete`` never interleave.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections import deque

from ..types import (
    ClientDisconnected,
    DispatchState,
    DownstreamFailure,
    PendingRequest,
    QueueProxyConfig,
    SchedulerClosed,
)
from .channel import TEXT_HEADERS
from .dispatcher import DownstreamDispatcher, describe_error, inline_error
from .filters import build_forwarded_request
from .heartbeat import Heartbeat
from .metrics import ProxyMetrics

logger = logging.getLogger(__name__)

_SHUTDOWN_DETAIL = b"proxy is shutting down"


class DispatchSignal:
    """Dispatch-complete signal for one request; fires at most once."""

    def __init__(self) -> None:
        self._future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self.fire_count = 0

    @property
    def fired(self) -> bool:
        return self._future.done()

    def fire(self) -> bool:
        self.fire_count += 1
        if self._future.done():
            return False
        self._future.set_result(None)
        return True

    async def wait(self) -> None:
        await asyncio.shield(self._future)


class DispatchScheduler:
    """FIFO admission queue with a single in-flight dispatch."""

    def __init__(
        self,
        dispatcher: DownstreamDispatcher,
        config: QueueProxyConfig | None = None,
        metrics: ProxyMetrics | None = None,
    ) -> None:
        self.dispatcher = dispatcher
        self.config = config or QueueProxyConfig()
        self.metrics = metrics
        self._queue: deque[PendingRequest] = deque()
        self._state = DispatchState.IDLE
        self._in_flight: PendingRequest | None = None
        self._heartbeats: dict[int, Heartbeat] = {}
        self._counter = itertools.count()
        self._worker: asyncio.Task | None = None
        self._current: asyncio.Task | None = None
        self._closed = False

    # -- read-only views ------------------------------------------------------

    @property
    def state(self) -> DispatchState:
        return self._state

    @property
    def depth(self) -> int:
        """Requests admitted but not yet dispatched."""
        return len(self._queue)

    @property
    def in_flight(self) -> int | None:
        """Arrival index of the request being dispatched, if any."""
        return self._in_flight.index if self._in_flight else None

    @property
    def text_mode(self) -> bool:
        return self.config.relay_mode == "text"

    # -- admission ------------------------------------------------------------

    def enqueue(self, pending: PendingRequest) -> PendingRequest:
        """Admit *pending* and start draining if nothing is in flight."""
        if self._closed:
            raise SchedulerClosed("scheduler is shut down")
        pending.index = next(self._counter)
        pending.admitted_at = time.monotonic()
        self._queue.append(pending)
        logger.info(
            "Request #%d admitted (%s), queue depth %d",
            pending.index, pending.method, len(self._queue),
        )
        if self.metrics:
            self.metrics.record({
                "type": "admitted",
                "index": pending.index,
                "method": pending.method,
                "queue_depth": len(self._queue),
            })

        if self.text_mode:
            pending.channel.start(200, TEXT_HEADERS)
            hb = Heartbeat(
                pending.channel,
                interval=self.config.heartbeat.interval,
                message=self.config.heartbeat.message,
                label=f"#{pending.index}",
            )
            self._heartbeats[pending.index] = hb
            hb.start()

        if self._state is DispatchState.IDLE:
            self._start_worker()
        return pending

    # -- dispatch loop --------------------------------------------------------

    def _start_worker(self) -> None:
        self._state = DispatchState.BUSY
        self._worker = asyncio.get_running_loop().create_task(self._drain())
        self._worker.add_done_callback(self._on_worker_done)

    def _on_worker_done(self, task: asyncio.Task) -> None:
        if task.cancelled() or task.exception() is None:
            return
        exc = task.exception()
        logger.error("Dispatch loop crashed: %s", exc, exc_info=exc)
        self._in_flight = None
        self._state = DispatchState.IDLE
        self._worker = None
        if self._queue and not self._closed:
            logger.info("Restarting dispatch loop, %d request(s) waiting", len(self._queue))
            self._start_worker()

    async def _drain(self) -> None:
        pending = self._queue.popleft()
        while pending is not None:
            self._in_flight = pending
            await self._dispatch_one(pending)
            pending = self._on_dispatch_complete()

    def _on_dispatch_complete(self) -> PendingRequest | None:
        """Advance the queue: next request, or go idle when drained."""
        self._in_flight = None
        if self._queue:
            return self._queue.popleft()
        self._state = DispatchState.IDLE
        self._worker = None
        logger.info("Queue drained, waiting for requests")
        return None

    async def _dispatch_one(self, pending: PendingRequest) -> None:
        heartbeat = self._heartbeats.pop(pending.index, None)
        channel = pending.channel
        if channel.closed:
            if heartbeat:
                await heartbeat.cancel()
            logger.info("Request #%d abandoned by client before dispatch", pending.index)
            if self.metrics:
                self.metrics.record({"type": "abandoned", "index": pending.index})
            return

        signal = DispatchSignal()
        task = asyncio.get_running_loop().create_task(
            self._process(pending, heartbeat, signal)
        )
        # A task that dies before reaching the dispatcher must still release
        # the queue.
        task.add_done_callback(lambda _t: signal.fire())
        self._current = task
        try:
            await signal.wait()
        finally:
            self._current = None

    async def _process(
        self,
        pending: PendingRequest,
        heartbeat: Heartbeat | None,
        signal: DispatchSignal,
    ) -> None:
        channel = pending.channel
        wait_ms = round((time.monotonic() - pending.admitted_at) * 1000, 1)
        try:
            if self.text_mode:
                await self._hold(pending, heartbeat)
            forwarded = build_forwarded_request(pending, self.config.forward_headers)
        except asyncio.CancelledError:
            logger.info("Request #%d cancelled before dispatch", pending.index)
            await self._reject(pending, heartbeat)
            raise
        except ClientDisconnected as e:
            logger.warning("Request #%d: client went away before dispatch: %s", pending.index, e)
            if heartbeat:
                await heartbeat.cancel()
            await channel.end()
            signal.fire()
            return
        except Exception as e:
            logger.error("Request #%d could not be prepared: %s", pending.index, e, exc_info=True)
            if heartbeat:
                await heartbeat.cancel()
            try:
                await self.dispatcher.relay_failure(
                    channel, DownstreamFailure(None, describe_error(e).encode("utf-8")),
                )
            except ClientDisconnected:
                logger.debug("Request #%d: client gone, error not relayed", pending.index)
            await channel.end()
            signal.fire()
            return

        logger.info(
            "Dispatching request #%d (%s, stream=%s) after %.1fms in queue",
            pending.index, forwarded.method, forwarded.stream, wait_ms,
        )
        if self.metrics:
            self.metrics.record({
                "type": "dispatch",
                "index": pending.index,
                "stream": forwarded.stream,
                "wait_ms": wait_ms,
            })

        t_upstream = time.monotonic()
        outcome = await self.dispatcher.dispatch(forwarded, channel, signal.fire)
        upstream_ms = round((time.monotonic() - t_upstream) * 1000, 1)

        if self.metrics:
            event = {
                "type": "response",
                "index": pending.index,
                "stream": forwarded.stream,
                "upstream_ms": upstream_ms,
                "total_ms": round(wait_ms + upstream_ms, 1),
                "disconnected": outcome is None,
                "error": isinstance(outcome, DownstreamFailure),
            }
            if outcome is not None and outcome.status is not None:
                event["status"] = outcome.status
            self.metrics.record(event)

    async def _hold(self, pending: PendingRequest, heartbeat: Heartbeat | None) -> None:
        """Minimum hold before dispatch, then stop the heartbeat and mark the switch."""
        remaining = self.config.heartbeat.min_hold - (time.monotonic() - pending.admitted_at)
        if remaining > 0:
            await asyncio.sleep(remaining)
        if heartbeat:
            await heartbeat.cancel()
        await pending.channel.write(self.config.heartbeat.transition)

    # -- shutdown -------------------------------------------------------------

    async def shutdown(self) -> None:
        """Stop dispatching and tell every waiting caller the proxy is going away."""
        self._closed = True
        # Stop the drain loop first so nothing new is popped, then the
        # in-flight dispatch (its channel is finalized on cancellation).
        current = self._current
        for task in (self._worker, current):
            if task is None or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._worker = None

        while self._queue:
            pending = self._queue.popleft()
            await self._reject(pending, self._heartbeats.pop(pending.index, None))
        self._in_flight = None
        self._state = DispatchState.IDLE
        logger.info("Scheduler shut down")

    async def _reject(self, pending: PendingRequest, heartbeat: Heartbeat | None) -> None:
        """Stop the heartbeat, tell the caller the proxy is going away, end the channel.

        Answered with 503 while the head is still open, inline otherwise.
        """
        if heartbeat:
            await heartbeat.cancel()
        channel = pending.channel
        try:
            if channel.committed:
                await channel.write(inline_error(_SHUTDOWN_DETAIL.decode("utf-8")))
            else:
                await self.dispatcher.relay_failure(
                    channel, DownstreamFailure(503, _SHUTDOWN_DETAIL),
                )
        except ClientDisconnected:
            logger.debug("Request #%d: client gone before shutdown notice", pending.index)
        await channel.end()
