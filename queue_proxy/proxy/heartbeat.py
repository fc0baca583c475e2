"""Keep-alive lines for callers waiting on a queued request."""

from __future__ import annotations

import asyncio
import contextlib
import logging

from ..types import ChannelStateError, ClientDisconnected
from .channel import ResponseChannel

logger = logging.getLogger(__name__)


class Heartbeat:
    """Writes ``message`` to the channel now and every ``interval`` seconds.

    ``cancel()`` waits for the timer task to exit, so once it returns no
    further tick can reach the channel.
    """

    def __init__(
        self,
        channel: ResponseChannel,
        interval: float = 5.0,
        message: str = "waiting for upstream...\n",
        *,
        label: str = "",
    ) -> None:
        self.channel = channel
        self.interval = interval
        self.message = message
        self.label = label
        self.ticks = 0
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        while True:
            try:
                await self.channel.write(self.message)
            except (ClientDisconnected, ChannelStateError) as e:
                logger.info("Heartbeat %s stopped: %s", self.label, e)
                return
            self.ticks += 1
            await asyncio.sleep(self.interval)

    async def cancel(self) -> None:
        task = self._task
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
