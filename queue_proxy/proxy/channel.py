"""ResponseChannel: the per-caller response handle shared by scheduler and server.

The dispatch side calls ``start`` / ``write`` / ``end``; the ASGI side awaits
``head()`` and iterates ``body()``.  The chunk queue holds a single chunk, so a
slow caller slows the downstream read instead of growing a buffer.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Mapping

from ..types import ChannelStateError, ClientDisconnected

TEXT_HEADERS = {
    "content-type": "text/plain; charset=utf-8",
    "cache-control": "no-cache",
    "x-accel-buffering": "no",
}


class ResponseChannel:
    """Writable response handle for one caller.

    Must be created inside a running event loop.
    """

    def __init__(self, max_chunks: int = 1) -> None:
        loop = asyncio.get_running_loop()
        self._head: asyncio.Future[tuple[int, dict[str, str]]] = loop.create_future()
        self._chunks: asyncio.Queue[bytes | None] = asyncio.Queue(maxsize=max_chunks)
        self._ended = False
        self._closed = False
        self.bytes_written = 0

    @property
    def committed(self) -> bool:
        """True once status + headers have been handed to the caller."""
        return self._head.done()

    @property
    def ended(self) -> bool:
        return self._ended

    @property
    def closed(self) -> bool:
        """True once the caller stopped reading (finished or disconnected)."""
        return self._closed

    @property
    def status(self) -> int | None:
        if not self._head.done():
            return None
        return self._head.result()[0]

    # -- writer side ------------------------------------------------------

    def start(self, status: int, headers: Mapping[str, str] | None = None) -> None:
        if self._head.done():
            raise ChannelStateError("response head already sent")
        self._head.set_result((status, dict(headers or {})))

    async def write(self, data: bytes | str) -> None:
        if self._closed:
            raise ClientDisconnected("client closed the connection")
        if self._ended:
            raise ChannelStateError("write after end")
        if not self._head.done():
            raise ChannelStateError("write before response head")
        if isinstance(data, str):
            data = data.encode("utf-8")
        if not data:
            return
        await self._chunks.put(data)
        if self._closed:
            raise ClientDisconnected("client closed the connection")
        self.bytes_written += len(data)

    async def end(self) -> None:
        """Finalize the response.  Idempotent; safe after the caller left."""
        if self._ended:
            return
        self._ended = True
        if not self._head.done():
            # Nothing was relayed; the caller still needs a status line.
            self._head.set_result((500, dict(TEXT_HEADERS)))
        if not self._closed:
            await self._chunks.put(None)

    # -- reader side ------------------------------------------------------

    async def head(self) -> tuple[int, dict[str, str]]:
        return await asyncio.shield(self._head)

    async def body(self) -> AsyncIterator[bytes]:
        try:
            while True:
                chunk = await self._chunks.get()
                if chunk is None:
                    return
                yield chunk
        finally:
            self.close()

    def close(self) -> None:
        """Mark the caller as gone and unblock any pending write."""
        if self._closed:
            return
        self._closed = True
        while not self._chunks.empty():
            self._chunks.get_nowait()
