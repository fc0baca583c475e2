"""All dataclasses, enums, and exceptions for queue-proxy."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Literal, Union

if TYPE_CHECKING:
    from .proxy.channel import ResponseChannel


DEFAULT_ENDPOINT = "https://chat01.ai/v1/chat/completions"
DEFAULT_PORT = 3000

RelayMode = Literal["passthrough", "text"]
RELAY_MODES: tuple[str, ...] = ("passthrough", "text")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class QueueProxyError(Exception):
    """Base class for queue-proxy errors."""


class ClientDisconnected(QueueProxyError):
    """Raised when writing to a response channel whose caller has gone away."""


class ChannelStateError(QueueProxyError):
    """Raised on out-of-order channel use (second head, write after end)."""


class SchedulerClosed(QueueProxyError):
    """Raised when a request is enqueued after the scheduler shut down."""


# ---------------------------------------------------------------------------
# Queue & dispatch
# ---------------------------------------------------------------------------

class DispatchState(Enum):
    IDLE = "idle"
    BUSY = "busy"


@dataclass
class PendingRequest:
    """An admitted request waiting in (or being dispatched from) the queue.

    ``index`` and ``admitted_at`` are stamped by the scheduler on enqueue.
    """
    method: str
    headers: dict[str, str]
    body: Any
    channel: ResponseChannel
    index: int = -1
    admitted_at: float = 0.0


@dataclass
class ForwardedRequest:
    """The filtered/transformed view of a PendingRequest sent downstream."""
    method: str
    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None
    stream: bool = False


@dataclass
class DownstreamSuccess:
    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""


@dataclass
class DownstreamFailure:
    """Downstream call failed.

    ``status`` is None when no response was received at all (connection
    refused, timeout, DNS failure).
    """
    status: int | None
    detail: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)


DownstreamOutcome = Union[DownstreamSuccess, DownstreamFailure]


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    route: str = "/proxy"
    status_route: str = "/status"


@dataclass
class UpstreamConfig:
    endpoint: str = DEFAULT_ENDPOINT
    timeout: float | None = 300.0  # read timeout; None waits forever
    connect_timeout: float = 10.0
    follow_redirects: bool = True


@dataclass
class HeartbeatConfig:
    """Keep-alive lines written to waiting callers (``text`` relay mode only)."""
    interval: float = 5.0
    min_hold: float = 2.0
    message: str = "waiting for upstream...\n"
    transition: str = "dispatching request...\n"


@dataclass
class QueueProxyConfig:
    version: str = "0.1"
    relay_mode: str = "passthrough"
    forward_headers: list[str] = field(default_factory=lambda: [
        "content-type", "accept", "authorization",
    ])
    log_level: str = "INFO"
    server: ServerConfig = field(default_factory=ServerConfig)
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    heartbeat: HeartbeatConfig = field(default_factory=HeartbeatConfig)
