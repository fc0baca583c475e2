"""queue-proxy: single-flight forwarding proxy with a FIFO admission queue."""

from .config import load_config
from .types import (
    DispatchState,
    ForwardedRequest,
    PendingRequest,
    QueueProxyConfig,
    QueueProxyError,
)

__version__ = "0.1.0"

__all__ = [
    "load_config",
    "DispatchState",
    "ForwardedRequest",
    "PendingRequest",
    "QueueProxyConfig",
    "QueueProxyError",
]
