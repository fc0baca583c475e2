from .server import create_app
from .scheduler import DispatchScheduler
from .dispatcher import DownstreamDispatcher
from .metrics import ProxyMetrics

__all__ = [
    "create_app",
    "DispatchScheduler",
    "DownstreamDispatcher",
    "ProxyMetrics",
]
