"""Request/response filtering applied around each downstream dispatch."""

from __future__ import annotations

import copy
from collections.abc import Iterable, Mapping
from typing import Any

from ..types import ForwardedRequest, PendingRequest

FORWARD_HEADERS = frozenset({"content-type", "accept", "authorization"})

# Stripped from relayed responses: the body is re-framed by our server,
# and httpx has already decoded any content-encoding.
_HOP_BY_HOP = frozenset({
    "connection", "transfer-encoding", "keep-alive",
    "proxy-authenticate", "proxy-authorization", "te", "trailers",
    "upgrade", "content-length", "content-encoding",
})

STREAM_FIELD = "stream"


def filter_headers(
    headers: Mapping[str, str],
    allow: Iterable[str] = FORWARD_HEADERS,
) -> dict[str, str]:
    """Keep only allow-listed headers (case-insensitive), preserving original keys."""
    allowed = {a.lower() for a in allow}
    return {
        k: v for k, v in headers.items()
        if k.lower() in allowed
    }


def transform_body(body: Any) -> tuple[Any, bool]:
    """Return ``(body_copy, stream_mode)`` with the ``stream`` field removed.

    Stream mode is on only when ``stream`` is literally ``True``; the key is
    dropped from the copy whatever its value so the downstream never sees it.
    The caller's body is never mutated.
    """
    transformed = copy.deepcopy(body)
    if not isinstance(transformed, dict):
        return transformed, False
    stream = transformed.get(STREAM_FIELD) is True
    transformed.pop(STREAM_FIELD, None)
    return transformed, stream


def sanitize_response_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Filter out hop-by-hop and length headers before relaying to the caller."""
    return {
        k: v for k, v in headers.items()
        if k.lower() not in _HOP_BY_HOP
    }


def build_forwarded_request(
    pending: PendingRequest,
    allow: Iterable[str] = FORWARD_HEADERS,
) -> ForwardedRequest:
    body, stream = transform_body(pending.body)
    return ForwardedRequest(
        method=pending.method,
        headers=filter_headers(pending.headers, allow),
        body=body,
        stream=stream,
    )
