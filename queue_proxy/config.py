"""Configuration loading, validation, and defaults."""

from __future__ import annotations

import dataclasses
import json
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from .types import (
    DEFAULT_ENDPOINT,
    DEFAULT_PORT,
    RELAY_MODES,
    HeartbeatConfig,
    QueueProxyConfig,
    ServerConfig,
    UpstreamConfig,
)

CONFIG_FILENAMES = [
    "queue-proxy.yaml",
    "queue-proxy.yml",
    "queue-proxy.json",
    "queueproxy.yaml",
    "queueproxy.yml",
    "queueproxy.json",
]

# Environment variables that override whatever the config file says.
ENV_ENDPOINT = "MODEL_API_ENDPOINT"
ENV_PORT = "PORT"


def _discover_config() -> Path | None:
    """Search CWD then parent dirs up to home for a config file."""
    cwd = Path.cwd()
    home = Path.home()
    search = cwd
    while True:
        for name in CONFIG_FILENAMES:
            candidate = search / name
            if candidate.is_file():
                return candidate
        if search == home or search == search.parent:
            break
        search = search.parent
    return None


def _build_config(raw: dict[str, Any]) -> QueueProxyConfig:
    """Build a QueueProxyConfig from a raw dict."""
    server_raw = raw.get("server", {}) or {}
    server = ServerConfig(
        host=server_raw.get("host", "0.0.0.0"),
        port=int(server_raw.get("port", DEFAULT_PORT)),
        route=server_raw.get("route", "/proxy"),
        status_route=server_raw.get("status_route", "/status"),
    )

    upstream_raw = raw.get("upstream", {}) or {}
    upstream = UpstreamConfig(
        endpoint=upstream_raw.get("endpoint", DEFAULT_ENDPOINT),
        timeout=upstream_raw.get("timeout", 300.0),
        connect_timeout=upstream_raw.get("connect_timeout", 10.0),
        follow_redirects=upstream_raw.get("follow_redirects", True),
    )

    hb_raw = raw.get("heartbeat", {}) or {}
    defaults = HeartbeatConfig()
    heartbeat = HeartbeatConfig(
        interval=hb_raw.get("interval", defaults.interval),
        min_hold=hb_raw.get("min_hold", defaults.min_hold),
        message=hb_raw.get("message", defaults.message),
        transition=hb_raw.get("transition", defaults.transition),
    )

    forward_headers = raw.get("forward_headers")
    if forward_headers is None:
        forward_headers = QueueProxyConfig().forward_headers

    return QueueProxyConfig(
        version=str(raw.get("version", "0.1")),
        relay_mode=raw.get("relay_mode", "passthrough"),
        forward_headers=[h.lower() for h in forward_headers],
        log_level=str(raw.get("log_level", "INFO")).upper(),
        server=server,
        upstream=upstream,
        heartbeat=heartbeat,
    )


def _apply_env(config: QueueProxyConfig, env: Mapping[str, str]) -> QueueProxyConfig:
    """Overlay MODEL_API_ENDPOINT / PORT on top of file settings."""
    endpoint = env.get(ENV_ENDPOINT)
    if endpoint:
        config.upstream.endpoint = endpoint
    port = env.get(ENV_PORT)
    if port:
        try:
            config.server.port = int(port)
        except ValueError:
            raise ValueError(f"{ENV_PORT} must be an integer, got {port!r}") from None
    return config


def validate_config(config: QueueProxyConfig) -> list[str]:
    """Validate a config. Returns list of error strings (empty = valid)."""
    errors: list[str] = []

    if config.relay_mode not in RELAY_MODES:
        errors.append(
            f"relay_mode must be one of {', '.join(RELAY_MODES)} "
            f"(got '{config.relay_mode}')"
        )

    if not (0 < config.server.port < 65536):
        errors.append(f"server.port out of range: {config.server.port}")

    if not config.server.route.startswith("/"):
        errors.append(f"server.route must start with '/' (got '{config.server.route}')")

    if config.server.status_route == config.server.route:
        errors.append("server.status_route must differ from server.route")

    if not config.upstream.endpoint.startswith(("http://", "https://")):
        errors.append(
            f"upstream.endpoint must be an http(s) URL (got '{config.upstream.endpoint}')"
        )

    if config.upstream.timeout is not None and config.upstream.timeout <= 0:
        errors.append("upstream.timeout must be > 0 or null")

    if config.upstream.connect_timeout <= 0:
        errors.append("upstream.connect_timeout must be > 0")

    if config.heartbeat.interval <= 0:
        errors.append("heartbeat.interval must be > 0")

    if config.heartbeat.min_hold < 0:
        errors.append("heartbeat.min_hold must be >= 0")

    if not config.forward_headers:
        errors.append("forward_headers must list at least one header")

    return errors


def config_to_dict(config: QueueProxyConfig) -> dict[str, Any]:
    """Plain-dict form of a config, suitable for YAML output."""
    return dataclasses.asdict(config)


def load_config(
    config_path: str | Path | None = None,
    config_dict: dict | None = None,
    env: Mapping[str, str] | None = None,
) -> QueueProxyConfig:
    """Load config from dict, explicit path, or auto-discover.

    Environment overrides (``MODEL_API_ENDPOINT``, ``PORT``) are applied last.
    Pass ``env={}`` to ignore the process environment.
    """
    if env is None:
        env = os.environ

    if config_dict is not None:
        return _apply_env(_build_config(config_dict), env)

    if config_path is not None:
        path = Path(config_path)
    else:
        path = _discover_config()

    if path is None:
        # Return defaults
        return _apply_env(_build_config({}), env)

    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")

    text = path.read_text()
    if path.suffix == ".json":
        raw = json.loads(text)
    else:
        raw = yaml.safe_load(text) or {}

    return _apply_env(_build_config(raw), env)
