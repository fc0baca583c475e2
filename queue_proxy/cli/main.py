"""CLI: queue-proxy serve, config validate, config show."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

import yaml

from ..config import config_to_dict, load_config, validate_config
from ..types import RELAY_MODES


class _SuppressCancelled(logging.Filter):
    """Drop CancelledError tracebacks uvicorn logs when it force-closes streams."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.exc_info:
            exc_type = record.exc_info[0]
            if exc_type is asyncio.CancelledError:
                return False
        return True


def _load_or_exit(args):
    try:
        return load_config(args.config)
    except Exception as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)


def cmd_serve(args):
    """Start the queued forwarding proxy."""
    import uvicorn

    from ..proxy import create_app

    config = _load_or_exit(args)
    if args.host:
        config.server.host = args.host
    if args.port:
        config.server.port = args.port
    if args.upstream:
        config.upstream.endpoint = args.upstream
    if args.relay_mode:
        config.relay_mode = args.relay_mode

    errors = validate_config(config)
    if errors:
        print("Config validation errors:", file=sys.stderr)
        for err in errors:
            print(f"  - {err}", file=sys.stderr)
        sys.exit(1)

    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("uvicorn.error").addFilter(_SuppressCancelled())

    app = create_app(config)
    print(
        f"queue-proxy on {config.server.host}:{config.server.port}{config.server.route} "
        f"-> {config.upstream.endpoint} ({config.relay_mode})",
        flush=True,
    )
    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level=config.log_level.lower(),
        timeout_graceful_shutdown=2,
    )


def cmd_config_validate(args):
    """Validate config file."""
    config = _load_or_exit(args)

    errors = validate_config(config)
    if errors:
        print("Config validation errors:")
        for err in errors:
            print(f"  - {err}")
        sys.exit(1)
    else:
        print("Config is valid.")
        print(f"  Upstream:   {config.upstream.endpoint}")
        print(f"  Listen:     {config.server.host}:{config.server.port}{config.server.route}")
        print(f"  Relay mode: {config.relay_mode}")
        print(f"  Headers:    {', '.join(config.forward_headers)}")


def cmd_config_show(args):
    """Print the effective config (file + environment) as YAML."""
    config = _load_or_exit(args)
    print(yaml.safe_dump(config_to_dict(config), sort_keys=False), end="")


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(
        prog="queue-proxy",
        description="Forward requests to a downstream API one at a time, in arrival order",
    )
    parser.add_argument("--config", "-c", help="Path to config file")

    subparsers = parser.add_subparsers(dest="command")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Start the proxy server")
    serve_parser.add_argument(
        "--upstream", "-u", default=None,
        help="Downstream endpoint URL (overrides MODEL_API_ENDPOINT and config)",
    )
    serve_parser.add_argument("--port", "-p", type=int, default=None)
    serve_parser.add_argument("--host", default=None)
    serve_parser.add_argument(
        "--relay-mode", choices=RELAY_MODES, default=None,
        help="passthrough: relay downstream status/headers; text: text/plain with heartbeats",
    )

    # config validate / show
    config_parser = subparsers.add_parser("config", help="Config operations")
    config_sub = config_parser.add_subparsers(dest="config_command")
    config_sub.add_parser("validate", help="Validate config file")
    config_sub.add_parser("show", help="Show effective config as YAML")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "config":
        if args.config_command == "validate":
            cmd_config_validate(args)
        elif args.config_command == "show":
            cmd_config_show(args)
        else:
            print("Usage: queue-proxy config {validate,show}")
            sys.exit(1)


if __name__ == "__main__":
    main()
