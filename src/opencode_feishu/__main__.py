"""CLI entry point for opencode-feishu."""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys

from opencode_feishu.app import BridgeApp
from opencode_feishu.config import AppConfig, load_config
from opencode_feishu.errors import ConfigError
from opencode_feishu.log import setup_logging
from opencode_feishu.opencode.client import OpenCodeClient


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="opencode-feishu",
        description="Bridge Feishu chats to an OpenCode agent server",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    for name, help_text in [
        ("start", "Start the bridge"),
        ("config-check", "Validate configuration"),
        ("health", "Check the OpenCode server"),
    ]:
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("-c", "--config", default="config.yaml", help="Path to config file")
        sub.add_argument("-e", "--env", default=".env", help="Path to .env file")

    args = parser.parse_args(argv)

    if args.command is None:
        # Default to start
        args.command = "start"
        args.config = "config.yaml"
        args.env = ".env"

    config = _load(args.config, args.env)
    if args.command == "config-check":
        _check_config(args.config, config)
    elif args.command == "health":
        _health(config)
    elif args.command == "start":
        _run(config)


def _load(config_path: str, env_path: str) -> AppConfig:
    try:
        return load_config(config_path, env_path)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Copy config.example.yaml to config.yaml and fill in your Feishu app", file=sys.stderr)
        sys.exit(1)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)


def _check_config(config_path: str, config: AppConfig) -> None:
    """Print a configuration summary."""
    print(f"Configuration valid: {config_path}")
    print(f"  Feishu app: {config.feishu.app_id[:8]}...")
    print(f"  Events: long connection via {config.feishu.base_url}")
    print(f"  OpenCode: {config.opencode.base_url} (timeout {config.opencode.timeout}s)")
    print(f"  Model: {config.opencode.model or 'server default'}")
    print(f"  Agent: {config.opencode.agent or 'server default'}")
    print(f"  Group policy: {config.bot.group_policy}")
    print(f"  Streaming relay: {'on' if config.relay.enabled else 'off'}")


def _health(config: AppConfig) -> None:
    async def _probe() -> bool:
        client = OpenCodeClient(config.opencode)
        try:
            return await client.health_check()
        finally:
            await client.close()

    if asyncio.run(_probe()):
        print(f"OpenCode server healthy: {config.opencode.base_url}")
    else:
        print(f"OpenCode server unreachable: {config.opencode.base_url}", file=sys.stderr)
        sys.exit(1)


def _run(config: AppConfig) -> None:
    """Start the bridge and block until SIGINT/SIGTERM."""
    setup_logging(config.log_level, config.log_format)

    async def _async_main() -> None:
        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()

        def _signal_handler() -> None:
            stop_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, _signal_handler)
            except NotImplementedError:
                # Windows doesn't support add_signal_handler
                signal.signal(sig, lambda s, f: _signal_handler())

        app = BridgeApp(config)
        await app.start()
        try:
            await stop_event.wait()
        finally:
            await app.stop()

    asyncio.run(_async_main())


if __name__ == "__main__":
    main()
