"""Janus - Entry Point

Usage:
    python -m janus [--config PATH] [--paper | --live] [--log-level LEVEL] [command]

Commands:
    run                         - Start the coordinator (default)
    health                      - Check health of a running instance
    version                     - Show version
    emergency trigger REASON    - Halt trading (system-wide, or --user-id)
    emergency resolve EVENT_ID  - Resolve an emergency event

Examples:
    python -m janus
    python -m janus --config config/production.toml --live
    python -m janus emergency trigger "venue outage" --user-id u-123
    python -m janus emergency resolve 5d1c...
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Optional

import httpx

from janus import __version__


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="janus",
        description="Cross-venue arbitrage coordinator with a scoped emergency stop",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"Janus {__version__}",
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file (TOML)",
    )

    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--paper",
        dest="paper_trading",
        action="store_true",
        default=None,
        help="Simulate fills instead of submitting to venues",
    )
    mode.add_argument(
        "--live",
        dest="paper_trading",
        action="store_false",
        help="Submit real orders to venues",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Log level",
    )

    parser.add_argument(
        "--url",
        default=None,
        help="Base URL of a running instance (health and emergency commands)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    subparsers.add_parser("run", help="Start the coordinator")
    subparsers.add_parser("health", help="Check health status")
    subparsers.add_parser("version", help="Show version")

    emergency = subparsers.add_parser("emergency", help="Emergency stop controls")
    actions = emergency.add_subparsers(dest="action", required=True)

    trigger = actions.add_parser("trigger", help="Halt trading")
    trigger.add_argument("reason", help="Why trading is being halted")
    trigger.add_argument("--user-id", default=None, help="Halt one user only")

    resolve = actions.add_parser("resolve", help="Resolve an emergency event")
    resolve.add_argument("event_id", help="Emergency event id")

    actions.add_parser("active", help="List unresolved emergency events")

    return parser.parse_args(argv)


def find_config_file(specified: Optional[Path]) -> Optional[Path]:
    """Find configuration file."""
    if specified and specified.exists():
        return specified

    search_paths = [
        Path("config/default.toml"),
        Path("config/production.toml"),
        Path("janus.toml"),
        Path("/etc/janus/janus.toml"),
    ]

    for path in search_paths:
        if path.exists():
            return path

    return None


def load_config(args: argparse.Namespace):
    from janus.core.config import ConfigManager

    overrides: dict[str, Any] = {}
    if args.paper_trading is not None:
        overrides["trading.paper_trading"] = args.paper_trading
    if args.log_level:
        overrides["janus.log_level"] = args.log_level

    return ConfigManager(find_config_file(args.config), overrides=overrides)


def base_url(args: argparse.Namespace) -> str:
    if args.url:
        return args.url.rstrip("/")
    config = load_config(args)
    port = config.get_int("server.port", 8080)
    return f"http://localhost:{port}"


async def run_app(args: argparse.Namespace) -> int:
    """Run the coordinator until SIGTERM/SIGINT."""
    import structlog

    from janus.app import JanusApp

    app = JanusApp(load_config(args))
    log = structlog.get_logger()

    try:
        await app.run_forever()
        return 0
    except Exception as e:
        log.error("fatal_error", error=str(e), exc_info=True)
        return 1


async def check_health(url: str) -> int:
    """Check health status."""
    try:
        async with httpx.AsyncClient() as client:
            response = await client.get(f"{url}/health", timeout=5.0)
    except httpx.ConnectError:
        print("Cannot connect to Janus (is it running?)")
        return 1
    except httpx.HTTPError as e:
        print(f"Health check error: {e}")
        return 1

    data = response.json()
    print(f"Status: {data.get('status', 'unknown')}")
    print(f"Message: {data.get('message', '')}")
    print(f"In flight: {data.get('in_flight', 0)}")
    for plan, count in (data.get("connections") or {}).items():
        print(f"  {plan}: {count}")

    return 0 if data.get("status") == "healthy" else 1


async def emergency_command(url: str, args: argparse.Namespace) -> int:
    """Drive the emergency routes of a running instance."""
    async with httpx.AsyncClient(base_url=url, timeout=30.0) as client:
        try:
            if args.action == "trigger":
                body: dict[str, Any] = {"reason": args.reason}
                if args.user_id:
                    body["userId"] = args.user_id
                response = await client.post("/emergency/stop", json=body)
            elif args.action == "resolve":
                response = await client.post(f"/emergency/{args.event_id}/resolve")
            else:
                response = await client.get("/emergency/active")
        except httpx.ConnectError:
            print("Cannot connect to Janus (is it running?)")
            return 1

    print(json.dumps(response.json(), indent=2))
    return 0 if response.is_success else 1


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    if args.command == "version":
        print(f"Janus {__version__}")
        return 0

    if args.command == "health":
        return asyncio.run(check_health(base_url(args)))

    if args.command == "emergency":
        return asyncio.run(emergency_command(base_url(args), args))

    return asyncio.run(run_app(args))


if __name__ == "__main__":
    sys.exit(main())
