"""
main.py — Team Control Entry Point

Runs the gateway manager headless: loads persisted gateways, connects to
each, listens for discovery announcements and logs every change event.

Usage:
    python main.py                                  # default settings
    python main.py --config path/to/config.yaml
    python main.py --log-level DEBUG                # Verbose logging
    python main.py --no-discovery --gateway 10.0.0.5:18789 --gateway localhost:3000
"""

from __future__ import annotations
# ─────────────────────────────────────────────────────────────────────────────
# Load environment variables before settings are read
# ─────────────────────────────────────────────────────────────────────────────

from dotenv import load_dotenv
from pathlib import Path

ENV_PATH = Path(__file__).parent / ".env"
load_dotenv(dotenv_path=ENV_PATH)

# ─────────────────────────────────────────────────────────────────────────────
import argparse
import asyncio
import signal
import sys


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="team-control",
        description="Team Control — aggregate agent status from remote gateways",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: $TEAMCONTROL_CONFIG or config/config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override log level from config",
    )
    parser.add_argument(
        "--no-discovery",
        action="store_true",
        default=False,
        help="Do not listen for or scan for gateways",
    )
    parser.add_argument(
        "--gateway",
        action="append",
        default=[],
        metavar="URL",
        help="Register a gateway at startup (repeatable)",
    )
    return parser.parse_args(argv)


def bootstrap(args: argparse.Namespace):
    """
    Load config, validate it fully, and set up logging.
    Returns (settings, log) ready for use.

    Exits with code 1 (after printing a clear message) if config.yaml has
    invalid values or cross-field problems.
    """
    from config.settings import load_settings, ConfigError
    from observability.logger import setup_logging, get_logger
    from pydantic import ValidationError

    try:
        settings = load_settings(args.config)
    except ValidationError as exc:
        problems = "\n".join(
            f"  • {e['loc'][-1] if e['loc'] else '?'}: {e['msg']}"
            for e in exc.errors()
        )
        print(
            f"\n❌  Config validation failed:\n\n{problems}\n\n"
            f"    Fix config/config.yaml or your environment and restart.\n",
            file=sys.stderr,
        )
        sys.exit(1)
    except (OSError, ValueError, TypeError) as exc:
        print(
            f"\n❌  Failed to load config: {type(exc).__name__}: {exc}\n",
            file=sys.stderr,
        )
        sys.exit(1)

    try:
        settings.validate_all()
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(1)

    # CLI --log-level flag overrides config.yaml
    setup_logging(
        level=args.log_level or settings.log_level,
        log_dir=settings.log_dir,
        json_format=settings.logging.json_format,
        console_output=settings.logging.console_output,
        max_bytes=settings.logging.max_file_size_mb * 1024 * 1024,
        backup_count=settings.logging.backup_count,
    )
    log = get_logger("teamcontrol.main")
    return settings, log


async def run(settings, log, args: argparse.Namespace) -> int:
    from gateway.manager import GatewayManager

    manager = GatewayManager.from_settings(settings)
    manager.subscribe(
        lambda ev: log.info("teamcontrol.event", event_type=ev.type.value, payload=ev.payload)
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no signal handlers; Ctrl+C still raises.
            pass

    await manager.start(discovery=False if args.no_discovery else None)
    for url in args.gateway:
        manager.add_gateway(url)

    log.info("teamcontrol.running", gateways=len(manager.get_gateways()))
    try:
        await stop.wait()
    finally:
        await manager.shutdown()
    return 0


async def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings, log = bootstrap(args)
    log.info(
        "teamcontrol.starting",
        gateways_file=str(settings.gateways_file),
        discovery=settings.discovery.enabled and not args.no_discovery,
    )
    return await run(settings, log, args)


def cli() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    cli()
