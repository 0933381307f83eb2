"""Command-line interface for running the relay's signaling server."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from collections.abc import Sequence

from aiosfu.config import (
    DEFAULT_PATH,
    DEFAULT_PORT,
    DEFAULT_RTC_MAX_PORT,
    DEFAULT_RTC_MIN_PORT,
    ServerConfig,
    load_stream_configs,
)
from aiosfu.server import InMemoryMediaEngine, SfuServer, StreamCatalog

logger = logging.getLogger(__name__)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the signaling server."""
    parser = argparse.ArgumentParser(description="Run the audio relay signaling server")
    parser.add_argument(
        "--host",
        default="0.0.0.0",  # noqa: S104
        help="Address to listen on",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=DEFAULT_PORT,
        help="Port of the signaling WebSocket",
    )
    parser.add_argument(
        "--path",
        default=DEFAULT_PATH,
        help="Path of the signaling WebSocket",
    )
    parser.add_argument(
        "--streams",
        default=None,
        help="JSON file describing the ingested streams",
    )
    parser.add_argument(
        "--announced-ip",
        default=None,
        help="Address announced to clients in ICE candidates",
    )
    parser.add_argument(
        "--rtc-min-port",
        type=int,
        default=DEFAULT_RTC_MIN_PORT,
        help="Lowest UDP port used for media",
    )
    parser.add_argument(
        "--rtc-max-port",
        type=int,
        default=DEFAULT_RTC_MAX_PORT,
        help="Highest UDP port used for media",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level to use",
    )
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> ServerConfig:
    """Turn parsed arguments into a server configuration."""
    streams = load_stream_configs(args.streams) if args.streams else []
    return ServerConfig(
        host=args.host,
        port=args.port,
        path=args.path,
        announced_ip=args.announced_ip,
        rtc_min_port=args.rtc_min_port,
        rtc_max_port=args.rtc_max_port,
        streams=streams,
    )


async def main_async(argv: Sequence[str] | None = None) -> int:
    """Entry point running the server until interrupted or the engine dies."""
    args = parse_args(list(argv) if argv is not None else None)
    logging.basicConfig(level=getattr(logging, args.log_level))

    try:
        config = build_config(args)
    except (OSError, ValueError):
        logger.exception("Invalid configuration")
        return 1
    if not config.streams:
        logger.warning("No streams configured, clients will see an empty stream list")

    engine = InMemoryMediaEngine(
        listen_ip=config.host,
        announced_ip=config.announced_ip,
        rtc_min_port=config.rtc_min_port,
        rtc_max_port=config.rtc_max_port,
    )
    await engine.start()
    catalog = StreamCatalog(config.streams)
    await catalog.setup_sources(engine)

    loop = asyncio.get_running_loop()
    server = SfuServer(loop, engine, catalog, path=config.path)
    stop = asyncio.Event()

    def signal_handler() -> None:
        logger.info("Signal received, stopping the server")
        stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    worker_died = loop.create_task(server.wait_worker_died())
    stopped = loop.create_task(stop.wait())
    exit_code = 0
    try:
        await server.start_server(config.host, config.port)
        _ = await asyncio.wait([worker_died, stopped], return_when=asyncio.FIRST_COMPLETED)
        if worker_died.done():
            logger.critical("Exiting, restart the process to recover")
            exit_code = 1
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        for task in (worker_died, stopped):
            _ = task.cancel()
        await server.stop_server()
        catalog.close()
        engine.close()
    return exit_code


def main() -> int:
    """Run the signaling server."""
    return asyncio.run(main_async(sys.argv[1:]))


if __name__ == "__main__":  # pragma: no cover - CLI entry
    raise SystemExit(main())
