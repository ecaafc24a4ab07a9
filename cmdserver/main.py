"""
Command server main application

Runs the demo command set on a TCP port in either multi-client or
single-client mode.
"""
import argparse
import asyncio

import structlog

from cmdserver.config import settings
from cmdserver.demo import DemoConnection
from cmdserver.engine.server import CommandServer
from cmdserver.logging import setup_logging
from cmdserver.models import FramingPolicy, ServerMode

logger = structlog.get_logger()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Line-oriented TCP command server")
    parser.add_argument("--host", default=settings.host, help="Host to bind to")
    parser.add_argument("--port", type=int, default=settings.port, help="Port to bind to")
    parser.add_argument(
        "--mode",
        choices=[mode.value for mode in ServerMode],
        default=settings.mode.value,
        help="Serve many clients at once or exactly one",
    )
    parser.add_argument(
        "--framing",
        choices=[policy.value for policy in FramingPolicy],
        default=settings.framing.value if settings.framing else None,
        help="Message framing (default depends on --mode)",
    )
    parser.add_argument("--log-level", default=settings.log_level, help="Logging level")
    parser.add_argument(
        "--no-log-file",
        action="store_true",
        help="Log to the console only",
    )
    return parser


async def run(args: argparse.Namespace) -> None:
    server = CommandServer(
        port=args.port,
        host=args.host,
        mode=ServerMode(args.mode),
        connection_class=DemoConnection,
        framing=FramingPolicy(args.framing) if args.framing else None,
    )
    await server.serve_forever()


def main() -> None:
    """Main entry point"""
    args = build_parser().parse_args()
    setup_logging(
        "server",
        level=args.log_level,
        log_to_file=False if args.no_log_file else None,
    )

    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        logger.info("server_shutdown", port=args.port)


if __name__ == "__main__":
    main()
