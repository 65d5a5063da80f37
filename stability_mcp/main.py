"""Command-line entry point.

Usage:
    stability-mcp            serve over stdin/stdout
    stability-mcp --sse      serve over HTTP event streams on $HOST:$PORT
"""
from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional

import anyio

from .client import PollPolicy, StabilityAiApiClient
from .config import ServerConfig, configure_logging, load_config
from .errors import ConfigurationError, StorageError
from .resources import create_resource_store
from .server import create_server, run_stdio_server
from .sse import run_sse_server
from .tools import ToolDispatcher

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stability-mcp",
        description="MCP server for Stability AI image generation and editing.",
        add_help=False,
    )
    parser.add_argument(
        "--sse",
        action="store_true",
        help="serve over HTTP event streams instead of stdin/stdout",
    )
    return parser


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Accept no arguments or exactly ``--sse``; anything else exits with usage."""
    parser = build_parser()
    argv = sys.argv[1:] if argv is None else list(argv)
    if len(argv) > 1:
        parser.error("expected at most one argument")
    return parser.parse_args(argv)


async def serve(config: ServerConfig) -> None:
    store = create_resource_store(config.storage)
    async with StabilityAiApiClient(
        config.api_key,
        base_url=config.base_url,
        poll_policy=PollPolicy.from_settings(config.poll),
    ) as client:
        dispatcher = ToolDispatcher(
            client,
            store,
            save_metadata=config.save_metadata,
            save_metadata_failed=config.save_metadata_failed,
        )
        server = create_server(dispatcher, store)
        if config.use_sse:
            await run_sse_server(server, host=config.host, port=config.port)
        else:
            await run_stdio_server(server)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        config = load_config(use_sse=args.sse)
    except ConfigurationError as exc:
        configure_logging()
        logger.error("Fatal error: %s", exc)
        return 1

    configure_logging(config.log_level)
    try:
        anyio.run(serve, config)
    except StorageError as exc:
        logger.error("Fatal error: %s", exc)
        return 1
    except KeyboardInterrupt:
        logger.info("Shutting down")
    return 0


if __name__ == "__main__":
    sys.exit(main())
