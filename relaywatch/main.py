#!/usr/bin/env python3
"""
RelayWatch Agent - Main Entry Point

Usage:
    relaywatch-agent                        # config from RELAYWATCH_CONFIG or /etc/relaywatch
    relaywatch-agent --config my.yaml       # custom config file
    relaywatch-agent --log-level DEBUG      # override log level

The agent will:
1. Authenticate with the backend using the agent secret
2. Keep the session alive (heartbeat) and listen on the event stream
3. Poll every active device on its own interval and forward readings
4. Serve its state on a local status endpoint
"""

import argparse
import asyncio
import os
import sys

from relaywatch.services.agent.service import AgentService


async def run(config_path: str | None) -> bool:
    """Run the agent until a shutdown signal"""
    service = AgentService(config_path)

    try:
        return await service.run()
    finally:
        await service.stop()


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="RelayWatch field agent"
    )
    parser.add_argument(
        "--config", "-c",
        type=str,
        default=None,
        help="Path to configuration file (default: RELAYWATCH_CONFIG or /etc/relaywatch/config.yaml)"
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Log level (DEBUG, INFO, WARNING, ERROR)"
    )

    args = parser.parse_args(argv)

    if args.log_level:
        os.environ["RELAYWATCH_LOG_LEVEL"] = args.log_level.upper()

    try:
        ok = asyncio.run(run(args.config))
    except KeyboardInterrupt:
        return 0
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
