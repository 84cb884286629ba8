#!/usr/bin/env python3
"""
Run Relay Server

Bridges WebSocket clients to TCP services. Clients connect with:

    ws://<relay>:<port>/?host=<tcp-host>&port=<tcp-port>

Configuration comes from environment variables (WS_HOST, WS_PORT,
WS_MAX_SESSIONS, WS_CONNECT_TIMEOUT, WS_IDLE_TIMEOUT, ...).

Usage:
    WS_PORT=19198 python run_relay.py [--debug]
"""

import argparse
import asyncio
import logging
import sys

from common.config import load_config_from_env
from relay.server import RelayServer

logger = logging.getLogger("run_relay")


def main():
    parser = argparse.ArgumentParser(description="WebSocket to TCP Relay Server")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    try:
        config = load_config_from_env()
    except ValueError as e:
        logging.basicConfig(level=logging.INFO)
        logger.error(f"Invalid configuration: {e}")
        sys.exit(2)

    log_level = logging.DEBUG if args.debug else config.log_level
    logging.basicConfig(level=log_level, format=config.log_format)

    server = RelayServer(config)

    try:
        asyncio.run(server.start())
    except OSError as e:
        logger.error(f"Could not listen on {config.host}:{config.port}: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nShutting down...")


if __name__ == "__main__":
    main()
