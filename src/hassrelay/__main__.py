"""Command-line entry point: ``python -m hassrelay`` / ``hassrelay``."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

import aiohttp

from hassrelay.config import RelayConfig
from hassrelay.connector import UpstreamConnector
from hassrelay.exceptions import RelayConfigError, UpstreamError
from hassrelay.server import RelayServer

_logger = logging.getLogger("hassrelay")


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="hassrelay",
        description="Relay Home Assistant state changes to filtered WebSocket clients.",
        epilog="Every option falls back to its environment variable, then to the default.",
    )
    parser.add_argument(
        "-l",
        "--listen",
        default=None,
        help="Address and port to listen on for WebSocket connections (env LISTEN, default [::1]:8080)",
    )
    parser.add_argument(
        "-s",
        "--hass-server",
        default=None,
        help="Home Assistant host to connect to (env HASS_SERVER, default localhost)",
    )
    parser.add_argument(
        "-p",
        "--hass-port",
        type=int,
        default=None,
        help="Home Assistant port to connect to (env HASS_PORT, default 8123)",
    )
    parser.add_argument(
        "-t",
        "--hass-token",
        default=None,
        help="Long-lived access token provided by Home Assistant (env HASS_TOKEN, required)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Log level name (env HASSRELAY_LOG_LEVEL, default INFO)",
    )
    return parser.parse_args(argv)


async def _serve(config: RelayConfig) -> None:
    async with aiohttp.ClientSession() as http:
        connector = UpstreamConnector(config, http_session=http)
        try:
            await connector.start()
            async with RelayServer(config, connector):
                await connector.run()
        finally:
            await connector.close()


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    try:
        config = RelayConfig.from_env(
            listen=args.listen,
            hass_server=args.hass_server,
            hass_port=args.hass_port,
            hass_token=args.hass_token,
            log_level=args.log_level,
        )
    except RelayConfigError as exc:
        print(f"hassrelay: {exc}", file=sys.stderr)
        return 2

    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        asyncio.run(_serve(config))
    except RelayConfigError as exc:
        _logger.error("%s", exc)
        return 2
    except UpstreamError as exc:
        _logger.error("Fatal upstream error: %s", exc)
        return 1
    except KeyboardInterrupt:
        _logger.info("Interrupted, shutting down")
    return 0


if __name__ == "__main__":
    sys.exit(main())
