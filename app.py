#!/usr/bin/env python3
import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional, Tuple

from port_forward import (
    DEFAULT_BUFFER_SIZE,
    DEFAULT_DESTINATION_HOST,
    DEFAULT_DESTINATION_PORT,
    DEFAULT_LISTEN_PORT,
    AcceptError,
    BindError,
    Configuration,
    Listener,
)

log = logging.getLogger("port_forward")

LOG_FORMAT = "[%(levelname)s] - %(message)s"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


# Argument types
def port_number(value: str) -> int:
    try:
        port = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port: {value!r}")
    if not 1 <= port <= 65535:
        raise argparse.ArgumentTypeError(f"port must be between 1 and 65535: {port}")
    return port


def positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid integer: {value!r}")
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be positive: {number}")
    return number


def positive_float(value: str) -> float:
    try:
        number = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number: {value!r}")
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be positive: {number}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="port-forward",
        description="Forward every TCP connection on a local port to a fixed destination.",
    )
    parser.add_argument("--listen-port", type=port_number, default=DEFAULT_LISTEN_PORT,
                        help=f"port to listen on, all interfaces (default: {DEFAULT_LISTEN_PORT})")
    parser.add_argument("--target-host", default=DEFAULT_DESTINATION_HOST,
                        help=f"destination host name or address (default: {DEFAULT_DESTINATION_HOST})")
    parser.add_argument("--target-port", type=port_number, default=DEFAULT_DESTINATION_PORT,
                        help=f"destination port (default: {DEFAULT_DESTINATION_PORT})")
    parser.add_argument("--buffer-size", type=positive_int, default=DEFAULT_BUFFER_SIZE,
                        help=f"relay chunk size in bytes (default: {DEFAULT_BUFFER_SIZE})")
    parser.add_argument("--connect-timeout", type=positive_float, default=None,
                        help="seconds to wait for the destination (default: OS default)")
    parser.add_argument("--log-level", choices=LOG_LEVELS, default="INFO", type=str.upper)
    return parser


def load_config(argv: Optional[List[str]] = None) -> Tuple[Configuration, str]:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        config = Configuration(
            listen_port=args.listen_port,
            destination_host=args.target_host,
            destination_port=args.target_port,
            buffer_size=args.buffer_size,
            connect_timeout=args.connect_timeout,
        )
    except ValueError as e:
        parser.error(str(e))
    return config, args.log_level


async def serve(config: Configuration) -> None:
    listener = Listener.bind(config)
    log.info(f"Server started on port: {listener.port}")
    log.info(f"Redirecting requests to: {config.destination_host} at port {config.destination_port}")

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGTERM, asyncio.current_task().cancel)
    except NotImplementedError:
        # no signal handlers on the Windows event loop; Ctrl-C still works
        log.debug("SIGTERM handler not installed")

    async with listener:
        await listener.serve_forever()


def main(argv: Optional[List[str]] = None) -> int:
    config, log_level = load_config(argv)
    logging.basicConfig(level=log_level, format=LOG_FORMAT)

    try:
        asyncio.run(serve(config))
    except BindError as e:
        log.error(str(e))
        return 1
    except AcceptError as e:
        log.error(f"Listener stopped: {e}")
        return 1
    except (KeyboardInterrupt, asyncio.CancelledError):
        log.info("Server stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
