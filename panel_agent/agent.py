#!/usr/bin/env python3
"""
panel-agent (Host Client)

Responsibilities:
- Connect to the panel and keep the connection alive
- Verify with the shared password
- Report system and server status on heartbeat
- Start / stop / kill the server and forward console input on request
- Stream console traffic back in batches
- Expose a read-only listing of the sandbox root
"""

import argparse
import asyncio
import logging
import os
import sys
from typing import List, Optional

from . import __version__
from .buffers import IOBufferPump
from .config import Config, ConfigCreated, ConfigError, load_config
from .host import ProcessHost
from .identity import load_instance_id
from .router import ProtocolRouter
from .scheduler import LoopScheduler
from .session import Session
from .transport import WebSocketTransport

logger = logging.getLogger(__name__)

CONFIG_FILE = "config.json"
INSTANCE_ID_FILE = ".instanceId"


class Agent:
    """
    Wires session, router and buffer pump together.

    The host calls ``on_ready`` once after startup and the other ``on_*``
    hooks as server events happen; it never touches the session directly.
    """

    def __init__(self, config: Config, instance_id: str, host, transport, scheduler, sandbox_root: str):
        self.host = host
        self.scheduler = scheduler
        metadata = {"version": getattr(host, "version", None), "name": getattr(host, "name", None)}
        self.session = Session(config, instance_id, transport, scheduler, metadata)
        self.router = ProtocolRouter(self.session, host, sandbox_root)
        self.session.on_packet = self.router.dispatch
        self.pump = IOBufferPump(self.router.broadcast)

    def connect(self) -> None:
        self.session.connect()

    def on_ready(self) -> None:
        self.pump.start(self.scheduler)
        self.connect()

    def close(self) -> None:
        self.pump.stop()
        self.session.close()

    def on_server_started(self) -> None:
        self.router.broadcast("server_start")

    def on_server_stopped(self, code: int) -> None:
        self.router.broadcast("server_stop", code)

    def on_command_sent(self, line: str) -> None:
        self.pump.on_input_line(line)

    def on_output_line(self, line: str) -> None:
        self.pump.on_output_line(line)


class BeaconFormatter(logging.Formatter):
    """Console format: "[i] message", "[!] message", ..."""

    MARKERS = {
        logging.DEBUG: "[-]",
        logging.INFO: "[i]",
        logging.WARNING: "[!]",
        logging.ERROR: "[!]",
        logging.CRITICAL: "[!]",
    }

    def format(self, record: logging.LogRecord) -> str:
        marker = self.MARKERS.get(record.levelno, "[?]")
        return f"{self.formatTime(record, '%H:%M:%S')} {marker} {super().format(record)}"


def setup_logging(verbose: bool = False) -> None:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(BeaconFormatter("%(message)s"))
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    # websockets is chatty at DEBUG; keep it at INFO unless asked
    logging.getLogger("websockets").setLevel(logging.DEBUG if verbose else logging.WARNING)


async def run(config: Config, instance_id: str, args: argparse.Namespace) -> None:
    transport = WebSocketTransport(config.websocket.addr)
    host = ProcessHost(
        args.command,
        cwd=args.root,
        stop_command=args.stop_command,
        name=args.name,
        version=__version__,
    )
    agent = Agent(
        config,
        instance_id,
        host=host,
        transport=transport,
        scheduler=LoopScheduler(),
        sandbox_root=args.root,
    )
    host.listener = agent
    agent.on_ready()
    if args.autostart:
        host.start_server()
    try:
        # Runs until interrupted
        await asyncio.Event().wait()
    finally:
        agent.close()
        await transport.wait_closed()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="panel-agent: connect a server host to a remote control panel")
    parser.add_argument("--data-dir", "-d", default="panel-agent",
                        help="Directory holding config.json and .instanceId (default: panel-agent)")
    parser.add_argument("--root", "-r", default=os.getcwd(),
                        help="Sandbox root for directory listings and server working dir (default: cwd)")
    parser.add_argument("--name", default="panel-agent",
                        help="Process name reported to the panel")
    parser.add_argument("--stop-command", default="stop",
                        help="Console command for a graceful stop (default: stop; empty = SIGTERM)")
    parser.add_argument("--autostart", action="store_true",
                        help="Start the server immediately")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Debug logging")
    parser.add_argument("command", nargs=argparse.REMAINDER,
                        help="Server command line, e.g. java -jar server.jar nogui")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    setup_logging(args.verbose)

    logger.info("panel-agent v%s", __version__)

    try:
        config = load_config(os.path.join(args.data_dir, CONFIG_FILE))
    except ConfigCreated as e:
        logger.warning("%s", e)
        sys.exit(1)
    except ConfigError as e:
        logger.error("Invalid config: %s", e)
        sys.exit(1)

    instance_id = load_instance_id(os.path.join(args.data_dir, INSTANCE_ID_FILE))

    try:
        asyncio.run(run(config, instance_id, args))
    except KeyboardInterrupt:
        logger.info("Agent interrupted")


if __name__ == "__main__":
    main()
