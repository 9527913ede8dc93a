"""
panel-agent Host
The server-control side the panel drives.

Host is the interface the router consumes. ProcessHost is the stock
implementation: it runs one server command as an asyncio subprocess and
reports its lifecycle and output through a HostListener (the Agent).
"""

import asyncio
import logging
import os
import platform
import signal
import time
from dataclasses import dataclass
from typing import List, Optional, Protocol

import psutil

logger = logging.getLogger(__name__)


@dataclass
class SystemInfo:
    os: str
    cpu_name: Optional[str]
    total_ram: int
    free_ram: int


@dataclass
class Motd:
    capacity: Optional[int] = None
    online_players: Optional[int] = None
    version: Optional[str] = None


class Host(Protocol):
    name: str
    version: str

    def start_server(self) -> None: ...
    def stop_server(self) -> None: ...
    def kill_server(self) -> None: ...
    def send_command(self, line: str) -> None: ...
    def get_system_info(self) -> SystemInfo: ...
    def get_cpu_usage(self) -> Optional[float]: ...
    def get_server_status(self) -> bool: ...
    def get_server_file(self) -> Optional[str]: ...
    def get_server_uptime(self) -> Optional[float]: ...
    def get_server_cpu_usage(self) -> Optional[float]: ...
    def get_server_motd(self) -> Optional[Motd]: ...


class HostListener(Protocol):
    def on_server_started(self) -> None: ...
    def on_server_stopped(self, code: int) -> None: ...
    def on_command_sent(self, line: str) -> None: ...
    def on_output_line(self, line: str) -> None: ...


class ProcessHost:
    """Runs ``command`` as the managed server process."""

    read_size = 64 * 1024
    # Longest console line delivered in one piece
    max_line = 1024 * 1024

    def __init__(self, command: List[str], cwd: Optional[str] = None,
                 stop_command: str = "stop", name: str = "panel-agent", version: str = ""):
        self.command = command
        self.cwd = cwd
        self.stop_command = stop_command
        self.name = name
        self.version = version
        self.listener: Optional[HostListener] = None
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._started_at: Optional[float] = None
        self._ps: Optional[psutil.Process] = None

    #
    # Lifecycle
    #
    def start_server(self) -> None:
        if self.get_server_status():
            logger.warning("Server is already running")
            return
        if not self.command:
            logger.warning("No server command configured")
            return
        asyncio.get_running_loop().create_task(self._run())

    def stop_server(self) -> None:
        if not self.get_server_status():
            return
        if self.stop_command:
            self.send_command(self.stop_command)
        else:
            self._proc.send_signal(signal.SIGTERM)

    def kill_server(self) -> None:
        if self.get_server_status():
            self._proc.kill()

    def send_command(self, line: str) -> None:
        if not self.get_server_status() or self._proc.stdin is None:
            logger.warning("Server is not running; input dropped")
            return
        self._proc.stdin.write((line + os.linesep).encode('utf-8'))
        self._notify("on_command_sent", line)

    async def _run(self) -> None:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=self.cwd,
            )
        except OSError as e:
            logger.error("Failed to start server: %s", e)
            return

        self._proc = proc
        self._started_at = time.monotonic()
        try:
            self._ps = psutil.Process(proc.pid)
        except psutil.Error:
            self._ps = None
        logger.info("Server started as PID %d", proc.pid)
        self._notify("on_server_started")

        try:
            await self._read_output(proc.stdout)
        except asyncio.CancelledError:
            # Agent shutdown; the server goes with it
            if proc.returncode is None:
                proc.kill()
            raise
        except Exception:
            logger.exception("Reading server output failed")
        finally:
            code = await proc.wait()
            self._proc = None
            self._started_at = None
            self._ps = None
            logger.info("Server exited with code %d", code)
            self._notify("on_server_stopped", code)

    async def _read_output(self, stream: asyncio.StreamReader) -> None:
        """
        Split stdout into lines without the StreamReader line limit.

        A line longer than ``max_line`` bytes is delivered in ``max_line``
        sized pieces.
        """
        pending = b""
        while True:
            chunk = await stream.read(self.read_size)
            if not chunk:
                break
            pending += chunk
            *lines, pending = pending.split(b"\n")
            for line in lines:
                self._emit_line(line)
            while len(pending) > self.max_line:
                self._notify("on_output_line", self._decode(pending[:self.max_line]))
                pending = pending[self.max_line:]
        if pending:
            self._emit_line(pending)

    def _emit_line(self, line: bytes) -> None:
        for start in range(0, max(len(line), 1), self.max_line):
            self._notify("on_output_line", self._decode(line[start:start + self.max_line]))

    @staticmethod
    def _decode(raw: bytes) -> str:
        return raw.decode('utf-8', 'replace').rstrip('\r')

    def _notify(self, hook: str, *args) -> None:
        if self.listener is None:
            return
        try:
            getattr(self.listener, hook)(*args)
        except Exception:
            logger.exception("Listener %s failed", hook)

    #
    # Status queries
    #
    def get_system_info(self) -> SystemInfo:
        memory = psutil.virtual_memory()
        return SystemInfo(
            os=f"{platform.system()} {platform.release()}".strip(),
            cpu_name=platform.processor() or platform.machine() or None,
            total_ram=memory.total,
            free_ram=memory.available,
        )

    def get_cpu_usage(self) -> Optional[float]:
        return psutil.cpu_percent(interval=None)

    def get_server_status(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    def get_server_file(self) -> Optional[str]:
        if not self.get_server_status():
            return None
        return os.path.basename(self.command[0])

    def get_server_uptime(self) -> Optional[float]:
        if self._started_at is None:
            return None
        return round(time.monotonic() - self._started_at, 3)

    def get_server_cpu_usage(self) -> Optional[float]:
        if self._ps is None:
            return None
        try:
            return self._ps.cpu_percent(interval=None)
        except psutil.Error:
            return None

    def get_server_motd(self) -> Optional[Motd]:
        # No server list ping; the panel shows these fields as unknown
        return None
