"""
panel-agent I/O Buffer Pump
Batches server console traffic instead of one packet per line.

Lines accumulate in FIFO order and every FLUSH_INTERVAL seconds each
non-empty buffer goes out as a single server_input / server_output event.
"""

from typing import Callable, List

FLUSH_INTERVAL = 0.25


class IOBufferPump:
    def __init__(self, broadcast: Callable[[str, List[str]], None]):
        self.broadcast = broadcast
        self.input_lines: List[str] = []
        self.output_lines: List[str] = []
        self._timer = None

    def on_input_line(self, line: str) -> None:
        self.input_lines.append(line)

    def on_output_line(self, line: str) -> None:
        self.output_lines.append(line)

    def start(self, scheduler) -> None:
        """Begin the periodic flush. The timer runs until stop()."""
        if self._timer is None:
            self._timer = scheduler.call_every(FLUSH_INTERVAL, self.flush)

    def stop(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def flush(self) -> None:
        if self.input_lines:
            batch, self.input_lines = self.input_lines, []
            self.broadcast("server_input", batch)
        if self.output_lines:
            batch, self.output_lines = self.output_lines, []
            self.broadcast("server_output", batch)
