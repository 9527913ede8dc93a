"""
Pytest fixtures for panel-agent tests: an in-memory transport, a scripted
host and a virtual-clock scheduler.
"""
import json
from unittest.mock import MagicMock

import pytest

from panel_agent.config import parse_config
from panel_agent.host import Motd, SystemInfo
from panel_agent.scheduler import VirtualScheduler
from panel_agent.transport import CLOSED, CONNECTING, OPEN


class FakeTransport:
    """Managed-socket stand-in. Tests drive open/close/message by hand."""

    def __init__(self, auto_open=False, auto_close=False):
        self.state = CLOSED
        self.on_open = None
        self.on_close = None
        self.on_message = None
        self.sent = []
        self.open_calls = 0
        self.auto_open = auto_open
        self.auto_close = auto_close

    def open(self):
        self.open_calls += 1
        self.state = CONNECTING
        if self.auto_open:
            self.accept()
        if self.auto_close:
            self.drop()

    def close(self):
        self.drop()

    def send(self, text):
        self.sent.append(text)

    def accept(self):
        self.state = OPEN
        self.on_open()

    def drop(self):
        self.state = CLOSED
        self.on_close()

    def receive(self, msg):
        self.on_message(msg if isinstance(msg, str) else json.dumps(msg))

    @property
    def packets(self):
        return [json.loads(text) for text in self.sent]


def make_host(running=False):
    host = MagicMock()
    host.name = "test-host"
    host.version = "9.9.9"
    host.get_system_info.return_value = SystemInfo(os="Linux 6.1", cpu_name="x86_64", total_ram=8192, free_ram=4096)
    host.get_cpu_usage.return_value = 12.5
    host.get_server_status.return_value = running
    host.get_server_file.return_value = "server.jar" if running else None
    host.get_server_uptime.return_value = 42.0 if running else None
    host.get_server_cpu_usage.return_value = 3.0 if running else None
    host.get_server_motd.return_value = Motd(capacity=20, online_players=3, version="1.20.4") if running else None
    return host


def make_config(**overrides):
    raw = {
        "customName": "survival",
        "websocket": {"addr": "ws://h/ws", "password": "secret"},
        "reconnect": {"enable": True, "interval": 1000, "maxTimes": 2},
    }
    for key, value in overrides.items():
        section, _, name = key.partition("__")
        if name:
            raw[section][name] = value
        else:
            raw[section] = value
    return parse_config(raw)


@pytest.fixture
def scheduler():
    return VirtualScheduler()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def host():
    return make_host()


@pytest.fixture
def config():
    return make_config()
