import asyncio
import json
import logging
import os
import sys

import pytest

from conftest import FakeTransport, make_config, make_host
from panel_agent.agent import Agent, BeaconFormatter, main
from panel_agent.buffers import FLUSH_INTERVAL
from panel_agent.host import ProcessHost
from panel_agent.session import Phase

INSTANCE_ID = "0123456789abcdef0123456789abcdef"


def make_agent(config, transport, scheduler, host=None, root="/srv/game"):
    return Agent(config, INSTANCE_ID, host or make_host(), transport, scheduler, root)


def test_flapping_connection_exhausts_retries(scheduler, caplog):
    # Opens then immediately closes, every time
    transport = FakeTransport(auto_open=True, auto_close=True)
    config = make_config(
        websocket={"addr": "ws://h/ws", "password": "secret"},
        reconnect={"enable": True, "interval": 1000, "maxTimes": 2},
    )
    agent = make_agent(config, transport, scheduler)

    with caplog.at_level(logging.INFO, logger="panel_agent.session"):
        agent.on_ready()
        scheduler.advance(30)

    messages = [
        record.getMessage()
        for record in caplog.records
        if record.getMessage().startswith(("Connecting", "Reconnecting", "Reconnect attempts"))
    ]
    assert messages == [
        "Connecting to ws://h/ws",
        "Reconnecting (1/2)",
        "Connecting to ws://h/ws",
        "Reconnecting (2/2)",
        "Connecting to ws://h/ws",
        "Reconnect attempts exhausted (2/2)",
    ]
    assert transport.open_calls == 3
    assert agent.session.phase is Phase.STOPPED


def test_flapping_connection_retry_times(scheduler):
    opened_at = []

    class TimedTransport(FakeTransport):
        def accept(self):
            opened_at.append(scheduler.now)
            super().accept()

    transport = TimedTransport(auto_open=True, auto_close=True)
    agent = make_agent(make_config(), transport, scheduler)

    agent.connect()
    scheduler.advance(30)

    assert opened_at == [0.0, 1.0, 2.0]


def test_server_lifecycle_events_are_immediate(config, transport, scheduler):
    agent = make_agent(config, transport, scheduler)
    agent.connect()
    transport.accept()
    transport.sent.clear()

    agent.on_server_started()
    agent.on_server_stopped(137)

    assert transport.packets == [
        {"type": "event", "subType": "server_start"},
        {"type": "event", "subType": "server_stop", "data": 137},
    ]


def test_console_traffic_is_batched(config, transport, scheduler):
    agent = make_agent(config, transport, scheduler)
    agent.on_ready()
    transport.accept()
    transport.sent.clear()

    agent.on_command_sent("list")
    for n in range(3):
        agent.on_output_line(f"[Server] line {n}")
    assert transport.sent == []

    scheduler.advance(FLUSH_INTERVAL)

    assert transport.packets == [
        {"type": "event", "subType": "server_input", "data": ["list"]},
        {"type": "event", "subType": "server_output", "data": ["[Server] line 0", "[Server] line 1", "[Server] line 2"]},
    ]


def test_console_traffic_while_offline_is_discarded(config, transport, scheduler):
    agent = make_agent(config, transport, scheduler)
    agent.on_ready()
    agent.on_output_line("lost")
    scheduler.advance(FLUSH_INTERVAL)

    transport.accept()
    transport.sent.clear()
    scheduler.advance(FLUSH_INTERVAL)
    assert transport.sent == []


def test_inbound_request_reaches_host(config, transport, scheduler):
    host = make_host()
    agent = make_agent(config, transport, scheduler, host=host)
    agent.connect()
    transport.accept()

    transport.receive(json.dumps({"type": "request", "subType": "server_input", "data": ["stop"]}))

    host.send_command.assert_called_once_with("stop")


def test_formatter_uses_markers():
    formatter = BeaconFormatter("%(message)s")
    record = logging.LogRecord("panel_agent", logging.WARNING, __file__, 1, "Disconnected", None, None)
    assert formatter.format(record).endswith("[!] Disconnected")
    record.levelno = logging.INFO
    assert formatter.format(record).endswith("[i] Disconnected")


def test_main_exits_on_first_run(tmp_path, monkeypatch):
    monkeypatch.setattr("panel_agent.agent.setup_logging", lambda verbose=False: None)
    data_dir = tmp_path / "data"
    with pytest.raises(SystemExit) as exc:
        main(["--data-dir", str(data_dir)])
    assert exc.value.code == 1
    assert (data_dir / "config.json").exists()


def test_main_exits_on_invalid_config(tmp_path, monkeypatch):
    monkeypatch.setattr("panel_agent.agent.setup_logging", lambda verbose=False: None)
    (tmp_path / "config.json").write_text(json.dumps({
        "websocket": {"addr": "http://nope", "password": "x"},
        "reconnect": {"enable": True, "interval": 1000, "maxTimes": 1},
    }), encoding="utf-8")
    with pytest.raises(SystemExit) as exc:
        main(["--data-dir", str(tmp_path)])
    assert exc.value.code == 1


class Listener:
    def __init__(self):
        self.output = []
        self.commands = []
        self.started = asyncio.Event()
        self.stopped = asyncio.Event()
        self.code = None

    def on_server_started(self):
        self.started.set()

    def on_server_stopped(self, code):
        self.code = code
        self.stopped.set()

    def on_command_sent(self, line):
        self.commands.append(line)

    def on_output_line(self, line):
        self.output.append(line)


SCRIPT = (
    "import sys\n"
    "print('ready', flush=True)\n"
    "line = sys.stdin.readline().strip()\n"
    "print('got ' + line, flush=True)\n"
    "sys.exit(3)\n"
)


def test_process_host_round_trip(tmp_path):
    async def scenario():
        host = ProcessHost([sys.executable, "-c", SCRIPT], cwd=str(tmp_path))
        listener = Listener()
        host.listener = listener

        host.start_server()
        await asyncio.wait_for(listener.started.wait(), 10)
        assert host.get_server_status()
        assert host.get_server_file() == os.path.basename(sys.executable)
        assert host.get_server_uptime() is not None

        host.stop_server()
        await asyncio.wait_for(listener.stopped.wait(), 10)
        return host, listener

    host, listener = asyncio.run(scenario())

    assert listener.commands == ["stop"]
    assert listener.output == ["ready", "got stop"]
    assert listener.code == 3
    assert not host.get_server_status()
    assert host.get_server_uptime() is None


def test_process_host_system_info():
    host = ProcessHost([])
    info = host.get_system_info()
    assert info.total_ram > 0
    assert 0 <= info.free_ram <= info.total_ram
    assert host.get_server_status() is False
    assert host.get_server_file() is None
    assert host.get_server_cpu_usage() is None
    assert host.get_server_motd() is None


def run_to_exit(host, listener_class=Listener):
    async def scenario():
        listener = listener_class()
        host.listener = listener
        host.start_server()
        await asyncio.wait_for(listener.stopped.wait(), 10)
        return listener

    return asyncio.run(scenario())


def test_process_host_long_output_line():
    script = "import sys\nsys.stdout.write('a' * 100000 + '\\nafter\\n')\n"
    listener = run_to_exit(ProcessHost([sys.executable, "-c", script]))
    assert listener.output == ["a" * 100000, "after"]
    assert listener.code == 0


def test_process_host_splits_lines_over_the_cap():
    script = "import sys\nsys.stdout.write('b' * 2500 + '\\n\\n' + 'c' * 2000 + '\\nafter')\n"
    host = ProcessHost([sys.executable, "-c", script])
    host.max_line = 1000
    listener = run_to_exit(host)
    assert listener.output == ["b" * 1000, "b" * 1000, "b" * 500, "", "c" * 1000, "c" * 1000, "after"]


def test_process_host_reports_stop_when_listener_fails():
    class FailingListener(Listener):
        def on_output_line(self, line):
            raise RuntimeError("listener broke")

    host = ProcessHost([sys.executable, "-c", "print('x'); print('y')"])
    assert run_to_exit(host, FailingListener).code == 0


def test_close_stops_flushing_and_reconnecting(config, transport, scheduler):
    agent = make_agent(config, transport, scheduler)
    agent.on_ready()
    transport.accept()
    transport.sent.clear()

    agent.close()
    agent.on_output_line("late")
    scheduler.advance(10)

    assert scheduler.pending == 0
    assert transport.sent == []
    assert transport.open_calls == 1
