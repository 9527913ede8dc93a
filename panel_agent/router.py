"""
panel-agent Protocol Router
Dispatches inbound packets by (type, subType) and builds the replies.

Inbound:
  event/verify_result        -> Session
  event/disconnection        -> Session (remembers the reason)
  request/heartbeat          -> return/heartbeat (system + server status)
  request/server_start       -> host.start_server()
  request/server_stop        -> host.stop_server()
  request/server_kill        -> host.kill_server()
  request/server_input       -> host.send_command() per line, in order
  request/get_dir_info       -> return/dir_info (sandboxed listing)
  request/verify_request     -> return/verify_request (challenge handshake only)

Anything else is dropped without noise so newer panels can talk to older
agents. One bad packet never takes the session down.
"""

import logging
import os
from typing import Any, Callable, Dict, Optional, Tuple

from . import paths, protocol
from .config import HANDSHAKE_CHALLENGE
from .protocol import EVENT, REQUEST, RETURN, Packet, PacketError

logger = logging.getLogger(__name__)


class ProtocolRouter:
    def __init__(self, session, host, sandbox_root: str):
        self.session = session
        self.host = host
        self.sandbox_root = os.path.realpath(sandbox_root)
        self.handlers: Dict[Tuple[str, str], Callable[[Packet, Any], None]] = {
            (EVENT, "verify_result"): self._on_verify_result,
            (EVENT, "disconnection"): self._on_disconnection,
            (REQUEST, "heartbeat"): self._on_heartbeat,
            (REQUEST, "server_start"): self._on_server_start,
            (REQUEST, "server_stop"): self._on_server_stop,
            (REQUEST, "server_kill"): self._on_server_kill,
            (REQUEST, "server_input"): self._on_server_input,
            (REQUEST, "get_dir_info"): self._on_get_dir_info,
        }
        if session.config.websocket.handshake == HANDSHAKE_CHALLENGE:
            self.handlers[(REQUEST, "verify_request")] = self._on_verify_request

    def dispatch(self, packet: Packet) -> None:
        handler = self.handlers.get(packet.key)
        if handler is None:
            logger.debug("Ignored %s/%s", packet.type, packet.sub_type)
            return
        try:
            payload = protocol.parse_payload(packet)
        except PacketError as e:
            logger.debug("Dropped %s/%s: %s", packet.type, packet.sub_type, e)
            return
        try:
            handler(packet, payload)
        except Exception:
            logger.exception("Handler for %s/%s failed", packet.type, packet.sub_type)

    #
    # Outbound
    #
    def reply(self, request: Packet, sub_type: str, data: Any = None) -> None:
        self.session.send(Packet(type=RETURN, sub_type=sub_type, data=data, request_id=request.request_id))

    def broadcast(self, sub_type: str, data: Any = None) -> None:
        self.session.send(Packet(type=EVENT, sub_type=sub_type, data=data))

    #
    # Handlers
    #
    def _on_verify_result(self, packet: Packet, result: protocol.VerifyResult) -> None:
        self.session.handle_verify_result(result)

    def _on_disconnection(self, packet: Packet, event: protocol.Disconnection) -> None:
        self.session.handle_disconnection(event)

    def _on_verify_request(self, packet: Packet, request: protocol.VerifyRequest) -> None:
        self.reply(packet, "verify_request", self.session.verify_payload(nonce=request.nonce))

    def _on_heartbeat(self, packet: Packet, _data: Any) -> None:
        self.reply(packet, "heartbeat", self.heartbeat())

    def _on_server_start(self, packet: Packet, _data: Any) -> None:
        logger.info("[%s] Start server", packet.actor)
        self.host.start_server()

    def _on_server_stop(self, packet: Packet, _data: Any) -> None:
        logger.info("[%s] Stop server", packet.actor)
        self.host.stop_server()

    def _on_server_kill(self, packet: Packet, _data: Any) -> None:
        logger.warning("[%s] Kill server", packet.actor)
        self.host.kill_server()

    def _on_server_input(self, packet: Packet, server_input: protocol.ServerInput) -> None:
        logger.info("[%s] Server input (%d lines)", packet.actor, len(server_input.lines))
        for line in server_input.lines:
            self.host.send_command(line)

    def _on_get_dir_info(self, packet: Packet, request: protocol.DirInfoRequest) -> None:
        self.reply(packet, "dir_info", self.dir_info(request.path))

    #
    # Payload builders
    #
    def dir_info(self, raw_path: str) -> Dict[str, Any]:
        """
        Listing for ``raw_path`` under the sandbox root.

        Missing, unreadable and out-of-sandbox paths all look the same:
        {"exists": false, "dir": <path as requested>}
        """
        missing = {"exists": False, "dir": raw_path}
        target = paths.resolve(raw_path, self.sandbox_root)
        if target is None or not os.path.isdir(target):
            return missing
        try:
            items = paths.list_directory(target, self.sandbox_root)
        except OSError as e:
            logger.debug("Listing %s failed: %s", target, e)
            return missing
        return {"exists": True, "dir": raw_path, "items": items}

    def heartbeat(self) -> Dict[str, Any]:
        """System and server status. Unavailable values are reported as None."""
        info = self._query(self.host.get_system_info)
        running = bool(self._query(self.host.get_server_status))
        motd = self._query(self.host.get_server_motd)
        return {
            "system": {
                "os": getattr(info, "os", None),
                "cpuName": getattr(info, "cpu_name", None),
                "totalRam": getattr(info, "total_ram", None),
                "freeRam": getattr(info, "free_ram", None),
                "cpuUsage": self._query(self.host.get_cpu_usage),
            },
            "server": {
                "filename": self._query(self.host.get_server_file) if running else None,
                "status": running,
                "runTime": self._query(self.host.get_server_uptime) if running else None,
                "usage": self._query(self.host.get_server_cpu_usage),
                "capacity": getattr(motd, "capacity", None),
                "onlinePlayers": getattr(motd, "online_players", None),
                "version": getattr(motd, "version", None),
            },
        }

    @staticmethod
    def _query(fn: Callable[[], Any]) -> Optional[Any]:
        try:
            return fn()
        except Exception:
            logger.debug("Host query %s unavailable", getattr(fn, "__name__", fn), exc_info=True)
            return None
