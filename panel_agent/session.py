"""
panel-agent Session
Owns the single logical connection to the panel.

Lifecycle:

    IDLE -> CONNECTING -> VERIFYING -> VERIFIED -> DISCONNECTED
                 ^                                     |
                 +------ retry timer (interval) -------+--> STOPPED

Reconnect policy on close:
- reconnect.enable false                   -> STOPPED
- reconnect.requireVerified and never
  verified this process lifetime           -> STOPPED
- retry_count >= reconnect.maxTimes        -> STOPPED ("retries exhausted")
- otherwise one retry timer; retry_count is incremented when it fires,
  before the connection attempt.

A successful verification resets retry_count and the disconnect reason.
Only one retry timer is ever outstanding. close() stops the session for
good until the next manual connect().
"""

import enum
import logging
import platform
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from . import crypto, protocol
from .config import HANDSHAKE_TIMESTAMP, Config
from .protocol import Packet, PacketError
from .transport import OPEN

logger = logging.getLogger(__name__)


class Phase(enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    VERIFYING = "verifying"
    VERIFIED = "verified"
    DISCONNECTED = "disconnected"
    STOPPED = "stopped"


@dataclass
class SessionState:
    verified: bool = False
    disconnect_reason: Optional[str] = None
    retry_count: int = 0


class Session:
    def __init__(self, config: Config, instance_id: str, transport, scheduler,
                 metadata: Optional[Dict[str, Any]] = None):
        self.config = config
        self.instance_id = instance_id
        self.transport = transport
        self.scheduler = scheduler
        self.metadata = metadata or {}
        self.state = SessionState()
        self.phase = Phase.IDLE
        self.on_packet: Optional[Callable[[Packet], None]] = None
        self._retry_timer = None

        transport.on_open = self._on_open
        transport.on_close = self._on_close
        transport.on_message = self._on_message

    @property
    def is_open(self) -> bool:
        return self.transport.state == OPEN

    def connect(self) -> None:
        """
        Open the connection.

        Called once after process init, or by hand after the session stopped.
        A manual call on a stopped session starts a fresh retry budget.
        """
        if self.phase in (Phase.CONNECTING, Phase.VERIFYING, Phase.VERIFIED):
            logger.debug("connect() ignored while %s", self.phase.value)
            return
        if self._retry_timer is not None:
            self._retry_timer.cancel()
            self._retry_timer = None
        if self.phase is Phase.STOPPED:
            self.state.retry_count = 0
        self._open()

    def close(self) -> None:
        """Shut down for good: no retry is pending or scheduled afterwards."""
        if self._retry_timer is not None:
            self._retry_timer.cancel()
            self._retry_timer = None
        self.phase = Phase.STOPPED
        self.transport.close()

    def send(self, packet: Packet) -> None:
        """Send if the transport is open. Nothing is queued."""
        if not self.is_open:
            return
        self.transport.send(protocol.encode(packet))

    #
    # Handshake
    #
    def verify_payload(self, nonce: Optional[str] = None) -> Dict[str, Any]:
        """
        Verification data for either handshake mode.

        Timestamp mode: md5("<time>.<password>") plus the time itself.
        Challenge mode: md5("<nonce><password>").
        """
        password = self.config.websocket.password
        data = {
            "instanceId": self.instance_id,
            "customName": self.config.custom_name,
            "metadata": dict(self.metadata, environment=f"Python {platform.python_version()}"),
        }
        if nonce is None:
            time = crypto.iso_timestamp()
            data["md5"] = crypto.timestamp_digest(time, password)
            data["time"] = time
        else:
            data["md5"] = crypto.challenge_digest(nonce, password)
        return data

    def handle_verify_result(self, result: protocol.VerifyResult) -> None:
        if result.success:
            logger.info("Verification passed")
            self.state.verified = True
            self.state.retry_count = 0
            self.state.disconnect_reason = None
            self.phase = Phase.VERIFIED
        else:
            # Stays open but unverified; only a real close drives reconnect
            logger.warning("Verification failed: %s", result.reason)

    def handle_disconnection(self, event: protocol.Disconnection) -> None:
        self.state.disconnect_reason = event.reason

    #
    # Transport notifications
    #
    def _open(self) -> None:
        self.phase = Phase.CONNECTING
        logger.info("Connecting to %s", self.config.websocket.addr)
        self.transport.open()

    def _on_open(self) -> None:
        self.state.disconnect_reason = None
        self.phase = Phase.VERIFYING
        logger.info("Connected to %s", self.config.websocket.addr)
        if self.config.websocket.handshake == HANDSHAKE_TIMESTAMP:
            self.send(Packet(type=protocol.REQUEST, sub_type="verify", data=self.verify_payload()))

    def _on_message(self, text: str) -> None:
        try:
            packet = protocol.decode(text)
        except PacketError as e:
            logger.debug("Dropped malformed frame: %s", e)
            return
        if self.on_packet is not None:
            self.on_packet(packet)

    def _on_close(self) -> None:
        if self.phase is Phase.STOPPED:
            logger.info("Connection closed")
            return
        reason = self.state.disconnect_reason
        self.phase = Phase.DISCONNECTED
        if reason:
            logger.warning("Disconnected: %s", reason)
        else:
            logger.warning("Disconnected")
        self._schedule_retry()

    def _schedule_retry(self) -> None:
        reconnect = self.config.reconnect
        if not reconnect.enable:
            self._stop("Automatic reconnect is disabled")
            return
        if reconnect.require_verified and not self.state.verified:
            self._stop("Never verified; automatic reconnect is off. Check websocket.addr and websocket.password")
            return
        if self.state.retry_count >= reconnect.max_times:
            self._stop(f"Reconnect attempts exhausted ({self.state.retry_count}/{reconnect.max_times})")
            return
        if self._retry_timer is not None:
            return
        self._retry_timer = self.scheduler.call_later(reconnect.interval_seconds, self._retry)

    def _retry(self) -> None:
        self._retry_timer = None
        self.state.retry_count += 1
        logger.info("Reconnecting (%d/%d)", self.state.retry_count, self.config.reconnect.max_times)
        self._open()

    def _stop(self, message: str) -> None:
        self.phase = Phase.STOPPED
        logger.warning(message)
