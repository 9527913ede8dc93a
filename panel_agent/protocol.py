"""
panel-agent Protocol Definitions
Packet schema for agent <-> panel communication.

Every frame is one JSON object:

  {"type": "request"|"return"|"event", "subType": str,
   "data"?: any, "requestId"?: str, "sender"?: {"address": str, ...}}

(type, subType) selects exactly one handler. Payloads that a handler reads
are validated into a small typed model first; a frame that fails to validate
is dropped, never raised into the session.
"""

import json
from typing import Any, Dict, List, Literal, Optional, Tuple, Type

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictStr,
    ValidationError,
    field_validator,
    model_validator,
)

# Packet types
REQUEST = "request"
RETURN = "return"
EVENT = "event"
PACKET_TYPES = (REQUEST, RETURN, EVENT)

# Example messages:

# Agent -> Panel (Verify, on open)
# {
#   "type": "request",
#   "subType": "verify",
#   "data": {"md5": "...", "instanceId": "0f3c...", "customName": null,
#            "time": "2024-01-01T00:00:00.000Z",
#            "metadata": {"version": "1.0.0", "name": "panel-agent",
#                         "environment": "Python 3.12.1"}}
# }

# Panel -> Agent (Verify result)
# {"type": "event", "subType": "verify_result", "data": {"success": false, "reason": "bad password"}}

# Panel -> Agent (Directory listing)
# {"type": "request", "subType": "get_dir_info", "data": "world/region", "requestId": "r1"}

# Agent -> Panel (Directory listing)
# {"type": "return", "subType": "dir_info", "requestId": "r1",
#  "data": {"exists": true, "dir": "world/region",
#           "items": [{"type": "file", "name": "r.0.0.mca", "path": "world/region/r.0.0.mca", "size": 4096}]}}


class PacketError(ValueError):
    """Raised for frames or payloads that do not match the schema."""


def _first_error(e: ValidationError) -> str:
    error = e.errors()[0]
    where = ".".join(str(part) for part in error["loc"])
    return f"{where}: {error['msg']}" if where else error["msg"]


class Packet(BaseModel):
    """One frame. Build with field names, read from the wire by alias."""
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["request", "return", "event"]
    sub_type: StrictStr = Field(alias="subType")
    data: Any = None
    request_id: Optional[str] = Field(default=None, alias="requestId")
    sender: Optional[Dict[str, Any]] = None

    @field_validator("request_id", mode="before")
    @classmethod
    def _stringify_request_id(cls, value):
        # Echoed back verbatim, so numeric ids come back as strings
        if value is None or isinstance(value, str):
            return value
        return str(value)

    @field_validator("sender", mode="before")
    @classmethod
    def _drop_odd_sender(cls, value):
        return value if isinstance(value, dict) else None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.type, self.sub_type)

    @property
    def actor(self) -> str:
        """Who asked for this: the sender address, or "user"."""
        if self.sender and self.sender.get("address"):
            return str(self.sender["address"])
        return "user"


def encode(packet: Packet) -> str:
    # Optional envelope fields are omitted, never sent as null
    msg = {key: value for key, value in packet.model_dump(by_alias=True).items() if value is not None}
    return json.dumps(msg, separators=(',', ':'), ensure_ascii=False)


def decode(text: str) -> Packet:
    """Parse one frame. Raises PacketError on anything malformed."""
    try:
        return Packet.model_validate_json(text)
    except ValidationError as e:
        raise PacketError(_first_error(e)) from e


#
# Typed payloads
#

class Payload(BaseModel):
    model_config = ConfigDict(frozen=True)

    @classmethod
    def parse(cls, data: Any) -> "Payload":
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise PacketError(f"{cls.__name__}: {_first_error(e)}") from e


class VerifyResult(Payload):
    success: StrictBool
    reason: Optional[str] = None


class Disconnection(Payload):
    reason: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _bare_reason(cls, data):
        # Older panels send the reason as the whole payload
        if data is None:
            return {}
        if not isinstance(data, dict):
            return {"reason": str(data)}
        return data


class ServerInput(Payload):
    lines: List[StrictStr]

    @model_validator(mode="before")
    @classmethod
    def _wrap_lines(cls, data):
        if isinstance(data, str):
            return {"lines": [data]}
        if isinstance(data, list):
            return {"lines": data}
        return data


class DirInfoRequest(Payload):
    path: StrictStr

    @model_validator(mode="before")
    @classmethod
    def _wrap_path(cls, data):
        if data is None:
            return {"path": ""}
        if isinstance(data, dict):
            return data
        return {"path": data}


class VerifyRequest(Payload):
    nonce: StrictStr = Field(min_length=1)

    @model_validator(mode="before")
    @classmethod
    def _wrap_nonce(cls, data):
        if isinstance(data, dict):
            return data
        return {"nonce": data}


PAYLOADS: Dict[Tuple[str, str], Type[Payload]] = {
    (EVENT, "verify_result"): VerifyResult,
    (EVENT, "disconnection"): Disconnection,
    (REQUEST, "server_input"): ServerInput,
    (REQUEST, "get_dir_info"): DirInfoRequest,
    (REQUEST, "verify_request"): VerifyRequest,
}


def parse_payload(packet: Packet) -> Any:
    """Typed payload for ``packet``, or the raw data if the subtype has no schema."""
    model = PAYLOADS.get(packet.key)
    if model is None:
        return packet.data
    return model.parse(packet.data)
