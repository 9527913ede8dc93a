"""
panel-agent Configuration
Loads and validates <data-dir>/config.json once at startup.

Example file (the defaults written on first run):

{
  "websocket": {
    "addr": "ws://127.0.0.1:30000/ws/instance",
    "password": "",
    "handshake": "timestamp"
  },
  "customName": "",
  "reconnect": {
    "enable": true,
    "interval": 7500,
    "maxTimes": 10,
    "requireVerified": true
  }
}

Validation stops at the first problem, which is reported as a ConfigError
naming the offending field.
"""

import json
import logging
import os
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt, StrictStr, ValidationError, field_validator

logger = logging.getLogger(__name__)

HANDSHAKE_TIMESTAMP = "timestamp"
HANDSHAKE_CHALLENGE = "challenge"

ADDR_PATTERN = r'^wss?://.+'
MIN_INTERVAL_MS = 500

SECTIONS = ("websocket", "reconnect")

DEFAULT_CONFIG: Dict[str, Any] = {
    "websocket": {
        "addr": "ws://127.0.0.1:30000/ws/instance",
        "password": "",
        "handshake": HANDSHAKE_TIMESTAMP,
    },
    "customName": "",
    "reconnect": {
        "enable": True,
        "interval": 7500,
        "maxTimes": 10,
        "requireVerified": True,
    },
}


class ConfigError(Exception):
    """Fatal configuration problem. ``field`` names the offending option."""

    def __init__(self, field: Optional[str], message: str):
        super().__init__(message)
        self.field = field


class ConfigCreated(ConfigError):
    """No config file existed; defaults were written and must be edited first."""


class WebSocketConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    addr: StrictStr = Field(pattern=ADDR_PATTERN)
    password: StrictStr = Field(min_length=1)
    handshake: Literal["timestamp", "challenge"] = HANDSHAKE_TIMESTAMP


class ReconnectConfig(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    enable: StrictBool
    # Milliseconds
    interval: float = Field(gt=MIN_INTERVAL_MS, strict=True, allow_inf_nan=False)
    max_times: StrictInt = Field(ge=0, alias="maxTimes")
    require_verified: StrictBool = Field(default=False, alias="requireVerified")

    @property
    def interval_seconds(self) -> float:
        return self.interval / 1000.0


class Config(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    websocket: WebSocketConfig
    reconnect: ReconnectConfig
    custom_name: Optional[StrictStr] = Field(default=None, alias="customName")

    @field_validator("custom_name")
    @classmethod
    def _blank_name_is_none(cls, value):
        return value or None


def _config_error(e: ValidationError) -> ConfigError:
    error = e.errors()[0]
    field = ".".join(str(part) for part in error["loc"]) or None
    if field in SECTIONS and error["type"] == "missing":
        return ConfigError(field, f"`{field}` is missing; delete the config file and restart to recreate it")
    if field is None:
        return ConfigError(None, f"config root: {error['msg']}")
    return ConfigError(field, f"`{field}`: {error['msg']}")


def parse_config(raw: Any) -> Config:
    """Validate an already-decoded config object."""
    try:
        config = Config.model_validate(raw)
    except ValidationError as e:
        raise _config_error(e) from e
    if config.custom_name is None:
        logger.warning("`customName` is empty")
    return config


def write_default_config(path: str) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(DEFAULT_CONFIG, f, indent=2)


def load_config(path: str) -> Config:
    """
    Load the config file, creating it on first run.

    Raises ConfigCreated if the file did not exist (defaults written; the
    password is blank so the agent must not start), ConfigError otherwise.
    """
    if not os.path.exists(path):
        write_default_config(path)
        raise ConfigCreated(None, f"Config file created at {path}; edit it and restart")

    try:
        with open(path, 'r', encoding='utf-8') as f:
            raw = json.load(f)
    except ValueError as e:
        # JSONDecodeError and UnicodeDecodeError both land here
        raise ConfigError(None, f"{path} is not valid UTF-8 JSON: {e}") from e
    return parse_config(raw)
