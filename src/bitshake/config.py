"""
Configuration management for the handshake client.

HandshakeConfig is the validated set of parameters the handshake core
consumes. ConfigFile loads those parameters from an INI file and
environment variables, in that order of increasing priority.
"""

import configparser
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from bitshake.messages import (
    DEFAULT_PORTS,
    MAX_PAYLOAD_LENGTH,
    NETWORK_MAGICS,
    NODE_NETWORK,
    PROTOCOL_VERSION,
    network_for_magic,
)

logger = logging.getLogger(__name__)

CUSTOM_NETWORK = "custom"
DEFAULT_USER_AGENT = "/bitshake:0.1.0/"
DEFAULT_CONFIG_PATH = Path.home() / ".bitshake" / "bitshake.conf"
ENV_PREFIX = "BITSHAKE_"


class HandshakeConfig(BaseModel):
    """Parameters for one handshake attempt"""

    model_config = ConfigDict(frozen=True)

    network: str = "mainnet"
    magic: Optional[int] = None
    remote_host: str = "127.0.0.1"
    remote_port: Optional[int] = None
    local_host: str = "0.0.0.0"
    local_port: Optional[int] = None
    services: int = Field(default=NODE_NETWORK, ge=0, lt=2**64)
    user_agent: str = DEFAULT_USER_AGENT
    protocol_version: int = PROTOCOL_VERSION
    start_height: int = 0
    relay: bool = False
    max_payload_length: int = Field(default=MAX_PAYLOAD_LENGTH, ge=0, lt=2**32)
    timeout: float = Field(default=30.0, gt=0)
    check_magic: bool = True

    @field_validator("network")
    @classmethod
    def _known_network(cls, value: str) -> str:
        value = value.lower()
        if value != CUSTOM_NETWORK and value not in NETWORK_MAGICS:
            choices = ", ".join([*NETWORK_MAGICS, CUSTOM_NETWORK])
            raise ValueError(f"unknown network {value!r}, expected one of {choices}")
        return value

    @field_validator("magic")
    @classmethod
    def _magic_fits(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and not 0 <= value <= 0xFFFFFFFF:
            raise ValueError(f"magic must fit in 4 bytes, got {value:#x}")
        return value

    @field_validator("remote_port", "local_port")
    @classmethod
    def _port_range(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and not 0 <= value <= 65535:
            raise ValueError(f"port out of range: {value}")
        return value

    @model_validator(mode="after")
    def _custom_needs_magic(self) -> "HandshakeConfig":
        if self.network == CUSTOM_NETWORK and self.magic is None:
            raise ValueError("a custom network requires an explicit magic")
        return self

    @property
    def network_magic(self) -> int:
        """Magic placed on outgoing frames and expected on incoming ones"""
        if self.magic is not None:
            return self.magic
        return NETWORK_MAGICS[self.network]

    @property
    def default_port(self) -> int:
        name = self.network
        if name == CUSTOM_NETWORK:
            name = network_for_magic(self.network_magic)
        return DEFAULT_PORTS.get(name, DEFAULT_PORTS["mainnet"])

    @property
    def peer_port(self) -> int:
        return self.remote_port if self.remote_port is not None else self.default_port

    @property
    def advertised_port(self) -> int:
        return self.local_port if self.local_port is not None else self.default_port


def _int(value: str) -> int:
    return int(value, 10)


def _bitfield(value: str) -> int:
    # magic and service bits are usually written in hex
    return int(value, 0)


def _bool(value: str) -> bool:
    return value.lower() in ('1', 'true', 'yes', 'on')


# Config file key -> (HandshakeConfig field, converter)
_FIELDS = {
    'network': ('network', str),
    'magic': ('magic', _bitfield),
    'host': ('remote_host', str),
    'port': ('remote_port', _int),
    'localhost': ('local_host', str),
    'localport': ('local_port', _int),
    'services': ('services', _bitfield),
    'useragent': ('user_agent', str),
    'protocolversion': ('protocol_version', _int),
    'startheight': ('start_height', _int),
    'relay': ('relay', _bool),
    'maxpayload': ('max_payload_length', _int),
    'timeout': ('timeout', float),
    'checkmagic': ('check_magic', _bool),
}


class ConfigFile:
    """Handshake configuration loaded from file and environment"""

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize configuration.

        Args:
            config_path: Path to config file (default: ~/.bitshake/bitshake.conf)
        """
        if config_path is None:
            config_path = DEFAULT_CONFIG_PATH

        self.config_path = Path(config_path)
        self.config = configparser.ConfigParser(interpolation=None)

        self.defaults = {
            'debug': '0',
            'logtimestamps': '1',
        }

        if self.config_path.exists():
            try:
                self.config.read(self.config_path)
            except configparser.Error as e:
                logger.warning(f"Error reading config file {self.config_path}: {e}")

    def get(self, key: str, section: Optional[str] = None) -> Optional[str]:
        """
        Get config value.

        Priority order:
        1. Environment variable (BITSHAKE_<KEY>)
        2. Config file value (given section, DEFAULT, then any section)
        3. Default value

        Args:
            key: Config key
            section: Config section to look in first

        Returns:
            Config value or default
        """
        env_value = os.environ.get(f"{ENV_PREFIX}{key.upper()}")
        if env_value:
            return env_value

        if section and self.config.has_option(section, key):
            return self.config.get(section, key)
        if key in self.config.defaults():
            return self.config.defaults()[key]
        for name in self.config.sections():
            if self.config.has_option(name, key):
                return self.config.get(name, key)

        return self.defaults.get(key)

    def getint(self, key: str, section: Optional[str] = None) -> int:
        """
        Get config value as integer.

        Raises:
            ValueError: If the value is present but not an integer
        """
        value = self.get(key, section)
        if value is None:
            return 0
        return _int(value)

    def getboolean(self, key: str, section: Optional[str] = None) -> bool:
        """Get config value as boolean"""
        value = self.get(key, section)
        if value is None:
            return False
        return _bool(value)

    def values(self) -> Dict[str, Any]:
        """
        Collect the HandshakeConfig fields that are explicitly set.

        Raises:
            ValueError: If a value cannot be converted to its field type
        """
        result: Dict[str, Any] = {}
        for key, (name, convert) in _FIELDS.items():
            raw = self.get(key)
            if raw is None:
                continue
            try:
                result[name] = convert(raw)
            except ValueError as e:
                raise ValueError(f"Invalid value for {key}: {raw!r} ({e})") from None
        return result

    def to_config(self, **overrides: Any) -> HandshakeConfig:
        """
        Build a validated HandshakeConfig.

        Keyword overrides win over file and environment; None means
        "not given" and is skipped.

        Raises:
            pydantic.ValidationError: If the resulting values are invalid
        """
        values = self.values()
        values.update({k: v for k, v in overrides.items() if v is not None})
        return HandshakeConfig(**values)
