from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

import yaml

from shared.log import get_logger
from shared.utils import is_port, parse_hostport

logger = get_logger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 9432

LoggerOption = Union[logging.Logger, Callable[[str], None], None]


class ConfigError(Exception):
    """Raised when client configuration is missing or invalid."""
    pass


@dataclass
class ClientConfig:
    """Connection settings. All durations are in milliseconds."""
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    reconnect_timeout: int = 2000       # heartbeat silence tolerated before reconnecting
    heartbeat_interval: int = 2000      # period of the staleness check
    reconnect_delay: int = 500          # first auto-reconnect delay, doubled per failure
    max_reconnect_delay: int = 30000
    connect_timeout: int = 10000
    max_frame_size: int = 10 * 1024 * 1024
    logger: LoggerOption = None

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    def validate(self) -> ClientConfig:
        if not isinstance(self.host, str) or not self.host:
            raise ConfigError(f"Invalid host: {self.host!r}")
        if not is_port(self.port):
            raise ConfigError(f"Invalid port: {self.port!r}")
        for name in ("reconnect_timeout", "heartbeat_interval", "reconnect_delay",
                     "max_reconnect_delay", "connect_timeout", "max_frame_size"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
                raise ConfigError(f"Invalid {name}: {value!r}")
        if self.heartbeat_interval == 0:
            raise ConfigError("heartbeat_interval must be positive")
        return self

    def with_overrides(self, **overrides: Any) -> ClientConfig:
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ConfigError(f"Unknown config keys: {sorted(unknown)}")
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


def _load_yaml(path: Path) -> Dict[str, Any]:
    """Read a YAML config file. A ``client:`` section is used when present."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    section = data.get("client", data)
    if not isinstance(section, dict):
        raise ConfigError(f"'client' section in {path} must be a mapping")
    if "server" in section:
        section = dict(section)
        server = section.pop("server")
        try:
            section["host"], section["port"] = parse_hostport(str(server))
        except ValueError as e:
            raise ConfigError(str(e)) from e
    return section


def _from_env() -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    server = os.getenv("LINECLIENT_SERVER")
    if server:
        try:
            values["host"], values["port"] = parse_hostport(server)
        except ValueError as e:
            raise ConfigError(f"LINECLIENT_SERVER: {e}") from e
    timeout = os.getenv("LINECLIENT_RECONNECT_TIMEOUT")
    if timeout:
        try:
            values["reconnect_timeout"] = int(timeout)
        except ValueError as e:
            raise ConfigError(f"LINECLIENT_RECONNECT_TIMEOUT must be an integer, got {timeout!r}") from e
    return values


def load_config(path: Optional[Union[str, Path]] = None, **overrides: Any) -> ClientConfig:
    """
    Build a ClientConfig from, in increasing precedence: defaults, a YAML
    file, ``LINECLIENT_*`` environment variables, then keyword overrides.
    """
    config = ClientConfig()
    if path is not None:
        config = config.with_overrides(**_load_yaml(Path(path)))
        logger.debug("Loaded config from %s", path)
    config = config.with_overrides(**_from_env())
    return config.with_overrides(**overrides).validate()
