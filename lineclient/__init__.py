"""Persistent client for the line-delimited JSON protocol."""

from .auth import Credentials, CredentialsError
from .client import Client
from .config import ClientConfig, ConfigError, load_config
from .connection import ConnectionState
from .messages import MessageKind, Response

__all__ = [
    "Client",
    "ClientConfig",
    "ConfigError",
    "ConnectionState",
    "Credentials",
    "CredentialsError",
    "MessageKind",
    "Response",
    "load_config",
]
