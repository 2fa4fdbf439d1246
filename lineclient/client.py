#!/usr/bin/env python3
"""
lineclient Client

Persistent client for the line-delimited JSON protocol: one long-lived TCP
connection, a name handshake, request/response correlation by id and
automatic reconnection.

Usage:
    client = Client(host="localhost", port=9432)
    client.set_credentials("alice", "secret")
    await client.connect()
    replies = await client.write({"request": "count"})
    await client.close()
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional

from shared.log import callback_logger, get_logger

from .auth import Credentials
from .config import ClientConfig, LoggerOption
from .connection import ConnectionManager, ConnectionState
from .tracker import RequestTracker
from .transport import Handler


def _resolve_logger(option: LoggerOption) -> logging.Logger:
    if option is None:
        return get_logger("lineclient")
    if isinstance(option, logging.Logger):
        return option
    if callable(option):
        return callback_logger(option)
    raise TypeError(f"logger must be a logging.Logger or a callable, got {type(option).__name__}")


class Client:
    """Facade over the tracker, authenticator and connection manager."""

    def __init__(self, config: Optional[ClientConfig] = None, **options: Any) -> None:
        """
        Args:
            config: Full configuration; defaults to ``ClientConfig()``
            **options: Overrides for individual config fields
                (host, port, reconnect_timeout, logger, ...)
        """
        self.config = (config or ClientConfig()).with_overrides(**options).validate()
        self.logger = _resolve_logger(self.config.logger)
        self.tracker = RequestTracker(log=self.logger)
        self.manager = ConnectionManager(self.config, self.tracker, log=self.logger)

    @property
    def state(self) -> ConnectionState:
        return self.manager.state

    @property
    def credentials(self) -> Optional[Credentials]:
        return self.manager.authenticator.credentials

    def set_credentials(self, name: str, password: str = "") -> None:
        self.manager.authenticator.credentials = Credentials(name=name, password=password)

    async def connect(self) -> None:
        await self.manager.connect()

    async def wait_ready(self, timeout: Optional[float] = None) -> None:
        """Wait until authentication succeeded on the current connection."""
        await self.manager.wait_ready(timeout)

    async def write(self, message: Any, raw: bool = False) -> List[Any]:
        """
        Send one message, a JSON string, or a list of either.

        With ``raw=True`` the data is written as-is if the connection is
        ready and nothing is awaited. Otherwise the messages join the
        pending set and the call returns once every pending request,
        including ones from earlier calls, has its reply.
        """
        if raw:
            self.manager.send_raw(message)
            return []
        requests = self.tracker.prepare(message)
        self.tracker.add(requests)
        self.manager.flush()
        return list(await self.tracker.wait_all())

    async def close(self) -> None:
        await self.manager.close()

    def on(self, event: str, handler: Handler) -> None:
        """Attach ``handler`` to the current socket and every future one."""
        self.manager.on(event, handler)

    async def __aenter__(self) -> Client:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
