from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from enum import Enum
from functools import partial
from typing import Any, Dict, List, Optional, Set, Tuple

from shared.log import get_logger

from .auth import Authenticator, CredentialsError
from .codec import FrameDecoder, encode, iter_responses
from .config import ClientConfig
from .heartbeat import HeartbeatMonitor
from .tracker import RequestTracker
from .transport import Handler, StreamConnection

logger = get_logger(__name__)


class ConnectionState(str, Enum):
    """Connection state of the manager.

    States:
        DISCONNECTED: No socket, or the last one closed.
        CONNECTING: TCP connect in progress.
        AUTHENTICATING: Connected, credential request sent.
        READY: Welcome received, requests may be written.
    """
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    READY = "ready"


class ConnectionManager:
    """
    Owns the socket and keeps it alive.

    Every connect opens a brand-new ``StreamConnection``; an old one is
    destroyed, never reused. A close that was not asked for schedules a
    reconnect with exponential backoff, and a silent server is detected by
    the heartbeat monitor, which asks for a reconnect through
    ``reconnect()``. Pending requests outlive connections and are written
    again once the next connection is ready.
    """

    def __init__(self, config: ClientConfig, tracker: RequestTracker, log: Optional[logging.Logger] = None) -> None:
        self.config = config
        self.tracker = tracker
        self.logger = log or logger
        self.state = ConnectionState.DISCONNECTED
        self.connection: Optional[StreamConnection] = None
        self.generation = 0  # bumped for every physical connection
        self.closing = False

        self.authenticator = Authenticator(tracker, self._on_authenticated, log=self.logger)
        self.heartbeat = HeartbeatMonitor(
            self.reconnect,
            interval=config.heartbeat_interval / 1000.0,
            threshold=config.reconnect_timeout / 1000.0,
            is_connecting=lambda: self.connecting,
            log=self.logger,
        )

        # Re-attached to every new socket
        self.custom_handlers: List[Tuple[str, Handler]] = []

        self._decoder = FrameDecoder(config.max_frame_size, log=self.logger)
        self._attempts = 0
        self._reconnect_task: Optional[asyncio.Task] = None
        self._background_tasks: Set[asyncio.Task] = set()
        self._ready_event: Optional[asyncio.Event] = None

    # ---- helpers --------------------------------------------------------

    @property
    def connecting(self) -> bool:
        return self.connection is not None and self.connection.connecting

    @property
    def ready(self) -> bool:
        return self.state is ConnectionState.READY

    @property
    def _ready(self) -> asyncio.Event:
        # Created lazily so it binds to the running loop
        if self._ready_event is None:
            self._ready_event = asyncio.Event()
        return self._ready_event

    def _context(self) -> Dict[str, Any]:
        return {"conn": self.config.address, "state": self.state.value}

    def _set_state(self, state: ConnectionState) -> None:
        if state is self.state:
            return
        self.logger.debug("State %s -> %s", self.state.value, state.value, extra=self._context())
        self.state = state
        if state is ConnectionState.READY:
            self._ready.set()
        else:
            self._ready.clear()

    def _track_background_task(self, task: asyncio.Task) -> None:
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    # ---- lifecycle ------------------------------------------------------

    async def connect(self) -> None:
        """Open a connection unless one is already live or being opened."""
        if self.connection is not None and not self.connection.destroyed \
                and self.state is not ConnectionState.DISCONNECTED:
            return
        if self.authenticator.credentials is None:
            raise CredentialsError("Call set_credentials() before connect()")
        self.closing = False
        await self.open()

    async def open(self) -> None:
        """Replace whatever socket exists with a fresh one and connect it."""
        self._cancel_reconnect()
        self._discard()

        self.generation += 1
        conn = StreamConnection(
            self.config.host,
            self.config.port,
            connect_timeout=self.config.connect_timeout / 1000.0 or None,
            log=self.logger,
        )
        self.connection = conn
        self._decoder.reset()

        conn.on("connect", partial(self._on_connect, conn))
        conn.on("data", partial(self._on_data, conn))
        conn.on("error", partial(self._on_error, conn))
        conn.on("close", partial(self._on_close, conn))
        for event, handler in self.custom_handlers:
            conn.on(event, handler)

        self._set_state(ConnectionState.CONNECTING)
        self.logger.info("Connecting to %s", conn.address, extra=self._context())
        self.heartbeat.start()
        await conn.open()

    def _discard(self) -> None:
        conn, self.connection = self.connection, None
        self.heartbeat.stop()
        self.authenticator.reset()
        if conn is not None:
            # close event is ignored: conn is no longer self.connection
            conn.destroy()

    def reconnect(self) -> bool:
        """
        Force a new connection, unless the current one is still connecting
        or still has outgoing bytes buffered.
        """
        if self.closing:
            return False
        conn = self.connection
        if conn is not None and (conn.connecting or conn.buffered_size > 0):
            self.logger.debug("Reconnect skipped: socket busy", extra=self._context())
            return False
        self.logger.info("Reconnecting to %s", self.config.address, extra=self._context())
        self._track_background_task(asyncio.get_running_loop().create_task(self.open()))
        return True

    def _schedule_reconnect(self) -> None:
        delay = min(
            self.config.reconnect_delay * (2 ** self._attempts),
            self.config.max_reconnect_delay,
        ) / 1000.0
        self._attempts += 1
        self.logger.info(
            "Reconnecting in %.2fs (attempt %d)", delay, self._attempts, extra=self._context()
        )
        self._cancel_reconnect()
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect_after(delay))
        self._track_background_task(self._reconnect_task)

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self.closing:
            return
        await self.open()

    async def wait_ready(self, timeout: Optional[float] = None) -> None:
        await asyncio.wait_for(self._ready.wait(), timeout)

    async def close(self) -> None:
        """Explicit teardown; no reconnect follows."""
        self.closing = True
        self._cancel_reconnect()
        self.heartbeat.stop()
        self.authenticator.reset()
        conn = self.connection
        if conn is not None:
            conn.destroy()
            await conn.wait_closed()
        self._set_state(ConnectionState.DISCONNECTED)
        current = asyncio.current_task()
        for task in list(self._background_tasks):
            if task is not current:
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task

    # ---- socket events --------------------------------------------------

    def _on_connect(self, conn: StreamConnection) -> None:
        if conn is not self.connection:
            return
        self._set_state(ConnectionState.AUTHENTICATING)
        try:
            self.authenticator.authenticate(self._send_frames)
        except CredentialsError as e:
            self.logger.error("Cannot authenticate: %s", e, extra=self._context())

    def _on_authenticated(self) -> None:
        if self.state is not ConnectionState.AUTHENTICATING:
            return
        self._attempts = 0
        self._set_state(ConnectionState.READY)
        self.flush()
        if self.connection is not None:
            self.connection.emit("ready")

    def _on_data(self, conn: StreamConnection, data: bytes) -> None:
        if conn is not self.connection:
            return
        for response in iter_responses(self._decoder.feed(data), log=self.logger):
            if response.is_heartbeat:
                self.heartbeat.tick()
                continue
            if self.authenticator.handle(response):
                continue
            self.tracker.match([response])

    def _on_error(self, conn: StreamConnection, error: BaseException) -> None:
        extra = self._context()
        if conn is not self.connection:
            extra["state"] = "discarded"
        self.logger.warning("Socket error: %s", str(error) or type(error).__name__, extra=extra)

    def _on_close(self, conn: StreamConnection, had_error: bool) -> None:
        if conn is not self.connection:
            return
        self.heartbeat.stop()
        self.authenticator.reset()
        self._set_state(ConnectionState.DISCONNECTED)
        if self.closing:
            self.logger.info("Connection closed", extra=self._context())
            return
        self.logger.warning(
            "Connection lost%s", " after error" if had_error else "", extra=self._context()
        )
        self._schedule_reconnect()

    # ---- writing --------------------------------------------------------

    def _send_frames(self, messages: list) -> bool:
        if self.connection is None:
            return False
        return self.connection.write(encode(messages, log=self.logger))

    def flush(self) -> int:
        """Write pending requests not yet sent on this connection; returns the count."""
        if self.state is not ConnectionState.READY or self.connection is None:
            return 0
        requests = self.tracker.unsent(self.generation)
        if not requests:
            return 0
        if self._send_frames([request.message for request in requests]):
            self.tracker.mark_sent(requests, self.generation)
            self.logger.debug("Sent %d request(s)", len(requests), extra=self._context())
            return len(requests)
        return 0

    def send_raw(self, messages: Any) -> bool:
        """Fire-and-forget write; dropped unless the connection is ready."""
        if self.state is not ConnectionState.READY:
            self.logger.warning("Not ready, dropping raw message", extra=self._context())
            return False
        batch = messages if isinstance(messages, (list, tuple)) else [messages]
        data = encode(batch, log=self.logger)
        if not data:
            return False
        return self.connection.write(data)

    def on(self, event: str, handler: Handler) -> None:
        if (event, handler) not in self.custom_handlers:
            self.custom_handlers.append((event, handler))
        if self.connection is not None:
            self.connection.on(event, handler)
