from __future__ import annotations

import asyncio
import inspect
import logging
from contextlib import suppress
from typing import Any, Callable, Dict, List, Optional, Set

from shared.log import get_logger

logger = get_logger(__name__)

Handler = Callable[..., Any]

READ_SIZE = 64 * 1024


class StreamConnection:
    """
    One physical TCP connection with socket-style events.

    Events emitted: ``connect``, ``data`` (bytes), ``drain``, ``end``,
    ``error`` (exception) and ``close`` (had_error), the last exactly once.
    Handlers for any other name can be attached too and are fired by
    whoever calls ``emit``. A connection is single use: once closed it is
    thrown away, never reopened.
    """

    def __init__(
        self,
        host: str,
        port: int,
        *,
        connect_timeout: Optional[float] = None,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.connect_timeout = connect_timeout
        self.logger = log or logger
        self.connecting = False
        self.destroyed = False
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._handlers: Dict[str, List[Handler]] = {}
        self._read_task: Optional[asyncio.Task] = None
        self._drain_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._close_emitted = False

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def connected(self) -> bool:
        return self._writer is not None and not self._writer.is_closing() and not self.destroyed

    @property
    def buffered_size(self) -> int:
        """Bytes written but not yet handed to the kernel."""
        if self._writer is None or self._writer.transport is None:
            return 0
        return self._writer.transport.get_write_buffer_size()

    def _track(self, task: asyncio.Future) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ---- events -------------------------------------------------------

    def on(self, event: str, handler: Handler) -> bool:
        """Attach ``handler``; returns False if it was already attached."""
        handlers = self._handlers.setdefault(event, [])
        if handler in handlers:
            return False
        handlers.append(handler)
        return True

    def handlers(self, event: str) -> List[Handler]:
        return list(self._handlers.get(event, ()))

    def emit(self, event: str, *args: Any) -> None:
        for handler in self.handlers(event):
            try:
                result = handler(*args)
            except Exception:
                self.logger.exception("Handler for %r event failed", event, extra={"conn": self.address})
                continue
            if inspect.isawaitable(result):
                self._track(asyncio.ensure_future(result))

    def _emit_close(self, had_error: bool) -> None:
        if self._close_emitted:
            return
        self._close_emitted = True
        self.emit("close", had_error)

    # ---- lifecycle ----------------------------------------------------

    async def open(self) -> None:
        """Connect, then read until the peer goes away."""
        self.connecting = True
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port),
                timeout=self.connect_timeout,
            )
        except (OSError, asyncio.TimeoutError) as e:
            self.connecting = False
            if not self.destroyed:
                self.emit("error", e)
            self._emit_close(True)
            return
        self.connecting = False

        if self.destroyed:
            self._writer.close()
            return

        self.logger.debug("Connected to %s", self.address)
        self.emit("connect")
        self._read_task = asyncio.get_running_loop().create_task(self._read_loop())

    async def _read_loop(self) -> None:
        assert self._reader is not None
        had_error = False
        try:
            while True:
                data = await self._reader.read(READ_SIZE)
                if not data:
                    self.emit("end")
                    break
                self.emit("data", data)
        except OSError as e:
            had_error = True
            self.emit("error", e)
        finally:
            if self._writer is not None:
                self._writer.close()
            self._emit_close(had_error)

    def write(self, data: str) -> bool:
        if not self.connected:
            self.logger.warning("Write on closed connection dropped", extra={"conn": self.address})
            return False
        self._writer.write(data.encode("utf-8"))
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.get_running_loop().create_task(self._drain())
            self._track(self._drain_task)
        return True

    async def _drain(self) -> None:
        try:
            await self._writer.drain()
        except OSError as e:
            self.emit("error", e)
            return
        self.emit("drain")

    def destroy(self) -> None:
        """Tear the connection down immediately; emits ``close`` if not yet emitted."""
        if self.destroyed:
            return
        self.destroyed = True
        current = asyncio.current_task()
        for task in [self._read_task, *self._tasks]:
            if task is not None and task is not current:
                task.cancel()
        if self._writer is not None:
            self._writer.close()
        self._emit_close(False)

    async def wait_closed(self) -> None:
        if self._writer is not None:
            with suppress(OSError):
                await self._writer.wait_closed()
        if self._read_task is not None and self._read_task is not asyncio.current_task():
            with suppress(asyncio.CancelledError):
                await self._read_task
