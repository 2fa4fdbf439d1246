from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Optional

from shared.log import get_logger

logger = get_logger(__name__)


class HeartbeatMonitor:
    """
    Watches for server heartbeats and asks for a reconnect when they stop.

    The monitor never touches the socket itself: when the last heartbeat
    is older than the threshold it calls ``on_stale`` and leaves the
    reconnect to the connection manager.
    """

    def __init__(
        self,
        on_stale: Callable[[], None],
        *,
        interval: float = 2.0,
        threshold: float = 2.0,
        is_connecting: Callable[[], bool] = lambda: False,
        clock: Callable[[], float] = time.monotonic,
        log: Optional[logging.Logger] = None,
    ) -> None:
        """
        Args:
            on_stale: Called once per staleness window
            interval: Seconds between staleness checks
            threshold: Seconds without a heartbeat before the link is stale
            is_connecting: True while a connection attempt is in progress
            clock: Monotonic time source, replaceable in tests
        """
        self.on_stale = on_stale
        self.interval = interval
        self.threshold = threshold
        self.is_connecting = is_connecting
        self.clock = clock
        self.logger = log or logger
        self.last_heartbeat_at: float = clock()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def tick(self) -> None:
        self.last_heartbeat_at = self.clock()

    def check_stale(self, threshold_ms: Optional[float] = None) -> bool:
        """
        Return False (and request a reconnect) when the link is stale.

        A link that is still being established is never stale.
        """
        threshold = self.threshold if threshold_ms is None else threshold_ms / 1000.0
        now = self.clock()
        elapsed = now - self.last_heartbeat_at
        if elapsed < threshold or self.is_connecting():
            return True
        self.logger.warning("No heartbeat for %.2fs, requesting reconnect", elapsed)
        # Start a new window so one silence triggers one reconnect
        self.last_heartbeat_at = now
        self.on_stale()
        return False

    def start(self) -> None:
        """(Re)start the periodic check; any previous timer is cancelled."""
        self.stop()
        self.last_heartbeat_at = self.clock()
        self._task = asyncio.get_running_loop().create_task(self._run())

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                self.check_stale()
            except Exception:
                self.logger.exception("Heartbeat check failed")
