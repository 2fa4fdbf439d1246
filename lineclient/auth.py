from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from shared.log import get_logger

from .messages import Response
from .tracker import Request, RequestTracker

logger = get_logger(__name__)


class CredentialsError(Exception):
    """Raised when connecting or authenticating before credentials are set."""
    pass


@dataclass
class Credentials:
    name: str
    password: str = field(default="", repr=False)  # kept locally, never sent

    def to_message(self) -> dict:
        return {"name": self.name}


class Authenticator:
    """
    Runs the one-message handshake on every new connection.

    The credential request takes an id from the shared tracker but is never
    put in the pending set; it is held here so replies can be routed to it
    while authentication is outstanding.
    """

    def __init__(
        self,
        tracker: RequestTracker,
        on_ready: Callable[[], None],
        log: Optional[logging.Logger] = None,
    ) -> None:
        self.tracker = tracker
        self.on_ready = on_ready
        self.logger = log or logger
        self.credentials: Optional[Credentials] = None
        self.request: Optional[Request] = None

    @property
    def outstanding(self) -> bool:
        return self.request is not None and not self.request.done

    def authenticate(self, send: Callable[[list], None]) -> asyncio.Future:
        if self.credentials is None:
            raise CredentialsError("Credentials must be set before authenticating")
        self.reset()
        request = self.tracker.create_request(self.credentials.to_message())
        self.request = request
        request.future.add_done_callback(lambda future: self._on_done(request, future))
        self.logger.debug("Authenticating as %s", self.credentials.name, extra={"request_id": request.id})
        send([request.message])
        return request.future

    def handle(self, response: Response) -> bool:
        """Consume ``response`` if it answers the outstanding handshake."""
        if not self.outstanding:
            return False
        request_id = response.correlation_id
        if request_id is not None and request_id != self.request.id:
            return False
        self.request.resolve(response)
        return True

    def reset(self) -> None:
        """Forget a handshake that belonged to a discarded connection."""
        if self.request is not None and not self.request.done:
            self.request.future.cancel()
        self.request = None

    def _on_done(self, request: Request, future: asyncio.Future) -> None:
        if future.cancelled() or self.request is not request:
            return
        self.request = None
        response: Response = future.result()
        if response.is_welcome:
            self.logger.info("Authenticated as %s", self.credentials.name if self.credentials else "?")
            self.on_ready()
        else:
            self.logger.warning("Authentication rejected: %r", response.body)
