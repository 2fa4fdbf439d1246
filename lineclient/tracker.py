from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from shared.log import get_logger

from .messages import Response

logger = get_logger(__name__)


@dataclass
class Request:
    id: int
    message: Dict[str, Any]
    future: asyncio.Future = field(repr=False)
    sent_on: Optional[int] = None  # generation of the connection it was last written to

    @property
    def done(self) -> bool:
        return self.future.done()

    def resolve(self, body: Any) -> bool:
        """Complete the request once; later calls are ignored."""
        if self.future.done():
            return False
        self.future.set_result(body)
        return True


class RequestTracker:
    """
    Correlation ids and the set of requests still waiting for a reply.

    Ids come from a per-instance counter that only moves forward, so an id
    is never handed out twice for the lifetime of the tracker. Pending
    requests keep their insertion order, which is the order they go out on
    the wire.
    """

    def __init__(self, log: Optional[logging.Logger] = None) -> None:
        self.logger = log or logger
        self.pending: Dict[int, Request] = {}
        self._next_id = 1

    def _allocate_id(self) -> int:
        request_id = self._next_id
        self._next_id += 1
        return request_id

    def create_request(self, message: Dict[str, Any]) -> Request:
        """Wrap ``message`` in a Request, assigning an id if it has none."""
        message = dict(message)
        request_id = message.get("id")
        if isinstance(request_id, bool) or not isinstance(request_id, int):
            request_id = self._allocate_id()
            message["id"] = request_id
        elif request_id >= self._next_id:
            # Keep the counter ahead of caller-chosen ids
            self._next_id = request_id + 1
        future = asyncio.get_running_loop().create_future()
        return Request(id=request_id, message=message, future=future)

    def prepare(self, message: Any) -> List[Request]:
        """
        Turn a message, a JSON string, or a batch of either into Requests.

        Malformed strings and members that are not JSON objects are logged
        and left out; nothing here raises on bad input.
        """
        if isinstance(message, str):
            try:
                message = json.loads(message)
            except json.JSONDecodeError as e:
                self.logger.warning("Ignoring malformed request %r: %s", message[:80], e)
                return []

        members = message if isinstance(message, (list, tuple)) else [message]
        requests: List[Request] = []
        seen = set(self.pending)
        for member in members:
            if isinstance(member, str):
                try:
                    member = json.loads(member)
                except json.JSONDecodeError as e:
                    self.logger.warning("Ignoring malformed request %r: %s", member[:80], e)
                    continue
            if not isinstance(member, dict):
                self.logger.warning("Ignoring request that is not a JSON object: %r", member)
                continue
            request = self.create_request(member)
            if request.id in seen:
                self.logger.warning(
                    "Ignoring request with duplicate id %s", request.id,
                    extra={"request_id": request.id},
                )
                continue
            seen.add(request.id)
            requests.append(request)
        return requests

    def add(self, requests: Iterable[Request]) -> None:
        for request in requests:
            self.pending[request.id] = request

    def wait_all(self) -> asyncio.Future:
        """Future resolving with every currently pending reply, in pending order.

        Each request future is shielded so a caller abandoning its wait does
        not cancel requests other callers are waiting on.
        """
        return asyncio.gather(*(asyncio.shield(request.future) for request in self.pending.values()))

    def match(self, responses: Iterable[Response]) -> int:
        """Resolve pending requests from responses; returns how many matched."""
        matched = 0
        for response in responses:
            request_id = response.correlation_id
            request = self.pending.pop(request_id, None) if request_id is not None else None
            if request is None:
                self.logger.debug("Discarding unmatched response %r", response.body)
                continue
            if request.resolve(response.body):
                matched += 1
        return matched

    def unsent(self, generation: int) -> List[Request]:
        return [request for request in self.pending.values() if request.sent_on != generation]

    def mark_sent(self, requests: Iterable[Request], generation: int) -> None:
        for request in requests:
            request.sent_on = generation

    def __len__(self) -> int:
        return len(self.pending)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self.pending
