from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class MessageKind(str, Enum):
    """Kinds of frames the server can send."""

    HEARTBEAT = "heartbeat"      # Liveness signal, no reply expected
    WELCOME = "welcome"          # Authentication accepted
    MSG = "msg"                  # Envelope carrying a reply to a request
    GENERIC = "generic"          # Anything else, matched by its own "id"

    @classmethod
    def from_type_tag(cls, tag: Any) -> MessageKind:
        """Map a frame's "type" field to a kind; unknown tags are generic."""
        if tag in (cls.HEARTBEAT.value, cls.WELCOME.value, cls.MSG.value):
            return cls(tag)
        return cls.GENERIC


@dataclass
class Response:
    """One decoded server frame, tagged with its kind.

    ``body`` is already unwrapped for envelope frames, so ``kind`` keeps
    recording that the frame arrived wrapped while ``body["id"]`` carries
    the correlation id taken from ``reply``.
    """
    kind: MessageKind
    body: Any

    @property
    def correlation_id(self) -> Optional[int]:
        if not isinstance(self.body, dict):
            return None
        value = self.body.get("id")
        if isinstance(value, bool) or not isinstance(value, int):
            return None
        return value

    @property
    def is_heartbeat(self) -> bool:
        return self.kind is MessageKind.HEARTBEAT

    @property
    def is_welcome(self) -> bool:
        return self.kind is MessageKind.WELCOME
