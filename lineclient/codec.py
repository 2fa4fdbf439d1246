"""
Wire framing for the line protocol.

Every frame is one JSON object or array followed by a line terminator.
Several frames may share one read or one write, and a single frame may be
split across reads; ``FrameDecoder`` takes care of the latter.
"""

from __future__ import annotations

import json
import logging
import os
import re
from typing import Any, Iterable, List, Optional, Sequence, Union

from shared.log import get_logger

from .messages import MessageKind, Response

logger = get_logger(__name__)

LINE_TERMINATOR = os.linesep
MAX_FRAME_SIZE = 10 * 1024 * 1024  # 10 MB max

# Frames must open with one of these, anything else is line noise
_FRAME_OPENERS = ("{", "[")

# Either quote style is caught without parsing the frame
HEARTBEAT_RE = re.compile(r"""["']type["']\s*:\s*["']heartbeat["']""")

Message = Union[dict, list, str]


def is_heartbeat(text: Union[str, bytes]) -> bool:
    """Cheap pre-check run on raw text before any JSON parsing."""
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    return HEARTBEAT_RE.search(text) is not None


def _dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def _coerce(value: Any, log: logging.Logger) -> Optional[Any]:
    """Parse string payloads so they are never encoded twice.

    Returns None when the string is not valid JSON.
    """
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        log.warning("Dropping malformed message %r: %s", value[:80], e)
        return None


def encode(messages: Union[Message, Sequence[Message]], log: Optional[logging.Logger] = None) -> str:
    """
    Serialize one message, or a batch of messages, to wire text.

    A single value becomes its compact JSON text. A list or tuple becomes
    one line per member, each followed by ``LINE_TERMINATOR``. String
    values are parsed first and re-serialized; unparseable ones are logged
    and left out.

    A list is always a batch. To send one JSON array as a single frame,
    pass it as JSON text or as the only member of a batch.
    """
    log = log or logger
    if isinstance(messages, (list, tuple)):
        parts = []
        for member in messages:
            value = _coerce(member, log)
            if value is None:
                continue
            parts.append(_dumps(value) + LINE_TERMINATOR)
        return "".join(parts)

    value = _coerce(messages, log)
    if value is None:
        return ""
    return _dumps(value)


def parse_frame(line: str, log: Optional[logging.Logger] = None) -> Optional[Any]:
    """
    Parse one frame of wire text.

    Returns None when the frame is empty, does not start like a JSON
    object/array, or fails to parse. Failures are logged, never raised.
    """
    log = log or logger
    text = line.strip()
    if not text:
        return None
    if not text.startswith(_FRAME_OPENERS):
        log.debug("Dropping non-JSON frame %r", text[:80])
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        log.warning("Dropping unparseable frame %r: %s", text[:80], e)
        return None


def unwrap(value: Any) -> Any:
    """
    Replace a {"type": "msg", "msg": {...}} envelope by its inner message.

    The inner message's "id" is taken from its "reply" field (or the
    outer one when the inner message has none) and "reply" is removed.
    Anything that is not an envelope is returned unchanged.
    """
    if not isinstance(value, dict) or value.get("type") != MessageKind.MSG.value:
        return value
    inner = value.get("msg")
    if not isinstance(inner, dict):
        return value
    body = dict(inner)
    reply = body.pop("reply", value.get("reply"))
    if reply is not None:
        body["id"] = reply
    return body


def decode(raw: Union[bytes, str], log: Optional[logging.Logger] = None) -> List[Any]:
    """
    Parse a self-contained chunk of wire data into response values.

    Envelopes are unwrapped, including those inside a top-level array.

    Stateless: a frame cut off at the end of ``raw`` is dropped. The
    connection uses ``FrameDecoder`` instead so such frames are kept.
    """
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    values = []
    for segment in raw.split("\n"):
        value = parse_frame(segment, log)
        if value is None:
            continue
        if isinstance(value, list):
            values.append([unwrap(member) for member in value])
        else:
            values.append(unwrap(value))
    return values


def classify(value: Any) -> List[Response]:
    """Tag a decoded value. A top-level array is a batch of responses."""
    if isinstance(value, list):
        return [response for member in value for response in classify(member)]
    if isinstance(value, dict):
        kind = MessageKind.from_type_tag(value.get("type"))
        if kind is MessageKind.MSG:
            return [Response(kind, unwrap(value))]
        return [Response(kind, value)]
    return [Response(MessageKind.GENERIC, value)]


class FrameDecoder:
    """
    Reassemble line frames from a byte stream.

    Complete lines are handed out as soon as their terminator arrives; the
    unterminated tail stays buffered for the next ``feed``. A tail that is
    already a complete JSON value is released without waiting, since some
    servers do not terminate a lone frame.
    """

    def __init__(self, max_frame_size: int = MAX_FRAME_SIZE, log: Optional[logging.Logger] = None) -> None:
        self.max_frame_size = max_frame_size
        self.logger = log or logger
        self._buffer = bytearray()

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def reset(self) -> None:
        self._buffer.clear()

    def feed(self, chunk: bytes) -> List[str]:
        self._buffer.extend(chunk)
        lines: List[str] = []
        while True:
            newline_index = self._buffer.find(b"\n")
            if newline_index == -1:
                break
            line_bytes = bytes(self._buffer[:newline_index])
            del self._buffer[: newline_index + 1]
            text = line_bytes.decode("utf-8", errors="replace").strip()
            if text:
                lines.append(text)

        tail = self._complete_tail()
        if tail is not None:
            lines.append(tail)
            self._buffer.clear()
        elif len(self._buffer) > self.max_frame_size:
            self.logger.warning(
                "Discarding %d buffered bytes: frame exceeds %d bytes",
                len(self._buffer), self.max_frame_size,
            )
            self._buffer.clear()
        return lines

    def _complete_tail(self) -> Optional[str]:
        tail = bytes(self._buffer).strip()
        if not tail or tail[-1:] not in (b"}", b"]"):
            return None
        try:
            text = tail.decode("utf-8")
            json.loads(text)
        except (UnicodeDecodeError, json.JSONDecodeError):
            return None
        return text


def iter_responses(lines: Iterable[str], log: Optional[logging.Logger] = None) -> Iterable[Response]:
    """Parse and tag frames, skipping heartbeats via the regex fast path."""
    for line in lines:
        if is_heartbeat(line):
            yield Response(MessageKind.HEARTBEAT, None)
            continue
        value = parse_frame(line, log)
        if value is None:
            continue
        yield from classify(value)
