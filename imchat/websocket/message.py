"""Frames exchanged between chat clients and the websocket server."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Callable, Mapping


class FrameType(IntEnum):
    """Kind of a websocket frame."""

    DATA = 0x0
    PING = 0x1
    ACK = 0x2
    NO_ACK = 0x3
    ERR = 0x9


def _frame_type(value: Any) -> int:
    if value is None:
        return FrameType.DATA
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 0xFF:
        raise ValueError(f"invalid frameType {value!r}")
    try:
        return FrameType(value)
    except ValueError:
        return value


def _string(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"field {key!r} must be a string, got {value!r}")
    return value


def _integer(data: Mapping[str, Any], key: str) -> int:
    value = data.get(key)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"field {key!r} must be an integer, got {value!r}")
    return value


@dataclass
class Message:
    """A single frame: routing method, sender, payload and ack bookkeeping.

    ``ack_time`` (a monotonic timestamp of the last ack sent, or None) and
    ``err_count`` are server-side state and never serialised.
    """

    frame_type: int = FrameType.DATA
    id: str = ""
    ack_seq: int = 0
    method: str = ""
    form_id: str = ""
    data: Any = None
    ack_time: float | None = field(default=None, compare=False, repr=False)
    err_count: int = field(default=0, compare=False, repr=False)

    def to_dict(self) -> dict[str, Any]:
        """Return the wire representation as a plain dict."""
        return {
            "frameType": int(self.frame_type),
            "id": self.id,
            "ackSeq": self.ack_seq,
            "method": self.method,
            "formId": self.form_id,
            "data": self.data,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Message:
        """Build a message from its wire dict; missing fields take defaults."""
        if not isinstance(data, Mapping):
            raise ValueError(f"message must be a JSON object, got {type(data).__name__}")
        return cls(
            frame_type=_frame_type(data.get("frameType")),
            id=_string(data, "id"),
            ack_seq=_integer(data, "ackSeq"),
            method=_string(data, "method"),
            form_id=_string(data, "formId"),
            data=data.get("data"),
        )

    def to_json(self) -> str:
        """Serialise to compact JSON text."""
        return json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":"))

    @classmethod
    def from_json(cls, text: str | bytes) -> Message:
        """Parse JSON text; raises ValueError on malformed input."""
        return cls.from_dict(json.loads(text))


def new_message(form_id: str, data: Any) -> Message:
    """Create a data frame sent on behalf of ``form_id``."""
    return Message(frame_type=FrameType.DATA, form_id=form_id, data=data)


def new_err_message(err: BaseException) -> Message:
    """Create an error frame carrying the text of ``err``."""
    return Message(frame_type=FrameType.ERR, data=str(err))


HandlerFunc = Callable[[Any, Any, Message], Any]


@dataclass(frozen=True)
class Route:
    """Maps a message method name to the handler that serves it.

    The handler is called as ``handler(server, conn, message)``.
    """

    method: str
    handler: HandlerFunc