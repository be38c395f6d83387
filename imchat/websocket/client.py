"""Blocking websocket client that exchanges JSON frames."""

from __future__ import annotations

import json
from typing import Any
from urllib.parse import quote, urlunsplit

import websocket

from imchat.websocket.message import Message
from imchat.websocket.options import DialOptions


def _encode(value: Any) -> str:
    if isinstance(value, Message):
        return value.to_json()
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


class Client:
    """A connection to a chat websocket server.

    The connection is dialled on construction; dialling errors propagate.
    """

    def __init__(self, host: str, options: DialOptions | None = None) -> None:
        self.host = host
        self.options = options if options is not None else DialOptions()
        self._conn = self._dial()

    def url(self) -> str:
        """The websocket URL this client dials."""
        path = self.options.pattern
        if path and not path.startswith("/"):
            path = "/" + path
        return urlunsplit(("ws", self.host, quote(path, safe="/:@!$&'()*+,;=~"), "", ""))

    def _dial(self) -> Any:
        header = dict(self.options.header) if self.options.header is not None else None
        return websocket.create_connection(self.url(), header=header)

    def send(self, value: Any) -> None:
        """Send ``value`` as JSON text, redialling once if the write fails."""
        data = _encode(value)
        try:
            self._conn.send(data)
            return
        except (websocket.WebSocketException, OSError):
            pass
        self._conn = self._dial()
        self._conn.send(data)

    def read(self) -> Any:
        """Receive one frame and return its decoded JSON value."""
        return json.loads(self._conn.recv())

    def close(self) -> None:
        """Close the underlying connection."""
        self._conn.close()

    def __enter__(self) -> Client:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()