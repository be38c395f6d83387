"""A single server-side websocket connection with idle tracking."""

from __future__ import annotations

import math
import queue
import threading
import time
from typing import Any, Protocol

from imchat.websocket.message import FrameType, Message
from imchat.websocket.options import DEFAULT_MAX_CONNECTION_IDLE


class Transport(Protocol):
    """What a connection needs from the underlying websocket."""

    def send(self, data: str) -> Any: ...

    def recv(self) -> str | bytes: ...

    def close(self) -> Any: ...


class Conn:
    """One client connection held by a websocket server.

    ``pending`` is the queue of frames awaiting acknowledgement and
    ``pending_seq`` maps a message id to its latest acknowledgement record;
    both are guarded by ``message_lock``. ``inbox`` carries frames ready to be
    dispatched to route handlers.
    """

    def __init__(
        self,
        server: Any,
        transport: Transport,
        max_connection_idle: float = DEFAULT_MAX_CONNECTION_IDLE,
    ) -> None:
        self.server = server
        self.transport = transport
        self.uid = ""
        self.max_connection_idle = max_connection_idle

        self._idle_lock = threading.Lock()
        # Monotonic time of the last write; None while the connection is busy.
        self._idle: float | None = time.monotonic()

        self.message_lock = threading.Lock()
        self.pending: list[Message] = []
        self.pending_seq: dict[str, Message] = {}
        self.inbox: queue.Queue[Message] = queue.Queue(maxsize=1)

        self._done = threading.Event()
        self._keepalive_thread: threading.Thread | None = None

    def append_msg_mq(self, msg: Message) -> None:
        """Queue an incoming frame for acknowledgement, dropping duplicates."""
        with self.message_lock:
            known = self.pending_seq.get(msg.id)
            if known is not None:
                if not self.pending:
                    return
                if known.ack_seq >= msg.ack_seq:
                    return
                self.pending_seq[msg.id] = msg
                return
            if msg.frame_type == FrameType.ACK:
                return
            self.pending.append(msg)
            self.pending_seq[msg.id] = msg

    def read_message(self) -> str | bytes:
        """Receive one frame; marks the connection as active."""
        try:
            return self.transport.recv()
        finally:
            with self._idle_lock:
                self._idle = None

    def write_message(self, data: str) -> None:
        """Send one text frame; restarts the idle clock."""
        with self._idle_lock:
            try:
                self.transport.send(data)
            finally:
                self._idle = time.monotonic()

    def close(self) -> None:
        """Signal every worker of this connection to stop and close it."""
        self._done.set()
        self.transport.close()

    def closed(self) -> bool:
        """True once the connection has been closed."""
        return self._done.is_set()

    def start_keepalive(self) -> None:
        """Start the watcher that closes the connection once idle too long."""
        if self._keepalive_thread is not None:
            return
        self._keepalive_thread = threading.Thread(
            target=self._keepalive, name="ws-keepalive", daemon=True
        )
        self._keepalive_thread.start()

    def _keepalive(self) -> None:
        timeout = self.max_connection_idle
        while True:
            if self._done.wait(None if math.isinf(timeout) else timeout):
                return
            with self._idle_lock:
                idle = self._idle
                if idle is None:
                    timeout = self.max_connection_idle
                    continue
                remaining = self.max_connection_idle - (time.monotonic() - idle)
            if remaining <= 0:
                self.server.close(self)
                return
            timeout = remaining