"""Websocket chat server: connection registry, acks and method routing."""

from __future__ import annotations

import json
import logging
import queue
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Iterable

from imchat.websocket.authentication import Request
from imchat.websocket.connection import Conn, Transport
from imchat.websocket.message import FrameType, HandlerFunc, Message, Route
from imchat.websocket.options import AckType, ServerOptions

logger = logging.getLogger(__name__)

_ACK_POLL_INTERVAL = 0.0001
_RIGOR_RESEND_INTERVAL = 3.0
_QUEUE_WAIT = 0.05


def _default(value: Any) -> Any:
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    raise TypeError(f"object of type {type(value).__name__} is not JSON serialisable")


def _encode(msg: Any) -> str:
    if isinstance(msg, Message):
        return msg.to_json()
    return json.dumps(msg, ensure_ascii=False, separators=(",", ":"), default=_default)


def _deliver(conn: Conn, message: Message) -> bool:
    while not conn.closed():
        try:
            conn.inbox.put(message, timeout=_QUEUE_WAIT)
            return True
        except queue.Full:
            continue
    return False


def _path_matches(pattern: str, path: str) -> bool:
    if pattern.endswith("/"):
        return path.startswith(pattern)
    return path == pattern


def _split_addr(addr: str) -> tuple[str, int]:
    host, sep, port = addr.rpartition(":")
    if not sep:
        raise ValueError(f"address {addr!r} has no port")
    return host or "0.0.0.0", int(port)


class Server:
    """Accepts websocket connections and dispatches their frames to routes."""

    def __init__(self, addr: str, options: ServerOptions | None = None) -> None:
        self.addr = addr
        self.options = options if options is not None else ServerOptions()
        self.pattern = self.options.pattern
        self.authentication = self.options.authentication
        self.routes: dict[str, HandlerFunc] = {}
        self._lock = threading.RLock()
        self._conn_to_user: dict[Conn, str] = {}
        self._user_to_conn: dict[str, Conn] = {}
        self._executor = ThreadPoolExecutor(max_workers=self.options.concurrency)
        self._ws_server: Any = None

    def is_ack(self, message: Message | None = None) -> bool:
        """Whether ``message`` (or, with None, any frame) goes through acking."""
        if message is None:
            return self.options.ack != AckType.NO_ACK
        return self.options.ack != AckType.NO_ACK and message.frame_type != FrameType.NO_ACK

    def _accept(self, transport: Transport, request: Request) -> Conn | None:
        try:
            conn = Conn(self, transport, self.options.max_connection_idle)
            conn.start_keepalive()
            if not self.authentication.auth(request):
                try:
                    self.send(Message(frame_type=FrameType.DATA, data="access denied"), conn)
                finally:
                    conn.close()
                return None
            self.add_conn(conn, request)
            return conn
        except Exception:
            logger.exception("server handler ws failed")
            return None

    def serve_ws(self, transport: Transport, request: Request) -> Conn | None:
        """Authenticate a new connection, register it and start serving it.

        Returns the registered connection, or None if it was refused.
        """
        conn = self._accept(transport, request)
        if conn is not None:
            threading.Thread(
                target=self.handle_conn, args=(conn,), name="ws-conn", daemon=True
            ).start()
        return conn

    def handle_conn(self, conn: Conn) -> None:
        """Read frames from ``conn`` until it fails, feeding them to the workers."""
        conn.uid = self.get_users(conn)[0]

        threading.Thread(
            target=self._handle_write, args=(conn,), name="ws-write", daemon=True
        ).start()
        if self.is_ack():
            threading.Thread(
                target=self._read_ack, args=(conn,), name="ws-ack", daemon=True
            ).start()

        while True:
            try:
                raw = conn.read_message()
            except Exception as exc:
                logger.error("websocket conn read message err %s", exc)
                self.close(conn)
                return
            try:
                message = Message.from_json(raw)
            except ValueError as exc:
                logger.error("json unmarshal err %s, msg %r", exc, raw)
                self.close(conn)
                return

            if self.is_ack(message):
                logger.info("conn message read ack msg %s", message)
                conn.append_msg_mq(message)
            elif not _deliver(conn, message):
                return

    def _send_ack(self, conn: Conn, msg_id: str, ack_seq: int) -> None:
        try:
            self.send(Message(frame_type=FrameType.ACK, id=msg_id, ack_seq=ack_seq), conn)
        except Exception as exc:
            logger.error("send ack err %s", exc)

    def _read_ack(self, conn: Conn) -> None:
        while not conn.closed():
            deliver: Message | None = None
            resend: Message | None = None
            pause = _ACK_POLL_INTERVAL
            with conn.message_lock:
                if conn.pending:
                    message = conn.pending[0]
                    if self.options.ack == AckType.ONLY_ACK:
                        self._send_ack(conn, message.id, message.ack_seq + 1)
                        conn.pending.pop(0)
                        deliver, pause = message, 0.0
                    elif self.options.ack == AckType.RIGOR_ACK:
                        if message.ack_seq == 0:
                            message.ack_seq += 1
                            message.ack_time = time.monotonic()
                            self._send_ack(conn, message.id, message.ack_seq)
                            logger.info(
                                "message ack RigorAck send mid %s, seq %s",
                                message.id,
                                message.ack_seq,
                            )
                            pause = 0.0
                        else:
                            record = conn.pending_seq.get(message.id)
                            if record is not None and record.ack_seq > message.ack_seq:
                                conn.pending.pop(0)
                                deliver, pause = message, 0.0
                                logger.info("message ack RigorAck success mid %s", message.id)
                            elif (
                                message.ack_time is not None
                                and self.options.ack_timeout
                                - (time.monotonic() - message.ack_time)
                                <= 0
                            ):
                                conn.pending_seq.pop(message.id, None)
                                conn.pending.pop(0)
                                pause = 0.0
                            else:
                                resend, pause = message, _RIGOR_RESEND_INTERVAL
            if resend is not None:
                self._send_ack(conn, resend.id, resend.ack_seq)
            if deliver is not None:
                _deliver(conn, deliver)
            elif pause:
                time.sleep(pause)
        logger.info("close message ack uid %s", conn.uid)

    def _handle_write(self, conn: Conn) -> None:
        while not conn.closed():
            try:
                message = conn.inbox.get(timeout=_QUEUE_WAIT)
            except queue.Empty:
                continue
            try:
                if message.frame_type == FrameType.PING:
                    self.send(Message(frame_type=FrameType.PING), conn)
                elif message.frame_type == FrameType.DATA:
                    handler = self.routes.get(message.method)
                    if handler is not None:
                        handler(self, conn, message)
                    else:
                        self.send(
                            Message(
                                frame_type=FrameType.DATA,
                                data=f"method {message.method} does not exist, please check",
                            ),
                            conn,
                        )
            except Exception:
                logger.exception("handling message %s failed", message.id)

            if self.is_ack(message):
                with conn.message_lock:
                    conn.pending_seq.pop(message.id, None)

    def add_conn(self, conn: Conn, request: Request) -> None:
        """Register ``conn`` for the request's user, closing any earlier one."""
        uid = self.authentication.user_id(request)
        with self._lock:
            previous = self._user_to_conn.get(uid)
            if previous is not None:
                previous.close()
            self._conn_to_user[conn] = uid
            self._user_to_conn[uid] = conn

    def get_conn(self, uid: str) -> Conn | None:
        """The connection of user ``uid``, or None if offline."""
        with self._lock:
            return self._user_to_conn.get(uid)

    def get_conns(self, *uids: str) -> list[Conn | None]:
        """Connections of the given users, None for those offline."""
        if not uids:
            return []
        with self._lock:
            return [self._user_to_conn.get(uid) for uid in uids]

    def get_users(self, *conns: Conn) -> list[str]:
        """User ids of the given connections, or of every connection."""
        with self._lock:
            if not conns:
                return list(self._conn_to_user.values())
            return [self._conn_to_user.get(conn, "") for conn in conns]

    def close(self, conn: Conn) -> None:
        """Unregister and close ``conn``; does nothing if it is not registered."""
        with self._lock:
            uid = self._conn_to_user.get(conn, "")
            if not uid:
                return
            del self._conn_to_user[conn]
            self._user_to_conn.pop(uid, None)
            conn.close()

    def send_by_user_id(self, msg: Any, *send_ids: str) -> None:
        """Send ``msg`` to the connections of the given users."""
        if not send_ids:
            return
        self.send(msg, *self.get_conns(*send_ids))

    def send(self, msg: Any, *conns: Conn | None) -> None:
        """Serialise ``msg`` as JSON and write it to each connection.

        Offline entries (None) are skipped; the first write error propagates.
        """
        targets = [conn for conn in conns if conn is not None]
        if not targets:
            return
        data = _encode(msg)
        for conn in targets:
            conn.write_message(data)

    def add_routes(self, routes: Iterable[Route]) -> None:
        """Register handlers by method name."""
        for route in routes:
            self.routes[route.method] = route.handler

    def schedule(self, task: Callable[[], Any]) -> Future:
        """Run ``task`` on the server's bounded worker pool."""
        return self._executor.submit(task)

    def _handle_ws(self, connection: Any) -> None:
        raw_request = connection.request
        path, _, query = raw_request.path.partition("?")
        request = Request(
            path=path,
            query_string=query,
            headers={key: value for key, value in raw_request.headers.raw_items()},
        )
        conn = self._accept(connection, request)
        if conn is not None:
            self.handle_conn(conn)

    def start(self) -> None:
        """Listen on the configured address and serve until stopped."""
        from http import HTTPStatus

        from websockets.sync.server import serve

        host, port = _split_addr(self.addr)

        def process_request(connection: Any, request: Any) -> Any:
            if not _path_matches(self.pattern, request.path.partition("?")[0]):
                return connection.respond(HTTPStatus.NOT_FOUND, "404 page not found\n")
            return None

        def select_subprotocol(connection: Any, subprotocols: Any) -> Any:
            return subprotocols[0] if subprotocols else None

        with serve(
            self._handle_ws,
            host,
            port,
            process_request=process_request,
            select_subprotocol=select_subprotocol,
        ) as ws_server:
            self._ws_server = ws_server
            logger.info("websocket server listening at %s", self.addr)
            ws_server.serve_forever()

    def stop(self) -> None:
        """Stop listening and release the worker pool."""
        logger.info("stopping websocket server")
        if self._ws_server is not None:
            self._ws_server.shutdown()
            self._ws_server = None
        self._executor.shutdown(wait=False)