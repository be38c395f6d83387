import queue
import threading
import time

import pytest

from imchat.websocket.connection import Conn
from imchat.websocket.message import FrameType, Message


class FakeTransport:
    def __init__(self, incoming=()):
        self.incoming = queue.Queue()
        for item in incoming:
            self.incoming.put(item)
        self.sent = []
        self.is_closed = threading.Event()

    def recv(self):
        while True:
            if self.is_closed.is_set():
                raise ConnectionError("closed")
            try:
                return self.incoming.get(timeout=0.02)
            except queue.Empty:
                continue

    def send(self, data):
        if self.is_closed.is_set():
            raise ConnectionError("closed")
        self.sent.append(data)

    def close(self):
        self.is_closed.set()


class FakeServer:
    def __init__(self):
        self.closed = []

    def close(self, conn):
        self.closed.append(conn)
        conn.close()


def wait_for(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def conn():
    return Conn(FakeServer(), FakeTransport())


def test_new_data_message_is_queued(conn):
    msg = Message(id="a")
    conn.append_msg_mq(msg)
    assert conn.pending == [msg]
    assert conn.pending_seq == {"a": msg}


def test_ack_for_unknown_message_is_ignored(conn):
    conn.append_msg_mq(Message(frame_type=FrameType.ACK, id="a", ack_seq=1))
    assert conn.pending == []
    assert conn.pending_seq == {}


def test_duplicate_with_same_ack_seq_is_ignored(conn):
    first = Message(id="a", ack_seq=1)
    conn.append_msg_mq(first)
    conn.append_msg_mq(Message(id="a", ack_seq=1))
    assert conn.pending_seq["a"] is first
    assert len(conn.pending) == 1


def test_higher_ack_seq_updates_record_only(conn):
    first = Message(id="a", ack_seq=1)
    second = Message(frame_type=FrameType.ACK, id="a", ack_seq=2)
    conn.append_msg_mq(first)
    conn.append_msg_mq(second)
    assert conn.pending == [first]
    assert conn.pending_seq["a"] is second


def test_known_id_with_empty_queue_is_ignored(conn):
    first = Message(id="a", ack_seq=0)
    conn.append_msg_mq(first)
    conn.pending.clear()
    conn.append_msg_mq(Message(id="a", ack_seq=5))
    assert conn.pending == []
    assert conn.pending_seq["a"] is first


def test_write_message_goes_to_transport(conn):
    conn.write_message("hello")
    assert conn.transport.sent == ["hello"]


def test_read_message_returns_frame():
    conn = Conn(FakeServer(), FakeTransport(["frame"]))
    assert conn.read_message() == "frame"


def test_read_error_propagates(conn):
    conn.transport.close()
    with pytest.raises(ConnectionError):
        conn.read_message()


def test_close_is_idempotent(conn):
    assert conn.closed() is False
    conn.close()
    conn.close()
    assert conn.closed() is True
    assert conn.transport.is_closed.is_set()


def test_keepalive_closes_idle_connection():
    server = FakeServer()
    conn = Conn(server, FakeTransport(), 0.05)
    conn.start_keepalive()
    assert wait_for(lambda: server.closed)
    assert server.closed == [conn]
    assert conn.closed()


def test_keepalive_spares_connection_that_read():
    server = FakeServer()
    conn = Conn(server, FakeTransport(["frame"]), 0.05)
    conn.read_message()
    conn.start_keepalive()
    time.sleep(0.3)
    assert server.closed == []
    assert conn.closed() is False
    conn.close()


def test_keepalive_closes_after_write_goes_idle():
    server = FakeServer()
    conn = Conn(server, FakeTransport(["frame"]), 0.1)
    conn.read_message()
    conn.start_keepalive()
    conn.write_message("reply")
    assert wait_for(lambda: server.closed)
    assert server.closed == [conn]