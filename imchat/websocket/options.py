"""Configuration for the websocket server and client."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Mapping

from imchat.websocket.authentication import Authentication, DefaultAuthentication

DEFAULT_MAX_CONNECTION_IDLE = math.inf
DEFAULT_ACK_TIMEOUT = 30.0
DEFAULT_CONCURRENCY = 10
DEFAULT_PATTERN = "/ws"


class AckType(IntEnum):
    """How the server acknowledges incoming frames."""

    NO_ACK = 0
    ONLY_ACK = 1
    RIGOR_ACK = 2

    def __str__(self) -> str:
        if self is AckType.ONLY_ACK:
            return "OnlyAck"
        if self is AckType.RIGOR_ACK:
            return "RigorAck"
        return "NoAck"


@dataclass
class ServerOptions:
    """Settings of a websocket server.

    Durations are in seconds. A non-positive ``max_connection_idle`` falls
    back to the default, which never closes idle connections.
    """

    authentication: Authentication = field(default_factory=DefaultAuthentication)
    ack: AckType = AckType.NO_ACK
    ack_timeout: float = DEFAULT_ACK_TIMEOUT
    pattern: str = DEFAULT_PATTERN
    max_connection_idle: float = DEFAULT_MAX_CONNECTION_IDLE
    concurrency: int = DEFAULT_CONCURRENCY

    def __post_init__(self) -> None:
        self.ack = AckType(self.ack)
        if self.max_connection_idle <= 0:
            self.max_connection_idle = DEFAULT_MAX_CONNECTION_IDLE
        if self.concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {self.concurrency}")


@dataclass
class DialOptions:
    """Settings for dialling a websocket server."""

    pattern: str = DEFAULT_PATTERN
    header: Mapping[str, str] | None = None