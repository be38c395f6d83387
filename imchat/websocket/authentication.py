"""Connection authentication for the websocket server."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import parse_qs


@dataclass
class Request:
    """The parts of an upgrade request that authentication looks at."""

    path: str = "/"
    query_string: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    context: dict[str, Any] = field(default_factory=dict)

    def query_values(self, name: str) -> list[str] | None:
        """All values of query parameter ``name``, or None if it is absent."""
        return parse_qs(self.query_string, keep_blank_values=True).get(name)


class Authentication(ABC):
    """Decides whether a connection is allowed and which user it belongs to."""

    @abstractmethod
    def auth(self, request: Request) -> bool:
        """Return True if the request may open a connection."""

    @abstractmethod
    def user_id(self, request: Request) -> str:
        """Return the user identifier for the request."""


class DefaultAuthentication(Authentication):
    """Accepts everyone; the user id comes from the ``userId`` query values."""

    def auth(self, request: Request) -> bool:
        return True

    def user_id(self, request: Request) -> str:
        values = request.query_values("userId")
        if values is not None:
            return "[" + " ".join(values) + "]"
        return str(time.time_ns() // 1_000_000)