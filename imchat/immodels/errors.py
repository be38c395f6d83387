"""Errors raised by the chat storage models."""

from __future__ import annotations

from bson import ObjectId


class NotFoundError(LookupError):
    """No document matched the query."""

    def __init__(self, message: str = "mongo: no documents in result") -> None:
        super().__init__(message)


class InvalidObjectIdError(ValueError):
    """A document id is not a 24-digit hexadecimal object id."""

    def __init__(self, message: str = "invalid objectId") -> None:
        super().__init__(message)


_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")


def parse_object_id(value: str) -> ObjectId:
    """Parse a hexadecimal object id; raises InvalidObjectIdError if malformed."""
    if not isinstance(value, str) or len(value) != 24 or not set(value) <= _HEX_DIGITS:
        raise InvalidObjectIdError()
    return ObjectId(value)