"""Instant-messaging components: a WebSocket message server and client, MongoDB chat storage and conversation services."""

__version__ = "0.1.0"