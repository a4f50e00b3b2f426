from __future__ import annotations


class JsonStreamError(Exception):
    """Base class for every fault raised or reported by jsonpulse."""


class JsonSyntaxError(JsonStreamError):
    """The tokenizer could not make sense of part of the buffered text.

    Reported through the tokenizer's error handler, never raised from
    ``write``.
    """

    def __init__(self, message: str, *, position: int = 0, fragment: str = "") -> None:
        super().__init__(message)
        self.position = position
        self.fragment = fragment


class TransportError(JsonStreamError):
    """The chunk source failed: connection, status, or read error."""


class StreamCancelled(TransportError):
    """The session's cancellation token fired while reading."""
