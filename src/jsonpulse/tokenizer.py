from __future__ import annotations

import re

import ijson

from jsonpulse.errors import JsonSyntaxError

_NUMBER_START = frozenset("0123456789-")
_KEYWORD_START = frozenset("tfn")
_KEYWORDS = {"true": True, "false": False, "null": None}

_NUMBER = re.compile(r"[0-9eE+\-.]+")
_INTEGER = re.compile(r"-?[0-9]+")
_WORD = re.compile(r"[A-Za-z]+")
# Body of a string up to and including its closing quote.
_STRING_TAIL = re.compile(r'(?:[^"\\]|\\.)*"', re.DOTALL)
_ESCAPE = re.compile(r'\\(["\\/bfnrt])')
_ESCAPES = {
    '"': '"',
    "\\": "\\",
    "/": "/",
    "b": "\b",
    "f": "\f",
    "n": "\n",
    "r": "\r",
    "t": "\t",
}


def _unescape(raw: str) -> str:
    if "\\" not in raw:
        return raw
    return _ESCAPE.sub(lambda match: _ESCAPES[match.group(1)], raw)


class TokenizerBase:
    """Handler slots shared by every tokenizer.

    Each slot is an optional callable; a slot left as ``None`` silently drops
    its event class. Concrete tokenizers override :meth:`write` and usually
    :meth:`close`. The base class can still be instantiated on its own to
    drive the slots by hand.
    """

    on_open_object = None
    on_key = None
    on_value = None
    on_close_object = None
    on_open_array = None
    on_close_array = None
    on_error = None

    def write(self, chunk: str) -> None:
        raise NotImplementedError(
            f"{type(self).__name__} does not lex text; call its handler slots directly"
        )

    def close(self) -> None:
        """Signal end of input."""

    def _emit(self, slot: str, *args) -> None:
        handler = getattr(self, slot)
        if handler is not None:
            handler(*args)


class Tokenizer(TokenizerBase):
    """Lexes arbitrarily fragmented JSON text into parse events.

    Tokens split across ``write`` calls (mid-string, mid-number, between a
    backslash and the character it escapes) are held back until they are
    complete; nothing is emitted for a token before all of it has arrived.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._offset = 0
        self._stack: list[str] = []
        self._key_pending = False

    @property
    def buffered(self) -> str:
        """Text received but not yet consumed."""
        return self._buffer

    @property
    def depth(self) -> int:
        return len(self._stack)

    def write(self, chunk: str) -> None:
        if not chunk:
            return
        self._buffer += chunk
        self._scan(final=False)

    def close(self) -> None:
        self._scan(final=True)
        if self._buffer:
            leftover = self._buffer
            self._discard(len(leftover))
            self._fail("Unterminated token at end of input", 0, leftover)

    def _discard(self, count: int) -> None:
        if count:
            self._buffer = self._buffer[count:]
            self._offset += count

    def _fail(self, message: str, start: int, fragment: str) -> None:
        self._emit(
            "on_error",
            JsonSyntaxError(message, position=self._offset + start, fragment=fragment),
        )

    def _scan(self, final: bool) -> None:
        buffer = self._buffer
        size = len(buffer)
        pos = 0
        try:
            while pos < size:
                char = buffer[pos]
                start = pos
                if char == "{" or char == "[":
                    pos += 1
                    self._open(char)
                elif char == "}" or char == "]":
                    pos += 1
                    self._close(char, start)
                elif char == '"':
                    match = _STRING_TAIL.match(buffer, pos + 1)
                    if match is None:
                        break
                    pos = match.end()
                    self._string(_unescape(buffer[start + 1 : pos - 1]))
                elif char in _NUMBER_START:
                    match = _NUMBER.match(buffer, pos)
                    if match.end() == size and not final:
                        break
                    pos = match.end()
                    self._number(match.group(), start)
                elif char in _KEYWORD_START:
                    word = self._keyword(buffer, pos, final)
                    if word is None:
                        break
                    pos += len(word)
                    if word in _KEYWORDS:
                        self._scalar(_KEYWORDS[word])
                    else:
                        self._key_pending = False
                        self._fail(f"Unknown literal {word!r}", start, word)
                else:
                    pos += 1
        finally:
            # Runs even when a handler raises, so consumed text never replays.
            self._discard(pos)

    def _keyword(self, buffer: str, pos: int, final: bool) -> str | None:
        """Word starting at ``pos``, or ``None`` while it may still grow into a literal."""
        for word in _KEYWORDS:
            if buffer.startswith(word, pos):
                return word
        rest = buffer[pos : pos + 5]
        if not final and any(word.startswith(rest) for word in _KEYWORDS):
            return None
        return _WORD.match(buffer, pos).group()

    def _number(self, token: str, start: int) -> None:
        try:
            value = int(token) if _INTEGER.fullmatch(token) else float(token)
        except ValueError:
            self._key_pending = False
            self._fail(f"Invalid number literal {token!r}", start, token)
            return
        self._scalar(value)

    def _open(self, bracket: str) -> None:
        self._key_pending = False
        if bracket == "{":
            self._stack.append("object")
            self._emit("on_open_object")
        else:
            self._stack.append("array")
            self._emit("on_open_array")

    def _close(self, bracket: str, start: int) -> None:
        if not self._stack:
            self._fail(f"Unexpected {bracket!r} with no open container", start, bracket)
            return
        self._stack.pop()
        self._key_pending = False
        self._emit("on_close_object" if bracket == "}" else "on_close_array")

    def _string(self, text: str) -> None:
        if self._stack and self._stack[-1] == "object" and not self._key_pending:
            self._key_pending = True
            self._emit("on_key", text)
            return
        self._scalar(text)

    def _scalar(self, value) -> None:
        self._key_pending = False
        self._emit("on_value", value)


_IJSON_SLOTS = {
    "start_map": "on_open_object",
    "map_key": "on_key",
    "end_map": "on_close_object",
    "start_array": "on_open_array",
    "end_array": "on_close_array",
}


class IjsonTokenizer(TokenizerBase):
    """Strict tokenizer backed by ijson's push parser.

    Rejects malformed documents that the default tokenizer would skip over.
    The first syntax error is reported through ``on_error``; input written
    after that is ignored.
    """

    def __init__(self) -> None:
        self._events = ijson.sendable_list()
        self._parser = ijson.basic_parse_coro(self._events, use_float=True)
        self._failed = False

    @property
    def failed(self) -> bool:
        return self._failed

    def write(self, chunk: str | bytes) -> None:
        if self._failed or not chunk:
            return
        data = chunk if isinstance(chunk, (bytes, bytearray)) else chunk.encode("utf-8")
        try:
            self._parser.send(data)
        except ijson.JSONError as exc:
            self._dispatch()
            self._halt(exc)
            return
        self._dispatch()

    def close(self) -> None:
        if self._failed:
            return
        try:
            self._parser.close()
        except ijson.JSONError as exc:
            self._dispatch()
            self._halt(exc)
            return
        self._dispatch()

    def _dispatch(self) -> None:
        events = list(self._events)
        self._events.clear()
        for event, value in events:
            slot = _IJSON_SLOTS.get(event)
            if slot is None:
                self._emit("on_value", value)
            elif event == "map_key":
                self._emit(slot, value)
            else:
                self._emit(slot)

    def _halt(self, exc: Exception) -> None:
        self._failed = True
        error = JsonSyntaxError(str(exc))
        error.__cause__ = exc
        self._emit("on_error", error)
