from __future__ import annotations

import asyncio
import codecs
import logging

from jsonpulse.errors import TransportError
from jsonpulse.session import StreamSession
from jsonpulse.tokenizer import Tokenizer, TokenizerBase
from jsonpulse.transport import HttpTransport
from jsonpulse.values import EMPTY, clone

logger = logging.getLogger(__name__)


class ListenerSet:
    """Ordered, de-duplicating callback registry."""

    def __init__(self) -> None:
        self._callbacks: dict = {}

    def __len__(self) -> int:
        return len(self._callbacks)

    def add(self, callback):
        self._callbacks[callback] = None

        def remove() -> None:
            self._callbacks.pop(callback, None)

        return remove

    def emit(self, *args) -> None:
        for callback in list(self._callbacks):
            callback(*args)


def _as_transport_error(exc: Exception) -> TransportError:
    if isinstance(exc, TransportError):
        return exc
    error = TransportError(f"Chunk source failed: {exc!r}")
    error.__cause__ = exc
    return error


class Materializer:
    """Incrementally builds one value graph from a tokenizer's events.

    After every value and every closed container the root is published to
    ``on_partial`` listeners. The root is the same live object each time and
    keeps changing as more input arrives; use :meth:`clone` for a copy that
    stays put.
    """

    def __init__(self, tokenizer: TokenizerBase | None = None) -> None:
        self.tokenizer = Tokenizer() if tokenizer is None else tokenizer
        self._stack: list[dict | list] = []
        self._pending_key: str | None = None
        self._root = EMPTY
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._partial_listeners = ListenerSet()
        self._end_listeners = ListenerSet()
        self._error_listeners = ListenerSet()
        self._task: asyncio.Task | None = None
        self._finished = False
        self._wire()

    def _wire(self) -> None:
        tokenizer = self.tokenizer
        tokenizer.on_open_object = self._open_object
        tokenizer.on_key = self._key
        tokenizer.on_value = self._value
        tokenizer.on_close_object = self._close_container
        tokenizer.on_open_array = self._open_array
        tokenizer.on_close_array = self._close_container
        tokenizer.on_error = self._publish_error

    @property
    def root(self):
        return self._root

    @property
    def open_frames(self) -> int:
        return len(self._stack)

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def task(self) -> asyncio.Task | None:
        return self._task

    def clone(self):
        return clone(self._root)

    def on_partial(self, callback):
        """Register ``callback(root)``; returns a function that unregisters it."""
        return self._partial_listeners.add(callback)

    def on_end(self, callback):
        return self._end_listeners.add(callback)

    def on_error(self, callback):
        return self._error_listeners.add(callback)

    def _insert(self, value) -> None:
        container = self._stack[-1]
        if isinstance(container, list):
            container.append(value)
            return
        key = self._pending_key
        if key is None:
            logger.warning("Dropping %r: object value arrived without a key", value)
            return
        container[key] = value
        self._pending_key = None

    def _start_container(self, value, key: str | None = None) -> None:
        if not self._stack:
            self._root = value
        else:
            self._insert(value)
        self._stack.append(value)
        if key is not None:
            # The member is visible before its value arrives.
            value[key] = None
            self._pending_key = key

    def _open_object(self, key: str | None = None) -> None:
        self._start_container({}, key)

    def _open_array(self) -> None:
        self._start_container([])

    def _key(self, name: str) -> None:
        self._pending_key = name

    def _value(self, value) -> None:
        if self._stack:
            self._insert(value)
        else:
            self._root = value
        self._publish_partial()

    def _close_container(self) -> None:
        if not self._stack:
            logger.warning("Ignoring close event with no open container")
            return
        self._stack.pop()
        self._pending_key = None
        self._publish_partial()

    def _publish_partial(self) -> None:
        self._partial_listeners.emit(self._root)

    def _publish_error(self, exc: Exception) -> None:
        logger.debug("Stream error: %s", exc)
        self._error_listeners.emit(exc)

    def feed(self, chunk: str | bytes | bytearray) -> None:
        if self._finished:
            raise RuntimeError("Cannot feed after the stream has finished.")
        if isinstance(chunk, (bytes, bytearray)):
            chunk = self._decoder.decode(chunk)
        if chunk:
            self.tokenizer.write(chunk)

    def finish(self) -> None:
        if self._finished:
            return
        self._finished = True
        tail = self._decoder.decode(b"", final=True)
        if tail:
            self.tokenizer.write(tail)
        self.tokenizer.close()
        if self._stack:
            logger.warning("Stream ended with %d container(s) still open", len(self._stack))
        self._end_listeners.emit()

    async def start(self, session: StreamSession, transport=None) -> None:
        """Connect to ``session`` and pump its chunks in a background task.

        Returns once connected. A failure to connect raises
        :class:`TransportError`; later failures go to ``on_error``.
        """
        if self._task is not None:
            raise RuntimeError("Materializer already started.")
        transport = HttpTransport() if transport is None else transport
        try:
            chunks = await transport.open(session)
        except Exception as exc:
            raise _as_transport_error(exc) from exc
        self._task = asyncio.create_task(self._pump(chunks))

    async def _pump(self, chunks) -> None:
        iterator = chunks.__aiter__()
        try:
            while True:
                try:
                    chunk = await iterator.__anext__()
                except StopAsyncIteration:
                    break
                except Exception as exc:
                    self._publish_error(_as_transport_error(exc))
                    return
                self.feed(chunk)
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()
        self.finish()

    async def wait(self) -> None:
        if self._task is not None and not self._task.cancelled():
            await self._task

    async def aclose(self) -> None:
        task = self._task
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.wait({task})


def materialize(chunks, tokenizer: TokenizerBase | None = None):
    """Feed a finite sequence of chunks and return the completed root.

        materialize(['{"a":1,"', 'b":[2,3', ']}'])  # {'a': 1, 'b': [2, 3]}

    Raises the first error reported while parsing.
    """
    materializer = Materializer(tokenizer)
    errors: list[Exception] = []
    materializer.on_error(errors.append)
    for chunk in chunks:
        materializer.feed(chunk)
    materializer.finish()
    if errors:
        raise errors[0]
    return materializer.root
