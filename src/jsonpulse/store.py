from __future__ import annotations

import asyncio
import copy
import logging

from jsonpulse.errors import JsonSyntaxError, StreamCancelled, TransportError
from jsonpulse.materializer import ListenerSet, Materializer
from jsonpulse.session import RetryPolicy, StreamSession
from jsonpulse.tokenizer import Tokenizer
from jsonpulse.transport import HttpTransport
from jsonpulse.values import EMPTY

logger = logging.getLogger(__name__)


class SnapshotStore:
    """Current snapshot of one streamed document, plus change subscribers.

        store = SnapshotStore(StreamSession("https://example.com/data.json"))
        store.subscribe(lambda: render(store.get_snapshot()))
        await store.start()
        await store.wait()

    Subscribers take no arguments and run synchronously on every snapshot
    change. ``get_snapshot()`` returns ``EMPTY`` before the first partial
    value and again once the stream has ended; the final document is kept in
    ``last_value``.

    A transport failure after ``start()`` reconnects from scratch with
    exponential backoff, at most ``retry.max_retries`` times. When retries
    run out the fault is stored in ``error`` and subscribers are notified.
    """

    def __init__(
        self,
        session: StreamSession,
        *,
        transport=None,
        tokenizer_factory=Tokenizer,
        copy_snapshots: bool = False,
        retry: RetryPolicy | None = None,
    ) -> None:
        self.session = session
        self._transport = HttpTransport() if transport is None else transport
        self._tokenizer_factory = tokenizer_factory
        self._copy_snapshots = copy_snapshots
        self._retry = RetryPolicy() if retry is None else retry
        self._subscribers = ListenerSet()
        self._snapshot = EMPTY
        self._latest = EMPTY
        self._materializer: Materializer | None = None
        self._retry_task: asyncio.Task | None = None
        self._started = False
        self.last_value = EMPTY
        self.error: TransportError | None = None
        self.retry_count = 0
        self.syntax_errors = 0

    @property
    def materializer(self) -> Materializer | None:
        return self._materializer

    async def start(self) -> None:
        if self._started:
            raise RuntimeError("Store already started.")
        self._started = True
        await self._connect()

    def subscribe(self, callback):
        """Register ``callback``; returns a function that unregisters it."""
        return self._subscribers.add(callback)

    def get_snapshot(self):
        return self._snapshot

    async def wait(self) -> None:
        """Wait until the stream ends or retries are exhausted."""
        while True:
            if self._materializer is not None:
                await self._materializer.wait()
            retry, self._retry_task = self._retry_task, None
            if retry is None:
                return
            await retry

    async def stop(self) -> None:
        retry, self._retry_task = self._retry_task, None
        if retry is not None and not retry.done():
            retry.cancel()
            await asyncio.wait({retry})
        if self._materializer is not None:
            await self._materializer.aclose()

    async def _connect(self) -> None:
        materializer = Materializer(self._tokenizer_factory())
        materializer.on_partial(self._on_partial)
        materializer.on_end(self._on_end)
        materializer.on_error(self._on_error)
        self._materializer = materializer
        await materializer.start(self.session, self._transport)
        logger.debug("Streaming %s", self.session.url)

    def _on_partial(self, root) -> None:
        self._latest = root
        self._snapshot = copy.copy(root) if self._copy_snapshots else root
        logger.debug("Partial snapshot of %s published", self.session.url)
        self._subscribers.emit()

    def _on_end(self) -> None:
        logger.info("Stream %s complete", self.session.url)
        self.last_value = self._latest
        self._snapshot = EMPTY
        self.retry_count = 0
        self._subscribers.emit()

    def _on_error(self, exc: Exception) -> None:
        if isinstance(exc, JsonSyntaxError):
            self.syntax_errors += 1
            logger.warning("Syntax error in %s: %s", self.session.url, exc)
            return
        if isinstance(exc, StreamCancelled):
            logger.info("Stream %s cancelled", self.session.url)
            return
        self._retry_task = asyncio.get_running_loop().create_task(self._reconnect(exc))

    async def _reconnect(self, exc: Exception) -> None:
        while self.retry_count < self._retry.max_retries:
            self.retry_count += 1
            delay = self._retry.delay_for(self.retry_count)
            logger.warning(
                "Stream %s failed (%s); reconnecting in %.2fs (attempt %d/%d)",
                self.session.url,
                exc,
                delay,
                self.retry_count,
                self._retry.max_retries,
            )
            await asyncio.sleep(delay)
            try:
                await self._connect()
            except TransportError as retry_exc:
                exc = retry_exc
                continue
            return

        self.error = exc
        logger.error(
            "Giving up on %s after %d retries: %s",
            self.session.url,
            self.retry_count,
            exc,
        )
        self._subscribers.emit()
