from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Protocol

import httpx

from jsonpulse.errors import StreamCancelled, TransportError
from jsonpulse.session import StreamSession

logger = logging.getLogger(__name__)


class Transport(Protocol):
    async def open(self, session: StreamSession) -> AsyncIterator[str | bytes]:
        """Connect and return the chunk iterator for one read pass."""


async def _until_cancelled(chunks, cancel: asyncio.Event | None):
    iterator = chunks.__aiter__()
    if cancel is None:
        async for chunk in iterator:
            yield chunk
        return

    while True:
        if cancel.is_set():
            raise StreamCancelled("Stream cancelled")
        read = asyncio.ensure_future(iterator.__anext__())
        cancelled = asyncio.ensure_future(cancel.wait())
        done, _ = await asyncio.wait(
            {read, cancelled}, return_when=asyncio.FIRST_COMPLETED
        )
        if read not in done:
            read.cancel()
            await asyncio.wait({read})
            raise StreamCancelled("Stream cancelled while waiting for data")
        cancelled.cancel()
        try:
            chunk = read.result()
        except StopAsyncIteration:
            return
        yield chunk


async def _iterate(source):
    if hasattr(source, "__aiter__"):
        async for chunk in source:
            yield chunk
        return
    for chunk in source:
        yield chunk


class HttpTransport:
    """Streams a response body over HTTP with httpx.

    Pass ``client`` to share a connection pool (or a mock transport) across
    sessions; otherwise a client is created per session and closed with the
    stream.
    """

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._client = client

    async def open(self, session: StreamSession) -> AsyncIterator[bytes]:
        owned = self._client is None
        client = httpx.AsyncClient() if owned else self._client

        extra = {} if session.timeout is None else {"timeout": session.timeout}
        request = client.build_request(
            session.method,
            session.url,
            headers=dict(session.headers),
            content=session.body,
            **extra,
        )
        try:
            response = await client.send(request, stream=True)
        except httpx.HTTPError as exc:
            if owned:
                await client.aclose()
            raise TransportError(f"Could not connect to {session.url}: {exc}") from exc

        if response.is_error:
            await response.aclose()
            if owned:
                await client.aclose()
            raise TransportError(
                f"{session.method} {session.url} returned HTTP {response.status_code}"
            )

        logger.debug("Connected to %s (HTTP %s)", session.url, response.status_code)
        return self._read(response, client if owned else None, session.cancel)

    async def _read(self, response, client, cancel):
        try:
            async for chunk in _until_cancelled(response.aiter_bytes(), cancel):
                yield chunk
        except httpx.HTTPError as exc:
            raise TransportError(f"Reading {response.url} failed: {exc}") from exc
        finally:
            await response.aclose()
            if client is not None:
                await client.aclose()


class IterableTransport:
    """Serves chunks from memory instead of the network.

    ``source`` is an iterable or async iterable of chunks, or a callable
    taking the session and returning one (called on every ``open``, so a
    store can reconnect to it).
    """

    def __init__(self, source) -> None:
        self._source = source

    async def open(self, session: StreamSession) -> AsyncIterator[str | bytes]:
        source = self._source(session) if callable(self._source) else self._source
        if asyncio.iscoroutine(source):
            source = await source
        return _until_cancelled(_iterate(source), session.cancel)
