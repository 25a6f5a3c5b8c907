from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any

import httpx

from llm_balancer.errors import (
    PartialRelayError,
    StreamProtocolError,
    UpstreamTransportError,
)

MAX_LINE_BYTES = 64 * 1024

SSE_RESPONSE_HEADERS = {
    "content-type": "text/event-stream",
    "cache-control": "no-cache",
    "connection": "keep-alive",
}

logger = logging.getLogger("uvicorn.error")


async def iter_bounded_lines(
    chunks: AsyncIterable[bytes],
    *,
    backend_name: str,
    max_line_bytes: int = MAX_LINE_BYTES,
) -> AsyncIterator[bytes]:
    """Split a byte stream on ``\\n``, dropping a trailing ``\\r`` per line."""
    buffer = bytearray()
    async for chunk in chunks:
        buffer.extend(chunk)
        while True:
            newline = buffer.find(b"\n")
            if newline < 0:
                break
            line = bytes(buffer[:newline])
            del buffer[: newline + 1]
            if len(line) > max_line_bytes:
                raise StreamProtocolError(backend_name, max_line_bytes)
            yield line.removesuffix(b"\r")
        if len(buffer) > max_line_bytes:
            raise StreamProtocolError(backend_name, max_line_bytes)
    if buffer:
        yield bytes(buffer).removesuffix(b"\r")


class StreamRelay:
    """Forwards an upstream SSE body one non-blank line at a time.

    ``open()`` reads ahead to the first event before anything is sent, so a
    failure there is still safe to retry elsewhere. After the first line is
    handed to the client ``delivered`` is set and failures become
    ``PartialRelayError``.
    """

    def __init__(
        self,
        upstream: httpx.Response,
        *,
        backend_name: str,
        request_id: str = "-",
        max_line_bytes: int = MAX_LINE_BYTES,
    ) -> None:
        self._upstream = upstream
        self._backend_name = backend_name
        self._request_id = request_id
        self._lines = iter_bounded_lines(
            upstream.aiter_bytes(),
            backend_name=backend_name,
            max_line_bytes=max_line_bytes,
        )
        self._pending: bytes | None = None
        self.delivered = False
        self.lines_relayed = 0
        self.error: PartialRelayError | None = None

    async def _next_event_line(self) -> bytes | None:
        while True:
            line = await anext(self._lines, None)
            if line is None:
                return None
            if line:
                return line

    async def open(self) -> None:
        try:
            self._pending = await self._next_event_line()
        except httpx.HTTPError as exc:
            await self.aclose()
            raise UpstreamTransportError(
                self._backend_name,
                str(exc) or repr(exc),
                error_type=exc.__class__.__name__,
            ) from exc
        except StreamProtocolError:
            await self.aclose()
            raise

    async def aclose(self) -> None:
        await self._lines.aclose()
        await self._upstream.aclose()

    async def body_iterator(self) -> AsyncIterator[bytes]:
        try:
            line = self._pending
            while line is not None:
                self.delivered = True
                self.lines_relayed += 1
                # One chunk per event so the server flushes each line.
                yield line + b"\n\n"
                line = await self._next_event_line()
        except (httpx.HTTPError, StreamProtocolError) as exc:
            self.error = PartialRelayError(self._backend_name, str(exc) or repr(exc))
            logger.warning(
                "proxy_stream_aborted request_id=%s backend=%s lines_relayed=%d error=%s",
                self._request_id,
                self._backend_name,
                self.lines_relayed,
                self.error,
            )
        finally:
            await self.aclose()


async def copy_body(
    upstream: httpx.Response,
    *,
    backend_name: str,
    deadline: float | None = None,
) -> bytes:
    try:
        async with asyncio.timeout_at(deadline):
            return await upstream.aread()
    except TimeoutError as exc:
        raise PartialRelayError(backend_name, "timed out reading response body") from exc
    except httpx.HTTPError as exc:
        raise PartialRelayError(backend_name, str(exc) or repr(exc)) from exc
    finally:
        await upstream.aclose()


def streaming_headers(extra: dict[str, Any] | None = None) -> dict[str, str]:
    headers = dict(SSE_RESPONSE_HEADERS)
    for key, value in (extra or {}).items():
        headers[key] = str(value)
    return headers
