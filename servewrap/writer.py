from __future__ import annotations

from typing import Any, Awaitable, Callable, Protocol

from starlette.datastructures import MutableHeaders

from servewrap.errors import HijackError, HijackNotSupported
from servewrap.observability.logging import Logf


Message = dict[str, Any]
Receive = Callable[[], Awaitable[Message]]
Send = Callable[[Message], Awaitable[None]]


class ResponseWriter(Protocol):
    headers: MutableHeaders

    def write_header(self, status_code: int) -> None: ...

    async def write(self, data: bytes | str) -> int: ...


class ASGIResponseWriter:
    """Incremental response writer over an ASGI ``send`` channel.

    The status line and headers go out with the first body write or flush, so
    handlers can set headers and status in any order before writing.
    """

    def __init__(self, send: Send, receive: Receive | None = None) -> None:
        self._send = send
        self._receive = receive
        self.headers = MutableHeaders()
        self._status: int | None = None
        self.started = False
        self.finished = False
        self.hijacked = False

    def write_header(self, status_code: int) -> None:
        if self.started:
            return
        self._status = status_code

    async def _start(self) -> None:
        if self.started:
            return
        self.started = True
        await self._send(
            {
                "type": "http.response.start",
                "status": self._status or 200,
                "headers": self.headers.raw,
            }
        )

    async def write(self, data: bytes | str) -> int:
        if isinstance(data, str):
            data = data.encode("utf-8")
        await self._start()
        if data:
            await self._send({"type": "http.response.body", "body": data, "more_body": True})
        return len(data)

    async def flush(self) -> None:
        if self.finished or self.hijacked:
            return
        await self._start()
        await self._send({"type": "http.response.body", "body": b"", "more_body": True})

    async def finish(self) -> None:
        if self.finished or self.hijacked:
            return
        await self._start()
        self.finished = True
        await self._send({"type": "http.response.body", "body": b"", "more_body": False})

    def hijack(self) -> tuple[Receive | None, Send]:
        """Hand the raw ASGI channels to the caller, who then owns the response."""

        if self.started:
            raise HijackError("response already started")
        self.hijacked = True
        return self._receive, self._send


class LoggingResponseWriter:
    """Wraps a ResponseWriter and records the status code and size actually sent."""

    def __init__(self, writer: ResponseWriter, logf: Logf) -> None:
        self.writer = writer
        self.logf = logf
        self.code = 0
        self.bytes = 0
        self.hijacked = False

    @property
    def headers(self) -> MutableHeaders:
        return self.writer.headers

    def write_header(self, status_code: int) -> None:
        if self.code != 0:
            self.logf(f"[unexpected] HTTP handler set statusCode twice ({self.code} and {status_code})")
            return
        self.code = status_code
        self.writer.write_header(status_code)

    async def write(self, data: bytes | str) -> int:
        if self.code == 0:
            self.code = 200
        n = await self.writer.write(data)
        self.bytes += n
        return n

    def hijack(self) -> Any:
        # Hijacking is optional for writers; HTTP/2 transports can't offer it.
        hijack = getattr(self.writer, "hijack", None)
        if hijack is None:
            raise HijackNotSupported()
        conn = hijack()
        self.hijacked = True
        return conn

    async def flush(self) -> None:
        flush = getattr(self.writer, "flush", None)
        if flush is None:
            self.logf("[unexpected] tried to Flush a ResponseWriter that can't flush")
            return
        # Flushing sends the headers, with an implicit 200 if none was set.
        if self.code == 0:
            self.code = 200
        await flush()
