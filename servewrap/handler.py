from __future__ import annotations

import asyncio
import dataclasses
import traceback
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Protocol

from starlette.requests import Request

from servewrap.buckets import BucketedStatsOptions
from servewrap.errors import (
    AbortHandler,
    HTTPError,
    OutcomeKind,
    PanicError,
    classify,
    is_cancellation,
)
from servewrap.models.schemas import AccessLogRecord
from servewrap.observability.logging import Logf, structlog_logf
from servewrap.observability.metrics import LabelMap, response_code_string
from servewrap.observability.middleware import request_id_from_scope
from servewrap.writer import ASGIResponseWriter, LoggingResponseWriter, Message, Receive, Send


STATUS_CLIENT_CLOSED_REQUEST = 499  # nginx convention
_INTERNAL_SERVER_ERROR = "internal server error"


class ReturnHandler(Protocol):
    """Like an ASGI app, but it may return an error instead of writing a response.

    A returned error is turned into a 500 whose body does not contain the
    error details, as they may be sensitive. If the error is (or wraps) an
    HTTPError, its code and message are sent instead.
    """

    async def serve_http_return(self, writer: LoggingResponseWriter, request: Request) -> BaseException | None: ...


class ReturnHandlerFunc:
    """Adapts a plain ``async def f(writer, request)`` into a ReturnHandler."""

    def __init__(self, fn: Callable[[LoggingResponseWriter, Request], Awaitable[BaseException | None]]) -> None:
        self.fn = fn

    async def serve_http_return(self, writer: LoggingResponseWriter, request: Request) -> BaseException | None:
        return await self.fn(writer, request)


OnStartFunc = Callable[[Request, AccessLogRecord], None]
OnCompletionFunc = Callable[[Request, AccessLogRecord], None]
ErrorHandlerFunc = Callable[[LoggingResponseWriter, Request, HTTPError], Awaitable[None]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class HandlerOptions:
    # Skip the access log line for 200 and 304 responses.
    quiet_logging_if_successful: bool = False
    logf: Logf | None = None
    now: Callable[[], datetime] | None = None

    # Counters of handled responses keyed "1xx".."5xx".
    status_code_counters: LabelMap | None = None
    # Counters of handled responses keyed by full code, e.g. "200", "404".
    status_code_counters_full: LabelMap | None = None

    bucketed_stats: BucketedStatsOptions | None = None

    # Called inline before the handler runs.
    on_start: OnStartFunc | None = None
    # Called instead of writing the default body when the handler returned an
    # HTTPError, e.g. to render a pretty error page for browsers.
    on_error: ErrorHandlerFunc | None = None
    # Called inline with the finished record, for metrics.
    on_completion: OnCompletionFunc | None = None


class DisconnectWatcher:
    """ASGI receive wrapper that remembers whether the client went away."""

    def __init__(self, receive: Receive) -> None:
        self._receive = receive
        self.disconnected = False

    async def __call__(self) -> Message:
        message = await self._receive()
        if message.get("type") == "http.disconnect":
            self.disconnected = True
        return message


def request_canceled(request: Request) -> bool:
    receive = request.receive
    return isinstance(receive, DisconnectWatcher) and receive.disconnected


def _remote_addr(scope: dict[str, Any]) -> str:
    client = scope.get("client")
    if not client:
        return ""
    host, port = client[0], client[1]
    if ":" in str(host):
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def request_uri(scope: dict[str, Any]) -> str:
    raw_path = scope.get("raw_path")
    path = raw_path.decode("latin-1") if raw_path else scope.get("path", "")
    query = scope.get("query_string", b"")
    if query:
        return f"{path}?{query.decode('latin-1')}"
    return path


class StdHandler:
    """ASGI application that runs a ReturnHandler with logging, error handling and metrics."""

    def __init__(self, handler: ReturnHandler, options: HandlerOptions) -> None:
        self.handler = handler
        self.options = options

    async def __call__(self, scope: dict[str, Any], receive: Receive, send: Send) -> None:
        if scope.get("type") != "http":
            return

        watcher = DisconnectWatcher(receive)
        request = Request(scope, watcher)
        await self.serve_http(ASGIResponseWriter(send, watcher), request)

    def _new_record(self, request: Request) -> AccessLogRecord:
        scope = request.scope
        return AccessLogRecord(
            time=self.options.now(),
            remote_addr=_remote_addr(scope),
            proto=f"HTTP/{scope.get('http_version', '1.1')}",
            tls=scope.get("scheme") in ("https", "wss"),
            host=request.headers.get("host", ""),
            method=request.method,
            request_uri=request_uri(scope),
            user_agent=request.headers.get("user-agent", ""),
            referer=request.headers.get("referer", ""),
            request_id=request_id_from_scope(scope),
        )

    async def _run(
        self, writer: LoggingResponseWriter, request: Request
    ) -> tuple[BaseException | None, BaseException | None]:
        """Call the handler, returning (error, raised exception)."""

        try:
            result = await self.handler.serve_http_return(writer, request)
        except AbortHandler as exc:
            return exc, exc
        except asyncio.CancelledError as exc:
            return exc, exc
        except BaseException as exc:
            # Don't classify a raised HTTPError as an intentional error
            # response; raising is always a crash.
            return PanicError(exc, traceback.format_exc()), exc

        if result is not None and not isinstance(result, BaseException):
            result = TypeError(f"handler returned {type(result).__name__}, want an exception or None")
        return result, None

    async def serve_http(self, writer: ASGIResponseWriter, request: Request) -> None:
        opts = self.options
        record = self._new_record(request)

        bucket = ""
        start_recorded = False
        bs = opts.bucketed_stats
        if bs is not None:
            bucket = bs.bucket_for_request(request)
            start_recorded = bs.record_start(bucket)

        if opts.on_start is not None:
            opts.on_start(request, record.model_copy())

        lw = LoggingResponseWriter(writer, opts.logf)
        err, raised = await self._run(lw, request)
        outcome = classify(err)

        code = lw.code
        if code == 0 and err is None and not lw.hijacked:
            # A handler that wrote nothing still succeeded.
            code = 200

        canceled = False
        if lw.hijacked:
            # The connection no longer belongs to us.
            if code == 0:
                code = 101
        elif err is not None and (request_canceled(request) or is_cancellation(err)):
            canceled = True
            code = STATUS_CLIENT_CLOSED_REQUEST
            record.err = "context canceled"
        elif outcome.kind is OutcomeKind.ABORT:
            record.err = str(err)
            if code == 0:
                code = 500
        elif outcome.kind is OutcomeKind.HTTP_ERROR:
            code = await self._serve_http_error(lw, request, record, outcome.http_error)
        elif err is not None:
            record.err = str(err)
            if lw.code == 0:
                code = 500
                await self._write_internal_error(lw, record.request_id)

        record.seconds = (opts.now() - record.time).total_seconds()
        record.code = code
        record.bytes = lw.bytes

        if opts.on_completion is not None:
            opts.on_completion(request, record.model_copy())

        if bs is not None:
            bs.record_finish(bucket, start_recorded, code)

        if not opts.quiet_logging_if_successful or code not in (200, 304):
            opts.logf(str(record))

        if opts.status_code_counters is not None:
            opts.status_code_counters.add(response_code_string(code // 100), 1)
        if opts.status_code_counters_full is not None:
            opts.status_code_counters_full.add(response_code_string(code), 1)

        if outcome.kind is OutcomeKind.ABORT:
            # Let the server drop the connection. ABORT is shared by every
            # request, so it must not carry frames from earlier ones.
            err.__context__ = None
            raise err.with_traceback(None)
        if raised is not None:
            if not isinstance(raised, asyncio.CancelledError):
                await lw.flush()
            raise raised
        if not lw.hijacked and not canceled:
            await writer.finish()

    async def _serve_http_error(
        self,
        lw: LoggingResponseWriter,
        request: Request,
        record: AccessLogRecord,
        h_err: HTTPError,
    ) -> int:
        opts = self.options
        record.err = h_err.msg
        if h_err.err is not None:
            record.err = f"{record.err}: {h_err.err}" if record.err else str(h_err.err)

        if lw.code != 0:
            opts.logf(f"[unexpected] handler returned HTTPError {h_err}, but already sent a response with code {lw.code}")
            return lw.code

        code = h_err.code
        if code == 0:
            opts.logf(f"[unexpected] HTTPError {h_err} did not contain an HTTP status code, sending internal server error")
            code = 500

        if opts.on_error is not None:
            await opts.on_error(lw, request, h_err)
            if lw.code == 0:
                lw.write_header(code)
            return lw.code

        # Default headers, as for any plain-text error response.
        lw.headers["Content-Type"] = "text/plain; charset=utf-8"
        lw.headers["X-Content-Type-Options"] = "nosniff"
        for name, value in h_err.headers.items():
            lw.headers[name] = value
        lw.write_header(code)
        await lw.write(h_err.msg + "\n")
        if record.request_id:
            await lw.write(record.request_id + "\n")
        return code

    async def _write_internal_error(self, lw: LoggingResponseWriter, request_id: str) -> None:
        body = _INTERNAL_SERVER_ERROR
        if request_id:
            body += "\n" + request_id
        lw.headers["Content-Type"] = "text/plain; charset=utf-8"
        lw.headers["X-Content-Type-Options"] = "nosniff"
        lw.write_header(500)
        await lw.write(body + "\n")


def std_handler(handler: ReturnHandler | Callable[..., Any], options: HandlerOptions | None = None) -> StdHandler:
    """Convert a ReturnHandler (or a plain async function) into an ASGI app.

    Handled requests are logged with ``options.logf``, as are any errors.
    """

    opts = dataclasses.replace(options) if options is not None else HandlerOptions()
    if opts.now is None:
        opts.now = _utcnow
    if opts.logf is None:
        opts.logf = structlog_logf("access")
    if not hasattr(handler, "serve_http_return"):
        handler = ReturnHandlerFunc(handler)
    return StdHandler(handler, opts)
