from __future__ import annotations

import uuid
from time import perf_counter
from typing import Any, Callable

import structlog
from starlette.datastructures import Headers, MutableHeaders

from servewrap.observability.metrics import get_metrics


REQUEST_ID_HEADER = "X-Request-ID"

# Request IDs look like "REQ-1" followed by 32 hex characters. The "1" is a
# format version so the layout can change later.
_REQUEST_ID_PREFIX = "REQ-1"
_MAX_REQUEST_ID_LEN = 128


def new_request_id() -> str:
    return _REQUEST_ID_PREFIX + uuid.uuid4().hex


def _valid_request_id(value: str) -> bool:
    return 0 < len(value) <= _MAX_REQUEST_ID_LEN and value.isprintable() and " " not in value


def request_id_from_scope(scope: dict[str, Any]) -> str:
    """Return the request ID propagated by RequestContextMiddleware, or ""."""

    state = scope.get("state") or {}
    return str(state.get("request_id") or "")


class RequestContextMiddleware:
    """Adds request_id context, the X-Request-ID header, and basic HTTP metrics."""

    def __init__(self, app: Callable[..., Any]) -> None:
        self.app = app
        # Avoid self-observing the observability endpoints.
        self._excluded_metric_paths = {"/debug/varz", "/metrics"}

    async def __call__(self, scope: dict[str, Any], receive: Callable[..., Any], send: Callable[..., Any]) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        incoming = Headers(scope=scope).get(REQUEST_ID_HEADER, "")
        request_id = incoming if _valid_request_id(incoming) else new_request_id()
        scope.setdefault("state", {})["request_id"] = request_id

        path = scope.get("path")
        method = scope.get("method")

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            path=path,
            method=method,
        )

        start = perf_counter()

        async def send_wrapper(message: dict[str, Any]) -> None:
            if message.get("type") == "http.response.start":
                headers = MutableHeaders(scope=message)
                headers[REQUEST_ID_HEADER] = request_id

            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            elapsed_ms = (perf_counter() - start) * 1000.0

            # Exclude the metrics endpoints to avoid feedback loops in dashboards.
            if path not in self._excluded_metric_paths:
                get_metrics().observe_http_request(elapsed_ms=elapsed_ms)

            structlog.contextvars.clear_contextvars()
