"""Small request predicates and response helpers used beside the request wrapper.

None of these keep state; they read settings on each call so tests can
override the environment.
"""

from __future__ import annotations

import ipaddress
import os
import secrets
import sys
from pathlib import Path
from typing import Any, Callable
from urllib.parse import SplitResult, unquote_plus, urlsplit

import structlog
from fastapi import HTTPException, Request
from starlette.datastructures import MutableHeaders
from starlette.responses import PlainTextResponse, RedirectResponse

from servewrap.config import get_settings
from servewrap.handler import request_uri


logger = structlog.get_logger(__name__)

# Tailscale's CGNAT range minus the ChromeOS VM range, and its IPv6 ULA range.
_TAILSCALE_V4 = ipaddress.ip_network("100.64.0.0/10")
_CHROMEOS_VM_V4 = ipaddress.ip_network("100.115.92.0/23")
_TAILSCALE_V6 = ipaddress.ip_network("fd7a:115c:a1e0::/48")

BROWSER_HEADERS = {
    "Strict-Transport-Security": "max-age=63072000; includeSubDomains",
    "Content-Security-Policy": (
        "default-src 'self'; frame-ancestors 'none'; form-action 'self'; base-uri 'self'; "
        "block-all-mixed-content; object-src 'none'"
    ),
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
}


def is_tailscale_ip(ip: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    if ip.version == 4:
        return ip in _TAILSCALE_V4 and ip not in _CHROMEOS_VM_V4
    return ip in _TAILSCALE_V6


def _allow_debug_access_with_key(request: Request) -> bool:
    if request.method != "GET":
        return False
    url_key = request.query_params.get("debugkey", "")
    key_file = get_settings().debug_key_file
    if not url_key or key_file is None:
        return False
    try:
        expected = key_file.read_text(encoding="utf-8").strip()
    except OSError as exc:
        logger.warning("debug_key_unreadable", path=str(key_file), error=str(exc))
        return False
    return bool(expected) and secrets.compare_digest(expected, url_key)


def allow_debug_access(request: Request) -> bool:
    """Report whether request may reach the debug endpoints."""

    if _allow_debug_access_with_key(request):
        return True
    if request.headers.get("x-forwarded-for"):
        # Proxied requests could be from anywhere; be conservative.
        return False
    if request.client is None:
        return False
    ip_str = request.client.host
    try:
        ip = ipaddress.ip_address(ip_str)
    except ValueError:
        return False
    allow_ip = get_settings().allow_debug_ip
    return is_tailscale_ip(ip) or ip.is_loopback or (bool(allow_ip) and ip_str == allow_ip)


def _denied_message(request: Request) -> str:
    msg = "debug access denied"
    if get_settings().dev_mode and request.client is not None:
        msg += f"; to permit access, set TS_ALLOW_DEBUG_IP={request.client.host}"
    return msg


def require_debug_access(request: Request) -> None:
    """FastAPI dependency enforcing allow_debug_access."""

    if not allow_debug_access(request):
        raise HTTPException(status_code=403, detail=_denied_message(request))


def protected(app: Callable[..., Any]) -> Callable[..., Any]:
    """Wrap an ASGI debug app so unauthorized requests get a 403."""

    async def wrapper(scope: dict[str, Any], receive: Callable[..., Any], send: Callable[..., Any]) -> None:
        if scope.get("type") == "http":
            request = Request(scope, receive)
            if not allow_debug_access(request):
                response = PlainTextResponse(_denied_message(request) + "\n", status_code=403)
                await response(scope, receive, send)
                return
        await app(scope, receive, send)

    return wrapper


def accepts_encoding(request: Request, enc: str) -> bool:
    """Report whether request accepts the named content encoding ("gzip", "br", ...)."""

    header = request.headers.get("accept-encoding", "")
    if not header or enc.lower() not in header.lower():
        return False
    for part in header.split(","):
        if part.split(";", 1)[0].strip() == enc:
            return True
    return False


def add_browser_headers(headers: MutableHeaders) -> None:
    """Set HSTS, CSP, framing and MIME-sniffing headers for browser-facing responses."""

    for name, value in BROWSER_HEADERS.items():
        headers[name] = value


class BrowserHeadersMiddleware:
    """Adds the browser security headers unless the app already set them."""

    def __init__(self, app: Callable[..., Any]) -> None:
        self.app = app

    async def __call__(self, scope: dict[str, Any], receive: Callable[..., Any], send: Callable[..., Any]) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        async def send_wrapper(message: dict[str, Any]) -> None:
            if message.get("type") == "http.response.start":
                headers = MutableHeaders(scope=message)
                for name, value in BROWSER_HEADERS.items():
                    headers.setdefault(name, value)
            await send(message)

        await self.app(scope, receive, send_wrapper)


def _has_safe_redirect_prefix(url: str) -> bool:
    lowered = url[:8].lower()
    return url.startswith("/") or lowered.startswith("http://") or lowered.startswith("https://")


def clean_redirect_url(url_str: str, allowed_hosts: list[str]) -> SplitResult:
    """Validate url_str as a redirect target on this server or one of allowed_hosts.

    Raises ValueError for malformed URLs and disallowed hosts.
    """

    if not url_str:
        return urlsplit("")

    # Some callers escape the redirect URL once too often.
    unescaped = unquote_plus(url_str)
    if unescaped != url_str:
        url_str = unescaped

    # Only accept URLs that are unambiguously well formed: browsers read
    # "https:/evil.com" as a host, urlsplit reads it as a path. "//host/path"
    # passes here and is checked as an absolute redirect below.
    if not _has_safe_redirect_prefix(url_str):
        raise ValueError(f"invalid redirect URL {url_str!r}")

    try:
        url = urlsplit(url_str)
        hostname = url.hostname or ""
    except ValueError as exc:
        raise ValueError(f"invalid redirect URL {url_str!r}: {exc}") from exc

    if not url.scheme and not url.netloc:
        return url
    for allowed in allowed_hosts:
        if allowed.lower() == hostname.lower():
            return url

    raise ValueError(f"disallowed target host {hostname!r} in redirect URL {url_str!r}")


def is_prod_443(addr: str) -> bool:
    """Report whether addr is a listen address for port 443."""

    if ":" not in addr:
        return False
    port = addr.rpartition(":")[2]
    return port in ("443", "https")


def default_cert_dir(leaf_dir: str) -> str:
    if sys.platform == "win32":
        base = os.environ.get("LocalAppData", "")
    elif sys.platform == "darwin":
        base = str(Path.home() / "Library" / "Caches")
    else:
        base = os.environ.get("XDG_CACHE_HOME") or str(Path.home() / ".cache")
    if not base:
        return ""
    return str(Path(base) / "tailscale" / leaf_dir)


class Port80Handler:
    """Plain-HTTP listener app: serves /debug from main, redirects the rest to HTTPS.

    ``fqdn`` is the redirect host; the request's Host header is used when empty.
    """

    def __init__(self, main: Callable[..., Any], fqdn: str = "") -> None:
        self.main = main
        self.fqdn = fqdn

    async def __call__(self, scope: dict[str, Any], receive: Callable[..., Any], send: Callable[..., Any]) -> None:
        if scope.get("type") != "http":
            await self.main(scope, receive, send)
            return

        request = Request(scope, receive)
        path = request_uri(scope)
        if path.startswith("/debug"):
            await self.main(scope, receive, send)
            return

        if request.method not in ("GET", "HEAD"):
            response: Any = PlainTextResponse("Use HTTPS\n", status_code=400)
        else:
            if path == "/" and allow_debug_access(request):
                # Send authorized users straight to the debug pages.
                path = "/debug/"
            host = self.fqdn or request.headers.get("host", "")
            response = RedirectResponse(url=f"https://{host}{path}", status_code=302)
        await response(scope, receive, send)
