import pytest
from starlette.datastructures import MutableHeaders
from starlette.requests import Request

from asgi_helpers import call_asgi, make_receive, make_scope
from servewrap.config import get_settings
from servewrap.security import (
    BROWSER_HEADERS,
    Port80Handler,
    accepts_encoding,
    add_browser_headers,
    allow_debug_access,
    clean_redirect_url,
    default_cert_dir,
    is_prod_443,
    protected,
)


def _request(path: str = "/debug/", **kwargs) -> Request:
    return Request(make_scope(path, **kwargs), make_receive())


@pytest.mark.parametrize(
    ("host", "allowed"),
    [
        ("127.0.0.1", True),
        ("::1", True),
        ("100.101.102.103", True),
        ("100.115.92.5", False),
        ("fd7a:115c:a1e0::1", True),
        ("203.0.113.9", False),
        ("not-an-ip", False),
    ],
)
def test_allow_debug_access_by_address(host: str, allowed: bool) -> None:
    assert allow_debug_access(_request(client=(host, 4000))) is allowed


def test_allow_debug_access_rejects_forwarded_requests() -> None:
    assert not allow_debug_access(_request(headers={"X-Forwarded-For": "127.0.0.1"}))


def test_allow_debug_access_without_client() -> None:
    assert not allow_debug_access(_request(client=None))


def test_allow_debug_access_for_configured_ip(monkeypatch) -> None:
    monkeypatch.setenv("TS_ALLOW_DEBUG_IP", "203.0.113.9")
    get_settings.cache_clear()

    assert allow_debug_access(_request(client=("203.0.113.9", 4000)))
    assert not allow_debug_access(_request(client=("203.0.113.10", 4000)))


def test_allow_debug_access_with_key(monkeypatch, tmp_path) -> None:
    key_file = tmp_path / "debugkey"
    key_file.write_text("s3cret\n")
    monkeypatch.setenv("TS_DEBUG_KEY_PATH", str(key_file))
    get_settings.cache_clear()

    outsider = ("203.0.113.9", 4000)
    assert allow_debug_access(_request(client=outsider, query="debugkey=s3cret"))
    # Keys work even through proxies, but only for GET.
    assert allow_debug_access(_request(client=outsider, query="debugkey=s3cret", headers={"X-Forwarded-For": "1.2.3.4"}))
    assert not allow_debug_access(_request(client=outsider, query="debugkey=s3cret", method="POST"))
    assert not allow_debug_access(_request(client=outsider, query="debugkey=wrong"))


async def test_protected_denies_outsiders() -> None:
    reached = []

    async def debug_app(scope, receive, send):
        reached.append(scope["path"])

    app = protected(debug_app)
    sent = await call_asgi(app, "/debug/pprof", client=("203.0.113.9", 4000))

    assert sent.status == 403
    assert sent.body == b"debug access denied\n"
    assert reached == []

    await call_asgi(app, "/debug/pprof")
    assert reached == ["/debug/pprof"]


async def test_protected_explains_in_dev_mode(monkeypatch) -> None:
    monkeypatch.setenv("DEV_MODE", "true")
    get_settings.cache_clear()

    async def debug_app(scope, receive, send):
        raise AssertionError("must not be reached")

    sent = await call_asgi(protected(debug_app), "/debug/", client=("203.0.113.9", 4000))
    assert b"set TS_ALLOW_DEBUG_IP=203.0.113.9" in sent.body


@pytest.mark.parametrize(
    ("header", "enc", "want"),
    [
        ("gzip, deflate, br", "gzip", True),
        ("gzip;q=1.0, identity; q=0.5", "gzip", True),
        ("deflate, br", "gzip", False),
        ("xgzip", "gzip", False),
        ("", "gzip", False),
    ],
)
def test_accepts_encoding(header: str, enc: str, want: bool) -> None:
    headers = {"Accept-Encoding": header} if header else {}
    assert accepts_encoding(_request(headers=headers), enc) is want


def test_add_browser_headers() -> None:
    headers = MutableHeaders()
    add_browser_headers(headers)
    for name, value in BROWSER_HEADERS.items():
        assert headers[name] == value


@pytest.mark.parametrize(
    ("url", "want_path", "want_host"),
    [
        ("", "", None),
        ("/foo", "/foo", None),
        ("/foo?bar=1", "/foo", None),
        ("https://example.com/foo", "/foo", "example.com"),
        ("HTTPS://Example.com/foo", "/foo", "example.com"),
        ("http://example.com/x", "/x", "example.com"),
        ("%2Ffoo%3Fa%3Db", "/foo", None),
        ("//example.com/foo", "/foo", "example.com"),
    ],
)
def test_clean_redirect_url_accepts(url: str, want_path: str, want_host: str | None) -> None:
    got = clean_redirect_url(url, ["example.com"])
    assert got.path == want_path
    assert got.hostname == want_host


@pytest.mark.parametrize(
    "url",
    [
        "https://evil.com/foo",
        "//evil.com/foo",
        "https:/evil.com",
        "javascript:alert(1)",
        "evil.com",
        "ftp://example.com/",
    ],
)
def test_clean_redirect_url_rejects(url: str) -> None:
    with pytest.raises(ValueError):
        clean_redirect_url(url, ["example.com"])


@pytest.mark.parametrize(
    ("addr", "want"),
    [(":443", True), ("0.0.0.0:https", True), ("[::1]:443", True), (":80", False), ("443", False), ("", False)],
)
def test_is_prod_443(addr: str, want: bool) -> None:
    assert is_prod_443(addr) is want


def test_default_cert_dir(monkeypatch, tmp_path) -> None:
    monkeypatch.setattr("sys.platform", "linux")
    monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path))
    assert default_cert_dir("derper-certs") == str(tmp_path / "tailscale" / "derper-certs")


async def test_port80_redirects_to_https() -> None:
    async def main(scope, receive, send):
        raise AssertionError("must not be reached")

    sent = await call_asgi(Port80Handler(main), "/login", query="next=/home", client=("203.0.113.9", 4000))
    assert sent.status == 302
    assert sent.headers["location"] == "https://example.com/login?next=/home"

    sent = await call_asgi(Port80Handler(main, fqdn="login.example.net"), "/", client=("203.0.113.9", 4000))
    assert sent.headers["location"] == "https://login.example.net/"


async def test_port80_sends_debug_users_to_debug_pages() -> None:
    async def main(scope, receive, send):
        raise AssertionError("must not be reached")

    sent = await call_asgi(Port80Handler(main), "/")
    assert sent.headers["location"] == "https://example.com/debug/"


async def test_port80_serves_debug_and_rejects_writes() -> None:
    reached = []

    async def main(scope, receive, send):
        reached.append(scope["path"])

    await call_asgi(Port80Handler(main), "/debug/varz")
    assert reached == ["/debug/varz"]

    sent = await call_asgi(Port80Handler(main), "/submit", method="POST")
    assert sent.status == 400
    assert sent.body == b"Use HTTPS\n"
