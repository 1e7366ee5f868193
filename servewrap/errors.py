"""Error values a ReturnHandler can hand back, and their classification.

Handlers return their outcome rather than raising it:

* ``None``: the request was served.
* ``HTTPError``: send ``code`` and ``msg`` to the client; log ``err`` only.
* ``UserError``: a message that is safe to show, sent as a 500.
* ``ABORT``: the transport must drop the connection without a response.
* any other exception instance: served as a generic 500, logged in full.

Anything the handler *raises* is treated as a crash, see ``PanicError``.
"""

from __future__ import annotations

import asyncio
import enum
from collections.abc import Iterator, Mapping
from dataclasses import dataclass

from starlette.requests import ClientDisconnect


class HTTPError(Exception):
    """An error with embedded HTTP response information.

    ``code`` is the status to send (0 means 500), ``msg`` the response body,
    ``err`` the detailed error to log on the server and ``headers`` optional
    extra response headers. ``err`` is never sent to the client.
    """

    def __init__(
        self,
        code: int = 0,
        msg: str = "",
        err: BaseException | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(code, msg, err)
        self.code = code
        self.msg = msg
        self.err = err
        self.headers: dict[str, str] = dict(headers or {})
        if err is not None:
            self.__cause__ = err

    def __str__(self) -> str:
        return f"httperror{{{self.code}, {self.msg!r}, {self.err}}}"


def error(code: int, msg: str, err: BaseException | None = None) -> HTTPError:
    return HTTPError(code=code, msg=msg, err=err)


class UserError(Exception):
    """An error whose message is safe to show to the user."""

    def __init__(self, msg: str, err: BaseException | None = None) -> None:
        super().__init__(msg)
        self.msg = msg
        self.err = err
        if err is not None:
            self.__cause__ = err

    def __str__(self) -> str:
        return self.msg


def user_error(msg: str) -> UserError:
    return UserError(msg)


def wrap_user_error(err: BaseException) -> UserError:
    """Mark err's own message as safe for users; err stays the cause."""

    return UserError(str(err), err)


class AbortHandler(Exception):
    """Sentinel: the transport must abandon the connection with no response."""


ABORT = AbortHandler("abort handler")


class PanicError(Exception):
    """A handler raised instead of returning.

    Carries the raised value and the formatted traceback for the server log.
    It is never classified as an HTTPError, even when the raised value was one.
    """

    def __init__(self, value: BaseException, stack: str) -> None:
        super().__init__(value)
        self.value = value
        self.stack = stack

    def __str__(self) -> str:
        return f"panic: {self.value}\n\n{self.stack}"


class HijackError(Exception):
    pass


class HijackNotSupported(HijackError):
    def __init__(self) -> None:
        super().__init__("ResponseWriter is not a Hijacker")


def _chain(err: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = err
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__


def as_http_error(err: BaseException | None) -> HTTPError | None:
    if err is None:
        return None
    for e in _chain(err):
        if isinstance(e, HTTPError):
            return e
    return None


def as_user_error(err: BaseException | None) -> UserError | None:
    if err is None:
        return None
    for e in _chain(err):
        if isinstance(e, UserError):
            return e
    return None


def is_cancellation(err: BaseException | None) -> bool:
    return isinstance(err, (ClientDisconnect, asyncio.CancelledError))


class OutcomeKind(enum.Enum):
    OK = "ok"
    ABORT = "abort"
    HTTP_ERROR = "http_error"
    ERROR = "error"


@dataclass(frozen=True)
class Outcome:
    kind: OutcomeKind
    error: BaseException | None = None
    http_error: HTTPError | None = None


def classify(err: BaseException | None) -> Outcome:
    """Map a handler's returned error onto the outcome the wrapper acts on."""

    if err is None:
        return Outcome(OutcomeKind.OK)
    if isinstance(err, AbortHandler):
        return Outcome(OutcomeKind.ABORT, error=err)
    if isinstance(err, PanicError):
        return Outcome(OutcomeKind.ERROR, error=err)

    http_err = as_http_error(err)
    if http_err is not None:
        return Outcome(OutcomeKind.HTTP_ERROR, error=err, http_error=http_err)

    user_err = as_user_error(err)
    if user_err is not None:
        return Outcome(OutcomeKind.HTTP_ERROR, error=err, http_error=HTTPError(msg=str(user_err)))

    return Outcome(OutcomeKind.ERROR, error=err)
