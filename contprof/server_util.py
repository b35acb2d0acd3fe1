"""HTTP serving helpers: not-found fallback, log level decisions and CORS origin checks."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from enum import Enum
from typing import Any


class LogLevel(str, Enum):
    """Log levels used when deciding whether a finished call is logged."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


# Maps a configured level to the levels it lets through.
MAP_ALLOWED_LEVELS: dict[str, list[str]] = {
    "DEBUG": ["INFO", "DEBUG", "WARN", "ERROR"],
    "ERROR": ["ERROR"],
    "INFO": ["INFO", "WARN", "ERROR"],
    "WARN": ["WARN", "ERROR"],
}

_CODE_NAMES = {
    "OK": 0,
    "CANCELED": 1,
    "CANCELLED": 1,
    "UNKNOWN": 2,
    "INVALID_ARGUMENT": 3,
    "DEADLINE_EXCEEDED": 4,
    "NOT_FOUND": 5,
    "ALREADY_EXISTS": 6,
    "PERMISSION_DENIED": 7,
    "RESOURCE_EXHAUSTED": 8,
    "FAILED_PRECONDITION": 9,
    "ABORTED": 10,
    "OUT_OF_RANGE": 11,
    "UNIMPLEMENTED": 12,
    "INTERNAL": 13,
    "UNAVAILABLE": 14,
    "DATA_LOSS": 15,
    "UNAUTHENTICATED": 16,
}

_ERROR_CODES = {2, 12, 13, 15}
_INFO_CODES = {0, 1, 3, 5, 6, 16}
_WARN_CODES = {4, 7, 8, 9, 10, 11, 14}


def _code_number(code: int | str | Any) -> int:
    if isinstance(code, Enum):
        code = code.value[0] if isinstance(code.value, tuple) else code.value
    if isinstance(code, str):
        try:
            return _CODE_NAMES[code.upper()]
        except KeyError:
            raise ValueError(f"unknown status code {code!r}") from None
    return int(code)


def default_code_to_level(code: int | str) -> LogLevel:
    """Map an RPC status code to the level its calls are logged at."""
    if _code_number(code) in _ERROR_CODES:
        return LogLevel.ERROR
    return LogLevel.DEBUG


def _server_code_to_level(code: int) -> LogLevel:
    if code in _INFO_CODES:
        return LogLevel.INFO
    if code in _WARN_CODES:
        return LogLevel.WARN
    return LogLevel.ERROR


def should_log(code: int | str, log_level: str) -> bool:
    """Tell whether a call finishing with code is logged when running at log_level."""
    runtime_level = _server_code_to_level(_code_number(code))
    allowed = MAP_ALLOWED_LEVELS.get(str(log_level).upper(), [])
    return any(runtime_level.value == level.lower() for level in allowed)


def origin_allowed(origin: str, allowed_origins: Sequence[str] | None) -> bool:
    """Tell whether a CORS origin is allowed; a lone '*' allows every origin."""
    allowed = list(allowed_origins or [])
    allow_all = len(allowed) == 1 and allowed[0] == "*"
    return allow_all or origin in set(allowed)


WSGIApp = Callable[[dict, Callable], Iterable[bytes]]


def _close(result: Any) -> None:
    close = getattr(result, "close", None)
    if close is not None:
        close()


def fallback_not_found(handler: WSGIApp, fallback: WSGIApp) -> WSGIApp:
    """Wrap a WSGI app so that its 404 responses are replaced by the fallback app's."""

    def app(environ: dict, start_response: Callable) -> Iterable[bytes]:
        not_found = False

        def wrapped_start(status: str, headers: list, exc_info: Any = None) -> Callable:
            nonlocal not_found
            if status.split(" ", 1)[0] == "404":
                not_found = True
                return lambda data: None
            return start_response(status, headers, exc_info)

        result = handler(environ, wrapped_start)
        iterator = iter(result)
        try:
            first = next(iterator)
            exhausted = False
        except StopIteration:
            first = b""
            exhausted = True

        if not_found:
            _close(result)
            return fallback(environ, start_response)

        def body() -> Iterable[bytes]:
            try:
                if first:
                    yield first
                if not exhausted:
                    yield from iterator
            finally:
                _close(result)

        return body()

    return app