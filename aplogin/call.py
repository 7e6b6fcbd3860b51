"""The call command: an authenticated HTTP request made with a stored handle."""

from __future__ import annotations

import http.client
import io
import json
import shutil
import sys
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import BinaryIO, Iterable, Optional, TextIO

from .errors import (
    CLIError,
    auth_error,
    network_error,
    server_error,
    throttled_error,
    user_error,
)
from .handle import InvalidHandle, MissingLabel, parse_handle, validate_provider
from .model import NotConfigured, RecordNotFound, Registry, Store, UnknownProvider

ALLOWED_METHODS = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE"})

_NETWORK_FAILURES = (urllib.error.URLError, OSError, http.client.HTTPException, ValueError)


@dataclass
class CallOptions:
    """Flags of the call command; timeout is in seconds."""

    body: str = ""
    body_file: str = ""
    headers: list[str] = field(default_factory=list)
    output: str = ""
    content_type: str = ""
    status_only: bool = False
    scopes: list[str] = field(default_factory=list)
    timeout: float = 60.0


@dataclass
class _Reply:
    status: int
    version: int
    headers: http.client.HTTPMessage
    stream: BinaryIO

    def close(self) -> None:
        try:
            self.stream.close()
        except _NETWORK_FAILURES:
            pass

    def drain(self) -> None:
        try:
            self.stream.read()
        except _NETWORK_FAILURES:
            pass


def _format_duration(seconds: float) -> str:
    """Render a duration the way the command line accepts it (e.g. 50ms, 1m0s)."""
    nanos = round(seconds * 1_000_000_000)
    if nanos == 0:
        return "0s"
    sign = "-" if nanos < 0 else ""
    nanos = abs(nanos)

    def trimmed(value: int, unit: int) -> str:
        whole, frac = divmod(value, unit)
        if not frac:
            return str(whole)
        digits = len(str(unit)) - 1
        return f"{whole}.{str(frac).zfill(digits).rstrip('0')}"

    if nanos < 1_000:
        return f"{sign}{nanos}ns"
    if nanos < 1_000_000:
        return f"{sign}{trimmed(nanos, 1_000)}µs"
    if nanos < 1_000_000_000:
        return f"{sign}{trimmed(nanos, 1_000_000)}ms"
    hours, rest = divmod(nanos, 3_600_000_000_000)
    minutes, rest = divmod(rest, 60_000_000_000)
    text = f"{trimmed(rest, 1_000_000_000)}s"
    if hours or minutes:
        text = f"{minutes}m{text}"
    if hours:
        text = f"{hours}h{text}"
    return sign + text


def status_to_error(status: int) -> Optional[CLIError]:
    """The error a response status maps to, or None for success."""
    if 200 <= status < 300:
        return None
    if status == 429:
        return throttled_error("apl call: throttled (throttled)")
    if status >= 500:
        return server_error(f"apl call: server error {status} (server error)")
    if status >= 400:
        return user_error(f"apl call: HTTP {status} (user error)")
    return user_error(f"apl call: unexpected status {status} (user error)")


def missing_scopes(granted: Iterable[str], required: Iterable[str]) -> list[str]:
    """Required scopes that are not among the granted ones, in order."""
    have = set(granted)
    return [scope for scope in required if scope not in have]


def _is_timeout(exc: BaseException) -> bool:
    if isinstance(exc, TimeoutError):
        return True
    if isinstance(exc, urllib.error.URLError) and isinstance(exc.reason, TimeoutError):
        return True
    text = str(exc).lower()
    return any(word in text for word in ("deadline exceeded", "timed out", "timeout"))


def _timeout_error(timeout: float) -> CLIError:
    return network_error(
        f"apl call: timeout after {_format_duration(timeout)} (network error)"
    )


def _map_network_error(exc: BaseException, timeout: float) -> CLIError:
    if _is_timeout(exc):
        return _timeout_error(timeout)
    return network_error(f"apl call: {exc} (network error)")


def _parse_headers(raw_headers: Iterable[str], content_type: str) -> tuple[list[tuple[str, str]], bool]:
    headers: list[tuple[str, str]] = []
    has_user_content_type = False
    for raw in raw_headers:
        index = raw.find(":")
        if index <= 0:
            raise user_error(f"apl call: malformed header {json.dumps(raw)} (user error)")
        key = raw[:index].strip()
        value = raw[index + 1 :]
        if value.startswith(" "):
            value = value[1:]
        if key.lower() == "authorization":
            raise user_error("apl call: cannot override Authorization header (user error)")
        if key.lower() == "content-type":
            if content_type:
                raise user_error(
                    "apl call: --content-type and -H 'Content-Type: ...' are "
                    "mutually exclusive (user error)"
                )
            has_user_content_type = True
        headers.append((key, value))
    return headers, has_user_content_type


def _read_body(options: CallOptions) -> Optional[bytes]:
    if options.body and options.body_file:
        raise user_error("apl call: --body and --body-file are mutually exclusive (user error)")
    if options.body:
        return options.body.encode()
    if options.body_file == "-":
        try:
            source = getattr(sys.stdin, "buffer", None)
            return source.read() if source is not None else sys.stdin.read().encode()
        except OSError as exc:
            raise user_error(f"apl call: reading stdin: {exc} (user error)") from exc
    if options.body_file:
        try:
            with open(options.body_file, "rb") as handle:
                return handle.read()
        except OSError as exc:
            raise user_error(f"apl call: reading body file: {exc} (user error)") from exc
    return None


def _build_headers(
    token: str,
    body: Optional[bytes],
    has_user_content_type: bool,
    content_type: str,
    user_headers: list[tuple[str, str]],
) -> dict[str, str]:
    collected: dict[str, tuple[str, list[str]]] = {}

    def set_header(name: str, value: str) -> None:
        collected[name.lower()] = (name, [value])

    def add_header(name: str, value: str) -> None:
        collected.setdefault(name.lower(), (name, []))[1].append(value)

    set_header("Authorization", "Bearer " + token)
    if body is not None and not content_type and not has_user_content_type:
        set_header("Content-Type", "application/json")
    for name, value in user_headers:
        add_header(name, value)
    if content_type:
        set_header("Content-Type", content_type)
    return {name: ", ".join(values) for name, values in collected.values()}


def _send(
    method: str, url: str, body: Optional[bytes], headers: dict[str, str], remaining: float
) -> _Reply:
    request = urllib.request.Request(url, data=body, method=method)
    for name, value in headers.items():
        request.add_header(name, value)
    try:
        response = urllib.request.urlopen(request, timeout=remaining)
    except urllib.error.HTTPError as err:
        return _Reply(err.code, getattr(err.fp, "version", 11), err.headers, err)
    return _Reply(response.status, getattr(response, "version", 11), response.headers, response)


def _copy(stream: BinaryIO, target) -> None:
    buffer = getattr(target, "buffer", None)
    if buffer is not None:
        target.flush()
        shutil.copyfileobj(stream, buffer)
        buffer.flush()
    elif isinstance(target, io.TextIOBase):
        target.write(stream.read().decode("utf-8", errors="replace"))
    else:
        shutil.copyfileobj(stream, target)


def _write_body(reply: _Reply, stdout, options: CallOptions) -> None:
    if options.status_only:
        reply.drain()
        return
    try:
        if options.output and options.output != "-":
            try:
                handle = open(options.output, "wb")
            except OSError:
                reply.drain()
                return
            with handle:
                _copy(reply.stream, handle)
        else:
            _copy(reply.stream, stdout)
    except _NETWORK_FAILURES:
        pass


def _is_tty(stream) -> bool:
    isatty = getattr(stream, "isatty", None)
    if isatty is None:
        return False
    try:
        return bool(isatty())
    except (OSError, ValueError):
        return False


def _print_status(stderr: TextIO, reply: _Reply, status_only: bool) -> None:
    if not status_only and not _is_tty(stderr):
        return
    major, minor = divmod(reply.version, 10)
    try:
        reason = HTTPStatus(reply.status).phrase
    except ValueError:
        reason = ""
    stderr.write(f"HTTP/{major}.{minor} {reply.status} {reason}\n")
    content_type = reply.headers.get("Content-Type")
    if content_type:
        stderr.write(f"Content-Type: {content_type}\n")
    authenticate = reply.headers.get("WWW-Authenticate")
    if authenticate:
        stderr.write(f"WWW-Authenticate: {authenticate}\n")


def call(
    registry: Registry,
    store: Store,
    handle_text: str,
    method: str,
    url: str,
    stdout,
    stderr: TextIO,
    options: Optional[CallOptions] = None,
) -> None:
    """Send an HTTP request authorised by a stored handle and stream the response body.

    The body goes to stdout (or the output file); the status line goes to
    stderr when it is a terminal or status_only is set. A non-2xx status
    raises the CLIError it maps to.
    """
    options = options or CallOptions()

    try:
        handle = parse_handle(handle_text)
        validate_provider(handle, registry)
    except (InvalidHandle, MissingLabel, UnknownProvider) as exc:
        raise user_error(f"apl call: {exc} (user error)") from exc

    verb = method.upper()
    if verb not in ALLOWED_METHODS:
        raise user_error(f"apl call: unsupported method {json.dumps(method)} (user error)")

    try:
        parts = urllib.parse.urlsplit(url)
    except ValueError:
        parts = None
    if parts is None or not parts.netloc or parts.scheme not in ("http", "https"):
        raise user_error("apl call: url must be absolute (user error)")

    user_headers, has_user_content_type = _parse_headers(options.headers, options.content_type)
    body = _read_body(options)

    name = str(handle)
    try:
        provider = registry.resolve(handle.provider, handle.label)
    except NotConfigured as exc:
        raise user_error(
            f"apl call: no OAuth client configured for {name}. "
            f"Run: apl setup {handle.provider} --label {handle.label} (user error)"
        ) from exc
    except UnknownProvider as exc:
        raise user_error(f"apl call: {exc} (user error)") from exc

    try:
        record = store.get(name)
    except RecordNotFound as exc:
        raise auth_error(
            f"apl call: no account for {name}. Run: apl login {name} (auth error)"
        ) from exc
    except Exception as exc:  # any storage backend failure
        raise network_error(f"apl call: store get: {exc} (network error)") from exc

    missing = missing_scopes(record.scopes, options.scopes)
    if missing:
        raise auth_error(
            f"apl call: missing scope(s): {','.join(missing)}. "
            f"Run: apl login {name} --force --scope {' --scope '.join(missing)} (auth error)"
        )

    deadline = time.monotonic() + options.timeout

    def remaining() -> float:
        left = deadline - time.monotonic()
        if left <= 0:
            raise _timeout_error(options.timeout)
        return left

    def refresh(after_401: bool) -> None:
        nonlocal record
        try:
            token, refreshed = provider.refresh(record)
        except Exception as exc:  # transport or provider failure
            if time.monotonic() >= deadline:
                raise _timeout_error(options.timeout) from exc
            if after_401:
                raise auth_error(f"apl call: refresh after 401: {exc} (auth error)") from exc
            raise network_error(f"apl call: refresh: {exc} (network error)") from exc
        if refreshed is not None:
            record = refreshed
        record.access_token = token
        try:
            store.put(record)
        except Exception:  # persisting the rotated token is best effort
            pass

    def send() -> _Reply:
        headers = _build_headers(
            record.access_token, body, has_user_content_type, options.content_type, user_headers
        )
        try:
            return _send(verb, url, body, headers, remaining())
        except CLIError:
            raise
        except _NETWORK_FAILURES as exc:
            raise _map_network_error(exc, options.timeout) from exc

    refresh(after_401=False)
    reply = send()

    if reply.status == HTTPStatus.UNAUTHORIZED:
        reply.drain()
        reply.close()
        refresh(after_401=True)
        reply = send()
        if reply.status == HTTPStatus.UNAUTHORIZED:
            try:
                _write_body(reply, stdout, options)
                _print_status(stderr, reply, options.status_only)
            finally:
                reply.close()
            raise auth_error("apl call: 401 after refresh (auth error)")

    try:
        _print_status(stderr, reply, options.status_only)
        _write_body(reply, stdout, options)
    finally:
        reply.close()

    error = status_to_error(reply.status)
    if error is not None:
        raise error