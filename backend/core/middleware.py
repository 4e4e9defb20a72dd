"""
Middleware configuration helpers.

Requests pass through the chain returned by ``middleware_chain`` from first
to last entry; each stage either forwards to the next one or produces a
response.
"""

import base64
import binascii
import json
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from fastapi import FastAPI, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from starlette.datastructures import Headers, MutableHeaders
from starlette.formparsers import MultiPartException
from starlette.requests import Request, cookie_parser
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from core.config import Settings
from core.cors import CorsOptions
from core.errors import AppError, global_error_handler
from utils.logging import ACCESS_LOGGER, get_logger

logger = get_logger(__name__)
access_logger = get_logger(ACCESS_LOGGER)

JSON_CHARSETS = ("utf-8", "utf-16", "utf-16le", "utf-16be", "utf-32", "utf-32le", "utf-32be")
FORM_CHARSETS = ("utf-8", "iso-8859-1")


def _state(scope: Scope) -> Dict[str, Any]:
    return scope.setdefault("state", {})


def _content_type(scope: Scope) -> Tuple[str, Dict[str, str]]:
    raw = Headers(scope=scope).get("content-type", "")
    media_type, _, rest = raw.partition(";")
    params = {}
    for part in rest.split(";"):
        key, _, value = part.partition("=")
        if key.strip():
            params[key.strip().lower()] = value.strip().strip('"')
    return media_type.strip().lower(), params


async def _read_body(scope: Scope, receive: Receive, limit: int) -> Tuple[bytes, Receive]:
    """Read the whole request body, then return it with a receive callable that replays it."""
    declared = Headers(scope=scope).get("content-length")
    if declared is not None and declared.isdigit() and int(declared) > limit:
        raise AppError("request entity too large", status.HTTP_413_REQUEST_ENTITY_TOO_LARGE)

    chunks: List[bytes] = []
    size = 0
    more_body = True
    while more_body:
        message = await receive()
        if message["type"] == "http.disconnect":
            break
        chunk = message.get("body", b"")
        size += len(chunk)
        if size > limit:
            raise AppError("request entity too large", status.HTTP_413_REQUEST_ENTITY_TOO_LARGE)
        chunks.append(chunk)
        more_body = message.get("more_body", False)

    body = b"".join(chunks)
    return body, _replay(body, receive)


def _replay(body: bytes, receive: Receive) -> Receive:
    replayed = False

    async def replay() -> Message:
        nonlocal replayed
        if not replayed:
            replayed = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return replay


async def _no_more_body() -> Message:
    return {"type": "http.request", "body": b"", "more_body": False}


async def _forward_error(exc: Exception, scope: Scope, receive: Receive, send: Send) -> None:
    """Hand an error to the app's global error handler and send its response."""
    app = scope.get("app")
    handler = getattr(getattr(app, "state", None), "error_handler", None) or global_error_handler
    response = await handler(Request(scope, receive), exc)
    await response(scope, receive, send)


def _decode(raw: bytes, charset: str) -> str:
    if charset not in JSON_CHARSETS:
        raise AppError(f'unsupported charset "{charset.upper()}"', status.HTTP_415_UNSUPPORTED_MEDIA_TYPE)
    try:
        return raw.decode(charset)
    except UnicodeDecodeError as exc:
        raise AppError(f"invalid {charset} body", status.HTTP_400_BAD_REQUEST) from exc


class CredentialsMiddleware:
    """Allow credentialed cross-origin requests from trusted origins.

    Runs before CORS: the decision is stored on ``request.state`` and the
    ``Access-Control-Allow-Credentials`` header is added to every response for
    the request, preflight responses included.
    """

    def __init__(self, app: ASGIApp, trusted_origins: Iterable[str] = ()):
        self.app = app
        self.trusted_origins = frozenset(trusted_origins)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        origin = Headers(scope=scope).get("origin")
        allowed = origin is not None and origin in self.trusted_origins
        _state(scope)["credentials_allowed"] = allowed
        if not allowed:
            await self.app(scope, receive, send)
            return

        async def send_with_credentials(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                headers["Access-Control-Allow-Credentials"] = "true"
            await send(message)

        await self.app(scope, receive, send_with_credentials)


class JSONBodyMiddleware:
    """Parse ``application/json`` bodies into ``request.state.body``."""

    def __init__(self, app: ASGIApp, limit: int = 100 * 1024, strict: bool = True):
        self.app = app
        self.limit = limit
        self.strict = strict

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        state = _state(scope)
        state.setdefault("body", {})
        media_type, params = _content_type(scope)
        if media_type != "application/json":
            await self.app(scope, receive, send)
            return

        try:
            raw, receive = await _read_body(scope, receive, self.limit)
            if raw:
                state["body"] = self._parse(raw, params.get("charset", "utf-8").lower())
        except AppError as exc:
            await _forward_error(exc, scope, receive, send)
            return

        await self.app(scope, receive, send)

    def _parse(self, raw: bytes, charset: str) -> Any:
        text = _decode(raw, charset)
        if not text.strip():
            return {}
        if self.strict and text.lstrip()[0] not in "{[":
            raise AppError(
                "JSON body must be an object or an array",
                status.HTTP_400_BAD_REQUEST,
                detail=f"Unexpected token {text.lstrip()[0]!r} at position 0",
            )
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise AppError("Malformed JSON in request body", status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


class URLEncodedBodyMiddleware:
    """Parse ``application/x-www-form-urlencoded`` bodies into ``request.state.body``.

    Flat keys only; a key given more than once yields a list of values.
    """

    def __init__(self, app: ASGIApp, limit: int = 100 * 1024, parameter_limit: int = 1000):
        self.app = app
        self.limit = limit
        self.parameter_limit = parameter_limit

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        state = _state(scope)
        state.setdefault("body", {})
        media_type, params = _content_type(scope)
        if media_type != "application/x-www-form-urlencoded":
            await self.app(scope, receive, send)
            return

        try:
            charset = params.get("charset", "utf-8").lower()
            if charset not in FORM_CHARSETS:
                raise AppError(f'unsupported charset "{charset.upper()}"', status.HTTP_415_UNSUPPORTED_MEDIA_TYPE)
            raw, receive = await _read_body(scope, receive, self.limit)
            state["body"] = await self._parse(scope, raw)
        except AppError as exc:
            await _forward_error(exc, scope, receive, send)
            return

        await self.app(scope, receive, send)

    async def _parse(self, scope: Scope, raw: bytes) -> Dict[str, Any]:
        # The form is parsed from its own replay so the route can still read the body
        request = Request(scope, _replay(raw, _no_more_body))
        try:
            parsed = await request.form(max_fields=self.parameter_limit)
        except MultiPartException as exc:
            raise AppError("Malformed form body", status.HTTP_400_BAD_REQUEST, detail=exc.message) from exc
        items = parsed.multi_items()
        await parsed.close()
        if len(items) > self.parameter_limit:
            raise AppError("too many parameters", status.HTTP_413_REQUEST_ENTITY_TOO_LARGE)

        form: Dict[str, Any] = {}
        for key, value in items:
            if key not in form:
                form[key] = value
            elif isinstance(form[key], list):
                form[key].append(value)
            else:
                form[key] = [form[key], value]
        return form


class CookieParserMiddleware:
    """Parse the ``Cookie`` header into ``request.state.cookies``.

    Values prefixed with ``j:`` are decoded as JSON when they are valid JSON.
    """

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http":
            header = Headers(scope=scope).get("cookie", "")
            _state(scope)["cookies"] = {name: self._json_cookie(value) for name, value in cookie_parser(header).items()}
        await self.app(scope, receive, send)

    @staticmethod
    def _json_cookie(value: str) -> Any:
        if not value.startswith("j:"):
            return value
        try:
            return json.loads(value[2:])
        except ValueError:
            return value


def _remote_user(scope: Scope) -> str:
    auth = Headers(scope=scope).get("authorization", "")
    scheme, _, credentials = auth.partition(" ")
    if scheme.lower() != "basic" or not credentials:
        return "-"
    try:
        decoded = base64.b64decode(credentials, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return "-"
    return decoded.partition(":")[0] or "-"


def common_log_line(scope: Scope, status_code: Optional[int], content_length: Optional[str], when: Optional[datetime] = None) -> str:
    """Format one request in Apache common log format."""
    when = when or datetime.now(timezone.utc)
    client = scope.get("client")
    url = scope.get("root_path", "") + scope.get("path", "")
    query = scope.get("query_string", b"").decode("latin-1")
    if query:
        url = f"{url}?{query}"
    return '{addr} - {user} [{date}] "{method} {url} HTTP/{version}" {status} {length}'.format(
        addr=client[0] if client else "-",
        user=_remote_user(scope),
        date=when.strftime("%d/%b/%Y:%H:%M:%S +0000"),
        method=scope.get("method", "-"),
        url=url,
        version=scope.get("http_version", "1.1"),
        status=status_code if status_code is not None else "-",
        length=content_length or "-",
    )


class RequestLoggingMiddleware:
    """Log every completed request in common log format."""

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        response: Dict[str, Any] = {"status": None, "length": None}

        async def send_and_record(message: Message) -> None:
            if message["type"] == "http.response.start":
                response["status"] = message["status"]
                response["length"] = Headers(raw=message.get("headers", [])).get("content-length")
            await send(message)

        try:
            await self.app(scope, receive, send_and_record)
        finally:
            access_logger.info(common_log_line(scope, response["status"], response["length"]))


class ErrorBoundaryMiddleware:
    """Render exceptions that escaped the routes through the global error handler.

    Innermost stage, so the error response travels back out through every
    other stage of the chain.
    """

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        response_started = False

        async def send_and_track(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await self.app(scope, receive, send_and_track)
        except Exception as exc:
            # Nothing can be rendered once the status line is out
            if response_started:
                raise
            await _forward_error(exc, scope, receive, send)


def middleware_chain(
    settings: Settings,
    cors_options: CorsOptions,
    credential_origins: Iterable[str],
) -> List[Tuple[type, Dict[str, Any]]]:
    """Middleware in request order."""
    return [
        (GZipMiddleware, {"minimum_size": settings.compression_min_size}),
        (CredentialsMiddleware, {"trusted_origins": list(credential_origins)}),
        (CORSMiddleware, cors_options.middleware_kwargs()),
        (JSONBodyMiddleware, {"limit": settings.body_limit}),
        (URLEncodedBodyMiddleware, {"limit": settings.body_limit, "parameter_limit": settings.form_parameter_limit}),
        (CookieParserMiddleware, {}),
        (RequestLoggingMiddleware, {}),
        (ErrorBoundaryMiddleware, {}),
    ]


def configure_middleware(
    app: FastAPI,
    *,
    settings: Settings,
    cors_options: Optional[CorsOptions] = None,
    credential_origins: Optional[Iterable[str]] = None,
) -> None:
    """Install the middleware chain on the app."""
    cors_options = cors_options or CorsOptions.from_settings(settings)
    if credential_origins is None:
        credential_origins = cors_options.origins

    chain = middleware_chain(settings, cors_options, credential_origins)
    # add_middleware wraps everything added before it, so the first stage goes on last
    for middleware_class, options in reversed(chain):
        app.add_middleware(middleware_class, **options)
    logger.debug(f"Middleware chain: {' -> '.join(cls.__name__ for cls, _ in chain)}")
