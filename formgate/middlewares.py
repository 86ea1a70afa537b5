"""Middlewares of the HTTP API and the central error handler.

A handler takes an :class:`~formgate.web.Exchange` and raises on failure; a
middleware takes the next handler and returns a new one.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from datetime import timedelta
from http import HTTPStatus
from pathlib import Path
from typing import Callable, Iterable, Iterator, Union

from .context import new_context
from .convert import format_duration
from .errors import (
    AsyncProcess,
    FilteredError,
    MaximumQueueSizeExceededError,
    PdfEngineMethodNotSupportedError,
    PdfFormatNotSupportedError,
    WrappedError,
)
from .web import Exchange

Handler = Callable[[Exchange], None]
Middleware = Callable[[Handler], Handler]
ErrorHandler = Callable[[BaseException, Exchange], None]
AnyLogger = Union[logging.Logger, logging.LoggerAdapter]

PDF_FORMAT_NOT_SUPPORTED_MESSAGE = (
    "At least one PDF engine cannot process the requested PDF format, "
    "while others may have failed to convert due to different issues"
)

_log = logging.getLogger(__name__)


def _chain(err: BaseException) -> Iterator[BaseException]:
    """Yield ``err`` and the errors it was raised from.

    A wrapped error stops the walk: its sentinel speaks for it.
    """
    seen: set[int] = set()
    current: BaseException | None = err
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        if isinstance(current, WrappedError):
            return
        current = current.__cause__


def _is(err: BaseException, kind: type[BaseException]) -> bool:
    return any(isinstance(item, kind) for item in _chain(err))


def _status(status: HTTPStatus) -> tuple[int, str]:
    return int(status), status.phrase


def _seconds(value: float | timedelta) -> float:
    return value.total_seconds() if isinstance(value, timedelta) else float(value)


def _canonical(name: str) -> str:
    return "-".join(part[:1].upper() + part[1:].lower() for part in name.split("-"))


def _logger_of(exchange: Exchange) -> AnyLogger:
    logger = exchange.get("logger")
    return logger if logger is not None else _log


def _wrap(message: str, err: BaseException) -> RuntimeError:
    wrapped = RuntimeError(f"{message}: {err}")
    wrapped.__cause__ = err
    return wrapped


def parse_error(err: BaseException) -> tuple[int, str]:
    """Return the HTTP status and message that stand for ``err``."""
    if _is(err, TimeoutError):
        return _status(HTTPStatus.SERVICE_UNAVAILABLE)
    if _is(err, FilteredError):
        return _status(HTTPStatus.FORBIDDEN)
    if _is(err, MaximumQueueSizeExceededError):
        return _status(HTTPStatus.TOO_MANY_REQUESTS)
    if _is(err, PdfEngineMethodNotSupportedError):
        return _status(HTTPStatus.NOT_IMPLEMENTED)
    if _is(err, PdfFormatNotSupportedError):
        return int(HTTPStatus.BAD_REQUEST), PDF_FORMAT_NOT_SUPPORTED_MESSAGE
    for item in _chain(err):
        http_error = getattr(item, "http_error", None)
        if callable(http_error):
            status, message = http_error()
            return int(status), message
    return _status(HTTPStatus.INTERNAL_SERVER_ERROR)


def http_error_handler() -> ErrorHandler:
    """Return the handler that answers an error as UTF-8 plain text."""

    def handle(err: BaseException, exchange: Exchange) -> None:
        status, message = parse_error(err)
        try:
            exchange.string(status, message)
        except Exception as send_err:
            _logger_of(exchange).error("send error response: %s", send_err)

    return handle


_handle_error = http_error_handler()


def latency_middleware() -> Middleware:
    """Store the monotonic start time under "startTime"."""

    def middleware(next_handler: Handler) -> Handler:
        def handler(exchange: Exchange) -> None:
            exchange.set("startTime", time.monotonic())
            next_handler(exchange)

        return handler

    return middleware


def root_path_middleware(root_path: str) -> Middleware:
    """Store the API's root path under "rootPath"."""

    def middleware(next_handler: Handler) -> Handler:
        def handler(exchange: Exchange) -> None:
            exchange.set("rootPath", root_path)
            next_handler(exchange)

        return handler

    return middleware


def trace_middleware(header: str) -> Middleware:
    """Store the request identifier under "trace" and echo it in the response.

    The identifier comes from ``header`` or, if that is empty, a new UUID.
    """

    def middleware(next_handler: Handler) -> Handler:
        def handler(exchange: Exchange) -> None:
            trace = exchange.request.header(header) or str(uuid.uuid4())
            exchange.set("trace", trace)
            exchange.set("traceHeader", header)
            exchange.response.headers[_canonical(header)] = trace
            next_handler(exchange)

        return handler

    return middleware


def logger_middleware(
    logger: logging.Logger, disable_logging_for_paths: Iterable[str] | None = None
) -> Middleware:
    """Store a request logger under "logger" and log the request's outcome.

    Errors from the chain are answered by the error handler and not raised.
    """
    quiet_paths = list(disable_logging_for_paths or ())

    def middleware(next_handler: Handler) -> Handler:
        def handler(exchange: Exchange) -> None:
            start = exchange.get("startTime")
            if start is None:
                start = time.monotonic()
            trace = exchange.get("trace") or ""
            root_path = exchange.get("rootPath") or ""
            request = exchange.request

            name = request.path.replace(root_path, "").replace("/", "") if root_path else request.path.replace("/", "")
            named = logger.getChild(name) if name else logger
            exchange.set("logger", logging.LoggerAdapter(named, {"trace": trace}))

            error: Exception | None = None
            try:
                next_handler(exchange)
            except Exception as err:
                error = err
                _handle_error(err, exchange)

            if any(request.uri == f"{root_path}{path}" for path in quiet_paths):
                return

            elapsed = time.monotonic() - start
            fields = {
                "trace": trace,
                "remote_ip": request.real_ip,
                "host": request.host,
                "uri": request.uri,
                "method": request.method,
                "path": request.path or "/",
                "referer": request.referer,
                "user_agent": request.user_agent,
                "status": exchange.response.status,
                "latency": int(elapsed * 1_000_000_000),
                "latency_human": format_duration(timedelta(seconds=elapsed)),
                "bytes_in": request.content_length,
                "bytes_out": exchange.response.size,
            }
            if error is not None:
                logger.error(str(error), extra=fields)
            else:
                logger.info("request handled", extra=fields)

        return handler

    return middleware


def context_middleware(
    root_dir: str | Path | None, timeout: float | timedelta
) -> Middleware:
    """Parse the multipart request into a context and send its output file.

    The context is stored under "context" and its cancel function under
    "cancel". A handler raising :class:`AsyncProcess` gets a 204 answer and
    keeps the context open.
    """

    def middleware(next_handler: Handler) -> Handler:
        def handler(exchange: Exchange) -> None:
            logger = _logger_of(exchange)
            try:
                ctx = new_context(exchange.request, logger, root_dir, timeout)
            except Exception as err:
                raise _wrap("create request context", err) from err

            exchange.set("context", ctx)
            exchange.set("cancel", ctx.cancel)

            try:
                next_handler(exchange)
            except Exception as err:
                if _is(err, AsyncProcess):
                    exchange.no_content(int(HTTPStatus.NO_CONTENT))
                    return
                ctx.cancel()
                raise

            with ctx:
                try:
                    output_path = ctx.build_output_file()
                except Exception as err:
                    raise _wrap("build output file", err) from err
                try:
                    exchange.attachment(output_path, ctx.output_filename(output_path))
                except Exception as err:
                    raise _wrap("send response", err) from err

        return handler

    return middleware


def hard_timeout_middleware(hard_timeout: float | timedelta) -> Middleware:
    """Fail with a :class:`TimeoutError` when the chain outlasts ``hard_timeout``."""
    limit = _seconds(hard_timeout)

    def middleware(next_handler: Handler) -> Handler:
        def handler(exchange: Exchange) -> None:
            logger = _logger_of(exchange)
            outcome: list[BaseException | None] = []

            def run() -> None:
                try:
                    next_handler(exchange)
                except BaseException as err:  # handed back to the caller below
                    outcome.append(err)
                else:
                    outcome.append(None)

            worker = threading.Thread(target=run, daemon=True)
            worker.start()
            worker.join(limit)

            if worker.is_alive() or not outcome:
                logger.debug("hard timeout as the route handler did not timeout as expected")
                raise TimeoutError("hard timeout: context deadline exceeded")

            error = outcome[0]
            if error is not None:
                raise error

        return handler

    return middleware