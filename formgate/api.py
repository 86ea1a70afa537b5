"""The HTTP API: routes, middlewares and health checks supplied by modules.

Modules add multipart/form-data routes, middlewares and health checks; the
API puts them behind a common middleware chain and serves them over HTTP.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import timedelta
from enum import IntEnum
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol, Sequence, runtime_checkable

from .convert import parse_int
from .errors import SentinelHttpError
from .middlewares import (
    context_middleware,
    hard_timeout_middleware,
    http_error_handler,
    latency_middleware,
    logger_middleware,
    root_path_middleware,
    trace_middleware,
)
from .web import Exchange, Request, Response

Handler = Callable[[Exchange], None]
MiddlewareFunc = Callable[[Handler], Handler]
HealthCheck = Callable[[], Any]

_HARD_TIMEOUT_MARGIN = 5.0


def _seconds(value: float | timedelta) -> float:
    return value.total_seconds() if isinstance(value, timedelta) else float(value)


class MiddlewareStack(IntEnum):
    """Where a module's middleware sits in the chain."""

    DEFAULT = 0
    PRE_ROUTER = 1
    MULTIPART = 2


class MiddlewarePriority(IntEnum):
    """How early a middleware runs within its stack; higher runs first."""

    VERY_LOW = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    VERY_HIGH = 4


@dataclass
class Route:
    """A route offered by a module; ``path`` must start with a slash."""

    method: str = ""
    path: str = ""
    handler: Handler | None = None
    is_multipart: bool = False
    disable_logging: bool = False


@dataclass
class Middleware:
    """A middleware offered by a module."""

    handler: MiddlewareFunc | None = None
    stack: MiddlewareStack = MiddlewareStack.DEFAULT
    priority: MiddlewarePriority = MiddlewarePriority.VERY_LOW


@runtime_checkable
class Router(Protocol):
    """A module that adds routes to the API."""

    def routes(self) -> Sequence[Route]:
        """Return the module's routes."""


@runtime_checkable
class MiddlewareProvider(Protocol):
    """A module that adds middlewares to the API."""

    def middlewares(self) -> Sequence[Middleware]:
        """Return the module's middlewares."""


@runtime_checkable
class HealthChecker(Protocol):
    """A module that adds health checks and tells when it is ready."""

    def checks(self) -> Sequence[HealthCheck]:
        """Return callables that raise when the module is unhealthy."""

    def ready(self) -> None:
        """Return once the module is ready; raise if it cannot be."""


def _apply(handler: Handler, middlewares: Iterable[MiddlewareFunc]) -> Handler:
    """Wrap ``handler`` so the first middleware is the outermost."""
    for middleware in reversed(list(middlewares)):
        handler = middleware(handler)
    return handler


def _select(modules: Iterable[Any], kind: type, label: str) -> list[Any]:
    selected = [module for module in modules if isinstance(module, kind)]
    for module in selected:
        validate = getattr(module, "validate", None)
        if callable(validate):
            try:
                validate()
            except Exception as err:
                raise RuntimeError(f"get {label}: {err}") from err
    return selected


def _raise_status(status: HTTPStatus) -> Handler:
    def handler(exchange: Exchange) -> None:
        raise SentinelHttpError(int(status), status.phrase)

    return handler


class _HttpServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address: tuple[str, int], api: Api) -> None:
        self.api = api
        super().__init__(address, _RequestHandler)


class _RequestHandler(BaseHTTPRequestHandler):
    protocol_version = "HTTP/1.1"
    server: _HttpServer

    def setup(self) -> None:
        self.timeout = self.server.api.timeout
        super().setup()

    def _serve(self) -> None:
        try:
            length = int(self.headers.get("Content-Length") or 0)
        except ValueError:
            self.send_error(int(HTTPStatus.BAD_REQUEST))
            return
        body = self.rfile.read(length) if length > 0 else b""
        request = Request(
            method=self.command,
            uri=self.path,
            headers=dict(self.headers.items()),
            body=body,
            host=self.headers.get("Host", ""),
            remote_addr=f"{self.client_address[0]}:{self.client_address[1]}",
        )
        response = self.server.api.handle(request)
        self.send_response(response.status)
        for name, value in response.headers.items():
            self.send_header(name, value)
        self.send_header("Content-Length", str(len(response.body)))
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(response.body)

    do_GET = do_POST = do_PUT = do_PATCH = do_DELETE = do_HEAD = do_OPTIONS = _serve

    def log_message(self, format: str, *args: Any) -> None:
        # Requests are logged by the logger middleware.
        return


class Api:
    """An HTTP server whose routes, middlewares and health checks come from modules."""

    def __init__(
        self,
        port: int = 3000,
        port_from_env: str = "",
        start_timeout: float | timedelta = 30.0,
        timeout: float | timedelta = 30.0,
        root_path: str = "/",
        trace_header: str = "Gotenberg-Trace",
        disable_health_check_logging: bool = False,
    ) -> None:
        self.port = port
        self.port_from_env = port_from_env
        self.start_timeout = _seconds(start_timeout)
        self.timeout = _seconds(timeout)
        self.root_path = root_path
        self.trace_header = trace_header
        self.disable_health_check_logging = disable_health_check_logging

        self.routes: list[Route] = []
        self.middlewares: list[Middleware] = []
        self.health_checks: list[HealthCheck] = []
        self.ready_functions: list[Callable[[], Any]] = []
        self.logger: logging.Logger = logging.getLogger(__name__)
        self.root_dir: str | Path | None = None

        self._entry: Handler | None = None
        self._server: _HttpServer | None = None
        self._thread: threading.Thread | None = None
        self._error_handler = http_error_handler()

    def provision(self, modules: Iterable[Any], logger: logging.Logger | None) -> None:
        """Read the port from the environment and gather what the modules offer."""
        if self.port_from_env:
            name = self.port_from_env
            if name not in os.environ:
                raise ValueError(f"environment variable '{name}' does not exist")
            value = os.environ[name]
            if value == "":
                raise ValueError(f"environment variable '{name}' is empty")
            try:
                self.port = parse_int(value)
            except ValueError as err:
                raise ValueError(
                    f"get int value of environment variable '{name}': {err}"
                ) from err

        modules = list(modules)

        for router in _select(modules, Router, "routers"):
            try:
                routes = router.routes()
            except Exception as err:
                raise RuntimeError(f"get routes: {err}") from err
            self.routes.extend(routes or ())

        for provider in _select(modules, MiddlewareProvider, "middleware providers"):
            try:
                middlewares = provider.middlewares()
            except Exception as err:
                raise RuntimeError(f"get middlewares: {err}") from err
            self.middlewares.extend(middlewares or ())

        self.middlewares.sort(key=lambda middleware: middleware.priority, reverse=True)

        for checker in _select(modules, HealthChecker, "health checkers"):
            try:
                checks = checker.checks()
            except Exception as err:
                raise RuntimeError(f"get health checks: {err}") from err
            self.health_checks.extend(checks or ())
            self.ready_functions.append(checker.ready)

        if logger is None:
            raise ValueError("get logger provider: no logger")
        self.logger = logger

    def validate(self) -> None:
        """Raise ValueError if the settings, routes or middlewares are invalid."""
        problems = []
        if self.port < 1 or self.port > 65535:
            problems.append("port must be more than 1 and less than 65535")
        if not self.root_path.startswith("/"):
            problems.append("root path must start with /")
        if not self.root_path.endswith("/"):
            problems.append("root path must end with /")
        if not self.trace_header.strip():
            problems.append("trace header must not be empty")
        if problems:
            raise ValueError("; ".join(problems))

        registered = {"/health"}
        for route in self.routes:
            if route.path == "":
                raise ValueError("route with empty path cannot be registered")
            if not route.path.startswith("/"):
                raise ValueError(f"route '{route.path}' does not start with /")
            if route.is_multipart and not route.path.startswith("/forms"):
                raise ValueError(
                    f"multipart/form-data route '{route.path}' does not start with /forms"
                )
            if route.method == "":
                raise ValueError(f"route '{route.path}' has an empty method")
            if route.handler is None:
                raise ValueError(f"route '{route.path}' has a nil handler")
            if route.path in registered:
                raise ValueError(f"route '{route.path}' is already registered")
            registered.add(route.path)

        if any(middleware.handler is None for middleware in self.middlewares):
            raise ValueError("a middleware has a nil handler")

    def _health_handler(self) -> Handler:
        checks = list(self.health_checks)
        limit = self.timeout

        def handler(exchange: Exchange) -> None:
            details: dict[str, dict[str, str]] = {}
            if checks:
                pool = ThreadPoolExecutor(max_workers=len(checks))
                futures = {}
                for index, check in enumerate(checks):
                    name = getattr(check, "__name__", None) or f"check-{index}"
                    if name in futures.values():
                        name = f"{name}-{index}"
                    futures[pool.submit(check)] = name
                done, pending = wait(futures, timeout=limit)
                pool.shutdown(wait=False, cancel_futures=True)
                for future in pending:
                    details[futures[future]] = {"status": "down", "error": "check timed out"}
                for future in done:
                    error = future.exception()
                    if error is not None:
                        details[futures[future]] = {"status": "down", "error": str(error)}

            if details:
                status, payload = HTTPStatus.SERVICE_UNAVAILABLE, {"status": "down", "details": details}
            else:
                status, payload = HTTPStatus.OK, {"status": "up"}
            response = exchange.response
            response.headers["Content-Type"] = "application/json"
            response.status = int(status)
            response.body = json.dumps(payload).encode("utf-8")
            response.committed = True

        return handler

    def _build(self) -> None:
        quiet_paths = [
            route.path.removeprefix("/") for route in self.routes if route.disable_logging
        ]
        if self.disable_health_check_logging:
            quiet_paths.append("health")

        pre = [
            latency_middleware(),
            root_path_middleware(self.root_path),
            trace_middleware(self.trace_header),
            logger_middleware(self.logger, quiet_paths),
        ]
        default: list[MiddlewareFunc] = []
        multipart: list[MiddlewareFunc] = []
        for middleware in self.middlewares:
            if middleware.stack == MiddlewareStack.PRE_ROUTER:
                pre.append(middleware.handler)
            elif middleware.stack == MiddlewareStack.MULTIPART:
                multipart.append(middleware.handler)
            else:
                default.append(middleware.handler)

        hard_timeout = self.timeout + _HARD_TIMEOUT_MARGIN
        table: dict[str, dict[str, Handler]] = {}
        for route in self.routes:
            specific: list[MiddlewareFunc] = []
            if route.is_multipart:
                specific.append(context_middleware(self.root_dir, self.timeout))
                specific.extend(multipart)
            specific.append(hard_timeout_middleware(hard_timeout))
            full_path = f"{self.root_path}{route.path.removeprefix('/')}"
            table.setdefault(full_path, {})[route.method.upper()] = _apply(
                route.handler, default + specific
            )

        table.setdefault(f"{self.root_path}health", {})["GET"] = _apply(
            self._health_handler(), default + [hard_timeout_middleware(hard_timeout)]
        )

        not_found = _apply(_raise_status(HTTPStatus.NOT_FOUND), default)
        not_allowed = _apply(_raise_status(HTTPStatus.METHOD_NOT_ALLOWED), default)

        def router(exchange: Exchange) -> None:
            methods = table.get(exchange.request.path)
            if methods is None:
                not_found(exchange)
                return
            handler = methods.get(exchange.request.method.upper())
            if handler is None:
                not_allowed(exchange)
                return
            handler(exchange)

        self._entry = _apply(router, pre)

    def handle(self, request: Request) -> Response:
        """Run ``request`` through the middleware chain and return the response."""
        if self._entry is None:
            self._build()
        exchange = Exchange(request)
        try:
            self._entry(exchange)
        except Exception as err:
            self._error_handler(err, exchange)
        return exchange.response

    def _wait_ready(self) -> None:
        if not self.ready_functions:
            return
        pool = ThreadPoolExecutor(max_workers=len(self.ready_functions))
        futures = [pool.submit(ready) for ready in self.ready_functions]
        _, pending = wait(futures, timeout=self.start_timeout)
        pool.shutdown(wait=False, cancel_futures=True)
        if pending:
            raise TimeoutError("waiting for modules readiness: context deadline exceeded")
        for future in futures:
            error = future.exception()
            if error is not None:
                raise RuntimeError(f"waiting for modules readiness: {error}") from error

    def start(self) -> None:
        """Wait for the modules to be ready, then serve in a background thread."""
        self._build()
        self._wait_ready()
        self._server = _HttpServer(("", self.port), self)
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()

    def startup_message(self) -> str:
        return f"server listening on port {self.port}"

    def stop(self, timeout: float | timedelta | None = None) -> None:
        """Stop serving; raise TimeoutError if the server does not stop in time."""
        if self._server is None:
            return
        server, thread = self._server, self._thread
        self._server, self._thread = None, None
        server.shutdown()
        server.server_close()
        if thread is not None:
            thread.join(None if timeout is None else _seconds(timeout))
            if thread.is_alive():
                raise TimeoutError("server did not stop in time")