import json
import logging
import socket
import urllib.error
import urllib.request

import pytest

from formgate.api import (
    Api,
    Middleware,
    MiddlewarePriority,
    MiddlewareStack,
    Route,
)
from formgate.web import Request

LOGGER = logging.getLogger("tests.api")
BOUNDARY = "formgateboundary"


def _ok(exchange):
    return None


def _passthrough(next_handler):
    def handler(exchange):
        next_handler(exchange)

    return handler


def _multipart_request(uri):
    body = (
        f"--{BOUNDARY}\r\n"
        'Content-Disposition: form-data; name="foo"\r\n\r\n'
        "foo\r\n"
        f"--{BOUNDARY}\r\n"
        'Content-Disposition: form-data; name="foo.txt"; filename="foo.txt"\r\n'
        "Content-Type: application/octet-stream\r\n\r\n"
        "foo\r\n"
        f"--{BOUNDARY}--\r\n"
    ).encode()
    return Request(
        method="POST",
        uri=uri,
        headers={"Content-Type": f"multipart/form-data; boundary={BOUNDARY}"},
        body=body,
    )


def _free_port():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class _InvalidRouter:
    def validate(self):
        raise ValueError("foo")

    def routes(self):
        return []


class _FailingRouter:
    def routes(self):
        raise RuntimeError("foo")


class _InvalidProvider:
    def validate(self):
        raise ValueError("foo")

    def middlewares(self):
        return []


class _FailingProvider:
    def middlewares(self):
        raise RuntimeError("foo")


class _InvalidChecker:
    def validate(self):
        raise ValueError("foo")

    def checks(self):
        return []

    def ready(self):
        return None


class _FailingChecker:
    def checks(self):
        raise RuntimeError("foo")

    def ready(self):
        return None


class _Router:
    def __init__(self, routes):
        self._routes = routes

    def routes(self):
        return self._routes


class _Provider:
    def __init__(self, middlewares):
        self._middlewares = middlewares

    def middlewares(self):
        return self._middlewares


class _Checker:
    def __init__(self, checks=(), ready_error=None):
        self._checks = list(checks)
        self._ready_error = ready_error

    def checks(self):
        return self._checks

    def ready(self):
        if self._ready_error is not None:
            raise self._ready_error


def test_provision_port_env_missing(monkeypatch):
    monkeypatch.delenv("FORMGATE_TEST_PORT", raising=False)
    api = Api(port_from_env="FORMGATE_TEST_PORT")
    with pytest.raises(ValueError, match="does not exist"):
        api.provision([], LOGGER)


def test_provision_port_env_empty(monkeypatch):
    monkeypatch.setenv("PORT", "")
    api = Api(port_from_env="PORT")
    with pytest.raises(ValueError, match="is empty"):
        api.provision([], LOGGER)


def test_provision_port_env_invalid(monkeypatch):
    monkeypatch.setenv("PORT", "foo")
    api = Api(port_from_env="PORT")
    with pytest.raises(ValueError, match="get int value"):
        api.provision([], LOGGER)


@pytest.mark.parametrize(
    "module, match",
    [
        (_InvalidRouter(), "get routers"),
        (_FailingRouter(), "get routes"),
        (_InvalidProvider(), "get middleware providers"),
        (_FailingProvider(), "get middlewares"),
        (_InvalidChecker(), "get health checkers"),
        (_FailingChecker(), "get health checks"),
    ],
)
def test_provision_module_errors(module, match):
    api = Api()
    with pytest.raises(RuntimeError, match=match):
        api.provision([module], LOGGER)


def test_provision_without_logger():
    api = Api()
    with pytest.raises(ValueError, match="logger"):
        api.provision([], None)


def test_provision_success(monkeypatch):
    monkeypatch.setenv("PORT", "1337")
    priorities = list(MiddlewarePriority)
    modules = [
        _Router([Route()]),
        _Provider([Middleware(priority=priority) for priority in priorities]),
        _Checker(checks=[lambda: None]),
    ]
    api = Api(port_from_env="PORT")
    api.provision(modules, LOGGER)

    assert api.port == 1337
    assert api.middlewares == [Middleware(priority=p) for p in reversed(priorities)]
    assert api.routes == [Route()]
    assert len(api.health_checks) == 1
    assert len(api.ready_functions) == 1
    assert api.logger is LOGGER


def test_provision_sort_keeps_order_of_equal_priorities():
    first = Middleware(handler=_passthrough, priority=MiddlewarePriority.HIGH)
    second = Middleware(handler=_ok, priority=MiddlewarePriority.HIGH)
    api = Api()
    api.provision([_Provider([first, second])], LOGGER)
    assert api.middlewares == [first, second]


@pytest.mark.parametrize(
    "port, root_path, trace_header, routes, middlewares",
    [
        (0, "/foo/", "foo", [], []),
        (65536, "/foo/", "foo", [], []),
        (10, "foo/", "foo", [], []),
        (10, "/foo", "foo", [], []),
        (10, "/foo/", "", [], []),
        (10, "/foo/", "foo", [Route(path="")], []),
        (10, "/foo/", "foo", [Route(path="foo")], []),
        (10, "/foo/", "foo", [Route(path="/foo", is_multipart=True)], []),
        (10, "/foo/", "foo", [Route(path="/foo", method="")], []),
        (10, "/foo/", "foo", [Route(method="POST", path="/foo", handler=None)], []),
        (
            10,
            "/foo/",
            "foo",
            [
                Route(method="POST", path="/foo", handler=_ok),
                Route(method="POST", path="/foo", handler=_ok),
            ],
            [],
        ),
        (10, "/foo/", "foo", [Route(method="GET", path="/health", handler=_ok)], []),
        (10, "/foo/", "foo", [], [Middleware(priority=MiddlewarePriority.HIGH, handler=None)]),
    ],
)
def test_validate_errors(port, root_path, trace_header, routes, middlewares):
    api = Api(port=port, root_path=root_path, trace_header=trace_header)
    api.routes = routes
    api.middlewares = middlewares
    with pytest.raises(ValueError):
        api.validate()


def test_validate_reports_every_setting_problem():
    api = Api(port=0, root_path="foo", trace_header=" ")
    with pytest.raises(ValueError) as info:
        api.validate()
    message = str(info.value)
    assert "port must be more than 1" in message
    assert "root path must start with /" in message
    assert "root path must end with /" in message
    assert "trace header must not be empty" in message


def test_validate_success():
    api = Api(port=10, root_path="/foo/", trace_header="foo")
    api.routes = [
        Route(method="GET", path="/foo", handler=_ok),
        Route(method="GET", path="/forms/foo", handler=_ok, is_multipart=True),
    ]
    api.middlewares = [Middleware(priority=MiddlewarePriority.HIGH, handler=_passthrough)]
    assert api.validate() is None
    assert [route.path for route in api.routes] == ["/foo", "/forms/foo"]


def test_startup_message():
    assert Api(port=3000).startup_message() == "server listening on port 3000"


def _start_api(tmp_path, sample):
    def foo_handler(exchange):
        exchange.get("context").output_paths = [str(sample)]

    def bar_handler(exchange):
        raise RuntimeError("foo")

    api = Api(port=_free_port(), root_path="/", disable_health_check_logging=True)
    api.root_dir = tmp_path / "work"
    api.routes = [
        Route(method="POST", path="/forms/foo", is_multipart=True, disable_logging=True, handler=foo_handler),
        Route(method="POST", path="/forms/bar", is_multipart=True, handler=bar_handler),
    ]
    api.middlewares = [
        Middleware(handler=_passthrough, stack=MiddlewareStack.PRE_ROUTER),
        Middleware(handler=_passthrough, stack=MiddlewareStack.MULTIPART),
        Middleware(handler=_passthrough, stack=MiddlewareStack.DEFAULT),
        Middleware(handler=_passthrough),
    ]
    api.logger = LOGGER
    return api


def test_start_module_not_ready(tmp_path):
    sample = tmp_path / "sample1.txt"
    sample.write_text("foo")
    api = _start_api(tmp_path, sample)
    api.provision([_Checker(), _Checker(ready_error=RuntimeError("not ready"))], LOGGER)
    with pytest.raises(RuntimeError, match="waiting for modules readiness: not ready"):
        api.start()


def test_start_and_handle(tmp_path):
    sample = tmp_path / "sample1.txt"
    sample.write_text("foo")
    api = _start_api(tmp_path, sample)
    api.ready_functions = [lambda: None, lambda: None]
    api.start()
    try:
        health = api.handle(Request(method="GET", uri="/health"))
        assert health.status == 200
        assert json.loads(health.body) == {"status": "up"}

        foo = api.handle(_multipart_request("/forms/foo"))
        assert foo.status == 200
        assert foo.body == b"foo"
        assert "sample1.txt" in foo.headers["Content-Disposition"]
        assert list((tmp_path / "work").iterdir()) == []

        bar = api.handle(_multipart_request("/forms/bar"))
        assert bar.status == 500
        assert bar.body == b"Internal Server Error"
    finally:
        api.stop()


def test_handle_echoes_trace_header():
    api = Api()
    response = api.handle(Request(method="GET", uri="/health", headers={"Gotenberg-Trace": "foo"}))
    assert response.headers["Gotenberg-Trace"] == "foo"


def test_handle_unknown_path_and_method():
    api = Api()
    api.routes = [Route(method="GET", path="/foo", handler=_ok)]
    missing = api.handle(Request(method="GET", uri="/bar"))
    assert missing.status == 404
    assert missing.body == b"Not Found"
    wrong = api.handle(Request(method="POST", uri="/foo"))
    assert wrong.status == 405


def test_handle_with_root_path():
    api = Api(root_path="/api/")

    def handler(exchange):
        exchange.string(200, "bar")

    api.routes = [Route(method="GET", path="/foo", handler=handler)]
    assert api.handle(Request(method="GET", uri="/api/foo")).body == b"bar"
    assert api.handle(Request(method="GET", uri="/api/health")).status == 200
    assert api.handle(Request(method="GET", uri="/foo")).status == 404


def test_handle_runs_stacks_in_order(tmp_path):
    calls = []

    def recording(name):
        def middleware(next_handler):
            def handler(exchange):
                calls.append(name)
                next_handler(exchange)

            return handler

        return middleware

    def handler(exchange):
        calls.append("handler")
        raise RuntimeError("stop")

    api = Api()
    api.root_dir = tmp_path
    api.routes = [Route(method="POST", path="/forms/foo", is_multipart=True, handler=handler)]
    api.middlewares = [
        Middleware(handler=recording("multipart"), stack=MiddlewareStack.MULTIPART),
        Middleware(handler=recording("default"), stack=MiddlewareStack.DEFAULT),
        Middleware(handler=recording("pre"), stack=MiddlewareStack.PRE_ROUTER),
    ]
    response = api.handle(_multipart_request("/forms/foo"))
    assert calls == ["pre", "default", "multipart", "handler"]
    assert response.status == 500


def test_health_down_when_check_fails():
    def database():
        raise RuntimeError("unreachable")

    api = Api()
    api.health_checks = [database]
    response = api.handle(Request(method="GET", uri="/health"))
    assert response.status == 503
    payload = json.loads(response.body)
    assert payload["status"] == "down"
    assert payload["details"]["database"]["error"] == "unreachable"


def test_start_serves_http_and_stop():
    api = Api(port=_free_port())
    api.start()
    try:
        with urllib.request.urlopen(f"http://127.0.0.1:{api.port}/health", timeout=5) as reply:
            assert reply.status == 200
            assert json.loads(reply.read()) == {"status": "up"}
    finally:
        api.stop(5)
    with pytest.raises(urllib.error.URLError):
        urllib.request.urlopen(f"http://127.0.0.1:{api.port}/health", timeout=2)