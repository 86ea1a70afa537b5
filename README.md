# formgate

`formgate` is the core of a small HTTP gateway. It accepts
`multipart/form-data` requests and saves the uploaded files in a working
directory created for each request. It then runs a handler and sends back the
result. A single output file is sent as it is. Several output files are sent
together as one zip archive. Routes, middlewares and health checks come from
modules that you supply.

It uses only the standard library.

## Install

```
pip install formgate
```

To run the tests:

```
pip install "formgate[test]"
pytest
```

## Modules

### `formgate.api`

`Api` is the server. Its constructor takes these settings:

- `port`
- `port_from_env`: the name of an environment variable that holds the port
- `start_timeout`
- `timeout`
- `root_path`
- `trace_header`
- `disable_health_check_logging`

The two timeouts accept either seconds or a `timedelta`.

- `provision(modules, logger)` collects what the given modules offer.
  - A module is used as a router if it has `routes()`, as a middleware provider
    if it has `middlewares()`, and as a health checker if it has both
    `checks()` and `ready()`. The `Router`, `MiddlewareProvider` and
    `HealthChecker` protocols describe these methods.
  - A module that also has `validate()` is validated first.
  - Middlewares are sorted so that a higher `MiddlewarePriority` comes first.
  - When `port_from_env` is set, the port is read from that environment
    variable. A missing, empty or non-integer value raises `ValueError`.
  - A `logger` of `None` raises `ValueError`.
- `validate()` raises `ValueError` for any of these:
  - a port outside 1–65535;
  - a root path that does not both start and end with `/`;
  - an empty trace header;
  - a route with an empty path, a path without a leading `/`, an empty method,
    no handler, or a path that is already registered (`/health` is reserved);
  - a multipart route whose path does not start with `/forms`;
  - a middleware without a handler.
- `handle(request)` runs a `formgate.web.Request` through the whole
  middleware chain and returns the `formgate.web.Response`, without any
  network.
- `start()` waits, for at most `start_timeout`, until every health checker's
  `ready()` returns. If any of them fails or is still running when the time is
  up, `start()` raises. Otherwise it serves HTTP/1.1 on `port` in a background
  thread.
- `stop(timeout)` shuts the server down. It raises `TimeoutError` if the
  server thread does not end within `timeout`.
- `startup_message()` returns `"server listening on port <port>"`.

`Route(method, path, handler, is_multipart, disable_logging)` describes one
route.

`Middleware(handler, stack, priority)` describes one middleware. The `stack`
is a `MiddlewareStack` value:

- `PRE_ROUTER` runs before routing.
- `DEFAULT` runs on every route.
- `MULTIPART` runs only on multipart routes, after the request context has
  been created.

A handler is a callable that takes an `Exchange` and raises on failure. A
middleware takes the next handler and returns a new handler.

`GET <root_path>health` runs every health check, limited to `timeout`. If all
of them pass, it answers 200 with `{"status": "up"}`. Otherwise it answers 503
with `{"status": "down", "details": {...}}`.

Each route handler runs under a hard time limit of `timeout` plus five
seconds. A handler that runs longer gets a 503 answer.

### `formgate.web`

- `Request` holds the method, URI, headers (case-insensitive through
  `header(name)`), body, host and remote address.
- `Response` holds the status, headers and body.
- `Exchange` joins one request to its response. It has a store, read with
  `get(key)` and written with `set(key, value)`. It has three ways to answer:
  - `string(status, message)` sends UTF-8 plain text;
  - `no_content(status)` sends an empty body;
  - `attachment(path, filename)` sends a file as a download.

The built-in middlewares fill the exchange's store under these keys:

- `"startTime"`
- `"rootPath"`
- `"trace"`
- `"traceHeader"`
- `"logger"`
- `"context"` and `"cancel"` (multipart routes only)

### `formgate.context`

`new_context(request, logger, root_dir, timeout)` parses a multipart request
into a `Context`. It saves each uploaded file under its base name, normalised
to NFC, in a new directory below `root_dir`. When `root_dir` is not given, the
system temporary directory is used. A request that is not multipart, or that
has no boundary, raises an error that is answered with 415. A body that does
not match its boundary is answered with 400.

`Context` has these members:

- `form_data()` returns a `FormData` for the request's fields and files.
- `generate_path(filename, extension)` returns a path inside the working
  directory. It uses a UUID when `filename` is empty.
- `add_output_paths(*paths)` registers the result files. It raises
  `OutOfBoundsOutputPathError` for a path outside the working directory and
  `ContextAlreadyClosedError` once the context is closed.
- `build_output_file()` returns the single output path, or a zip archive of
  all of them.
- `output_filename(output_path)` returns the download name. This is the value
  of the request header named by `OUTPUT_FILENAME_HEADER` plus the output's
  extension. Without that header, it is the output's own file name.
- `cancel()`, or leaving a `with` block, removes the working directory.

### `formgate.formdata`

`FormData(values, files)` reads fields with these accessors:

- `string`
- `boolean`
- `integer`
- `floating`
- `duration`
- `custom`

It reads files with these accessors:

- `path`: file-name extensions match in any case;
- `content`;
- `paths`: the files with the given extensions, in natural order.

Each accessor has a `mandatory_` variant. Optional accessors return their
default when a value is missing or empty. An invalid value, or a missing
mandatory one, is recorded and gives the type's zero value. `validate()`
raises one error for all recorded problems. That error is answered with 400
and the message `Invalid form data: ...`.

### `formgate.convert`

These functions do the parsing and ordering for `FormData`:

- `parse_bool`
- `parse_int`
- `parse_float`
- `parse_duration`: reads values such as `"300ms"` or `"2h45m"`;
- `format_duration`;
- `alphanumeric_key`: a natural-order sort key.

### `formgate.middlewares`

This module holds the built-in middlewares:

- `latency_middleware`
- `root_path_middleware`
- `trace_middleware`
- `logger_middleware`
- `context_middleware`
- `hard_timeout_middleware`

It also holds the central error handler (`http_error_handler`) and
`parse_error`, which chooses the status for an error:

| Error | Status |
| --- | --- |
| `TimeoutError` | 503 |
| `FilteredError` | 403 |
| `MaximumQueueSizeExceededError` | 429 |
| `PdfEngineMethodNotSupportedError` | 501 |
| `PdfFormatNotSupportedError` | 400 |
| an error with `http_error()`, such as a `WrappedError` | the status it reports |
| anything else | 500 |

A multipart handler that raises `AsyncProcess` gets a 204 answer, and its
context stays open.

### `formgate.errors`

`wrap_error(error, SentinelHttpError(status, message))` pairs an internal
error with an HTTP status and message. The internal error is logged. The
status and message are sent to the client.

## Example

```python
import logging

from formgate.api import Api, Route
from formgate.web import Request


class Echo:
    def routes(self):
        def handler(exchange):
            ctx = exchange.get("context")
            form = ctx.form_data()
            name = form.mandatory_string("name")
            form.validate()
            path = ctx.generate_path(name, ".txt")
            with open(path, "w", encoding="utf-8") as fh:
                fh.write(name)
            ctx.add_output_paths(path)

        return [Route(method="POST", path="/forms/echo", handler=handler, is_multipart=True)]


api = Api(port=3000)
api.provision([Echo()], logging.getLogger("gateway"))
api.validate()

response = api.handle(Request(method="GET", uri="/health"))
print(response.status, response.body)  # 200 b'{"status": "up"}'

api.start()
print(api.startup_message())
# ... serve ...
api.stop(5)
```

## What it does not do

- There is no command-line program. You build the `Api` and start it from
  your own code.
- There is no registry of modules and no command-line flags. You pass the
  modules and a logger to `provision()` yourself.
- The server speaks plain HTTP/1.1 only.
- No conversion modules come with the package. The errors they would raise
  (`FilteredError`, `MaximumQueueSizeExceededError`,
  `PdfEngineMethodNotSupportedError`, `PdfFormatNotSupportedError`) are
  defined so that your own handlers can raise them and get the right status.