"""Request, response and exchange objects shared by handlers and middlewares."""

from __future__ import annotations

import mimetypes
from dataclasses import dataclass, field
from http import HTTPStatus
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

TEXT_PLAIN_UTF8 = "text/plain; charset=UTF-8"
OCTET_STREAM = "application/octet-stream"

# Built-in table only, so results do not depend on the host's mime files.
_MIME_TYPES = mimetypes.MimeTypes()


def _canonical(name: str) -> str:
    return "-".join(part[:1].upper() + part[1:].lower() for part in name.split("-"))


def _extension(path: str) -> str:
    base = path.rsplit("/", 1)[-1]
    dot = base.rfind(".")
    return base[dot:] if dot >= 0 else ""


def _content_type(path: str) -> str:
    ext = _extension(path).lower()
    guessed = _MIME_TYPES.types_map[True].get(ext) or _MIME_TYPES.types_map[False].get(ext)
    if guessed is None:
        return OCTET_STREAM
    if guessed.startswith("text/"):
        return f"{guessed}; charset=utf-8"
    return guessed


def _quote(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


@dataclass
class Request:
    """An incoming HTTP request; header names are case-insensitive."""

    method: str = "GET"
    uri: str = "/"
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    host: str = ""
    remote_addr: str = ""

    def __post_init__(self) -> None:
        self.headers = {_canonical(name): value for name, value in self.headers.items()}

    def header(self, name: str) -> str:
        """Return the header's value, or "" when it is absent."""
        return self.headers.get(_canonical(name), "")

    @property
    def path(self) -> str:
        return urlsplit(self.uri).path

    @property
    def content_type(self) -> str:
        return self.header("Content-Type")

    @property
    def referer(self) -> str:
        return self.header("Referer")

    @property
    def user_agent(self) -> str:
        return self.header("User-Agent")

    @property
    def content_length(self) -> int:
        return len(self.body)

    @property
    def real_ip(self) -> str:
        """The client address, preferring the proxy headers."""
        forwarded = self.header("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",", 1)[0].strip()
        real = self.header("X-Real-Ip")
        if real:
            return real
        addr = self.remote_addr
        if addr.startswith("["):
            return addr[1:].split("]", 1)[0]
        if addr.count(":") == 1:
            return addr.partition(":")[0]
        return addr


@dataclass
class Response:
    """The response being built for a request."""

    status: int = int(HTTPStatus.OK)
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    committed: bool = False

    def __post_init__(self) -> None:
        self.headers = {_canonical(name): value for name, value in self.headers.items()}

    @property
    def size(self) -> int:
        return len(self.body)


class Exchange:
    """One request and its response, with a store shared along the chain."""

    def __init__(self, request: Request) -> None:
        self.request = request
        self.response = Response()
        self._store: dict[str, Any] = {}

    def get(self, key: str) -> Any:
        """Return the value stored under ``key``, or None."""
        return self._store.get(key)

    def set(self, key: str, value: Any) -> None:
        self._store[key] = value

    def _write(self, status: int, body: bytes) -> None:
        self.response.status = status
        self.response.body = body
        self.response.committed = True

    def string(self, status: int, message: str) -> None:
        """Send ``message`` as plain UTF-8 text."""
        self.response.headers["Content-Type"] = TEXT_PLAIN_UTF8
        self._write(status, message.encode("utf-8"))

    def no_content(self, status: int) -> None:
        self._write(status, b"")

    def attachment(self, path: str, filename: str) -> None:
        """Send the file at ``path`` as a download named ``filename``."""
        data = Path(path).read_bytes()
        self.response.headers["Content-Disposition"] = f'attachment; filename="{_quote(filename)}"'
        self.response.headers["Content-Type"] = _content_type(path)
        self._write(int(HTTPStatus.OK), data)