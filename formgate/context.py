"""The per-request context of a multipart/form-data request."""

from __future__ import annotations

import logging
import shutil
import tempfile
import time
import unicodedata
import uuid
import warnings
import zipfile
from datetime import timedelta
from email.message import Message
from email.parser import BytesHeaderParser
from email.utils import collapse_rfc2231_value
from http import HTTPStatus
from pathlib import Path
from typing import Iterable

from .errors import (
    ContextAlreadyClosedError,
    OutOfBoundsOutputPathError,
    SentinelHttpError,
    wrap_error,
)
from .formdata import FormData
from .web import Request

OUTPUT_FILENAME_HEADER = "Gotenberg-Output-Filename"

# Extensions whose content is already compressed; archived without deflate.
_COMPRESSED_EXTENSIONS = frozenset({
    ".7z", ".avi", ".br", ".bz2", ".cab", ".docx", ".gif", ".gz", ".jar", ".jpeg",
    ".jpg", ".lz", ".lz4", ".lzma", ".m4v", ".mov", ".mp3", ".mp4", ".mpeg", ".mpg",
    ".png", ".pptx", ".rar", ".sz", ".tbz2", ".tgz", ".tsz", ".txz", ".xlsx", ".xz",
    ".zip", ".zipx",
})


class _MultipartError(Exception):
    pass


class _NotMultipart(_MultipartError):
    pass


class _MissingBoundary(_MultipartError):
    pass


class _UnexpectedEnd(_MultipartError):
    pass


def _extension(path: str) -> str:
    base = path.rsplit("/", 1)[-1]
    dot = base.rfind(".")
    return base[dot:] if dot >= 0 else ""


def _basename(path: str) -> str:
    stripped = path.rstrip("/")
    if not stripped:
        return "/" if path else "."
    return stripped.rsplit("/", 1)[-1]


def _seconds(timeout: float | timedelta) -> float:
    return timeout.total_seconds() if isinstance(timeout, timedelta) else float(timeout)


def _boundary(content_type: str) -> str:
    if not content_type:
        raise _NotMultipart("request Content-Type isn't multipart/form-data")
    header = Message()
    header["Content-Type"] = content_type
    if header.get_content_type() != "multipart/form-data":
        raise _NotMultipart("request Content-Type isn't multipart/form-data")
    boundary = header.get_param("boundary")
    if not boundary:
        raise _MissingBoundary("no multipart boundary param in Content-Type")
    return collapse_rfc2231_value(boundary)


def _parse_multipart(request: Request) -> tuple[dict[str, list[str]], list[tuple[str, bytes]]]:
    """Split a multipart body into field values and uploaded files."""
    delimiter = b"\r\n--" + _boundary(request.content_type).encode("utf-8")
    chunks = (b"\r\n" + request.body).split(delimiter)
    if len(chunks) < 2:
        raise _UnexpectedEnd("multipart: NextPart: EOF")

    values: dict[str, list[str]] = {}
    files: list[tuple[str, bytes]] = []
    parser = BytesHeaderParser()
    for chunk in chunks[1:]:
        if chunk.startswith(b"--"):
            return values, files
        line, sep, rest = chunk.partition(b"\r\n")
        if not sep:
            raise _UnexpectedEnd("multipart: NextPart: EOF")
        if line.strip(b" \t"):
            raise _MultipartError("multipart: expecting a new Part")
        if rest.startswith(b"\r\n"):
            header_block, content = b"", rest[2:]
        else:
            header_block, sep, content = rest.partition(b"\r\n\r\n")
            if not sep:
                raise _UnexpectedEnd("multipart: NextPart: EOF")
        headers = parser.parsebytes(header_block + b"\r\n\r\n")
        if headers.get_content_disposition() != "form-data":
            continue
        name = headers.get_param("name", header="content-disposition")
        name = collapse_rfc2231_value(name) if name else ""
        if not name:
            continue
        filename = headers.get_filename()
        if filename:
            files.append((filename, content))
        else:
            values.setdefault(name, []).append(content.decode("utf-8", errors="replace"))
    raise _UnexpectedEnd("multipart: NextPart: EOF")


class Context:
    """The working directory, form values and files of one request.

    Closing the context (``cancel`` or leaving a ``with`` block) removes its
    working directory.
    """

    def __init__(
        self,
        dir_path: str = "",
        values: dict[str, list[str]] | None = None,
        files: dict[str, str] | None = None,
        logger: logging.Logger | None = None,
        request: Request | None = None,
    ) -> None:
        self.dir_path = dir_path
        self.values: dict[str, list[str]] = values if values is not None else {}
        self.files: dict[str, str] = files if files is not None else {}
        self.logger = logger if logger is not None else logging.getLogger(__name__)
        self.request = request
        self.output_paths: list[str] = []
        self.cancelled = False
        self.deadline: float | None = None
        self._done = False

    @property
    def expired(self) -> bool:
        """Whether the context was cancelled or its time limit has passed."""
        if self._done:
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline

    def form_data(self) -> FormData:
        return FormData(self.values, self.files)

    def generate_path(self, filename: str = "", extension: str = "") -> str:
        """Return a path in the working directory; a UUID stands in for no filename."""
        if not filename:
            filename = str(uuid.uuid4())
        return f"{self.dir_path}/{filename}{extension}"

    def add_output_paths(self, *args: str) -> None:
        """Register files that make up the response."""
        if self.cancelled:
            raise ContextAlreadyClosedError()
        for path in args:
            if not path.startswith(self.dir_path):
                raise OutOfBoundsOutputPathError()
            self.output_paths.append(path)

    def build_output_file(self) -> str:
        """Return the single output path, or a zip archive of all of them."""
        if self.cancelled:
            raise ContextAlreadyClosedError()
        if not self.output_paths:
            raise ValueError("no output path")
        if len(self.output_paths) == 1:
            self.logger.debug("only one output file '%s', skip archive creation", self.output_paths[0])
            return self.output_paths[0]

        archive_path = self.generate_path("", ".zip")
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore", UserWarning)
                with zipfile.ZipFile(archive_path, "x") as archive:
                    for path in self.output_paths:
                        self._archive(archive, Path(path))
        except OSError as err:
            Path(archive_path).unlink(missing_ok=True)
            raise OSError(f"archive output files: {err}") from err

        self.logger.debug("archive '%s' created", archive_path)
        return archive_path

    @staticmethod
    def _archive(archive: zipfile.ZipFile, path: Path) -> None:
        def compression(file: Path) -> int:
            if file.suffix.lower() in _COMPRESSED_EXTENSIONS:
                return zipfile.ZIP_STORED
            return zipfile.ZIP_DEFLATED

        if path.is_dir():
            for child in sorted(path.rglob("*")):
                if child.is_file():
                    name = f"{path.name}/{child.relative_to(path).as_posix()}"
                    archive.write(child, arcname=name, compress_type=compression(child))
            return
        archive.write(path, arcname=path.name, compress_type=compression(path))

    def output_filename(self, output_path: str) -> str:
        """Return the download name: the output's own, or the requested one."""
        filename = self.request.header(OUTPUT_FILENAME_HEADER) if self.request else ""
        if not filename:
            return _basename(output_path)
        return f"{filename}{_extension(output_path)}"

    def cancel(self) -> None:
        """End the context and remove its working directory."""
        if self.cancelled:
            return
        self._done = True
        if not self.dir_path:
            return
        try:
            shutil.rmtree(self.dir_path)
        except FileNotFoundError:
            pass
        except OSError as err:
            self.logger.error("remove context's working directory: %s", err)
            return
        self.logger.debug("'%s' context's working directory removed", self.dir_path)
        self.cancelled = True

    def __enter__(self) -> Context:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cancel()

    def _copy_to_disk(self, filename: str, data: bytes) -> None:
        # Keep only the base name, against directory traversal.
        name = unicodedata.normalize("NFC", _basename(filename))
        path = f"{self.dir_path}/{name}"
        with open(path, "wb") as out:
            out.write(data)
        self.files[name] = path


def new_context(
    request: Request,
    logger: logging.Logger | None = None,
    root_dir: str | Path | None = None,
    timeout: float | timedelta = 30.0,
) -> Context:
    """Parse a multipart/form-data request into a new :class:`Context`.

    Uploaded files are written to a fresh directory under ``root_dir``.
    """
    logger = logger if logger is not None else logging.getLogger(__name__)
    try:
        values, uploads = _parse_multipart(request)
    except _NotMultipart as err:
        raise wrap_error(
            ValueError(f"get multipart form: {err}"),
            SentinelHttpError(
                int(HTTPStatus.UNSUPPORTED_MEDIA_TYPE),
                "Invalid 'Content-Type' header value: want 'multipart/form-data'",
            ),
        ) from err
    except _MissingBoundary as err:
        raise wrap_error(
            ValueError(f"get multipart form: {err}"),
            SentinelHttpError(
                int(HTTPStatus.UNSUPPORTED_MEDIA_TYPE),
                "Invalid 'Content-Type' header value: no boundary",
            ),
        ) from err
    except _UnexpectedEnd as err:
        raise wrap_error(
            ValueError(f"get multipart form: {err}"),
            SentinelHttpError(
                int(HTTPStatus.BAD_REQUEST),
                "Malformed body: it does not match the 'Content-Type' header boundaries",
            ),
        ) from err
    except _MultipartError as err:
        raise ValueError(f"get multipart form: {err}") from err

    dir_path = Path(root_dir if root_dir is not None else tempfile.gettempdir()) / str(uuid.uuid4())
    try:
        dir_path.mkdir(parents=True)
    except OSError as err:
        raise OSError(f"create working directory: {err}") from err

    ctx = Context(str(dir_path), values, {}, logger, request)
    ctx.deadline = time.monotonic() + _seconds(timeout)
    try:
        for filename, data in uploads:
            ctx._copy_to_disk(filename, data)
    except OSError as err:
        ctx.cancel()
        raise OSError(f"copy to disk: {err}") from err

    logger.debug("form fields: %s", ctx.values)
    logger.debug("form files: %s", ctx.files)
    return ctx


def _iter_paths(paths: Iterable[str]) -> list[str]:
    return list(paths)