"""Typed, validated access to the fields and files of a multipart form."""

from __future__ import annotations

from datetime import timedelta
from http import HTTPStatus
from pathlib import Path
from typing import Callable, Iterable, Mapping, Sequence, TypeVar

from .convert import alphanumeric_key, parse_bool, parse_duration, parse_float, parse_int
from .errors import SentinelHttpError, wrap_error

T = TypeVar("T")


def _extension(name: str) -> str:
    base = name.rsplit("/", 1)[-1]
    dot = base.rfind(".")
    return base[dot:] if dot >= 0 else ""


class FormData:
    """Reads form fields and files, collecting every problem for :meth:`validate`.

    Each accessor returns the value it reads. A missing or empty optional
    field gives the default; an invalid one is recorded and gives the type's
    zero value.
    """

    def __init__(
        self,
        values: Mapping[str, Sequence[str]] | None = None,
        files: Mapping[str, str] | None = None,
    ) -> None:
        self._values = dict(values or {})
        self._files = dict(files or {})
        self._errors: list[ValueError] = []

    @property
    def values(self) -> dict[str, Sequence[str]]:
        return self._values

    @property
    def files(self) -> dict[str, str]:
        return self._files

    @property
    def errors(self) -> tuple[ValueError, ...]:
        """The problems found so far."""
        return tuple(self._errors)

    def validate(self) -> None:
        """Raise a wrapped 400 error describing every problem, if any."""
        if not self._errors:
            return
        joined = "; ".join(str(err) for err in self._errors)
        raise wrap_error(
            ValueError(joined),
            SentinelHttpError(int(HTTPStatus.BAD_REQUEST), f"Invalid form data: {joined}"),
        )

    def _fail(self, message: str, cause: BaseException | None = None) -> None:
        err = ValueError(message)
        err.__cause__ = cause
        self._errors.append(err)

    def _raw(self, key: str) -> str:
        values = self._values.get(key)
        return values[0] if values else ""

    def _assign(self, key: str, raw: str, parse: Callable[[str], T], zero: T) -> T:
        try:
            return parse(raw)
        except ValueError as err:
            self._fail(f"form field '{key}' is invalid (got '{raw}', resulting to {err})", err)
            return zero

    def _optional(self, key: str, default: T, parse: Callable[[str], T], zero: T) -> T:
        raw = self._raw(key)
        if raw == "":
            return default
        return self._assign(key, raw, parse, zero)

    def _mandatory(self, key: str, parse: Callable[[str], T], zero: T) -> T:
        raw = self._raw(key)
        if raw == "":
            self._fail(f"form field '{key}' is required")
            return zero
        return self._assign(key, raw, parse, zero)

    def string(self, key: str, default: str = "") -> str:
        return self._optional(key, default, str, "")

    def mandatory_string(self, key: str) -> str:
        return self._mandatory(key, str, "")

    def boolean(self, key: str, default: bool = False) -> bool:
        return self._optional(key, default, parse_bool, False)

    def mandatory_boolean(self, key: str) -> bool:
        return self._mandatory(key, parse_bool, False)

    def integer(self, key: str, default: int = 0) -> int:
        return self._optional(key, default, parse_int, 0)

    def mandatory_integer(self, key: str) -> int:
        return self._mandatory(key, parse_int, 0)

    def floating(self, key: str, default: float = 0.0) -> float:
        return self._optional(key, default, parse_float, 0.0)

    def mandatory_floating(self, key: str) -> float:
        return self._mandatory(key, parse_float, 0.0)

    def duration(self, key: str, default: timedelta = timedelta(0)) -> timedelta:
        return self._optional(key, default, parse_duration, timedelta(0))

    def mandatory_duration(self, key: str) -> timedelta:
        return self._mandatory(key, parse_duration, timedelta(0))

    def _run_custom(self, key: str, value: str, assign: Callable[[str], T]) -> T | None:
        try:
            return assign(value)
        except Exception as err:  # any failure of the caller's binding is a form error
            self._fail(f"form field '{key}' is invalid (got '{value}', resulting to {err})", err)
            return None

    def custom(self, key: str, assign: Callable[[str], T]) -> T | None:
        """Return ``assign(value)``; the value is "" when the field is absent."""
        return self._run_custom(key, self.string(key, ""), assign)

    def mandatory_custom(self, key: str, assign: Callable[[str], T]) -> T | None:
        """Return ``assign(value)`` for a required field, or None if it is missing."""
        value = self.mandatory_string(key)
        if value == "":
            return None
        return self._run_custom(key, value, assign)

    def path(self, filename: str) -> str | None:
        """Return the local path of a form file; its extension may be in any case."""
        for name, path in self._files.items():
            ext = _extension(name)
            lowered = name[: len(name) - len(ext)] + ext.lower()
            if filename in (name, lowered):
                return path
        return None

    def mandatory_path(self, filename: str) -> str | None:
        path = self.path(filename)
        if path is None:
            self._fail(f"form file '{filename}' is required")
        return path

    def _read(self, path: str, filename: str) -> str:
        try:
            return Path(path).read_text(encoding="utf-8", errors="replace")
        except OSError as err:
            self._fail(f"form file '{filename}' is invalid ({err})", err)
            return ""

    def content(self, filename: str, default: str = "") -> str:
        """Return the text of a form file, or ``default`` if there is none."""
        path = self.path(filename)
        if path is None:
            return default
        return self._read(path, filename)

    def mandatory_content(self, filename: str) -> str:
        path = self.mandatory_path(filename)
        if path is None:
            return ""
        return self._read(path, filename)

    def paths(self, extensions: Iterable[str] | None) -> list[str]:
        """Return the paths of files with the given lower-case extensions, naturally sorted."""
        wanted = list(extensions or ())
        found = [
            path
            for name, path in self._files.items()
            for ext in wanted
            if _extension(name).lower() == ext
        ]
        return sorted(found, key=alphanumeric_key)

    def mandatory_paths(self, extensions: Iterable[str] | None) -> list[str]:
        wanted = list(extensions or ())
        found = self.paths(wanted)
        if not found:
            self._fail(f"no form file found for extensions: [{' '.join(wanted)}]")
        return found