"""Errors that carry HTTP details, and the sentinel errors of the API."""

from __future__ import annotations


class SentinelHttpError(Exception):
    """The HTTP side of an error: a status and a message safe to send back."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = status
        self.message = message

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return f"SentinelHttpError(status={self.status!r}, message={self.message!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SentinelHttpError):
            return NotImplemented
        return (self.status, self.message) == (other.status, other.message)

    def __hash__(self) -> int:
        return hash((self.status, self.message))

    def http_error(self) -> tuple[int, str]:
        """Return the status and the message."""
        return self.status, self.message


class WrappedError(Exception):
    """An error to log, paired with the sentinel to send as the response."""

    def __init__(self, error: BaseException, sentinel: SentinelHttpError) -> None:
        super().__init__(str(error))
        self.error = error
        self.sentinel = sentinel
        self.__cause__ = error

    def __str__(self) -> str:
        return str(self.error)

    def http_error(self) -> tuple[int, str]:
        """Return the status and the message of the sentinel."""
        return self.sentinel.http_error()

    def matches(self, other: object) -> bool:
        """Tell whether ``other`` is this error's sentinel."""
        return isinstance(other, SentinelHttpError) and self.sentinel == other


def wrap_error(error: BaseException, sentinel: SentinelHttpError) -> WrappedError:
    """Pair ``error``, which gets logged, with ``sentinel``, which gets sent."""
    return WrappedError(error, sentinel)


class _DefaultMessageError(Exception):
    default_message = ""

    def __init__(self, message: str | None = None) -> None:
        super().__init__(self.default_message if message is None else message)


class FilteredError(_DefaultMessageError):
    """A resource was rejected by an allow or deny list."""

    default_message = "filtered"


class MaximumQueueSizeExceededError(_DefaultMessageError):
    """A process queue is full."""

    default_message = "maximum queue size exceeded"


class PdfEngineMethodNotSupportedError(_DefaultMessageError):
    """A PDF engine does not provide the requested operation."""

    default_message = "PDF engine method not supported"


class PdfFormatNotSupportedError(_DefaultMessageError):
    """A PDF engine cannot produce the requested PDF format."""

    default_message = "PDF format not supported"


class ContextAlreadyClosedError(_DefaultMessageError):
    """The request context has already been cancelled."""

    default_message = "context already closed"


class OutOfBoundsOutputPathError(_DefaultMessageError):
    """An output path lies outside the context's working directory."""

    default_message = "output path is not within context's working directory"


class AsyncProcess(_DefaultMessageError):
    """Raised by a handler that carries on with the request in the background."""

    default_message = "async process"