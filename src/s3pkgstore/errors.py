"""Domain errors and translation of S3 failures into them."""

from __future__ import annotations

from botocore.exceptions import BotoCoreError, ClientError, IncompleteReadError

HTTP_NOT_FOUND = 404
HTTP_CONFLICT = 409
HTTP_INTERNAL_ERROR = 500
HTTP_SERVICE_UNAVAILABLE = 503

_NOT_FOUND_CODES = {"NoSuchKey", "NotFound", "404"}
_CONTENT_MISMATCH_CODES = {"StreamContentLengthMismatch", "IncompleteBody"}
_ABORTED_CODES = {"RequestAbortedError", "RequestAborted"}


class StorageError(Exception):
    """Storage failure carrying an HTTP-style status code."""

    def __init__(self, message: str, *, status_code: int = HTTP_INTERNAL_ERROR) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    def __repr__(self) -> str:
        return f"{type(self).__name__}(status_code={self.status_code}, message={self.message!r})"


class NotFoundError(StorageError):
    def __init__(self, message: str = "no such package available") -> None:
        super().__init__(message, status_code=HTTP_NOT_FOUND)


class ConflictError(StorageError):
    def __init__(self, message: str = "file already exists") -> None:
        super().__init__(message, status_code=HTTP_CONFLICT)


class ServiceUnavailableError(StorageError):
    def __init__(self, message: str = "resource temporarily unavailable") -> None:
        super().__init__(message, status_code=HTTP_SERVICE_UNAVAILABLE)


class PackageParseError(StorageError):
    def __init__(self, message: str = "invalid package document") -> None:
        super().__init__(message, status_code=HTTP_INTERNAL_ERROR)


class RequestAbortedError(Exception):
    """Raised inside a pipeline once its cancellation token is set."""


def is_not_found(error: BaseException) -> bool:
    return isinstance(error, StorageError) and error.status_code == HTTP_NOT_FOUND


def is_conflict(error: BaseException) -> bool:
    return isinstance(error, StorageError) and error.status_code == HTTP_CONFLICT


def is_service_unavailable(error: BaseException) -> bool:
    return isinstance(error, StorageError) and error.status_code == HTTP_SERVICE_UNAVAILABLE


def convert_s3_error(error: BaseException) -> StorageError:
    """Classify an S3 (botocore) failure as a domain error.

    The native error code wins; unknown codes keep the native HTTP status and
    message. Errors that are already domain errors pass through untouched.
    """
    if isinstance(error, StorageError):
        return error

    if isinstance(error, ClientError):
        payload = error.response.get("Error", {})
        code = str(payload.get("Code", ""))
        if code in _NOT_FOUND_CODES:
            return NotFoundError()
        if code in _CONTENT_MISMATCH_CODES:
            return StorageError("content length mismatch")
        if code in _ABORTED_CODES:
            return StorageError("request aborted")

        metadata = error.response.get("ResponseMetadata", {})
        status_code = metadata.get("HTTPStatusCode") or HTTP_INTERNAL_ERROR
        message = str(payload.get("Message") or "") or "unknown error"
        return StorageError(message, status_code=int(status_code))

    if isinstance(error, IncompleteReadError):
        return StorageError("content length mismatch")
    if isinstance(error, RequestAbortedError):
        return StorageError("request aborted")
    if isinstance(error, BotoCoreError):
        return StorageError(str(error) or "unknown error")

    return StorageError(str(error) or "unknown error")
