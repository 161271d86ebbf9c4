from __future__ import annotations
from enum import Enum


class ErrorKind(str, Enum):
    INVALID_INPUT = "INVALID_INPUT"
    NOT_FOUND = "NOT_FOUND"
    BACKEND_ERROR = "BACKEND_ERROR"
    RATE_OR_SIZE_LIMIT = "RATE_OR_SIZE_LIMIT"
    UPSTREAM_MODEL_ERROR = "UPSTREAM_MODEL_ERROR"


class MixmasterError(Exception):
    kind: ErrorKind = ErrorKind.BACKEND_ERROR

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ValidationFailed(MixmasterError):
    """A payload broke a field rule. Always the caller's fault."""

    kind = ErrorKind.INVALID_INPUT


class DuplicateRecordError(ValidationFailed):
    pass


class MessageTooLong(MixmasterError):
    kind = ErrorKind.RATE_OR_SIZE_LIMIT


class RecordNotFound(MixmasterError):
    kind = ErrorKind.NOT_FOUND


class BackendError(MixmasterError):
    """The underlying store was unreachable or rejected the operation."""

    kind = ErrorKind.BACKEND_ERROR


class UpstreamModelError(MixmasterError):
    kind = ErrorKind.UPSTREAM_MODEL_ERROR
