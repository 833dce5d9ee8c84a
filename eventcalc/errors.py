from __future__ import annotations

import json
import re
from typing import Any, Optional

MISSING_COLUMN_RE = re.compile(r"does not exist|no such column|has no column named", re.IGNORECASE)
INVALID_INTEGER_RE = re.compile(r"invalid input syntax for (?:type )?integer", re.IGNORECASE)
ALREADY_EXISTS_RE = re.compile(r"already exists|unique constraint|duplicate key", re.IGNORECASE)
ABORT_RE = re.compile(r"aborted|AbortError|The user aborted a request", re.IGNORECASE)
NETWORK_RE = re.compile(r"Failed to fetch|connection refused|could not connect|timed out", re.IGNORECASE)


class RemoteError(Exception):
    """Structured failure returned by the remote store."""

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class RequestAborted(RemoteError):
    def __init__(self, message: str = "request aborted") -> None:
        super().__init__(message, code="ABORT_ERR")


class SchemaProbeError(RemoteError):
    pass


class StoreValidationError(ValueError):
    pass


def msg_of(exc: Any) -> str:
    if exc is None:
        return "Unknown error"
    if isinstance(exc, str):
        return exc
    message = getattr(exc, "message", None)
    if message:
        return str(message)
    if isinstance(exc, BaseException):
        return str(exc) or exc.__class__.__name__
    try:
        return json.dumps(exc)
    except (TypeError, ValueError):
        return str(exc)


def is_missing_column(exc: Any) -> bool:
    return bool(MISSING_COLUMN_RE.search(msg_of(exc)))


def is_invalid_integer(exc: Any) -> bool:
    return bool(INVALID_INTEGER_RE.search(msg_of(exc)))


def is_already_exists(exc: Any) -> bool:
    return bool(ALREADY_EXISTS_RE.search(msg_of(exc)))


def is_abort_like(exc: Any) -> bool:
    if isinstance(exc, RequestAborted):
        return True
    return bool(ABORT_RE.search(msg_of(exc)))


def is_network_failure(exc: Any) -> bool:
    return bool(NETWORK_RE.search(msg_of(exc)))
