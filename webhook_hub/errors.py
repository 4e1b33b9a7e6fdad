"""Processing error taxonomy.

Every failure that escapes the enrichment and distribution boundaries is
reduced to one ``ErrorKind`` by ``classify_error()``:

- VALIDATION: malformed or incomplete envelope. Permanent, logged and dropped.
- TRANSIENT: timeout, connection reset, retryable upstream status. Ledgered.
- UNKNOWN: anything unclassified. Ledgered like TRANSIENT.
"""

from __future__ import annotations

import asyncio
from enum import Enum

import httpx
import redis.exceptions
from pydantic import ValidationError

# Upstream status codes worth retrying later
RETRYABLE_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}


class ErrorKind(str, Enum):
    """Classification of a processing failure."""

    VALIDATION = "validation"
    TRANSIENT = "transient"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self is not ErrorKind.VALIDATION


class ProcessingError(Exception):
    """A failure with an explicit kind."""

    def __init__(self, kind: ErrorKind, message: str):
        self.kind = kind
        self.message = message
        super().__init__(f"{kind.value}: {message}")


def classify_error(error: BaseException) -> ErrorKind:
    """Map an exception onto an ``ErrorKind``."""
    if isinstance(error, ProcessingError):
        return error.kind

    if isinstance(error, httpx.HTTPStatusError):
        if error.response.status_code in RETRYABLE_STATUS_CODES:
            return ErrorKind.TRANSIENT
        return ErrorKind.VALIDATION

    if isinstance(
        error,
        (
            TimeoutError,
            asyncio.TimeoutError,
            httpx.TimeoutException,
            httpx.TransportError,
            ConnectionError,
            redis.exceptions.ConnectionError,
            redis.exceptions.TimeoutError,
        ),
    ):
        return ErrorKind.TRANSIENT

    if isinstance(error, (ValidationError, ValueError, KeyError, TypeError)):
        return ErrorKind.VALIDATION

    return ErrorKind.UNKNOWN
