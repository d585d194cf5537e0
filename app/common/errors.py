from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass
from typing import Optional

from common.clamd_protocol import (
    RESP_ERR_SIZE_LIMIT_EXCEEDED,
    RESP_ERR_UNKNOWN_COMMAND,
    SCAN_FOUND_SUFFIX,
    SCAN_PREFIX,
)

DEFAULT_MAX_ERROR_CHARS = 300


class ClamdErrorKind(str, enum.Enum):
    TRANSPORT = "transport"
    UNKNOWN_COMMAND = "unknown_command"
    UNEXPECTED_RESPONSE = "unexpected_response"
    SIZE_LIMIT_EXCEEDED = "size_limit_exceeded"
    VIRUS_FOUND = "virus_found"
    PARSE = "parse"


class ClamAVError(RuntimeError):
    kind: ClamdErrorKind


class ClamdConnectionError(ClamAVError):
    """Dial, read or write failure talking to clamd."""

    kind = ClamdErrorKind.TRANSPORT

    def __init__(self, message: str, *, response: Optional[bytes] = None) -> None:
        super().__init__(message)
        self.response = response


class ClamdTimeoutError(ClamdConnectionError):
    pass


class ClamdStreamError(ClamdConnectionError):
    """INSTREAM payload could not be delivered; ``response`` holds any reply read afterwards."""


class ClamdResponseError(ClamAVError):
    """clamd answered, but the answer is an error condition."""

    message = "error reported by clamav"

    def __init__(self, response: bytes = b"", message: Optional[str] = None) -> None:
        super().__init__(message or self.message)
        self.response = bytes(response)


class ClamdUnknownCommand(ClamdResponseError):
    kind = ClamdErrorKind.UNKNOWN_COMMAND
    message = "unknown command"


class ClamdUnexpectedResponse(ClamdResponseError):
    kind = ClamdErrorKind.UNEXPECTED_RESPONSE
    message = "unexpected response from clamav"


class ClamdSizeLimitExceeded(ClamdResponseError):
    kind = ClamdErrorKind.SIZE_LIMIT_EXCEEDED
    message = "size limit exceeded"


class ClamdVirusFound(ClamdResponseError):
    kind = ClamdErrorKind.VIRUS_FOUND
    message = "file contains potential virus"


class ClamdParseError(ClamAVError):
    kind = ClamdErrorKind.PARSE


def classify_response(response: bytes) -> Optional[ClamdResponseError]:
    """
    Map a NUL-stripped clamd reply to the daemon error it encodes.

    Returns None when the reply is not a known error; the caller then uses the
    bytes as-is. Matching is exact and case-sensitive.
    """
    if response == RESP_ERR_SIZE_LIMIT_EXCEEDED:
        return ClamdSizeLimitExceeded(response)
    if response.startswith(SCAN_PREFIX) and response.endswith(SCAN_FOUND_SUFFIX):
        return ClamdVirusFound(response)
    if response == RESP_ERR_UNKNOWN_COMMAND:
        return ClamdUnknownCommand(response)
    return None


@dataclass(frozen=True)
class ErrorInfo:
    code: str
    message: str
    status_code: int
    log_traceback: bool = False


def _truncate(value: str, *, max_chars: int) -> str:
    s = str(value or "")
    if max_chars <= 0 or len(s) <= max_chars:
        return s
    return s[: max(0, max_chars - 3)] + "..."


def classify_exception(
    exc: BaseException, *, max_error_chars: int = DEFAULT_MAX_ERROR_CHARS
) -> ErrorInfo:
    """Decide the HTTP status and client-facing message for a failed clamd call."""
    if isinstance(exc, (ClamdConnectionError, OSError, asyncio.TimeoutError)):
        return ErrorInfo(
            code="clamav_unreachable",
            message="something wrong happened while communicating with clamav",
            status_code=502,
        )

    if isinstance(exc, ClamdUnknownCommand):
        return ErrorInfo(
            code=exc.kind.value,
            message="unknown command sent to clamav",
            status_code=500,
        )

    if isinstance(exc, ClamdSizeLimitExceeded):
        return ErrorInfo(
            code=exc.kind.value,
            message="clamav: " + str(exc),
            status_code=500,
        )

    # Infected files are a successful scan; the scan route renders them itself.
    if isinstance(exc, ClamdVirusFound):
        return ErrorInfo(code=exc.kind.value, message=str(exc), status_code=200)

    if isinstance(exc, ClamAVError):
        return ErrorInfo(
            code=exc.kind.value,
            message=_truncate(str(exc), max_chars=max_error_chars),
            status_code=500,
        )

    return ErrorInfo(
        code="internal_error",
        message=_truncate(str(exc) or exc.__class__.__name__, max_chars=max_error_chars),
        status_code=500,
        log_traceback=True,
    )
