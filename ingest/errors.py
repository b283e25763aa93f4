"""
ingest/errors.py

Single tagged error type shared by the ingestion and analytics layers.

Responsibilities
----------------
- Define `ErrorKind`, the discriminator every caller switches on.
- Define `BalanceError`, carrying the kind plus kind-specific fields
  (`status_code`, `is_timeout`, `attempts`, the underlying `cause`).

Conventions
-----------
- Callers branch on ``err.kind``, never on subclass identity.
- ``transient`` tells the retry loop whether another attempt is worthwhile.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    INVALID_RANGE = "invalid_range"
    INVALID_TIME_SCOPE = "invalid_time_scope"
    MALFORMED_PAYLOAD = "malformed_payload"
    FETCH_EXHAUSTED = "fetch_exhausted"
    REQUEST = "request"
    RESPONSE = "response"
    NETWORK_TIMEOUT = "network_timeout"
    NETWORK = "network"
    STORE = "store"


# HTTP statuses worth retrying even though they are 4xx.
RETRYABLE_CLIENT_STATUSES = {408, 429}


class BalanceError(Exception):
    """Failure raised anywhere in the fetch → transform → store → analyse path.

    Attributes:
        kind: What went wrong, as an `ErrorKind`.
        message: Human readable description.
        status_code: Upstream HTTP status for REQUEST/RESPONSE errors.
        is_timeout: True when the transport timed out.
        cause: The underlying exception (the last one for FETCH_EXHAUSTED).
        attempts: Number of fetch attempts made (FETCH_EXHAUSTED only).
        details: Free-form context (dates, scope, record key, ...).
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        status_code: int | None = None,
        is_timeout: bool = False,
        cause: BaseException | None = None,
        attempts: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.kind = ErrorKind(kind)
        self.message = message
        self.status_code = status_code
        self.is_timeout = is_timeout or self.kind is ErrorKind.NETWORK_TIMEOUT
        self.cause = cause
        self.attempts = attempts
        self.details = dict(details or {})

    @property
    def transient(self) -> bool:
        """Whether retrying the same call could plausibly succeed."""
        if self.kind in (ErrorKind.NETWORK, ErrorKind.NETWORK_TIMEOUT, ErrorKind.RESPONSE):
            return True
        if self.kind is ErrorKind.REQUEST:
            return self.status_code in RETRYABLE_CLIENT_STATUSES
        return False

    def to_dict(self) -> dict[str, Any]:
        """Flatten the error for structured results and log lines."""
        out: dict[str, Any] = {"kind": self.kind.value, "message": self.message}
        if self.status_code is not None:
            out["status_code"] = self.status_code
        if self.is_timeout:
            out["is_timeout"] = True
        if self.attempts is not None:
            out["attempts"] = self.attempts
        if self.cause is not None:
            out["cause"] = str(self.cause)
        if self.details:
            out["details"] = self.details
        return out

    def __repr__(self) -> str:
        return f"BalanceError(kind={self.kind.value!r}, message={self.message!r})"
