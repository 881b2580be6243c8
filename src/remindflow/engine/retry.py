"""Declarative retry policy shared by every channel.

Provider failures are first classified into an ``ErrorClass``; the class
alone decides whether a send is retried and how long to back off.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import StrEnum

from remindflow.core.exceptions import ChannelError, TransientChannelError


class ErrorClass(StrEnum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    INVALID_RECIPIENT = "invalid_recipient"
    OPTED_OUT = "opted_out"
    UNSUPPORTED_DESTINATION = "unsupported_destination"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class RetryRule:
    retryable: bool
    backoff_multiplier: float = 1.0


# Provider error codes (Twilio) that will never succeed on retry
INVALID_RECIPIENT_CODES = frozenset({21211, 21614})
OPTED_OUT_CODES = frozenset({21610})
UNSUPPORTED_DESTINATION_CODES = frozenset({21612, 30007, 30008, 63016, 63017, 63018})

NETWORK_MARKERS = ("ECONNRESET", "ENOTFOUND", "ECONNREFUSED", "ETIMEDOUT", "ECONNABORTED")

_CLASS_VALUES = frozenset(e.value for e in ErrorClass)

DEFAULT_RULES: dict[ErrorClass, RetryRule] = {
    ErrorClass.NETWORK: RetryRule(retryable=True),
    ErrorClass.TIMEOUT: RetryRule(retryable=True),
    ErrorClass.RATE_LIMITED: RetryRule(retryable=True, backoff_multiplier=2.0),
    ErrorClass.SERVER_ERROR: RetryRule(retryable=True),
    ErrorClass.INVALID_RECIPIENT: RetryRule(retryable=False),
    ErrorClass.OPTED_OUT: RetryRule(retryable=False),
    ErrorClass.UNSUPPORTED_DESTINATION: RetryRule(retryable=False),
    ErrorClass.UNKNOWN: RetryRule(retryable=False),
}


@dataclass(frozen=True)
class RetryPolicy:
    """``errorClass -> {retryable, backoff}`` table plus the attempt budget."""

    retry_attempts: int = 3
    backoff_base: float = 1.0
    rules: dict[ErrorClass, RetryRule] = field(default_factory=lambda: dict(DEFAULT_RULES))

    def rule(self, error_class: ErrorClass) -> RetryRule:
        return self.rules.get(error_class, self.rules[ErrorClass.UNKNOWN])

    def should_retry(self, error_class: ErrorClass, retries_done: int) -> bool:
        return self.rule(error_class).retryable and retries_done < self.retry_attempts

    def backoff(self, error_class: ErrorClass, retries_done: int) -> float:
        """Seconds to wait before retry number ``retries_done + 1``."""
        return self.backoff_base * (2 ** retries_done) * self.rule(error_class).backoff_multiplier


def classify_provider_error(exc: BaseException) -> ErrorClass:
    """Map a raw or already-classified provider failure to an ErrorClass."""
    if isinstance(exc, ChannelError) and exc.error_class in _CLASS_VALUES:
        declared = ErrorClass(exc.error_class)
        if declared is not ErrorClass.UNKNOWN:
            return declared
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ErrorClass.TIMEOUT

    code = getattr(exc, "code", None)
    if isinstance(code, int):
        if code in INVALID_RECIPIENT_CODES:
            return ErrorClass.INVALID_RECIPIENT
        if code in OPTED_OUT_CODES:
            return ErrorClass.OPTED_OUT
        if code in UNSUPPORTED_DESTINATION_CODES:
            return ErrorClass.UNSUPPORTED_DESTINATION

    status = getattr(exc, "status", None)
    if isinstance(status, int):
        if status == 429:
            return ErrorClass.RATE_LIMITED
        if 500 <= status < 600:
            return ErrorClass.SERVER_ERROR

    if isinstance(exc, ConnectionError) or any(m in str(exc) for m in NETWORK_MARKERS):
        return ErrorClass.NETWORK

    # Sender declared the failure transient without saying why
    if isinstance(exc, TransientChannelError):
        return ErrorClass.NETWORK
    return ErrorClass.UNKNOWN
