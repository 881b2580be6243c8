"""RemindFlow exception hierarchy."""

from __future__ import annotations


class RemindFlowError(Exception):
    """Base exception for all RemindFlow errors."""


class ChannelError(RemindFlowError):
    """A notification channel rejected or failed a send."""

    def __init__(
        self,
        message: str,
        *,
        channel: str = "",
        error_class: str = "unknown",
        status: int | None = None,
        code: int | None = None,
    ) -> None:
        self.channel = channel
        self.error_class = error_class
        self.status = status
        self.code = code
        super().__init__(message)


class TransientChannelError(ChannelError):
    """Retryable failure: network, timeout, rate limit, provider 5xx."""


class PermanentChannelError(ChannelError):
    """Non-retryable failure: bad recipient, opted out, unsupported number."""

    def __init__(self, message: str, *, retries_exhausted: bool = False, attempts: int = 0, **kwargs) -> None:
        self.retries_exhausted = retries_exhausted
        self.attempts = attempts  # sends made before giving up
        super().__init__(message, **kwargs)


class OracleUnavailable(RemindFlowError):
    """The activity oracle could not be reached or timed out."""

    def __init__(self, item_id: str, message: str) -> None:
        self.item_id = item_id
        super().__init__(f"Activity oracle unavailable for item {item_id}: {message}")


class ConfigurationError(RemindFlowError):
    """Escalation policy or settings are invalid. Fatal to one trigger run."""


class StateConflict(RemindFlowError):
    """Another writer is evaluating or already advanced the same item."""

    def __init__(self, item_id: str, message: str = "concurrent modification") -> None:
        self.item_id = item_id
        super().__init__(f"State conflict on item {item_id}: {message}")


class ItemNotFoundError(RemindFlowError):
    """Work item does not exist in the store."""


class TemplateNotFoundError(RemindFlowError):
    """No message template registered under the requested id."""


class StoreError(RemindFlowError):
    """Work item store operation failed."""


class CacheError(RemindFlowError):
    """Redis cache operation failed."""


class AuditSinkError(RemindFlowError):
    """Durable audit write failed."""


class LeaseError(RemindFlowError):
    """Lease backend operation failed."""
