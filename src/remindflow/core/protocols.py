"""Protocol interfaces for all RemindFlow abstractions.

All collaborator seams use these Protocols: structural typing,
no inheritance required, easy to test with isinstance().
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from remindflow.models.activity import ActivityEvent, ObservedItem
from remindflow.models.audit import AuditEntry
from remindflow.models.notification import Channel, RenderedMessage, SendReceipt
from remindflow.models.policy import EscalationPolicy
from remindflow.models.work_item import WorkItem


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------

@runtime_checkable
class IClock(Protocol):
    """Source of timezone-aware UTC "now"."""

    def now(self) -> datetime: ...


# ---------------------------------------------------------------------------
# Activity Oracle
# ---------------------------------------------------------------------------

@runtime_checkable
class IActivityOracle(Protocol):
    """External source of truth for assignee engagement with an item."""

    async def activity_since(self, item_id: str, since: datetime) -> list[ActivityEvent]: ...

    async def has_recent_activity(self, item_id: str, hours_threshold: float) -> bool: ...


# ---------------------------------------------------------------------------
# Tracking Source
# ---------------------------------------------------------------------------

@runtime_checkable
class ITrackingSource(Protocol):
    """Lists the work items currently known to the tracking system."""

    async def list_items(self) -> list[ObservedItem]: ...


# ---------------------------------------------------------------------------
# Channel Senders
# ---------------------------------------------------------------------------

@runtime_checkable
class IChannelSender(Protocol):
    """One outbound channel (comment, email, SMS, WhatsApp).

    Implementations raise TransientChannelError / PermanentChannelError;
    anything else is classified by the dispatcher.
    """

    channel: Channel

    async def send(self, recipient: str, subject: str | None, body: str) -> SendReceipt: ...


# ---------------------------------------------------------------------------
# Template Renderer
# ---------------------------------------------------------------------------

@runtime_checkable
class ITemplateRenderer(Protocol):
    """Renders a stored template with reminder variables."""

    def render(self, template_id: str, variables: dict[str, Any]) -> RenderedMessage: ...


# ---------------------------------------------------------------------------
# Configuration Source
# ---------------------------------------------------------------------------

@runtime_checkable
class IConfigSource(Protocol):
    """Exposes an immutable EscalationPolicy snapshot."""

    def snapshot(self) -> EscalationPolicy: ...


# ---------------------------------------------------------------------------
# Audit Sink
# ---------------------------------------------------------------------------

@runtime_checkable
class IAuditSink(Protocol):
    """Durable append-only audit storage."""

    def append(self, entry: AuditEntry) -> None: ...


# ---------------------------------------------------------------------------
# Persistence: Work Item Store
# ---------------------------------------------------------------------------

@runtime_checkable
class IItemStore(Protocol):
    """Work item persistence with optimistic concurrency on ``version``."""

    def get(self, item_id: str) -> WorkItem | None: ...

    def create(self, item: WorkItem) -> WorkItem: ...

    def save(self, item: WorkItem, expected_version: int) -> WorkItem: ...

    def list_active(self) -> list[WorkItem]: ...


# ---------------------------------------------------------------------------
# Persistence: Lease Manager
# ---------------------------------------------------------------------------

@runtime_checkable
class ILeaseManager(Protocol):
    """Per-item mutual exclusion across triggers and processes."""

    def acquire(self, item_id: str, ttl_seconds: int) -> str | None: ...

    def release(self, item_id: str, token: str) -> None: ...


# ---------------------------------------------------------------------------
# Persistence: Cache Backend
# ---------------------------------------------------------------------------

@runtime_checkable
class ICacheBackend(Protocol):
    """Redis-compatible cache interface."""

    def get(self, key: str) -> str | None: ...

    def setex(self, key: str, ttl: int, value: str) -> None: ...

    def delete(self, key: str) -> None: ...
