"""In-memory backends for unit tests and local runs: dict-backed fakes."""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timedelta, timezone

from remindflow.core.clock import SystemClock
from remindflow.core.exceptions import AuditSinkError, StateConflict, StoreError
from remindflow.core.protocols import IClock
from remindflow.models.activity import ActivityEvent, ObservedItem
from remindflow.models.audit import AuditEntry
from remindflow.models.notification import Channel, SendReceipt
from remindflow.models.policy import EscalationPolicy
from remindflow.models.work_item import WorkItem

logger = logging.getLogger(__name__)


class MemoryItemStore:
    """Dict-backed IItemStore with the same version check as DynamoDB."""

    def __init__(self) -> None:
        self._items: dict[str, WorkItem] = {}
        self._lock = threading.Lock()

    def get(self, item_id: str) -> WorkItem | None:
        with self._lock:
            item = self._items.get(item_id)
            return item.model_copy(deep=True) if item else None

    def create(self, item: WorkItem) -> WorkItem:
        with self._lock:
            if item.item_id in self._items:
                raise StoreError(f"Item {item.item_id!r} already exists")
            stored = item.model_copy(deep=True, update={"version": 1})
            self._items[item.item_id] = stored
            return stored.model_copy(deep=True)

    def save(self, item: WorkItem, expected_version: int) -> WorkItem:
        with self._lock:
            current = self._items.get(item.item_id)
            if current is None:
                raise StoreError(f"Item {item.item_id!r} does not exist")
            if current.version != expected_version:
                raise StateConflict(
                    item.item_id,
                    f"expected version {expected_version}, found {current.version}",
                )
            stored = item.model_copy(deep=True, update={"version": expected_version + 1})
            self._items[item.item_id] = stored
            return stored.model_copy(deep=True)

    def list_active(self) -> list[WorkItem]:
        with self._lock:
            return [i.model_copy(deep=True) for i in self._items.values() if i.evaluable]


class MemoryAuditSink:
    """List-backed IAuditSink. Set ``fail`` to simulate an outage."""

    def __init__(self) -> None:
        self.entries: list[AuditEntry] = []
        self.fail = False

    def append(self, entry: AuditEntry) -> None:
        if self.fail:
            raise AuditSinkError("audit sink unavailable")
        self.entries.append(entry)


class MemoryLeaseManager:
    """Process-local ILeaseManager with TTL expiry."""

    def __init__(self) -> None:
        self._leases: dict[str, tuple[str, datetime]] = {}
        self._lock = threading.Lock()

    def acquire(self, item_id: str, ttl_seconds: int) -> str | None:
        now = datetime.now(timezone.utc)
        with self._lock:
            held = self._leases.get(item_id)
            if held is not None and held[1] > now:
                return None
            token = uuid.uuid4().hex
            self._leases[item_id] = (token, now + timedelta(seconds=ttl_seconds))
            return token

    def release(self, item_id: str, token: str) -> None:
        with self._lock:
            held = self._leases.get(item_id)
            if held is not None and held[0] == token:
                del self._leases[item_id]


class MemoryCacheBackend:
    """Dict-backed ICacheBackend for unit tests."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._store.get(key)

    def setex(self, key: str, ttl: int, value: str) -> None:
        self._store[key] = value

    def delete(self, key: str) -> None:
        self._store.pop(key, None)


class StaticConfigSource:
    """IConfigSource returning a fixed policy."""

    def __init__(self, policy: EscalationPolicy) -> None:
        self.policy = policy

    def snapshot(self) -> EscalationPolicy:
        return self.policy


class MemoryActivityOracle:
    """Canned-event IActivityOracle. Set ``fail`` to simulate an outage."""

    def __init__(self, clock: IClock | None = None) -> None:
        self._clock = clock or SystemClock()
        self._events: dict[str, list[ActivityEvent]] = {}
        self.fail = False
        self.calls: list[tuple[str, datetime]] = []

    def add_event(self, event: ActivityEvent) -> None:
        self._events.setdefault(event.item_id, []).append(event)

    async def activity_since(self, item_id: str, since: datetime) -> list[ActivityEvent]:
        self.calls.append((item_id, since))
        if self.fail:
            raise ConnectionError("oracle unreachable")
        return [e for e in self._events.get(item_id, []) if e.occurred_at > since]

    async def has_recent_activity(self, item_id: str, hours_threshold: float) -> bool:
        since = self._clock.now() - timedelta(hours=hours_threshold)
        return bool(await self.activity_since(item_id, since))


class MemoryTrackingSource:
    """ITrackingSource serving a mutable list of observed items."""

    def __init__(self, items: list[ObservedItem] | None = None) -> None:
        self.items: list[ObservedItem] = list(items or [])

    async def list_items(self) -> list[ObservedItem]:
        return list(self.items)


class RecordingSender:
    """IChannelSender that records sends instead of delivering them.

    ``failures`` is a queue of exceptions raised by successive calls before
    sends start succeeding.
    """

    def __init__(self, channel: Channel, failures: list[Exception] | None = None) -> None:
        self.channel = channel
        self.failures: list[Exception] = list(failures or [])
        self.always_fail: Exception | None = None
        self.sent: list[tuple[str, str | None, str]] = []
        self.calls = 0

    async def send(self, recipient: str, subject: str | None, body: str) -> SendReceipt:
        self.calls += 1
        if self.always_fail is not None:
            raise self.always_fail
        if self.failures:
            raise self.failures.pop(0)
        self.sent.append((recipient, subject, body))
        logger.debug("Recorded %s send to %s", self.channel, recipient)
        return SendReceipt(success=True, delivery_id=f"{self.channel}-{self.calls}")
