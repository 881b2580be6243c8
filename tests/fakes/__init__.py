"""Shared test doubles: memory backends plus item/engine builders."""

from __future__ import annotations

from datetime import datetime, timezone

from remindflow.core.clock import FixedClock
from remindflow.core.config import AppSettings, SchedulerConfig
from remindflow.engine.context import ReminderEngine, build_engine
from remindflow.models.activity import ActivityEvent
from remindflow.models.notification import Channel
from remindflow.models.policy import EscalationPolicy
from remindflow.models.work_item import Contact, WorkItem
from remindflow.persistence.memory_backend import (
    MemoryActivityOracle,
    MemoryAuditSink,
    MemoryCacheBackend,
    MemoryItemStore,
    MemoryLeaseManager,
    MemoryTrackingSource,
    RecordingSender,
    StaticConfigSource,
)

__all__ = [
    "MemoryActivityOracle",
    "MemoryAuditSink",
    "MemoryCacheBackend",
    "MemoryItemStore",
    "MemoryLeaseManager",
    "MemoryTrackingSource",
    "RecordingSender",
    "StaticConfigSource",
    "BOT_ID",
    "at",
    "default_policy",
    "make_contact",
    "make_event",
    "make_item",
    "make_engine",
    "no_sleep",
]

BOT_ID = "bot-member"


def at(year: int, month: int, day: int, hour: int = 0, minute: int = 0) -> datetime:
    """Aware UTC datetime shorthand."""
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


def default_policy(**overrides) -> EscalationPolicy:
    values = dict(
        stage_times=["18:30", "18:00", "12:00"],
        stage_day_offsets=[0, 1, 2],
        timezone="Europe/Amsterdam",
        weekend_days=[6, 7],
        max_stages=3,
        min_reminder_interval_hours=12.0,
    )
    values.update(overrides)
    return EscalationPolicy.build(**values)


def make_contact(member_id: str = "m1", **overrides) -> Contact:
    values = dict(
        member_id=member_id,
        username=f"user-{member_id}",
        full_name=f"User {member_id}",
        handle=f"handle-{member_id}",
        email=f"{member_id}@example.com",
        phone="+31600000001",
    )
    values.update(overrides)
    return Contact(**values)


def make_item(item_id: str = "card-1", **overrides) -> WorkItem:
    values = dict(
        item_id=item_id,
        name=f"Card {item_id}",
        url=f"https://tracker.example.com/c/{item_id}",
        board_id="board-1",
        list_id="list-1",
        assignees=[make_contact()],
    )
    values.update(overrides)
    return WorkItem(**values)


def make_event(item_id: str, occurred_at: datetime, actor_id: str = "m1", event_id: str = "") -> ActivityEvent:
    return ActivityEvent(
        event_id=event_id or f"{item_id}-{occurred_at.isoformat()}",
        item_id=item_id,
        occurred_at=occurred_at,
        actor_id=actor_id,
    )


async def no_sleep(seconds: float) -> None:
    return None


def make_engine(
    clock: FixedClock,
    *,
    items: list[WorkItem] | None = None,
    policy: EscalationPolicy | None = None,
    oracle: MemoryActivityOracle | None = None,
    senders: dict[Channel, RecordingSender] | None = None,
    settings: AppSettings | None = None,
    **overrides,
) -> ReminderEngine:
    """Engine over memory backends with one RecordingSender per channel."""
    store = overrides.pop("store", None) or MemoryItemStore()
    for item in items or []:
        store.create(item)
    if settings is None:
        settings = AppSettings(scheduler=SchedulerConfig(enabled=False, sync_before_first_stage=False))
    return build_engine(
        settings,
        clock=clock,
        store=store,
        audit_sink=overrides.pop("audit_sink", MemoryAuditSink()),
        lease_manager=overrides.pop("lease_manager", MemoryLeaseManager()),
        config_source=overrides.pop("config_source", StaticConfigSource(policy or default_policy())),
        oracle=oracle or MemoryActivityOracle(),
        senders=senders if senders is not None else {c: RecordingSender(c) for c in Channel},
        sleep=no_sleep,
        **overrides,
    )
