"""Engine context: every collaborator wired once at process start.

``build_engine`` is the only place that knows which concrete backends,
senders and oracle are in play; everything else receives them by injection.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping

from remindflow.core.clock import SystemClock
from remindflow.core.config import AppSettings
from remindflow.core.exceptions import ConfigurationError, ItemNotFoundError, StateConflict
from remindflow.core.protocols import (
    IActivityOracle,
    IChannelSender,
    IClock,
    IConfigSource,
    IItemStore,
    ILeaseManager,
    ITemplateRenderer,
    ITrackingSource,
)
from remindflow.engine.audit import AuditTrail
from remindflow.engine.dispatcher import NotificationDispatcher
from remindflow.engine.reconciler import ActivityReconciler
from remindflow.engine.scheduler import ReminderScheduler, TriggerReport
from remindflow.engine.state_machine import ReminderStateMachine
from remindflow.engine.sync import ItemSynchronizer, SyncReport
from remindflow.engine.templates import StringTemplateRenderer
from remindflow.models.notification import Channel
from remindflow.models.work_item import WorkItem
from remindflow.persistence import create_backends

logger = logging.getLogger(__name__)


class ReminderEngine:
    """Holds the wired collaborators and exposes the engine's operations."""

    def __init__(
        self,
        *,
        settings: AppSettings,
        config_source: IConfigSource,
        clock: IClock,
        store: IItemStore,
        lease_manager: ILeaseManager,
        audit: AuditTrail,
        dispatcher: NotificationDispatcher,
        reconciler: ActivityReconciler,
        state_machine: ReminderStateMachine,
        scheduler: ReminderScheduler,
        synchronizer: ItemSynchronizer | None = None,
    ) -> None:
        self.settings = settings
        self.config_source = config_source
        self.clock = clock
        self.store = store
        self.lease_manager = lease_manager
        self.audit = audit
        self.dispatcher = dispatcher
        self.reconciler = reconciler
        self.state_machine = state_machine
        self.scheduler = scheduler
        self.synchronizer = synchronizer

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Validate the policy and start the stage triggers (if enabled)."""
        policy = self.config_source.snapshot()
        logger.info(
            "Engine starting: %d stages, max %d, timezone %s, oracle %s",
            len(policy.stages), policy.max_stages, policy.timezone, self.reconciler.failure_mode,
        )
        if self.settings.scheduler.enabled:
            self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        flushed = await asyncio.to_thread(self.audit.flush)
        if flushed:
            logger.info("Flushed %d buffered audit entries", flushed)
        if self.audit.pending:
            logger.error("%d audit entries could not be written before shutdown", self.audit.pending)

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    async def run_stage(self, stage: int) -> TriggerReport:
        return await self.scheduler.run_stage(stage)

    async def evaluate_item(self, item_id: str) -> TriggerReport:
        return await self.scheduler.evaluate_item(item_id)

    async def sync(self) -> SyncReport:
        if self.synchronizer is None:
            raise ConfigurationError("No tracking source configured for item sync")
        return await self.synchronizer.sync()

    # ------------------------------------------------------------------
    # Manual operations
    # ------------------------------------------------------------------

    def get_item(self, item_id: str) -> WorkItem:
        item = self.store.get(item_id)
        if item is None:
            raise ItemNotFoundError(f"Item {item_id!r} not found")
        return item

    def _mutate(self, item_id: str, change: Callable[[WorkItem, datetime], Any]) -> WorkItem:
        """Apply ``change`` under the item's lease and commit it.

        Raises:
            StateConflict: the item is being evaluated or changed concurrently.
            ItemNotFoundError: no such item.
        """
        token = self.lease_manager.acquire(item_id, self.settings.lease.ttl_seconds)
        if token is None:
            raise StateConflict(item_id, "item is being evaluated")
        try:
            item = self.get_item(item_id)
            now = self.clock.now()
            change(item, now)
            item.updated_at = now
            return self.store.save(item, expected_version=item.version)
        finally:
            self.lease_manager.release(item_id, token)

    def pause(self, item_id: str, *, hours: float, reason: str = "") -> WorkItem:
        return self._mutate(
            item_id,
            lambda item, now: self.state_machine.pause(item, now + timedelta(hours=hours), reason, now),
        )

    def resume(self, item_id: str) -> WorkItem:
        return self._mutate(item_id, lambda item, now: self.state_machine.resume(item))

    def mark_urgent(self, item_id: str, reason: str = "") -> WorkItem:
        return self._mutate(item_id, lambda item, now: self.state_machine.mark_urgent(item, reason))

    def clear_urgent(self, item_id: str) -> WorkItem:
        return self._mutate(item_id, lambda item, now: self.state_machine.clear_urgent(item))

    def reset(self, item_id: str, reason: str = "manual reset") -> WorkItem:
        return self._mutate(item_id, lambda item, now: self.state_machine.reset(item, reason))


def build_engine(settings: AppSettings | None = None, **overrides: Any) -> ReminderEngine:
    """Construct a ReminderEngine from settings.

    Keyword overrides replace individual collaborators: ``clock``, ``store``,
    ``audit_sink``, ``lease_manager``, ``config_source``, ``oracle``,
    ``senders`` (mapping of Channel to sender), ``renderer``,
    ``tracking_source`` and ``sleep`` (retry backoff sleeper).

    Raises:
        ConfigurationError: if no activity oracle is given or an override is unknown.
    """
    known = {
        "clock", "store", "audit_sink", "lease_manager", "config_source",
        "oracle", "senders", "renderer", "tracking_source", "sleep",
    }
    unknown = set(overrides) - known
    if unknown:
        raise ConfigurationError(f"Unknown engine overrides: {sorted(unknown)}")

    settings = settings or AppSettings()
    oracle: IActivityOracle | None = overrides.get("oracle")
    if oracle is None:
        raise ConfigurationError("An activity oracle is required to detect responses")
    if settings.dispatch.comment_enabled and not settings.oracle.bot_member_id:
        logger.warning(
            "Comment channel enabled without oracle.bot_member_id; "
            "the engine's own comments will count as responses",
        )

    needs_backends = any(k not in overrides for k in ("store", "audit_sink", "lease_manager", "config_source"))
    backends = create_backends(settings) if needs_backends else (None, None, None, None)
    store: IItemStore = overrides.get("store") or backends[0]
    audit_sink = overrides.get("audit_sink") or backends[1]
    lease_manager: ILeaseManager = overrides.get("lease_manager") or backends[2]
    config_source: IConfigSource = overrides.get("config_source") or backends[3]

    clock: IClock = overrides.get("clock") or SystemClock()
    renderer: ITemplateRenderer = overrides.get("renderer") or StringTemplateRenderer()
    senders: Mapping[Channel, IChannelSender] = overrides.get("senders") or {}
    tracking_source: ITrackingSource | None = overrides.get("tracking_source")
    sleep = overrides.get("sleep") or asyncio.sleep

    audit = AuditTrail(audit_sink, clock)
    dispatcher = NotificationDispatcher.from_config(
        settings.dispatch, senders, audit,
        call_timeout=settings.scheduler.call_timeout_seconds, sleep=sleep,
    )
    reconciler = ActivityReconciler(
        oracle,
        failure_mode=settings.oracle.failure_mode,
        lookback=timedelta(hours=settings.oracle.lookback_hours),
        bot_member_id=settings.oracle.bot_member_id,
        call_timeout=settings.scheduler.call_timeout_seconds,
    )
    state_machine = ReminderStateMachine(dispatcher, renderer, audit)
    synchronizer = None
    if tracking_source is not None:
        synchronizer = ItemSynchronizer(
            tracking_source, store, audit, clock, bot_member_id=settings.oracle.bot_member_id,
        )
    scheduler = ReminderScheduler(
        store=store,
        lease_manager=lease_manager,
        config_source=config_source,
        clock=clock,
        reconciler=reconciler,
        state_machine=state_machine,
        audit=audit,
        synchronizer=synchronizer,
        max_concurrency=settings.scheduler.max_concurrency,
        lease_ttl_seconds=settings.lease.ttl_seconds,
        shutdown_grace_seconds=settings.scheduler.shutdown_grace_seconds,
        misfire_grace_seconds=settings.scheduler.misfire_grace_seconds,
        sync_before_first_stage=settings.scheduler.sync_before_first_stage,
    )
    return ReminderEngine(
        settings=settings,
        config_source=config_source,
        clock=clock,
        store=store,
        lease_manager=lease_manager,
        audit=audit,
        dispatcher=dispatcher,
        reconciler=reconciler,
        state_machine=state_machine,
        scheduler=scheduler,
        synchronizer=synchronizer,
    )
