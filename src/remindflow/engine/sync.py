"""Pull work items from the tracking system into the item store."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from remindflow.core.exceptions import RemindFlowError, StateConflict
from remindflow.core.protocols import IClock, IItemStore, ITrackingSource
from remindflow.engine.audit import AuditTrail
from remindflow.models.activity import ObservedItem
from remindflow.models.audit import AuditAction
from remindflow.models.work_item import Contact, WorkItem

logger = logging.getLogger(__name__)


@dataclass
class SyncReport:
    observed: int = 0
    created: int = 0
    updated: int = 0
    archived: int = 0
    reopened: int = 0
    deactivated: int = 0
    unchanged: int = 0
    failures: int = 0


class ItemSynchronizer:
    """Mirrors tracker items into the store without touching reminder state."""

    def __init__(
        self,
        source: ITrackingSource,
        store: IItemStore,
        audit: AuditTrail,
        clock: IClock,
        *,
        bot_member_id: str = "",
    ) -> None:
        self._source = source
        self._store = store
        self._audit = audit
        self._clock = clock
        self._bot_member_id = bot_member_id

    async def sync(self) -> SyncReport:
        report = SyncReport()
        observed = await self._source.list_items()
        report.observed = len(observed)
        seen: set[str] = set()

        for obs in observed:
            seen.add(obs.item_id)
            try:
                await asyncio.to_thread(self._apply, obs, report)
            except StateConflict:
                logger.info("Item %s changed during sync; refreshed next run", obs.item_id)
                report.unchanged += 1
            except RemindFlowError:
                logger.exception("Failed to sync item %s", obs.item_id)
                report.failures += 1

        # Items the tracker no longer lists stop being evaluated
        for item in await asyncio.to_thread(self._store.list_active):
            if item.item_id in seen:
                continue
            before = item.version
            item.active = False
            item.updated_at = self._clock.now()
            try:
                await asyncio.to_thread(self._store.save, item, expected_version=before)
            except RemindFlowError:
                logger.exception("Failed to deactivate item %s", item.item_id)
                report.failures += 1
                continue
            report.deactivated += 1

        logger.info(
            "Sync done: %d observed, %d created, %d updated, %d archived, %d reopened, %d deactivated",
            report.observed, report.created, report.updated, report.archived, report.reopened,
            report.deactivated,
        )
        return report

    def _assignees(self, obs: ObservedItem) -> list[Contact]:
        if not self._bot_member_id:
            return list(obs.assignees)
        return [c for c in obs.assignees if c.member_id != self._bot_member_id]

    def _apply(self, obs: ObservedItem, report: SyncReport) -> None:
        now = self._clock.now()
        existing = self._store.get(obs.item_id)

        if existing is None:
            if obs.closed:
                return
            item = WorkItem(
                item_id=obs.item_id,
                name=obs.name,
                url=obs.url,
                board_id=obs.board_id,
                list_id=obs.list_id,
                assignees=self._assignees(obs),
                due_date=obs.due_date,
                last_activity_at=obs.last_activity_at,
                created_at=now,
                updated_at=now,
            )
            self._store.create(item)
            self._audit.record(AuditAction.ITEM_CREATED, item_id=item.item_id, message=item.name)
            report.created += 1
            return

        updated = existing.model_copy(deep=True)
        updated.name = obs.name
        updated.url = obs.url
        updated.board_id = obs.board_id
        updated.list_id = obs.list_id
        updated.assignees = self._assignees(obs)
        updated.due_date = obs.due_date
        updated.active = True
        if obs.last_activity_at and (
            updated.last_activity_at is None or obs.last_activity_at > updated.last_activity_at
        ):
            updated.last_activity_at = obs.last_activity_at
        updated.closed = obs.closed

        newly_archived = obs.closed and not existing.archived
        reopened = not obs.closed and existing.archived
        if newly_archived:
            updated.archived = True
        elif reopened:
            updated.archived = False

        if updated == existing:
            report.unchanged += 1
            return

        updated.updated_at = now
        self._store.save(updated, expected_version=existing.version)
        if newly_archived:
            self._audit.record(
                AuditAction.ITEM_ARCHIVED, item_id=updated.item_id, stage=updated.reminder.stage,
                message="Closed in tracking system",
            )
            report.archived += 1
        elif reopened:
            self._audit.record(
                AuditAction.ITEM_REOPENED, item_id=updated.item_id, stage=updated.reminder.stage,
                message="Reopened in tracking system",
            )
            report.reopened += 1
        else:
            report.updated += 1
