"""Stage triggers: one APScheduler cron job per escalation stage.

A trigger run takes one policy snapshot, selects the items whose next stage
is the trigger's stage and processes them through a bounded worker pool.
Per-item exclusion relies on a lease plus the store's version check.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from remindflow.core.exceptions import ConfigurationError, ItemNotFoundError, StateConflict
from remindflow.core.protocols import IClock, IConfigSource, IItemStore, ILeaseManager
from remindflow.engine.audit import AuditTrail
from remindflow.engine.policy import target_stage
from remindflow.engine.reconciler import ActivityReconciler, ReconcileOutcome, ReconcileResult
from remindflow.engine.state_machine import ReminderStateMachine, Transition, TransitionKind
from remindflow.engine.sync import ItemSynchronizer
from remindflow.models.audit import AuditAction, AuditStatus
from remindflow.models.policy import EscalationPolicy
from remindflow.models.work_item import WorkItem

logger = logging.getLogger(__name__)


@dataclass
class TriggerReport:
    """Outcome counts of one trigger run or manual evaluation."""

    stage: int | None
    started_at: datetime
    candidates: int = 0
    evaluated: int = 0
    dispatched: int = 0
    responded: int = 0
    skipped: int = 0
    conflicts: int = 0
    failures: int = 0
    aborted: bool = False
    error: str = ""
    transitions: list[Transition] = field(default_factory=list)


class ReminderScheduler:
    def __init__(
        self,
        *,
        store: IItemStore,
        lease_manager: ILeaseManager,
        config_source: IConfigSource,
        clock: IClock,
        reconciler: ActivityReconciler,
        state_machine: ReminderStateMachine,
        audit: AuditTrail,
        synchronizer: ItemSynchronizer | None = None,
        max_concurrency: int = 5,
        lease_ttl_seconds: int = 300,
        shutdown_grace_seconds: float = 60.0,
        misfire_grace_seconds: int = 300,
        sync_before_first_stage: bool = False,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self._store = store
        self._leases = lease_manager
        self._config = config_source
        self._clock = clock
        self._reconciler = reconciler
        self._machine = state_machine
        self._audit = audit
        self._synchronizer = synchronizer
        self._max_concurrency = max_concurrency
        self._lease_ttl = lease_ttl_seconds
        self._shutdown_grace = shutdown_grace_seconds
        self._misfire_grace = misfire_grace_seconds
        self._sync_first = sync_before_first_stage

        self._scheduler: AsyncIOScheduler | None = None
        self._in_flight: set[asyncio.Task] = set()
        self._stopping = False

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    @property
    def stopping(self) -> bool:
        return self._stopping

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Register one cron job per stage and start APScheduler.

        Must be called from inside a running event loop.

        Raises:
            ConfigurationError: if the current policy is invalid.
        """
        policy = self._config.snapshot()
        scheduler = AsyncIOScheduler(timezone=policy.tz)
        for schedule in policy.stages[: policy.max_stages]:
            scheduler.add_job(
                self.run_stage,
                CronTrigger(hour=schedule.at.hour, minute=schedule.at.minute, timezone=policy.tz),
                args=[schedule.stage],
                id=f"stage-{schedule.stage}",
                name=f"Stage {schedule.stage} reminders",
                max_instances=1,
                coalesce=True,
                misfire_grace_time=self._misfire_grace,
                replace_existing=True,
            )
            logger.info("Stage %d trigger scheduled daily at %s %s",
                        schedule.stage, schedule.at.strftime("%H:%M"), policy.timezone)
        self._stopping = False
        scheduler.start()
        self._scheduler = scheduler

    async def stop(self) -> None:
        """Stop triggering, refuse new items and drain in-flight ones."""
        self._stopping = True
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None

        pending = set(self._in_flight)
        if not pending:
            return
        logger.info("Waiting up to %.0fs for %d in-flight items", self._shutdown_grace, len(pending))
        _, unfinished = await asyncio.wait(pending, timeout=self._shutdown_grace)
        if unfinished:
            logger.warning("Cancelling %d items still running after shutdown grace", len(unfinished))
            for task in unfinished:
                task.cancel()
            await asyncio.gather(*unfinished, return_exceptions=True)

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def _snapshot(self, report: TriggerReport) -> EscalationPolicy | None:
        try:
            policy = await asyncio.to_thread(self._config.snapshot)
            if report.stage is not None:
                policy.stage(report.stage)
        except ConfigurationError as exc:
            report.aborted = True
            report.error = str(exc)
            await self._audit.arecord(
                AuditAction.TRIGGER_ABORTED, status=AuditStatus.FAILURE, stage=report.stage,
                error_class="configuration", message=str(exc),
            )
            logger.error("Trigger for stage %s aborted: %s", report.stage, exc)
            return None
        return policy

    async def run_stage(self, stage: int) -> TriggerReport:
        """Process every item whose next stage is ``stage``."""
        report = TriggerReport(stage=stage, started_at=self._clock.now())
        if self._stopping:
            report.aborted = True
            report.error = "shutting down"
            return report

        policy = await self._snapshot(report)
        if policy is None:
            return report

        if stage == 1 and self._sync_first and self._synchronizer is not None:
            try:
                await self._synchronizer.sync()
            except Exception:
                logger.exception("Item sync before stage 1 failed; continuing with stored items")

        now = self._clock.now()
        candidates = [
            item.item_id for item in await asyncio.to_thread(self._store.list_active)
            if target_stage(item, policy, now) == stage
        ]
        report.candidates = len(candidates)
        if not candidates:
            logger.info("Stage %d trigger: no candidate items", stage)
            return report

        await self._process_all(candidates, policy, report)
        logger.info(
            "Stage %d trigger: %d candidates, %d dispatched, %d responded, %d skipped, "
            "%d conflicts, %d failures",
            stage, report.candidates, report.dispatched, report.responded,
            report.skipped, report.conflicts, report.failures,
        )
        return report

    async def evaluate_item(self, item_id: str) -> TriggerReport:
        """Evaluate one item now, regardless of which stage owns it.

        Raises:
            ItemNotFoundError: if the item is not in the store.
        """
        report = TriggerReport(stage=None, started_at=self._clock.now())
        if await asyncio.to_thread(self._store.get, item_id) is None:
            raise ItemNotFoundError(f"Item {item_id!r} not found")
        policy = await self._snapshot(report)
        if policy is None:
            return report
        report.candidates = 1
        await self._process_all([item_id], policy, report)
        return report

    async def _process_all(self, item_ids: list[str], policy: EscalationPolicy, report: TriggerReport) -> None:
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def worker(item_id: str) -> None:
            async with semaphore:
                if self._stopping:
                    report.skipped += 1
                    return
                await self._process_item(item_id, policy, report)

        tasks = [asyncio.ensure_future(worker(item_id)) for item_id in item_ids]
        for task in tasks:
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)
        await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # One item
    # ------------------------------------------------------------------

    async def _process_item(self, item_id: str, policy: EscalationPolicy, report: TriggerReport) -> None:
        token = await asyncio.to_thread(self._leases.acquire, item_id, self._lease_ttl)
        if token is None:
            logger.info("Item %s is leased by another evaluation; skipping", item_id)
            report.conflicts += 1
            return

        try:
            item = await asyncio.to_thread(self._store.get, item_id)
            if item is None:
                report.skipped += 1
                return
            report.evaluated += 1
            transition = await self._evaluate(item, policy)
            report.transitions.append(transition)
            if transition.kind == TransitionKind.ADVANCED:
                report.dispatched += 1
            elif transition.kind == TransitionKind.RESPONDED:
                report.responded += 1
            elif transition.kind == TransitionKind.FAILED:
                report.failures += 1
            else:
                report.skipped += 1
        except StateConflict as exc:
            report.conflicts += 1
            logger.info("%s; skipping this cycle", exc)
            await self._audit.arecord(
                AuditAction.STATE_CONFLICT, item_id=item_id, status=AuditStatus.SKIPPED, message=str(exc),
            )
        except Exception as exc:
            report.failures += 1
            logger.exception("Evaluation of item %s failed", item_id)
            await self._audit.arecord(
                AuditAction.ITEM_ERROR, item_id=item_id, status=AuditStatus.FAILURE,
                error_class=type(exc).__name__, message=str(exc),
            )
        finally:
            try:
                await asyncio.to_thread(self._leases.release, item_id, token)
            except Exception:
                logger.warning("Failed to release lease on %s; it expires in %ds",
                               item_id, self._lease_ttl, exc_info=True)

    async def _evaluate(self, item: WorkItem, policy: EscalationPolicy) -> Transition:
        now = self._clock.now()
        version = item.version
        before = item.model_copy(deep=True)

        result = await self._reconciler.reconcile(item, now)
        await self._audit_reconcile(item, result)
        if result.outcome == ReconcileOutcome.BLOCKED:
            stage = item.reminder.stage
            return Transition(item.item_id, TransitionKind.NOOP, stage, stage, reason="oracle_unavailable")

        decision = self._machine.decide(item, policy, now, result)
        if decision.kind == TransitionKind.DUE:
            current = await asyncio.to_thread(self._store.get, item.item_id)
            if current is None or current.version != version:
                raise StateConflict(item.item_id, "item changed before dispatch")
            transition = await self._machine.execute(item, policy, now, decision)
        else:
            transition = decision
            if decision.kind == TransitionKind.NOOP:
                await self._audit.arecord(
                    AuditAction.DECISION, item_id=item.item_id, status=AuditStatus.SKIPPED,
                    stage=decision.from_stage, message=decision.reason,
                )

        if item != before:
            item.updated_at = now
            await asyncio.to_thread(self._store.save, item, expected_version=version)
        return transition

    async def _audit_reconcile(self, item: WorkItem, result: ReconcileResult) -> None:
        stage = item.reminder.stage
        if result.outcome == ReconcileOutcome.RESPONDED:
            await self._audit.arecord(
                AuditAction.RESPONSE_DETECTED, item_id=item.item_id, stage=stage,
                message=f"Response {result.latency_hours:.1f}h after last reminder",
                latency_hours=result.latency_hours, events=len(result.events),
            )
        elif result.outcome == ReconcileOutcome.REOPENED:
            await self._audit.arecord(
                AuditAction.CYCLE_REOPENED, item_id=item.item_id, stage=stage,
                message="New activity; reminder cycle restarted", events=len(result.events),
            )
        elif result.outcome in (ReconcileOutcome.DEGRADED, ReconcileOutcome.BLOCKED):
            proceeding = result.outcome == ReconcileOutcome.DEGRADED
            await self._audit.arecord(
                AuditAction.ORACLE_DEGRADED, item_id=item.item_id,
                status=AuditStatus.DEGRADED if proceeding else AuditStatus.SKIPPED,
                stage=stage, error_class="oracle_unavailable",
                message=("proceeding without activity check: " if proceeding else "item skipped: ")
                + result.error,
            )
