"""Tests for trigger runs: concurrency, exclusion, isolation and lifecycle."""

from __future__ import annotations

import asyncio
import time
from datetime import timedelta

import pytest

from remindflow.core.clock import FixedClock
from remindflow.core.config import AppSettings, OracleConfig, SchedulerConfig
from remindflow.core.exceptions import ConfigurationError, ItemNotFoundError, TemplateNotFoundError
from remindflow.engine.templates import StringTemplateRenderer
from remindflow.models.activity import ObservedItem
from remindflow.models.audit import AuditAction, AuditStatus
from remindflow.models.notification import Channel, SendReceipt
from remindflow.models.work_item import Escalating
from tests.fakes import (
    MemoryActivityOracle,
    MemoryAuditSink,
    MemoryItemStore,
    MemoryTrackingSource,
    RecordingSender,
    at,
    make_contact,
    make_engine,
    make_item,
)

STAGE1 = at(2024, 3, 4, 17, 30)
STAGE2 = at(2024, 3, 5, 17, 0)


def _settings(**scheduler) -> AppSettings:
    values = dict(enabled=False, sync_before_first_stage=False)
    values.update(scheduler)
    return AppSettings(scheduler=SchedulerConfig(**values))


class SlowSender:
    """Comment sender that tracks how many sends run at once."""

    channel = Channel.COMMENT

    def __init__(self, delay: float = 0.02) -> None:
        self.delay = delay
        self.active = 0
        self.max_active = 0
        self.calls = 0

    async def send(self, recipient, subject, body):
        self.calls += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.active -= 1
        return SendReceipt(delivery_id=f"comment-{self.calls}")


class InterferingStore(MemoryItemStore):
    """Simulates another writer changing the item between read and dispatch."""

    def __init__(self) -> None:
        super().__init__()
        self.reads = 0

    def get(self, item_id):
        self.reads += 1
        if self.reads == 2:
            other = super().get(item_id)
            other.reminder.urgent = True
            self.save(other, expected_version=other.version)
        return super().get(item_id)


class SlowReadStore(MemoryItemStore):
    """Store whose first read of ``slow_id`` blocks the calling thread."""

    def __init__(self, slow_id: str, delay: float = 0.3) -> None:
        super().__init__()
        self.slow_id = slow_id
        self.delay = delay
        self._slowed = False

    def get(self, item_id):
        if item_id == self.slow_id and not self._slowed:
            self._slowed = True
            time.sleep(self.delay)
        return super().get(item_id)


class BrokenConfigSource:
    def snapshot(self):
        raise ConfigurationError("stageTimes missing")


class FailingRenderer(StringTemplateRenderer):
    def render(self, template_id, variables):
        if variables["itemName"] == "Card bad":
            raise TemplateNotFoundError(template_id)
        return super().render(template_id, variables)


@pytest.fixture
def clock():
    return FixedClock(STAGE1)


@pytest.fixture
def sink():
    return MemoryAuditSink()


class TestRunStage:
    def test_zero_candidates_is_noop(self, clock):
        engine = make_engine(clock)
        report = asyncio.run(engine.run_stage(1))
        assert report.candidates == 0
        assert not report.aborted

    def test_only_items_owned_by_the_stage_are_processed(self, clock):
        ahead = make_item("card-2")
        ahead.reminder.phase = Escalating(stage=1)
        ahead.reminder.last_reminder_at = STAGE1 - timedelta(days=1)
        engine = make_engine(clock, items=[make_item("card-1"), ahead])
        report = asyncio.run(engine.run_stage(1))
        assert report.candidates == 1
        assert [t.item_id for t in report.transitions] == ["card-1"]

    def test_concurrency_is_bounded(self, clock):
        sender = SlowSender()
        engine = make_engine(
            clock,
            items=[make_item(f"card-{n}") for n in range(6)],
            senders={Channel.COMMENT: sender},
            settings=_settings(max_concurrency=2),
        )
        report = asyncio.run(engine.run_stage(1))
        assert report.dispatched == 6
        assert sender.max_active <= 2

    def test_blocking_store_read_does_not_stall_other_items(self, clock):
        senders = {c: RecordingSender(c) for c in Channel}
        engine = make_engine(
            clock,
            items=[make_item("card-0"), make_item("card-1")],
            senders=senders,
            store=SlowReadStore("card-0"),
            settings=_settings(max_concurrency=2),
        )
        report = asyncio.run(engine.run_stage(1))

        assert report.dispatched == 2
        assert [s[0] for s in senders[Channel.COMMENT].sent] == ["card-1", "card-0"]

    def test_leased_item_is_skipped(self, clock):
        senders = {c: RecordingSender(c) for c in Channel}
        engine = make_engine(clock, items=[make_item()], senders=senders)
        engine.lease_manager.acquire("card-1", 300)

        report = asyncio.run(engine.run_stage(1))

        assert report.conflicts == 1
        assert senders[Channel.COMMENT].calls == 0

    def test_version_change_before_dispatch_aborts_item(self, clock, sink):
        senders = {c: RecordingSender(c) for c in Channel}
        engine = make_engine(
            clock, items=[make_item()], senders=senders, store=InterferingStore(), audit_sink=sink,
        )
        report = asyncio.run(engine.run_stage(1))

        assert report.conflicts == 1
        assert report.dispatched == 0
        assert senders[Channel.COMMENT].calls == 0
        assert [e.action for e in sink.entries] == [AuditAction.STATE_CONFLICT]

    def test_item_failure_does_not_abort_batch(self, clock, sink):
        engine = make_engine(
            clock,
            items=[make_item("card-bad", name="Card bad"), make_item("card-ok")],
            renderer=FailingRenderer(),
            audit_sink=sink,
        )
        report = asyncio.run(engine.run_stage(1))

        assert report.failures == 1
        assert report.dispatched == 1
        errors = [e for e in sink.entries if e.action == AuditAction.ITEM_ERROR]
        assert [e.item_id for e in errors] == ["card-bad"]
        assert errors[0].error_class == "TemplateNotFoundError"

    def test_configuration_error_aborts_only_the_run(self, clock, sink):
        engine = make_engine(clock, items=[make_item()], config_source=BrokenConfigSource(), audit_sink=sink)
        report = asyncio.run(engine.run_stage(1))

        assert report.aborted
        assert "stageTimes" in report.error
        assert sink.entries[0].action == AuditAction.TRIGGER_ABORTED
        assert sink.entries[0].status == AuditStatus.FAILURE

    def test_unknown_stage_aborts(self, clock):
        engine = make_engine(clock, items=[make_item()])
        assert asyncio.run(engine.run_stage(7)).aborted

    def test_sync_runs_before_first_stage(self, clock):
        source = MemoryTrackingSource([
            ObservedItem(item_id="card-9", name="Synced card", assignees=[make_contact()]),
        ])
        senders = {c: RecordingSender(c) for c in Channel}
        engine = make_engine(
            clock, senders=senders, tracking_source=source,
            settings=_settings(sync_before_first_stage=True),
        )
        report = asyncio.run(engine.run_stage(1))
        assert report.dispatched == 1
        assert senders[Channel.COMMENT].sent[0][0] == "card-9"


class TestOracleModes:
    def _escalated(self):
        item = make_item()
        item.reminder.phase = Escalating(stage=1)
        item.reminder.last_reminder_at = STAGE1
        return item

    def test_fail_open_dispatches_and_audits_degraded(self, sink):
        oracle = MemoryActivityOracle()
        oracle.fail = True
        senders = {c: RecordingSender(c) for c in Channel}
        engine = make_engine(
            FixedClock(STAGE2), items=[self._escalated()], oracle=oracle, senders=senders, audit_sink=sink,
        )
        report = asyncio.run(engine.run_stage(2))

        assert report.dispatched == 1
        degraded = [e for e in sink.entries if e.action == AuditAction.ORACLE_DEGRADED]
        assert [e.status for e in degraded] == [AuditStatus.DEGRADED]

    def test_fail_closed_skips_item(self, sink):
        oracle = MemoryActivityOracle()
        oracle.fail = True
        senders = {c: RecordingSender(c) for c in Channel}
        settings = AppSettings(
            scheduler=SchedulerConfig(enabled=False, sync_before_first_stage=False),
            oracle=OracleConfig(failure_mode="fail_closed"),
        )
        engine = make_engine(
            FixedClock(STAGE2), items=[self._escalated()], oracle=oracle, senders=senders,
            settings=settings, audit_sink=sink,
        )
        report = asyncio.run(engine.run_stage(2))

        assert report.dispatched == 0
        assert report.skipped == 1
        assert senders[Channel.EMAIL].calls == 0
        assert sink.entries[0].status == AuditStatus.SKIPPED


class TestEvaluateItem:
    def test_unknown_item(self, clock):
        engine = make_engine(clock)
        with pytest.raises(ItemNotFoundError):
            asyncio.run(engine.evaluate_item("missing"))

    def test_evaluates_regardless_of_stage(self, clock):
        engine = make_engine(clock, items=[make_item()])
        report = asyncio.run(engine.evaluate_item("card-1"))
        assert report.dispatched == 1
        assert report.stage is None


class TestLifecycle:
    def test_start_registers_one_cron_job_per_stage(self, clock):
        engine = make_engine(clock)

        async def scenario():
            engine.scheduler.start()
            try:
                return {job.id: job for job in engine.scheduler._scheduler.get_jobs()}
            finally:
                await engine.scheduler.stop()

        jobs = asyncio.run(scenario())
        assert sorted(jobs) == ["stage-1", "stage-2", "stage-3"]
        fields = {f.name: str(f) for f in jobs["stage-1"].trigger.fields}
        assert (fields["hour"], fields["minute"]) == ("18", "30")
        assert jobs["stage-3"].max_instances == 1
        assert jobs["stage-3"].coalesce
        assert not engine.scheduler.running

    def test_stop_drains_in_flight_and_refuses_queued_items(self, clock):
        sender = SlowSender(delay=0.05)
        engine = make_engine(
            clock,
            items=[make_item(f"card-{n}") for n in range(3)],
            senders={Channel.COMMENT: sender},
            settings=_settings(max_concurrency=1),
        )

        async def scenario():
            run = asyncio.ensure_future(engine.run_stage(1))
            while sender.calls == 0:
                await asyncio.sleep(0.001)
            await engine.scheduler.stop()
            return await run

        report = asyncio.run(scenario())
        assert report.dispatched == 1
        assert report.skipped == 2
        assert sender.calls == 1
        assert asyncio.run(engine.run_stage(1)).aborted
