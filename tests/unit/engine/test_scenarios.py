"""End-to-end reminder cycles over memory backends and a fixed clock."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from remindflow.core.clock import FixedClock
from remindflow.engine.state_machine import TransitionKind
from remindflow.models.audit import AuditAction
from remindflow.models.notification import Channel
from remindflow.models.work_item import Escalating, Idle, MaxReached, Paused, Responded
from tests.fakes import (
    MemoryActivityOracle,
    MemoryAuditSink,
    RecordingSender,
    at,
    make_engine,
    make_event,
    make_item,
)

# Europe/Amsterdam is UTC+1 in early March 2024; Monday 4 March starts the cycle
STAGE1 = at(2024, 3, 4, 17, 30)  # Mon 18:30 local
STAGE2 = at(2024, 3, 5, 17, 0)  # Tue 18:00 local
STAGE3 = at(2024, 3, 6, 11, 0)  # Wed 12:00 local
NEXT_DAY = at(2024, 3, 7, 11, 0)  # Thu 12:00 local


@pytest.fixture
def clock():
    return FixedClock(STAGE1)


@pytest.fixture
def oracle():
    return MemoryActivityOracle()


@pytest.fixture
def senders():
    return {c: RecordingSender(c) for c in Channel}


@pytest.fixture
def sink():
    return MemoryAuditSink()


@pytest.fixture
def engine(clock, oracle, senders, sink):
    return make_engine(clock, items=[make_item()], oracle=oracle, senders=senders, audit_sink=sink)


def _run(engine, clock, when, stage):
    clock.set(when)
    return asyncio.run(engine.run_stage(stage))


class TestResponseScenario:
    def test_response_before_third_stage_halts_escalation(self, engine, clock, oracle, senders):
        report = _run(engine, clock, STAGE1, 1)
        assert report.dispatched == 1
        item = engine.get_item("card-1")
        assert item.reminder.stage == 1
        assert item.reminder.last_channel == Channel.COMMENT

        report = _run(engine, clock, STAGE2, 2)
        assert report.dispatched == 1
        item = engine.get_item("card-1")
        assert item.reminder.phase == Escalating(stage=2)
        assert item.reminder.last_channel == Channel.EMAIL

        oracle.add_event(make_event("card-1", at(2024, 3, 6, 9, 0)))
        report = _run(engine, clock, STAGE3, 3)
        assert report.responded == 1
        assert report.dispatched == 0

        item = engine.get_item("card-1")
        assert item.reminder.has_response
        assert item.reminder.response_at == STAGE3
        assert item.reminder.stats.total_responses == 1
        assert item.reminder.stats.avg_response_hours == pytest.approx(18.0)
        assert senders[Channel.SMS].calls == 0
        assert senders[Channel.WHATSAPP].calls == 0

        # The item now belongs to the first stage; stage 3 has nothing to do
        report = _run(engine, clock, STAGE3, 3)
        assert report.candidates == 0

    def test_responded_item_stays_quiet_until_new_activity(self, engine, clock, oracle, senders):
        _run(engine, clock, STAGE1, 1)
        oracle.add_event(make_event("card-1", at(2024, 3, 5, 8, 0)))
        _run(engine, clock, STAGE2, 2)
        assert isinstance(engine.get_item("card-1").reminder.phase, Responded)

        report = _run(engine, clock, at(2024, 3, 5, 17, 30), 1)
        assert report.dispatched == 0
        assert senders[Channel.COMMENT].calls == 1


class TestMaxStagesScenario:
    def test_no_response_reaches_max_and_goes_quiet(self, engine, clock, senders, sink):
        _run(engine, clock, STAGE1, 1)
        _run(engine, clock, STAGE2, 2)
        report = _run(engine, clock, STAGE3, 3)
        assert report.dispatched == 1
        item = engine.get_item("card-1")
        assert item.reminder.phase == MaxReached(stage=3)
        assert item.reminder.stats.total_reminders == 3

        sent_before = {c: s.calls for c, s in senders.items()}
        for stage, when in ((3, NEXT_DAY), (2, at(2024, 3, 7, 17, 0)), (1, at(2024, 3, 7, 17, 30))):
            report = _run(engine, clock, when, stage)
            assert report.dispatched == 0
        assert {c: s.calls for c, s in senders.items()} == sent_before

        skipped = [e for e in sink.entries if e.action == AuditAction.DECISION and e.message == "max_reached"]
        assert skipped

    def test_reset_starts_a_new_cycle(self, engine, clock, senders):
        _run(engine, clock, STAGE1, 1)
        _run(engine, clock, STAGE2, 2)
        _run(engine, clock, STAGE3, 3)

        clock.set(NEXT_DAY)
        item = engine.reset("card-1")
        assert item.reminder.phase == Idle()

        report = _run(engine, clock, at(2024, 3, 7, 17, 30), 1)
        assert report.dispatched == 1
        assert senders[Channel.COMMENT].calls == 2

    def test_activity_after_max_is_a_response(self, engine, clock, oracle):
        _run(engine, clock, STAGE1, 1)
        _run(engine, clock, STAGE2, 2)
        _run(engine, clock, STAGE3, 3)
        oracle.add_event(make_event("card-1", at(2024, 3, 7, 9, 0)))
        report = _run(engine, clock, NEXT_DAY, 3)
        assert report.responded == 1
        assert engine.get_item("card-1").reminder.has_response


class TestIdempotence:
    def test_repeated_trigger_sends_once(self, engine, clock, senders):
        first = _run(engine, clock, STAGE1, 1)
        second = _run(engine, clock, STAGE1, 1)
        assert first.dispatched == 1
        assert second.dispatched == 0
        assert senders[Channel.COMMENT].calls == 1

    def test_manual_evaluation_within_interval_is_noop(self, engine, clock, senders):
        _run(engine, clock, STAGE1, 1)
        report = asyncio.run(engine.evaluate_item("card-1"))
        assert report.transitions[0].kind == TransitionKind.NOOP
        assert report.transitions[0].reason == "min_interval"
        assert senders[Channel.COMMENT].calls == 1
        assert senders[Channel.EMAIL].calls == 0


class TestWeekend:
    def test_weekend_trigger_skips_unless_urgent(self, engine, clock, senders):
        saturday = at(2024, 3, 9, 17, 30)
        assert _run(engine, clock, saturday, 1).dispatched == 0

        engine.mark_urgent("card-1", "board escalation")
        assert _run(engine, clock, saturday, 1).dispatched == 1
        assert senders[Channel.COMMENT].calls == 1


class TestPause:
    def test_paused_item_is_skipped_until_pause_ends(self, engine, clock, senders):
        clock.set(STAGE1)
        engine.pause("card-1", hours=30, reason="holiday")
        assert _run(engine, clock, STAGE1, 1).dispatched == 0

        # Pause ends Tuesday 23:30 UTC; the Wednesday stage 1 run goes out
        assert _run(engine, clock, at(2024, 3, 6, 17, 30), 1).dispatched == 1
        assert senders[Channel.COMMENT].calls == 1

    def test_activity_during_pause_does_not_lift_it(self, engine, clock, oracle, senders):
        engine.pause("card-1", hours=48, reason="holiday")
        oracle.add_event(make_event("card-1", STAGE1 + timedelta(minutes=30)))

        report = _run(engine, clock, STAGE1 + timedelta(hours=1), 1)

        assert report.dispatched == 0
        assert senders[Channel.COMMENT].calls == 0
        assert isinstance(engine.get_item("card-1").reminder.phase, Paused)

    def test_activity_during_pause_restarts_cycle_after_it_ends(self, engine, clock, oracle, senders, sink):
        _run(engine, clock, STAGE1, 1)
        clock.set(STAGE1 + timedelta(minutes=1))
        engine.pause("card-1", hours=48, reason="holiday")
        oracle.add_event(make_event("card-1", STAGE1 + timedelta(minutes=30)))

        report = _run(engine, clock, STAGE2, 2)
        assert report.dispatched == 0
        assert senders[Channel.EMAIL].calls == 0
        phase = engine.get_item("card-1").reminder.phase
        assert isinstance(phase, Paused) and phase.resume == Idle()
        assert any(e.action == AuditAction.CYCLE_REOPENED for e in sink.entries)

        # Pause ends Wednesday 17:31 UTC; Thursday's stage 1 run starts the new cycle
        report = _run(engine, clock, at(2024, 3, 7, 17, 30), 1)
        assert report.dispatched == 1
        assert senders[Channel.COMMENT].calls == 2
        assert engine.get_item("card-1").reminder.phase == Escalating(stage=1)

    def test_resume_clears_pause(self, engine, clock):
        engine.pause("card-1", hours=48, reason="holiday")
        engine.resume("card-1")
        assert _run(engine, clock, STAGE1, 1).dispatched == 1
