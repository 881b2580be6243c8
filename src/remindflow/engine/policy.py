"""Escalation policy evaluator: pure eligibility rules, no I/O.

All calendar logic (weekends, trigger times, pauses, intervals) lives here so
the state machine and scheduler never re-derive it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

from remindflow.models.policy import EscalationPolicy
from remindflow.models.work_item import MaxReached, Paused, Responded, WorkItem


class Ineligible(StrEnum):
    INACTIVE = "inactive"
    RESPONDED = "responded"
    PAUSED = "paused"
    WEEKEND = "weekend"
    MAX_REACHED = "max_reached"
    MIN_INTERVAL = "min_interval"
    BEFORE_TRIGGER_TIME = "before_trigger_time"


@dataclass(frozen=True)
class Eligibility:
    eligible: bool
    reason: Ineligible | None = None

    def __bool__(self) -> bool:
        return self.eligible


ELIGIBLE = Eligibility(True)


def is_weekend(policy: EscalationPolicy, now: datetime) -> bool:
    """True if ``now`` falls on a weekend day in the policy's timezone."""
    return now.astimezone(policy.tz).isoweekday() in policy.weekend_days


def stage_trigger_reached(policy: EscalationPolicy, stage: int, now: datetime) -> bool:
    """True once the local time of day has reached ``stage``'s trigger time."""
    schedule = policy.stage(stage)
    local = now.astimezone(policy.tz)
    return (local.hour, local.minute) >= (schedule.at.hour, schedule.at.minute)


def evaluate(item: WorkItem, policy: EscalationPolicy, now: datetime) -> Eligibility:
    """Decide whether ``item`` may receive its next reminder at ``now``."""
    if not item.evaluable:
        return Eligibility(False, Ineligible.INACTIVE)

    state = item.reminder
    phase = state.phase
    if isinstance(phase, Paused) and phase.until > now:
        return Eligibility(False, Ineligible.PAUSED)

    phase = state.effective_phase(now)
    if isinstance(phase, Responded):
        return Eligibility(False, Ineligible.RESPONDED)

    if is_weekend(policy, now) and not (state.urgent or policy.allow_urgent_override):
        return Eligibility(False, Ineligible.WEEKEND)

    if isinstance(phase, MaxReached) or phase.stage >= policy.max_stages:
        return Eligibility(False, Ineligible.MAX_REACHED)

    if state.last_reminder_at is not None:
        if now - state.last_reminder_at < policy.min_reminder_interval:
            return Eligibility(False, Ineligible.MIN_INTERVAL)
    elif not stage_trigger_reached(policy, phase.stage + 1, now):
        return Eligibility(False, Ineligible.BEFORE_TRIGGER_TIME)

    return ELIGIBLE


def is_eligible(item: WorkItem, policy: EscalationPolicy, now: datetime) -> bool:
    return evaluate(item, policy, now).eligible


def target_stage(item: WorkItem, policy: EscalationPolicy, now: datetime) -> int:
    """The stage trigger responsible for ``item`` in its current phase.

    Responded items belong to the first stage (that is where a reopened
    cycle restarts); MaxReached items stay with the last stage so fresh
    activity on them is still reconciled.
    """
    phase = item.reminder.effective_phase(now)
    if isinstance(phase, Paused):
        phase = phase.resume
    if isinstance(phase, Responded):
        return 1
    return min(phase.stage + 1, policy.max_stages)
