"""Activity reconciler: turns oracle evidence into response/reopen transitions."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Literal

from remindflow.core.exceptions import OracleUnavailable
from remindflow.core.protocols import IActivityOracle
from remindflow.models.activity import ActivityEvent
from remindflow.models.work_item import (
    Escalating,
    Idle,
    MaxReached,
    Paused,
    Responded,
    WorkItem,
)

logger = logging.getLogger(__name__)

FailureMode = Literal["fail_open", "fail_closed"]


class ReconcileOutcome(StrEnum):
    NOT_CHECKED = "not_checked"
    NO_ACTIVITY = "no_activity"
    RESPONDED = "responded"
    REOPENED = "reopened"
    DEGRADED = "degraded"  # oracle down, fail-open: proceed
    BLOCKED = "blocked"  # oracle down, fail-closed: skip this cycle


@dataclass(frozen=True)
class ReconcileResult:
    outcome: ReconcileOutcome
    events: tuple[ActivityEvent, ...] = ()
    latency_hours: float | None = None
    error: str = ""

    @property
    def changed(self) -> bool:
        return self.outcome in (ReconcileOutcome.RESPONDED, ReconcileOutcome.REOPENED)


class ActivityReconciler:
    """Queries the activity oracle and applies what it finds to an item.

    Mutates ``item.reminder`` in place; the caller commits.
    """

    def __init__(
        self,
        oracle: IActivityOracle,
        *,
        failure_mode: FailureMode = "fail_open",
        lookback: timedelta = timedelta(hours=72),
        bot_member_id: str = "",
        call_timeout: float = 30.0,
    ) -> None:
        if failure_mode not in ("fail_open", "fail_closed"):
            raise ValueError(f"unknown oracle failure mode {failure_mode!r}")
        self._oracle = oracle
        self.failure_mode = failure_mode
        self._lookback = lookback
        self._bot_member_id = bot_member_id
        self._call_timeout = call_timeout

    async def fetch(self, item_id: str, since: datetime) -> list[ActivityEvent]:
        """Oracle events after ``since``, excluding our own bot's activity.

        Raises:
            OracleUnavailable: on any oracle error or timeout.
        """
        try:
            events = await asyncio.wait_for(
                self._oracle.activity_since(item_id, since), timeout=self._call_timeout,
            )
        except (asyncio.TimeoutError, TimeoutError) as exc:
            raise OracleUnavailable(item_id, f"timed out after {self._call_timeout}s") from exc
        except Exception as exc:
            raise OracleUnavailable(item_id, str(exc)) from exc
        return [
            e for e in events
            if e.occurred_at > since and (not self._bot_member_id or e.actor_id != self._bot_member_id)
        ]

    async def reconcile(self, item: WorkItem, now: datetime) -> ReconcileResult:
        state = item.reminder
        if isinstance(state.phase, Paused) and state.phase.until <= now:
            state.phase = state.phase.resume  # pause expired
        phase = state.phase

        if isinstance(phase, Paused):
            boundary = phase.paused_at
        elif isinstance(phase, Responded):
            boundary = phase.responded_at
        elif isinstance(phase, (Escalating, MaxReached)):
            if state.last_reminder_at is None:
                return ReconcileResult(ReconcileOutcome.NOT_CHECKED)
            boundary = max(state.last_reminder_at, now - self._lookback)
        else:
            # Idle: no reminder in this cycle, nothing to respond to
            return ReconcileResult(ReconcileOutcome.NOT_CHECKED)

        try:
            events = await self.fetch(item.item_id, boundary)
        except OracleUnavailable as exc:
            if self.failure_mode == "fail_closed":
                logger.warning("Activity check failed for %s, skipping (fail-closed): %s", item.item_id, exc)
                return ReconcileResult(ReconcileOutcome.BLOCKED, error=str(exc))
            logger.warning("Activity check failed for %s, proceeding (fail-open): %s", item.item_id, exc)
            return ReconcileResult(ReconcileOutcome.DEGRADED, error=str(exc))

        if not events:
            return ReconcileResult(ReconcileOutcome.NO_ACTIVITY)

        latest = max(e.occurred_at for e in events)
        if item.last_activity_at is None or latest > item.last_activity_at:
            item.last_activity_at = latest

        if isinstance(phase, Paused):
            # The pause still holds; the new cycle starts once it ends
            if isinstance(phase.resume, Idle):
                return ReconcileResult(ReconcileOutcome.NO_ACTIVITY, events=tuple(events))
            state.phase = phase.model_copy(update={"resume": Idle()})
            logger.info("Fresh activity on paused %s; new reminder cycle after %s",
                        item.item_id, phase.until.isoformat())
            return ReconcileResult(ReconcileOutcome.REOPENED, events=tuple(events))

        if isinstance(phase, Responded):
            state.phase = Idle()
            logger.info("Fresh activity on %s after %s; new reminder cycle", item.item_id, boundary.isoformat())
            return ReconcileResult(ReconcileOutcome.REOPENED, events=tuple(events))

        latency = (now - state.last_reminder_at).total_seconds() / 3600
        state.phase = Responded(stage=phase.stage, responded_at=now)
        state.stats.record_response(latency)
        logger.info("Response detected on %s (%.1fh after last reminder)", item.item_id, latency)
        return ReconcileResult(ReconcileOutcome.RESPONDED, events=tuple(events), latency_hours=latency)
