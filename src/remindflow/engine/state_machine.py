"""Reminder state machine: next transition for one item, and its execution.

Phases: Idle -> Escalating(n) -> MaxReached; any active phase -> Responded
on detected activity; Responded/Paused -> Idle on fresh activity (new cycle).
Calendar rules are delegated to ``engine.policy``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from remindflow.core.protocols import ITemplateRenderer
from remindflow.engine import policy as policy_rules
from remindflow.engine.audit import AuditTrail
from remindflow.engine.dispatcher import NotificationDispatcher
from remindflow.engine.reconciler import ReconcileOutcome, ReconcileResult
from remindflow.engine.templates import build_variables, template_id_for
from remindflow.models.audit import AuditAction, AuditStatus
from remindflow.models.notification import Channel, Delivery, NotificationAttempt
from remindflow.models.policy import EscalationPolicy
from remindflow.models.work_item import (
    Escalating,
    Idle,
    MaxReached,
    Paused,
    Responded,
    WorkItem,
)

logger = logging.getLogger(__name__)


class TransitionKind(StrEnum):
    NOOP = "noop"
    DUE = "due"
    ADVANCED = "advanced"
    FAILED = "failed"
    SKIPPED = "skipped"
    RESPONDED = "responded"


@dataclass(frozen=True)
class Transition:
    item_id: str
    kind: TransitionKind
    from_stage: int
    to_stage: int
    reason: str = ""
    channel: Channel | None = None
    attempts: tuple[NotificationAttempt, ...] = field(default=())

    @property
    def dispatched(self) -> bool:
        return self.kind == TransitionKind.ADVANCED


class ReminderStateMachine:
    """Computes and applies reminder transitions for single items."""

    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        renderer: ITemplateRenderer,
        audit: AuditTrail,
    ) -> None:
        self._dispatcher = dispatcher
        self._renderer = renderer
        self._audit = audit

    # ------------------------------------------------------------------
    # Decision
    # ------------------------------------------------------------------

    def decide(
        self,
        item: WorkItem,
        policy: EscalationPolicy,
        now: datetime,
        reconcile: ReconcileResult | None = None,
    ) -> Transition:
        """Decide what should happen to ``item`` at ``now``. No side effects."""
        stage = item.reminder.stage
        if reconcile is not None and reconcile.outcome == ReconcileOutcome.RESPONDED:
            return Transition(item.item_id, TransitionKind.RESPONDED, stage, stage, reason="response detected")

        verdict = policy_rules.evaluate(item, policy, now)
        if not verdict:
            return Transition(item.item_id, TransitionKind.NOOP, stage, stage, reason=verdict.reason.value)
        return Transition(item.item_id, TransitionKind.DUE, stage, stage + 1)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(
        self, item: WorkItem, policy: EscalationPolicy, now: datetime, decision: Transition,
    ) -> Transition:
        """Dispatch the channel plan of a DUE decision and apply the outcome.

        Mutates ``item.reminder`` on success; the caller commits.
        """
        if decision.kind != TransitionKind.DUE:
            return decision

        stage = decision.to_stage
        schedule = policy.stage(stage)

        primary, secondary = await asyncio.gather(
            self._send_channels(item, schedule.primary, stage, now),
            self._send_channels(item, schedule.secondary, stage, now),
        )
        attempts = tuple(a for results in primary.values() for a in results) + tuple(
            a for results in secondary.values() for a in results
        )

        if not attempts:
            await self._audit.arecord(
                AuditAction.DECISION, item_id=item.item_id, status=AuditStatus.SKIPPED, stage=stage,
                message=f"No assignee reachable on stage {stage} channels",
            )
            logger.info("Item %s has no reachable assignee for stage %d", item.item_id, stage)
            return Transition(item.item_id, TransitionKind.SKIPPED, decision.from_stage,
                              decision.from_stage, reason="no_recipients")

        delivered_channel = self._first_delivered(primary) if primary else None
        if delivered_channel is None and not any(primary.values()):
            # Nobody reachable on the primary channel: secondary decides
            delivered_channel = self._first_delivered(secondary)

        if delivered_channel is None:
            await self._audit.arecord(
                AuditAction.STAGE_FAILED, item_id=item.item_id, status=AuditStatus.FAILURE, stage=stage,
                message=f"Stage {stage} reminder could not be delivered",
                failed=[a.recipient for a in attempts],
            )
            return Transition(item.item_id, TransitionKind.FAILED, decision.from_stage,
                              decision.from_stage, reason="delivery_failed", attempts=attempts)

        state = item.reminder
        state.phase = MaxReached(stage=stage) if stage >= policy.max_stages else Escalating(stage=stage)
        state.last_reminder_at = now
        state.last_channel = delivered_channel
        state.stats.total_reminders += 1
        await self._audit.arecord(
            AuditAction.STAGE_ADVANCED, item_id=item.item_id, stage=stage, channel=delivered_channel,
            message=f"Stage {stage} reminder sent via {delivered_channel}",
            delivered=sum(1 for a in attempts if a.delivered),
            failed=sum(1 for a in attempts if not a.delivered),
        )
        logger.info("Item %s advanced to stage %d via %s", item.item_id, stage, delivered_channel)
        return Transition(item.item_id, TransitionKind.ADVANCED, decision.from_stage, stage,
                          channel=delivered_channel, attempts=attempts)

    async def _send_channels(
        self, item: WorkItem, channels: tuple[Channel, ...], stage: int, now: datetime,
    ) -> dict[Channel, list[NotificationAttempt]]:
        results: dict[Channel, list[NotificationAttempt]] = {}
        for channel in channels:
            if not self._dispatcher.is_enabled(channel):
                continue
            deliveries = self.deliveries_for(item, channel, now)
            if deliveries:
                results[channel] = await self._dispatcher.dispatch_bulk(
                    channel, deliveries, item_id=item.item_id, stage=stage,
                )
        return results

    @staticmethod
    def _first_delivered(results: dict[Channel, list[NotificationAttempt]]) -> Channel | None:
        for channel, attempts in results.items():
            if any(a.delivered for a in attempts):
                return channel
        return None

    def deliveries_for(self, item: WorkItem, channel: Channel, now: datetime) -> list[Delivery]:
        """Rendered messages for every assignee reachable on ``channel``."""
        template_id = template_id_for(channel)
        if channel == Channel.COMMENT:
            mentions = [f"@{c.handle}" for c in item.assignees if c.handle and c.handle.strip()]
            if not mentions:
                return []
            username = " ".join(mentions)
            message = self._renderer.render(template_id, build_variables(item, username, now))
            return [Delivery(recipient=item.item_id, message=message, username=username)]

        deliveries = []
        for contact in item.assignees:
            address = contact.email if channel == Channel.EMAIL else contact.phone
            if not address or not address.strip():
                continue
            message = self._renderer.render(template_id, build_variables(item, contact.username, now))
            deliveries.append(Delivery(recipient=address.strip(), message=message, username=contact.username))
        return deliveries

    # ------------------------------------------------------------------
    # Manual operations
    # ------------------------------------------------------------------

    def pause(self, item: WorkItem, until: datetime, reason: str, now: datetime) -> None:
        if until <= now:
            raise ValueError("pause must end in the future")
        state = item.reminder
        resume = state.phase.resume if isinstance(state.phase, Paused) else state.phase
        state.phase = Paused(until=until, reason=reason, paused_at=now, resume=resume)
        self._audit.record(
            AuditAction.PAUSED, item_id=item.item_id, stage=state.stage,
            message=f"Reminders paused until {until.isoformat()}: {reason}",
        )

    def resume(self, item: WorkItem) -> bool:
        state = item.reminder
        if not isinstance(state.phase, Paused):
            return False
        state.phase = state.phase.resume
        self._audit.record(AuditAction.RESUMED, item_id=item.item_id, stage=state.stage,
                           message="Reminders resumed")
        return True

    def mark_urgent(self, item: WorkItem, reason: str) -> None:
        item.reminder.urgent = True
        item.reminder.urgent_reason = reason
        self._audit.record(AuditAction.MARKED_URGENT, item_id=item.item_id, message=reason)

    def clear_urgent(self, item: WorkItem) -> None:
        item.reminder.urgent = False
        item.reminder.urgent_reason = ""
        self._audit.record(AuditAction.URGENT_CLEARED, item_id=item.item_id)

    def reset(self, item: WorkItem, reason: str = "manual reset") -> None:
        """Start a new reminder cycle. Stats are kept."""
        previous = item.reminder.phase
        item.reminder.phase = Idle()
        self._audit.record(AuditAction.RESET, item_id=item.item_id, stage=0,
                           message=reason, previous=previous.kind)

    @staticmethod
    def is_responded(item: WorkItem) -> bool:
        return isinstance(item.reminder.phase, Responded)
