"""Work item and reminder state models.

Reminder progress is an explicit tagged variant (``ReminderPhase``) rather
than loose flags, so combinations such as "responded but still escalating"
cannot be represented.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field

from remindflow.models.notification import Channel


class Contact(BaseModel):
    """An assignee of a work item and the addresses we can reach them on."""

    member_id: str
    username: str
    full_name: str = ""
    handle: Optional[str] = None  # tracking-system mention handle
    email: Optional[str] = None
    phone: Optional[str] = None


# ---------------------------------------------------------------------------
# Reminder phases
# ---------------------------------------------------------------------------

class Idle(BaseModel):
    kind: Literal["idle"] = "idle"

    @property
    def stage(self) -> int:
        return 0


class Escalating(BaseModel):
    kind: Literal["escalating"] = "escalating"
    stage: int = Field(ge=1)


class MaxReached(BaseModel):
    kind: Literal["max_reached"] = "max_reached"
    stage: int = Field(ge=1)


class Responded(BaseModel):
    kind: Literal["responded"] = "responded"
    stage: int = Field(ge=0)
    responded_at: datetime


ActivePhase = Annotated[
    Union[Idle, Escalating, MaxReached, Responded],
    Field(discriminator="kind"),
]


class Paused(BaseModel):
    kind: Literal["paused"] = "paused"
    until: datetime
    reason: str = ""
    paused_at: datetime
    resume: ActivePhase = Field(default_factory=Idle)

    @property
    def stage(self) -> int:
        return self.resume.stage


ReminderPhase = Annotated[
    Union[Idle, Escalating, MaxReached, Responded, Paused],
    Field(discriminator="kind"),
]


class ReminderStats(BaseModel):
    """Cumulative reminder statistics for one item."""

    total_reminders: int = 0
    total_responses: int = 0
    avg_response_hours: float = 0.0
    last_response_hours: Optional[float] = None

    def record_response(self, latency_hours: float) -> None:
        self.total_responses += 1
        self.last_response_hours = latency_hours
        self.avg_response_hours += (latency_hours - self.avg_response_hours) / self.total_responses


class ReminderState(BaseModel):
    """Embedded reminder state of a work item."""

    phase: ReminderPhase = Field(default_factory=Idle)
    last_reminder_at: Optional[datetime] = None
    last_channel: Optional[Channel] = None
    urgent: bool = False
    urgent_reason: str = ""
    stats: ReminderStats = Field(default_factory=ReminderStats)

    @property
    def stage(self) -> int:
        return self.phase.stage

    @property
    def has_response(self) -> bool:
        phase = self.phase.resume if isinstance(self.phase, Paused) else self.phase
        return isinstance(phase, Responded)

    @property
    def response_at(self) -> Optional[datetime]:
        phase = self.phase.resume if isinstance(self.phase, Paused) else self.phase
        return phase.responded_at if isinstance(phase, Responded) else None

    @property
    def paused_until(self) -> Optional[datetime]:
        return self.phase.until if isinstance(self.phase, Paused) else None

    @property
    def pause_reason(self) -> str:
        return self.phase.reason if isinstance(self.phase, Paused) else ""

    def effective_phase(self, now: datetime):
        """Return the phase in force at ``now``; expired pauses unwrap."""
        if isinstance(self.phase, Paused) and self.phase.until <= now:
            return self.phase.resume
        return self.phase


class WorkItem(BaseModel):
    """A tracked unit of work (e.g. a task card) awaiting a response."""

    item_id: str
    name: str
    url: str = ""
    board_id: str = ""
    list_id: str = ""
    assignees: list[Contact] = Field(default_factory=list)
    due_date: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    active: bool = True
    closed: bool = False
    archived: bool = False
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    reminder: ReminderState = Field(default_factory=ReminderState)

    @property
    def evaluable(self) -> bool:
        return self.active and not self.closed and not self.archived

    def days_since_last_activity(self, now: datetime) -> int:
        if self.last_activity_at is None:
            return 0
        return max((now - self.last_activity_at).days, 0)
