"""Activity events reported by the external tracking system."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Optional

from pydantic import BaseModel, Field

from remindflow.models.work_item import Contact


class ActivityKind(StrEnum):
    COMMENT = "comment"
    UPDATE = "update"
    MEMBER_ADDED = "member_added"
    MEMBER_REMOVED = "member_removed"


class ActivityEvent(BaseModel):
    """Evidence that someone engaged with a work item."""

    event_id: str
    item_id: str
    occurred_at: datetime
    actor_id: str = ""
    kind: ActivityKind = ActivityKind.COMMENT


class ObservedItem(BaseModel):
    """A work item as currently reported by the tracking system."""

    item_id: str
    name: str
    url: str = ""
    board_id: str = ""
    list_id: str = ""
    assignees: list[Contact] = Field(default_factory=list)
    due_date: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    closed: bool = False
