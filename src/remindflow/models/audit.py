"""Immutable audit trail entries."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any, Optional

from pydantic import BaseModel, Field


class AuditAction(StrEnum):
    DECISION = "decision"
    DISPATCH_ATTEMPT = "dispatch_attempt"
    STAGE_ADVANCED = "stage_advanced"
    STAGE_FAILED = "stage_failed"
    RESPONSE_DETECTED = "response_detected"
    CYCLE_REOPENED = "cycle_reopened"
    ORACLE_DEGRADED = "oracle_degraded"
    STATE_CONFLICT = "state_conflict"
    ITEM_ERROR = "item_error"
    PAUSED = "paused"
    RESUMED = "resumed"
    MARKED_URGENT = "marked_urgent"
    URGENT_CLEARED = "urgent_cleared"
    RESET = "reset"
    ITEM_CREATED = "item_created"
    ITEM_ARCHIVED = "item_archived"
    ITEM_REOPENED = "item_reopened"
    TRIGGER_ABORTED = "trigger_aborted"


class AuditStatus(StrEnum):
    SUCCESS = "success"
    FAILURE = "failure"
    RETRY = "retry"
    SKIPPED = "skipped"
    DEGRADED = "degraded"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditEntry(BaseModel):
    """One decision or dispatch outcome. Never mutated once created."""

    model_config = {"frozen": True}

    entry_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: datetime = Field(default_factory=_utcnow)
    item_id: str = ""
    action: AuditAction
    status: AuditStatus = AuditStatus.SUCCESS
    stage: Optional[int] = None
    channel: str = ""
    recipient: str = ""
    attempt: Optional[int] = None
    delivery_id: str = ""
    error_class: str = ""
    message: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
