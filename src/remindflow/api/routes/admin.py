"""Admin endpoints for manual trigger runs and per-item reminder control."""

from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from remindflow.engine.context import ReminderEngine
from remindflow.engine.scheduler import TriggerReport

router = APIRouter(tags=["admin"])


class PauseRequest(BaseModel):
    hours: float = Field(gt=0)
    reason: str = ""


class UrgentRequest(BaseModel):
    reason: str = ""


class ResetRequest(BaseModel):
    reason: str = "manual reset"


def _engine(request: Request) -> ReminderEngine:
    return request.app.state.engine


def _summary(report: TriggerReport) -> dict:
    data = asdict(report)
    data["started_at"] = report.started_at.isoformat()
    data["transitions"] = [
        {
            "item_id": t.item_id,
            "kind": t.kind,
            "from_stage": t.from_stage,
            "to_stage": t.to_stage,
            "reason": t.reason,
            "channel": t.channel,
        }
        for t in report.transitions
    ]
    return data


@router.post("/stages/{stage}/run")
async def run_stage(stage: int, request: Request) -> dict:
    """Run one stage trigger now."""
    report = await _engine(request).run_stage(stage)
    if report.aborted:
        raise HTTPException(status_code=503, detail=report.error)
    return _summary(report)


@router.post("/sync")
async def sync_items(request: Request) -> dict:
    return asdict(await _engine(request).sync())


# Plain def handlers run in the threadpool; item operations make blocking store calls
@router.get("/items/{item_id}")
def get_item(item_id: str, request: Request) -> dict:
    return _engine(request).get_item(item_id).model_dump(mode="json")


@router.post("/items/{item_id}/evaluate")
async def evaluate_item(item_id: str, request: Request) -> dict:
    return _summary(await _engine(request).evaluate_item(item_id))


@router.post("/items/{item_id}/pause")
def pause_item(item_id: str, body: PauseRequest, request: Request) -> dict:
    item = _engine(request).pause(item_id, hours=body.hours, reason=body.reason)
    return item.model_dump(mode="json")


@router.post("/items/{item_id}/resume")
def resume_item(item_id: str, request: Request) -> dict:
    return _engine(request).resume(item_id).model_dump(mode="json")


@router.post("/items/{item_id}/urgent")
def mark_urgent(item_id: str, body: UrgentRequest, request: Request) -> dict:
    return _engine(request).mark_urgent(item_id, body.reason).model_dump(mode="json")


@router.delete("/items/{item_id}/urgent")
def clear_urgent(item_id: str, request: Request) -> dict:
    return _engine(request).clear_urgent(item_id).model_dump(mode="json")


@router.post("/items/{item_id}/reset")
def reset_item(item_id: str, body: ResetRequest, request: Request) -> dict:
    return _engine(request).reset(item_id, body.reason).model_dump(mode="json")
