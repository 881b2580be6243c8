"""Escalation policy: stage schedule, weekend rules, and channel plans."""

from __future__ import annotations

from datetime import time, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator, model_validator

from remindflow.core.exceptions import ConfigurationError
from remindflow.models.notification import Channel


class StageSchedule(BaseModel):
    """One escalation stage: when it fires and which channels it uses."""

    model_config = {"frozen": True}

    stage: int = Field(ge=1)
    at: time
    day_offset: int = Field(default=0, ge=0)
    primary: tuple[Channel, ...]
    secondary: tuple[Channel, ...] = ()

    @property
    def cycle_offset(self) -> timedelta:
        """Position of this stage within one escalation cycle."""
        return timedelta(days=self.day_offset, hours=self.at.hour, minutes=self.at.minute)

    @property
    def channels(self) -> tuple[Channel, ...]:
        return self.primary + self.secondary


def default_channel_plan(stage: int) -> tuple[tuple[Channel, ...], tuple[Channel, ...]]:
    """Stage -> (primary, secondary) channels.

    1: tracking-system comment, 2: email, 3+: email with SMS and WhatsApp
    sent alongside on a best-effort basis.
    """
    if stage == 1:
        return (Channel.COMMENT,), ()
    if stage == 2:
        return (Channel.EMAIL,), ()
    return (Channel.EMAIL,), (Channel.SMS, Channel.WHATSAPP)


class EscalationPolicy(BaseModel):
    """Immutable policy snapshot read at the start of each trigger run."""

    model_config = {"frozen": True}

    timezone: str = "Europe/Amsterdam"
    weekend_days: frozenset[int] = frozenset({6, 7})
    stages: tuple[StageSchedule, ...]
    max_stages: int = Field(ge=1)
    min_reminder_interval: timedelta = timedelta(hours=12)
    allow_urgent_override: bool = False

    @field_validator("weekend_days")
    @classmethod
    def _iso_weekdays(cls, v: frozenset[int]) -> frozenset[int]:
        if any(d < 1 or d > 7 for d in v):
            raise ValueError("weekend_days must be ISO weekdays 1..7")
        return v

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone {v!r}") from exc
        return v

    @model_validator(mode="after")
    def _check_stage_order(self) -> EscalationPolicy:
        numbers = [s.stage for s in self.stages]
        if numbers != list(range(1, len(numbers) + 1)):
            raise ValueError(f"stages must be numbered 1..N in order, got {numbers}")
        if self.max_stages > len(self.stages):
            raise ValueError(f"max_stages={self.max_stages} exceeds {len(self.stages)} scheduled stages")
        offsets = [s.cycle_offset for s in self.stages[: self.max_stages]]
        gaps = [b - a for a, b in zip(offsets, offsets[1:])]
        if any(g <= timedelta(0) for g in gaps):
            raise ValueError("stage trigger times must be strictly ordered within the cycle")
        if self.min_reminder_interval <= timedelta(0):
            raise ValueError("min_reminder_interval must be positive")
        if gaps and self.min_reminder_interval > min(gaps):
            raise ValueError(
                f"min_reminder_interval {self.min_reminder_interval} exceeds the smallest "
                f"stage gap {min(gaps)}; later stages could never fire"
            )
        return self

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def stage(self, number: int) -> StageSchedule:
        if number < 1 or number > len(self.stages):
            raise ConfigurationError(f"No stage {number} in policy (has {len(self.stages)})")
        return self.stages[number - 1]

    @classmethod
    def build(
        cls,
        *,
        stage_times: list[str],
        stage_day_offsets: list[int] | None = None,
        timezone: str = "Europe/Amsterdam",
        weekend_days: list[int] | None = None,
        max_stages: int | None = None,
        min_reminder_interval_hours: float = 12.0,
        allow_urgent_override: bool = False,
    ) -> EscalationPolicy:
        """Build a validated policy from flat settings values.

        Raises:
            ConfigurationError: on any invalid value.
        """
        offsets = stage_day_offsets or list(range(len(stage_times)))
        if len(offsets) != len(stage_times):
            raise ConfigurationError("stage_day_offsets must match stage_times in length")
        try:
            stages = []
            for number, (raw, offset) in enumerate(zip(stage_times, offsets), start=1):
                primary, secondary = default_channel_plan(number)
                stages.append(StageSchedule(
                    stage=number, at=time.fromisoformat(raw), day_offset=offset,
                    primary=primary, secondary=secondary,
                ))
            return cls(
                timezone=timezone,
                weekend_days=frozenset(weekend_days if weekend_days is not None else [6, 7]),
                stages=tuple(stages),
                max_stages=max_stages if max_stages is not None else len(stages),
                min_reminder_interval=timedelta(hours=min_reminder_interval_hours),
                allow_urgent_override=allow_urgent_override,
            )
        except ValueError as exc:
            raise ConfigurationError(f"Invalid escalation policy: {exc}") from exc
