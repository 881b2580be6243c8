"""Application configuration using pydantic-settings with grouped env prefixes."""

from __future__ import annotations

from typing import Literal

from pydantic_settings import BaseSettings

from remindflow.models.policy import EscalationPolicy


class PolicyConfig(BaseSettings):
    """Escalation policy defaults (overridable by a config table)."""

    model_config = {"env_prefix": "REMINDFLOW_POLICY_"}

    timezone: str = "Europe/Amsterdam"
    weekend_days: list[int] = [6, 7]  # ISO weekdays: Sat, Sun
    # "HH:MM" per stage, in stage order
    stage_times: list[str] = ["18:30", "18:00", "12:00"]
    # Days after the cycle start on which each stage fires
    stage_day_offsets: list[int] = [0, 1, 2]
    max_stages: int = 3
    min_reminder_interval_hours: float = 12.0
    allow_urgent_override: bool = False


class SchedulerConfig(BaseSettings):
    """Trigger execution and worker pool configuration."""

    model_config = {"env_prefix": "REMINDFLOW_SCHEDULER_"}

    enabled: bool = True
    max_concurrency: int = 5
    call_timeout_seconds: float = 30.0
    shutdown_grace_seconds: float = 60.0
    sync_before_first_stage: bool = True
    misfire_grace_seconds: int = 300


class DispatchConfig(BaseSettings):
    """Channel dispatch, retry and batching configuration."""

    model_config = {"env_prefix": "REMINDFLOW_DISPATCH_"}

    retry_attempts: int = 3
    backoff_base_seconds: float = 1.0
    comment_enabled: bool = True
    email_enabled: bool = True
    sms_enabled: bool = True
    whatsapp_enabled: bool = True
    email_batch_size: int = 10
    email_batch_delay_seconds: float = 0.1
    sms_batch_size: int = 5
    sms_batch_delay_seconds: float = 1.0
    whatsapp_batch_size: int = 3
    whatsapp_batch_delay_seconds: float = 2.0
    comment_batch_size: int = 5
    comment_batch_delay_seconds: float = 0.5


class OracleConfig(BaseSettings):
    """Activity oracle configuration."""

    model_config = {"env_prefix": "REMINDFLOW_ORACLE_"}

    failure_mode: Literal["fail_open", "fail_closed"] = "fail_open"
    lookback_hours: float = 72.0
    bot_member_id: str = ""  # our own comments never count as a response


class DynamoDBConfig(BaseSettings):
    """DynamoDB configuration."""

    model_config = {"env_prefix": "REMINDFLOW_DYNAMO_"}

    table_suffix: str = ""  # "-dev", "-uat", or "" for prod
    region: str = "us-east-1"
    endpoint_url: str | None = None  # LocalStack override


class RedisConfig(BaseSettings):
    """Redis lease and cache configuration."""

    model_config = {"env_prefix": "REMINDFLOW_REDIS_"}

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    decode_responses: bool = True


class LeaseConfig(BaseSettings):
    """Per-item lease configuration."""

    model_config = {"env_prefix": "REMINDFLOW_LEASE_"}

    ttl_seconds: int = 300
    key_prefix: str = "remindflow:lease:"


class AppSettings(BaseSettings):
    """Root application settings aggregating all sub-configs."""

    model_config = {"env_prefix": "REMINDFLOW_"}

    environment: Literal["dev", "uat", "prod"] = "dev"
    log_level: str = "INFO"
    backend: Literal["memory", "aws"] = "memory"
    policy_source: Literal["settings", "dynamodb"] = "settings"

    policy: PolicyConfig = PolicyConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    dispatch: DispatchConfig = DispatchConfig()
    oracle: OracleConfig = OracleConfig()
    dynamodb: DynamoDBConfig = DynamoDBConfig()
    redis: RedisConfig = RedisConfig()
    lease: LeaseConfig = LeaseConfig()


def policy_from_settings(config: PolicyConfig) -> EscalationPolicy:
    """Build a validated EscalationPolicy from policy settings.

    Raises:
        ConfigurationError: if the settings describe an invalid policy.
    """
    return EscalationPolicy.build(
        stage_times=config.stage_times,
        stage_day_offsets=config.stage_day_offsets,
        timezone=config.timezone,
        weekend_days=config.weekend_days,
        max_stages=config.max_stages,
        min_reminder_interval_hours=config.min_reminder_interval_hours,
        allow_urgent_override=config.allow_urgent_override,
    )


class SettingsConfigSource:
    """IConfigSource that re-reads policy settings for every snapshot."""

    def __init__(self, settings: AppSettings) -> None:
        self._settings = settings

    def snapshot(self) -> EscalationPolicy:
        return policy_from_settings(self._settings.policy)
