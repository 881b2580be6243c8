"""Pluggable persistence backends behind Protocol interfaces."""

from __future__ import annotations

from remindflow.core.config import AppSettings, SettingsConfigSource, policy_from_settings
from remindflow.persistence.dynamodb_backend import (
    DynamoDBAuditSink,
    DynamoDBConfigSource,
    DynamoDBItemStore,
)
from remindflow.persistence.memory_backend import (
    MemoryAuditSink,
    MemoryItemStore,
    MemoryLeaseManager,
)
from remindflow.persistence.redis_backend import RedisCacheBackend, RedisLeaseManager


def create_backends(settings: AppSettings | None = None):
    """Create wired-up persistence backends from application settings.

    Returns:
        Tuple of (item_store, audit_sink, lease_manager, config_source).
    """
    if settings is None:
        settings = AppSettings()

    if settings.backend == "memory":
        return MemoryItemStore(), MemoryAuditSink(), MemoryLeaseManager(), SettingsConfigSource(settings)

    lease_manager = RedisLeaseManager(
        host=settings.redis.host,
        port=settings.redis.port,
        db=settings.redis.db,
        key_prefix=settings.lease.key_prefix,
    )

    item_store = DynamoDBItemStore(
        table_suffix=settings.dynamodb.table_suffix,
        region=settings.dynamodb.region,
        endpoint_url=settings.dynamodb.endpoint_url,
    )

    audit_sink = DynamoDBAuditSink(
        table_suffix=settings.dynamodb.table_suffix,
        region=settings.dynamodb.region,
        endpoint_url=settings.dynamodb.endpoint_url,
    )

    if settings.policy_source == "dynamodb":
        cache = RedisCacheBackend(
            host=settings.redis.host,
            port=settings.redis.port,
            db=settings.redis.db,
        )
        config_source = DynamoDBConfigSource(
            table_suffix=settings.dynamodb.table_suffix,
            region=settings.dynamodb.region,
            endpoint_url=settings.dynamodb.endpoint_url,
            cache=cache,
            fallback=policy_from_settings(settings.policy),
        )
    else:
        config_source = SettingsConfigSource(settings)

    return item_store, audit_sink, lease_manager, config_source
