"""DynamoDB backends: work item store, audit sink, and policy config source."""

from __future__ import annotations

import json
import logging
import threading
from decimal import Decimal
from typing import Any

import boto3
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError

from remindflow.core.exceptions import (
    AuditSinkError,
    ConfigurationError,
    StateConflict,
    StoreError,
)
from remindflow.models.audit import AuditEntry
from remindflow.models.policy import EscalationPolicy
from remindflow.models.work_item import WorkItem

logger = logging.getLogger(__name__)

ITEMS_TABLE = "remindflow-work-items"
AUDIT_TABLE = "remindflow-audit-log"
CONFIG_TABLE = "remindflow-config"


def _decode_decimals(item: dict[str, Any]) -> dict[str, Any]:
    """Convert Decimal values in a DynamoDB item to int/float."""
    out: dict[str, Any] = {}
    for k, v in item.items():
        if isinstance(v, Decimal):
            out[k] = int(v) if v == int(v) else float(v)
        elif isinstance(v, dict):
            out[k] = _decode_decimals(v)
        elif isinstance(v, list):
            out[k] = [
                _decode_decimals(i) if isinstance(i, dict)
                else (int(i) if isinstance(i, Decimal) and i == int(i) else float(i) if isinstance(i, Decimal) else i)
                for i in v
            ]
        else:
            out[k] = v
    return out


def _is_conditional_failure(exc: ClientError) -> bool:
    return exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


def _resource(region: str, endpoint_url: str | None):
    kwargs: dict = {"region_name": region}
    if endpoint_url:
        kwargs["endpoint_url"] = endpoint_url
    return boto3.resource("dynamodb", **kwargs)


class _DynamoDBTable:
    """One boto3 Table per thread; resources must not be shared across threads."""

    def __init__(self, table_name: str, region: str, endpoint_url: str | None) -> None:
        self._table_name = table_name
        self._region = region
        self._endpoint_url = endpoint_url
        self._local = threading.local()

    @property
    def _table(self):
        table = getattr(self._local, "table", None)
        if table is None:
            table = _resource(self._region, self._endpoint_url).Table(self._table_name)
            self._local.table = table
        return table


class DynamoDBItemStore(_DynamoDBTable):
    """Production IItemStore. Every write is conditional on ``version``."""

    def __init__(self, table_suffix: str = "", region: str = "us-east-1",
                 endpoint_url: str | None = None) -> None:
        super().__init__(f"{ITEMS_TABLE}{table_suffix}", region, endpoint_url)

    @staticmethod
    def _to_record(item: WorkItem) -> dict[str, Any]:
        return {
            "PK": f"ITEM#{item.item_id}",
            "SK": "STATE",
            "version": item.version,
            "evaluable": item.evaluable,
            "data": item.model_dump_json(),
        }

    @staticmethod
    def _from_record(record: dict[str, Any]) -> WorkItem:
        return WorkItem.model_validate_json(record["data"])

    def get(self, item_id: str) -> WorkItem | None:
        try:
            resp = self._table.get_item(Key={"PK": f"ITEM#{item_id}", "SK": "STATE"})
        except ClientError as exc:
            raise StoreError(f"DynamoDB get failed for item {item_id!r}: {exc}") from exc
        record = resp.get("Item")
        return self._from_record(record) if record else None

    def create(self, item: WorkItem) -> WorkItem:
        stored = item.model_copy(update={"version": 1})
        try:
            self._table.put_item(
                Item=self._to_record(stored),
                ConditionExpression="attribute_not_exists(PK)",
            )
        except ClientError as exc:
            if _is_conditional_failure(exc):
                raise StoreError(f"Item {item.item_id!r} already exists") from exc
            raise StoreError(f"DynamoDB create failed for item {item.item_id!r}: {exc}") from exc
        return stored

    def save(self, item: WorkItem, expected_version: int) -> WorkItem:
        stored = item.model_copy(update={"version": expected_version + 1})
        try:
            self._table.put_item(
                Item=self._to_record(stored),
                ConditionExpression="attribute_exists(PK) AND #v = :expected",
                ExpressionAttributeNames={"#v": "version"},
                ExpressionAttributeValues={":expected": expected_version},
            )
        except ClientError as exc:
            if _is_conditional_failure(exc):
                raise StateConflict(item.item_id, f"version {expected_version} is stale") from exc
            raise StoreError(f"DynamoDB save failed for item {item.item_id!r}: {exc}") from exc
        return stored

    def list_active(self) -> list[WorkItem]:
        items: list[WorkItem] = []
        kwargs: dict[str, Any] = {"FilterExpression": Attr("evaluable").eq(True)}
        try:
            while True:
                resp = self._table.scan(**kwargs)
                items.extend(self._from_record(r) for r in resp.get("Items", []))
                if "LastEvaluatedKey" not in resp:
                    break
                kwargs["ExclusiveStartKey"] = resp["LastEvaluatedKey"]
        except ClientError as exc:
            raise StoreError(f"DynamoDB scan failed: {exc}") from exc
        return items


class DynamoDBAuditSink(_DynamoDBTable):
    """Production IAuditSink: append-only puts that never overwrite."""

    def __init__(self, table_suffix: str = "", region: str = "us-east-1",
                 endpoint_url: str | None = None) -> None:
        super().__init__(f"{AUDIT_TABLE}{table_suffix}", region, endpoint_url)

    def append(self, entry: AuditEntry) -> None:
        record = {
            "PK": f"ITEM#{entry.item_id or 'SYSTEM'}",
            "SK": f"{entry.timestamp.isoformat()}#{entry.entry_id}",
            "action": entry.action.value,
            "status": entry.status.value,
            "data": entry.model_dump_json(),
        }
        try:
            self._table.put_item(Item=record, ConditionExpression="attribute_not_exists(SK)")
        except ClientError as exc:
            raise AuditSinkError(f"DynamoDB audit append failed: {exc}") from exc

    def entries_for(self, item_id: str) -> list[AuditEntry]:
        resp = self._table.query(
            KeyConditionExpression="PK = :pk",
            ExpressionAttributeValues={":pk": f"ITEM#{item_id}"},
        )
        return [AuditEntry.model_validate_json(r["data"]) for r in resp.get("Items", [])]


class DynamoDBConfigSource(_DynamoDBTable):
    """IConfigSource reading the policy record, with optional Redis caching."""

    CACHE_TTL = 300  # 5 minutes
    CACHE_KEY = "policy:current"

    def __init__(self, table_suffix: str = "", region: str = "us-east-1",
                 endpoint_url: str | None = None, cache: Any = None,
                 fallback: EscalationPolicy | None = None) -> None:
        super().__init__(f"{CONFIG_TABLE}{table_suffix}", region, endpoint_url)
        self._cache = cache
        self._fallback = fallback

    def snapshot(self) -> EscalationPolicy:
        if self._cache is not None:
            cached = self._cache.get(self.CACHE_KEY)
            if cached is not None:
                return self._build(json.loads(cached))

        try:
            resp = self._table.get_item(Key={"PK": "POLICY", "SK": "CURRENT"})
        except ClientError as exc:
            raise ConfigurationError(f"Policy read failed: {exc}") from exc

        record = resp.get("Item")
        if record is None:
            if self._fallback is None:
                raise ConfigurationError("No escalation policy stored and no fallback configured")
            logger.info("No stored policy; using settings fallback")
            return self._fallback

        values = _decode_decimals(record)
        values.pop("PK", None)
        values.pop("SK", None)
        policy = self._build(values)
        if self._cache is not None:
            self._cache.setex(self.CACHE_KEY, self.CACHE_TTL, json.dumps(values))
        return policy

    @staticmethod
    def _build(values: dict[str, Any]) -> EscalationPolicy:
        if not values.get("stageTimes"):
            raise ConfigurationError("Stored policy has no stageTimes")
        return EscalationPolicy.build(
            stage_times=values["stageTimes"],
            stage_day_offsets=values.get("stageDayOffsets"),
            timezone=values.get("timezone", "Europe/Amsterdam"),
            weekend_days=values.get("weekendDays"),
            max_stages=values.get("maxStages"),
            min_reminder_interval_hours=float(values.get("minReminderIntervalHours", 12)),
            allow_urgent_override=bool(values.get("allowUrgentOverride", False)),
        )
