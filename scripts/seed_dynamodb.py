"""Create RemindFlow DynamoDB tables and seed the default escalation policy.

Usage:
    python scripts/seed_dynamodb.py --endpoint-url http://localhost:4566
"""

from __future__ import annotations

import argparse
from decimal import Decimal
from typing import Any

import boto3

from remindflow.core.config import PolicyConfig
from remindflow.persistence.dynamodb_backend import AUDIT_TABLE, CONFIG_TABLE, ITEMS_TABLE

TABLE_NAMES: list[str] = [ITEMS_TABLE, AUDIT_TABLE, CONFIG_TABLE]


def create_tables(ddb: Any, suffix: str = "") -> None:
    """Create the item, audit and config tables. Skips tables that exist."""
    client = ddb.meta.client
    existing = client.list_tables().get("TableNames", [])

    for name in TABLE_NAMES:
        table_name = f"{name}{suffix}"
        if table_name in existing:
            print(f"  Table {table_name} already exists, skipping")
            continue
        client.create_table(
            TableName=table_name,
            KeySchema=[
                {"AttributeName": "PK", "KeyType": "HASH"},
                {"AttributeName": "SK", "KeyType": "RANGE"},
            ],
            AttributeDefinitions=[
                {"AttributeName": "PK", "AttributeType": "S"},
                {"AttributeName": "SK", "AttributeType": "S"},
            ],
            BillingMode="PAY_PER_REQUEST",
        )
        print(f"  Created table {table_name}")


def policy_record(config: PolicyConfig | None = None) -> dict[str, Any]:
    """The stored policy item for ``config`` (defaults when omitted)."""
    config = config or PolicyConfig()
    return {
        "PK": "POLICY",
        "SK": "CURRENT",
        "timezone": config.timezone,
        "weekendDays": list(config.weekend_days),
        "stageTimes": list(config.stage_times),
        "stageDayOffsets": list(config.stage_day_offsets),
        "maxStages": config.max_stages,
        "minReminderIntervalHours": Decimal(str(config.min_reminder_interval_hours)),
        "allowUrgentOverride": config.allow_urgent_override,
    }


def seed_policy(ddb: Any, suffix: str = "", overwrite: bool = False) -> bool:
    """Write the default policy. Returns False if one exists and is kept."""
    tbl = ddb.Table(f"{CONFIG_TABLE}{suffix}")
    if not overwrite and "Item" in tbl.get_item(Key={"PK": "POLICY", "SK": "CURRENT"}):
        print("  Policy already present, keeping it")
        return False
    tbl.put_item(Item=policy_record())
    print("  Seeded default escalation policy")
    return True


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed DynamoDB tables for RemindFlow")
    parser.add_argument("--endpoint-url", default=None, help="DynamoDB endpoint (e.g. http://localhost:4566)")
    parser.add_argument("--table-suffix", default="", help="Table name suffix (e.g. -dev)")
    parser.add_argument("--region", default="us-east-1", help="AWS region")
    parser.add_argument("--overwrite-policy", action="store_true", help="Replace an existing policy")
    args = parser.parse_args()

    kwargs: dict[str, Any] = {"region_name": args.region}
    if args.endpoint_url:
        kwargs["endpoint_url"] = args.endpoint_url

    ddb = boto3.resource("dynamodb", **kwargs)

    print("Creating tables...")
    create_tables(ddb, suffix=args.table_suffix)

    print("Seeding policy...")
    seed_policy(ddb, suffix=args.table_suffix, overwrite=args.overwrite_policy)

    print("Done!")


if __name__ == "__main__":
    main()
