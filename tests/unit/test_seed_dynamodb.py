"""Tests for DynamoDB seed script."""

from __future__ import annotations

import sys
from pathlib import Path

import boto3
import pytest
from moto import mock_aws

# Make scripts/ importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent.parent / "scripts"))

from seed_dynamodb import create_tables, policy_record, seed_policy  # noqa: E402

from remindflow.core.config import PolicyConfig  # noqa: E402
from remindflow.persistence.dynamodb_backend import DynamoDBConfigSource  # noqa: E402


@pytest.fixture
def ddb():
    with mock_aws():
        yield boto3.resource("dynamodb", region_name="us-east-1")


class TestCreateTables:
    def test_creates_all_three_tables(self, ddb):
        create_tables(ddb, suffix="-test")
        client = boto3.client("dynamodb", region_name="us-east-1")
        tables = client.list_tables()["TableNames"]
        assert sorted(tables) == [
            "remindflow-audit-log-test",
            "remindflow-config-test",
            "remindflow-work-items-test",
        ]

    def test_idempotent_skips_existing(self, ddb):
        create_tables(ddb, suffix="-test")
        create_tables(ddb, suffix="-test")  # should not raise
        client = boto3.client("dynamodb", region_name="us-east-1")
        assert len(client.list_tables()["TableNames"]) == 3


class TestSeedPolicy:
    def test_seeded_policy_is_readable(self, ddb):
        create_tables(ddb, suffix="-test")
        assert seed_policy(ddb, suffix="-test")

        source = DynamoDBConfigSource(table_suffix="-test", region="us-east-1")
        policy = source.snapshot()
        assert policy.max_stages == 3
        assert policy.timezone == "Europe/Amsterdam"

    def test_existing_policy_is_kept(self, ddb):
        create_tables(ddb, suffix="-test")
        tbl = ddb.Table("remindflow-config-test")
        tbl.put_item(Item=policy_record(PolicyConfig(max_stages=2)))

        assert not seed_policy(ddb, suffix="-test")
        assert tbl.get_item(Key={"PK": "POLICY", "SK": "CURRENT"})["Item"]["maxStages"] == 2

    def test_overwrite_replaces_policy(self, ddb):
        create_tables(ddb, suffix="-test")
        tbl = ddb.Table("remindflow-config-test")
        tbl.put_item(Item=policy_record(PolicyConfig(max_stages=2)))

        assert seed_policy(ddb, suffix="-test", overwrite=True)
        assert tbl.get_item(Key={"PK": "POLICY", "SK": "CURRENT"})["Item"]["maxStages"] == 3
