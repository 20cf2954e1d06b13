"""
org_scope.client — DynamoDB storage collaborators.

InvariantEnforcedDynamoDB evaluates the ownership invariants before every
write reaches DynamoDB.  Batches are validated in full and then committed
with a single TransactWriteItems call, so a violating batch writes nothing.

DynamoDBOrgNumberStore is the authoritative store of issued org numeric
ids.  Its conditional put (attribute_not_exists) is the uniqueness
constraint the allocator relies on.

On invariant violation:
  1. Logs structured error with table, identifier, rule.
  2. Emits CloudWatch metric: namespace=platform/security, InvariantViolation.
  3. Raises InvariantViolation.
"""

from __future__ import annotations

import os
from collections.abc import Iterable, Mapping
from decimal import Decimal
from typing import Any

import boto3
from aws_lambda_powertools import Logger
from boto3.dynamodb.types import TypeSerializer
from botocore.exceptions import ClientError

from org_scope.exceptions import InvariantViolation, OrgNumericIdConflict
from org_scope.ids import IdentifierLike, to_uuid_str
from org_scope.invariants import InvariantDeclaration, InvariantSet, Write
from org_scope.models import OrgRecord, WriteOperation

logger = Logger(service="org-scope")

_TABLE_PREFIX_ENV = "ORG_SCOPE_TABLE_PREFIX"
_ORG_NUMBERS_TABLE_ENV = "ORG_NUMBERS_TABLE_NAME"
_DEFAULT_ORG_NUMBERS_TABLE = "platform-org-numbers"


def _is_conditional_check_failed(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


# ---------------------------------------------------------------------------
# Internal helper: metric emission
# ---------------------------------------------------------------------------


def _emit_invariant_violation_metric(
    cloudwatch_client: Any,
    *,
    table: str,
    rule: str,
) -> None:
    """Publish an InvariantViolation count metric to CloudWatch.

    Never raises. A metric failure must not suppress the exception.
    """
    try:
        cloudwatch_client.put_metric_data(
            Namespace="platform/security",
            MetricData=[
                {
                    "MetricName": "InvariantViolation",
                    "Value": 1,
                    "Unit": "Count",
                    "Dimensions": [
                        {"Name": "table", "Value": table},
                        {"Name": "rule", "Value": rule},
                    ],
                }
            ],
        )
    except Exception:
        logger.exception("Failed to emit InvariantViolation metric", table=table, rule=rule)


# ---------------------------------------------------------------------------
# InvariantEnforcedDynamoDB
# ---------------------------------------------------------------------------


class InvariantEnforcedDynamoDB:
    """
    Row store over DynamoDB, one DynamoDB table per logical table.

    Rows are keyed by "id" (the packed identifier as a UUID string).  The
    physical table name is ORG_SCOPE_TABLE_PREFIX + logical name, e.g.
    "dev-data.chunks".
    """

    def __init__(
        self,
        invariants: InvariantSet | None = None,
        *,
        dynamodb_resource: Any = None,
        cloudwatch_client: Any = None,
        table_prefix: str | None = None,
    ) -> None:
        self._invariants = invariants or InvariantSet.default()
        self._prefix = (
            table_prefix if table_prefix is not None else os.environ.get(_TABLE_PREFIX_ENV, "")
        )
        region = os.environ["AWS_REGION"]
        self._dynamodb: Any = dynamodb_resource or boto3.resource("dynamodb", region_name=region)
        self._cloudwatch: Any = cloudwatch_client or boto3.client("cloudwatch", region_name=region)
        self._serializer = TypeSerializer()

    def physical_name(self, table: str) -> str:
        return f"{self._prefix}{table}"

    def _table(self, table: str) -> Any:
        return self._dynamodb.Table(self.physical_name(table))

    def _check(self, write: Write) -> None:
        try:
            self._invariants.check(write.table, write.operation, write.row)
        except InvariantViolation as exc:
            logger.error(
                "InvariantViolation: write rejected",
                table=exc.table,
                identifier=exc.identifier,
                rule=exc.rule,
                detail=exc.detail,
                operation=write.operation.value,
            )
            _emit_invariant_violation_metric(self._cloudwatch, table=exc.table, rule=exc.rule)
            raise

    def _to_item(self, table: str, row: Mapping[str, Any]) -> dict[str, Any]:
        """Store identifier columns as canonical UUID strings."""
        decl = self._invariants.declaration(table)
        item = dict(row)
        columns = ["id"]
        if decl is not None:
            columns.extend(rule.column for rule in decl.foreign_key_rules)
            if decl.ownership_column is not None:
                columns.append(decl.ownership_column)
        for column in columns:
            value = item.get(column)
            if value is None or isinstance(value, (int, Decimal)):
                continue
            item[column] = to_uuid_str(value)
        return item

    def get(self, table: str, identifier: IdentifierLike) -> dict[str, Any] | None:
        response = self._table(table).get_item(Key={"id": to_uuid_str(identifier)})
        return response.get("Item")

    def insert(self, table: str, row: Mapping[str, Any]) -> dict[str, Any]:
        """Insert a new row.  Fails with ClientError if the id already exists."""
        self._check(Write(table, WriteOperation.INSERT, row))
        item = self._to_item(table, row)
        self._table(table).put_item(Item=item, ConditionExpression="attribute_not_exists(id)")
        return item

    def update(self, table: str, row: Mapping[str, Any]) -> dict[str, Any]:
        """Replace an existing row with the full new row."""
        self._check(Write(table, WriteOperation.UPDATE, row))
        item = self._to_item(table, row)
        self._table(table).put_item(Item=item, ConditionExpression="attribute_exists(id)")
        return item

    def delete(self, table: str, identifier: IdentifierLike) -> None:
        self._check(Write(table, WriteOperation.DELETE, {"id": identifier}))
        self._table(table).delete_item(Key={"id": to_uuid_str(identifier)})

    def transact_write(self, writes: Iterable[Write]) -> None:
        """Validate every write, then commit them in one DynamoDB transaction."""
        writes = list(writes)
        for write in writes:
            self._check(write)
        items = [self._transact_item(write) for write in writes]
        if items:
            self._dynamodb.meta.client.transact_write_items(TransactItems=items)

    def _transact_item(self, write: Write) -> dict[str, Any]:
        name = self.physical_name(write.table)
        if write.operation is WriteOperation.DELETE:
            key = {"id": self._serializer.serialize(to_uuid_str(write.row["id"]))}
            return {"Delete": {"TableName": name, "Key": key}}
        row = self._to_item(write.table, write.row)
        item = {k: self._serializer.serialize(v) for k, v in row.items()}
        condition = (
            "attribute_not_exists(id)"
            if write.operation is WriteOperation.INSERT
            else "attribute_exists(id)"
        )
        return {"Put": {"TableName": name, "Item": item, "ConditionExpression": condition}}

    def declaration(self, table: str) -> InvariantDeclaration | None:
        return self._invariants.declaration(table)


# ---------------------------------------------------------------------------
# DynamoDBOrgNumberStore
# ---------------------------------------------------------------------------


class DynamoDBOrgNumberStore:
    """
    Issued org numeric ids, one item per tenant keyed by numeric_id (N).

    is_used() is a consistent read; reserve() is the conditional insert
    that enforces uniqueness.
    """

    def __init__(self, table_name: str | None = None, *, dynamodb_resource: Any = None) -> None:
        self._table_name = table_name or os.environ.get(
            _ORG_NUMBERS_TABLE_ENV, _DEFAULT_ORG_NUMBERS_TABLE
        )
        region = os.environ["AWS_REGION"]
        self._dynamodb: Any = dynamodb_resource or boto3.resource("dynamodb", region_name=region)

    @property
    def table_name(self) -> str:
        return self._table_name

    def is_used(self, numeric_id: int) -> bool:
        table = self._dynamodb.Table(self._table_name)
        response = table.get_item(Key={"numeric_id": numeric_id}, ConsistentRead=True)
        return "Item" in response

    def reserve(self, record: OrgRecord) -> None:
        """Insert the org record; raise OrgNumericIdConflict if the number is taken."""
        table = self._dynamodb.Table(self._table_name)
        try:
            table.put_item(
                Item=record.to_item(),
                ConditionExpression="attribute_not_exists(numeric_id)",
            )
        except ClientError as exc:
            if _is_conditional_check_failed(exc):
                raise OrgNumericIdConflict(numeric_id=record.numeric_id) from exc
            raise

    def get(self, numeric_id: int) -> OrgRecord | None:
        table = self._dynamodb.Table(self._table_name)
        item = table.get_item(Key={"numeric_id": numeric_id}).get("Item")
        if item is None:
            return None
        return OrgRecord(
            id=str(item["id"]),
            numeric_id=int(item["numeric_id"]),
            name=str(item["name"]),
            created_at=str(item["created_at"]),
        )
