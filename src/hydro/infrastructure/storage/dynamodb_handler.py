import json
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import ClientError

from hydro.infrastructure.logging.logger import get_logger

from .storage_handler_interface import TABLES, BaseStorageHandler

logger = get_logger(__name__)


class DynamoDBHandler(BaseStorageHandler):
    """
    Storage backend on DynamoDB, one table per record type named
    ``{table_prefix}-{table}``. Items are stored as ``{"id": key, "data": <json>}``
    so arbitrary parameter values round-trip without Decimal conversion.
    """

    def __init__(
        self,
        region_name: str = "us-east-1",
        table_prefix: str = "hydro",
        endpoint_url: Optional[str] = None,
    ):
        self.table_prefix = table_prefix
        self.dynamodb = boto3.resource("dynamodb", region_name=region_name, endpoint_url=endpoint_url)

    def _table(self, table: str):
        return self.dynamodb.Table(f"{self.table_prefix}-{table}")

    def create_tables(self) -> None:
        """Create any missing table with an ``id`` hash key."""
        for table in TABLES:
            name = f"{self.table_prefix}-{table}"
            try:
                self.dynamodb.create_table(
                    TableName=name,
                    KeySchema=[{"AttributeName": "id", "KeyType": "HASH"}],
                    AttributeDefinitions=[{"AttributeName": "id", "AttributeType": "S"}],
                    BillingMode="PAY_PER_REQUEST",
                )
                self.dynamodb.Table(name).wait_until_exists()
                logger.info("Created DynamoDB table", table=name)
            except ClientError as e:
                if e.response["Error"]["Code"] != "ResourceInUseException":
                    raise

    def insert(self, table: str, key: str, value: Dict[str, Any]) -> None:
        self._table(table).put_item(Item={"id": key, "data": json.dumps(value)})

    def get(self, table: str, key: str) -> Optional[Dict[str, Any]]:
        response = self._table(table).get_item(Key={"id": key})
        item = response.get("Item")
        return json.loads(item["data"]) if item else None

    def update(self, table: str, key: str, value: Dict[str, Any]) -> None:
        try:
            self._table(table).put_item(
                Item={"id": key, "data": json.dumps(value)},
                ConditionExpression="attribute_exists(id)",
            )
        except ClientError as e:
            if e.response["Error"]["Code"] != "ConditionalCheckFailedException":
                raise

    def delete(self, table: str, key: str) -> None:
        self._table(table).delete_item(Key={"id": key})

    def query(self, table: str, conditions: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [
            item for item in self.scan(table)
            if all(item.get(k) == v for k, v in conditions.items())
        ]

    def scan(self, table: str) -> List[Dict[str, Any]]:
        dynamo_table = self._table(table)
        response = dynamo_table.scan()
        items = response["Items"]
        while "LastEvaluatedKey" in response:
            response = dynamo_table.scan(ExclusiveStartKey=response["LastEvaluatedKey"])
            items.extend(response["Items"])
        return [json.loads(item["data"]) for item in items]
