"""
Row backends for the catalog store.

The store talks to a narrow table interface (get/query/scan/put/update/delete)
over three tables: ``products``, ``cart_items`` and ``orders``. Rows are plain
dicts of str/int/bool/None/list/dict values.

DynamoDBBackend speaks the low-level DynamoDB wire format through boto3; every
attribute value goes through an explicit tagged-union decode so malformed
values fail loudly instead of leaking wire structures into the domain.
"""

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from botocore.exceptions import BotoCoreError, ClientError

from catalog_sync.exceptions import BackendError
from catalog_sync.object_store import ClientFactory
from catalog_sync.retry import retry_with_backoff

logger = logging.getLogger(__name__)

PRODUCTS = "products"
CART_ITEMS = "cart_items"
ORDERS = "orders"

KEY_SCHEMA = {
    PRODUCTS: ("id",),
    CART_ITEMS: ("session_id", "item_key"),
    ORDERS: ("id",),
}


def _key_names(table: str) -> tuple:
    try:
        return KEY_SCHEMA[table]
    except KeyError:
        raise BackendError(message=f"Unknown table {table!r}", table=table, operation="Resolve")


def _number(raw: str, table: str = ""):
    try:
        return int(raw)
    except (TypeError, ValueError):
        pass
    try:
        return Decimal(raw)
    except (TypeError, InvalidOperation) as e:
        raise BackendError(
            message=f"Malformed number attribute {raw!r}",
            table=table,
            operation="Decode",
            original_exception=e,
        )


def decode_attribute(value: Any, table: str = "") -> Any:
    """
    Decode one DynamoDB AttributeValue into a Python value.

    ``NULL`` is the only null case. Sets decode to lists so the result
    is JSON friendly.

    Raises:
        BackendError: If the value is not a single-tag mapping or the tag is unknown
    """
    if not isinstance(value, dict) or len(value) != 1:
        raise BackendError(
            message=f"Malformed attribute value {value!r}",
            table=table,
            operation="Decode",
        )
    (tag, raw), = value.items()

    if tag == "S":
        return raw
    if tag == "N":
        return _number(raw, table)
    if tag == "BOOL":
        return bool(raw)
    if tag == "NULL":
        return None
    if tag == "L":
        return [decode_attribute(v, table) for v in raw]
    if tag == "M":
        return {k: decode_attribute(v, table) for k, v in raw.items()}
    if tag == "SS":
        return list(raw)
    if tag == "NS":
        return [_number(n, table) for n in raw]
    if tag == "B":
        return bytes(raw)
    if tag == "BS":
        return [bytes(b) for b in raw]

    raise BackendError(
        message=f"Unknown attribute type tag {tag!r}",
        table=table,
        operation="Decode",
    )


def encode_attribute(value: Any, table: str = "") -> dict:
    """Encode a Python value as a DynamoDB AttributeValue."""
    if value is None:
        return {"NULL": True}
    if isinstance(value, bool):
        return {"BOOL": value}
    if isinstance(value, (int, float, Decimal)):
        return {"N": str(value)}
    if isinstance(value, str):
        return {"S": value}
    if isinstance(value, (bytes, bytearray)):
        return {"B": bytes(value)}
    if isinstance(value, (list, tuple)):
        return {"L": [encode_attribute(v, table) for v in value]}
    if isinstance(value, dict):
        return {"M": {str(k): encode_attribute(v, table) for k, v in value.items()}}
    raise BackendError(
        message=f"Cannot encode value of type {type(value).__name__}",
        table=table,
        operation="Encode",
    )


def decode_item(item: dict, table: str = "") -> dict:
    return {name: decode_attribute(value, table) for name, value in item.items()}


def encode_item(row: dict, table: str = "") -> dict:
    return {name: encode_attribute(value, table) for name, value in row.items()}


class CatalogBackend(ABC):
    """Narrow table interface the catalog store is written against."""

    @abstractmethod
    async def get(self, table: str, key: dict) -> Optional[dict]:
        """Fetch one row by its full key, or None."""

    @abstractmethod
    async def query(self, table: str, key_name: str, value: Any) -> list[dict]:
        """Fetch every row whose partition key equals ``value``."""

    @abstractmethod
    async def scan(self, table: str, filters: Optional[dict] = None) -> list[dict]:
        """Fetch every row, optionally restricted by attribute equality."""

    @abstractmethod
    async def put(self, table: str, row: dict) -> None:
        """Insert or replace a row."""

    @abstractmethod
    async def update(self, table: str, key: dict, values: dict) -> Optional[dict]:
        """Assign ``values`` on an existing row; None when the row is missing."""

    @abstractmethod
    async def delete(self, table: str, key: dict) -> bool:
        """Delete a row; True when something was deleted."""


class InMemoryBackend(CatalogBackend):
    """Dict-backed backend for development and tests. Rows are copied in and out."""

    def __init__(self):
        self.tables: dict[str, dict] = {name: {} for name in KEY_SCHEMA}

    def _rows(self, table: str) -> dict:
        _key_names(table)
        return self.tables[table]

    @staticmethod
    def _key(table: str, row: dict) -> tuple:
        return tuple(row.get(name) for name in _key_names(table))

    @staticmethod
    def _matches(row: dict, filters: Optional[dict]) -> bool:
        return all(row.get(name) == value for name, value in (filters or {}).items())

    async def get(self, table: str, key: dict) -> Optional[dict]:
        row = self._rows(table).get(self._key(table, key))
        return copy.deepcopy(row) if row is not None else None

    async def query(self, table: str, key_name: str, value: Any) -> list[dict]:
        return [
            copy.deepcopy(row)
            for row in self._rows(table).values()
            if row.get(key_name) == value
        ]

    async def scan(self, table: str, filters: Optional[dict] = None) -> list[dict]:
        return [
            copy.deepcopy(row)
            for row in self._rows(table).values()
            if self._matches(row, filters)
        ]

    async def put(self, table: str, row: dict) -> None:
        self._rows(table)[self._key(table, row)] = copy.deepcopy(row)

    async def update(self, table: str, key: dict, values: dict) -> Optional[dict]:
        row = self._rows(table).get(self._key(table, key))
        if row is None:
            return None
        row.update(copy.deepcopy(values))
        return copy.deepcopy(row)

    async def delete(self, table: str, key: dict) -> bool:
        return self._rows(table).pop(self._key(table, key), None) is not None


class ConditionFailed(Exception):
    """A conditional write found no matching row."""


class DynamoDBBackend(CatalogBackend):
    """
    Backend over a DynamoDB-compatible service (AWS or Yandex Database).

    Args:
        client: boto3 ``dynamodb`` client
        table_prefix: Prefix prepended to every logical table name
    """

    def __init__(self, client, table_prefix: str = "catalog_"):
        self.client = client
        self.table_prefix = table_prefix

    def table_name(self, table: str) -> str:
        _key_names(table)
        return f"{self.table_prefix}{table}"

    @retry_with_backoff(
        max_attempts=3,
        base_delay=0.2,
        max_delay=5.0,
        retryable_exceptions=(BotoCoreError, ClientError),
        non_retryable_exceptions=(ConditionFailed,),
    )
    def _invoke(self, operation: str, params: dict) -> dict:
        try:
            return getattr(self.client, operation)(**params)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
                raise ConditionFailed(str(e)) from e
            raise

    async def _call(self, operation: str, table: str, **params) -> dict:
        params["TableName"] = self.table_name(table)
        try:
            return await asyncio.to_thread(self._invoke, operation, params)
        except ConditionFailed:
            raise
        except (BotoCoreError, ClientError) as e:
            raise BackendError(
                message=f"{operation} on {table} failed: {e}",
                table=table,
                operation=operation,
                original_exception=e,
            )

    async def _paginate(self, operation: str, table: str, **params) -> list[dict]:
        rows: list[dict] = []
        while True:
            response = await self._call(operation, table, **params)
            rows.extend(decode_item(item, table) for item in response.get("Items", []))
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                return rows
            params["ExclusiveStartKey"] = last_key

    async def get(self, table: str, key: dict) -> Optional[dict]:
        response = await self._call("get_item", table, Key=encode_item(key, table))
        item = response.get("Item")
        return decode_item(item, table) if item else None

    async def query(self, table: str, key_name: str, value: Any) -> list[dict]:
        return await self._paginate(
            "query",
            table,
            KeyConditionExpression="#k = :v",
            ExpressionAttributeNames={"#k": key_name},
            ExpressionAttributeValues={":v": encode_attribute(value, table)},
        )

    async def scan(self, table: str, filters: Optional[dict] = None) -> list[dict]:
        params = {}
        if filters:
            names, values, clauses = {}, {}, []
            for i, (name, value) in enumerate(filters.items()):
                names[f"#f{i}"] = name
                values[f":f{i}"] = encode_attribute(value, table)
                clauses.append(f"#f{i} = :f{i}")
            params = {
                "FilterExpression": " AND ".join(clauses),
                "ExpressionAttributeNames": names,
                "ExpressionAttributeValues": values,
            }
        return await self._paginate("scan", table, **params)

    async def put(self, table: str, row: dict) -> None:
        await self._call("put_item", table, Item=encode_item(row, table))

    async def update(self, table: str, key: dict, values: dict) -> Optional[dict]:
        if not values:
            return await self.get(table, key)

        names, encoded, assignments = {}, {}, []
        for i, (name, value) in enumerate(values.items()):
            names[f"#a{i}"] = name
            encoded[f":a{i}"] = encode_attribute(value, table)
            assignments.append(f"#a{i} = :a{i}")
        conditions = []
        for i, name in enumerate(key):
            names[f"#k{i}"] = name
            conditions.append(f"attribute_exists(#k{i})")

        try:
            response = await self._call(
                "update_item",
                table,
                Key=encode_item(key, table),
                UpdateExpression="SET " + ", ".join(assignments),
                ConditionExpression=" AND ".join(conditions),
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=encoded,
                ReturnValues="ALL_NEW",
            )
        except ConditionFailed:
            logger.debug(f"Update skipped, no row in {table} for {key}")
            return None
        return decode_item(response.get("Attributes", {}), table)

    async def delete(self, table: str, key: dict) -> bool:
        response = await self._call(
            "delete_item",
            table,
            Key=encode_item(key, table),
            ReturnValues="ALL_OLD",
        )
        return bool(response.get("Attributes"))


def build_backend(settings, factory=None) -> CatalogBackend:
    """Backend selected by ``settings.backend``."""
    if settings.backend == "dynamodb":
        factory = factory or ClientFactory(settings)
        return DynamoDBBackend(factory.get_dynamodb_client(), settings.dynamodb_table_prefix)
    return InMemoryBackend()
