"""Single-table DynamoDB access shared by the dlqops repositories.

Every entity lives in one table keyed by ``PK``/``SK`` with two overloaded
secondary indexes, ``GSI1`` and ``GSI2``. Subclasses add the entity-specific
key layouts and conditional transitions on top of these primitives.
"""

from typing import Any, Generic, TypeVar

import boto3
import structlog
from botocore.exceptions import ClientError

from dlqops.config import get_settings
from dlqops.models.base import BaseModel
from dlqops.utils.exceptions import ConflictError, NotFoundError

logger = structlog.get_logger()

T = TypeVar("T", bound=BaseModel)

# Index name -> (partition attribute, sort attribute)
INDEX_KEYS: dict[str | None, tuple[str, str]] = {
    None: ("PK", "SK"),
    "GSI1": ("GSI1PK", "GSI1SK"),
    "GSI2": ("GSI2PK", "GSI2SK"),
}


def is_conditional_check_failure(error: ClientError) -> bool:
    """True when a write was rejected by its ConditionExpression."""
    return error.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


def key_condition(
    index_name: str | None,
    pk: str,
    sk_begins_with: str | None = None,
    sk_gte: str | None = None,
) -> tuple[str, dict[str, Any]]:
    """Build a KeyConditionExpression and its values for a table or index."""
    pk_attr, sk_attr = INDEX_KEYS[index_name]
    expression = f"{pk_attr} = :pk"
    values: dict[str, Any] = {":pk": pk}

    if sk_begins_with:
        expression += f" AND begins_with({sk_attr}, :sk)"
        values[":sk"] = sk_begins_with
    elif sk_gte:
        expression += f" AND {sk_attr} >= :sk"
        values[":sk"] = sk_gte

    return expression, values


class BaseRepository(Generic[T]):
    """Typed access to one entity type in the shared table."""

    def __init__(self, model_class: type[T], table_name: str | None = None):
        """Initialize repository.

        Args:
            model_class: Entity model stored by this repository.
            table_name: Table name. Defaults to the configured TABLE_NAME.
        """
        self.model_class = model_class
        self.table_name = table_name or get_settings().table_name
        self._table = None

    @property
    def table(self):
        """DynamoDB Table, created on first use."""
        if self._table is None:
            self._table = boto3.resource("dynamodb").Table(self.table_name)
        return self._table

    @staticmethod
    def _build_key(pk: str, sk: str) -> dict[str, str]:
        return {"PK": pk, "SK": sk}

    def _to_item(self, entity: T) -> dict[str, Any]:
        item = entity.to_dynamodb()
        item.update(entity.get_keys())
        item.update(entity.get_gsi_keys())
        return item

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, pk: str, sk: str, consistent: bool = False) -> T | None:
        """Read one entity by primary key, or None."""
        try:
            response = self.table.get_item(Key=self._build_key(pk, sk), ConsistentRead=consistent)
        except ClientError as e:
            logger.error("DynamoDB get_item failed", pk=pk, sk=sk, error=str(e))
            raise

        item = response.get("Item")
        return self.model_class.from_dynamodb(item) if item else None

    def get_or_raise(self, pk: str, sk: str, resource_type: str, resource_id: str) -> T:
        """Read one entity or raise NotFoundError."""
        entity = self.get(pk, sk)
        if entity is None:
            raise NotFoundError(resource_type, resource_id)
        return entity

    def query(
        self,
        pk: str,
        sk_begins_with: str | None = None,
        sk_gte: str | None = None,
        index_name: str | None = None,
        limit: int | None = None,
        scan_forward: bool = True,
        filter_expression: str | None = None,
        expression_names: dict | None = None,
        expression_values: dict | None = None,
        last_key: dict | None = None,
    ) -> tuple[list[T], dict | None]:
        """Query one page of a partition of the table or of an index.

        Args:
            pk: Partition key value, of the index when ``index_name`` is set.
            sk_begins_with: Sort key prefix.
            sk_gte: Inclusive sort key lower bound, ignored with a prefix.
            index_name: ``GSI1``, ``GSI2`` or None for the table.
            limit: Items to evaluate before filtering.
            scan_forward: Ascending sort key order when True.
            filter_expression: Filter applied after the key condition.
            expression_names: Attribute name placeholders.
            expression_values: Extra attribute value placeholders.
            last_key: Page cursor from a previous call.

        Returns:
            Tuple of (entities, next page cursor or None).
        """
        expression, values = key_condition(index_name, pk, sk_begins_with, sk_gte)
        values.update(expression_values or {})

        params: dict[str, Any] = {
            "KeyConditionExpression": expression,
            "ExpressionAttributeValues": values,
            "ScanIndexForward": scan_forward,
        }
        optional = {
            "IndexName": index_name,
            "Limit": limit,
            "FilterExpression": filter_expression,
            "ExpressionAttributeNames": expression_names,
            "ExclusiveStartKey": last_key,
        }
        params.update({name: value for name, value in optional.items() if value})

        try:
            response = self.table.query(**params)
        except ClientError as e:
            logger.error("DynamoDB query failed", pk=pk, index=index_name, error=str(e))
            raise

        entities = [self.model_class.from_dynamodb(item) for item in response.get("Items", [])]
        return entities, response.get("LastEvaluatedKey")

    def query_all(self, pk: str, max_items: int | None = None, **kwargs: Any) -> list[T]:
        """Query every page of a partition, stopping early at ``max_items``."""
        collected: list[T] = []
        cursor = None
        while True:
            page, cursor = self.query(pk, last_key=cursor, **kwargs)
            collected.extend(page)
            if max_items is not None and len(collected) >= max_items:
                return collected[:max_items]
            if not cursor:
                return collected

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def _write(self, entity: T, condition: str | None, values: dict | None, conflict: str) -> T:
        params: dict[str, Any] = {"Item": self._to_item(entity)}
        if condition:
            params["ConditionExpression"] = condition
        if values:
            params["ExpressionAttributeValues"] = values

        try:
            self.table.put_item(**params)
        except ClientError as e:
            if is_conditional_check_failure(e):
                raise ConflictError(conflict)
            logger.error("DynamoDB put_item failed", model=self.model_class.__name__, error=str(e))
            raise

        logger.debug("Item written", model=self.model_class.__name__, id=entity.id)
        return entity

    def create(self, entity: T) -> T:
        """Insert a new entity.

        Raises:
            ConflictError: If an item with the same key exists.
        """
        entity.update_timestamp()
        return self._write(entity, "attribute_not_exists(PK)", None, "Item already exists")

    def update(self, entity: T) -> T:
        """Replace an entity, guarded by its version.

        Raises:
            ConflictError: If the stored version moved since the entity was read.
        """
        expected = entity.version
        entity.version = expected + 1
        entity.update_timestamp()
        try:
            return self._write(
                entity,
                "version = :expected",
                {":expected": expected},
                "Item was modified by another process",
            )
        except ConflictError:
            entity.version = expected
            raise

    def delete(self, pk: str, sk: str) -> bool:
        """Delete an item. Returns False if it did not exist."""
        try:
            self.table.delete_item(
                Key=self._build_key(pk, sk),
                ConditionExpression="attribute_exists(PK)",
            )
        except ClientError as e:
            if is_conditional_check_failure(e):
                return False
            logger.error("DynamoDB delete_item failed", pk=pk, sk=sk, error=str(e))
            raise
        return True
