"""Base entity model and DynamoDB item conversion."""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Self

from pydantic import BaseModel as PydanticBaseModel, ConfigDict, Field
from ulid import ULID


def generate_ulid() -> str:
    """Generate a new ULID string."""
    return str(ULID())


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def sort_key_time(value: datetime) -> str:
    """Render a datetime as fixed-width UTC text that sorts chronologically.

    Naive datetimes are taken to be UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def to_item_value(value: Any) -> Any:
    """Convert a JSON-mode dump into values boto3 accepts.

    Floats become Decimal and None entries are dropped from maps, so optional
    attributes are absent rather than null in the table.
    """
    if isinstance(value, dict):
        return {key: to_item_value(inner) for key, inner in value.items() if inner is not None}
    if isinstance(value, list):
        return [to_item_value(inner) for inner in value]
    if isinstance(value, float):
        return Decimal(str(value))
    return value


def from_item_value(value: Any) -> Any:
    """Convert boto3 Decimals back to int or float, recursively."""
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {key: from_item_value(inner) for key, inner in value.items()}
    if isinstance(value, list):
        return [from_item_value(inner) for inner in value]
    return value


class TimestampMixin(PydanticBaseModel):
    """Creation and last-write timestamps."""

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def update_timestamp(self) -> None:
        """Stamp updated_at with the current time."""
        self.updated_at = utc_now()


class BaseModel(TimestampMixin):
    """Entity stored in the dlqops table.

    Subclasses define ``get_pk``/``get_sk`` and, when they are listed through
    a secondary index, ``get_gsi_keys``.
    """

    model_config = ConfigDict(
        populate_by_name=True,
        use_enum_values=True,
        validate_assignment=True,
        validate_default=True,
    )

    id: str = Field(default_factory=generate_ulid)
    version: int = Field(default=1, description="Optimistic locking version")

    def to_dynamodb(self) -> dict[str, Any]:
        """Entity attributes as a DynamoDB item, without key attributes."""
        return to_item_value(self.model_dump(mode="json", by_alias=True))

    @classmethod
    def from_dynamodb(cls, item: dict[str, Any]) -> Self:
        """Build an entity from a DynamoDB item. Key attributes are ignored."""
        return cls.model_validate(from_item_value(item))

    def get_pk(self) -> str:
        raise NotImplementedError

    def get_sk(self) -> str:
        raise NotImplementedError

    def get_keys(self) -> dict[str, str]:
        """Primary key attributes."""
        return {"PK": self.get_pk(), "SK": self.get_sk()}

    def get_gsi_keys(self) -> dict[str, str]:
        """Secondary index attributes. Empty for entities without indexes."""
        return {}
