"""API Gateway proxy responses for the dlqops handlers."""

import json
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel as PydanticBaseModel

from dlqops.utils.exceptions import DlqOpsError


def _default(obj: Any) -> Any:
    if isinstance(obj, PydanticBaseModel):
        return obj.model_dump(mode="json")
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    raise TypeError(f"{type(obj).__name__} is not JSON serializable")


def _response(status_code: int, body: Any = None, headers: dict | None = None) -> dict:
    return {
        "statusCode": status_code,
        "headers": {"Content-Type": "application/json", **(headers or {})},
        "body": "" if body is None else json.dumps(body, default=_default),
    }


def success(data: Any, status_code: int = 200) -> dict:
    """JSON response for a dict, list or pydantic model."""
    if isinstance(data, PydanticBaseModel):
        data = data.model_dump(mode="json")
    return _response(status_code, data)


def created(data: Any) -> dict:
    """201 Created."""
    return success(data, status_code=201)


def no_content() -> dict:
    """204 No Content with an empty body."""
    return _response(204)


def error(
    message: str,
    status_code: int = 500,
    error_code: str | None = None,
    details: dict | None = None,
) -> dict:
    """Error response.

    Args:
        message: Human-readable message.
        status_code: HTTP status code.
        error_code: Machine-readable code, omitted when None.
        details: Extra context, omitted when empty.

    Returns:
        API Gateway response dict with ``error: true`` in the body.
    """
    body: dict[str, Any] = {"error": True, "message": message}
    if error_code:
        body["error_code"] = error_code
    if details:
        body["details"] = details
    return _response(status_code, body)


def from_exception(exc: DlqOpsError) -> dict:
    """Error response for a DlqOpsError, with Retry-After when rate limited."""
    retry_after = (exc.details or {}).get("retry_after_seconds")
    headers = {"Retry-After": str(retry_after)} if retry_after else None
    return _response(exc.status_code, exc.to_dict(), headers)


def validation_error(errors: list[dict]) -> dict:
    """400 with a list of ``{"field", "message"}`` errors."""
    return error(
        "Validation failed",
        status_code=400,
        error_code="VALIDATION_ERROR",
        details={"errors": errors},
    )


def not_found(resource_type: str, resource_id: str) -> dict:
    """404 for an unknown resource id."""
    return error(
        f"{resource_type} with ID '{resource_id}' not found",
        status_code=404,
        error_code="NOT_FOUND",
        details={"resource_type": resource_type, "resource_id": resource_id},
    )


def paginated(items: list[Any], total: int, page: int = 1, page_size: int = 50) -> dict:
    """Page of items with page metadata.

    Args:
        items: Items on this page.
        total: Items across all pages.
        page: 1-based page number.
        page_size: Items per page.
    """
    total_pages = -(-total // page_size) if page_size > 0 else 0
    return success({
        "items": items,
        "pagination": {
            "total": total,
            "page": page,
            "page_size": page_size,
            "total_pages": total_pages,
            "has_next_page": page < total_pages,
            "has_previous_page": page > 1,
        },
    })
