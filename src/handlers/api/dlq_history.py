"""DLQ history API handler."""

import asyncio
import json
from datetime import datetime, timezone
from typing import Any

import structlog

from dlqops.dlq.engine import build_executor, get_broker_factory
from dlqops.models.dlq_message import DlqMessageStatus
from dlqops.services.history_service import HistoryFilters, HistoryService
from dlqops.utils.exceptions import DlqOpsError
from dlqops.utils.responses import error, from_exception, paginated, success, validation_error

logger = structlog.get_logger()


def handler(event: dict[str, Any], context: Any) -> dict:
    """Handle DLQ history API requests.

    Routes:
        GET  /dlq/messages                          - List tracked messages
        GET  /dlq/messages/summary                  - Dashboard summary
        GET  /dlq/messages/export                   - Export as JSON or CSV
        GET  /dlq/messages/{message_id}             - Get message with replay history
        GET  /dlq/messages/{message_id}/timeline    - Lifecycle timeline
        PUT  /dlq/messages/{message_id}/notes       - Set operator notes
        POST /dlq/messages/{message_id}/archive     - Archive message
        POST /dlq/messages/{message_id}/replay      - Replay message now
        POST /dlq/purge                             - Purge an entity's DLQ
    """
    try:
        http_method = event.get("httpMethod", "").upper()
        path_params = event.get("pathParameters", {}) or {}
        resource = event.get("resource", "")
        message_id = path_params.get("message_id")

        if resource.endswith("/replay") and message_id:
            if http_method == "POST":
                return replay_message(HistoryService(executor=build_executor()), message_id, event)
            return error("Method not allowed", 405)

        if resource.endswith("/purge"):
            if http_method == "POST":
                return purge(HistoryService(broker_factory=get_broker_factory()), event)
            return error("Method not allowed", 405)

        service = HistoryService()

        if resource.endswith("/summary"):
            if http_method == "GET":
                query_params = event.get("queryStringParameters", {}) or {}
                return success(service.get_summary(query_params.get("namespace_id")))
            return error("Method not allowed", 405)

        if resource.endswith("/export"):
            if http_method == "GET":
                return export(service, event)
            return error("Method not allowed", 405)

        if resource.endswith("/timeline") and message_id:
            if http_method == "GET":
                events = service.get_timeline(message_id)
                return success({"items": [e.to_dict() for e in events]})
            return error("Method not allowed", 405)

        if resource.endswith("/notes") and message_id:
            if http_method == "PUT":
                return update_notes(service, message_id, event)
            return error("Method not allowed", 405)

        if resource.endswith("/archive") and message_id:
            if http_method == "POST":
                message = service.archive(message_id)
                return success(message.model_dump(mode="json", exclude={"replay_claim_id", "replay_claimed_at"}))
            return error("Method not allowed", 405)

        if http_method == "GET" and message_id:
            return success(service.get_message(message_id))
        elif http_method == "GET":
            return list_messages(service, event)
        else:
            return error("Method not allowed", 405)

    except DlqOpsError as e:
        return from_exception(e)
    except ValueError as e:
        return error(str(e), 400)
    except Exception as e:
        logger.exception("DLQ history handler error", error=str(e))
        return error("Internal server error", 500)


def _parse_body(event: dict) -> dict:
    body = json.loads(event.get("body") or "{}")
    if not isinstance(body, dict):
        raise ValueError("Request body must be a JSON object")
    return body


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _filters(query_params: dict) -> HistoryFilters:
    status = query_params.get("status")
    return HistoryFilters(
        namespace_id=query_params.get("namespace_id"),
        entity_name=query_params.get("entity_name"),
        status=DlqMessageStatus(status) if status else None,
        category=query_params.get("category"),
        from_time=_parse_time(query_params.get("from")),
        to_time=_parse_time(query_params.get("to")),
    )


def _actor(event: dict, body: dict) -> str:
    authorizer = (event.get("requestContext") or {}).get("authorizer") or {}
    return body.get("replayed_by") or authorizer.get("principalId") or "manual"


def list_messages(service: HistoryService, event: dict) -> dict:
    """List tracked messages, newest first, with pagination."""
    query_params = event.get("queryStringParameters", {}) or {}
    page = int(query_params.get("page", 1))
    page_size = int(query_params.get("page_size", 50))

    messages, total = service.get_history(_filters(query_params), page, page_size)
    items = [
        m.model_dump(mode="json", exclude={"replay_claim_id", "replay_claimed_at", "application_properties"})
        for m in messages
    ]
    return paginated(items, total, page, page_size)


def export(service: HistoryService, event: dict) -> dict:
    """Export matching messages as JSON or CSV."""
    query_params = event.get("queryStringParameters", {}) or {}
    fmt = query_params.get("format", "json").lower()
    data = service.export(_filters(query_params), fmt)

    if fmt == "csv":
        return {
            "statusCode": 200,
            "headers": {
                "Content-Type": "text/csv",
                "Content-Disposition": 'attachment; filename="dlq-export.csv"',
            },
            "body": data,
        }
    return success({"items": data, "count": len(data)})


def update_notes(service: HistoryService, message_id: str, event: dict) -> dict:
    """Set or clear a message's operator notes."""
    try:
        body = _parse_body(event)
    except json.JSONDecodeError:
        return error("Invalid JSON body", 400)

    notes = body.get("notes")
    if notes is not None and (not isinstance(notes, str) or len(notes) > 4000):
        return validation_error([{"field": "notes", "message": "notes must be a string of at most 4000 characters"}])

    message = service.update_notes(message_id, notes)
    return success(message.model_dump(mode="json", exclude={"replay_claim_id", "replay_claimed_at"}))


def replay_message(service: HistoryService, message_id: str, event: dict) -> dict:
    """Replay one message on an operator's request."""
    try:
        body = _parse_body(event)
    except json.JSONDecodeError:
        return error("Invalid JSON body", 400)

    result = asyncio.run(
        service.replay_message(message_id, _actor(event, body), body.get("target_entity"))
    )
    return success(result.to_dict())


def purge(service: HistoryService, event: dict) -> dict:
    """Purge one entity's dead-letter queue."""
    try:
        body = _parse_body(event)
    except json.JSONDecodeError:
        return error("Invalid JSON body", 400)

    namespace_id = body.get("namespace_id")
    entity_name = body.get("entity_name")
    missing = [name for name in ("namespace_id", "entity_name") if not body.get(name)]
    if missing:
        return validation_error([{"field": name, "message": "Field required"} for name in missing])

    result = asyncio.run(service.purge_dead_letters(namespace_id, entity_name))
    logger.info("Purge requested", namespace_id=namespace_id, entity_name=entity_name, **result)
    return success(result)
