"""Auto-replay rules API handler."""

import asyncio
import json
from typing import Any

import structlog
from pydantic import ValidationError as PydanticValidationError

from dlqops.dlq.engine import build_executor
from dlqops.models.replay_rule import CreateRuleRequest, TestRuleRequest, UpdateRuleRequest
from dlqops.services.rule_service import RuleService
from dlqops.utils.exceptions import DlqOpsError
from dlqops.utils.responses import created, error, from_exception, no_content, success, validation_error

logger = structlog.get_logger()


def handler(event: dict[str, Any], context: Any) -> dict:
    """Handle auto-replay rule API requests.

    Routes:
        GET    /dlq/rules                        - List rules
        POST   /dlq/rules                        - Create rule
        GET    /dlq/rules/templates              - List rule templates
        POST   /dlq/rules/test                   - Dry-run conditions
        GET    /dlq/rules/{rule_id}              - Get rule
        PUT    /dlq/rules/{rule_id}              - Update rule
        DELETE /dlq/rules/{rule_id}              - Delete rule
        POST   /dlq/rules/{rule_id}/toggle       - Enable or disable rule
        POST   /dlq/rules/{rule_id}/replay-all   - Replay every current match
    """
    try:
        http_method = event.get("httpMethod", "").upper()
        path_params = event.get("pathParameters", {}) or {}
        resource = event.get("resource", "")
        rule_id = path_params.get("rule_id")

        # Replay-all needs a broker; everything else is storage only
        if resource.endswith("/replay-all") and rule_id:
            if http_method == "POST":
                return replay_all(RuleService(executor=build_executor()), rule_id)
            return error("Method not allowed", 405)

        service = RuleService()

        if resource.endswith("/templates"):
            if http_method == "GET":
                return success({"items": service.get_templates()})
            return error("Method not allowed", 405)

        if resource.endswith("/rules/test"):
            if http_method == "POST":
                return test_rule(service, event)
            return error("Method not allowed", 405)

        if resource.endswith("/toggle") and rule_id:
            if http_method == "POST":
                return toggle_rule(service, rule_id, event)
            return error("Method not allowed", 405)

        if http_method == "GET" and rule_id:
            return success(service.get_rule(rule_id).to_response())
        elif http_method == "GET":
            return list_rules(service, event)
        elif http_method == "POST":
            return create_rule(service, event)
        elif http_method == "PUT" and rule_id:
            return update_rule(service, rule_id, event)
        elif http_method == "DELETE" and rule_id:
            service.delete_rule(rule_id)
            return no_content()
        else:
            return error("Method not allowed", 405)

    except DlqOpsError as e:
        return from_exception(e)
    except ValueError as e:
        return error(str(e), 400)
    except Exception as e:
        logger.exception("DLQ rules handler error", error=str(e))
        return error("Internal server error", 500)


def _parse_body(event: dict) -> dict:
    body = json.loads(event.get("body") or "{}")
    if not isinstance(body, dict):
        raise ValueError("Request body must be a JSON object")
    return body


def _pydantic_errors(e: PydanticValidationError) -> list[dict]:
    return [
        {"field": ".".join(str(x) for x in err["loc"]), "message": err["msg"]}
        for err in e.errors()
    ]


def list_rules(service: RuleService, event: dict) -> dict:
    """List rules, optionally only the enabled ones."""
    query_params = event.get("queryStringParameters", {}) or {}
    enabled_only = query_params.get("enabled", "").lower() == "true"
    return success({"items": service.list_rules(enabled_only=enabled_only)})


def create_rule(service: RuleService, event: dict) -> dict:
    """Create a rule."""
    try:
        request = CreateRuleRequest.model_validate(_parse_body(event))
    except PydanticValidationError as e:
        return validation_error(_pydantic_errors(e))
    except json.JSONDecodeError:
        return error("Invalid JSON body", 400)

    rule = service.create_rule(request)
    return created(rule.to_response())


def update_rule(service: RuleService, rule_id: str, event: dict) -> dict:
    """Apply a partial update to a rule."""
    try:
        request = UpdateRuleRequest.model_validate(_parse_body(event))
    except PydanticValidationError as e:
        return validation_error(_pydantic_errors(e))
    except json.JSONDecodeError:
        return error("Invalid JSON body", 400)

    rule = service.update_rule(rule_id, request)
    return success(rule.to_response())


def toggle_rule(service: RuleService, rule_id: str, event: dict) -> dict:
    """Enable or disable a rule. An empty body flips the current state."""
    try:
        body = _parse_body(event)
    except json.JSONDecodeError:
        return error("Invalid JSON body", 400)

    enabled = body.get("enabled")
    if enabled is not None and not isinstance(enabled, bool):
        return validation_error([{"field": "enabled", "message": "enabled must be a boolean"}])

    rule = service.toggle_rule(rule_id, enabled)
    return success(rule.to_response())


def test_rule(service: RuleService, event: dict) -> dict:
    """Dry-run conditions or a stored rule against Active messages."""
    try:
        request = TestRuleRequest.model_validate(_parse_body(event))
    except PydanticValidationError as e:
        return validation_error(_pydantic_errors(e))
    except json.JSONDecodeError:
        return error("Invalid JSON body", 400)

    return success(service.test_rule(request))


def replay_all(service: RuleService, rule_id: str) -> dict:
    """Replay every Active message the rule currently matches."""
    result = asyncio.run(service.replay_all(rule_id))
    logger.info(
        "Replay-all requested",
        rule_id=rule_id,
        matched=result.total_matched,
        replayed=result.replayed,
    )
    return success(result.to_dict())
