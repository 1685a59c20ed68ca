"""Built-in rule templates.

Starting points for common remediation rules. A template is not a rule; the
API hands it to the caller, who creates a rule from it.
"""

from dlqops.models.replay_rule import RuleAction, RuleCondition

TEMPLATES = {
    "database-timeouts": {
        "name": "Database Timeouts",
        "description": (
            "Auto-replay messages that failed due to database connection timeouts. These are "
            "typically transient failures that resolve when the database recovers."
        ),
        "category": "Transient",
        "conditions": [
            {"field": "DeadLetterReason", "operator": "Contains", "value": "timeout"},
            {"field": "DeadLetterErrorDescription", "operator": "Contains", "value": "database"},
        ],
        "action": {"auto_replay": True, "delay_seconds": 300, "max_retries": 3, "exponential_backoff": True},
    },
    "payment-gateway-timeouts": {
        "name": "Payment Gateway Timeouts",
        "description": (
            "Auto-replay messages that failed due to payment gateway timeouts. Adds longer "
            "delay to allow gateway recovery."
        ),
        "category": "Transient",
        "conditions": [
            {"field": "DeadLetterErrorDescription", "operator": "Contains", "value": "payment"},
            {"field": "DeadLetterErrorDescription", "operator": "Contains", "value": "timeout"},
        ],
        "action": {"auto_replay": True, "delay_seconds": 120, "max_retries": 3, "exponential_backoff": True},
    },
    "max-delivery-exceeded": {
        "name": "Max Delivery Exceeded",
        "description": (
            "Replay messages that exceeded max delivery count. Often caused by transient "
            "processing failures that resolve on retry."
        ),
        "category": "MaxDelivery",
        "conditions": [
            {"field": "FailureCategory", "operator": "Equals", "value": "MaxDelivery"},
        ],
        "action": {"auto_replay": True, "delay_seconds": 60, "max_retries": 1, "exponential_backoff": False},
    },
    "expired-messages": {
        "name": "Expired Messages",
        "description": (
            "Re-send messages that expired (TTL exceeded) before being processed. Useful for "
            "non-time-sensitive workloads."
        ),
        "category": "Expired",
        "conditions": [
            {"field": "FailureCategory", "operator": "Equals", "value": "Expired"},
        ],
        "action": {"auto_replay": True, "delay_seconds": 30, "max_retries": 1, "exponential_backoff": False},
    },
    "transient-network-errors": {
        "name": "Transient Network Errors",
        "description": (
            "Auto-replay messages that failed due to transient network errors including "
            "connection resets and DNS failures."
        ),
        "category": "Transient",
        "conditions": [
            {"field": "FailureCategory", "operator": "Equals", "value": "Transient"},
        ],
        "action": {"auto_replay": True, "delay_seconds": 180, "max_retries": 3, "exponential_backoff": True},
    },
    "resource-not-found": {
        "name": "Resource Not Found Retries",
        "description": (
            "Retry messages that failed because a resource was not yet available "
            "(eventual consistency scenarios)."
        ),
        "category": "ResourceNotFound",
        "conditions": [
            {"field": "FailureCategory", "operator": "Equals", "value": "ResourceNotFound"},
            {"field": "DeliveryCount", "operator": "LessThan", "value": "5"},
        ],
        "action": {"auto_replay": True, "delay_seconds": 600, "max_retries": 2, "exponential_backoff": False},
    },
    "quota-exceeded": {
        "name": "Quota/Throttling Recovery",
        "description": (
            "Replay messages that failed due to rate limiting or quota exceeded errors, "
            "with longer delays."
        ),
        "category": "QuotaExceeded",
        "conditions": [
            {"field": "FailureCategory", "operator": "Equals", "value": "QuotaExceeded"},
        ],
        "action": {"auto_replay": True, "delay_seconds": 900, "max_retries": 2, "exponential_backoff": True},
    },
}


def get_templates() -> list[dict]:
    """List templates with validated conditions and actions.

    Returns:
        List of template dicts, each with its ``id``.
    """
    templates = []
    for template_id, template in TEMPLATES.items():
        conditions = [RuleCondition.model_validate(c) for c in template["conditions"]]
        action = RuleAction.model_validate(template["action"])
        templates.append({
            "id": template_id,
            "name": template["name"],
            "description": template["description"],
            "category": template["category"],
            "conditions": [c.model_dump(mode="json") for c in conditions],
            "action": action.model_dump(mode="json"),
        })
    return templates
