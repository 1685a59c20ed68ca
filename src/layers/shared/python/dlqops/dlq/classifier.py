"""Heuristic failure classification for dead-lettered messages.

Categories are inferred from the broker's dead-letter reason and error
description. Rules are checked in order and the first match wins.
"""

from dataclasses import dataclass

from dlqops.models.dlq_message import FailureCategory

# Reasons set by the broker itself map directly with high confidence
KNOWN_REASONS: dict[str, tuple[FailureCategory, float]] = {
    "maxdeliverycountexceeded": (FailureCategory.MAX_DELIVERY, 0.95),
    "ttlexpiredexception": (FailureCategory.EXPIRED, 0.95),
    "messagelocklost": (FailureCategory.TRANSIENT, 0.90),
    "sessionlocklost": (FailureCategory.TRANSIENT, 0.90),
    "headersizeexceeded": (FailureCategory.QUOTA_EXCEEDED, 0.90),
}


@dataclass(frozen=True)
class ClassificationRule:
    """Keywords that imply a category."""

    category: FailureCategory
    confidence: float
    keywords: tuple[str, ...]


CLASSIFICATION_RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule(FailureCategory.MAX_DELIVERY, 0.95, ("maxdeliverycount",)),
    ClassificationRule(FailureCategory.EXPIRED, 0.90, ("ttlexpiredexception", "ttl", "expired")),
    ClassificationRule(
        FailureCategory.AUTHORIZATION,
        0.85,
        ("unauthorized", "forbidden", "401", "403", "permission", "access denied"),
    ),
    ClassificationRule(
        FailureCategory.TRANSIENT,
        0.80,
        (
            "timeout",
            "database",
            "sqlexception",
            "connection refused",
            "service unavailable",
            "transient",
            "lock lost",
            "locklost",
        ),
    ),
    ClassificationRule(
        FailureCategory.DATA_QUALITY,
        0.80,
        ("schema", "validation", "deserializ", "json", "format", "parsing"),
    ),
    ClassificationRule(
        FailureCategory.QUOTA_EXCEEDED,
        0.80,
        ("quota", "size exceeded", "sizeexceeded", "too large", "entity full"),
    ),
    ClassificationRule(
        FailureCategory.RESOURCE_NOT_FOUND,
        0.75,
        ("not found", "notfound", "404", "resource missing"),
    ),
    ClassificationRule(
        FailureCategory.PROCESSING_ERROR,
        0.50,
        ("exception", "error", "failed", "processing"),
    ),
)

INFERRED_MAX_DELIVERY_CONFIDENCE = 0.50


def classify_failure(
    reason: str | None,
    description: str | None,
    delivery_count: int = 0,
    max_delivery_threshold: int = 10,
) -> tuple[FailureCategory, float]:
    """Classify why a message was dead-lettered.

    Args:
        reason: Broker dead-letter reason.
        description: Broker dead-letter error description.
        delivery_count: Times the message was delivered before dead-lettering.
        max_delivery_threshold: Delivery count that implies MaxDelivery when
            the text gives no hint.

    Returns:
        Tuple of (category, confidence in 0..1).
    """
    reason_key = (reason or "").strip().lower()
    if reason_key in KNOWN_REASONS:
        return KNOWN_REASONS[reason_key]

    text = f"{reason or ''} {description or ''}".lower()
    if text.strip():
        for rule in CLASSIFICATION_RULES:
            if any(keyword in text for keyword in rule.keywords):
                return rule.category, rule.confidence

    if delivery_count >= max_delivery_threshold:
        return FailureCategory.MAX_DELIVERY, INFERRED_MAX_DELIVERY_CONFIDENCE

    return FailureCategory.UNKNOWN, 0.0
