"""Pytest configuration and fixtures."""

import json
import os
from datetime import datetime, timedelta, timezone

import pytest

# Set environment variables before imports
os.environ["TABLE_NAME"] = "dlqops-test"
os.environ["AWS_DEFAULT_REGION"] = "us-east-1"
os.environ["AWS_ACCESS_KEY_ID"] = "testing"
os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
os.environ.pop("DLQ_BROKER_FACTORY", None)
os.environ.pop("DLQ_NAMESPACE_IDS", None)

from dlqops.config import DlqSettings, reset_settings  # noqa: E402
from dlqops.dlq.broker import BrokerEntity, PeekedMessage  # noqa: E402
from dlqops.models.dlq_message import EntityType  # noqa: E402
from dlqops.utils.exceptions import BrokerUnavailableError  # noqa: E402

TABLE_NAME = "dlqops-test"
NAMESPACE = "ns-test"


@pytest.fixture(autouse=True)
def fresh_settings():
    """Re-read settings from the environment for every test."""
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def aws_credentials():
    """Mock AWS credentials for moto."""
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_SECURITY_TOKEN"] = "testing"
    os.environ["AWS_SESSION_TOKEN"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "us-east-1"


@pytest.fixture
def dynamodb_table(aws_credentials):
    """Create mocked DynamoDB table."""
    import boto3
    from moto import mock_aws

    with mock_aws():
        dynamodb = boto3.resource("dynamodb", region_name="us-east-1")

        table = dynamodb.create_table(
            TableName=TABLE_NAME,
            KeySchema=[
                {"AttributeName": "PK", "KeyType": "HASH"},
                {"AttributeName": "SK", "KeyType": "RANGE"},
            ],
            AttributeDefinitions=[
                {"AttributeName": "PK", "AttributeType": "S"},
                {"AttributeName": "SK", "AttributeType": "S"},
                {"AttributeName": "GSI1PK", "AttributeType": "S"},
                {"AttributeName": "GSI1SK", "AttributeType": "S"},
                {"AttributeName": "GSI2PK", "AttributeType": "S"},
                {"AttributeName": "GSI2SK", "AttributeType": "S"},
            ],
            GlobalSecondaryIndexes=[
                {
                    "IndexName": "GSI1",
                    "KeySchema": [
                        {"AttributeName": "GSI1PK", "KeyType": "HASH"},
                        {"AttributeName": "GSI1SK", "KeyType": "RANGE"},
                    ],
                    "Projection": {"ProjectionType": "ALL"},
                },
                {
                    "IndexName": "GSI2",
                    "KeySchema": [
                        {"AttributeName": "GSI2PK", "KeyType": "HASH"},
                        {"AttributeName": "GSI2SK", "KeyType": "RANGE"},
                    ],
                    "Projection": {"ProjectionType": "ALL"},
                },
            ],
            BillingMode="PAY_PER_REQUEST",
        )

        table.wait_until_exists()

        yield table


class FakeBroker:
    """In-memory MessageBroker.

    Replay outcomes can be scripted with ``replay_script``: each entry is a
    bool result or an exception to raise. Once exhausted, replays succeed.
    """

    def __init__(self):
        self.entities: list[BrokerEntity] = []
        self.dead_letters: dict[str, list[PeekedMessage]] = {}
        self.replay_script: list = []
        self.replay_calls: list[tuple] = []
        self.purge_calls: list[tuple] = []
        self.failing_peeks: set[str] = set()
        self.list_error: Exception | None = None
        self.replay_pause = False

    @staticmethod
    def _key(entity: str, subscription: str | None) -> str:
        return f"{entity}/subscriptions/{subscription}" if subscription else entity

    def add_queue(self, name: str, messages: list[PeekedMessage]) -> None:
        self.entities.append(BrokerEntity(name=name))
        self.dead_letters[name] = list(messages)

    def add_subscription(self, topic: str, subscription: str, messages: list[PeekedMessage]) -> None:
        self.entities.append(
            BrokerEntity(name=subscription, entity_type=EntityType.SUBSCRIPTION, topic_name=topic)
        )
        self.dead_letters[self._key(topic, subscription)] = list(messages)

    async def list_entities(self) -> list[BrokerEntity]:
        if self.list_error is not None:
            raise self.list_error
        for entity in self.entities:
            key = self._key(entity.topic_name, entity.name) if entity.topic_name else entity.name
            entity.dead_letter_count = len(self.dead_letters.get(key, []))
        return list(self.entities)

    async def peek(self, entity, subscription=None, from_dead_letter=True, max_count=100):
        key = self._key(entity, subscription)
        if key in self.failing_peeks:
            raise BrokerUnavailableError("peek failed", operation="peek")
        return list(self.dead_letters.get(key, []))[:max_count]

    async def replay(self, entity, subscription, sequence_number):
        import asyncio

        self.replay_calls.append((entity, subscription, sequence_number))
        if self.replay_pause:
            await asyncio.sleep(0)

        outcome = self.replay_script.pop(0) if self.replay_script else True
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome:
            key = self._key(entity, subscription)
            self.dead_letters[key] = [
                m for m in self.dead_letters.get(key, []) if m.sequence_number != sequence_number
            ]
        return outcome

    async def purge(self, entity, subscription=None, from_dead_letter=True):
        key = self._key(entity, subscription)
        self.purge_calls.append((entity, subscription))
        count = len(self.dead_letters.get(key, []))
        self.dead_letters[key] = []
        return count


def make_peeked(
    sequence_number: int,
    reason: str | None = "MaxDeliveryCountExceeded",
    description: str | None = None,
    delivery_count: int = 10,
    body: str | None = '{"order_id": 1}',
    **kwargs,
) -> PeekedMessage:
    """Build a peeked dead-letter message."""
    now = datetime.now(timezone.utc)
    return PeekedMessage(
        message_id=f"msg-{sequence_number}",
        sequence_number=sequence_number,
        body=body,
        enqueued_time=now - timedelta(minutes=10),
        dead_letter_time=now - timedelta(minutes=5),
        dead_letter_reason=reason,
        dead_letter_error_description=description,
        delivery_count=delivery_count,
        **kwargs,
    )


def make_message(sequence_number: int = 1, entity_name: str = "orders", **kwargs):
    """Build a tracked DlqMessage."""
    from dlqops.models.dlq_message import DlqMessage

    data = {
        "message_id": f"msg-{sequence_number}",
        "sequence_number": sequence_number,
        "body_hash": "empty",
        "namespace_id": NAMESPACE,
        "entity_name": entity_name,
        "dead_letter_reason": "MaxDeliveryCountExceeded",
        "delivery_count": 10,
        "failure_category": "MaxDelivery",
        "category_confidence": 0.95,
    }
    data.update(kwargs)
    return DlqMessage(**data)


@pytest.fixture
def fake_broker():
    """Create an in-memory broker."""
    return FakeBroker()


@pytest.fixture
def broker_factory(fake_broker):
    """Broker factory returning the fake broker for any namespace."""
    return lambda namespace_id: fake_broker


@pytest.fixture
def settings():
    """Engine settings with no backoff delay."""
    return DlqSettings(table_name=TABLE_NAME, replay_base_delay=0.0, replay_max_delay=0.0)


@pytest.fixture
def message_repo(dynamodb_table):
    from dlqops.repositories.dlq_message import DlqMessageRepository

    return DlqMessageRepository(TABLE_NAME)


@pytest.fixture
def rule_repo(dynamodb_table):
    from dlqops.repositories.replay_rule import ReplayRuleRepository

    return ReplayRuleRepository(TABLE_NAME)


@pytest.fixture
def history_repo(dynamodb_table):
    from dlqops.repositories.replay_history import ReplayHistoryRepository

    return ReplayHistoryRepository(TABLE_NAME)


async def _no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def executor(broker_factory, message_repo, rule_repo, history_repo, settings):
    """Replay executor wired to moto and the fake broker."""
    from dlqops.dlq.replay_executor import AutoReplayExecutor

    return AutoReplayExecutor(
        broker_factory,
        message_repo=message_repo,
        rule_repo=rule_repo,
        history_repo=history_repo,
        settings=settings,
        sleep=_no_sleep,
    )


@pytest.fixture
def make_rule(rule_repo):
    """Create and persist a rule."""
    from dlqops.models.replay_rule import AutoReplayRule, RuleAction, RuleCondition

    def _create(
        name: str = "Max delivery",
        conditions: list[dict] | None = None,
        delay_seconds: int = 0,
        max_retries: int = 1,
        max_replays_per_hour: int = 100,
        enabled: bool = True,
        **action_kwargs,
    ) -> AutoReplayRule:
        conditions = conditions or [
            {"field": "FailureCategory", "operator": "Equals", "value": "MaxDelivery"}
        ]
        rule = AutoReplayRule(
            name=name,
            enabled=enabled,
            conditions=[RuleCondition.model_validate(c) for c in conditions],
            action=RuleAction(
                delay_seconds=delay_seconds,
                max_retries=max_retries,
                **action_kwargs,
            ),
            max_replays_per_hour=max_replays_per_hour,
        )
        return rule_repo.create_rule(rule)

    return _create


@pytest.fixture
def api_gateway_event():
    """Create a sample API Gateway event."""
    def _create_event(
        method: str = "GET",
        resource: str = "/",
        path_params: dict = None,
        query_params: dict = None,
        body: dict = None,
        principal_id: str = "operator@example.com",
    ):
        return {
            "httpMethod": method,
            "resource": resource,
            "path": resource,
            "pathParameters": path_params or {},
            "queryStringParameters": query_params or {},
            "body": body if isinstance(body, str) else (json.dumps(body) if body is not None else None),
            "headers": {"Content-Type": "application/json"},
            "requestContext": {"authorizer": {"principalId": principal_id}},
        }

    return _create_event


class LambdaContext:
    """Mock Lambda context."""

    def __init__(self):
        self.function_name = "test-function"
        self.memory_limit_in_mb = 128
        self.invoked_function_arn = "arn:aws:lambda:us-east-1:123456789:function:test"
        self.aws_request_id = "test-request-id"

    def get_remaining_time_in_millis(self):
        return 30000


@pytest.fixture
def lambda_context():
    """Create a mock Lambda context."""
    return LambdaContext()


@pytest.fixture
def peeked():
    """Factory for peeked dead-letter messages."""
    return make_peeked


@pytest.fixture
def tracked():
    """Factory for tracked DlqMessage instances (not persisted)."""
    return make_message
