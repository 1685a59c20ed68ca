"""Tests for the DLQ history API handler."""

import json
from unittest.mock import patch

import pytest


@pytest.fixture
def call(dynamodb_table, api_gateway_event):
    from api.dlq_history import handler

    def _call(method, resource, **kwargs):
        response = handler(api_gateway_event(method=method, resource=resource, **kwargs), None)
        return response

    return _call


def body_of(response):
    return json.loads(response["body"])


@pytest.fixture
def stored(message_repo, tracked):
    def _store(sequence_number: int = 1, **kwargs):
        message = tracked(sequence_number, **kwargs)
        message_repo.create_if_absent(message)
        return message

    return _store


class TestHistoryRoutes:
    """Read routes."""

    def test_list_paginated(self, call, stored):
        for i in range(1, 4):
            stored(i)

        response = call("GET", "/dlq/messages", query_params={"page": "1", "page_size": "2"})

        body = body_of(response)
        assert response["statusCode"] == 200
        assert len(body["items"]) == 2
        assert body["pagination"]["total"] == 3
        assert body["pagination"]["has_next_page"] is True

    def test_list_bad_status(self, call):
        response = call("GET", "/dlq/messages", query_params={"status": "Nope"})
        assert response["statusCode"] == 400

    def test_get_message(self, call, stored):
        message = stored(1)

        response = call("GET", "/dlq/messages/{message_id}", path_params={"message_id": message.id})

        assert response["statusCode"] == 200
        assert body_of(response)["replay_history"] == []

    def test_get_missing_message(self, call):
        response = call("GET", "/dlq/messages/{message_id}", path_params={"message_id": "missing"})
        assert response["statusCode"] == 404

    def test_timeline(self, call, stored):
        message = stored(1)

        response = call("GET", "/dlq/messages/{message_id}/timeline", path_params={"message_id": message.id})

        types = [e["event_type"] for e in body_of(response)["items"]]
        assert "Detected" in types

    def test_summary(self, call, stored):
        stored(1)

        response = call("GET", "/dlq/messages/summary")

        assert body_of(response)["active_messages"] == 1

    def test_export_csv(self, call, stored):
        stored(1)

        response = call("GET", "/dlq/messages/export", query_params={"format": "csv"})

        assert response["statusCode"] == 200
        assert response["headers"]["Content-Type"] == "text/csv"
        assert response["body"].splitlines()[0].startswith("id,message_id")


class TestHistoryActions:
    """Write routes."""

    def test_notes(self, call, stored):
        message = stored(1)

        response = call(
            "PUT",
            "/dlq/messages/{message_id}/notes",
            path_params={"message_id": message.id},
            body={"notes": "looking"},
        )

        assert body_of(response)["user_notes"] == "looking"

    def test_archive_twice(self, call, stored):
        message = stored(1)
        params = {"message_id": message.id}

        assert call("POST", "/dlq/messages/{message_id}/archive", path_params=params)["statusCode"] == 200
        response = call("POST", "/dlq/messages/{message_id}/archive", path_params=params)

        assert response["statusCode"] == 409
        assert body_of(response)["error_code"] == "ALREADY_REPLAYED"

    def test_replay(self, call, stored, executor, fake_broker, history_repo):
        message = stored(1)

        with patch("api.dlq_history.build_executor", return_value=executor):
            response = call("POST", "/dlq/messages/{message_id}/replay", path_params={"message_id": message.id})

        assert response["statusCode"] == 200
        assert body_of(response)["outcome"] == "Success"
        assert history_repo.list_for_message(message.id)[0].replayed_by == "operator@example.com"

    def test_purge_requires_fields(self, call, broker_factory):
        with patch("api.dlq_history.get_broker_factory", return_value=broker_factory):
            response = call("POST", "/dlq/purge", body={"namespace_id": "ns-test"})

        assert response["statusCode"] == 400

    def test_purge(self, call, stored, broker_factory, fake_broker, peeked):
        fake_broker.add_queue("orders", [peeked(1)])
        stored(1)

        with patch("api.dlq_history.get_broker_factory", return_value=broker_factory):
            response = call("POST", "/dlq/purge", body={"namespace_id": "ns-test", "entity_name": "orders"})

        assert body_of(response) == {"purged": 1, "resolved": 1}
