from __future__ import annotations

from typing import Any, Mapping

import pytest

from insight_sync.services.metadata_client import (
    MetadataServiceClient,
    MetadataServiceConfig,
    MetadataServiceError,
    ObjectDefinition,
    is_already_exists_error,
)
from insight_sync.services.schema_planner import AttributeRole, FieldCreationRequest, TargetFieldType


class DummyResponse:
    def __init__(self, status_code: int = 200, *, payload: Mapping[str, Any] | None = None, text: str | None = None):
        self.status_code = status_code
        self._payload = payload
        self.text = text or ""
        self.reason = ""

    def json(self) -> Mapping[str, Any] | None:
        if self._payload is None:
            raise ValueError("no json payload")
        return self._payload


class CountingTokenSource:
    def __init__(self) -> None:
        self.invalidations = 0

    def get_token(self) -> str:
        return "token-123"

    def invalidate(self) -> None:
        self.invalidations += 1


def _build_client(record: list[dict[str, Any]], *responses: DummyResponse, token_source=None) -> MetadataServiceClient:
    queue = list(responses)

    def _request(method: str, url: str, headers: dict[str, str], json_payload, params, timeout: int):
        record.append({"method": method, "url": url, "headers": headers, "json": json_payload, "timeout": timeout})
        return queue.pop(0)

    return MetadataServiceClient(
        token_source=token_source or CountingTokenSource(),
        config=MetadataServiceConfig(base_url="metadata.example.com/api/", timeout_seconds=12),
        request_func=_request,
    )


def _number_request(name: str) -> FieldCreationRequest:
    return FieldCreationRequest(
        full_name=f"Sales__insight.{name}",
        label=name,
        target_type=TargetFieldType.NUMBER,
        precision=18,
        scale=0,
    )


def test_client_requires_base_url():
    with pytest.raises(ValueError):
        MetadataServiceClient(token_source=CountingTokenSource(), config=MetadataServiceConfig(base_url=" "))


def test_create_object_posts_definition_with_bearer_token():
    calls: list[dict[str, Any]] = []
    client = _build_client(calls, DummyResponse(201, payload={"id": "obj-1"}))

    result = client.create_object(ObjectDefinition("Sales__insight", "Sales", "Sales", "from insight"))

    assert result.success and not result.already_exists
    assert calls[0]["method"] == "POST"
    assert calls[0]["url"] == "https://metadata.example.com/api/objects"
    assert calls[0]["headers"]["Authorization"] == "Bearer token-123"
    assert calls[0]["json"]["fullName"] == "Sales__insight"
    assert calls[0]["timeout"] == 12


def test_existing_object_counts_as_success():
    client = _build_client([], DummyResponse(400, payload={"message": "Object Sales__insight already exists"}))

    result = client.create_object(ObjectDefinition("Sales__insight", "Sales", "Sales"))

    assert result.success
    assert result.already_exists


def test_object_failure_is_reported():
    client = _build_client([], DummyResponse(500, text="internal error"))

    result = client.create_object(ObjectDefinition("Sales__insight", "Sales", "Sales"))

    assert not result.success
    assert "internal error" in result.errors[0]


def test_create_fields_reports_blocking_errors():
    calls: list[dict[str, Any]] = []
    client = _build_client(
        calls,
        DummyResponse(207, payload={"success": False, "errors": ["Field limit exceeded"]}),
    )

    result = client.create_fields([_number_request("Revenue")], [])

    assert not result.success
    assert result.errors == ("Field limit exceeded",)
    assert calls[0]["json"]["numericFields"][0]["precision"] == 18
    assert calls[0]["json"]["textFields"] == []


def test_create_fields_ignores_duplicate_field_errors():
    client = _build_client(
        [],
        DummyResponse(207, payload={"success": False, "errors": ["Field Revenue already exists"]}),
    )

    result = client.create_fields([_number_request("Revenue")], [])

    assert result.success
    assert result.errors == ()


def test_grant_failure_raises_and_unauthorized_invalidates_token():
    tokens = CountingTokenSource()
    client = _build_client([], DummyResponse(401, payload={"error": "expired"}), token_source=tokens)

    with pytest.raises(MetadataServiceError) as excinfo:
        client.grant_full_access("Sales__insight", "Insight_Analyst")

    assert "401" in str(excinfo.value)
    assert tokens.invalidations == 1


def test_fetch_insight_schema_parses_measures_and_dimensions():
    calls: list[dict[str, Any]] = []
    client = _build_client(
        calls,
        DummyResponse(
            payload={
                "measures": [{"name": "Revenue", "label": "Total Revenue"}, {"label": "no name"}],
                "dimensions": [{"field": "Region", "type": "STRING"}, {"name": "Notes", "type": "LongTextArea"}],
            }
        ),
    )

    attributes = client.fetch_insight_schema("Sales by Region")

    assert calls[0]["url"].endswith("/insights/Sales%20by%20Region/schema")
    assert [(spec.name, spec.declared_type, spec.role) for spec in attributes] == [
        ("Revenue", "NUMBER", AttributeRole.MEASURE),
        ("Region", "STRING", AttributeRole.DIMENSION),
        ("Notes", "LongTextArea", AttributeRole.DIMENSION),
    ]
    assert attributes[0].display_label == "Total Revenue"


@pytest.mark.parametrize(
    ("message", "expected"),
    [("DUPLICATE_VALUE: name in use", True), ("Object already exists", True), ("limit exceeded", False)],
)
def test_already_exists_detection(message, expected):
    assert is_already_exists_error(message) is expected
