from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from insight_sync.main import app
from insight_sync.routers.dependencies import get_orchestrator, get_schema_source
from insight_sync.services.metadata_client import BatchResult, MetadataResult, MetadataServiceError
from insight_sync.services.result_reporter import ResultReporter
from insight_sync.services.schema_planner import AttributeRole, AttributeSpec
from insight_sync.services.schema_sync import SchemaSyncOrchestrator
from insight_sync.services.stage_jobs import StageJobExecutor


class FakeSchemaAdmin:
    def __init__(self, *, field_failures: int = 0) -> None:
        self.field_failures = field_failures

    def create_object(self, definition):
        return MetadataResult(success=True)

    def create_fields(self, numeric_fields, text_fields):
        if self.field_failures:
            self.field_failures -= 1
            return BatchResult(success=False, errors=("Field limit exceeded",))
        return BatchResult(success=True)

    def grant_full_access(self, object_name, role_name):
        return None


class NullPublisher:
    def publish(self, event) -> None:
        return None


class StaticSchemaSource:
    def __init__(self, attributes=None, error: str | None = None) -> None:
        self.attributes = attributes or []
        self.error = error

    def fetch_insight_schema(self, insight_name: str):
        if self.error:
            raise MetadataServiceError(self.error)
        return list(self.attributes)


@pytest.fixture()
def use_orchestrator(session_factory, config_store, clock):
    def _use(admin: FakeSchemaAdmin) -> SchemaSyncOrchestrator:
        orchestrator = SchemaSyncOrchestrator(
            session_factory,
            StageJobExecutor(session_factory, eager=True, clock=clock),
            admin,
            config_store=config_store,
            reporter=ResultReporter(session_factory, NullPublisher(), clock=clock),
            clock=clock,
        )
        app.dependency_overrides[get_orchestrator] = lambda: orchestrator
        return orchestrator

    return _use


def _create_insight(client: TestClient, name: str = "Sales by Region") -> dict:
    response = client.post(
        "/insights",
        json={
            "name": name,
            "label": "Sales",
            "measures": [{"name": "Revenue", "declared_type": "NUMBER"}],
            "dimensions": [{"name": "Region"}],
        },
    )
    assert response.status_code == 201, response.text
    return response.json()


def test_health_check(client: TestClient) -> None:
    response = TestClient(app).get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_create_and_read_insight(client: TestClient) -> None:
    created = _create_insight(client)

    assert created["target_object_name"] == "Sales_by_Region__insight"
    assert [(item["name"], item["role"], item["display_order"]) for item in created["attributes"]] == [
        ("Revenue", "measure", 0),
        ("Region", "dimension", 1),
    ]

    assert client.get(f"/insights/{created['id']}").json()["name"] == "Sales by Region"
    assert [item["name"] for item in client.get("/insights").json()] == ["Sales by Region"]


def test_duplicate_insight_is_rejected(client: TestClient) -> None:
    _create_insight(client)
    response = client.post("/insights", json={"name": "sales by region"})
    assert response.status_code == 409


def test_duplicate_attribute_is_rejected(client: TestClient) -> None:
    response = client.post(
        "/insights",
        json={"name": "Pipeline", "measures": [{"name": "Amount"}], "dimensions": [{"name": "Amount"}]},
    )
    assert response.status_code == 400


def test_unknown_insight_returns_404(client: TestClient) -> None:
    assert client.get("/insights/00000000-0000-0000-0000-000000000000").status_code == 404


def test_refresh_schema_replaces_attributes(client: TestClient) -> None:
    created = _create_insight(client)
    source = StaticSchemaSource(
        [
            AttributeSpec("Margin", "Margin", "NUMBER", AttributeRole.MEASURE),
            AttributeSpec("Country", "Country", "STRING", AttributeRole.DIMENSION),
        ]
    )
    app.dependency_overrides[get_schema_source] = lambda: source

    response = client.post(f"/insights/{created['id']}/refresh-schema")

    assert response.status_code == 200
    assert [item["name"] for item in response.json()["attributes"]] == ["Margin", "Country"]


def test_refresh_schema_upstream_failure_returns_502(client: TestClient) -> None:
    created = _create_insight(client)
    app.dependency_overrides[get_schema_source] = lambda: StaticSchemaSource(error="analytics API down")

    response = client.post(f"/insights/{created['id']}/refresh-schema")

    assert response.status_code == 502


def test_sync_request_runs_chain_and_exposes_status(client: TestClient, use_orchestrator) -> None:
    created = _create_insight(client)
    use_orchestrator(FakeSchemaAdmin())

    response = client.post(f"/insights/{created['id']}/sync")

    assert response.status_code == 202
    assert response.json()["logical_key"] == "Sales_by_Region__insight"

    status_response = client.get("/sync-status/sales_by_region__insight")
    assert status_response.status_code == 200
    assert status_response.json()["sync_done"] is True
    assert status_response.json()["stage"] == "done"
    assert [item["target_name"] for item in client.get("/sync-status").json()] == ["Sales_by_Region__insight"]

    unit = client.get("/sync-units/Sales_by_Region__insight").json()
    assert unit["stage"] == "done"
    assert unit["attempt_count"] == 0


def test_sync_request_conflicts_while_retry_is_pending(client: TestClient, use_orchestrator) -> None:
    created = _create_insight(client)
    use_orchestrator(FakeSchemaAdmin(field_failures=1))

    assert client.post(f"/insights/{created['id']}/sync").status_code == 202
    unit = client.get("/sync-units/Sales_by_Region__insight").json()
    assert unit["stage"] == "field_create"
    assert unit["attempt_count"] == 1
    assert unit["next_attempt_at"] is not None

    assert client.post(f"/insights/{created['id']}/sync").status_code == 409


def test_sync_request_for_inactive_insight_is_unprocessable(client: TestClient, use_orchestrator) -> None:
    response = client.post("/insights", json={"name": "Dormant", "is_active": False})
    use_orchestrator(FakeSchemaAdmin())

    assert client.post(f"/insights/{response.json()['id']}/sync").status_code == 422


def test_missing_status_returns_404(client: TestClient) -> None:
    assert client.get("/sync-status/Unknown__insight").status_code == 404
    assert client.get("/sync-units/Unknown__insight").status_code == 404


def test_delta_upload_returns_summary(client: TestClient) -> None:
    _create_insight(client, name="Accounts")
    content = "\n".join(
        [
            "Id,Sequence,Object,Timestamp,Payload",
            "1,1,Accounts__insight,2024-01-01T10:00:00Z,{Region:West,Revenue:10}",
            "2,2,Accounts__insight,2024-01-01T11:00:00Z,{Region:West,Revenue:12}",
            "3,3,Accounts__insight,2024-01-01T11:00:00Z,{Region:East,Revenue:oops}",
            "4,4,Other,2024-01-01T11:00:00Z,{Region:North}",
        ]
    )

    response = client.post(
        "/delta-ingestions",
        data={"target_object": "accounts__insight", "key_field": "Region"},
        files={"file": ("delta.csv", content.encode("utf-8"), "text/csv")},
    )

    assert response.status_code == 200, response.text
    assert response.json() == {
        "target_object": "Accounts__insight",
        "key_field": "Region",
        "lines_read": 4,
        "malformed": 0,
        "filtered": 1,
        "discarded": 0,
        "coercion_failures": 1,
        "upserted": 2,
    }


def test_delta_upload_without_key_field_is_rejected(client: TestClient) -> None:
    response = client.post(
        "/delta-ingestions",
        data={"target_object": "Accounts__insight"},
        files={"file": ("delta.csv", b"Id,Sequence,Object,Timestamp,Payload\n", "text/csv")},
    )
    assert response.status_code == 400
