from __future__ import annotations

from fastapi.testclient import TestClient

from insight_sync.config import Settings
from insight_sync.services.application_settings import (
    ACCESS_ROLE_KEY,
    FOLLOW_ON_TARGETS_KEY,
    ConfigurationStore,
    get_setting_value,
    set_setting_value,
)


def test_store_prefers_database_values(session_factory, db_session):
    store = ConfigurationStore(
        session_factory,
        settings_provider=lambda: Settings(sync_access_role="FromEnv", follow_on_sync_targets="A, B"),
    )

    assert store.get(ACCESS_ROLE_KEY) == "FromEnv"
    assert store.get_list(FOLLOW_ON_TARGETS_KEY) == ["A", "B"]

    set_setting_value(db_session, ACCESS_ROLE_KEY, "  FromDb  ")
    assert store.get(ACCESS_ROLE_KEY) == "FromDb"

    set_setting_value(db_session, ACCESS_ROLE_KEY, None)
    assert get_setting_value(db_session, ACCESS_ROLE_KEY) is None
    assert store.get(ACCESS_ROLE_KEY) == "FromEnv"


def test_unknown_keys_resolve_to_none(config_store):
    assert config_store.get("not_a_setting") is None
    assert config_store.get_int("not_a_setting", 7) == 7


def test_settings_split_comma_separated_lists():
    settings = Settings(frontend_origins="http://a.test, ,http://b.test", follow_on_sync_targets="")
    assert settings.frontend_origins == ["http://a.test", "http://b.test"]
    assert settings.follow_on_sync_targets == []


def test_setting_endpoints_round_trip(client: TestClient) -> None:
    response = client.get("/application-settings/sync_access_role")
    assert response.status_code == 200
    assert response.json() == {"key": "sync_access_role", "value": None}

    response = client.put("/application-settings/sync_access_role", json={"value": "  Insight_Analyst "})
    assert response.status_code == 200
    assert response.json() == {"key": "sync_access_role", "value": "Insight_Analyst"}

    response = client.get("/application-settings/SYNC_ACCESS_ROLE")
    assert response.json()["value"] == "Insight_Analyst"

    response = client.put("/application-settings/sync_access_role", json={"value": "   "})
    assert response.json()["value"] is None


def test_unknown_setting_key_is_rejected(client: TestClient) -> None:
    assert client.get("/application-settings/site_title").status_code == 404
    assert client.put("/application-settings/site_title", json={"value": "x"}).status_code == 404
