from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from envprovisioner.main import create_app


@pytest.fixture
def api(settings, redis_client):
    app = create_app(settings.model_copy(update={"disable_events": True}), redis_client=redis_client)
    with TestClient(app) as test_client:
        test_client.lifecycle = app.state.lifecycle_manager
        yield test_client


def _create(api, request):
    response = api.post("/api/v1/environments", json=request)
    assert response.status_code == 201, response.text
    return response.json()


def test_create_and_read_environment(api, dev_env_request):
    created = _create(api, dev_env_request)
    assert created["status"] == "CREATING"
    assert created["clusterName"] == "env-" + created["id"][:8]

    api.lifecycle.wait(created["id"], timeout=30)
    response = api.get(f"/api/v1/environments/{created['id']}")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ACTIVE"
    assert body["consoleUrl"] == "https://console.example.com/" + body["clusterName"]
    assert body["addons"] == ["ingress-nginx", "cert-manager"]


def test_invalid_request_is_bad_request(api, dev_env_request):
    dev_env_request["resourceLimits"]["maxNodeCount"] = 0

    response = api.post("/api/v1/environments", json=dev_env_request)

    assert response.status_code == 400
    assert api.get("/api/v1/environments").json() == []


def test_unknown_environment_is_not_found(api):
    assert api.get("/api/v1/environments/does-not-exist").status_code == 404
    assert api.patch("/api/v1/environments/does-not-exist", json={"description": "x"}).status_code == 404
    assert api.delete("/api/v1/environments/does-not-exist").status_code == 404


def test_update_while_provisioning_conflicts(api, dev_env_request, monkeypatch):
    monkeypatch.setenv("FAKE_TF_SLEEP", "2")
    created = _create(api, dev_env_request)

    response = api.patch(f"/api/v1/environments/{created['id']}", json={"description": "later"})

    assert response.status_code == 409
    api.lifecycle.wait(created["id"], timeout=30)


def test_update_and_delete(api, dev_env_request):
    created = _create(api, dev_env_request)
    api.lifecycle.wait(created["id"], timeout=30)

    patched = api.patch(f"/api/v1/environments/{created['id']}", json={"description": "resized"})
    assert patched.status_code == 200
    assert patched.json()["status"] == "UPDATING"
    api.lifecycle.wait(created["id"], timeout=30)

    response = api.delete(f"/api/v1/environments/{created['id']}")
    assert response.status_code == 204
    api.lifecycle.wait(created["id"], timeout=30)

    assert api.get(f"/api/v1/environments/{created['id']}").status_code == 404


def test_list_filters(api, dev_env_request):
    first = _create(api, dev_env_request)
    second = _create(api, {**dev_env_request, "name": "other", "ownerId": "bob"})
    api.lifecycle.wait(first["id"], timeout=30)
    api.lifecycle.wait(second["id"], timeout=30)

    owned = api.get("/api/v1/environments", params={"ownerId": "bob"}).json()
    active = api.get("/api/v1/environments", params={"status": "active"}).json()

    assert [item["id"] for item in owned] == [second["id"]]
    assert {item["id"] for item in active} == {first["id"], second["id"]}
    assert api.get("/api/v1/environments", params={"status": "sleeping"}).status_code == 400


def test_status_degrades_when_cluster_unreachable(api, dev_env_request):
    created = _create(api, dev_env_request)
    api.lifecycle.wait(created["id"], timeout=30)

    response = api.get(f"/api/v1/environments/{created['id']}/status")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ACTIVE"
    assert body["healthChecks"] == {"api-server": "Unreachable"}


def test_history_lists_transitions(api, dev_env_request):
    created = _create(api, dev_env_request)
    api.lifecycle.wait(created["id"], timeout=30)

    response = api.get(f"/api/v1/environments/{created['id']}/history")

    assert response.status_code == 200
    statuses = [entry["status"] for entry in response.json()]
    assert {"CREATING", "PROVISIONING", "ACTIVE"} <= set(statuses)


def test_health(api):
    response = api.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
