"""Unit tests for the box control-plane app and its HTTP routes.

Tests:
  1. create_app() with local settings returns a working ASGI app
  2. Settings validation rejects incomplete non-local configs
  3. X-User-Id is required and scopes every box
  4. Box create/list/get/delete/deploy/steps contracts
  5. Cronjob create/list/update/toggle/executions/delete contracts
  6. Request-ID propagation and /metrics exposition
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from boxplane.app.main import create_app
from boxplane.app.observability.middleware import _normalize_path
from boxplane.app.providers.inmemory import InMemoryComputeProvider
from boxplane.app.settings import BoxPlaneSettings

USER = {"X-User-Id": "user-1"}
OTHER = {"X-User-Id": "user-2"}


def _local_settings(**overrides) -> BoxPlaneSettings:
    defaults = {
        "environment": "local",
        "health_poll_interval_seconds": 0.01,
        "health_timeout_seconds": 0.05,
    }
    defaults.update(overrides)
    return BoxPlaneSettings(**defaults)


@pytest.fixture
def client():
    app = create_app(_local_settings(), provider=InMemoryComputeProvider())
    with TestClient(app) as test_client:
        yield test_client


def _create_box(client, name="Research", **body):
    resp = client.post("/api/v1/boxes", json={"name": name, **body}, headers=USER)
    assert resp.status_code == 201, resp.text
    return resp.json()["box"]


# ── App factory ─────────────────────────────────────────────────


class TestAppFactory:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "environment": "local", "provider": "inmemory"}

    def test_runtime_on_state(self):
        app = create_app(_local_settings(), provider=InMemoryComputeProvider())
        assert app.state.runtime.provider.name == "inmemory"
        assert app.state.settings.environment == "local"

    def test_staging_requires_supabase(self):
        with pytest.raises(ValueError, match="supabase_url is required"):
            create_app(BoxPlaneSettings(environment="staging", default_provider="docker"))

    def test_unknown_provider_rejected(self):
        with pytest.raises(ValueError, match="default_provider must be one of"):
            create_app(_local_settings(default_provider="nomad"))

    def test_request_id_echoed_or_generated(self, client):
        resp = client.get("/health", headers={"X-Request-ID": "req-12345678"})
        assert resp.headers["X-Request-ID"] == "req-12345678"
        generated = client.get("/health", headers={"X-Request-ID": "bad id!"})
        assert generated.headers["X-Request-ID"] != "bad id!"

    def test_metrics_exposition(self, client):
        client.get("/health")
        resp = client.get("/metrics")
        assert resp.status_code == 200
        assert "boxplane_http_requests_total" in resp.text

    def test_metric_paths_collapse_ids(self):
        assert _normalize_path("/api/v1/boxes/box_123/steps") == "/api/v1/boxes/{id}/steps"
        assert _normalize_path("/api/v1/cronjobs/cron_1/toggle") == "/api/v1/cronjobs/{id}/toggle"

    def test_stale_sweep_registered_on_startup(self, client):
        runtime = client.app.state.runtime
        assert "maintenance-stale-sweep" in runtime.engine.repeatable_keys()


# ── Identity / errors ───────────────────────────────────────────


class TestIdentity:
    def test_missing_user_header(self, client):
        resp = client.get("/api/v1/boxes")
        assert resp.status_code == 400
        body = resp.json()
        assert body["code"] == "VALIDATION_FAILED"
        assert "X-User-Id" in body["message"]
        assert body["request_id"] == resp.headers["X-Request-ID"]

    def test_foreign_box_is_not_found(self, client):
        box = _create_box(client)
        resp = client.get(f"/api/v1/boxes/{box['id']}", headers=OTHER)
        assert resp.status_code == 404
        assert resp.json()["code"] == "NOT_FOUND"
        assert client.get("/api/v1/boxes", headers=OTHER).json() == {"boxes": []}


# ── Boxes ───────────────────────────────────────────────────────


class TestBoxRoutes:
    def test_create_returns_public_box(self, client):
        box = _create_box(
            client, skills=["acme/skills/pdf", "acme/skills/pdf"], env_vars={"API_KEY": "x"},
        )
        assert box["status"] == "pending"
        assert box["deployment_attempt"] == 1
        assert box["skills"] == ["acme/skills/pdf"]
        assert box["env_keys"] == ["API_KEY"]
        assert box["subdomain"].startswith("research-")
        assert "agent_secret" not in box
        assert "env_vars" not in box

    def test_body_validation(self, client):
        resp = client.post("/api/v1/boxes", json={"name": ""}, headers=USER)
        assert resp.status_code == 400
        assert resp.json()["code"] == "VALIDATION_FAILED"

    def test_duplicate_name_rejected(self, client):
        _create_box(client)
        resp = client.post("/api/v1/boxes", json={"name": "Research"}, headers=USER)
        assert resp.status_code == 400
        # Same name is fine for another owner.
        other = client.post("/api/v1/boxes", json={"name": "Research"}, headers=OTHER)
        assert other.status_code == 201

    def test_list_and_get(self, client):
        first = _create_box(client, name="One")
        _create_box(client, name="Two")
        listed = client.get("/api/v1/boxes", headers=USER).json()["boxes"]
        assert {b["name"] for b in listed} == {"One", "Two"}
        got = client.get(f"/api/v1/boxes/{first['id']}", headers=USER).json()["box"]
        assert got["id"] == first["id"]

    def test_deploy_accepted_with_ledger(self, client):
        box = _create_box(client, skills=["acme/skills/pdf"])
        resp = client.post(f"/api/v1/boxes/{box['id']}/deploy", headers=USER)
        assert resp.status_code == 202
        body = resp.json()
        assert body["deployment_attempt"] == 1
        assert body["box"]["status"] == "deploying"

        steps = client.get(f"/api/v1/boxes/{box['id']}/steps", headers=USER).json()
        assert steps["deployment_attempt"] == 1
        assert len(steps["steps"]) == 9
        assert steps["steps"][0]["step_key"] == "create-instance"
        assert steps["steps"][-1]["step_key"] == "finalize"

    def test_deploy_twice_conflicts(self, client):
        box = _create_box(client)
        client.post(f"/api/v1/boxes/{box['id']}/deploy", headers=USER)
        resp = client.post(f"/api/v1/boxes/{box['id']}/deploy", headers=USER)
        assert resp.status_code == 409
        assert resp.json()["code"] == "INVALID_STATUS"

    def test_steps_for_unknown_attempt_empty(self, client):
        box = _create_box(client)
        resp = client.get(f"/api/v1/boxes/{box['id']}/steps?attempt=3", headers=USER)
        assert resp.json() == {"deployment_attempt": 3, "steps": []}

    def test_delete(self, client):
        box = _create_box(client)
        resp = client.delete(f"/api/v1/boxes/{box['id']}", headers=USER)
        assert resp.status_code == 200
        assert resp.json()["box"]["status"] == "deleted"
        assert client.get("/api/v1/boxes", headers=USER).json() == {"boxes": []}
        redeploy = client.post(f"/api/v1/boxes/{box['id']}/deploy", headers=USER)
        assert redeploy.status_code == 409


# ── Cronjobs ────────────────────────────────────────────────────


class TestCronjobRoutes:
    def _cronjob(self, client, box_id, **overrides):
        body = {"name": "Digest", "schedule": "0 9 * * *", "prompt": "Summarize"}
        body.update(overrides)
        return client.post(f"/api/v1/boxes/{box_id}/cronjobs", json=body, headers=USER)

    def test_create_and_list(self, client):
        box = _create_box(client)
        resp = self._cronjob(client, box["id"], timezone="America/New_York")
        assert resp.status_code == 201
        cronjob = resp.json()["cronjob"]
        assert cronjob["enabled"] is True
        assert cronjob["timezone"] == "America/New_York"
        assert cronjob["repeat_key"] == f"cronjob-{cronjob['id']}"
        assert cronjob["next_run_at"] is not None

        listed = client.get(f"/api/v1/boxes/{box['id']}/cronjobs", headers=USER).json()
        assert [c["id"] for c in listed["cronjobs"]] == [cronjob["id"]]

    def test_invalid_schedule(self, client):
        box = _create_box(client)
        resp = self._cronjob(client, box["id"], schedule="whenever")
        assert resp.status_code == 400
        assert "Invalid cron expression" in resp.json()["message"]

    def test_update_toggle_delete(self, client):
        box = _create_box(client)
        cronjob = self._cronjob(client, box["id"]).json()["cronjob"]
        url = f"/api/v1/cronjobs/{cronjob['id']}"

        patched = client.patch(url, json={"schedule": "*/10 * * * *"}, headers=USER)
        assert patched.status_code == 200
        assert patched.json()["cronjob"]["schedule"] == "*/10 * * * *"

        toggled = client.post(f"{url}/toggle", headers=USER).json()["cronjob"]
        assert toggled["enabled"] is False
        runtime = client.app.state.runtime
        assert cronjob["repeat_key"] not in runtime.engine.repeatable_keys()

        assert client.get(f"{url}/executions", headers=USER).json() == {"executions": []}

        deleted = client.delete(url, headers=USER)
        assert deleted.json() == {"deleted": True}
        assert client.post(f"{url}/toggle", headers=USER).status_code == 404

    def test_foreign_cronjob_not_found(self, client):
        box = _create_box(client)
        cronjob = self._cronjob(client, box["id"]).json()["cronjob"]
        resp = client.patch(
            f"/api/v1/cronjobs/{cronjob['id']}", json={"name": "x"}, headers=OTHER,
        )
        assert resp.status_code == 404

    def test_executions_limit_bounds(self, client):
        box = _create_box(client)
        cronjob = self._cronjob(client, box["id"]).json()["cronjob"]
        resp = client.get(f"/api/v1/cronjobs/{cronjob['id']}/executions?limit=0", headers=USER)
        assert resp.status_code == 400
