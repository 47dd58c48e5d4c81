from __future__ import annotations

import os
import shlex
import sys

import pytest
from fastapi.testclient import TestClient

from indexhub_backend import state
from indexhub_backend.app import app
from indexhub_backend.config.settings import reset_settings
from indexhub_backend.models.entities import DatabaseManager
from indexhub_backend.providers import BaseProvider, VendorCandidate

SLEEPER = f"{shlex.quote(sys.executable)} -c 'import time; time.sleep(30)'"


class StaticGitHub(BaseProvider):
    kind = "github"

    def __init__(self, *names):
        self.names = list(names)

    async def list_candidates(self, spec):
        return [
            VendorCandidate(
                vendor_id=name, name=f"acme/{name}", locator=f"https://github.com/acme/{name}.git"
            )
            for name in self.names
        ]


@pytest.fixture(name="client")
def fixture_client(tmp_path, monkeypatch):
    for key in list(os.environ):
        if key.startswith("INDEXHUB_"):
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("INDEXHUB_DB_PATH", str(tmp_path / "data" / "api.db"))
    monkeypatch.setenv("INDEXHUB_SCHEDULER__TICK_INTERVAL_SECONDS", "3600")
    monkeypatch.setenv("INDEXHUB_SCHEDULER__RECONCILE_INTERVAL_SECONDS", "0")
    monkeypatch.setenv("INDEXHUB_PIPELINE__COMMAND", SLEEPER)
    reset_settings()
    DatabaseManager.reset_instance()

    with TestClient(app) as client:
        yield client

    DatabaseManager.reset_instance()


def _reconciled_provider(client, *names):
    state.get_registry().register(StaticGitHub(*names), replace=True)
    provider = client.post(
        "/api/v1/providers", json={"kind": "github", "display_name": "acme"}
    ).json()
    response = client.post(f"/api/v1/providers/{provider['id']}/reconcile")
    assert response.status_code == 200
    return provider["id"], response.json()


def test_health_and_jobs(client):
    health = client.get("/api/v1/health")
    assert health.status_code == 200
    assert health.json()["scheduler_running"] is True

    jobs = client.get("/api/v1/jobs").json()["jobs"]
    assert jobs == ["scheduler_git", "scheduler_github_gitlab", "web_crawler"]


def test_provider_crud_never_returns_token(client):
    created = client.post(
        "/api/v1/providers",
        json={"kind": "gitlab", "display_name": " team ", "access_token": "glpat-secret"},
    )
    assert created.status_code == 201
    body = created.json()
    assert body["display_name"] == "team"
    assert body["has_access_token"] is True
    assert "access_token" not in body

    updated = client.put(
        f"/api/v1/providers/{body['id']}", json={"display_name": "platform"}
    )
    assert updated.json()["display_name"] == "platform"

    listing = client.get("/api/v1/providers").json()
    assert [edge["node"]["id"] for edge in listing["edges"]] == [body["id"]]
    assert listing["page_info"]["has_next_page"] is False
    assert "glpat-secret" not in str(listing)


def test_document_provider_requires_http_seed(client):
    response = client.post(
        "/api/v1/providers",
        json={"kind": "document", "display_name": "docs", "endpoint": "ftp://docs"},
    )

    assert response.status_code == 400
    assert response.json()["error"] == "invalid_argument"


def test_provider_update_rejects_null_name(client):
    provider = client.post(
        "/api/v1/providers", json={"kind": "github", "display_name": "acme"}
    ).json()

    response = client.put(f"/api/v1/providers/{provider['id']}", json={"display_name": None})

    assert response.status_code == 422
    listing = client.get("/api/v1/providers").json()
    assert listing["edges"][0]["node"]["display_name"] == "acme"


def test_document_provider_update_requires_http_seed(client):
    provider = client.post(
        "/api/v1/providers",
        json={"kind": "document", "display_name": "docs", "endpoint": "https://docs.test"},
    ).json()

    response = client.put(
        f"/api/v1/providers/{provider['id']}", json={"endpoint": "ftp://docs.test"}
    )

    assert response.status_code == 400
    assert response.json()["error"] == "invalid_argument"

    moved = client.put(
        f"/api/v1/providers/{provider['id']}", json={"endpoint": " https://docs2.test "}
    )
    assert moved.status_code == 200
    assert moved.json()["endpoint"] == "https://docs2.test"


def test_unknown_provider_kind_is_rejected(client):
    response = client.post("/api/v1/providers", json={"kind": "svn", "display_name": "x"})

    assert response.status_code == 422


def test_reconcile_creates_inactive_resources_and_activation(client):
    provider_id, result = _reconciled_provider(client, "alpha", "beta")
    assert result["created"] == 2

    resources = client.get("/api/v1/resources", params={"provider_id": provider_id}).json()
    nodes = [edge["node"] for edge in resources["edges"]]
    assert [node["name"] for node in nodes] == ["acme/alpha", "acme/beta"]
    assert not any(node["active"] for node in nodes)

    activated = client.put(
        f"/api/v1/resources/{nodes[0]['id']}/active", json={"active": True}
    )
    assert activated.status_code == 200
    assert activated.json()["active"] is True

    active_only = client.get("/api/v1/resources", params={"active": True}).json()
    assert [edge["node"]["id"] for edge in active_only["edges"]] == [nodes[0]["id"]]


def test_reconcile_unknown_provider_is_not_found(client):
    response = client.post("/api/v1/providers/999/reconcile")

    assert response.status_code == 404
    assert response.json() == {
        "error": "not_found",
        "message": "Provider 999 not found",
    }


def test_deleted_provider_resources_cannot_be_activated(client):
    provider_id, _ = _reconciled_provider(client, "alpha")

    deleted = client.delete(f"/api/v1/providers/{provider_id}")
    assert deleted.json() == {"id": provider_id, "orphaned_resources": 1}

    [edge] = client.get("/api/v1/resources").json()["edges"]
    assert edge["node"]["orphaned"] is True
    assert edge["node"]["provider_id"] is None

    response = client.put(
        f"/api/v1/resources/{edge['node']['id']}/active", json={"active": True}
    )
    assert response.status_code == 400


def test_git_repository_lifecycle(client):
    payload = {"name": "tools", "locator": "https://example.com/acme/tools.git"}

    created = client.post("/api/v1/git-repositories", json=payload)
    assert created.status_code == 201
    repo = created.json()
    assert repo["kind"] == "git"
    assert repo["active"] is True

    duplicate = client.post("/api/v1/git-repositories", json=payload)
    assert duplicate.status_code == 409
    assert duplicate.json()["error"] == "conflict"

    toggle = client.put(f"/api/v1/resources/{repo['id']}/active", json={"active": False})
    assert toggle.status_code == 400

    renamed = client.put(f"/api/v1/git-repositories/{repo['id']}", json={"name": "toolbox"})
    assert renamed.json()["name"] == "toolbox"
    assert renamed.json()["locator"] == payload["locator"]

    assert client.delete(f"/api/v1/git-repositories/{repo['id']}").status_code == 200
    assert client.delete(f"/api/v1/git-repositories/{repo['id']}").status_code == 404


def test_git_repository_rejects_invalid_locator(client):
    response = client.post(
        "/api/v1/git-repositories", json={"name": "bad", "locator": "not a url"}
    )

    assert response.status_code == 400
    assert response.json()["error"] == "invalid_argument"


def test_run_now_then_cancel(client):
    _, _ = _reconciled_provider(client, "alpha")
    [edge] = client.get("/api/v1/resources").json()["edges"]
    resource_id = edge["node"]["id"]

    started = client.post(f"/api/v1/resources/{resource_id}/runs")
    assert started.status_code == 202
    run = started.json()
    assert run["state"] == "running"
    assert run["job_kind"] == "scheduler_github_gitlab"

    duplicate = client.post(f"/api/v1/resources/{resource_id}/runs")
    assert duplicate.status_code == 409
    assert duplicate.json()["error"] == "duplicate_in_flight_job"

    cancelled = client.post(f"/api/v1/job-runs/{run['id']}/cancel")
    assert cancelled.status_code == 200
    assert cancelled.json()["state"] == "failed"
    assert cancelled.json()["exit_code"] == -1

    again = client.post(f"/api/v1/job-runs/{run['id']}/cancel")
    assert again.status_code == 409

    runs = client.get("/api/v1/job-runs", params={"resource_id": resource_id}).json()
    assert [edge["node"]["id"] for edge in runs["edges"]] == [run["id"]]

    stats = client.get(
        "/api/v1/job-runs/stats", params={"job_kind": "scheduler_github_gitlab"}
    ).json()
    assert stats == {"success": 0, "failed": 1, "pending": 0}


def test_trigger_skips_inactive_resources(client):
    _reconciled_provider(client, "alpha")

    response = client.post("/api/v1/scheduler/trigger")

    assert response.status_code == 200
    assert response.json() == {"dispatched": []}


def test_pagination_errors(client):
    bad_cursor = client.get("/api/v1/resources", params={"after": "garbage"})
    assert bad_cursor.status_code == 400
    assert bad_cursor.json()["error"] == "invalid_cursor"

    both = client.get("/api/v1/job-runs", params={"first": 1, "last": 1})
    assert both.status_code == 400
    assert both.json()["error"] == "invalid_argument"


def test_resource_pages_walk_forward(client):
    _reconciled_provider(client, *[f"r{i}" for i in range(5)])

    first = client.get("/api/v1/resources", params={"first": 2}).json()
    assert len(first["edges"]) == 2
    assert first["page_info"]["has_next_page"] is True

    rest = client.get(
        "/api/v1/resources",
        params={"first": 10, "after": first["page_info"]["end_cursor"]},
    ).json()
    names = [edge["node"]["name"] for edge in first["edges"] + rest["edges"]]
    assert names == [f"acme/r{i}" for i in range(5)]
    assert rest["page_info"]["has_next_page"] is False
