# Copyright 2025 Ralph Lemke
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Tests for the Blockflow HTTP server."""

import asyncio

import pytest
from fastapi.testclient import TestClient

from blockflow import __version__
from blockflow.config import BlockflowConfig, ServerConfig
from blockflow.runtime import MemoryLogStore, MemorySecretStore, MongoLogStore
from blockflow.server import create_app
from blockflow.server.app import build_log_store
from tests.workflow_helpers import RecordingAgent, block, document, edge, registry_with, starter

GREETER = document(
    [starter(), block("greeter", prompt="Hello <start.input.name>", apiKey="{{API_KEY}}")],
    [edge("start", "greeter")],
)


@pytest.fixture
def agent():
    return RecordingAgent(outputs={"greeter": {"response": "hi"}})


@pytest.fixture
def store():
    return MemoryLogStore()


@pytest.fixture
def client(agent, store):
    app = create_app(
        config=BlockflowConfig(),
        capabilities=registry_with(agent),
        log_store=store,
        workflows={"greeter": GREETER},
        secret_store=MemorySecretStore({"enc:api": "sk-1"}),
    )
    with TestClient(app) as test_client:
        yield test_client


def test_app_has_routes(client):
    routes = [r.path for r in client.app.routes]
    assert "/health" in routes
    assert "/api/workflows" in routes
    assert "/api/workflows/execute" in routes
    assert "/api/workflows/{workflow_id}/execute" in routes
    assert "/api/runs/{run_id}" in routes


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "version": __version__}


class TestRegisteredWorkflows:
    def test_list(self, client):
        assert client.get("/api/workflows").json() == ["greeter"]

    def test_execute_post(self, client, agent, store):
        response = client.post(
            "/api/workflows/greeter/execute",
            json={"inputs": {"name": "Ada"}, "secrets": {"API_KEY": "enc:api"}},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["output"] == {"response": "hi"}
        assert agent.configs[0]["prompt"] == "Hello Ada"
        assert agent.configs[0]["apiKey"] == "sk-1"

        record = store.get_run(data["runId"])
        assert record.workflow_id == "greeter"
        assert record.success is True

    def test_execute_get_uses_query_inputs(self, client):
        client.put("/api/workflows/echo", json=document([starter()]))
        response = client.get("/api/workflows/echo/execute", params={"name": "Bob"})
        assert response.status_code == 200
        assert response.json()["output"] == {"input": {"name": "Bob"}}

    def test_missing_secret_fails_run(self, client, agent):
        response = client.get("/api/workflows/greeter/execute", params={"name": "Bob"})
        assert response.status_code == 500
        assert "Secret not provided: API_KEY" in response.json()["error"]
        assert agent.calls == []

    def test_unknown_workflow(self, client):
        response = client.post("/api/workflows/nope/execute", json={})
        assert response.status_code == 404
        assert response.json() == {"error": "Workflow not found: nope"}

    def test_unknown_secret_reference(self, client, agent):
        response = client.post(
            "/api/workflows/greeter/execute",
            json={"secrets": {"API_KEY": "enc:missing"}},
        )
        assert response.status_code == 400
        assert response.json() == {"error": "Secret not provided: API_KEY"}
        assert agent.calls == []

    def test_inputs_must_be_object(self, client):
        response = client.post("/api/workflows/greeter/execute", json={"inputs": [1]})
        assert response.status_code == 400

    def test_body_must_be_object(self, client):
        response = client.post("/api/workflows/greeter/execute", content=b"[1, 2]")
        assert response.status_code == 400
        assert response.json()["error"].startswith("Invalid request body")


class TestAdhocExecution:
    def test_execute_document(self, client, store):
        response = client.post(
            "/api/workflows/execute",
            json={"workflow": document([starter()]), "inputs": {"x": 1}, "workflowId": "wf-9"},
        )
        assert response.status_code == 200
        assert response.json()["output"] == {"input": {"x": 1}}
        assert [r.workflow_id for r in store.get_runs_by_workflow("wf-9")] == ["wf-9"]

    def test_default_workflow_id(self, client, store):
        response = client.post("/api/workflows/execute", json={"workflow": document([starter()])})
        assert store.get_run(response.json()["runId"]).workflow_id == "adhoc"

    def test_missing_document(self, client):
        response = client.post("/api/workflows/execute", json={"inputs": {}})
        assert response.status_code == 400
        assert response.json() == {"error": "'workflow' must be an object"}

    def test_failed_run_returns_500_with_result(self, client, store):
        bad = document([starter(), block("a")], [edge("start", "a"), edge("a", "ghost")])
        response = client.post("/api/workflows/execute", json={"workflow": bad})
        assert response.status_code == 500
        data = response.json()
        assert data["success"] is False
        assert data["status"] == "run.Failed"
        assert store.get_run(data["runId"]).success is False

    def test_malformed_document_is_logged(self, client, store):
        response = client.post("/api/workflows/execute", json={"workflow": {"blocks": "oops"}})
        assert response.status_code == 500
        assert response.json()["success"] is False


class TestRegistration:
    def test_register_new(self, client):
        response = client.put("/api/workflows/hello", json=document([starter()]))
        assert response.status_code == 201
        assert response.json() == {"workflowId": "hello", "blocks": 1}
        assert client.get("/api/workflows").json() == ["greeter", "hello"]

    def test_replace_existing(self, client):
        response = client.put("/api/workflows/greeter", json=document([starter()]))
        assert response.status_code == 200
        assert client.post("/api/workflows/greeter/execute", json={}).status_code == 200

    def test_invalid_workflow_rejected(self, client):
        cyclic = document([block("a"), block("b")], [edge("a", "b"), edge("b", "a")])
        response = client.put("/api/workflows/cyclic", json=cyclic)
        assert response.status_code == 400
        assert "cycle" in response.json()["error"]
        assert "cyclic" not in client.get("/api/workflows").json()


class LoopCheckingLogStore(MemoryLogStore):
    """Records whether each save ran on a thread with a running event loop."""

    def __init__(self):
        super().__init__()
        self.saved_on_loop: list[bool] = []

    def _save(self, record):
        try:
            asyncio.get_running_loop()
            self.saved_on_loop.append(True)
        except RuntimeError:
            self.saved_on_loop.append(False)
        super()._save(record)


class TestPersistence:
    def test_results_are_saved_off_the_event_loop(self, agent):
        store = LoopCheckingLogStore()
        app = create_app(
            config=BlockflowConfig(),
            capabilities=registry_with(agent),
            log_store=store,
            workflows={"greeter": GREETER},
            secret_store=MemorySecretStore({"enc:api": "sk-1"}),
        )
        with TestClient(app) as test_client:
            response = test_client.post(
                "/api/workflows/greeter/execute",
                json={"inputs": {"name": "Ada"}, "secrets": {"API_KEY": "enc:api"}},
            )

        assert response.status_code == 200
        assert store.saved_on_loop == [False]


class TestRuns:
    def test_run_detail_and_listing(self, client):
        first = client.post(
            "/api/workflows/execute",
            json={"workflow": document([starter()]), "workflowId": "wf"},
        )
        run_id = first.json()["runId"]

        detail = client.get(f"/api/runs/{run_id}")
        assert detail.status_code == 200
        assert detail.json()["run_id"] == run_id
        assert detail.json()["logs"][0]["blockId"] == "start"

        listing = client.get("/api/workflows/wf/runs", params={"limit": 5})
        assert [r["run_id"] for r in listing.json()] == [run_id]

    def test_unknown_run(self, client):
        response = client.get("/api/runs/nope")
        assert response.status_code == 404
        assert response.json() == {"error": "not found"}


class TestBuildLogStore:
    def test_memory(self):
        assert isinstance(build_log_store(BlockflowConfig()), MemoryLogStore)

    def test_mongodb(self, monkeypatch):
        import mongomock

        monkeypatch.setattr(
            "blockflow.runtime.log_store.MongoClient", lambda url: mongomock.MongoClient()
        )
        config = BlockflowConfig(server=ServerConfig(log_store="mongodb"))
        assert isinstance(build_log_store(config), MongoLogStore)

    def test_unknown_backend(self):
        with pytest.raises(ValueError, match="Unknown log store backend"):
            build_log_store(BlockflowConfig(server=ServerConfig(log_store="redis")))
